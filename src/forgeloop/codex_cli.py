"""Interface to the OpenAI Codex CLI (``codex exec``)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

from forgeloop.agent_runner import BackendRunner, register_runner
from forgeloop.config import DEFAULT_CODEX_FLAGS
from forgeloop.schemas import Backend, Classification, InvocationResult, TaskType

logger = logging.getLogger(__name__)

DEFAULT_PLANNING_CONFIG = "gpt-5.2:high"
DEFAULT_REVIEW_CONFIG = "gpt-5.2-codex:medium"
_VALID_EFFORTS = {"minimal", "low", "medium", "high", "xhigh"}


def parse_model_config(raw: str, *, fallback: str = DEFAULT_PLANNING_CONFIG) -> tuple[str, str]:
    """Split ``"model:effort"`` into its parts.

    An unknown effort is logged and replaced by ``medium``; an empty model
    falls back to *fallback*'s model.
    """
    model, _, effort = str(raw or "").partition(":")
    model = model.strip()
    effort = effort.strip().lower() or "medium"
    if not model:
        model = fallback.partition(":")[0]
    if effort not in _VALID_EFFORTS:
        logger.warning("Invalid codex reasoning effort '%s'; falling back to 'medium'", effort)
        effort = "medium"
    return model, effort


class CodexRunner(BackendRunner):
    """Spawn ``codex exec ... -`` with the prompt on stdin.

    Parameters
    ----------
    binary:
        Path or name of the Codex CLI binary.
    flags:
        Flags for agentic runs.  Defaults to
        ``--dangerously-bypass-approvals-and-sandbox`` so the loop never
        blocks on an approval prompt.
    planning_config / review_config / security_config:
        ``"model:effort"`` strings.  Planning config also covers build tasks
        routed to Codex through failover.
    """

    name = "Codex"
    backend = Backend.CODEX

    def __init__(
        self,
        binary: str = "codex",
        flags: list[str] | None = None,
        *,
        planning_config: str = DEFAULT_PLANNING_CONFIG,
        review_config: str = DEFAULT_REVIEW_CONFIG,
        security_config: str = DEFAULT_REVIEW_CONFIG,
        timeout: int = 0,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            binary,
            DEFAULT_CODEX_FLAGS if flags is None else flags,
            timeout=timeout,
            env_overrides=env_overrides,
        )
        self.planning_config = parse_model_config(planning_config)
        self.review_config = parse_model_config(review_config, fallback=DEFAULT_REVIEW_CONFIG)
        self.security_config = parse_model_config(security_config, fallback=DEFAULT_REVIEW_CONFIG)

    def model_for(self, task: TaskType) -> tuple[str, str]:
        if task == TaskType.REVIEW:
            return self.review_config
        if task == TaskType.SECURITY:
            return self.security_config
        return self.planning_config

    def _model_args(self, task: TaskType) -> list[str]:
        model, effort = self.model_for(task)
        logger.debug("Codex config: model=%s reasoning=%s", model, effort)
        return ["-m", model, "-c", f'model_reasoning_effort="{effort}"']

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_command(self, task: TaskType) -> list[str]:
        return [self.binary, "exec", *self.flags, *self._model_args(task), "-"]

    def run_structured(
        self,
        repo_path: Path,
        prompt: str,
        *,
        task: TaskType,
        schema: dict[str, Any],
        system_prompt: str = "",
    ) -> tuple[InvocationResult, dict[str, Any] | None]:
        """Run a read-only ``codex exec`` that writes its final JSON to a file."""
        full_prompt = f"{system_prompt}\n{prompt}" if system_prompt else prompt
        schema_fd, schema_name = tempfile.mkstemp(prefix="forgeloop-schema-", suffix=".json")
        result_fd, result_name = tempfile.mkstemp(prefix="forgeloop-result-", suffix=".json")
        os.close(result_fd)
        schema_path, result_path = Path(schema_name), Path(result_name)
        try:
            with os.fdopen(schema_fd, "w", encoding="utf-8") as handle:
                json.dump(schema, handle)
            cmd = [
                self.binary,
                "exec",
                "--sandbox",
                "read-only",
                *self._model_args(task),
                "--output-schema",
                str(schema_path),
                "-o",
                str(result_path),
                "-",
            ]
            result = self._execute(cmd, Path(repo_path), full_prompt, task)
            if result.classification == Classification.SCHEMA_FAILURE:
                logger.warning("Codex rejected the %s output schema; no structured result", task.value)
                return result, None
            return result, _read_json_file(result_path)
        finally:
            for path in (schema_path, result_path):
                with suppress(OSError):
                    path.unlink(missing_ok=True)


def _read_json_file(path: Path) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Codex structured output is not valid JSON: %s", exc)
        return None
    return parsed if isinstance(parsed, dict) else None


register_runner(Backend.CODEX, CodexRunner)
