"""Interface to Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from forgeloop.agent_runner import BackendRunner, register_runner
from forgeloop.config import DEFAULT_CLAUDE_FLAGS
from forgeloop.runner_common import extract_json_object
from forgeloop.schemas import Backend, InvocationResult, TaskType

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_MODEL = "opus"


class ClaudeCodeRunner(BackendRunner):
    """Spawn ``claude -p`` with the prompt on stdin.

    Agentic runs use ``stream-json`` output so long builds keep producing
    activity; structured runs use ``--output-format json`` with
    ``--json-schema`` and read ``structured_output`` from the result blob.

    Parameters
    ----------
    binary:
        Path or name of the Claude Code CLI binary.
    flags:
        Flags for agentic runs (permissions, output format).
    model:
        Model alias passed via ``--model``.
    """

    name = "Claude Code"
    backend = Backend.CLAUDE

    def __init__(
        self,
        binary: str = "claude",
        flags: list[str] | None = None,
        *,
        model: str = DEFAULT_CLAUDE_MODEL,
        timeout: int = 0,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            binary,
            DEFAULT_CLAUDE_FLAGS if flags is None else flags,
            timeout=timeout,
            env_overrides=env_overrides,
        )
        self.model = (model or DEFAULT_CLAUDE_MODEL).strip() or DEFAULT_CLAUDE_MODEL

    def build_command(self, task: TaskType) -> list[str]:
        return [self.binary, "-p", *self.flags, "--model", self.model]

    def run_structured(
        self,
        repo_path: Path,
        prompt: str,
        *,
        task: TaskType,
        schema: dict[str, Any],
        system_prompt: str = "",
    ) -> tuple[InvocationResult, dict[str, Any] | None]:
        cmd = [self.binary, "-p", "--output-format", "json", "--model", self.model]
        if system_prompt:
            cmd += ["--append-system-prompt", system_prompt]
        cmd += ["--json-schema", json.dumps(schema)]
        result = self._execute(cmd, Path(repo_path), prompt, task)
        if not result.success:
            return result, None
        payload = extract_json_object(result.output_text)
        if payload is None:
            logger.warning("Claude %s run returned no JSON payload", task.value)
            return result, None
        structured = payload.get("structured_output")
        if isinstance(structured, dict):
            return result, structured
        return result, payload


register_runner(Backend.CLAUDE, ClaudeCodeRunner)
