"""Abstract base class and registry for backend CLI runners.

Both backends (Codex CLI, Claude Code) receive the prompt on stdin and emit
free-form text; the runner captures it and classifies the outcome so the
router can decide between retry, failover and sleep.
"""

from __future__ import annotations

import abc
import logging
import os
from pathlib import Path
from typing import Any

from forgeloop.failure_rules import classify_output
from forgeloop.redaction import prompt_metadata
from forgeloop.runner_common import (
    EXIT_COMMAND_NOT_FOUND,
    binary_available,
    resolve_binary,
    run_captured,
)
from forgeloop.schemas import Backend, Classification, InvocationResult, TaskType

logger = logging.getLogger(__name__)


class BackendRunner(abc.ABC):
    """Common interface for the two backend CLI wrappers.

    Parameters
    ----------
    binary:
        Path or name of the CLI executable.
    flags:
        Invocation flags placed right after the sub-command.
    timeout:
        Seconds without output before the child is killed; ``0`` disables.
    env_overrides:
        Extra environment variables forwarded to the child process.
    """

    #: Human-readable name used in log lines.
    name: str = "base"
    backend: Backend

    def __init__(
        self,
        binary: str,
        flags: list[str] | None = None,
        *,
        timeout: int = 0,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self.flags = list(flags or [])
        self.timeout = max(0, int(timeout))
        self.env_overrides = env_overrides or {}

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def build_command(self, task: TaskType) -> list[str]:
        """Return argv for an agentic invocation reading its prompt from stdin."""

    @abc.abstractmethod
    def run_structured(
        self,
        repo_path: Path,
        prompt: str,
        *,
        task: TaskType,
        schema: dict[str, Any],
        system_prompt: str = "",
    ) -> tuple[InvocationResult, dict[str, Any] | None]:
        """Request JSON matching *schema*; ``None`` when nothing usable came back."""

    # ------------------------------------------------------------------
    # Shared behaviour
    # ------------------------------------------------------------------

    def available(self) -> bool:
        return binary_available(self.binary)

    def invoke(self, repo_path: Path, prompt: str, task: TaskType) -> InvocationResult:
        """Run one agentic invocation and classify its combined output."""
        return self._execute(self.build_command(task), Path(repo_path), prompt, task)

    def _execute(
        self,
        cmd: list[str],
        repo_path: Path,
        prompt: str,
        task: TaskType,
    ) -> InvocationResult:
        meta = prompt_metadata(prompt)
        logger.info(
            "Running %s (task=%s, cwd=%s, prompt_len=%s, prompt_sha256=%s)",
            self.name,
            task.value,
            repo_path,
            meta["length_chars"],
            meta["sha256"],
        )
        env = {**os.environ, **self.env_overrides}
        cmd = [resolve_binary(cmd[0]), *cmd[1:]]
        try:
            captured = run_captured(
                cmd=cmd,
                cwd=repo_path,
                process_name=self.name,
                stdin_text=prompt,
                env=env,
                timeout_seconds=self.timeout,
            )
        except FileNotFoundError as exc:
            logger.warning("%s binary not found: %s", self.name, exc)
            return InvocationResult(
                exit_code=EXIT_COMMAND_NOT_FOUND,
                output_text=str(exc),
                classification=Classification.UNAVAILABLE,
                backend=self.backend,
            )
        except OSError as exc:
            logger.error("Could not start %s: %s", self.name, exc)
            return InvocationResult(
                exit_code=1,
                output_text=str(exc),
                classification=Classification.OTHER_FAILURE,
                backend=self.backend,
            )

        output = captured.output_text
        classification = classify_output(
            output, backend=self.backend, task=task, exit_code=captured.exit_code
        )
        if captured.timed_out and classification == Classification.SUCCESS:
            classification = Classification.OTHER_FAILURE
        logger.info(
            "%s finished (exit=%d, classification=%s, %.1fs)",
            self.name,
            captured.exit_code,
            classification.value,
            captured.duration_seconds,
        )
        return InvocationResult(
            exit_code=captured.exit_code,
            output_text=output,
            classification=classification,
            backend=self.backend,
            duration_seconds=captured.duration_seconds,
        )


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[Backend, type[BackendRunner]] = {}


def register_runner(backend: Backend, cls: type[BackendRunner]) -> None:
    """Register the runner class that drives *backend*."""
    if not isinstance(cls, type) or not issubclass(cls, BackendRunner):
        raise TypeError("Registered runner must be a BackendRunner subclass")
    existing = _REGISTRY.get(backend)
    if existing is not None and existing is not cls:
        raise ValueError(f"Backend '{backend.value}' is already registered with {existing.__name__}")
    _REGISTRY[backend] = cls


def get_runner_class(backend: Backend) -> type[BackendRunner]:
    if backend not in _REGISTRY:
        available = ", ".join(sorted(b.value for b in _REGISTRY)) or "(none)"
        raise KeyError(f"No runner registered for '{backend.value}'. Available: {available}")
    return _REGISTRY[backend]
