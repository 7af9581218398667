"""Runtime configuration for the loop, daemon and ingestion commands.

Values resolve in this order (later wins):

1. Field defaults on :class:`ForgeloopConfig`.
2. ``forgeloop.yaml`` in the repository root, when present.
3. Environment variables (``FORGELOOP_*`` plus the backend-level names such as
   ``CLAUDE_CLI`` or ``ENABLE_FAILOVER``).  The CLI loads ``.env`` first, so
   anything placed there behaves like a real environment variable.
"""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from forgeloop.schemas import Backend, TaskType

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "forgeloop.yaml"

DEFAULT_CLAUDE_FLAGS = [
    "--dangerously-skip-permissions",
    "--output-format=stream-json",
    "--verbose",
]
DEFAULT_CODEX_FLAGS = ["--dangerously-bypass-approvals-and-sandbox"]

# field name -> environment variable names, first match wins
_ENV_NAMES: dict[str, tuple[str, ...]] = {
    "runtime_dir": ("FORGELOOP_RUNTIME_DIR",),
    "git_remote": ("FORGELOOP_GIT_REMOTE",),
    "autopush": ("FORGELOOP_AUTOPUSH",),
    "plan_file": ("FORGELOOP_IMPLEMENTATION_PLAN_FILE",),
    "requests_file": ("FORGELOOP_REQUESTS_FILE",),
    "questions_file": ("FORGELOOP_QUESTIONS_FILE",),
    "prompt_plan": ("FORGELOOP_PROMPT_PLAN",),
    "prompt_build": ("FORGELOOP_PROMPT_BUILD",),
    "prompt_plan_work": ("FORGELOOP_PROMPT_PLAN_WORK",),
    "test_cmd": ("FORGELOOP_TEST_CMD",),
    "deploy_cmd": ("FORGELOOP_DEPLOY_CMD",),
    "post_deploy_ingest_logs": ("FORGELOOP_POST_DEPLOY_INGEST_LOGS",),
    "post_deploy_observe_seconds": ("FORGELOOP_POST_DEPLOY_OBSERVE_SECONDS",),
    "ingest_logs_cmd": ("FORGELOOP_INGEST_LOGS_CMD",),
    "ingest_logs_file": ("FORGELOOP_INGEST_LOGS_FILE",),
    "ingest_logs_tail": ("FORGELOOP_INGEST_LOGS_TAIL",),
    "ingest_logs_max_chars": ("FORGELOOP_INGEST_LOGS_MAX_CHARS",),
    "ingest_trigger_replan": ("FORGELOOP_INGEST_TRIGGER_REPLAN",),
    "logs_dir": ("FORGELOOP_LOGS_DIR",),
    "session_context_file": ("FORGELOOP_SESSION_CONTEXT",),
    "extra_context_files": ("FORGELOOP_EXTRA_CONTEXT_FILES",),
    "task_routing": ("TASK_ROUTING",),
    "planning_backend": ("PLANNING_MODEL",),
    "review_backend": ("REVIEW_MODEL",),
    "security_backend": ("SECURITY_MODEL",),
    "build_backend": ("BUILD_MODEL",),
    "force_backend": ("FORCE_MODEL", "FORGELOOP_FORCE_BACKEND"),
    "failover_enabled": ("ENABLE_FAILOVER",),
    "codex_review_enabled": ("ENABLE_CODEX_REVIEW",),
    "security_gate_enabled": ("FORGELOOP_SECURITY_GATE",),
    "claude_cli": ("CLAUDE_CLI",),
    "claude_model": ("CLAUDE_MODEL",),
    "claude_flags": ("CLAUDE_FLAGS",),
    "codex_cli": ("CODEX_CLI",),
    "codex_flags": ("CODEX_FLAGS",),
    "codex_planning_config": ("CODEX_PLANNING_CONFIG",),
    "codex_review_config": ("CODEX_REVIEW_CONFIG",),
    "codex_security_config": ("CODEX_SECURITY_CONFIG",),
    "backend_timeout_seconds": ("FORGELOOP_BACKEND_TIMEOUT",),
    "max_route_attempts": ("FORGELOOP_MAX_ROUTE_ATTEMPTS",),
    "max_diff_chars": ("FORGELOOP_MAX_DIFF_CHARS",),
    "blocker_threshold": ("FORGELOOP_BLOCKER_THRESHOLD",),
    "blocker_pause_seconds": ("FORGELOOP_BLOCKER_PAUSE_SECONDS",),
    "daemon_interval_seconds": ("FORGELOOP_DAEMON_INTERVAL",),
    "build_batch_iterations": ("FORGELOOP_BUILD_ITERATIONS",),
    "progress_notify_every": ("FORGELOOP_PROGRESS_EVERY",),
    "slack_webhook_url": ("SLACK_WEBHOOK_URL",),
    "desktop_notifications": ("FORGELOOP_DESKTOP_NOTIFY",),
}


class ForgeloopConfigError(ValueError):
    """Raised when configuration values cannot be parsed."""


class ForgeloopConfig(BaseModel):
    """Every tunable used by the router, loop and daemon."""

    # -- Layout --------------------------------------------------------------
    runtime_dir: str = ".forgeloop"
    plan_file: str = "IMPLEMENTATION_PLAN.md"
    requests_file: str = "REQUESTS.md"
    questions_file: str = "QUESTIONS.md"
    prompt_plan: str = "PROMPT_plan.md"
    prompt_build: str = "PROMPT_build.md"
    prompt_plan_work: str = "PROMPT_plan_work.md"
    logs_dir: str = "logs"
    session_context_file: str = ""
    extra_context_files: list[str] = Field(default_factory=list)

    # -- Git -----------------------------------------------------------------
    git_remote: str = "origin"
    autopush: bool = False
    protected_branches: list[str] = Field(default_factory=lambda: ["main", "master"])

    # -- Routing -------------------------------------------------------------
    task_routing: bool = True
    force_backend: Backend | None = None
    failover_enabled: bool = True
    max_route_attempts: int = Field(default=4, ge=1)
    planning_backend: Backend = Backend.CODEX
    review_backend: Backend = Backend.CODEX
    security_backend: Backend = Backend.CODEX
    build_backend: Backend = Backend.CLAUDE

    # -- Backends ------------------------------------------------------------
    claude_cli: str = "claude"
    claude_model: str = "opus"
    claude_flags: list[str] = Field(default_factory=lambda: list(DEFAULT_CLAUDE_FLAGS))
    codex_cli: str = "codex"
    codex_flags: list[str] = Field(default_factory=lambda: list(DEFAULT_CODEX_FLAGS))
    codex_planning_config: str = "gpt-5.2:high"
    codex_review_config: str = "gpt-5.2-codex:medium"
    codex_security_config: str = "gpt-5.2-codex:medium"
    backend_timeout_seconds: int = Field(default=0, ge=0)

    # -- Gates ---------------------------------------------------------------
    codex_review_enabled: bool = True
    security_gate_enabled: bool = True
    max_diff_chars: int = Field(default=120_000, ge=1000)
    test_cmd: str = ""

    # -- Daemon --------------------------------------------------------------
    daemon_interval_seconds: int = Field(default=300, ge=1)
    build_batch_iterations: int = Field(default=10, ge=1)
    blocker_threshold: int = Field(default=3, ge=1)
    blocker_pause_seconds: int = Field(default=1800, ge=0)
    progress_notify_every: int = Field(default=5, ge=0)
    deploy_cmd: str = ""
    post_deploy_ingest_logs: bool = False
    post_deploy_observe_seconds: int = Field(default=0, ge=0)

    # -- Log ingestion -------------------------------------------------------
    ingest_logs_cmd: str = ""
    ingest_logs_file: str = ""
    ingest_logs_tail: int = Field(default=400, ge=1)
    ingest_logs_max_chars: int = Field(default=60_000, ge=1)
    ingest_trigger_replan: bool = False

    # -- Notifications -------------------------------------------------------
    slack_webhook_url: str = ""
    desktop_notifications: bool = True

    @field_validator(
        "claude_flags", "codex_flags", "protected_branches", "extra_context_files", mode="before"
    )
    @classmethod
    def _split_shell_words(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator(
        "force_backend",
        "planning_backend",
        "review_backend",
        "security_backend",
        "build_backend",
        mode="before",
    )
    @classmethod
    def _blank_backend_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip().lower()
        return value

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    def runtime_path(self, repo: Path) -> Path:
        path = Path(self.runtime_dir)
        return path if path.is_absolute() else repo / path

    def repo_file(self, repo: Path, name: str) -> Path:
        path = Path(name)
        return path if path.is_absolute() else repo / path

    def is_protected_branch(self, branch: str) -> bool:
        return branch in self.protected_branches

    @property
    def routing_table(self) -> dict[TaskType, Backend]:
        """Preferred backend per task type when task routing is on."""
        return {
            TaskType.PLAN: self.planning_backend,
            TaskType.PLAN_WORK: self.planning_backend,
            TaskType.REVIEW: self.review_backend,
            TaskType.SECURITY: self.security_backend,
            TaskType.BUILD: self.build_backend,
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        repo: str | Path,
        *,
        env: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> ForgeloopConfig:
        """Build the effective configuration for *repo*."""
        environ = os.environ if env is None else env
        data: dict[str, Any] = {}
        data.update(_load_yaml(Path(repo) / CONFIG_FILENAME))
        for field_name, names in _ENV_NAMES.items():
            for name in names:
                raw = environ.get(name)
                if raw is not None and raw != "":
                    data[field_name] = raw
                    break
        if overrides:
            data.update(overrides)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ForgeloopConfigError(f"Invalid forgeloop configuration: {exc}") from exc


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ForgeloopConfigError(f"Could not read {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ForgeloopConfigError(f"{path} must contain a mapping at the top level")
    logger.debug("Loaded config overlay from %s (%d keys)", path, len(raw))
    return raw
