"""Pydantic models and enums shared across forgeloop components."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Backend(str, Enum):
    """The two interchangeable LLM backends.

    ``CODEX`` is the planning/review backend (A); ``CLAUDE`` builds (B).
    """

    CODEX = "codex"
    CLAUDE = "claude"

    @property
    def alternate(self) -> Backend:
        return Backend.CLAUDE if self is Backend.CODEX else Backend.CODEX

    @property
    def label(self) -> str:
        return "Codex" if self is Backend.CODEX else "Claude"


class TaskType(str, Enum):
    """Kind of work handed to the router; drives backend preference."""

    PLAN = "plan"
    PLAN_WORK = "plan-work"
    REVIEW = "review"
    SECURITY = "security"
    BUILD = "build"

    @classmethod
    def parse(cls, value: str | TaskType | None) -> TaskType:
        """Map loose input to a task type, defaulting to ``build``."""
        if isinstance(value, TaskType):
            return value
        normalized = str(value or "").strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        return cls.BUILD


class Classification(str, Enum):
    """Outcome class of a single backend invocation."""

    SUCCESS = "success"
    AUTH_FAILURE = "auth_failure"
    QUOTA_FAILURE = "quota_failure"
    SCHEMA_FAILURE = "schema_failure"
    OTHER_FAILURE = "other_failure"
    UNAVAILABLE = "unavailable"


class SyncDecision(str, Enum):
    """How local and remote branch tips are reconciled before a push."""

    NOOP = "noop"
    FAST_FORWARD = "fast_forward"
    MERGE = "merge"
    REBASE = "rebase"


class InvocationResult(BaseModel):
    """Result of one backend invocation (or of a full routed call)."""

    exit_code: int = 0
    output_text: str = ""
    classification: Classification = Classification.SUCCESS
    backend: Backend | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.classification == Classification.SUCCESS

    @property
    def unavailable(self) -> bool:
        return self.classification == Classification.UNAVAILABLE


def _zero_limits() -> dict[Backend, int]:
    return {Backend.CODEX: 0, Backend.CLAUDE: 0}


class RouterState(BaseModel):
    """Backend choice and per-backend rate-limit expiry (epoch seconds)."""

    active_backend: Backend = Backend.CLAUDE
    rate_limit_until: dict[Backend, int] = Field(default_factory=_zero_limits)

    @field_validator("rate_limit_until", mode="after")
    @classmethod
    def _fill_missing_backends(cls, value: dict[Backend, int]) -> dict[Backend, int]:
        merged = _zero_limits()
        merged.update({k: max(0, int(v)) for k, v in value.items()})
        return merged

    def is_limited(self, backend: Backend, now: float) -> bool:
        """Return True while *backend* is still cooling down at *now*."""
        return self.rate_limit_until.get(backend, 0) > now

    def limited_until(self, backend: Backend) -> int:
        return self.rate_limit_until.get(backend, 0)


class BlockerState(BaseModel):
    """Persisted repeat counter for the unanswered-question fingerprint."""

    consecutive_count: int = 0
    last_fingerprint: str | None = None


# ---------------------------------------------------------------------------
# Structured gate output
# ---------------------------------------------------------------------------


class ReviewFinding(BaseModel):
    severity: str = ""
    title: str = ""
    description: str = ""
    fix: str = ""

    def as_fix_line(self) -> str:
        return f"- [{self.severity}] {self.title}: {self.fix or self.description}"


class ReviewReport(BaseModel):
    """Structured review emitted by the review gate backend."""

    verdict: str = "unknown"
    summary: str = ""
    findings: list[ReviewFinding] = Field(default_factory=list)

    def blocking_findings(self) -> list[ReviewFinding]:
        """Findings severe enough to be fed back as a repair task."""
        return [f for f in self.findings if f.severity.lower() in {"high", "critical"}]


class SecurityIssue(BaseModel):
    severity: str = ""
    type: str = ""
    description: str = ""


class SecurityReport(BaseModel):
    """Structured verdict emitted by the security gate backend."""

    safe: bool = True
    issues: list[SecurityIssue] = Field(default_factory=list)
