"""Post-iteration review and security gates.

Both gates ask a backend for structured JSON about the current diff.  A gate
never fails the iteration: missing output, a rejected schema or a limited
backend simply mean "nothing to report".
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from forgeloop import git_tools
from forgeloop.notify import NullNotifier, Notifier
from forgeloop.router import ExecutionRouter
from forgeloop.runner_common import run_shell_command
from forgeloop.schemas import Backend, ReviewReport, RouterState, SecurityReport, TaskType

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIFF_CHARS = 120_000
TEST_OUTPUT_TAIL_LINES = 50

REVIEW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["verdict", "summary", "findings"],
    "properties": {
        "verdict": {"type": "string", "enum": ["approve", "needs_fixes"]},
        "summary": {"type": "string"},
        "findings": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["severity", "title", "description", "fix"],
                "properties": {
                    "severity": {"type": "string", "enum": ["low", "medium", "high", "critical"]},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "fix": {"type": "string"},
                },
            },
        },
    },
}

SECURITY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["safe", "issues"],
    "properties": {
        "safe": {"type": "boolean"},
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["severity", "type", "description"],
                "properties": {
                    "severity": {"type": "string", "enum": ["low", "medium", "high", "critical"]},
                    "type": {"type": "string"},
                    "description": {"type": "string"},
                },
            },
        },
    },
}

REVIEW_INSTRUCTIONS = (
    "Review this diff for bugs, security issues, edge cases, and code quality. "
    "Be thorough but concise.\nReturn JSON matching the provided schema.\n\nDIFF:\n"
)
SECURITY_SYSTEM_PROMPT = (
    "You are a security engineer. Review this diff for vulnerabilities: injection, XSS, "
    "auth bypass, secrets exposure, path traversal. Output JSON matching the provided schema."
)


# ---------------------------------------------------------------------------
# Diff helpers
# ---------------------------------------------------------------------------


def select_diff(repo: str | Path) -> str:
    """Unstaged changes, else staged changes, else the last commit."""
    for args in ((), ("--staged",), ("HEAD~1",)):
        diff = git_tools.diff_text(repo, *args)
        if diff.strip():
            return diff
    return ""


def truncate_diff(diff: str, max_chars: int = DEFAULT_MAX_DIFF_CHARS) -> str:
    """Keep the first two thirds and the tail of an oversized diff."""
    if len(diff) <= max_chars:
        return diff
    head_chars = (max_chars * 2) // 3
    tail_chars = max_chars - head_chars
    omitted = len(diff) - max_chars
    return (
        diff[:head_chars]
        + f"\n\n... [diff truncated: {omitted} characters omitted] ...\n\n"
        + diff[-tail_chars:]
    )


def _parse_report(model: type[Any], payload: dict[str, Any] | None) -> Any:
    if payload is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring malformed %s payload: %s", model.__name__, exc)
        return None


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


class ReviewGate:
    """Codex reviews the build diff; high/critical findings go back as a build task."""

    def __init__(
        self,
        repo_path: str | Path,
        router: ExecutionRouter,
        *,
        enabled: bool = True,
        max_diff_chars: int = DEFAULT_MAX_DIFF_CHARS,
        test_cmd: str = "",
    ) -> None:
        self.repo_path = Path(repo_path)
        self.router = router
        self.enabled = enabled
        self.max_diff_chars = max_diff_chars
        self.test_cmd = test_cmd.strip()

    def run(self, state: RouterState) -> RouterState:
        if not self.enabled or not self.router.is_installed(Backend.CODEX):
            return state
        if state.is_limited(Backend.CODEX, self.router.clock()):
            logger.info("Skipping Codex review (rate limited)")
            return state

        diff = select_diff(self.repo_path)
        if not diff.strip():
            logger.info("No changes to review")
            return state

        logger.info("Running Codex review...")
        runner = self.router.runners[Backend.CODEX]
        result, payload = runner.run_structured(
            self.repo_path,
            REVIEW_INSTRUCTIONS + truncate_diff(diff, self.max_diff_chars),
            task=TaskType.REVIEW,
            schema=REVIEW_SCHEMA,
        )
        state = self.router.record_failure(state, result)
        report = _parse_report(ReviewReport, payload)
        if report is None:
            return state

        logger.info("Codex review: %s (%d findings)", report.verdict, len(report.findings))
        if report.verdict != "needs_fixes" or not report.findings:
            return state
        blocking = report.blocking_findings()
        if not blocking:
            return state

        logger.info("Feeding %d review finding(s) back for repair...", len(blocking))
        fixes = "\n".join(f.as_fix_line() for f in blocking)
        _, state = self.router.route(
            state, TaskType.BUILD, f"Fix these issues found in code review:\n\n{fixes}"
        )
        if self.test_cmd:
            outcome = run_shell_command(self.test_cmd, cwd=self.repo_path, process_name="test")
            tail = "\n".join(outcome.output_lines[-TEST_OUTPUT_TAIL_LINES:])
            logger.info("Tests after review fixes exited %d\n%s", outcome.exit_code, tail)
        return state


class SecurityGate:
    """Ask the security backend whether the diff is safe; warn the operator if not."""

    def __init__(
        self,
        repo_path: str | Path,
        router: ExecutionRouter,
        *,
        notifier: Notifier | None = None,
        enabled: bool = True,
        max_diff_chars: int = DEFAULT_MAX_DIFF_CHARS,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.router = router
        self.notifier = notifier or NullNotifier()
        self.enabled = enabled
        self.max_diff_chars = max_diff_chars

    def choose_backend(self, state: RouterState) -> Backend | None:
        """Security backend, its alternate when limited or missing, else ``None``."""
        now = self.router.clock()
        preferred = self.router.preferred_backend(TaskType.SECURITY)
        for candidate in (preferred, preferred.alternate):
            if self.router.is_installed(candidate) and not state.is_limited(candidate, now):
                return candidate
        return None

    def run(self, state: RouterState) -> RouterState:
        if not self.enabled:
            return state
        diff = select_diff(self.repo_path)
        if not diff.strip():
            return state
        backend = self.choose_backend(state)
        if backend is None:
            logger.info("Both backends rate-limited, skipping security review")
            return state

        logger.info("Running security review with %s...", backend.label)
        runner = self.router.runners[backend]
        result, payload = runner.run_structured(
            self.repo_path,
            "Review this diff for security vulnerabilities.\n\nDIFF:\n"
            + truncate_diff(diff, self.max_diff_chars),
            task=TaskType.SECURITY,
            schema=SECURITY_SCHEMA,
            system_prompt=SECURITY_SYSTEM_PROMPT,
        )
        state = self.router.record_failure(state, result)
        report = _parse_report(SecurityReport, payload)
        if report is None or report.safe:
            return state

        logger.warning("Security review found %d issue(s)", len(report.issues))
        for issue in report.issues:
            logger.warning("  - [%s] %s: %s", issue.severity, issue.type, issue.description)
        self.notifier.notify(
            "🚨", "Security Review Warning", "Found potential security issues in diff"
        )
        return state
