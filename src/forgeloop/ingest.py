"""Turn runtime logs into a request in the control document.

Pipeline: collect (file / command / stdin / newest file in a directory) ->
tail -> redact -> truncate -> dedupe by content and issue signature ->
LLM analysis (routed as a ``plan`` task) -> formatted markdown request
appended to ``REQUESTS.md``.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from forgeloop.control import REPLAN, directive_token
from forgeloop.file_io import append_text, atomic_write_text, read_text_or_empty
from forgeloop.notify import NullNotifier, Notifier
from forgeloop.redaction import redact_sensitive_text, sha256_hex
from forgeloop.router import ExecutionRouter
from forgeloop.runner_common import run_shell_command
from forgeloop.schemas import TaskType

logger = logging.getLogger(__name__)

HASH_CHARS = 12
DEFAULT_TAIL_LINES = 400
DEFAULT_MAX_CHARS = 60_000

SourceKind = Literal["file", "cmd", "stdin", "latest"]
IngestStatus = Literal["appended", "duplicate", "dry_run"]


class IngestError(RuntimeError):
    """Raised when logs cannot be collected or the analysis is unusable."""


@dataclass(slots=True)
class LogSource:
    """Where the logs come from.

    ``value`` is the file path, the command line, or the logs directory for
    ``latest``; ``text`` carries already-read stdin content.
    """

    kind: SourceKind
    value: str = ""
    text: str = ""
    glob: str = "*.log"
    label: str = ""


@dataclass(slots=True)
class LogSample:
    text: str
    source_label: str
    cmd_exit_code: int = 0
    redacted: bool = True


@dataclass(slots=True)
class IngestOutcome:
    status: IngestStatus
    request_text: str = ""
    content_hash: str = ""
    signature_hash: str = ""


class LogAnalysis(BaseModel):
    """The JSON object the analysis prompt asks for."""

    issue_signature: str = ""
    title: str = "Untitled"
    description: str = ""
    probable_root_cause: str = ""
    next_steps: list[str] = Field(default_factory=list)
    work_scope: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: str = "medium"
    type: str = "task"

    @field_validator("next_steps", "acceptance_criteria", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return value

    @property
    def signature(self) -> str:
        return self.issue_signature.strip() or self.title


# ---------------------------------------------------------------------------
# Collection helpers
# ---------------------------------------------------------------------------


def tail_lines(text: str, count: int) -> str:
    lines = text.splitlines()
    return "\n".join(lines[-count:]) if count > 0 else ""


def latest_log_file(directory: Path, pattern: str = "*.log") -> Path:
    if not directory.is_dir():
        raise IngestError(f"Logs directory not found: {directory}")
    candidates = [p for p in directory.glob(pattern) if p.is_file()]
    if not candidates:
        raise IngestError(f"No log files matching '{pattern}' found in {directory}")
    return max(candidates, key=lambda p: p.stat().st_mtime)


def content_hash(text: str) -> str:
    return sha256_hex(text)[:HASH_CHARS]


def already_ingested(requests_text: str, content_digest: str, signature_digest: str) -> bool:
    if f"Source: logs:{content_digest}" in requests_text:
        return True
    return bool(signature_digest) and f"Signature: logsig:{signature_digest}" in requests_text


def build_analysis_prompt(sample: LogSample, tail: int) -> str:
    return f"""You are analyzing runtime logs to identify the single most actionable engineering task.

CONSTRAINTS:
- Must be completable in a few hours of focused work
- Must be a clear, specific task (not vague)
- Prefer fixes over new features
- If logs are missing key context, propose the minimal next step to get it
- Create a stable issue_signature: no timestamps, request IDs, UUIDs, user IDs, IPs, or other volatile identifiers

LOG_SOURCE: {sample.source_label}
TAIL_LINES: {tail}
REDACTED: {str(sample.redacted).lower()}
CMD_EXIT_CODE: {sample.cmd_exit_code}

LOG_SNIPPET:
{sample.text}

Respond with ONLY a single-line JSON object (no markdown, no code fences) with the keys:
issue_signature, title, description, probable_root_cause, next_steps (list),
work_scope, acceptance_criteria (list), priority, type."""


def parse_analysis(output: str) -> LogAnalysis:
    """Find the analysis object in backend output.

    Backends wrap the answer differently (plain text, JSON result blobs,
    stream-json events), so every JSON line is inspected and nested
    ``result`` strings are unwrapped.
    """
    for candidate in _json_candidates(output):
        if "title" in candidate or "issue_signature" in candidate:
            try:
                return LogAnalysis.model_validate(candidate)
            except ValidationError as exc:
                raise IngestError(f"Analysis JSON has an unexpected shape: {exc}") from exc
    raise IngestError("Could not parse LLM response as JSON")


def _json_candidates(text: str) -> list[dict[str, Any]]:
    found: list[dict[str, Any]] = []
    for line in reversed((text or "").splitlines()):
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        found.append(parsed)
        inner = parsed.get("result")
        if isinstance(inner, str):
            found.extend(_json_candidates(inner))
    return found


def format_request(
    analysis: LogAnalysis,
    *,
    content_digest: str,
    signature_digest: str,
    sample: LogSample,
    tail: int,
    created_at: str,
) -> str:
    next_steps = "\n".join(f"- {step}" for step in analysis.next_steps)
    acceptance = "\n".join(f"- {item}" for item in analysis.acceptance_criteria)
    return f"""
## {analysis.title}
- Priority: {analysis.priority}
- Type: {analysis.type}

{analysis.description}

**Probable Root Cause:** {analysis.probable_root_cause}

### Next Steps
{next_steps}

### Acceptance Criteria
{acceptance}

---
Source: logs:{content_digest}
Signature: logsig:{signature_digest}
LogSource: {sample.source_label}
TailLines: {tail}
Redacted: {str(sample.redacted).lower()}
CmdExitCode: {sample.cmd_exit_code}
CreatedAt: {created_at}
"""


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class LogIngestor:
    """Collect, analyse and record one batch of logs.

    Parameters
    ----------
    repo_path:
        Repository root; relative paths resolve against it.
    requests_path:
        Control document that receives the request.
    router:
        Routes the analysis prompt (``plan`` task).
    tail / max_chars:
        Sampling limits applied before analysis.
    trigger_replan:
        Append ``[REPLAN]`` after a new request.
    """

    def __init__(
        self,
        repo_path: str | Path,
        requests_path: str | Path,
        router: ExecutionRouter,
        *,
        notifier: Notifier | None = None,
        tail: int = DEFAULT_TAIL_LINES,
        max_chars: int = DEFAULT_MAX_CHARS,
        trigger_replan: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.requests_path = Path(requests_path)
        self.router = router
        self.notifier = notifier or NullNotifier()
        self.tail = max(1, tail)
        self.max_chars = max(1, max_chars)
        self.trigger_replan = trigger_replan
        self.clock = clock

    def collect(self, source: LogSource, *, redact: bool = True) -> LogSample:
        """Read, tail, redact and truncate the logs named by *source*."""
        exit_code = 0
        if source.kind in ("file", "latest"):
            if source.kind == "latest":
                path = latest_log_file(self._resolve(source.value or "logs"), source.glob)
            else:
                path = self._resolve(source.value)
                if not path.is_file():
                    raise IngestError(f"Log file not found: {path}")
            label = source.label or f"file:{path}"
            try:
                raw = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                raise IngestError(f"Could not read {path}: {exc}") from exc
        elif source.kind == "cmd":
            label = source.label or "cmd"
            captured = run_shell_command(source.value, cwd=self.repo_path, process_name="log")
            raw, exit_code = captured.output_text, captured.exit_code
            if not raw.strip():
                raise IngestError(f"Command produced no output: {source.value}")
        else:
            label = source.label or "stdin"
            raw = source.text
            if not raw.strip():
                raise IngestError("No log data on stdin")

        sampled = tail_lines(raw, self.tail)
        if redact:
            sampled, hits = redact_sensitive_text(sampled)
            if hits:
                logger.info("Redacted %d secret-like value(s) from logs", hits)
        return LogSample(
            text=sampled[: self.max_chars],
            source_label=label,
            cmd_exit_code=exit_code,
            redacted=redact,
        )

    def ingest(
        self,
        source: LogSource,
        *,
        dry_run: bool = False,
        force: bool = False,
        redact: bool = True,
        json_out: Path | None = None,
    ) -> IngestOutcome:
        sample = self.collect(source, redact=redact)
        content_digest = content_hash(sample.text)
        logger.info("Logs content hash: %s (source: %s)", content_digest, sample.source_label)

        requests_text = read_text_or_empty(self.requests_path)
        if not force and already_ingested(requests_text, content_digest, ""):
            logger.info("Already ingested (content:%s); use --force to re-ingest", content_digest)
            return IngestOutcome(status="duplicate", content_hash=content_digest)

        logger.info("Analyzing logs...")
        state = self.router.store.load()
        result, _ = self.router.route(state, TaskType.PLAN, build_analysis_prompt(sample, self.tail))
        if result.unavailable:
            raise IngestError("No backend available for log analysis")
        analysis = parse_analysis(result.output_text)
        if json_out is not None:
            atomic_write_text(json_out, analysis.model_dump_json(indent=2) + "\n")
            logger.info("Saved analysis JSON to: %s", json_out)

        signature_digest = sha256_hex(analysis.signature)[:HASH_CHARS]
        if not force and already_ingested(requests_text, content_digest, signature_digest):
            logger.info(
                "Already ingested (content:%s signature:%s); use --force to re-ingest",
                content_digest,
                signature_digest,
            )
            return IngestOutcome(
                status="duplicate", content_hash=content_digest, signature_hash=signature_digest
            )

        created_at = dt.datetime.fromtimestamp(self.clock(), tz=dt.timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        request = format_request(
            analysis,
            content_digest=content_digest,
            signature_digest=signature_digest,
            sample=sample,
            tail=self.tail,
            created_at=created_at,
        )
        outcome = IngestOutcome(
            status="dry_run" if dry_run else "appended",
            request_text=request,
            content_hash=content_digest,
            signature_hash=signature_digest,
        )
        if dry_run:
            return outcome

        append_text(self.requests_path, request)
        logger.info("Appended request to %s", self.requests_path.name)
        self.notifier.notify("📥", "Logs Ingested", f"Added new request from logs: {analysis.title}")
        if self.trigger_replan:
            append_text(self.requests_path, f"{directive_token(REPLAN)}\n")
            logger.info("Added %s trigger", directive_token(REPLAN))
        return outcome

    def _resolve(self, raw: str) -> Path:
        path = Path(raw).expanduser()
        return path if path.is_absolute() else self.repo_path / path
