"""Secret redaction and prompt fingerprints for safe logging."""

from __future__ import annotations

import hashlib
import re

_PRIVATE_KEY_BLOCK_RE = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?(?:-----END [A-Z ]*PRIVATE KEY-----|\Z)",
    re.DOTALL,
)
_ASSIGNMENT_SECRET_RE = re.compile(
    r"(?i)\b(password|passwd|secret|api[_-]?key|access[_-]?token|token)(\s*[=:]\s*)(\S+)"
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-+/=]{10,}")

_KNOWN_TOKENS = (
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "[REDACTED_AWS_KEY]"),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"), "[REDACTED_GITHUB_TOKEN]"),
    (re.compile(r"\bxox[baprs]-[0-9A-Za-z-]+"), "[REDACTED_SLACK_TOKEN]"),
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{16,}"), "[REDACTED_TOKEN]"),
    (re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_-]{16,}"), "[REDACTED_TOKEN]"),
)


def redact_sensitive_text(text: str) -> tuple[str, int]:
    """Redact likely secrets in *text*; return ``(redacted, hit_count)``.

    Conservative on purpose: log lines keep their shape so the analysis still
    sees the error signal.
    """
    redacted = str(text or "")
    if not redacted:
        return "", 0

    hits = 0
    redacted, count = _PRIVATE_KEY_BLOCK_RE.subn("[REDACTED_PRIVATE_KEY_BLOCK]", redacted)
    hits += count
    for pattern, replacement in _KNOWN_TOKENS:
        redacted, count = pattern.subn(replacement, redacted)
        hits += count
    redacted, count = _BEARER_RE.subn("Bearer [REDACTED]", redacted)
    hits += count
    redacted, count = _ASSIGNMENT_SECRET_RE.subn(r"\1\2[REDACTED]", redacted)
    hits += count
    return redacted, hits


def sha256_hex(text: str) -> str:
    return hashlib.sha256(str(text or "").encode("utf-8")).hexdigest()


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    """Length and short digest of a prompt, for log lines that must not leak it."""
    text = str(prompt or "")
    return {"length_chars": len(text), "sha256": sha256_hex(text)[:16]}
