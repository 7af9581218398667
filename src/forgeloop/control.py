"""Operator directives in the control document and plan-document queries.

Directives are bracketed tokens (``[PAUSE]``, ``[REPLAN]`` ...) anywhere in
the control document.  Consuming one removes every occurrence and commits
the rewrite *before* reporting it, so a directive is actioned at most once
even if the action itself later fails.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from forgeloop.file_io import atomic_write_text, read_text_or_empty
from forgeloop.git_tools import GitError, commit_paths

logger = logging.getLogger(__name__)

PAUSE = "PAUSE"
REPLAN = "REPLAN"
DEPLOY = "DEPLOY"
INGEST_LOGS = "INGEST_LOGS"

_PENDING_TASK_RE = re.compile(r"^\s*- \[ \]", re.MULTILINE)


def directive_token(name: str) -> str:
    """``"replan"`` / ``"[REPLAN]"`` -> ``"[REPLAN]"``."""
    bare = str(name or "").strip().strip("[]").strip().upper()
    if not bare:
        raise ValueError("Directive name must be non-empty")
    return f"[{bare}]"


def strip_token(text: str, token: str) -> str:
    """Remove every occurrence of *token*; lines holding only the token go away."""
    kept: list[str] = []
    for line in text.splitlines(keepends=True):
        if line.strip() == token:
            continue
        kept.append(line.replace(token, ""))
    return "".join(kept)


class ControlFlagConsumer:
    """Presence checks and one-shot consumption of control-document directives.

    Parameters
    ----------
    repo_path:
        Repository the consumption commit is recorded in.
    document_path:
        The control document (``REQUESTS.md`` by default).
    commit:
        Commit each rewrite.  Disabled for repositories without git.
    """

    def __init__(self, repo_path: str | Path, document_path: str | Path, *, commit: bool = True) -> None:
        self.repo_path = Path(repo_path)
        self.document_path = Path(document_path)
        self.commit = commit

    def has_flag(self, name: str) -> bool:
        return directive_token(name) in read_text_or_empty(self.document_path)

    def try_consume(self, name: str) -> bool:
        """Remove *name* from the document and commit; True when it was present."""
        token = directive_token(name)
        text = read_text_or_empty(self.document_path)
        if token not in text:
            return False

        atomic_write_text(self.document_path, strip_token(text, token))
        logger.info("Consumed %s from %s", token, self.document_path.name)
        if self.commit:
            bare = token.strip("[]")
            try:
                commit_paths(self.repo_path, [self.document_path], f"forgeloop: processed {bare}")
            except GitError as exc:
                logger.warning("Could not commit removal of %s: %s", token, exc)
        return True


def has_pending_tasks(plan_path: str | Path) -> bool:
    """True when the plan holds at least one unchecked ``- [ ]`` item."""
    return bool(_PENDING_TASK_RE.search(read_text_or_empty(Path(plan_path))))
