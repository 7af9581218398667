"""Detect the loop spinning on the same unanswered questions.

The questions document is split into ``## Q-<n>`` sections.  A section is
open when it says it is awaiting a response and carries no answered marker.
The sorted open identifiers hash to a fingerprint; the same fingerprint on
``threshold`` consecutive daemon cycles means "blocked".
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path

from forgeloop.file_io import read_text_or_empty
from forgeloop.schemas import BlockerState
from forgeloop.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 3

_SECTION_RE = re.compile(r"^##\s+(Q-\d+)\b")
_AWAITING_RE = re.compile(r"awaiting response", re.IGNORECASE)
_ANSWERED_RE = re.compile(r"✅\s*answered|\banswered\s*:", re.IGNORECASE)


def open_question_ids(text: str) -> list[str]:
    """Identifiers of awaiting, unanswered sections, sorted."""
    open_ids: list[str] = []
    current: str | None = None
    awaiting = answered = False

    def _flush() -> None:
        if current is not None and awaiting and not answered:
            open_ids.append(current)

    for line in text.splitlines():
        if line.startswith("## "):
            _flush()
            match = _SECTION_RE.match(line)
            current = match.group(1) if match else None
            awaiting = answered = False
            continue
        if current is None:
            continue
        if _ANSWERED_RE.search(line):
            answered = True
        elif _AWAITING_RE.search(line):
            awaiting = True
    _flush()
    return sorted(set(open_ids))


def fingerprint_ids(ids: list[str]) -> str | None:
    """Order-independent hash of *ids*; ``None`` when there are none."""
    if not ids:
        return None
    joined = "\n".join(sorted(ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class BlockerDetector:
    """Counts consecutive cycles that see the same open-question fingerprint.

    Parameters
    ----------
    questions_path:
        The questions document.
    store:
        Persistence port for :class:`BlockerState`.
    threshold:
        Consecutive repeats that count as blocked.
    """

    def __init__(
        self,
        questions_path: str | Path,
        store: StateStore[BlockerState],
        *,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.questions_path = Path(questions_path)
        self.store = store
        self.threshold = threshold

    def current_fingerprint(self) -> str | None:
        return fingerprint_ids(open_question_ids(read_text_or_empty(self.questions_path)))

    def check_and_update(self) -> bool:
        """Update the counter for this cycle and report whether we are blocked."""
        state = self.store.load()
        fingerprint = self.current_fingerprint()

        if fingerprint is None:
            state = BlockerState()
            self.store.save(state)
            return False

        if fingerprint == state.last_fingerprint:
            state.consecutive_count += 1
            self.store.save(state)
            logger.info(
                "Repeated blocker detected (count: %d/%d)",
                state.consecutive_count,
                self.threshold,
            )
            return state.consecutive_count >= self.threshold

        state = BlockerState(consecutive_count=1, last_fingerprint=fingerprint)
        self.store.save(state)
        logger.info("New blocker detected, tracking...")
        return False

    def reset_after_cooldown(self) -> None:
        """Give the loop fresh attempts after a blocker pause.

        Only the counter resets; the fingerprint is kept, so an unchanged
        question needs another full ``threshold`` cycles to block again.
        """
        state = self.store.load()
        state.consecutive_count = 0
        self.store.save(state)
