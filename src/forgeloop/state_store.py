"""Persistence ports for router and blocker state.

Both state files use plain ``KEY=value`` lines so they stay readable (and
editable) by operators.  Every save rewrites the whole file atomically; a
missing file means "defaults".
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from pydantic import BaseModel

from forgeloop.file_io import atomic_write_text, read_text_or_empty
from forgeloop.schemas import Backend, BlockerState, RouterState

logger = logging.getLogger(__name__)

StateT = TypeVar("StateT", bound=BaseModel)

ROUTER_STATE_FILENAME = "state"
DAEMON_STATE_FILENAME = "daemon.state"

_LIMIT_KEYS = {
    Backend.CLAUDE: "CLAUDE_RATE_LIMITED_UNTIL",
    Backend.CODEX: "CODEX_RATE_LIMITED_UNTIL",
}


class StateStore(Protocol[StateT]):
    """Load/save port; the router and blocker detector only see this."""

    def load(self) -> StateT: ...

    def save(self, state: StateT) -> None: ...


def parse_key_values(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, ignoring blanks, comments and junk."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        values[key] = value.strip().strip("'\"")
    return values


def format_key_values(values: dict[str, object]) -> str:
    return "".join(f"{key}={'' if value is None else value}\n" for key, value in values.items())


def _as_int(raw: str | None) -> int:
    try:
        return max(0, int(str(raw or "0").strip() or "0"))
    except ValueError:
        return 0


# ---------------------------------------------------------------------------
# Router state
# ---------------------------------------------------------------------------


def router_state_from_values(values: dict[str, str]) -> RouterState:
    backend_raw = values.get("AI_MODEL", "").strip().lower()
    try:
        active = Backend(backend_raw) if backend_raw else Backend.CLAUDE
    except ValueError:
        logger.warning("Unknown AI_MODEL %r in state file; using claude", backend_raw)
        active = Backend.CLAUDE
    return RouterState(
        active_backend=active,
        rate_limit_until={b: _as_int(values.get(key)) for b, key in _LIMIT_KEYS.items()},
    )


def router_state_to_values(state: RouterState) -> dict[str, object]:
    return {
        "AI_MODEL": state.active_backend.value,
        _LIMIT_KEYS[Backend.CLAUDE]: state.limited_until(Backend.CLAUDE),
        _LIMIT_KEYS[Backend.CODEX]: state.limited_until(Backend.CODEX),
    }


class RouterStateFile:
    """``.forgeloop/state`` with ``AI_MODEL`` and the two limit timestamps."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> RouterState:
        try:
            return router_state_from_values(parse_key_values(read_text_or_empty(self.path)))
        except OSError as exc:
            logger.warning("Could not read router state %s: %s", self.path, exc)
            return RouterState()

    def save(self, state: RouterState) -> None:
        atomic_write_text(self.path, format_key_values(router_state_to_values(state)))


# ---------------------------------------------------------------------------
# Blocker state
# ---------------------------------------------------------------------------


class BlockerStateFile:
    """``.forgeloop/daemon.state`` holding the blocker counter and hash."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> BlockerState:
        try:
            values = parse_key_values(read_text_or_empty(self.path))
        except OSError as exc:
            logger.warning("Could not read daemon state %s: %s", self.path, exc)
            return BlockerState()
        return BlockerState(
            consecutive_count=_as_int(values.get("BLOCKED_ITERATION_COUNT")),
            last_fingerprint=values.get("LAST_BLOCKER_HASH") or None,
        )

    def save(self, state: BlockerState) -> None:
        atomic_write_text(
            self.path,
            format_key_values(
                {
                    "BLOCKED_ITERATION_COUNT": state.consecutive_count,
                    "LAST_BLOCKER_HASH": state.last_fingerprint or "",
                }
            ),
        )


class MemoryStore(Generic[StateT]):
    """In-process store; hands out copies so callers cannot alias saved state."""

    def __init__(self, initial: StateT) -> None:
        self._state = initial.model_copy(deep=True)
        self.save_count = 0

    def load(self) -> StateT:
        return self._state.model_copy(deep=True)

    def save(self, state: StateT) -> None:
        self._state = state.model_copy(deep=True)
        self.save_count += 1
