"""Estimate how long a rate-limited backend needs before it is retried."""

from __future__ import annotations

import datetime as dt
import re

from forgeloop.schemas import Backend

SAFETY_MARGIN_SECONDS = 300

DEFAULT_RESUME_SECONDS: dict[Backend, int] = {
    # Claude plan windows reset on a ~5 hour cadence.
    Backend.CLAUDE: 5 * 3600 + SAFETY_MARGIN_SECONDS,
    Backend.CODEX: 3600,
}

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}

_RELATIVE_RE = re.compile(
    r"resets?\s+in\s+(\d+)\s*(seconds?|secs?|minutes?|mins?|hours?|hrs?|[smh])\b",
    re.IGNORECASE,
)
_CLOCK_12H_RE = re.compile(
    r"resets?(?:\s+at)?\s+(\d{1,2})(?::(\d{2}))?\s*([ap])\.?m\.?",
    re.IGNORECASE,
)
_CLOCK_24H_RE = re.compile(r"resets?(?:\s+at)?\s+(\d{1,2}):(\d{2})\b", re.IGNORECASE)


def _relative_seconds(output: str) -> int | None:
    match = _RELATIVE_RE.search(output)
    if not match:
        return None
    amount = int(match.group(1))
    unit = match.group(2).lower()[0]
    return amount * _UNIT_SECONDS[unit]


def _clock_target(output: str) -> tuple[int, int] | None:
    """Return the ``(hour, minute)`` named by an absolute reset phrase."""
    match = _CLOCK_12H_RE.search(output)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridiem = match.group(3).lower()
        if not 1 <= hour <= 12 or minute > 59:
            return None
        if meridiem == "p" and hour != 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
        return hour, minute

    match = _CLOCK_24H_RE.search(output)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        return hour, minute
    return None


def seconds_until_clock(hour: int, minute: int, now: dt.datetime) -> int:
    """Seconds from *now* until the next local ``hour:minute``."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target < now:
        target += dt.timedelta(days=1)
    return int((target - now).total_seconds())


def estimate_resume_seconds(
    output: str,
    backend: Backend,
    now: dt.datetime | None = None,
) -> int:
    """Return a positive number of seconds to wait before retrying *backend*.

    A relative phrase ("resets in 20 minutes") wins over an absolute one
    ("resets at 3:45pm").  Both get :data:`SAFETY_MARGIN_SECONDS` added.
    Without either, the per-backend default applies.
    """
    text = output or ""
    relative = _relative_seconds(text)
    if relative is not None:
        return max(1, relative + SAFETY_MARGIN_SECONDS)

    clock = _clock_target(text)
    if clock is not None:
        current = now if now is not None else dt.datetime.now()
        return max(1, seconds_until_clock(*clock, current) + SAFETY_MARGIN_SECONDS)

    return DEFAULT_RESUME_SECONDS[backend]


def format_duration(seconds: int) -> str:
    """Render a wait as ``"5h 5m"`` for log lines and notifications."""
    hours, remainder = divmod(max(0, int(seconds)), 3600)
    return f"{hours}h {remainder // 60}m"
