"""Ordered text rules that classify backend output into failure classes.

Vendor error wording changes without notice, so every known signature lives
in :data:`DEFAULT_RULES` and nowhere else.  Rules are evaluated top to bottom
and the first match wins; auth rules therefore sit above quota rules.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from forgeloop.schemas import Backend, Classification, TaskType

_STRUCTURED_TASKS = frozenset({TaskType.REVIEW, TaskType.SECURITY})


@dataclass(frozen=True, slots=True)
class FailureRule:
    """One ``{pattern, classification}`` entry with its applicability scope.

    Parameters
    ----------
    pattern:
        Regular expression searched in the combined output.
    classification:
        Result class when the pattern matches.
    backends:
        Backends whose output the rule applies to.
    task_types:
        Restricts the rule to these task types; ``None`` means all.
    on_success_exit:
        When True the rule is also checked for exit code 0.  Reserved for
        structured error payloads a backend can emit while exiting cleanly.
    """

    pattern: re.Pattern[str]
    classification: Classification
    backends: frozenset[Backend]
    task_types: frozenset[TaskType] | None = None
    on_success_exit: bool = False

    def applies(self, backend: Backend, task: TaskType, exit_code: int) -> bool:
        if backend not in self.backends:
            return False
        if self.task_types is not None and task not in self.task_types:
            return False
        return exit_code != 0 or self.on_success_exit


def rule(
    pattern: str,
    classification: Classification,
    backends: Iterable[Backend],
    *,
    task_types: Iterable[TaskType] | None = None,
    on_success_exit: bool = False,
    flags: int = 0,
) -> FailureRule:
    return FailureRule(
        pattern=re.compile(pattern, flags),
        classification=classification,
        backends=frozenset(backends),
        task_types=frozenset(task_types) if task_types is not None else None,
        on_success_exit=on_success_exit,
    )


_CLAUDE = (Backend.CLAUDE,)
_CODEX = (Backend.CODEX,)

DEFAULT_RULES: tuple[FailureRule, ...] = (
    # -- auth ------------------------------------------------------------------
    rule(
        r'(?m)^\{"type":"result".*"is_error":\s*true.*(authentication_error|Invalid API key)',
        Classification.AUTH_FAILURE,
        _CLAUDE,
        on_success_exit=True,
    ),
    rule(
        r"(invalid.*api.key|Invalid API Key|authentication_error|unauthorized"
        r"|Could not resolve authentication)",
        Classification.AUTH_FAILURE,
        _CLAUDE,
    ),
    rule(
        r"(Failed to refresh token|refresh token.*reused|token.*expired|Please.*sign in again"
        r"|Invalid API Key|Incorrect API key|invalid_api_key)",
        Classification.AUTH_FAILURE,
        _CODEX,
    ),
    # -- schema (structured-output tasks only) --------------------------------
    rule(
        r"(Invalid schema for response_format|invalid_json_schema"
        r"|additionalProperties.*required|required.*is required to be supplied)",
        Classification.SCHEMA_FAILURE,
        _CODEX,
        task_types=_STRUCTURED_TASKS,
    ),
    # -- quota -----------------------------------------------------------------
    rule(
        r'(?m)^\{"type":"result".*"is_error":\s*true.*(rate_limit_error|Usage limit reached'
        r"|credit balance is too low)",
        Classification.QUOTA_FAILURE,
        _CLAUDE,
        on_success_exit=True,
    ),
    rule(
        r'("error":\s*\{"type":"rate_limit|anthropic.*rate.*limit|Usage limit reached'
        r"|You.ve run out of|credit balance is too low)",
        Classification.QUOTA_FAILURE,
        _CLAUDE,
        flags=re.IGNORECASE,
    ),
    rule(
        r"(openai.*rate.*limit|Rate limit reached for|You exceeded your current quota"
        r"|Request too large|usage limit)",
        Classification.QUOTA_FAILURE,
        _CODEX,
        flags=re.IGNORECASE,
    ),
)


def classify_output(
    output: str,
    *,
    backend: Backend,
    task: TaskType,
    exit_code: int,
    rules: Sequence[FailureRule] = DEFAULT_RULES,
) -> Classification:
    """Classify one invocation from its exit code and combined output."""
    text = output or ""
    for candidate in rules:
        if candidate.applies(backend, task, exit_code) and candidate.pattern.search(text):
            return candidate.classification
    if exit_code == 0:
        return Classification.SUCCESS
    return Classification.OTHER_FAILURE
