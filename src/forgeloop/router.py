"""Execution router: backend selection, failover and rate-limit backoff.

The router owns no hidden globals.  Callers pass the current
:class:`RouterState` in and get the updated state back together with the
:class:`InvocationResult`; every mutation is also written through the
injected state store so a separate process (the next loop run) sees it.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable, Mapping
from pathlib import Path

# Imported for their runner registrations.
import forgeloop.claude_code  # noqa: F401
import forgeloop.codex_cli  # noqa: F401
from forgeloop.agent_runner import BackendRunner, get_runner_class
from forgeloop.config import ForgeloopConfig
from forgeloop.notify import NullNotifier, Notifier
from forgeloop.rate_limits import estimate_resume_seconds, format_duration
from forgeloop.runner_common import EXIT_COMMAND_NOT_FOUND
from forgeloop.schemas import Backend, Classification, InvocationResult, RouterState, TaskType
from forgeloop.state_store import StateStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AUTH_FAILURE_COOLDOWN_SECONDS: int = 86_400
"""Auth failures disable a backend for a day rather than guessing a reset."""

DEFAULT_MAX_ATTEMPTS: int = 4
"""Upper bound on invocations per routed call (failover + sleep-retry)."""

DEFAULT_ROUTING_TABLE: dict[TaskType, Backend] = {
    TaskType.PLAN: Backend.CODEX,
    TaskType.PLAN_WORK: Backend.CODEX,
    TaskType.REVIEW: Backend.CODEX,
    TaskType.SECURITY: Backend.CODEX,
    TaskType.BUILD: Backend.CLAUDE,
}


def build_runners(config: ForgeloopConfig) -> dict[Backend, BackendRunner]:
    """Instantiate both registered runners from configuration."""
    options: dict[Backend, dict[str, object]] = {
        Backend.CODEX: {
            "binary": config.codex_cli,
            "flags": config.codex_flags,
            "planning_config": config.codex_planning_config,
            "review_config": config.codex_review_config,
            "security_config": config.codex_security_config,
            "timeout": config.backend_timeout_seconds,
        },
        Backend.CLAUDE: {
            "binary": config.claude_cli,
            "flags": config.claude_flags,
            "model": config.claude_model,
            "timeout": config.backend_timeout_seconds,
        },
    }
    return {backend: get_runner_class(backend)(**kwargs) for backend, kwargs in options.items()}


class ExecutionRouter:
    """Route one task to a backend and absorb quota/auth failures.

    Parameters
    ----------
    repo_path:
        Working directory handed to the backend CLIs.
    runners:
        Runner per backend; a missing entry is treated like a missing binary.
    store:
        Persistence port for :class:`RouterState`.
    notifier:
        Receives auth-failure, failover and pause notifications.
    failover_enabled:
        Allow switching to the alternate backend.
    task_routing:
        When False every task prefers Claude (the build backend).
    force_backend:
        Operator override of the preferred backend.  Still subject to
        failover, unlike the per-call ``forced_backend`` of :meth:`route`.
    clock / sleep:
        Injected for tests; default to wall-clock time and ``time.sleep``.
    """

    def __init__(
        self,
        repo_path: str | Path,
        runners: Mapping[Backend, BackendRunner],
        store: StateStore[RouterState],
        *,
        notifier: Notifier | None = None,
        failover_enabled: bool = True,
        task_routing: bool = True,
        routing_table: Mapping[TaskType, Backend] | None = None,
        force_backend: Backend | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.repo_path = Path(repo_path)
        self.runners = dict(runners)
        self.store = store
        self.notifier = notifier or NullNotifier()
        self.failover_enabled = failover_enabled
        self.task_routing = task_routing
        self.routing_table = dict(routing_table or DEFAULT_ROUTING_TABLE)
        self.force_backend = force_backend
        self.max_attempts = max_attempts
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_config(
        cls,
        repo_path: str | Path,
        config: ForgeloopConfig,
        store: StateStore[RouterState],
        *,
        notifier: Notifier | None = None,
    ) -> ExecutionRouter:
        return cls(
            repo_path,
            build_runners(config),
            store,
            notifier=notifier,
            failover_enabled=config.failover_enabled,
            task_routing=config.task_routing,
            routing_table=config.routing_table,
            force_backend=config.force_backend,
            max_attempts=config.max_route_attempts,
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def preferred_backend(self, task: TaskType) -> Backend:
        """Static preference for *task*, before any rate-limit check."""
        if self.force_backend is not None:
            return self.force_backend
        if not self.task_routing:
            return Backend.CLAUDE
        return self.routing_table.get(task, Backend.CLAUDE)

    def is_installed(self, backend: Backend) -> bool:
        runner = self.runners.get(backend)
        return runner is not None and runner.available()

    def can_fail_over_to(self, state: RouterState, backend: Backend) -> bool:
        return (
            self.failover_enabled
            and self.is_installed(backend)
            and not state.is_limited(backend, self.clock())
        )

    def select_backend(self, state: RouterState, task: TaskType) -> Backend:
        """Preferred backend, swapped for the alternate while it cools down."""
        preferred = self.preferred_backend(task)
        now = self.clock()
        if state.is_limited(preferred, now):
            alternate = preferred.alternate
            if self.can_fail_over_to(state, alternate):
                logger.info(
                    "%s rate-limited until %s; failing over to %s",
                    preferred.label,
                    _format_epoch(state.limited_until(preferred)),
                    alternate.label,
                )
                return alternate
            logger.info("%s still rate-limited; invoking it anyway", preferred.label)
        return preferred

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(
        self,
        state: RouterState,
        task: TaskType | str,
        prompt: str,
        *,
        forced_backend: Backend | None = None,
    ) -> tuple[InvocationResult, RouterState]:
        """Run *prompt* for *task* and return ``(result, new_state)``.

        Never raises for backend failures.  Returns an ``unavailable`` result
        (exit code 127) when neither backend is installed.
        """
        task = TaskType.parse(task)
        state = state.model_copy(deep=True)
        forced = forced_backend
        swapped_for_missing = False
        slept = False
        attempts = 0
        result: InvocationResult | None = None

        while attempts < self.max_attempts:
            backend = forced or self.select_backend(state, task)

            if not self.is_installed(backend):
                alternate = backend.alternate
                if not swapped_for_missing and self.is_installed(alternate):
                    logger.warning(
                        "%s CLI not found; using %s instead", backend.label, alternate.label
                    )
                    forced = alternate
                    swapped_for_missing = True
                    continue
                logger.error("No backend CLI available (tried %s and %s)", backend.value, alternate.value)
                return self._unavailable(), state

            if state.active_backend != backend:
                state.active_backend = backend
                self.store.save(state)

            attempts += 1
            logger.info(
                "Routing task=%s to %s (attempt %d/%d)",
                task.value,
                backend.label,
                attempts,
                self.max_attempts,
            )
            result = self.runners[backend].invoke(self.repo_path, prompt, task)
            classification = result.classification

            if classification == Classification.UNAVAILABLE:
                if not swapped_for_missing and self.is_installed(backend.alternate):
                    forced = backend.alternate
                    swapped_for_missing = True
                    continue
                return self._unavailable(), state

            if classification == Classification.AUTH_FAILURE:
                next_backend = self._handle_auth_failure(state, backend)
                if next_backend is None:
                    return result, state
                forced = next_backend
                continue

            if classification == Classification.QUOTA_FAILURE:
                next_backend = self._handle_quota_failure(
                    state,
                    backend,
                    result.output_text,
                    may_sleep=not slept and attempts < self.max_attempts,
                )
                if next_backend is None:
                    return result, state
                slept = slept or next_backend == backend
                forced = next_backend
                continue

            if classification == Classification.SCHEMA_FAILURE:
                logger.warning(
                    "%s rejected the structured-output request for task=%s; skipping",
                    backend.label,
                    task.value,
                )
                self.notifier.notify(
                    "⚠️", "Schema Rejected", f"{backend.label} rejected the {task.value} schema"
                )
            return result, state

        logger.warning(
            "Giving up on task=%s after %d attempt(s)", task.value, self.max_attempts
        )
        return result or self._unavailable(), state

    def record_failure(self, state: RouterState, result: InvocationResult) -> RouterState:
        """Apply the rate limit implied by a one-off (gate) invocation, no retry."""
        backend = result.backend
        if backend is None:
            return state
        now = self.clock()
        if result.classification == Classification.AUTH_FAILURE:
            until = int(now) + AUTH_FAILURE_COOLDOWN_SECONDS
        elif result.classification == Classification.QUOTA_FAILURE:
            until = int(now) + estimate_resume_seconds(
                result.output_text, backend, now=dt.datetime.fromtimestamp(now)
            )
        else:
            return state
        state = state.model_copy(deep=True)
        state.rate_limit_until[backend] = until
        self.store.save(state)
        logger.warning(
            "%s %s during a gate run; limited until %s",
            backend.label,
            result.classification.value,
            _format_epoch(until),
        )
        return state

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _handle_auth_failure(self, state: RouterState, backend: Backend) -> Backend | None:
        """Disable *backend* for a day; return the failover target or ``None``."""
        until = int(self.clock()) + AUTH_FAILURE_COOLDOWN_SECONDS
        state.rate_limit_until[backend] = until
        self.store.save(state)
        logger.error("%s authentication failed; disabled until %s", backend.label, _format_epoch(until))
        self.notifier.notify(
            "🔐",
            f"{backend.label} Auth Failed",
            f"{backend.label} authentication failed. Re-authenticate the CLI to re-enable it.",
        )
        alternate = backend.alternate
        if self.can_fail_over_to(state, alternate):
            self.notifier.notify(
                "🔄", "Model Failover", f"Switching from {backend.label} to {alternate.label}"
            )
            return alternate
        return None

    def _handle_quota_failure(
        self, state: RouterState, backend: Backend, output: str, *, may_sleep: bool
    ) -> Backend | None:
        """Record the limit, then fail over or sleep it out once.

        Returns the backend to retry on, or ``None`` when the quota result
        should be returned as is.
        """
        now = self.clock()
        wait_seconds = estimate_resume_seconds(
            output, backend, now=dt.datetime.fromtimestamp(now)
        )
        state.rate_limit_until[backend] = int(now) + wait_seconds
        self.store.save(state)
        logger.warning(
            "%s rate-limited; resume estimated in %s",
            backend.label,
            format_duration(wait_seconds),
        )

        alternate = backend.alternate
        if self.can_fail_over_to(state, alternate):
            self.notifier.notify(
                "🔄",
                "Model Failover",
                f"{backend.label} rate-limited, switching to {alternate.label}",
            )
            return alternate

        if not may_sleep:
            logger.warning("%s rate-limited with no retry left; returning the failure", backend.label)
            return None

        logger.info("Sleeping %s until %s is available", format_duration(wait_seconds), backend.label)
        self.notifier.notify(
            "⏸️",
            f"{backend.label} Paused",
            f"Rate limited. Resuming in {format_duration(wait_seconds)}",
        )
        self.sleep(wait_seconds)
        state.rate_limit_until[backend] = 0
        self.store.save(state)
        return backend

    def _unavailable(self) -> InvocationResult:
        return InvocationResult(
            exit_code=EXIT_COMMAND_NOT_FOUND,
            output_text="No backend CLI available",
            classification=Classification.UNAVAILABLE,
        )


def _format_epoch(epoch: int) -> str:
    return dt.datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")
