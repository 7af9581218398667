"""Unit tests for the execution router."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner, RecordingNotifier, make_result

from forgeloop.router import AUTH_FAILURE_COOLDOWN_SECONDS, ExecutionRouter
from forgeloop.schemas import Backend, Classification, RouterState, TaskType
from forgeloop.state_store import MemoryStore

NOW = 1_700_000_000.0


def _router(
    tmp_path: Path,
    codex: FakeRunner,
    claude: FakeRunner,
    *,
    notifier: RecordingNotifier | None = None,
    state: RouterState | None = None,
    sleeps: list[float] | None = None,
    **kwargs,
) -> ExecutionRouter:
    store = MemoryStore(state or RouterState())
    sleep_log = sleeps if sleeps is not None else []
    return ExecutionRouter(
        tmp_path,
        {Backend.CODEX: codex, Backend.CLAUDE: claude},
        store,
        notifier=notifier,
        clock=lambda: NOW,
        sleep=sleep_log.append,
        **kwargs,
    )


class TestSelection:
    def test_build_goes_to_claude_and_never_codex(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude)

        result, state = router.route(RouterState(), TaskType.BUILD, "do it")

        assert result.success
        assert result.backend == Backend.CLAUDE
        assert len(claude.calls) == 1
        assert codex.calls == []
        assert state.active_backend == Backend.CLAUDE

    @pytest.mark.parametrize("task", [TaskType.PLAN, TaskType.PLAN_WORK, TaskType.REVIEW])
    def test_planning_tasks_prefer_codex(self, tmp_path: Path, task: TaskType):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude)

        _, state = router.route(RouterState(), task, "plan it")

        assert len(codex.calls) == 1
        assert claude.calls == []
        assert state.active_backend == Backend.CODEX

    def test_task_routing_disabled_uses_claude(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude, task_routing=False)

        router.route(RouterState(), TaskType.PLAN, "plan it")

        assert codex.calls == []
        assert len(claude.calls) == 1

    def test_force_backend_overrides_routing_table(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude, force_backend=Backend.CODEX)

        router.route(RouterState(), TaskType.BUILD, "build")

        assert len(codex.calls) == 1
        assert claude.calls == []

    def test_forced_backend_argument_wins(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude)

        router.route(RouterState(), TaskType.PLAN, "plan", forced_backend=Backend.CLAUDE)

        assert codex.calls == []
        assert len(claude.calls) == 1

    def test_limited_preferred_fails_over_without_invoking_it(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude)
        state = RouterState(rate_limit_until={Backend.CLAUDE: int(NOW) + 600})

        result, new_state = router.route(state, TaskType.BUILD, "build")

        assert result.backend == Backend.CODEX
        assert claude.calls == []
        assert new_state.active_backend == Backend.CODEX

    def test_limited_preferred_without_failover_is_invoked_anyway(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude, failover_enabled=False)
        state = RouterState(rate_limit_until={Backend.CLAUDE: int(NOW) + 600})

        router.route(state, TaskType.BUILD, "build")

        assert len(claude.calls) == 1
        assert codex.calls == []

    def test_route_does_not_mutate_callers_state(self, tmp_path: Path):
        codex, claude = FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude)
        original = RouterState(active_backend=Backend.CLAUDE)

        _, new_state = router.route(original, TaskType.PLAN, "plan")

        assert original.active_backend == Backend.CLAUDE
        assert new_state.active_backend == Backend.CODEX


class TestMissingBinaries:
    def test_neither_installed_returns_127(self, tmp_path: Path):
        codex = FakeRunner(Backend.CODEX, installed=False)
        claude = FakeRunner(Backend.CLAUDE, installed=False)
        router = _router(tmp_path, codex, claude)

        result, _ = router.route(RouterState(), TaskType.BUILD, "build")

        assert result.unavailable
        assert result.exit_code == 127
        assert codex.calls == [] and claude.calls == []

    def test_missing_claude_forces_codex_once(self, tmp_path: Path):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(Backend.CLAUDE, installed=False)
        router = _router(tmp_path, codex, claude, failover_enabled=False)

        result, state = router.route(RouterState(), TaskType.BUILD, "build")

        assert result.success
        assert result.backend == Backend.CODEX
        assert state.active_backend == Backend.CODEX

    def test_runner_reporting_unavailable_switches_to_alternate(self, tmp_path: Path):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.UNAVAILABLE, exit_code=127)],
        )
        router = _router(tmp_path, codex, claude)

        result, _ = router.route(RouterState(), TaskType.BUILD, "build")

        assert result.backend == Backend.CODEX
        assert len(codex.calls) == 1


class TestQuota:
    def test_quota_with_failover_switches_backend(self, tmp_path: Path, notifier):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.QUOTA_FAILURE, "resets in 45 minutes")],
        )
        router = _router(tmp_path, codex, claude, notifier=notifier)

        result, state = router.route(RouterState(), TaskType.BUILD, "build")

        assert result.backend == Backend.CODEX
        assert result.success
        assert state.limited_until(Backend.CLAUDE) == int(NOW) + 45 * 60 + 300
        assert state.active_backend == Backend.CODEX
        assert "Model Failover" in notifier.titles
        assert router.store.load().limited_until(Backend.CLAUDE) == int(NOW) + 3000

    def test_quota_without_failover_sleeps_then_retries(self, tmp_path: Path, notifier):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.QUOTA_FAILURE, "resets in 45 minutes")],
        )
        sleeps: list[float] = []
        router = _router(
            tmp_path, codex, claude, notifier=notifier, sleeps=sleeps, failover_enabled=False
        )

        result, state = router.route(RouterState(), TaskType.BUILD, "build")

        assert sleeps == [3000]
        assert len(claude.calls) == 2
        assert codex.calls == []
        assert result.success
        assert state.limited_until(Backend.CLAUDE) == 0
        assert "Claude Paused" in notifier.titles

    def test_sleeps_at_most_once_per_route(self, tmp_path: Path):
        quota = make_result(Backend.CLAUDE, Classification.QUOTA_FAILURE, "Usage limit reached")
        claude = FakeRunner(Backend.CLAUDE, [quota] * 10)
        codex = FakeRunner(Backend.CODEX)
        sleeps: list[float] = []
        router = _router(tmp_path, codex, claude, sleeps=sleeps, failover_enabled=False)

        result, state = router.route(RouterState(), TaskType.BUILD, "build")

        assert sleeps == [18300]
        assert len(claude.calls) == 2
        assert result.classification == Classification.QUOTA_FAILURE
        assert state.limited_until(Backend.CLAUDE) == int(NOW) + 18300

    def test_no_sleep_when_attempt_budget_is_spent(self, tmp_path: Path):
        quota = make_result(Backend.CLAUDE, Classification.QUOTA_FAILURE, "Usage limit reached")
        claude = FakeRunner(Backend.CLAUDE, [quota] * 10)
        sleeps: list[float] = []
        router = _router(
            tmp_path,
            FakeRunner(Backend.CODEX),
            claude,
            sleeps=sleeps,
            failover_enabled=False,
            max_attempts=1,
        )

        result, _ = router.route(RouterState(), TaskType.BUILD, "build")

        assert sleeps == []
        assert len(claude.calls) == 1
        assert result.classification == Classification.QUOTA_FAILURE

    def test_both_limited_sleeps_once_then_gives_up(self, tmp_path: Path):
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.QUOTA_FAILURE, "resets in 10 minutes")] * 5,
        )
        codex = FakeRunner(
            Backend.CODEX,
            [make_result(Backend.CODEX, Classification.QUOTA_FAILURE, "resets in 20 minutes")] * 5,
        )
        sleeps: list[float] = []
        router = _router(tmp_path, codex, claude, sleeps=sleeps)

        result, _ = router.route(RouterState(), TaskType.BUILD, "build")

        assert len(sleeps) == 1
        assert result.classification == Classification.QUOTA_FAILURE
        assert len(claude.calls) + len(codex.calls) <= 4

    def test_quota_without_reset_hint_uses_backend_default(self, tmp_path: Path):
        codex = FakeRunner(
            Backend.CODEX,
            [make_result(Backend.CODEX, Classification.QUOTA_FAILURE, "usage limit")],
        )
        claude = FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude)

        _, state = router.route(RouterState(), TaskType.PLAN, "plan")

        assert state.limited_until(Backend.CODEX) == int(NOW) + 3600
        assert len(claude.calls) == 1


class TestAuthAndSchema:
    def test_auth_failure_disables_backend_for_a_day(self, tmp_path: Path, notifier):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.AUTH_FAILURE, "authentication_error")],
        )
        router = _router(tmp_path, codex, claude, notifier=notifier)

        result, state = router.route(RouterState(), TaskType.BUILD, "build")

        assert result.backend == Backend.CODEX
        assert state.limited_until(Backend.CLAUDE) == int(NOW) + AUTH_FAILURE_COOLDOWN_SECONDS
        assert notifier.titles[:2] == ["Claude Auth Failed", "Model Failover"]

    def test_auth_failure_without_alternate_returns_failure(self, tmp_path: Path):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.AUTH_FAILURE, "authentication_error")],
        )
        state = RouterState(rate_limit_until={Backend.CODEX: int(NOW) + 60})
        router = _router(tmp_path, codex, claude)

        result, new_state = router.route(state, TaskType.BUILD, "build")

        assert result.classification == Classification.AUTH_FAILURE
        assert codex.calls == []
        assert new_state.is_limited(Backend.CLAUDE, NOW)

    def test_schema_failure_is_returned_without_retry(self, tmp_path: Path, notifier):
        codex = FakeRunner(
            Backend.CODEX,
            [make_result(Backend.CODEX, Classification.SCHEMA_FAILURE, "invalid_json_schema")],
        )
        claude = FakeRunner(Backend.CLAUDE)
        router = _router(tmp_path, codex, claude, notifier=notifier)

        result, _ = router.route(RouterState(), TaskType.REVIEW, "review")

        assert result.classification == Classification.SCHEMA_FAILURE
        assert len(codex.calls) == 1
        assert claude.calls == []
        assert "Schema Rejected" in notifier.titles

    def test_other_failure_is_returned_as_is(self, tmp_path: Path):
        codex = FakeRunner(Backend.CODEX)
        claude = FakeRunner(
            Backend.CLAUDE,
            [make_result(Backend.CLAUDE, Classification.OTHER_FAILURE, "boom", exit_code=2)],
        )
        router = _router(tmp_path, codex, claude)

        result, _ = router.route(RouterState(), TaskType.BUILD, "build")

        assert result.exit_code == 2
        assert len(claude.calls) == 1
        assert codex.calls == []


class TestRecordFailure:
    def test_gate_quota_failure_sets_limit(self, tmp_path: Path):
        router = _router(tmp_path, FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE))
        failed = make_result(Backend.CODEX, Classification.QUOTA_FAILURE, "resets in 10m")

        state = router.record_failure(RouterState(), failed)

        assert state.limited_until(Backend.CODEX) == int(NOW) + 600 + 300
        assert router.store.load().limited_until(Backend.CODEX) == int(NOW) + 900

    def test_gate_success_leaves_state_alone(self, tmp_path: Path):
        router = _router(tmp_path, FakeRunner(Backend.CODEX), FakeRunner(Backend.CLAUDE))

        state = router.record_failure(RouterState(), make_result(Backend.CODEX))

        assert state == RouterState()
        assert router.store.save_count == 0
