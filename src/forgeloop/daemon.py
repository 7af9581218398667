"""Long-running supervisor around the iteration loop.

One cycle walks ``CHECK_PAUSE -> CHECK_BLOCKER -> CONSUME_FLAGS -> DISPATCH``
and then sleeps for the configured interval.  Iterations run as child
processes (``python -m forgeloop loop ...``) so every batch reloads router
state from disk; a failing child is logged and never stops the daemon.
"""

from __future__ import annotations

import logging
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from forgeloop import control
from forgeloop.blockers import BlockerDetector
from forgeloop.config import ForgeloopConfig
from forgeloop.control import ControlFlagConsumer, has_pending_tasks
from forgeloop.lock import instance_lock
from forgeloop.notify import NullNotifier, Notifier
from forgeloop.runner_common import run_shell_command
from forgeloop.state_store import DAEMON_STATE_FILENAME, BlockerStateFile

logger = logging.getLogger(__name__)

LOCK_FILENAME = "daemon.lock"
DEPLOY_OUTPUT_TAIL_LINES = 50


class DaemonPhase(str, Enum):
    IDLE = "idle"
    CHECK_PAUSE = "check_pause"
    CHECK_BLOCKER = "check_blocker"
    CONSUME_FLAGS = "consume_flags"
    DISPATCH = "dispatch"
    SLEEP = "sleep"


@dataclass(slots=True)
class CycleReport:
    """What one cycle did; returned for logging and tests."""

    phases: list[DaemonPhase] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    paused: bool = False
    blocked: bool = False


class DaemonActions(Protocol):
    """Side-effecting work the daemon dispatches."""

    def run_loop(self, mode: str, iterations: int) -> int: ...

    def run_ingest(self, args: list[str]) -> int: ...

    def run_deploy(self, command: str) -> int: ...


class SubprocessActions:
    """Runs loop and ingest batches as ``python -m forgeloop`` children."""

    def __init__(self, repo_path: str | Path, *, python: str | None = None) -> None:
        self.repo_path = Path(repo_path)
        self.python = python or sys.executable

    def _run_cli(self, *args: str) -> int:
        cmd = [self.python, "-m", "forgeloop", *args, "--repo", str(self.repo_path)]
        logger.debug("Spawning %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, cwd=self.repo_path, check=False).returncode
        except OSError as exc:
            logger.error("Could not start forgeloop child process: %s", exc)
            return 1

    def run_loop(self, mode: str, iterations: int) -> int:
        return self._run_cli("loop", mode, str(iterations))

    def run_ingest(self, args: list[str]) -> int:
        return self._run_cli("ingest-logs", *args)

    def run_deploy(self, command: str) -> int:
        outcome = run_shell_command(command, cwd=self.repo_path, process_name="deploy")
        tail = "\n".join(outcome.output_lines[-DEPLOY_OUTPUT_TAIL_LINES:])
        logger.info("Deploy exited %d\n%s", outcome.exit_code, tail)
        return outcome.exit_code


class DaemonSupervisor:
    """Single-instance supervisor driven by the control and questions documents.

    Parameters
    ----------
    repo_path:
        Repository root.
    config:
        Effective :class:`ForgeloopConfig`.
    actions:
        Dispatch target; defaults to :class:`SubprocessActions`.
    flags / blockers:
        Injected collaborators; built from *config* when omitted.
    stop_event:
        Set to stop at the next wait boundary (signals set it too).
    """

    def __init__(
        self,
        repo_path: str | Path,
        config: ForgeloopConfig,
        *,
        actions: DaemonActions | None = None,
        flags: ControlFlagConsumer | None = None,
        blockers: BlockerDetector | None = None,
        notifier: Notifier | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.config = config
        self.runtime_dir = config.runtime_path(self.repo_path)
        self.plan_path = config.repo_file(self.repo_path, config.plan_file)
        self.actions = actions or SubprocessActions(self.repo_path)
        self.flags = flags or ControlFlagConsumer(
            self.repo_path, config.repo_file(self.repo_path, config.requests_file)
        )
        self.blockers = blockers or BlockerDetector(
            config.repo_file(self.repo_path, config.questions_file),
            BlockerStateFile(self.runtime_dir / DAEMON_STATE_FILENAME),
            threshold=config.blocker_threshold,
        )
        self.notifier = notifier or NullNotifier()
        self.stop_event = stop_event or threading.Event()
        self.phase = DaemonPhase.IDLE

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def run(self, *, max_cycles: int | None = None) -> int:
        """Hold the instance lock and cycle until stopped; return the exit code."""
        with instance_lock(self.runtime_dir / LOCK_FILENAME) as acquired:
            if not acquired:
                logger.info("Another daemon instance is running. Exiting.")
                return 0
            previous = self._install_signal_handlers()
            try:
                return self._supervise(max_cycles)
            finally:
                for signum, handler in previous.items():
                    signal.signal(signum, handler)

    def _supervise(self, max_cycles: int | None) -> int:
        logger.info("Forgeloop daemon starting (interval: %ss)", self.config.daemon_interval_seconds)
        logger.info(
            "Blocker detection: max %d consecutive blocked iterations before %ss pause",
            self.config.blocker_threshold,
            self.config.blocker_pause_seconds,
        )
        self.notifier.notify(
            "🤖", "Forgeloop Daemon Started", f"Interval: {self.config.daemon_interval_seconds}s"
        )

        cycles = 0
        while not self.stop_event.is_set():
            try:
                report = self.run_cycle()
            except Exception:
                logger.exception("Daemon cycle failed; continuing")
                report = CycleReport()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if report.blocked:
                continue
            self.phase = DaemonPhase.SLEEP
            self.wait(self.config.daemon_interval_seconds)

        logger.info("Shutting down...")
        return 0

    def request_stop(self) -> None:
        self.stop_event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; True when interrupted by a stop request."""
        return self.stop_event.wait(max(0.0, seconds))

    def _install_signal_handlers(self) -> dict[int, Any]:
        """Route SIGINT/SIGTERM to :meth:`request_stop`; return the handlers replaced."""
        if threading.current_thread() is not threading.main_thread():
            return {}

        def _handle(signum: int, _frame: object) -> None:
            logger.info("Received signal %s", signal.Signals(signum).name)
            self.request_stop()

        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, _handle)
        return previous

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        report = CycleReport()

        self._enter(DaemonPhase.CHECK_PAUSE, report)
        if self.flags.has_flag(control.PAUSE):
            logger.info("Paused ([PAUSE] in %s). Sleeping...", self.flags.document_path.name)
            report.paused = True
            return report

        self._enter(DaemonPhase.CHECK_BLOCKER, report)
        if self.blockers.check_and_update():
            report.blocked = True
            self.pause_for_blocker()
            return report

        self._enter(DaemonPhase.CONSUME_FLAGS, report)
        if self.flags.try_consume(control.REPLAN):
            self._plan(report)
        if self.flags.try_consume(control.DEPLOY):
            self._deploy(report)
        if self.flags.try_consume(control.INGEST_LOGS):
            self._ingest(report)

        if self.stop_event.is_set():
            return report

        self._enter(DaemonPhase.DISPATCH, report)
        if not self.plan_path.exists():
            self._plan(report)
        if has_pending_tasks(self.plan_path):
            self._build(report)
        else:
            logger.info("No pending tasks. Sleeping...")
        return report

    def pause_for_blocker(self) -> None:
        seconds = self.config.blocker_pause_seconds
        minutes = seconds // 60
        logger.warning("Stuck on same blocker. Pausing for %dm...", minutes)
        self.notifier.notify(
            "⏸️",
            "Forgeloop Paused - Awaiting Input",
            f"Stuck on the same blocker for {self.config.blocker_threshold} cycles. "
            f"Pausing for {minutes}m. "
            f"Check {self.config.questions_file} for unanswered questions.",
        )
        self.wait(seconds)
        self.blockers.reset_after_cooldown()
        logger.info("Resuming after blocker pause...")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _enter(self, phase: DaemonPhase, report: CycleReport) -> None:
        self.phase = phase
        report.phases.append(phase)

    def _plan(self, report: CycleReport) -> None:
        logger.info("Running planning...")
        self.notifier.notify("📋", "Forgeloop Planning", "Starting plan")
        report.actions.append("plan")
        self._log_exit("plan", self.actions.run_loop("plan", 1))

    def _build(self, report: CycleReport) -> None:
        iterations = self.config.build_batch_iterations
        logger.info("Running build (%d iterations)...", iterations)
        self.notifier.notify("🔨", "Forgeloop Build", f"Starting build ({iterations} iterations)")
        report.actions.append("build")
        self._log_exit("build", self.actions.run_loop("build", iterations))

    def _deploy(self, report: CycleReport) -> None:
        command = self.config.deploy_cmd.strip()
        if not command:
            logger.warning("DEPLOY requested but FORGELOOP_DEPLOY_CMD not set; skipping")
            self.notifier.notify(
                "⚠️", "Forgeloop Deploy", "DEPLOY requested but no deploy command configured"
            )
            return
        logger.info("Running deploy: %s", command)
        self.notifier.notify("🚀", "Forgeloop Deploy", "Running deploy")
        report.actions.append("deploy")
        self._log_exit("deploy", self.actions.run_deploy(command))

        if self.config.post_deploy_ingest_logs:
            observe = self.config.post_deploy_observe_seconds
            if observe > 0:
                logger.info("Post-deploy observe: waiting %ss before ingesting logs...", observe)
                if self.wait(observe):
                    return
            self._ingest(report)

    def _ingest(self, report: CycleReport) -> None:
        args = self.ingest_args()
        if args is None:
            logger.warning(
                "INGEST_LOGS requested but FORGELOOP_INGEST_LOGS_CMD / "
                "FORGELOOP_INGEST_LOGS_FILE not set; skipping"
            )
            self.notifier.notify(
                "⚠️", "Forgeloop Log Ingest", "INGEST_LOGS requested but no log source configured"
            )
            return
        logger.info("Running log ingest...")
        self.notifier.notify("📥", "Forgeloop Log Ingest", "Analyzing logs into REQUESTS")
        report.actions.append("ingest")
        self._log_exit("ingest", self.actions.run_ingest(args))

    def ingest_args(self) -> list[str] | None:
        """CLI arguments for the configured log source, ``None`` when unset."""
        cfg = self.config
        if cfg.ingest_logs_cmd.strip():
            source = ["--cmd", cfg.ingest_logs_cmd]
        elif cfg.ingest_logs_file.strip():
            source = ["--file", cfg.ingest_logs_file]
        else:
            return None
        return [*source, "--source", "daemon", "--tail", str(cfg.ingest_logs_tail)]

    @staticmethod
    def _log_exit(action: str, exit_code: int) -> None:
        if exit_code != 0:
            logger.warning("%s exited with code %d", action, exit_code)
