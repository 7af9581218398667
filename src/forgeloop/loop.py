"""Iteration-loop orchestrator.

The :class:`IterationLoop` runs plan, plan-work, review or build iterations:
each one routes the prompt to a backend, runs the review and security gates,
and pushes the branch.  Backend failures are absorbed by the router; the only
failure that ends the loop early is "no backend available" (exit code 127).
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from forgeloop import git_tools
from forgeloop.branch_sync import BranchSynchronizer
from forgeloop.config import ForgeloopConfig
from forgeloop.file_io import read_text_or_empty
from forgeloop.gates import ReviewGate, SecurityGate
from forgeloop.notify import NullNotifier, Notifier
from forgeloop.router import ExecutionRouter
from forgeloop.schemas import RouterState, TaskType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXIT_OK: int = 0
EXIT_USAGE: int = 1
EXIT_NO_BACKEND: int = 127
"""Distinguished exit code: neither backend CLI is installed."""

DEFAULT_PLAN_WORK_ITERATIONS: int = 5

LOOP_MODES = (TaskType.PLAN, TaskType.PLAN_WORK, TaskType.REVIEW, TaskType.BUILD)

_WORK_SCOPE_RE = re.compile(r"\$\{WORK_SCOPE\}|\$WORK_SCOPE\b")


class LoopUsageError(ValueError):
    """Raised when a loop cannot start (bad mode, missing prompt, wrong branch)."""


def render_prompt(template: str, work_scope: str = "") -> str:
    """Substitute ``$WORK_SCOPE`` / ``${WORK_SCOPE}`` in a prompt template."""
    return _WORK_SCOPE_RE.sub(lambda _m: work_scope, template)


def prepend_context(prompt: str, context_paths: list[Path]) -> str:
    """Prefix *prompt* with each existing context file, last path outermost."""
    for path in context_paths:
        if path.is_file():
            prompt = read_text_or_empty(path) + "\n\n" + prompt
    return prompt


class IterationLoop:
    """Run up to ``max_iterations`` iterations of one mode.

    Parameters
    ----------
    repo_path:
        Repository the backends work in.
    config:
        Effective :class:`ForgeloopConfig`.
    router:
        Router used for every iteration (and for review-fix tasks).
    mode:
        ``plan``, ``plan-work``, ``review`` or ``build``.
    max_iterations:
        Iteration budget; ``0`` means unbounded.  ``review`` always runs once.
    work_scope:
        Required for ``plan-work``; substituted into the prompt.
    """

    def __init__(
        self,
        repo_path: str | Path,
        config: ForgeloopConfig,
        router: ExecutionRouter,
        *,
        mode: TaskType | str = TaskType.BUILD,
        max_iterations: int = 0,
        work_scope: str = "",
        notifier: Notifier | None = None,
        review_gate: ReviewGate | None = None,
        security_gate: SecurityGate | None = None,
        synchronizer: BranchSynchronizer | None = None,
        branch: str | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        if not self.repo_path.is_dir():
            raise LoopUsageError(f"Repository path does not exist: {self.repo_path}")

        parsed_mode = TaskType.parse(mode)
        if parsed_mode not in LOOP_MODES:
            raise LoopUsageError(f"Unsupported loop mode: {mode}")
        if max_iterations < 0:
            raise LoopUsageError("max_iterations must be >= 0")

        self.config = config
        self.router = router
        self.mode = parsed_mode
        self.max_iterations = 1 if parsed_mode == TaskType.REVIEW else max_iterations
        self.work_scope = work_scope.strip()
        self.notifier = notifier or NullNotifier()
        self.review_gate = review_gate or ReviewGate(
            self.repo_path,
            router,
            enabled=config.codex_review_enabled,
            max_diff_chars=config.max_diff_chars,
            test_cmd=config.test_cmd,
        )
        self.security_gate = security_gate or SecurityGate(
            self.repo_path,
            router,
            notifier=self.notifier,
            enabled=config.security_gate_enabled,
            max_diff_chars=config.max_diff_chars,
        )
        self.synchronizer = synchronizer or BranchSynchronizer(
            self.repo_path,
            remote=config.git_remote,
            protected_branches=config.protected_branches,
            autopush=config.autopush,
            notifier=self.notifier,
        )
        self.branch = branch or _current_branch_or_unknown(self.repo_path)

        if self.mode == TaskType.PLAN_WORK:
            if not self.work_scope:
                raise LoopUsageError("plan-work requires a work description")
            if config.is_protected_branch(self.branch):
                raise LoopUsageError(
                    f"plan-work should be run on a work branch, not {self.branch}"
                )

        self.session_context = (
            config.repo_file(self.repo_path, config.session_context_file)
            if config.session_context_file
            else None
        )
        self._extra_context = [
            config.repo_file(self.repo_path, p) for p in config.extra_context_files
        ]

        self.prompt_path = self._prompt_path()
        if self.prompt_path is not None and not self.prompt_path.is_file():
            raise LoopUsageError(f"{self.prompt_path.name} not found")

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self, state: RouterState | None = None) -> int:
        """Run the loop; return the process exit code."""
        state = state if state is not None else self.router.store.load()
        budget = str(self.max_iterations) if self.max_iterations else "∞"
        logger.info(
            "Starting loop: mode=%s, branch=%s, prompt=%s, max_iterations=%s",
            self.mode.value,
            self.branch,
            self.prompt_path.name if self.prompt_path else "<git diff>",
            budget,
        )
        logger.info(
            "Routing: task_routing=%s, failover=%s, autopush=%s",
            self.router.task_routing,
            self.router.failover_enabled,
            self.synchronizer.autopush,
        )
        self.notifier.notify(
            "🚀", "Forgeloop Started", f"Mode: {self.mode.value} | Branch: {self.branch}"
        )

        iteration = 0
        while not self.max_iterations or iteration < self.max_iterations:
            logger.info("──── Iteration %d / %s ────", iteration + 1, budget)
            result, state = self.router.route(state, self.mode, self.build_prompt())
            if result.unavailable:
                logger.error("No backend available; stopping loop")
                self.notifier.notify(
                    "🚨", "No Backend Available", "Neither the codex nor the claude CLI was found"
                )
                return EXIT_NO_BACKEND
            if not result.success:
                logger.warning(
                    "Iteration %d ended with %s (exit=%d)",
                    iteration + 1,
                    result.classification.value,
                    result.exit_code,
                )

            if self.mode == TaskType.BUILD:
                state = self.review_gate.run(state)
            state = self.security_gate.run(state)
            self.synchronizer.push_branch(self.branch)

            iteration += 1
            every = self.config.progress_notify_every
            if every and iteration % every == 0:
                backend = state.active_backend.label
                self.notifier.notify(
                    "🔄",
                    "Forgeloop Progress",
                    f"Completed {iteration} iterations on {self.branch} (model: {backend})",
                )

        logger.info("Reached max iterations: %d", self.max_iterations)
        return EXIT_OK

    def build_prompt(self) -> str:
        """Prompt for the next iteration (re-read so edits between iterations apply).

        The session context file is prepended every time; extra context files
        only to the first prompt.
        """
        if self.prompt_path is None:
            prompt = git_tools.diff_text(self.repo_path)
        else:
            prompt = render_prompt(read_text_or_empty(self.prompt_path), self.work_scope)
        context = [self.session_context] if self.session_context else []
        context.extend(self._extra_context)
        self._extra_context = []
        return prepend_context(prompt, context)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prompt_path(self) -> Path | None:
        if self.mode == TaskType.REVIEW:
            return None
        name = {
            TaskType.PLAN: self.config.prompt_plan,
            TaskType.PLAN_WORK: self.config.prompt_plan_work,
        }.get(self.mode, self.config.prompt_build)
        return self.config.repo_file(self.repo_path, name)


def _current_branch_or_unknown(repo: Path) -> str:
    try:
        return git_tools.current_branch(repo)
    except git_tools.GitError:
        return "unknown"
