"""Reconcile the local branch with its remote before (and after a failed) push."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from forgeloop import git_tools
from forgeloop.git_tools import GitError
from forgeloop.notify import NullNotifier, Notifier
from forgeloop.schemas import SyncDecision

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_BRANCHES = ("main", "master")


def decide_sync(local: str, remote: str, base: str, *, protected: bool) -> SyncDecision:
    """Pick the reconciliation strategy from the three commit ids.

    Protected branches are merged into and never rebased.
    """
    if local == remote:
        return SyncDecision.NOOP
    if local == base:
        return SyncDecision.FAST_FORWARD
    if remote == base:
        return SyncDecision.NOOP
    return SyncDecision.MERGE if protected else SyncDecision.REBASE


class BranchSynchronizer:
    """Fetch, compare and reconcile one branch against ``<remote>/<branch>``.

    Parameters
    ----------
    repo_path:
        Repository working tree.
    remote:
        Remote name (``origin`` by default).
    protected_branches:
        Branch names that are merged, never rebased.
    autopush:
        When False :meth:`push_branch` is a logged no-op.
    notifier:
        Receives "Push Failed" notifications.
    """

    def __init__(
        self,
        repo_path: str | Path,
        *,
        remote: str = "origin",
        protected_branches: Iterable[str] = DEFAULT_PROTECTED_BRANCHES,
        autopush: bool = False,
        notifier: Notifier | None = None,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.protected_branches = frozenset(protected_branches)
        self.autopush = autopush
        self.notifier = notifier or NullNotifier()

    def sync_before_push(self, branch: str) -> bool:
        """Bring *branch* up to date with its remote; False means manual fix needed."""
        repo = self.repo_path
        try:
            if not git_tools.has_remote(repo, self.remote):
                logger.info("No git remote '%s'; skipping sync", self.remote)
                return True
            if not git_tools.is_clean(repo):
                logger.info("Working tree dirty; skipping sync with %s/%s", self.remote, branch)
                return True
            if not git_tools.fetch(repo, self.remote, branch):
                logger.warning("git fetch failed; skipping sync")
                return True
            if not git_tools.remote_ref_exists(repo, self.remote, branch):
                logger.info("No %s/%s yet; first push will create it", self.remote, branch)
                return True

            remote_ref = f"{self.remote}/{branch}"
            local_sha = git_tools.rev_parse(repo, branch)
            remote_sha = git_tools.rev_parse(repo, remote_ref)
            if not local_sha or not remote_sha:
                return True
            if local_sha == remote_sha:
                return True
            base_sha = git_tools.merge_base(repo, branch, remote_ref)
            if not base_sha:
                logger.warning("%s and %s share no history; skipping sync", branch, remote_ref)
                return True

            decision = decide_sync(
                local_sha,
                remote_sha,
                base_sha,
                protected=branch in self.protected_branches,
            )
            return self._apply(decision, branch, remote_ref)
        except GitError as exc:
            logger.error("Branch sync for %s failed: %s", branch, exc)
            return False

    def _apply(self, decision: SyncDecision, branch: str, remote_ref: str) -> bool:
        repo = self.repo_path
        if decision == SyncDecision.NOOP:
            return True
        if decision == SyncDecision.FAST_FORWARD:
            logger.info("Fast-forwarding %s to %s", branch, remote_ref)
            if not git_tools.merge_ff_only(repo, remote_ref):
                logger.error("Fast-forward failed; manual intervention required")
                return False
            return True
        if decision == SyncDecision.MERGE:
            logger.info("Branch %s diverged from %s; merging", branch, remote_ref)
            return self._merge(remote_ref)

        logger.info("Branch %s diverged from %s; rebasing local commits", branch, remote_ref)
        if git_tools.rebase(repo, remote_ref):
            return True
        logger.warning("Rebase failed; aborting and attempting merge")
        git_tools.rebase_abort(repo)
        return self._merge(remote_ref)

    def _merge(self, remote_ref: str) -> bool:
        if git_tools.merge_no_edit(self.repo_path, remote_ref):
            return True
        logger.error("Merge with %s failed; aborting, manual intervention required", remote_ref)
        git_tools.merge_abort(self.repo_path)
        return False

    def push_branch(self, branch: str) -> bool:
        """Push once; on failure sync and push exactly once more."""
        repo = self.repo_path
        if not self.autopush:
            logger.info("Autopush disabled; skipping push")
            return True
        try:
            if not git_tools.has_remote(repo, self.remote):
                logger.info("No git remote '%s' configured; skipping push", self.remote)
                return True
            if git_tools.push(repo, self.remote, branch):
                return True
        except GitError as exc:
            logger.warning("Push for %s raised: %s", branch, exc)

        logger.warning("Push failed for %s; syncing with %s and retrying", branch, self.remote)
        if not self.sync_before_push(branch):
            self.notifier.notify(
                "🚨",
                "Push Failed",
                f"Failed to sync with {self.remote}/{branch}. Manual intervention required.",
            )
            return False
        try:
            pushed = git_tools.push(repo, self.remote, branch)
        except GitError as exc:
            logger.error("Retry push for %s raised: %s", branch, exc)
            pushed = False
        if not pushed:
            self.notifier.notify(
                "🚨",
                "Push Failed",
                f"Failed to push {branch} after sync. Manual intervention required.",
            )
        return pushed
