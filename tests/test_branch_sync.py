"""Tests for branch synchronization and push retry."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import commit_file, git, init_repo

from forgeloop.branch_sync import BranchSynchronizer, decide_sync
from forgeloop.schemas import SyncDecision


class TestDecideSync:
    @pytest.mark.parametrize(
        "local,remote,base,protected,expected",
        [
            ("a", "a", "a", False, SyncDecision.NOOP),
            ("a", "b", "a", False, SyncDecision.FAST_FORWARD),
            ("b", "a", "a", False, SyncDecision.NOOP),
            ("b", "c", "a", True, SyncDecision.MERGE),
            ("b", "c", "a", False, SyncDecision.REBASE),
        ],
    )
    def test_table(self, local, remote, base, protected, expected):
        assert decide_sync(local, remote, base, protected=protected) == expected


def _clone_pair(tmp_path: Path) -> tuple[Path, Path, Path]:
    """Bare origin plus two clones (``work`` and ``other``) on ``main``."""
    origin = init_repo(tmp_path / "origin.git", bare=True)
    seed = init_repo(tmp_path / "seed")
    commit_file(seed, "README.md", "seed\n", "seed")
    git(seed, "remote", "add", "origin", str(origin))
    git(seed, "push", "origin", "main")

    clones = []
    for name in ("work", "other"):
        git(tmp_path, "clone", "-b", "main", str(origin), name)
        clone = tmp_path / name
        git(clone, "config", "user.email", "dev@example.com")
        git(clone, "config", "user.name", "Forgeloop Tests")
        git(clone, "config", "commit.gpgsign", "false")
        clones.append(clone)
    return origin, clones[0], clones[1]


@pytest.mark.integration
class TestSyncWithRealRemote:
    def test_behind_fast_forwards_without_merge_commit(self, tmp_path: Path):
        _, work, other = _clone_pair(tmp_path)
        remote_sha = commit_file(other, "feature.txt", "x\n", "remote work")
        git(other, "push", "origin", "main")

        sync = BranchSynchronizer(work)
        assert sync.sync_before_push("main") is True

        assert git(work, "rev-parse", "HEAD") == remote_sha
        assert git(work, "rev-list", "--merges", "--count", "HEAD") == "0"

    def test_ahead_is_a_noop(self, tmp_path: Path):
        _, work, _ = _clone_pair(tmp_path)
        local_sha = commit_file(work, "local.txt", "y\n", "local work")

        assert BranchSynchronizer(work).sync_before_push("main") is True
        assert git(work, "rev-parse", "HEAD") == local_sha

    def test_diverged_feature_branch_is_rebased(self, tmp_path: Path):
        _, work, other = _clone_pair(tmp_path)
        git(other, "checkout", "-b", "feature")
        commit_file(other, "remote.txt", "r\n", "remote feature")
        git(other, "push", "origin", "feature")

        git(work, "fetch", "origin")
        git(work, "checkout", "-b", "feature", "origin/feature")
        git(work, "reset", "--hard", "HEAD~1")
        commit_file(work, "local.txt", "l\n", "local feature")

        assert BranchSynchronizer(work).sync_before_push("feature") is True
        assert git(work, "rev-list", "--merges", "--count", "HEAD") == "0"
        assert (work / "remote.txt").exists() and (work / "local.txt").exists()

    def test_diverged_protected_branch_is_merged(self, tmp_path: Path):
        _, work, other = _clone_pair(tmp_path)
        commit_file(other, "remote.txt", "r\n", "remote")
        git(other, "push", "origin", "main")
        commit_file(work, "local.txt", "l\n", "local")

        assert BranchSynchronizer(work).sync_before_push("main") is True
        assert git(work, "rev-list", "--merges", "--count", "HEAD") == "1"

    def test_dirty_tree_skips_sync(self, tmp_path: Path):
        _, work, other = _clone_pair(tmp_path)
        commit_file(other, "remote.txt", "r\n", "remote")
        git(other, "push", "origin", "main")
        before = git(work, "rev-parse", "HEAD")
        (work / "scratch.txt").write_text("wip\n", encoding="utf-8")

        assert BranchSynchronizer(work).sync_before_push("main") is True
        assert git(work, "rev-parse", "HEAD") == before

    def test_push_retries_after_sync(self, tmp_path: Path, notifier):
        origin, work, other = _clone_pair(tmp_path)
        commit_file(other, "remote.txt", "r\n", "remote")
        git(other, "push", "origin", "main")
        commit_file(work, "local.txt", "l\n", "local")

        sync = BranchSynchronizer(work, autopush=True, notifier=notifier)
        assert sync.push_branch("main") is True

        assert git(origin, "rev-parse", "main") == git(work, "rev-parse", "HEAD")
        assert notifier.events == []

    def test_conflicting_rebase_falls_back_to_clean_merge(self, tmp_path: Path):
        _, work, other = _clone_pair(tmp_path)
        commit_file(other, "README.md", "remote\n", "remote edit")
        git(other, "push", "origin", "main")
        commit_file(work, "README.md", "local\n", "local edit")
        commit_file(work, "README.md", "seed\n", "revert local edit")
        commit_file(work, "local.txt", "l\n", "local work")

        sync = BranchSynchronizer(work, protected_branches=())
        assert sync.sync_before_push("main") is True

        assert git(work, "rev-list", "--merges", "--count", "HEAD") == "1"
        assert (work / "README.md").read_text(encoding="utf-8") == "remote\n"
        assert (work / "local.txt").exists()
        assert git(work, "status", "--porcelain") == ""

    @pytest.mark.parametrize("protected", [(), ("main",)])
    def test_unresolvable_conflict_leaves_clean_tree(self, tmp_path: Path, protected):
        _, work, other = _clone_pair(tmp_path)
        commit_file(other, "README.md", "remote\n", "remote edit")
        git(other, "push", "origin", "main")
        local_sha = commit_file(work, "README.md", "local\n", "local edit")

        sync = BranchSynchronizer(work, protected_branches=protected)
        assert sync.sync_before_push("main") is False

        assert git(work, "rev-parse", "HEAD") == local_sha
        assert git(work, "status", "--porcelain") == ""
        assert not (work / ".git" / "MERGE_HEAD").exists()
        assert not (work / ".git" / "rebase-merge").exists()
        assert not (work / ".git" / "rebase-apply").exists()


class TestPushBranch:
    def test_autopush_disabled_is_noop(self, tmp_path: Path):
        with patch("forgeloop.git_tools._run_git") as run_git:
            assert BranchSynchronizer(tmp_path).push_branch("main") is True
        run_git.assert_not_called()

    def test_failed_sync_notifies(self, tmp_path: Path, notifier):
        sync = BranchSynchronizer(tmp_path, autopush=True, notifier=notifier)
        with (
            patch("forgeloop.git_tools.has_remote", return_value=True),
            patch("forgeloop.git_tools.push", return_value=False) as push,
            patch.object(BranchSynchronizer, "sync_before_push", return_value=False),
        ):
            assert sync.push_branch("feature") is False

        assert push.call_count == 1
        assert notifier.titles == ["Push Failed"]

    def test_second_push_failure_notifies(self, tmp_path: Path, notifier):
        sync = BranchSynchronizer(tmp_path, autopush=True, notifier=notifier)
        with (
            patch("forgeloop.git_tools.has_remote", return_value=True),
            patch("forgeloop.git_tools.push", return_value=False) as push,
            patch.object(BranchSynchronizer, "sync_before_push", return_value=True),
        ):
            assert sync.push_branch("feature") is False

        assert push.call_count == 2
        assert notifier.titles == ["Push Failed"]

    def test_no_remote_sync_is_success(self, git_repo: Path):
        assert BranchSynchronizer(git_repo).sync_before_push("main") is True


class TestMergeFailure:
    @pytest.mark.parametrize(
        "decision,rebased",
        [(SyncDecision.MERGE, None), (SyncDecision.REBASE, False)],
    )
    def test_failed_merge_is_aborted(self, tmp_path: Path, decision, rebased):
        sync = BranchSynchronizer(tmp_path)
        with (
            patch("forgeloop.git_tools.rebase", return_value=rebased),
            patch("forgeloop.git_tools.rebase_abort"),
            patch("forgeloop.git_tools.merge_no_edit", return_value=False),
            patch("forgeloop.git_tools.merge_abort") as merge_abort,
        ):
            assert sync._apply(decision, "main", "origin/main") is False

        merge_abort.assert_called_once_with(tmp_path)

    def test_successful_merge_is_not_aborted(self, tmp_path: Path):
        sync = BranchSynchronizer(tmp_path)
        with (
            patch("forgeloop.git_tools.merge_no_edit", return_value=True),
            patch("forgeloop.git_tools.merge_abort") as merge_abort,
        ):
            assert sync._apply(SyncDecision.MERGE, "main", "origin/main") is True

        merge_abort.assert_not_called()
