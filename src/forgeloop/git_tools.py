"""Git helpers for branch synchronization, diffs and directive commits."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

NETWORK_TIMEOUT_SECONDS = 120


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"`git {' '.join(args)}` timed out after {timeout}s") from exc
    except OSError as exc:
        raise GitError(f"`git {' '.join(args)}` could not be started: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


def _succeeds(*args: str, cwd: Path, timeout: int = 30) -> bool:
    """Run git and report success instead of raising on a non-zero exit."""
    return _run_git(*args, cwd=cwd, check=False, timeout=timeout).returncode == 0


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def current_branch(repo: str | Path) -> str:
    """Return the name of the current branch (``HEAD`` when detached)."""
    return _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()


def status_porcelain(repo: str | Path) -> str:
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def is_clean(repo: str | Path) -> bool:
    """True when there are no staged, unstaged or untracked changes."""
    return status_porcelain(repo) == ""


def has_remote(repo: str | Path, remote: str) -> bool:
    return _succeeds("remote", "get-url", remote, cwd=Path(repo))


def remote_ref_exists(repo: str | Path, remote: str, branch: str) -> bool:
    return _succeeds(
        "show-ref", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}", cwd=Path(repo)
    )


def rev_parse(repo: str | Path, ref: str) -> str | None:
    result = _run_git("rev-parse", "--verify", "--quiet", ref, cwd=Path(repo), check=False)
    sha = result.stdout.strip()
    return sha if result.returncode == 0 and sha else None


def merge_base(repo: str | Path, left: str, right: str) -> str | None:
    result = _run_git("merge-base", left, right, cwd=Path(repo), check=False)
    sha = result.stdout.strip()
    return sha if result.returncode == 0 and sha else None


def diff_text(repo: str | Path, *args: str) -> str:
    """Return ``git diff <args>`` output, or ``""`` when git refuses."""
    result = _run_git("diff", *args, cwd=Path(repo), check=False, timeout=60)
    return result.stdout if result.returncode == 0 else ""


# ---------------------------------------------------------------------------
# Mutating helpers
# ---------------------------------------------------------------------------


def fetch(repo: str | Path, remote: str, branch: str) -> bool:
    """Fetch *branch* from *remote*, falling back to a full fetch."""
    cwd = Path(repo)
    if _succeeds("fetch", remote, branch, cwd=cwd, timeout=NETWORK_TIMEOUT_SECONDS):
        return True
    return _succeeds("fetch", remote, cwd=cwd, timeout=NETWORK_TIMEOUT_SECONDS)


def push(repo: str | Path, remote: str, branch: str) -> bool:
    return _succeeds("push", remote, branch, cwd=Path(repo), timeout=NETWORK_TIMEOUT_SECONDS)


def merge_ff_only(repo: str | Path, ref: str) -> bool:
    return _succeeds("merge", "--ff-only", ref, cwd=Path(repo))


def merge_no_edit(repo: str | Path, ref: str) -> bool:
    return _succeeds("merge", "--no-edit", ref, cwd=Path(repo))


def rebase(repo: str | Path, ref: str) -> bool:
    return _succeeds("rebase", ref, cwd=Path(repo), timeout=120)


def rebase_abort(repo: str | Path) -> None:
    _run_git("rebase", "--abort", cwd=Path(repo), check=False)


def merge_abort(repo: str | Path) -> None:
    _run_git("merge", "--abort", cwd=Path(repo), check=False)


def commit_paths(repo: str | Path, paths: list[Path], message: str) -> None:
    """Stage *paths* and commit only them (empty commits allowed).

    Other staged changes stay in the index, outside the commit.

    Raises :class:`GitError` when staging or committing fails.
    """
    cwd = Path(repo)
    _run_git("add", "--", *(str(p) for p in paths), cwd=cwd)
    _run_git("commit", "-m", message, "--allow-empty", "--", *(str(p) for p in paths), cwd=cwd)
