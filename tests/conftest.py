"""Shared pytest configuration, markers and test doubles."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from forgeloop.agent_runner import BackendRunner
from forgeloop.schemas import Backend, Classification, InvocationResult, TaskType


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


# -- Test doubles -------------------------------------------------------------


def make_result(
    backend: Backend,
    classification: Classification = Classification.SUCCESS,
    output: str = "",
    exit_code: int | None = None,
) -> InvocationResult:
    if exit_code is None:
        exit_code = 0 if classification == Classification.SUCCESS else 1
    return InvocationResult(
        exit_code=exit_code,
        output_text=output,
        classification=classification,
        backend=backend,
    )


class FakeRunner(BackendRunner):
    """Scripted runner: pops queued results, succeeds once the queue is empty."""

    def __init__(
        self,
        backend: Backend,
        results: list[InvocationResult] | None = None,
        *,
        installed: bool = True,
        payloads: list[dict[str, Any] | None] | None = None,
    ) -> None:
        super().__init__(backend.value)
        self.backend = backend
        self.name = backend.value
        self.results = list(results or [])
        self.installed = installed
        self.payloads = list(payloads or [])
        self.calls: list[tuple[TaskType, str]] = []
        self.structured_calls: list[tuple[TaskType, str]] = []

    def available(self) -> bool:
        return self.installed

    def build_command(self, task: TaskType) -> list[str]:
        return [self.binary]

    def invoke(self, repo_path: Path, prompt: str, task: TaskType) -> InvocationResult:
        self.calls.append((task, prompt))
        if self.results:
            return self.results.pop(0)
        return make_result(self.backend, output=f"{self.name} done")

    def run_structured(
        self,
        repo_path: Path,
        prompt: str,
        *,
        task: TaskType,
        schema: dict[str, Any],
        system_prompt: str = "",
    ) -> tuple[InvocationResult, dict[str, Any] | None]:
        self.structured_calls.append((task, prompt))
        result = self.results.pop(0) if self.results else make_result(self.backend)
        payload = self.payloads.pop(0) if self.payloads else None
        return result, payload


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str]] = []

    def notify(self, emoji: str, title: str, message: str) -> None:
        self.events.append((emoji, title, message))

    @property
    def titles(self) -> list[str]:
        return [title for _, title, _ in self.events]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# -- Git helpers --------------------------------------------------------------


def git(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return proc.stdout.strip()


def init_repo(path: Path, *, bare: bool = False) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    if bare:
        git(path, "init", "--bare", "-b", "main")
        return path
    git(path, "init", "-b", "main")
    git(path, "config", "user.email", "dev@example.com")
    git(path, "config", "user.name", "Forgeloop Tests")
    git(path, "config", "commit.gpgsign", "false")
    return path


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content, encoding="utf-8")
    git(repo, "add", name)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A clean repository with one commit on ``main``."""
    repo = init_repo(tmp_path / "work")
    commit_file(repo, "README.md", "hello\n", "initial")
    return repo
