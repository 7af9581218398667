"""forgeloop - route plan/build iterations between Codex and Claude Code."""

from importlib.metadata import PackageNotFoundError, version

from forgeloop.schemas import Backend, InvocationResult, RouterState, TaskType

__all__ = ["Backend", "InvocationResult", "RouterState", "TaskType"]

try:
    __version__ = version("forgeloop")
except PackageNotFoundError:
    __version__ = "0.0.0"
