"""Subprocess helpers shared by the backend runners and shell actions."""

from __future__ import annotations

import json
import logging
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_DEFAULT_MAX_CAPTURED_LINES = 50_000
EXIT_COMMAND_NOT_FOUND = 127


def _process_isolation_kwargs() -> dict[str, object]:
    """Start the child in its own session so a Ctrl+C aimed at us can't kill it mid-write."""
    if os.name == "nt":
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def binary_available(name: str) -> bool:
    """True when *name* resolves to an executable on this host."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if not expanded:
        return False
    return shutil.which(expanded) is not None


@dataclass(slots=True)
class CapturedRun:
    """Combined output and exit status of one child process."""

    output_lines: list[str]
    exit_code: int
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def output_text(self) -> str:
        return "\n".join(self.output_lines)


def run_captured(
    *,
    cmd: list[str],
    cwd: Path,
    process_name: str,
    stdin_text: str | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: int = 0,
    max_lines: int = _DEFAULT_MAX_CAPTURED_LINES,
) -> CapturedRun:
    """Run *cmd*, feed *stdin_text*, and capture stdout+stderr interleaved.

    ``timeout_seconds`` is an inactivity timeout: the child is killed after
    that many seconds without any output.  ``0`` disables it.

    Raises ``OSError`` when the process cannot be spawned.
    """
    start = time.monotonic()
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_process_isolation_kwargs(),
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    lines: deque[str] = deque(maxlen=max(1, max_lines))
    dropped = 0
    stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
    done_sentinel = object()

    def _append(line: str) -> None:
        nonlocal dropped
        if len(lines) == lines.maxlen:
            dropped += 1
        lines.append(line)

    def _pump_stream(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\n\r")))
        finally:
            stream_queue.put((stream_name, done_sentinel))

    def _pump_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text)
            if text and not text.endswith("\n"):
                stream.write("\n")
            stream.flush()
        except OSError:
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(OSError):
                stream.close()

    stdin_thread: threading.Thread | None = None
    if stdin_text is not None and proc.stdin is not None:
        stdin_thread = threading.Thread(
            target=_pump_stdin, args=(proc.stdin, stdin_text), daemon=True
        )
        stdin_thread.start()

    stdout_thread = threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True)
    stderr_thread = threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True)
    stdout_thread.start()
    stderr_thread.start()

    inactivity_timeout = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    closed_streams: set[str] = set()
    timed_out = False

    try:
        while len(closed_streams) < 2:
            if (
                inactivity_timeout is not None
                and (time.monotonic() - last_activity) >= inactivity_timeout
            ):
                timed_out = True
                break
            try:
                stream_name, payload = stream_queue.get(timeout=0.25)
            except queue.Empty:
                if (
                    proc.poll() is not None
                    and not stdout_thread.is_alive()
                    and not stderr_thread.is_alive()
                ):
                    break
                continue
            if payload is done_sentinel:
                closed_streams.add(stream_name)
                continue
            last_activity = time.monotonic()
            _append(str(payload))

        if timed_out:
            logger.warning(
                "%s produced no output for %ss; terminating", process_name, inactivity_timeout
            )
            _terminate_process_with_fallback(proc, process_name=process_name)

        _wait_for_process(proc)

        # Lines buffered just before exit.
        while True:
            try:
                _, payload = stream_queue.get_nowait()
            except queue.Empty:
                break
            if payload is not done_sentinel:
                _append(str(payload))

        if dropped:
            logger.warning(
                "%s emitted more than %s lines; dropped %s oldest line(s)",
                process_name,
                lines.maxlen,
                dropped,
            )
        return CapturedRun(
            output_lines=list(lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            duration_seconds=round(time.monotonic() - start, 2),
        )
    finally:
        if stdin_thread is not None:
            stdin_thread.join(timeout=1.0)
        stdout_thread.join(timeout=1.0)
        stderr_thread.join(timeout=1.0)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None and not stream.closed:
                with suppress(OSError):
                    stream.close()


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the last JSON object found in free-form CLI output.

    Tries single-line objects first (JSONL, ``--output-format json``), then a
    multi-line object spanning from a line starting with ``{`` to one
    starting with ``}``.
    """
    lines = (text or "").splitlines()
    for line in reversed(lines):
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    start = next((i for i, line in enumerate(lines) if line.startswith("{")), None)
    if start is None:
        return None
    for end in range(len(lines) - 1, start, -1):
        if not lines[end].startswith("}"):
            continue
        try:
            parsed = json.loads("\n".join(lines[start : end + 1]))
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def run_shell_command(
    command: str,
    *,
    cwd: Path,
    process_name: str = "shell",
    timeout_seconds: int = 0,
) -> CapturedRun:
    """Run an operator-configured command line through ``bash -lc``."""
    logger.info("Running %s command: %s", process_name, command)
    try:
        return run_captured(
            cmd=["bash", "-lc", command],
            cwd=cwd,
            process_name=process_name,
            timeout_seconds=timeout_seconds,
        )
    except OSError as exc:
        logger.error("Could not start %s command: %s", process_name, exc)
        return CapturedRun(output_lines=[str(exc)], exit_code=EXIT_COMMAND_NOT_FOUND)


def _wait_for_process(proc: subprocess.Popen[str]) -> None:
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - stubborn child
        proc.kill()
        proc.wait(timeout=5.0)


def _terminate_process_with_fallback(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        return
    _signal_process(proc, graceful=True)
    try:
        proc.wait(timeout=max(0.1, terminate_timeout_seconds))
        return
    except subprocess.TimeoutExpired:
        logger.warning("%s did not exit after terminate; forcing kill.", process_name)
    _signal_process(proc, graceful=False)
    with suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=5.0)


def _signal_process(proc: subprocess.Popen[str], *, graceful: bool) -> None:
    """Signal the child's process group on POSIX, the child itself elsewhere."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(OSError):
                os.killpg(os.getpgid(pid), signal.SIGTERM if graceful else signal.SIGKILL)
    with suppress(OSError):
        if graceful:
            proc.terminate()
        else:
            proc.kill()
