"""Single-instance advisory lock for the daemon (``fcntl.flock``)."""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

logger = logging.getLogger(__name__)


def acquire_lock(path: str | Path) -> int | None:
    """Take an exclusive, non-blocking lock; ``None`` when another process holds it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        return None
    # Record the holder for operators inspecting the lock file.
    with suppress(OSError):
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
    return fd


def release_lock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        logger.debug("Unlock of fd %s failed", fd)
    finally:
        os.close(fd)


@contextmanager
def instance_lock(path: str | Path) -> Iterator[bool]:
    """Yield True while holding the lock, False when it is already taken.

    Example::

        with instance_lock(runtime / "daemon.lock") as acquired:
            if not acquired:
                return 0
    """
    fd = acquire_lock(path)
    try:
        yield fd is not None
    finally:
        if fd is not None:
            release_lock(fd)
