"""Process-wide lock serializing git subprocesses.

Workspaces of one project share a repository, and git does not tolerate
concurrent index or ref updates, so every git command spawned by the engine
runs under a single re-entrant lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from loguru import logger

T = TypeVar("T")

_GIT_LOCK = threading.RLock()


@contextmanager
def git_lock(label: str = "git") -> Iterator[None]:
    """Hold the process-wide git lock for the duration of the block."""
    thread = threading.current_thread().name
    logger.trace("{} waiting for git lock ({})", thread, label)
    with _GIT_LOCK:
        yield
    logger.trace("{} released git lock ({})", thread, label)


def run_serialized(operation: Callable[[], T], label: str = "git") -> T:
    with git_lock(label):
        return operation()
