#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Advisory flock guard for read-compare-write sections of the file store.

Every compare-and-replace on a store key runs inside a FileLock on that
key, so two processes can never interleave the compare and the replace.
"""

import fcntl
import time
from pathlib import Path
from typing import Optional

try:
    from relay.debug_logger import get_logger
except ImportError:
    from debug_logger import get_logger


class LockTimeout(TimeoutError):
    """The flock could not be acquired within the timeout."""


class FileLock:
    """Context manager holding an exclusive flock on `<path>.flock`.

    Args:
        file_path: The guarded file or directory.
        timeout: Seconds to wait for the lock; None blocks indefinitely.
    """

    POLL_SECONDS = 0.01

    def __init__(self, file_path: Path, timeout: Optional[float] = None):
        self.file_path = Path(file_path)
        self.lock_path = self.file_path.with_name(self.file_path.name + ".flock")
        self.timeout = timeout
        self._handle = None

    def _acquire(self) -> None:
        if self.timeout is None:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX)
            return
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeout(f"Timed out waiting for {self.lock_path}")
                time.sleep(self.POLL_SECONDS)

    def __enter__(self):
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.lock_path, "a")
        try:
            with get_logger().trace_lock(str(self.lock_path)):
                self._acquire()
        except BaseException:
            self._handle.close()
            self._handle = None
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._handle:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None
            # The .flock file is left behind: unlinking it would let a
            # waiter lock an orphaned inode while a newcomer locks a new one.
        return False
