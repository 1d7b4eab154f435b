#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Key-value state store shared by cooperating relay processes.

All multi-writer state (manifests, locks, status surfaces, restart requests)
goes through a StateStore. Keys are slash-separated relative names such as
"handoff/global.manifest.json". FileStore backs them with files under a
root directory; MemoryStore is an in-process fake for tests.

Guarantees for both backends:
- put() is an atomic replace: readers see the old value or the new value,
  never a partial write.
- create_exclusive() is all-or-nothing: exactly one of several concurrent
  callers for the same key succeeds.
- compare_and_put() / compare_and_delete() only act when the current value
  equals the expected one.
- Absence is reported as None / False, never as an error.
- guard() sections with the same key never overlap.
"""

import os
import shutil
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import ContextManager, Dict, Iterator, List, Optional

try:
    from relay.debug_logger import get_logger, trace_call
    from relay.file_lock import FileLock
except ImportError:
    from debug_logger import get_logger, trace_call
    from file_lock import FileLock


# File holding the value of a directory-backed (exclusive) key
EXCLUSIVE_VALUE_FILE = "pid"

# A directory key whose value file never appeared is treated as abandoned
# after this many seconds.
EXCLUSIVE_GRACE_SECONDS = 5.0


class StateStore(ABC):
    """Abstract key-value store with atomic replace and compare semantics."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value of key, or None if absent."""

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Atomically replace the value of key."""

    @abstractmethod
    def compare_and_put(self, key: str, expected: Optional[str], value: str) -> bool:
        """Replace key only if its current value equals expected (None = absent)."""

    @abstractmethod
    def create_exclusive(self, key: str, value: str) -> bool:
        """Create key with value only if it does not exist. All-or-nothing."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. Returns False if it was already absent."""

    @abstractmethod
    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Remove key only if its current value equals expected."""

    @abstractmethod
    def rename(self, src: str, dst: str) -> bool:
        """Move src to dst. Returns False if src is absent."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether key exists (including a half-created exclusive key)."""

    @abstractmethod
    def age_seconds(self, key: str) -> Optional[float]:
        """Seconds since key was last written, or None if absent."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List keys directly under prefix (non-recursive, sorted)."""

    @abstractmethod
    def guard(self, key: str) -> ContextManager:
        """Exclusive section named by key, held across processes using the store."""

    def describe(self, key: str) -> str:
        """Human readable location of key (for messages)."""
        return key


class FileStore(StateStore):
    """
    Filesystem-backed store.

    Plain keys are files written with temp-write-then-rename. Exclusive keys
    are directories created with mkdir (atomic, fails if present) holding the
    value in a `pid` file, which is how channel locks are realised.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def path(self, key: str) -> Path:
        return self.root / key

    def describe(self, key: str) -> str:
        return str(self.path(key))

    def _write_atomic(self, path: Path, value: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w") as f:
                f.write(value)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def _read(self, path: Path) -> Optional[str]:
        try:
            if path.is_dir():
                return (path / EXCLUSIVE_VALUE_FILE).read_text()
            return path.read_text()
        except (FileNotFoundError, NotADirectoryError):
            return None

    def get(self, key: str) -> Optional[str]:
        path = self.path(key)
        with get_logger().trace_file_io("read", str(path)):
            return self._read(path)

    def put(self, key: str, value: str) -> None:
        path = self.path(key)
        with get_logger().trace_file_io("write", str(path)):
            if path.is_dir():
                self._write_atomic(path / EXCLUSIVE_VALUE_FILE, value)
            else:
                self._write_atomic(path, value)

    @trace_call
    def compare_and_put(self, key: str, expected: Optional[str], value: str) -> bool:
        path = self.path(key)
        with FileLock(path):
            if self._read(path) != expected:
                return False
            if path.is_dir():
                self._write_atomic(path / EXCLUSIVE_VALUE_FILE, value)
            else:
                self._write_atomic(path, value)
            return True

    def create_exclusive(self, key: str, value: str) -> bool:
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.mkdir()
        except FileExistsError:
            return False
        self._write_atomic(path / EXCLUSIVE_VALUE_FILE, value)
        return True

    def delete(self, key: str) -> bool:
        path = self.path(key)
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            return False
        return True

    @trace_call
    def compare_and_delete(self, key: str, expected: str) -> bool:
        path = self.path(key)
        with FileLock(path):
            current = self._read(path)
            if current != expected:
                return False
            return self.delete(key)

    def rename(self, src: str, dst: str) -> bool:
        src_path = self.path(src)
        dst_path = self.path(dst)
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(src_path, dst_path)
        except FileNotFoundError:
            return False
        return True

    def guard(self, key: str) -> FileLock:
        return FileLock(self.path(key))

    def exists(self, key: str) -> bool:
        return self.path(key).exists()

    def age_seconds(self, key: str) -> Optional[float]:
        try:
            mtime = self.path(key).stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, time.time() - mtime)

    def keys(self, prefix: str = "") -> List[str]:
        base = self.path(prefix) if prefix else self.root
        if not base.is_dir():
            return []
        names = []
        for entry in base.iterdir():
            if entry.name.endswith(".flock") or ".tmp." in entry.name:
                continue
            names.append(f"{prefix.rstrip('/')}/{entry.name}" if prefix else entry.name)
        return sorted(names)


class MemoryStore(StateStore):
    """In-process store with the same semantics as FileStore (for tests)."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._written: Dict[str, float] = {}
        self._pending: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._guards: Dict[str, threading.Lock] = {}

    def _set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._written[key] = time.time()
        self._pending.pop(key, None)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._set(key, value)

    def compare_and_put(self, key: str, expected: Optional[str], value: str) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._set(key, value)
            return True

    def create_exclusive(self, key: str, value: str) -> bool:
        with self._lock:
            if key in self._data or key in self._pending:
                return False
            self._set(key, value)
            return True

    def reserve(self, key: str) -> bool:
        """Create an exclusive key without a value (a crashed creator)."""
        with self._lock:
            if key in self._data or key in self._pending:
                return False
            self._pending[key] = time.time()
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = key in self._data or key in self._pending
            self._data.pop(key, None)
            self._written.pop(key, None)
            self._pending.pop(key, None)
            return existed

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            del self._data[key]
            self._written.pop(key, None)
            return True

    def rename(self, src: str, dst: str) -> bool:
        with self._lock:
            if src not in self._data:
                return False
            self._data[dst] = self._data.pop(src)
            self._written[dst] = self._written.pop(src, time.time())
            return True

    @contextmanager
    def guard(self, key: str) -> Iterator[None]:
        with self._lock:
            section = self._guards.setdefault(key, threading.Lock())
        with section:
            yield

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._data or key in self._pending

    def age_seconds(self, key: str) -> Optional[float]:
        with self._lock:
            written = self._written.get(key, self._pending.get(key))
        if written is None:
            return None
        return max(0.0, time.time() - written)

    def backdate(self, key: str, seconds: float) -> None:
        """Pretend key was written `seconds` earlier than it was (for tests)."""
        with self._lock:
            if key in self._written:
                self._written[key] -= seconds
            if key in self._pending:
                self._pending[key] -= seconds

    def keys(self, prefix: str = "") -> List[str]:
        base = prefix.rstrip("/") + "/" if prefix else ""
        with self._lock:
            names = set()
            for key in list(self._data) + list(self._pending):
                if not key.startswith(base):
                    continue
                rest = key[len(base):]
                names.add(base + rest.split("/", 1)[0])
            return sorted(names)
