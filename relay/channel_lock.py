#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Per-channel mutual exclusion across OS processes.

A channel lock is an exclusive store key (`handoff/<channel>.lock.d`, a
directory in the file store) whose value is the holder token
`holder_pid:acquired_at[:renewed_at]`. The process holding it is the
"primary" worker for the channel: only the primary loads or creates
handoffs. A denied newcomer runs as a parallel session instead of blocking.

A lock is stale when its holder pid is gone, when a heartbeating holder let
its lease run out, or when the token never appeared after a short grace
(creator crashed between mkdir and writing the token).
"""

import os
import time
from typing import Callable, Optional

try:
    from relay.debug_logger import get_logger
    from relay.models import LEASE_SECONDS_DEFAULT, LockToken
    from relay.store import EXCLUSIVE_GRACE_SECONDS, StateStore
except ImportError:
    from debug_logger import get_logger
    from models import LEASE_SECONDS_DEFAULT, LockToken
    from store import EXCLUSIVE_GRACE_SECONDS, StateStore


def pid_alive(pid: int) -> bool:
    """Check whether a process exists (signal 0)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    except OSError:
        return False
    return True


def lock_key(channel: str) -> str:
    return f"handoff/{channel}.lock.d"


class ChannelLock:
    """
    Acquire/release channel locks in a StateStore.

    Args:
        store: Backing store
        lease_seconds: Lease lifetime for holders that call renew(); 0 disables
        is_alive: Process liveness check (injectable for tests)
        clock: Epoch-seconds clock (injectable for tests)
    """

    def __init__(
        self,
        store: StateStore,
        lease_seconds: int = LEASE_SECONDS_DEFAULT,
        is_alive: Callable[[int], bool] = pid_alive,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.lease_seconds = lease_seconds
        self.is_alive = is_alive
        self.clock = clock

    def _token(self, holder_pid: int) -> LockToken:
        return LockToken(holder_pid=holder_pid, acquired_at=int(self.clock()))

    def holder(self, channel: str) -> Optional[LockToken]:
        """Current holder token, or None if unlocked (or mid-creation)."""
        return LockToken.parse(self.store.get(lock_key(channel)))

    def is_stale(self, token: LockToken) -> bool:
        if not self.is_alive(token.holder_pid):
            return True
        if self.lease_seconds and token.renewed_at is not None:
            return self.clock() - token.renewed_at > self.lease_seconds
        return False

    def _try_create(self, channel: str, holder_pid: int) -> bool:
        return self.store.create_exclusive(lock_key(channel), self._token(holder_pid).format())

    def acquire(self, channel: str, holder_pid: int) -> bool:
        """
        Try to become the primary for channel.

        Returns True if granted (including when holder_pid already holds it),
        False if a live process holds it. A stale lock is removed and the
        creation retried exactly once.
        """
        logger = get_logger()
        key = lock_key(channel)

        if self._try_create(channel, holder_pid):
            logger.lock_change(channel, "acquired", holder_pid)
            return True

        raw = self.store.get(key)
        token = LockToken.parse(raw)

        if token is None:
            if raw is None and not self.store.exists(key):
                # Released between our attempt and the read
                stale_removed = True
            else:
                age = self.store.age_seconds(key)
                if age is not None and age < EXCLUSIVE_GRACE_SECONDS:
                    logger.lock_change(channel, "denied", holder_pid)
                    return False
                stale_removed = (
                    self.store.compare_and_delete(key, raw) if raw is not None
                    else self.store.delete(key)
                )
        elif token.holder_pid == holder_pid:
            return True
        elif not self.is_stale(token):
            logger.lock_change(channel, "denied", holder_pid, other_pid=token.holder_pid)
            return False
        else:
            stale_removed = self.store.compare_and_delete(key, raw)
            if stale_removed:
                logger.lock_change(channel, "stale_removed", holder_pid, other_pid=token.holder_pid)

        if stale_removed and self._try_create(channel, holder_pid):
            logger.lock_change(channel, "acquired", holder_pid)
            return True

        current = self.holder(channel)
        logger.lock_change(channel, "denied", holder_pid, other_pid=current.holder_pid if current else None)
        return False

    def release(self, channel: str, holder_pid: int) -> bool:
        """Release the lock only if holder_pid is the recorded holder."""
        key = lock_key(channel)
        raw = self.store.get(key)
        token = LockToken.parse(raw)
        if token is None or token.holder_pid != holder_pid:
            get_logger().lock_change(
                channel, "release_ignored", holder_pid,
                other_pid=token.holder_pid if token else None,
            )
            return False
        released = self.store.compare_and_delete(key, raw)
        if released:
            get_logger().lock_change(channel, "released", holder_pid)
        return released

    def renew(self, channel: str, holder_pid: int) -> bool:
        """Heartbeat: stamp renewed_at on a lock held by holder_pid."""
        key = lock_key(channel)
        raw = self.store.get(key)
        token = LockToken.parse(raw)
        if token is None or token.holder_pid != holder_pid:
            return False
        renewed = LockToken(
            holder_pid=token.holder_pid,
            acquired_at=token.acquired_at,
            renewed_at=int(self.clock()),
        )
        return self.store.compare_and_put(key, raw, renewed.format())
