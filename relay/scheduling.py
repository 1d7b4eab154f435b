#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Periodic background tasks with cancellation tokens.

The restart watcher, tracker populator and monitor loop all run as a
PeriodicTask: a daemon thread that calls a step function every `interval`
seconds until the step returns False or the task is cancelled. Waiting is
done on a threading.Event, so cancel() interrupts the sleep immediately.
"""

import threading
from typing import Callable, Optional

try:
    from relay.debug_logger import get_logger
except ImportError:
    from debug_logger import get_logger


class CancellationToken:
    """Shared flag telling cooperating loops to stop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


class PeriodicTask:
    """
    Run `step()` every `interval` seconds on a daemon thread.

    The step returns a truthy value (or None) to keep going and False to
    finish. Exceptions from the step are logged and stop the task; they are
    kept in `error` for the owner to inspect.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        step: Callable[[], Optional[bool]],
        token: Optional[CancellationToken] = None,
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.step = step
        self.token = token or CancellationToken()
        self.run_immediately = run_immediately
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _loop(self) -> None:
        try:
            if not self.run_immediately and self.token.wait(self.interval):
                return
            while not self.token.cancelled:
                if self.step() is False:
                    return
                if self.token.wait(self.interval):
                    return
        except Exception as e:
            self.error = e
            get_logger().error(f"task:{self.name}", str(e))
        finally:
            self._finished.set()

    def cancel(self, join_timeout: Optional[float] = 2.0) -> None:
        """Signal the loop to stop and wait briefly for it."""
        self.token.cancel()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(join_timeout)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the task to finish. Returns True if it has."""
        return self._finished.wait(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._finished.is_set()
