#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Debug logging for session relay.

Outputs JSON lines format to <relay home>/debug.log
when RELAY_DEBUG (or RELAY_DEBUG_LEVEL) is set, or when settings.json
sets relay.debugLevel.

Levels:
  0: disabled
  1: info - handoff transitions, lock changes, restarts (default)
  2: debug - every tier sample, supervisor state transitions, timings
  3: trace - file I/O timing, lock waits
"""

import json
import os
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Optional


DEBUG_ENV_VAR = "RELAY_DEBUG"
DEBUG_ENV_VAR_FALLBACK = "RELAY_DEBUG_LEVEL"
LOG_FILE_NAME = "debug.log"
MAX_LOG_SIZE_MB = 50
MAX_LOG_FILES = 3


def get_relay_home() -> Path:
    """Get the relay state directory.

    RELAY_HOME overrides; otherwise XDG_STATE_HOME/session-relay.
    """
    explicit = os.environ.get("RELAY_HOME")
    if explicit:
        return Path(explicit)
    xdg_state = os.environ.get("XDG_STATE_HOME") or (Path.home() / ".local" / "state")
    return Path(xdg_state) / "session-relay"


def _read_settings_debug_level() -> Optional[int]:
    """Read relay.debugLevel from settings.json in the relay home.

    Returns None if the file doesn't exist or debugLevel isn't set.
    """
    settings_path = get_relay_home() / "settings.json"
    try:
        if not settings_path.exists():
            return None
        with open(settings_path) as f:
            settings = json.load(f)
        level = settings.get("relay", {}).get("debugLevel")
        if level is not None:
            return int(level)
    except (OSError, json.JSONDecodeError, ValueError, TypeError, AttributeError):
        pass
    return None


def _get_debug_level() -> int:
    """Get the configured debug level.

    Checks in order of precedence:
    1. RELAY_DEBUG / RELAY_DEBUG_LEVEL env var
    2. relay.debugLevel in settings.json
    3. Default: 1
    """
    env_level = os.environ.get(DEBUG_ENV_VAR) or os.environ.get(DEBUG_ENV_VAR_FALLBACK)
    if env_level:
        try:
            return int(env_level)
        except ValueError:
            return 1 if env_level.lower() in ("true", "yes", "on") else 0

    settings_level = _read_settings_debug_level()
    if settings_level is not None:
        return settings_level

    return 1


def get_log_path() -> Path:
    return get_relay_home() / LOG_FILE_NAME


def _rotate_if_needed(log_path: Path) -> None:
    """Rotate log file if it exceeds size limit."""
    if not log_path.exists():
        return

    size_mb = log_path.stat().st_size / (1024 * 1024)
    if size_mb < MAX_LOG_SIZE_MB:
        return

    # debug.log.2 -> delete, debug.log.1 -> .2, debug.log -> .1
    for i in range(MAX_LOG_FILES - 1, 0, -1):
        old_path = log_path.parent / f"{LOG_FILE_NAME}.{i}"
        new_path = log_path.parent / f"{LOG_FILE_NAME}.{i + 1}"
        if old_path.exists():
            if i == MAX_LOG_FILES - 1:
                old_path.unlink()
            else:
                old_path.rename(new_path)

    log_path.rename(log_path.parent / f"{LOG_FILE_NAME}.1")


class DebugLogger:
    """
    JSON lines debug logger for session relay.

    All methods are no-ops when the level is 0.
    """

    def __init__(self) -> None:
        self._level = _get_debug_level()
        self._log_path = get_log_path() if self._level > 0 else None

    @property
    def enabled(self) -> bool:
        return self._level > 0

    @property
    def level(self) -> int:
        return self._level

    @property
    def log_path(self) -> Optional[Path]:
        return self._log_path

    def _write(self, event: Dict[str, Any]) -> None:
        """Write an event to the log file."""
        if not self.enabled or self._log_path is None:
            return

        event["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        event["pid"] = os.getpid()
        session_id = os.environ.get("RELAY_SESSION_ID")
        if session_id and "session_id" not in event:
            event["session_id"] = session_id
        channel = os.environ.get("RELAY_CHANNEL")
        if channel and "channel" not in event:
            event["channel"] = channel

        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            _rotate_if_needed(self._log_path)

            with open(self._log_path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")
        except (OSError, ValueError) as e:
            # Never let logging errors affect the caller
            if self._level >= 3:
                print(f"[debug_logger] write failed: {type(e).__name__}: {e}", file=sys.stderr)

    # =========================================================================
    # Level 1: Info events
    # =========================================================================

    def tier_change(
        self,
        session_id: str,
        old_tier: Optional[str],
        new_tier: str,
        size_bytes: int,
        pct_of_limit: float,
    ) -> None:
        """Log a tier transition for a worker session."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "tier_change",
                "level": "info",
                "session_id": session_id,
                "old_tier": old_tier,
                "new_tier": new_tier,
                "size_bytes": size_bytes,
                "pct_of_limit": round(pct_of_limit, 1),
            }
        )

    def handoff_created(
        self,
        handoff_id: str,
        channel: str,
        handoff_type: str,
        session_id: str,
        content_length: int,
        superseded_id: Optional[str] = None,
    ) -> None:
        """Log new handoff creation."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "handoff_created",
                "level": "info",
                "handoff_id": handoff_id,
                "channel": channel,
                "type": handoff_type,
                "session_id": session_id,
                "content_length": content_length,
                "superseded_id": superseded_id,
            }
        )

    def handoff_change(
        self,
        handoff_id: str,
        channel: str,
        old_status: Optional[str],
        new_status: str,
        actor_pid: Optional[int] = None,
    ) -> None:
        """Log a handoff status transition (consumed, expired, cleared)."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "handoff_change",
                "level": "info",
                "handoff_id": handoff_id,
                "channel": channel,
                "old_status": old_status,
                "new_status": new_status,
                "actor_pid": actor_pid,
            }
        )

    def lock_change(
        self,
        channel: str,
        action: str,  # acquired, denied, released, stale_removed, renewed
        holder_pid: int,
        other_pid: Optional[int] = None,
    ) -> None:
        """Log channel lock activity."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "lock_change",
                "level": "info",
                "channel": channel,
                "action": action,
                "holder_pid": holder_pid,
                "other_pid": other_pid,
            }
        )

    def restart_requested(self, session_id: str, working_dir: str, handoff_id: Optional[str]) -> None:
        if self._level < 1:
            return
        self._write(
            {
                "event": "restart_requested",
                "level": "info",
                "session_id": session_id,
                "working_dir": working_dir,
                "handoff_id": handoff_id,
            }
        )

    def restart_verified(self, session_id: str, worker_pid: int) -> None:
        if self._level < 1:
            return
        self._write(
            {
                "event": "restart_verified",
                "level": "info",
                "session_id": session_id,
                "worker_pid": worker_pid,
            }
        )

    def restart_discarded(self, requested_session: str, tracked_session: Optional[str]) -> None:
        """Log a restart request that named a foreign or stale session."""
        if self._level < 1:
            return
        self._write(
            {
                "event": "restart_discarded",
                "level": "info",
                "requested_session": requested_session,
                "tracked_session": tracked_session,
            }
        )

    def worker_spawned(self, session_id: str, worker_pid: int, channel: str, restart_count: int, load_handoff: bool) -> None:
        if self._level < 1:
            return
        self._write(
            {
                "event": "worker_spawned",
                "level": "info",
                "session_id": session_id,
                "worker_pid": worker_pid,
                "channel": channel,
                "restart_count": restart_count,
                "load_handoff": load_handoff,
            }
        )

    def worker_exited(self, session_id: str, worker_pid: int, returncode: Optional[int], reason: str) -> None:
        if self._level < 1:
            return
        self._write(
            {
                "event": "worker_exited",
                "level": "info",
                "session_id": session_id,
                "worker_pid": worker_pid,
                "returncode": returncode,
                "reason": reason,
            }
        )

    def error(self, operation: str, error: str, context: Optional[Dict] = None) -> None:
        """Log errors - level 1 (always shown when debug enabled)."""
        if self._level < 1:
            return
        event = {"event": "error", "level": "error", "op": operation, "err": error}
        if context:
            event["ctx"] = context
        self._write(event)

    def mutation(self, op: str, target: str, details: Optional[Dict] = None) -> None:
        """Log miscellaneous state mutations - level 1."""
        if self._level < 1:
            return
        event = {"event": "mutation", "level": "info", "op": op, "target": target}
        if details:
            event.update(details)
        self._write(event)

    # =========================================================================
    # Level 2: Debug events
    # =========================================================================

    def tier_sample(self, session_id: str, tier: str, size_bytes: int, artifact: str, source: str) -> None:
        """Log every sample taken by the monitor."""
        if self._level < 2:
            return
        self._write(
            {
                "event": "tier_sample",
                "level": "debug",
                "session_id": session_id,
                "tier": tier,
                "size_bytes": size_bytes,
                "artifact": artifact,
                "source": source,  # tracker or scan
            }
        )

    def supervisor_state(self, state: str, session_id: Optional[str], restart_count: int) -> None:
        if self._level < 2:
            return
        self._write(
            {
                "event": "supervisor_state",
                "level": "debug",
                "state": state,
                "session_id": session_id,
                "restart_count": restart_count,
            }
        )

    @contextmanager
    def timer(self, operation: str, context: Optional[Dict[str, Any]] = None):
        """Context manager to time any operation at level 2.

        Usage:
            with logger.timer("handoff_load", {"channel": "global"}):
                do_work()
        """
        if self._level < 2:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            event = {
                "event": "timing",
                "level": "debug",
                "op": operation,
                "ms": round(duration_ms, 2),
            }
            if context:
                event.update(context)
            self._write(event)

    # =========================================================================
    # Level 3: Trace events
    # =========================================================================

    @contextmanager
    def trace_file_io(self, operation: str, file_path: str):
        """Context manager to trace file I/O timing."""
        if self._level < 3:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self._write(
                {
                    "event": "file_io",
                    "level": "trace",
                    "operation": operation,
                    "file_path": str(file_path),
                    "duration_ms": round(duration_ms, 2),
                }
            )

    @contextmanager
    def trace_lock(self, file_path: str):
        """Context manager to trace flock acquisition timing."""
        if self._level < 3:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            wait_ms = (time.perf_counter() - start) * 1000
            self._write(
                {
                    "event": "lock_acquired",
                    "level": "trace",
                    "file_path": str(file_path),
                    "wait_ms": round(wait_ms, 2),
                }
            )


# Global singleton
_logger: Optional[DebugLogger] = None


def get_logger() -> DebugLogger:
    """Get the global debug logger instance."""
    global _logger
    if _logger is None:
        _logger = DebugLogger()
    return _logger


def reset_logger() -> None:
    """Reset the global logger (for testing)."""
    global _logger
    _logger = None


def trace_call(func):
    """Decorator to trace function entry/exit at level 3."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        logger = get_logger()
        if logger.level < 3:
            return func(*args, **kwargs)

        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger._write(
                {
                    "event": "function_call",
                    "level": "trace",
                    "function": func.__name__,
                    "duration_ms": round(duration_ms, 2),
                }
            )

    return wrapper
