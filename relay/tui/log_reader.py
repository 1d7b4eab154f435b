#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Log reader for the relay dashboard.

Provides JSON parsing and buffered, incremental reading of debug.log with
filtering by session, channel and event type.
"""

import json
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

try:
    from relay.debug_logger import get_log_path
    from relay.tui.models import DebugEvent
except ImportError:
    from ..debug_logger import get_log_path
    from .models import DebugEvent


def get_default_log_path() -> Path:
    """Debug log location (honours RELAY_HOME / XDG_STATE_HOME)."""
    return get_log_path()


def parse_event(line: str) -> Optional[DebugEvent]:
    """
    Parse a single JSON line into a DebugEvent.

    Returns None for blank lines, invalid JSON or non-object payloads.
    """
    line = line.strip()
    if not line:
        return None

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    return DebugEvent(
        event=data.get("event", "unknown"),
        level=data.get("level", "info"),
        timestamp=data.get("timestamp", ""),
        session_id=data.get("session_id") or "",
        pid=data.get("pid", 0),
        channel=data.get("channel") or "",
        raw=data,
    )


def format_event_details(event: DebugEvent) -> str:
    """Short event-specific summary used by the dashboard and tail output."""
    raw = event.raw

    if event.event == "tier_change":
        return f"{raw.get('old_tier') or '-'} -> {raw.get('new_tier')} ({raw.get('size_bytes', 0)}B, {raw.get('pct_of_limit', 0)}%)"
    if event.event == "tier_sample":
        return f"{raw.get('tier')} {raw.get('size_bytes', 0)}B via {raw.get('source', '?')}"
    if event.event == "handoff_created":
        return f"{raw.get('handoff_id', '')} ({raw.get('type', '')})"
    if event.event == "handoff_change":
        return f"{raw.get('handoff_id', '')} {raw.get('old_status')} -> {raw.get('new_status')}"
    if event.event == "lock_change":
        other = f" other={raw['other_pid']}" if raw.get("other_pid") else ""
        return f"{raw.get('action')} pid={raw.get('holder_pid')}{other}"
    if event.event in ("restart_requested", "restart_verified"):
        return f"session={str(raw.get('session_id', ''))[:8]}"
    if event.event == "restart_discarded":
        return f"requested={str(raw.get('requested_session', ''))[:8]} tracked={str(raw.get('tracked_session') or '-')[:8]}"
    if event.event == "worker_spawned":
        return f"pid={raw.get('worker_pid')} restarts={raw.get('restart_count', 0)}"
    if event.event == "worker_exited":
        return f"pid={raw.get('worker_pid')} rc={raw.get('returncode')} {raw.get('reason', '')}"
    if event.event == "error":
        return f"{raw.get('op', '')}: {str(raw.get('err', ''))[:50]}"
    if event.event == "timing":
        return f"{raw.get('op', '')}: {raw.get('ms', 0):.0f}ms"

    skip_keys = {"event", "level", "timestamp", "session_id", "pid", "channel"}
    for k, v in raw.items():
        if k not in skip_keys:
            return f"{k}={v}"
    return ""


def format_event_line(event: DebugEvent) -> str:
    """Plain one-line rendering: [HH:MM:SS] event channel details."""
    ts = event.timestamp
    time_part = ts.split("T")[1][:8] if "T" in ts else ts[:8]
    event_name = event.event[:18].ljust(18)
    channel = (event.channel[:12] if event.channel else "").ljust(12)
    return f"[{time_part}] {event_name} {channel} {format_event_details(event)}"


class LogReader:
    """
    Buffered log reader with filtering capabilities.

    Keeps a ring buffer of the most recent events and reads the log
    incrementally, restarting from the top after rotation.
    """

    def __init__(self, log_path: Optional[Path] = None, max_buffer: int = 1000) -> None:
        self.log_path = Path(log_path) if log_path else get_default_log_path()
        self.max_buffer = max_buffer
        self._buffer: Deque[DebugEvent] = deque(maxlen=max_buffer)
        self._last_position: int = 0
        self._last_inode: Optional[int] = None

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def _check_rotation(self) -> bool:
        try:
            current_inode = self.log_path.stat().st_ino
        except OSError:
            return False
        if self._last_inode is not None and current_inode != self._last_inode:
            self._last_position = 0
            self._last_inode = current_inode
            return True
        self._last_inode = current_inode
        return False

    def load_buffer(self) -> int:
        """
        Load new events from the log file into the buffer.

        Returns:
            Number of new events loaded
        """
        if not self.log_path.exists():
            return 0

        self._check_rotation()

        try:
            with open(self.log_path, "r", encoding="utf-8", errors="replace") as f:
                f.seek(self._last_position)
                new_count = 0
                for line in f:
                    event = parse_event(line)
                    if event is not None:
                        self._buffer.append(event)
                        new_count += 1
                self._last_position = f.tell()
                return new_count
        except OSError:
            return 0

    def new_events(self, count: int) -> List[DebugEvent]:
        """The last `count` buffered events (what the latest load added)."""
        if count <= 0:
            return []
        buffer = list(self._buffer)
        return buffer[-count:]

    def read_recent(self, n: int = 100) -> List[DebugEvent]:
        self.load_buffer()
        events = list(self._buffer)
        return events[-n:] if len(events) > n else events

    def filter(
        self,
        channel: Optional[str] = None,
        session_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> List[DebugEvent]:
        """Filter buffered events; all given criteria must match."""
        self.load_buffer()
        events = list(self._buffer)
        if channel:
            events = [e for e in events if e.channel == channel]
        if session_id:
            events = [e for e in events if e.session_id == session_id]
        if event_type:
            events = [e for e in events if e.event == event_type]
        return events

    def get_sessions(self) -> List[str]:
        """Unique session ids, most recent first."""
        self.load_buffer()
        seen: dict = {}
        for event in reversed(self._buffer):
            if event.session_id and event.session_id not in seen:
                seen[event.session_id] = True
        return list(seen.keys())
