#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Data models for the relay dashboard.

Defines dataclasses for log events and state summaries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class EventType:
    """Constants for event types in debug logs."""

    TIER_SAMPLE = "tier_sample"
    TIER_CHANGE = "tier_change"
    HANDOFF_CREATED = "handoff_created"
    HANDOFF_CHANGE = "handoff_change"
    LOCK_CHANGE = "lock_change"
    RESTART_REQUESTED = "restart_requested"
    RESTART_VERIFIED = "restart_verified"
    RESTART_DISCARDED = "restart_discarded"
    WORKER_SPAWNED = "worker_spawned"
    WORKER_EXITED = "worker_exited"
    SUPERVISOR_STATE = "supervisor_state"
    ERROR = "error"
    TIMING = "timing"


@dataclass
class DebugEvent:
    """
    A single debug event from the log file.

    Attributes:
        event: Event type (e.g., 'tier_change', 'lock_change', 'error')
        level: Log level ('info', 'debug', 'trace', 'error')
        timestamp: ISO timestamp string
        session_id: Worker session the event belongs to (may be empty)
        pid: Process ID that wrote the event
        channel: Channel name (may be empty)
        raw: Full parsed JSON dict with all event-specific fields
    """

    event: str
    level: str
    timestamp: str
    session_id: str
    pid: int
    channel: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp_dt(self) -> Optional[datetime]:
        if not self.timestamp:
            return None
        try:
            return datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None

    @property
    def is_error(self) -> bool:
        return self.level == "error" or self.event == EventType.ERROR

    def get(self, key: str, default: Any = None) -> Any:
        return self.raw.get(key, default)


@dataclass
class ChannelSummary:
    """One row of the Channels tab."""

    channel: str
    handoff_id: Optional[str] = None
    status: str = "none"
    handoff_type: str = ""
    session_id: str = ""
    created_at: str = ""
    lock_holder_pid: Optional[int] = None
    lock_stale: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class SessionOverview:
    """Contents of the Session tab."""

    tier: Optional[str] = None
    size_display: Optional[str] = None
    session_id: Optional[str] = None
    transcript_path: Optional[str] = None
    restart_session_id: Optional[str] = None
    restart_working_dir: Optional[str] = None
    test_mode: bool = False
    archived: List[str] = field(default_factory=list)
