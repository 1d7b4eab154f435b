#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
State reader for the relay dashboard.

Reads manifests, locks and the session surfaces through the same store the
relay processes write to. Nothing here mutates state.
"""

from typing import List, Optional

try:
    from relay.channel_lock import ChannelLock
    from relay.config import RelayConfig, load_config
    from relay.handoffs import HandoffStore
    from relay.monitor import read_restart_request, read_status, read_tracker
    from relay.store import FileStore, StateStore
    from relay.tui.models import ChannelSummary, SessionOverview
except ImportError:
    from ..channel_lock import ChannelLock
    from ..config import RelayConfig, load_config
    from ..handoffs import HandoffStore
    from ..monitor import read_restart_request, read_status, read_tracker
    from ..store import FileStore, StateStore
    from .models import ChannelSummary, SessionOverview


class StateReader:
    """Read-only view over the relay state directory."""

    def __init__(self, config: Optional[RelayConfig] = None, store: Optional[StateStore] = None) -> None:
        self.config = config or load_config()
        self.store = store or FileStore(self.config.home)
        self.handoffs = HandoffStore(self.store, self.config.retention_seconds)
        self.lock = ChannelLock(self.store, self.config.lease_seconds)

    def get_channels(self) -> List[ChannelSummary]:
        summaries = []
        for channel in self.handoffs.list_channels():
            summary = ChannelSummary(channel=channel)
            record = self.handoffs.get_record(channel)
            if record is not None:
                summary.handoff_id = record.id
                summary.status = record.status
                summary.handoff_type = record.type
                summary.session_id = record.session_id
                summary.created_at = record.created_at
            holder = self.lock.holder(channel)
            if holder is not None:
                summary.lock_holder_pid = holder.holder_pid
                summary.lock_stale = self.lock.is_stale(holder)
            summaries.append(summary)
        return summaries

    def get_session(self) -> SessionOverview:
        overview = SessionOverview(test_mode=self.config.test_mode)
        status = read_status(self.store)
        if status is not None:
            overview.tier, overview.size_display = status
        tracker = read_tracker(self.store)
        if tracker is not None:
            overview.session_id = tracker.session_id
            overview.transcript_path = tracker.worker_state_path or None
        request = read_restart_request(self.store)
        if request is not None:
            overview.restart_session_id = request.session_id
            overview.restart_working_dir = request.working_dir
        overview.archived = self.handoffs.list_archive()
        return overview
