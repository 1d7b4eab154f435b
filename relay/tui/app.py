#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Textual dashboard for session relay.

Tabs:
- Live: debug events as they are written, color-coded by type
- Channels: every channel's manifest status and lock holder
- Session: current tier, tracked session, pending restart, archive
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import (
    DataTable,
    Footer,
    Header,
    RichLog,
    Static,
    TabbedContent,
    TabPane,
)

try:
    from relay.tui.log_reader import LogReader, format_event_details
    from relay.tui.models import DebugEvent, SessionOverview
    from relay.tui.state_reader import StateReader
except ImportError:
    from .log_reader import LogReader, format_event_details
    from .models import DebugEvent, SessionOverview
    from .state_reader import StateReader


# Rich markup colors for event types
EVENT_COLORS = {
    "tier_change": "yellow",
    "handoff_created": "magenta",
    "handoff_change": "magenta",
    "lock_change": "cyan",
    "restart_requested": "bold yellow",
    "restart_verified": "bold green",
    "restart_discarded": "red",
    "worker_spawned": "green",
    "worker_exited": "green",
    "error": "bold red",
    "tier_sample": "dim",
    "supervisor_state": "dim",
    "timing": "dim",
}

TIER_COLORS = {
    "OK": "green",
    "EARLY_WARN": "yellow",
    "WARN": "dark_orange",
    "CRITICAL": "bold red",
}


def format_event_rich(event: DebugEvent) -> str:
    """Format an event as a Rich-markup line."""
    ts = event.timestamp
    time_part = ts.split("T")[1][:8] if "T" in ts else ts[:8]
    color = EVENT_COLORS.get(event.event, "")
    event_name = event.event[:18].ljust(18)
    channel = (event.channel[:12] if event.channel else "").ljust(12)
    # Square brackets in details would be read as markup
    details = format_event_details(event).replace("[", "\\[")
    line = f"\\[{time_part}] {event_name} {channel} {details}"
    if color:
        return f"[{color}]{line}[/{color}]"
    return line


def format_session_overview(overview: SessionOverview) -> str:
    """Rich-markup text of the Session tab."""
    lines = []

    lines.append("[bold]Context[/bold]")
    if overview.tier:
        color = TIER_COLORS.get(overview.tier, "")
        tier = f"[{color}]{overview.tier}[/{color}]" if color else overview.tier
        lines.append(f"  Tier: {tier} ({overview.size_display})")
    else:
        lines.append("  [dim]No sample yet[/dim]")
    if overview.test_mode:
        lines.append("  [yellow]Test mode thresholds active[/yellow]")
    lines.append("")

    lines.append("[bold]Session[/bold]")
    if overview.session_id:
        lines.append(f"  ID: {overview.session_id}")
        lines.append(f"  Transcript: {overview.transcript_path or '(not yet known)'}")
    else:
        lines.append("  [dim]No active session tracked[/dim]")
    lines.append("")

    if overview.restart_session_id:
        lines.append("[bold yellow]Restart pending[/bold yellow]")
        lines.append(f"  Session: {overview.restart_session_id}")
        lines.append(f"  Dir: {overview.restart_working_dir}")
        lines.append("")

    lines.append(f"[bold]Archive[/bold] ({len(overview.archived)} handoffs)")
    for name in overview.archived[-5:]:
        lines.append(f"  {name}")

    return "\n".join(lines)


class RelayMonitorApp(App):
    """Tabbed live view of relay activity and state."""

    TITLE = "Session Relay"

    DEFAULT_CSS = """
    #session-panel, #channels-panel {
        padding: 1 2;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("f1", "switch_tab('live')", "Live"),
        Binding("f2", "switch_tab('channels')", "Channels"),
        Binding("f3", "switch_tab('session')", "Session"),
        Binding("p", "toggle_pause", "Pause"),
        Binding("r", "refresh", "Refresh"),
    ]

    def __init__(
        self,
        log_path: Optional[Path] = None,
        state_reader: Optional[StateReader] = None,
        channel_filter: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.log_reader = LogReader(log_path=log_path)
        self.state_reader = state_reader or StateReader()
        self.channel_filter = channel_filter
        self._paused = False
        self._refresh_timer = None

    def compose(self) -> ComposeResult:
        yield Header()

        with TabbedContent(initial="live"):
            with TabPane("Live", id="live"):
                yield RichLog(id="event-log", highlight=True, markup=True)

            with TabPane("Channels", id="channels"):
                yield Vertical(
                    DataTable(id="channel-table"),
                    id="channels-panel",
                )

            with TabPane("Session", id="session"):
                yield Vertical(
                    Static("Loading session...", id="session-overview"),
                    id="session-panel",
                )

        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#channel-table", DataTable)
        table.add_columns("Channel", "Status", "Handoff", "Type", "Session", "Lock")

        try:
            self._load_events()
        except OSError as e:
            self.notify(f"Error loading events: {e}", severity="error")

        self._update_state()
        self._update_subtitle()

        self._refresh_timer = self.set_interval(2.0, self._on_refresh_timer)

    def _wanted(self, event: DebugEvent) -> bool:
        return not self.channel_filter or event.channel == self.channel_filter

    def _load_events(self) -> None:
        event_log = self.query_one("#event-log", RichLog)
        event_log.clear()
        for event in self.log_reader.read_recent(200):
            if self._wanted(event):
                event_log.write(format_event_rich(event))

    def _on_refresh_timer(self) -> None:
        self._update_subtitle()
        if not self._paused:
            self._refresh_events()
            self._update_state()

    @work(exclusive=True)
    async def _refresh_events(self) -> None:
        new_count = await asyncio.to_thread(self.log_reader.load_buffer)
        if new_count > 0:
            event_log = self.query_one("#event-log", RichLog)
            for event in self.log_reader.new_events(new_count):
                if self._wanted(event):
                    event_log.write(format_event_rich(event))

    def _update_state(self) -> None:
        try:
            self._update_channels()
            self._update_session()
        except (OSError, ValueError) as e:
            self.notify(f"Error reading state: {e}", severity="error")

    def _update_channels(self) -> None:
        table = self.query_one("#channel-table", DataTable)
        table.clear()
        for summary in self.state_reader.get_channels():
            if summary.lock_holder_pid is None:
                lock = "-"
            elif summary.lock_stale:
                lock = f"[dim]{summary.lock_holder_pid} (stale)[/dim]"
            else:
                lock = str(summary.lock_holder_pid)
            status = f"[green]{summary.status}[/green]" if summary.is_active else summary.status
            table.add_row(
                summary.channel,
                status,
                summary.handoff_id or "-",
                summary.handoff_type or "-",
                summary.session_id[:8] if summary.session_id else "-",
                lock,
                key=summary.channel,
            )

    def _update_session(self) -> None:
        widget = self.query_one("#session-overview", Static)
        widget.update(format_session_overview(self.state_reader.get_session()))

    def action_switch_tab(self, tab_id: str) -> None:
        self.query_one(TabbedContent).active = tab_id

    def action_toggle_pause(self) -> None:
        self._paused = not self._paused
        self.notify(f"Auto-refresh: {'PAUSED' if self._paused else 'RUNNING'}")

    def action_refresh(self) -> None:
        self._load_events()
        self._update_state()
        self.notify("Refreshed")

    def _update_subtitle(self) -> None:
        parts = []
        if self.channel_filter:
            parts.append(f"Channel: {self.channel_filter}")
        if self._paused:
            parts.append("[PAUSED]")
        parts.append(datetime.now().strftime("%H:%M:%S"))
        self.sub_title = " | ".join(parts)


def run_app(log_path: Optional[Path] = None, channel_filter: Optional[str] = None) -> None:
    """Run the dashboard."""
    RelayMonitorApp(log_path=log_path, channel_filter=channel_filter).run()


if __name__ == "__main__":
    run_app()
