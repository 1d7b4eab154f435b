#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Pilot-based tests for the RelayMonitorApp dashboard.

These tests use Textual's pilot testing framework to verify app behavior.
"""

import json
import os
from pathlib import Path

import pytest

pytest.importorskip("textual")

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)

from textual.widgets import DataTable, RichLog, TabbedContent

from relay.channel_lock import ChannelLock
from relay.config import RelayConfig
from relay.handoffs import HandoffStore
from relay.models import SessionTracker
from relay.monitor import RESTART_KEY, STATUS_KEY, write_tracker
from relay.store import FileStore
from relay.tui.app import RelayMonitorApp, format_event_rich, format_session_overview
from relay.tui.log_reader import parse_event
from relay.tui.models import SessionOverview
from relay.tui.state_reader import StateReader


# --- Fixtures ---


@pytest.fixture
def state_home(tmp_path: Path) -> Path:
    """Relay home with a debug log, two channels and a tracked session."""
    home = tmp_path / "home"
    home.mkdir()

    events = [
        {
            "event": "worker_spawned",
            "level": "info",
            "timestamp": "2026-10-18T10:00:00Z",
            "session_id": "sess-1",
            "pid": 1234,
            "channel": "api",
            "worker_pid": 4321,
            "restart_count": 0,
        },
        {
            "event": "tier_change",
            "level": "info",
            "timestamp": "2026-10-18T10:05:00Z",
            "session_id": "sess-1",
            "pid": 1235,
            "old_tier": "WARN",
            "new_tier": "CRITICAL",
            "size_bytes": 1230000,
            "pct_of_limit": 86.4,
        },
        {
            "event": "lock_change",
            "level": "info",
            "timestamp": "2026-10-18T10:06:00Z",
            "pid": 1236,
            "channel": "web",
            "action": "acquired",
            "holder_pid": 99,
        },
    ]
    (home / "debug.log").write_text("\n".join(json.dumps(e) for e in events) + "\n")

    store = FileStore(home)
    handoffs = HandoffStore(store)
    handoffs.create("api", "older notes", "manual", session_id="sess-0", working_dir="/work/api", created_by_pid=1)
    handoffs.create("api", "notes", "auto", session_id="sess-1", working_dir="/work/api", created_by_pid=1)
    handoffs.create("web", "notes", "manual", session_id="sess-0", working_dir="/work/web", created_by_pid=1)
    ChannelLock(store).acquire("api", os.getpid())
    store.put(STATUS_KEY, "CRITICAL:1.2MB")
    write_tracker(store, SessionTracker("sess-1", "/p/sess-1.jsonl"))
    store.put(RESTART_KEY, "sess-1:/work/api")
    return home


@pytest.fixture
def state_reader(state_home: Path, tmp_path: Path) -> StateReader:
    config = RelayConfig(home=state_home, projects_dir=tmp_path, registry_path=state_home / "r.json")
    return StateReader(config=config, store=FileStore(state_home))


# --- Pilot Tests ---


@pytest.mark.asyncio
async def test_app_displays_events_on_start(state_home: Path, state_reader):
    """The event log has content right after mount."""
    app = RelayMonitorApp(log_path=state_home / "debug.log", state_reader=state_reader)

    async with app.run_test() as pilot:
        await pilot.pause()
        event_log = app.query_one("#event-log", RichLog)
        assert len(event_log.lines) > 0


@pytest.mark.asyncio
async def test_channel_filter_hides_other_channels(state_home: Path, state_reader):
    app = RelayMonitorApp(log_path=state_home / "debug.log", state_reader=state_reader, channel_filter="web")

    async with app.run_test() as pilot:
        await pilot.pause()
        event_log = app.query_one("#event-log", RichLog)
        assert len(event_log.lines) == 1
        assert "Channel: web" in app.sub_title


@pytest.mark.asyncio
async def test_channels_tab_lists_manifests(state_home: Path, state_reader):
    app = RelayMonitorApp(log_path=state_home / "debug.log", state_reader=state_reader)

    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("f2")
        await pilot.pause()

        assert app.query_one(TabbedContent).active == "channels"
        table = app.query_one("#channel-table", DataTable)
        assert table.row_count == 2
        assert table.get_row("api")[0] == "api"
        assert table.get_row("api")[5] == str(os.getpid())


@pytest.mark.asyncio
async def test_tab_switching(state_home: Path, state_reader):
    app = RelayMonitorApp(log_path=state_home / "debug.log", state_reader=state_reader)

    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("f3")
        await pilot.pause()
        assert app.query_one(TabbedContent).active == "session"
        await pilot.press("f1")
        await pilot.pause()
        assert app.query_one(TabbedContent).active == "live"


@pytest.mark.asyncio
async def test_pause_toggle(state_home: Path, state_reader):
    app = RelayMonitorApp(log_path=state_home / "debug.log", state_reader=state_reader)

    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("p")
        await pilot.pause()
        assert app._paused
        app._update_subtitle()
        assert "[PAUSED]" in app.sub_title
        await pilot.press("p")
        assert not app._paused


@pytest.mark.asyncio
async def test_refresh_picks_up_new_events(state_home: Path, state_reader):
    app = RelayMonitorApp(log_path=state_home / "debug.log", state_reader=state_reader)

    async with app.run_test() as pilot:
        await pilot.pause()
        with open(state_home / "debug.log", "a") as f:
            f.write(json.dumps({"event": "error", "level": "error", "timestamp": "2026-10-18T10:07:00Z",
                                "op": "handoff_load", "err": "boom"}) + "\n")
        await pilot.press("r")
        await pilot.pause()
        assert app.log_reader.buffer_size == 4


# --- Rendering helpers ---


class TestRendering:

    def test_event_markup_escapes_brackets(self):
        event = parse_event(json.dumps({
            "event": "error", "level": "error", "timestamp": "2026-10-18T10:00:00Z",
            "op": "x", "err": "[red]not markup[/red]",
        }))
        line = format_event_rich(event)
        assert line.startswith("[bold red]\\[10:00:00]")
        assert "\\[red]not markup" in line

    def test_uncolored_event(self):
        event = parse_event('{"event": "mutation", "timestamp": "2026-10-18T10:00:00Z", "op": "x"}')
        assert format_event_rich(event).startswith("\\[10:00:00] mutation")

    def test_session_overview_text(self, state_reader):
        text = format_session_overview(state_reader.get_session())
        assert "Tier: [bold red]CRITICAL[/bold red] (1.2MB)" in text
        assert "ID: sess-1" in text
        assert "Restart pending" in text
        assert "Dir: /work/api" in text
        assert "(1 handoffs)" in text

    def test_empty_overview(self):
        text = format_session_overview(SessionOverview())
        assert "No sample yet" in text
        assert "No active session tracked" in text
        assert "Restart pending" not in text
