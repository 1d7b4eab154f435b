#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""Tests for the TUI log reader module."""

import json
from pathlib import Path

import pytest

from relay.tui.log_reader import (
    LogReader,
    format_event_details,
    format_event_line,
    get_default_log_path,
    parse_event,
)


# --- Fixtures ---


@pytest.fixture
def lock_event() -> dict:
    return {
        "event": "lock_change",
        "level": "info",
        "timestamp": "2026-10-18T10:30:00Z",
        "session_id": "sess-abc123",
        "pid": 12345,
        "channel": "api",
        "action": "denied",
        "holder_pid": 200,
        "other_pid": 100,
    }


@pytest.fixture
def tier_event() -> dict:
    return {
        "event": "tier_change",
        "level": "info",
        "timestamp": "2026-10-18T10:31:00Z",
        "session_id": "sess-def456",
        "pid": 12345,
        "old_tier": "WARN",
        "new_tier": "CRITICAL",
        "size_bytes": 1230000,
        "pct_of_limit": 86.4,
    }


@pytest.fixture
def error_event() -> dict:
    return {
        "event": "error",
        "level": "error",
        "timestamp": "2026-10-18T10:32:00Z",
        "session_id": "sess-abc123",
        "pid": 12345,
        "channel": "web",
        "op": "handoff_load",
        "err": "ID mismatch for channel 'web'",
    }


def _write_events(path: Path, events) -> Path:
    with open(path, "a") as f:
        for event in events:
            f.write(json.dumps(event) + "\n")
    return path


# --- Tests ---


class TestParseEvent:

    def test_valid_event(self, lock_event):
        event = parse_event(json.dumps(lock_event))
        assert event.event == "lock_change"
        assert event.channel == "api"
        assert event.session_id == "sess-abc123"
        assert event.pid == 12345
        assert event.get("holder_pid") == 200

    def test_missing_optional_fields(self):
        event = parse_event('{"event": "timing", "ms": 3.2}')
        assert event.channel == ""
        assert event.session_id == ""
        assert event.level == "info"

    def test_invalid_lines(self):
        assert parse_event("") is None
        assert parse_event("   ") is None
        assert parse_event("{not json") is None
        assert parse_event("[1, 2]") is None

    def test_timestamp_and_error_flags(self, error_event):
        event = parse_event(json.dumps(error_event))
        assert event.is_error
        assert event.timestamp_dt.year == 2026


class TestFormatting:

    def test_lock_details(self, lock_event):
        assert format_event_details(parse_event(json.dumps(lock_event))) == "denied pid=200 other=100"

    def test_tier_details(self, tier_event):
        details = format_event_details(parse_event(json.dumps(tier_event)))
        assert details == "WARN -> CRITICAL (1230000B, 86.4%)"

    def test_error_details(self, error_event):
        details = format_event_details(parse_event(json.dumps(error_event)))
        assert details.startswith("handoff_load: ID mismatch")

    def test_unknown_event_shows_first_field(self):
        event = parse_event('{"event": "mutation", "level": "info", "op": "archive_blob"}')
        assert format_event_details(event) == "op=archive_blob"

    def test_event_line(self, lock_event):
        line = format_event_line(parse_event(json.dumps(lock_event)))
        assert line.startswith("[10:30:00] lock_change")
        assert "api" in line


class TestLogReader:

    def test_default_path_follows_relay_home(self, relay_home):
        assert get_default_log_path() == relay_home / "debug.log"

    def test_missing_file(self, tmp_path: Path):
        reader = LogReader(tmp_path / "nope.log")
        assert reader.load_buffer() == 0
        assert reader.read_recent() == []

    def test_incremental_loading(self, tmp_path: Path, lock_event, tier_event):
        log_path = _write_events(tmp_path / "debug.log", [lock_event])
        reader = LogReader(log_path)
        assert reader.load_buffer() == 1
        assert reader.load_buffer() == 0

        _write_events(log_path, [tier_event])
        assert reader.load_buffer() == 1
        assert [e.event for e in reader.new_events(1)] == ["tier_change"]
        assert reader.buffer_size == 2

    def test_skips_bad_lines(self, tmp_path: Path, lock_event):
        log_path = tmp_path / "debug.log"
        log_path.write_text("garbage\n" + json.dumps(lock_event) + "\n\n")
        assert LogReader(log_path).load_buffer() == 1

    def test_rotation_restarts_from_top(self, tmp_path: Path, lock_event, tier_event):
        log_path = _write_events(tmp_path / "debug.log", [lock_event, lock_event])
        reader = LogReader(log_path)
        reader.load_buffer()

        log_path.rename(tmp_path / "debug.log.1")
        _write_events(log_path, [tier_event])

        assert reader.load_buffer() == 1
        assert reader.read_recent(1)[0].event == "tier_change"

    def test_buffer_is_bounded(self, tmp_path: Path, lock_event):
        log_path = _write_events(tmp_path / "debug.log", [lock_event] * 20)
        reader = LogReader(log_path, max_buffer=5)
        reader.load_buffer()
        assert reader.buffer_size == 5

    def test_read_recent_limit(self, tmp_path: Path, lock_event):
        log_path = _write_events(tmp_path / "debug.log", [lock_event] * 10)
        assert len(LogReader(log_path).read_recent(3)) == 3

    def test_filter(self, tmp_path: Path, lock_event, tier_event, error_event):
        log_path = _write_events(tmp_path / "debug.log", [lock_event, tier_event, error_event])
        reader = LogReader(log_path)
        assert [e.event for e in reader.filter(channel="api")] == ["lock_change"]
        assert [e.event for e in reader.filter(session_id="sess-abc123")] == ["lock_change", "error"]
        assert [e.event for e in reader.filter(event_type="tier_change")] == ["tier_change"]
        assert reader.filter(channel="web", event_type="lock_change") == []

    def test_sessions_most_recent_first(self, tmp_path: Path, lock_event, tier_event, error_event):
        log_path = _write_events(tmp_path / "debug.log", [lock_event, tier_event, error_event])
        assert LogReader(log_path).get_sessions() == ["sess-abc123", "sess-def456"]
