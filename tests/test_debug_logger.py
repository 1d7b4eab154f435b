#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Test suite for debug logger.

Run with: pytest tests/test_debug_logger.py -v
"""

import json
from pathlib import Path

import pytest

from relay.debug_logger import (
    DebugLogger,
    _get_debug_level,
    _rotate_if_needed,
    get_logger,
    get_relay_home,
    reset_logger,
    trace_call,
)


# =============================================================================
# Fixtures
# =============================================================================


def _read_events(home: Path):
    log_path = home / "debug.log"
    if not log_path.exists():
        return []
    return [json.loads(line) for line in log_path.read_text().splitlines() if line]


# =============================================================================
# Tests: Level Configuration
# =============================================================================


class TestDebugLevel:
    """Test debug level parsing."""

    def test_info_by_default(self):
        """Level 1 when nothing is configured."""
        assert _get_debug_level() == 1

    def test_level_0_disabled(self, monkeypatch):
        monkeypatch.setenv("RELAY_DEBUG", "0")
        assert _get_debug_level() == 0

    def test_levels(self, monkeypatch):
        for level in ("1", "2", "3"):
            monkeypatch.setenv("RELAY_DEBUG", level)
            assert _get_debug_level() == int(level)

    def test_fallback_variable(self, monkeypatch):
        monkeypatch.setenv("RELAY_DEBUG_LEVEL", "2")
        assert _get_debug_level() == 2

    def test_truthy_values(self, monkeypatch):
        for value in ("true", "yes", "on", "TRUE"):
            monkeypatch.setenv("RELAY_DEBUG", value)
            assert _get_debug_level() == 1

    def test_invalid_values(self, monkeypatch):
        monkeypatch.setenv("RELAY_DEBUG", "banana")
        assert _get_debug_level() == 0

    def test_settings_file(self, relay_home):
        (relay_home / "settings.json").write_text(json.dumps({"relay": {"debugLevel": 3}}))
        assert _get_debug_level() == 3

    def test_env_beats_settings(self, monkeypatch, relay_home):
        (relay_home / "settings.json").write_text(json.dumps({"relay": {"debugLevel": 3}}))
        monkeypatch.setenv("RELAY_DEBUG", "0")
        assert _get_debug_level() == 0


class TestRelayHome:

    def test_relay_home_env(self, relay_home):
        assert get_relay_home() == relay_home

    def test_xdg_state_home(self, monkeypatch, tmp_path: Path):
        monkeypatch.delenv("RELAY_HOME")
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
        assert get_relay_home() == tmp_path / "state" / "session-relay"


# =============================================================================
# Tests: Output
# =============================================================================


class TestJsonLinesOutput:
    """Events are JSON lines with timestamp and pid."""

    def test_no_write_when_disabled(self, monkeypatch, relay_home):
        monkeypatch.setenv("RELAY_DEBUG", "0")
        logger = DebugLogger()
        assert not logger.enabled
        logger.lock_change("api", "acquired", 100)
        assert not (relay_home / "debug.log").exists()

    def test_writes_json_lines(self, relay_home):
        logger = DebugLogger()
        logger.lock_change("api", "acquired", 100)
        logger.handoff_change("HO-1", "api", "active", "consumed", 200)

        events = _read_events(relay_home)
        assert [e["event"] for e in events] == ["lock_change", "handoff_change"]
        assert events[0]["channel"] == "api"
        assert events[0]["holder_pid"] == 100
        assert events[1]["new_status"] == "consumed"
        assert events[0]["timestamp"].endswith("Z")
        assert "pid" in events[0]

    def test_handoff_created_event(self, relay_home):
        DebugLogger().handoff_created("HO-2", "api", "auto", "sess", 123, superseded_id="HO-1")
        event = _read_events(relay_home)[0]
        assert event["type"] == "auto"
        assert event["superseded_id"] == "HO-1"
        assert event["content_length"] == 123

    def test_restart_events(self, relay_home):
        logger = DebugLogger()
        logger.restart_requested("sess", "/work", "HO-1")
        logger.restart_verified("sess", 4242)
        logger.restart_discarded("other", "sess")
        events = _read_events(relay_home)
        assert [e["event"] for e in events] == ["restart_requested", "restart_verified", "restart_discarded"]
        assert events[2]["tracked_session"] == "sess"

    def test_error_event_with_context(self, relay_home):
        DebugLogger().error("handoff_load", "id mismatch", {"channel": "api"})
        event = _read_events(relay_home)[0]
        assert event["level"] == "error"
        assert event["ctx"] == {"channel": "api"}

    def test_env_session_and_channel_stamped(self, monkeypatch, relay_home):
        monkeypatch.setenv("RELAY_SESSION_ID", "sess-env")
        monkeypatch.setenv("RELAY_CHANNEL", "env-channel")
        DebugLogger().mutation("registry_load", "/x")
        event = _read_events(relay_home)[0]
        assert event["session_id"] == "sess-env"
        assert event["channel"] == "env-channel"

    def test_explicit_channel_not_overridden(self, monkeypatch, relay_home):
        monkeypatch.setenv("RELAY_CHANNEL", "env-channel")
        DebugLogger().lock_change("api", "released", 1)
        assert _read_events(relay_home)[0]["channel"] == "api"


class TestLevelGating:
    """Debug and trace events need higher levels."""

    def test_debug_events_not_at_level_1(self, relay_home):
        logger = DebugLogger()
        logger.tier_sample("s", "OK", 10, "/x.jsonl", "scan")
        logger.supervisor_state("RUNNING", "s", 0)
        with logger.timer("op"):
            pass
        assert _read_events(relay_home) == []

    def test_debug_events_at_level_2(self, monkeypatch, relay_home):
        monkeypatch.setenv("RELAY_DEBUG", "2")
        logger = DebugLogger()
        logger.tier_sample("s", "WARN", 10, "/x.jsonl", "tracker")
        with logger.timer("handoff_load", {"channel": "api"}):
            pass
        events = _read_events(relay_home)
        assert events[0]["source"] == "tracker"
        assert events[1]["event"] == "timing"
        assert events[1]["channel"] == "api"

    def test_trace_events_at_level_3(self, monkeypatch, relay_home):
        monkeypatch.setenv("RELAY_DEBUG", "3")
        logger = DebugLogger()
        with logger.trace_file_io("read", "/x"):
            pass
        with logger.trace_lock("/x.flock"):
            pass

        @trace_call
        def work():
            return 42

        reset_logger()
        assert work() == 42
        events = [e["event"] for e in _read_events(relay_home)]
        assert events == ["file_io", "lock_acquired", "function_call"]


class TestRotation:

    def test_rotates_large_log(self, relay_home, monkeypatch):
        monkeypatch.setattr("relay.debug_logger.MAX_LOG_SIZE_MB", 0)
        log_path = relay_home / "debug.log"
        log_path.write_text("old\n")
        _rotate_if_needed(log_path)
        assert not log_path.exists()
        assert (relay_home / "debug.log.1").read_text() == "old\n"


class TestGlobalLogger:

    def test_get_logger_returns_same_instance(self):
        assert get_logger() is get_logger()

    def test_reset_logger_clears_instance(self):
        first = get_logger()
        reset_logger()
        assert get_logger() is not first
