#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""Shared fixtures: every test gets its own relay home and a fresh logger."""

from pathlib import Path

import pytest

from relay.debug_logger import reset_logger

RELAY_ENV_VARS = (
    "RELAY_HOME",
    "RELAY_DEBUG",
    "RELAY_DEBUG_LEVEL",
    "RELAY_SESSION_ID",
    "RELAY_CHANNEL",
    "RELAY_LOAD_HANDOFF",
    "RELAY_SUPERVISOR_PID",
    "RELAY_PROJECTS_DIR",
    "RELAY_CHANNEL_REGISTRY",
    "RELAY_EARLY_WARN_KB",
    "RELAY_WARN_KB",
    "RELAY_CRITICAL_KB",
    "RELAY_HARD_LIMIT_KB",
    "RELAY_RETENTION_SECONDS",
    "RELAY_RESTART_CEILING",
    "RELAY_POLL_INTERVAL",
    "RELAY_LEASE_SECONDS",
)


@pytest.fixture(autouse=True)
def relay_home(tmp_path: Path, monkeypatch) -> Path:
    """Point RELAY_HOME at a temp dir and clear other relay env vars."""
    for name in RELAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "relay-home"
    home.mkdir()
    monkeypatch.setenv("RELAY_HOME", str(home))
    return home


@pytest.fixture(autouse=True)
def reset_logger_state():
    """Reset the global logger before and after each test."""
    reset_logger()
    yield
    reset_logger()
