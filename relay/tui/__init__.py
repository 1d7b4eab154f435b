#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Dashboard for session relay.

Usage:
    from relay.tui import run_app
    run_app()
"""

from .models import DebugEvent, ChannelSummary, SessionOverview
from .log_reader import LogReader, parse_event, format_event_line, get_default_log_path
from .state_reader import StateReader


# Defer app import so textual is only needed for the dashboard itself
def _get_app():
    from .app import RelayMonitorApp, run_app
    return RelayMonitorApp, run_app


def run_app(*args, **kwargs):
    """Run the dashboard. See app.run_app for details."""
    _, _run_app = _get_app()
    return _run_app(*args, **kwargs)


__all__ = [
    # Models
    "DebugEvent",
    "ChannelSummary",
    "SessionOverview",
    # Log reader
    "LogReader",
    "parse_event",
    "format_event_line",
    "get_default_log_path",
    # State reader
    "StateReader",
    # App (lazy loaded)
    "run_app",
]
