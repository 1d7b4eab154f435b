#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Session relay - keep a long-running agent session going across restarts.

Monitors the worker's transcript size, hands accumulated state to a fresh
successor before an external limit forces a lossy reset, and coordinates
the processes involved through atomic filesystem operations.

Usage:
    from relay import HandoffStore, FileStore

    store = FileStore(home)
    handoffs = HandoffStore(store)
    handoff_id = handoffs.create("api", "notes for the next session", "manual")
    content = handoffs.load("api", os.getpid())
"""

# Data models - Constants
from relay.models import (
    DEFAULT_CHANNEL,
    RECORD_VERSION,
    RETENTION_SECONDS_DEFAULT,
    RESTART_CEILING_DEFAULT,
)

# Data models - Enums
from relay.models import (
    Tier,
    HandoffType,
    HandoffStatus,
    ExitReason,
    SupervisorState,
)

# Data models - Dataclasses
from relay.models import (
    HandoffRecord,
    Manifest,
    LockToken,
    SessionTracker,
    RestartRequest,
    TierThresholds,
    TierSample,
    StartupResult,
)

# Errors
from relay.models import (
    RelayError,
    ConfigError,
    RegistryError,
    HandoffError,
    NoActiveHandoffError,
    HandoffIntegrityError,
    HandoffExpiredError,
    HandoffConflictError,
    RestartCeilingError,
)

# Components
from relay.config import RelayConfig, load_config
from relay.store import StateStore, FileStore, MemoryStore
from relay.file_lock import FileLock
from relay.channels import ChannelRegistry, resolve_channel, get_channel
from relay.channel_lock import ChannelLock
from relay.handoffs import HandoffStore
from relay.monitor import ResourceMonitor, classify, format_size
from relay.supervisor import Supervisor, RestartWatcher, TrackerPopulator
from relay.scheduling import PeriodicTask, CancellationToken

# CLI entry point
from relay.cli import main

__all__ = [
    # Constants
    "DEFAULT_CHANNEL",
    "RECORD_VERSION",
    "RETENTION_SECONDS_DEFAULT",
    "RESTART_CEILING_DEFAULT",
    # Enums
    "Tier",
    "HandoffType",
    "HandoffStatus",
    "ExitReason",
    "SupervisorState",
    # Dataclasses
    "HandoffRecord",
    "Manifest",
    "LockToken",
    "SessionTracker",
    "RestartRequest",
    "TierThresholds",
    "TierSample",
    "StartupResult",
    # Errors
    "RelayError",
    "ConfigError",
    "RegistryError",
    "HandoffError",
    "NoActiveHandoffError",
    "HandoffIntegrityError",
    "HandoffExpiredError",
    "HandoffConflictError",
    "RestartCeilingError",
    # Components
    "RelayConfig",
    "load_config",
    "StateStore",
    "FileStore",
    "MemoryStore",
    "FileLock",
    "ChannelRegistry",
    "resolve_channel",
    "get_channel",
    "ChannelLock",
    "HandoffStore",
    "ResourceMonitor",
    "classify",
    "format_size",
    "Supervisor",
    "RestartWatcher",
    "TrackerPopulator",
    "PeriodicTask",
    "CancellationToken",
    # CLI
    "main",
]
