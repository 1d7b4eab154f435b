#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Configuration for session relay.

Values are resolved in order of precedence:
    environment variable → settings.json ("relay" section) → default

Environment variables:
    RELAY_HOME                 state directory (default $XDG_STATE_HOME/session-relay)
    RELAY_PROJECTS_DIR         where worker transcripts live (default ~/.claude/projects)
    RELAY_CHANNEL_REGISTRY     path→channel registry (default <home>/channel-registry.json)
    RELAY_EARLY_WARN_KB, RELAY_WARN_KB, RELAY_CRITICAL_KB, RELAY_HARD_LIMIT_KB
    RELAY_RETENTION_SECONDS    max age of a loadable handoff (default 7200)
    RELAY_RESTART_CEILING      max watcher-triggered restarts (default 10)
    RELAY_POLL_INTERVAL        restart watcher poll interval in seconds (default 0.5)
    RELAY_LEASE_SECONDS        lock lease lifetime for heartbeating holders (default 120)
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from relay.debug_logger import get_relay_home
    from relay.models import (
        CRITICAL_KB_DEFAULT,
        EARLY_WARN_KB_DEFAULT,
        HARD_LIMIT_KB_DEFAULT,
        KB,
        LEASE_SECONDS_DEFAULT,
        POLL_INTERVAL_DEFAULT,
        RESTART_CEILING_DEFAULT,
        RETENTION_SECONDS_DEFAULT,
        TEST_CRITICAL_KB,
        TEST_EARLY_WARN_KB,
        TEST_HARD_LIMIT_KB,
        TEST_WARN_KB,
        WARN_KB_DEFAULT,
        ConfigError,
        TierThresholds,
    )
except ImportError:
    from debug_logger import get_relay_home
    from models import (
        CRITICAL_KB_DEFAULT,
        EARLY_WARN_KB_DEFAULT,
        HARD_LIMIT_KB_DEFAULT,
        KB,
        LEASE_SECONDS_DEFAULT,
        POLL_INTERVAL_DEFAULT,
        RESTART_CEILING_DEFAULT,
        RETENTION_SECONDS_DEFAULT,
        TEST_CRITICAL_KB,
        TEST_EARLY_WARN_KB,
        TEST_HARD_LIMIT_KB,
        TEST_WARN_KB,
        WARN_KB_DEFAULT,
        ConfigError,
        TierThresholds,
    )


SETTINGS_FILE_NAME = "settings.json"
REGISTRY_FILE_NAME = "channel-registry.json"
TEST_MODE_FILE_NAME = ".test-mode"

# settings.json key -> (env var, default)
_NUMERIC_SETTINGS = {
    "earlyWarnKB": ("RELAY_EARLY_WARN_KB", EARLY_WARN_KB_DEFAULT),
    "warnKB": ("RELAY_WARN_KB", WARN_KB_DEFAULT),
    "criticalKB": ("RELAY_CRITICAL_KB", CRITICAL_KB_DEFAULT),
    "hardLimitKB": ("RELAY_HARD_LIMIT_KB", HARD_LIMIT_KB_DEFAULT),
    "retentionSeconds": ("RELAY_RETENTION_SECONDS", RETENTION_SECONDS_DEFAULT),
    "restartCeiling": ("RELAY_RESTART_CEILING", RESTART_CEILING_DEFAULT),
    "pollInterval": ("RELAY_POLL_INTERVAL", POLL_INTERVAL_DEFAULT),
    "leaseSeconds": ("RELAY_LEASE_SECONDS", LEASE_SECONDS_DEFAULT),
}


def _default_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


@dataclass
class RelayConfig:
    """Resolved relay configuration."""

    home: Path
    projects_dir: Path
    registry_path: Path
    early_warn_kb: int = EARLY_WARN_KB_DEFAULT
    warn_kb: int = WARN_KB_DEFAULT
    critical_kb: int = CRITICAL_KB_DEFAULT
    hard_limit_kb: int = HARD_LIMIT_KB_DEFAULT
    retention_seconds: int = RETENTION_SECONDS_DEFAULT
    restart_ceiling: int = RESTART_CEILING_DEFAULT
    poll_interval: float = POLL_INTERVAL_DEFAULT
    lease_seconds: int = LEASE_SECONDS_DEFAULT
    test_mode: bool = False
    kill_grace_seconds: float = 5.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check tier boundaries ascend and the numeric limits are sane."""
        bounds = [self.early_warn_kb, self.warn_kb, self.critical_kb, self.hard_limit_kb]
        if any(b <= 0 for b in bounds):
            raise ConfigError(f"Tier thresholds must be positive: {bounds}")
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ConfigError(
                "Tier thresholds must be strictly ascending "
                f"(early_warn < warn < critical < hard_limit): {bounds}"
            )
        if self.retention_seconds <= 0:
            raise ConfigError(f"retention_seconds must be positive: {self.retention_seconds}")
        if self.restart_ceiling < 0:
            raise ConfigError(f"restart_ceiling must not be negative: {self.restart_ceiling}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be positive: {self.poll_interval}")
        if self.lease_seconds < 0:
            raise ConfigError(f"lease_seconds must not be negative: {self.lease_seconds}")

    @property
    def thresholds(self) -> TierThresholds:
        """Tier boundaries in bytes. Test mode swaps in ultra-low values."""
        if self.test_mode:
            return TierThresholds(
                early_warn=TEST_EARLY_WARN_KB * KB,
                warn=TEST_WARN_KB * KB,
                critical=TEST_CRITICAL_KB * KB,
                hard_limit=TEST_HARD_LIMIT_KB * KB,
            )
        return TierThresholds(
            early_warn=self.early_warn_kb * KB,
            warn=self.warn_kb * KB,
            critical=self.critical_kb * KB,
            hard_limit=self.hard_limit_kb * KB,
        )


def _read_settings(home: Path) -> Dict[str, Any]:
    """Read the "relay" section of settings.json. Missing/invalid → {}."""
    settings_path = home / SETTINGS_FILE_NAME
    try:
        with open(settings_path) as f:
            settings = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read {settings_path}: {e}")
    section = settings.get("relay", {}) if isinstance(settings, dict) else {}
    return section if isinstance(section, dict) else {}


def _resolve_number(key: str, settings: Dict[str, Any], env: Dict[str, str]):
    env_var, default = _NUMERIC_SETTINGS[key]
    raw = env.get(env_var)
    source = env_var
    if raw is None or raw == "":
        if key not in settings:
            return default
        raw = settings[key]
        source = f"settings.json relay.{key}"
    caster = float if isinstance(default, float) else int
    try:
        return caster(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {source}: {raw!r}")


def load_config(env: Optional[Dict[str, str]] = None, home: Optional[Path] = None) -> RelayConfig:
    """Build a RelayConfig from the environment and settings.json."""
    env = dict(os.environ) if env is None else env
    if home is None:
        home = Path(env["RELAY_HOME"]) if env.get("RELAY_HOME") else get_relay_home()
    settings = _read_settings(home)

    projects = env.get("RELAY_PROJECTS_DIR") or settings.get("projectsDir")
    registry = env.get("RELAY_CHANNEL_REGISTRY") or settings.get("channelRegistry")

    return RelayConfig(
        home=home,
        projects_dir=Path(projects).expanduser() if projects else _default_projects_dir(),
        registry_path=Path(registry).expanduser() if registry else home / REGISTRY_FILE_NAME,
        early_warn_kb=_resolve_number("earlyWarnKB", settings, env),
        warn_kb=_resolve_number("warnKB", settings, env),
        critical_kb=_resolve_number("criticalKB", settings, env),
        hard_limit_kb=_resolve_number("hardLimitKB", settings, env),
        retention_seconds=_resolve_number("retentionSeconds", settings, env),
        restart_ceiling=_resolve_number("restartCeiling", settings, env),
        poll_interval=_resolve_number("pollInterval", settings, env),
        lease_seconds=_resolve_number("leaseSeconds", settings, env),
        test_mode=(home / TEST_MODE_FILE_NAME).exists(),
        extra={k: v for k, v in settings.items() if k not in _NUMERIC_SETTINGS},
    )
