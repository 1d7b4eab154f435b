#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Resource monitor: sample the worker's transcript size and act on tiers.

Each sample resolves the worker's state artifact (tracker first, bounded
directory scan as fallback), classifies its size into a tier and writes
`TIER:DISPLAY` to the status surface. The first CRITICAL sample of a session
creates an auto handoff and then writes the restart request the supervisor
is watching for.
"""

import os
import time
from pathlib import Path
from typing import List, Optional, Tuple

try:
    from relay.channel_lock import ChannelLock
    from relay.channels import ChannelRegistry
    from relay.config import RelayConfig, load_config
    from relay.debug_logger import get_logger
    from relay.handoffs import HandoffStore
    from relay.models import (
        EXCLUDED_ARTIFACT_DIRS,
        MB,
        KB,
        SCAN_LIMIT,
        SCAN_MAX_DEPTH,
        SCAN_WINDOW_MINUTES,
        HandoffError,
        HandoffType,
        RelayError,
        RestartRequest,
        SessionTracker,
        Tier,
        TierSample,
        TierThresholds,
        isoformat,
        now_utc,
    )
    from relay.scheduling import PeriodicTask
    from relay.store import FileStore, StateStore
    from relay.transcript import build_auto_handoff_content, extract_recent_context
except ImportError:
    from channel_lock import ChannelLock
    from channels import ChannelRegistry
    from config import RelayConfig, load_config
    from debug_logger import get_logger
    from handoffs import HandoffStore
    from models import (
        EXCLUDED_ARTIFACT_DIRS,
        MB,
        KB,
        SCAN_LIMIT,
        SCAN_MAX_DEPTH,
        SCAN_WINDOW_MINUTES,
        HandoffError,
        HandoffType,
        RelayError,
        RestartRequest,
        SessionTracker,
        Tier,
        TierSample,
        TierThresholds,
        isoformat,
        now_utc,
    )
    from scheduling import PeriodicTask
    from store import FileStore, StateStore
    from transcript import build_auto_handoff_content, extract_recent_context


STATUS_KEY = "context-status"
RESTART_KEY = "restart-request"
TRACKER_KEY = "current-session"


def marker_key(session_id: str) -> str:
    return f"markers/{session_id}.critical"


def load_flag_key(channel: str) -> str:
    return f"flags/{channel}.load-handoff"


# =============================================================================
# Shared surfaces
# =============================================================================


def read_tracker(store: StateStore) -> Optional[SessionTracker]:
    return SessionTracker.parse(store.get(TRACKER_KEY))


def write_tracker(store: StateStore, tracker: SessionTracker) -> None:
    store.put(TRACKER_KEY, tracker.format())


def clear_tracker(store: StateStore, session_id: Optional[str] = None) -> bool:
    """Remove the tracker; with session_id, only if it still names that session."""
    raw = store.get(TRACKER_KEY)
    if raw is None:
        return False
    if session_id is not None:
        tracker = SessionTracker.parse(raw)
        if tracker is None or tracker.session_id != session_id:
            return False
    return store.compare_and_delete(TRACKER_KEY, raw)


def adopt_artifact(
    store: StateStore,
    projects_dir: Path,
    session_id: Optional[str] = None,
) -> Optional[Tuple[str, Path]]:
    """
    Attach the newest transcript written since the tracker to the tracked session.

    The worker names its transcript after its own id, which the supervisor
    never learns; the tracker's id is the one restart requests must carry.
    Transcripts older than the tracker belong to an earlier worker and are
    never adopted. The found path is written back into the tracker.

    Returns (tracked session id, path), or None.
    """
    raw = store.get(TRACKER_KEY)
    tracker = SessionTracker.parse(raw)
    if tracker is None or (session_id is not None and tracker.session_id != session_id):
        return None
    age = store.age_seconds(TRACKER_KEY)
    since = time.time() - age if age is not None else 0.0

    candidates = scan_artifacts(projects_dir)
    if not candidates:
        return None
    newest = candidates[0]
    try:
        if newest.stat().st_mtime < since:
            return None
    except FileNotFoundError:
        return None

    if store.compare_and_put(TRACKER_KEY, raw, SessionTracker(tracker.session_id, str(newest)).format()):
        get_logger().mutation("tracker_adopted", str(newest), {"session_id": tracker.session_id})
    return tracker.session_id, newest


def read_restart_request(store: StateStore) -> Optional[RestartRequest]:
    return RestartRequest.parse(store.get(RESTART_KEY))


def read_status(store: StateStore) -> Optional[Tuple[str, str]]:
    """Parse the status surface into (tier, display)."""
    raw = store.get(STATUS_KEY)
    if not raw or ":" not in raw:
        return None
    tier, _, display = raw.strip().partition(":")
    return tier, display


# =============================================================================
# Classification
# =============================================================================


def classify(size_bytes: int, thresholds: TierThresholds) -> Tier:
    """Map a byte size onto a tier. Boundaries are inclusive lower bounds."""
    if size_bytes >= thresholds.critical:
        return Tier.CRITICAL
    if size_bytes >= thresholds.warn:
        return Tier.WARN
    if size_bytes >= thresholds.early_warn:
        return Tier.EARLY_WARN
    return Tier.OK


def format_size(size_bytes: int) -> str:
    """`1.3MB` at or above one MiB, otherwise whole KiB like `812KB`."""
    if size_bytes >= MB:
        return f"{size_bytes / MB:.1f}MB"
    return f"{size_bytes // KB}KB"


def scan_artifacts(
    root: Path,
    window_minutes: int = SCAN_WINDOW_MINUTES,
    max_depth: int = SCAN_MAX_DEPTH,
    limit: int = SCAN_LIMIT,
    now: Optional[float] = None,
) -> List[Path]:
    """
    Find recently modified transcripts under root, newest first.

    Only `*.jsonl` files at most max_depth levels below root are considered,
    never anything under an excluded directory (subagent transcripts). At
    most `limit` candidates are inspected.
    """
    now = time.time() if now is None else now
    cutoff = now - window_minutes * 60
    found: List[Tuple[float, Path]] = []
    inspected = 0

    def walk(directory: Path, depth: int) -> bool:
        nonlocal inspected
        try:
            entries = list(os.scandir(directory))
        except (FileNotFoundError, NotADirectoryError, PermissionError):
            return True
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if depth < max_depth and entry.name not in EXCLUDED_ARTIFACT_DIRS:
                    if not walk(Path(entry.path), depth + 1):
                        return False
                continue
            if not entry.name.endswith(".jsonl"):
                continue
            inspected += 1
            try:
                mtime = entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime >= cutoff:
                found.append((mtime, Path(entry.path)))
            if inspected >= limit:
                return False
        return True

    walk(Path(root), 1)
    found.sort(key=lambda item: item[0], reverse=True)
    return [path for _, path in found]


# =============================================================================
# Monitor
# =============================================================================


class ResourceMonitor:
    """
    Samples worker state size and triggers handoff + restart on CRITICAL.

    Args:
        config: Resolved configuration
        store: State store (default: FileStore at the relay home)
        handoffs: Handoff store (default: built on store)
        lock: Channel lock (default: built on store)
        registry: Channel registry (default: loaded from config)
        working_dir: Worker working directory (default: cwd)
        worker_pid: Pid of the monitored worker; a lock it holds is ours
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        store: Optional[StateStore] = None,
        handoffs: Optional[HandoffStore] = None,
        lock: Optional[ChannelLock] = None,
        registry: Optional[ChannelRegistry] = None,
        working_dir: Optional[str] = None,
        worker_pid: Optional[int] = None,
    ):
        self.config = config or load_config()
        self.store = store or FileStore(self.config.home)
        self.handoffs = handoffs or HandoffStore(self.store, self.config.retention_seconds)
        self.lock = lock or ChannelLock(self.store, self.config.lease_seconds)
        self.registry = registry if registry is not None else ChannelRegistry.load(self.config.registry_path)
        self.working_dir = working_dir or os.getcwd()
        self.worker_pid = worker_pid
        self._task: Optional[PeriodicTask] = None

    @property
    def thresholds(self) -> TierThresholds:
        return self.config.thresholds

    def resolve_artifact(self) -> Optional[Tuple[str, Path, str]]:
        """
        Locate the active worker's transcript.

        Returns (session_id, path, source) where source is "tracker" or
        "scan", or None when no worker appears to be active. While a session
        is tracked its id is reported even for a scanned transcript; only
        without a tracker does the transcript's file stem name the session.
        """
        tracker = read_tracker(self.store)
        if tracker is not None:
            if tracker.worker_state_path:
                path = Path(tracker.worker_state_path)
                if path.is_file():
                    return tracker.session_id, path, "tracker"
            adopted = adopt_artifact(self.store, self.config.projects_dir, tracker.session_id)
            if adopted is None:
                return None
            return adopted[0], adopted[1], "scan"

        candidates = scan_artifacts(self.config.projects_dir)
        if not candidates:
            return None
        newest = candidates[0]
        return newest.stem, newest, "scan"

    def sample(self) -> Optional[TierSample]:
        """Take one sample. Returns None when there is no active worker."""
        resolved = self.resolve_artifact()
        if resolved is None:
            return None
        session_id, path, source = resolved
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None

        thresholds = self.thresholds
        tier = classify(size, thresholds)
        sample = TierSample(
            tier=tier,
            size_bytes=size,
            display=format_size(size),
            artifact_path=str(path),
            session_id=session_id,
        )

        logger = get_logger()
        previous = read_status(self.store)
        self.store.put(STATUS_KEY, sample.format())
        logger.tier_sample(session_id, tier.value, size, str(path), source)
        old_tier = previous[0] if previous else None
        if old_tier != tier.value:
            logger.tier_change(session_id, old_tier, tier.value, size, size / thresholds.hard_limit * 100)

        if tier == Tier.CRITICAL:
            self._on_critical(sample)
        return sample

    def _lock_held_elsewhere(self, channel: str) -> Optional[int]:
        token = self.lock.holder(channel)
        if token is None or token.holder_pid == self.worker_pid:
            return None
        if self.lock.is_stale(token):
            return None
        return token.holder_pid

    def _on_critical(self, sample: TierSample) -> None:
        """Create the auto handoff, then request a restart (once per session)."""
        logger = get_logger()
        marker = marker_key(sample.session_id)
        if not self.store.create_exclusive(marker, isoformat(now_utc())):
            return

        channel = self.registry.resolve(self.working_dir)
        other = self._lock_held_elsewhere(channel)
        if other is not None:
            logger.mutation("critical_skipped", channel, {"session_id": sample.session_id, "holder_pid": other})
            return

        try:
            content = build_auto_handoff_content(
                channel=channel,
                working_dir=self.working_dir,
                session_id=sample.session_id,
                timestamp=now_utc().strftime("%Y-%m-%d %H:%M"),
                recent=extract_recent_context(sample.artifact_path),
            )
            sample.handoff_id = self.handoffs.create(
                channel,
                content,
                HandoffType.AUTO.value,
                session_id=sample.session_id,
                working_dir=self.working_dir,
                created_by_pid=self.worker_pid,
            )
        except (HandoffError, OSError) as e:
            # No handoff, no restart; let a later sample try again
            logger.error("critical_handoff", str(e), {"channel": channel, "session_id": sample.session_id})
            self.store.delete(marker)
            return

        request = RestartRequest(session_id=sample.session_id, working_dir=self.working_dir)
        self.store.put(RESTART_KEY, request.format())
        sample.restart_requested = True
        logger.restart_requested(sample.session_id, self.working_dir, sample.handoff_id)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _step(self) -> bool:
        """One scheduled sample. A failed sample is logged and the loop goes on."""
        try:
            self.sample()
        except (RelayError, OSError) as e:
            get_logger().error("monitor_sample", str(e), {"working_dir": self.working_dir})
        return True

    def start(self, interval: float = 5.0) -> PeriodicTask:
        """Sample every interval seconds on a background task."""
        if self._task is None or not self._task.running:
            self._task = PeriodicTask("relay-monitor", interval, self._step).start()
        return self._task

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    def run(self, interval: float = 5.0) -> None:
        """Sample in the foreground until interrupted."""
        task = self.start(interval)
        try:
            while not task.join(1.0):
                pass
        finally:
            self.cancel()
