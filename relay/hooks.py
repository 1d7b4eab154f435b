#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Worker lifecycle hooks.

The worker runs these at session start and right before compaction. Both
resolve the channel from the working directory and only touch handoffs
when the worker is (or becomes) the channel's primary.
"""

import os
from typing import Any, Dict, Mapping, Optional

try:
    from relay.channel_lock import ChannelLock
    from relay.channels import ChannelRegistry
    from relay.config import RelayConfig, load_config
    from relay.debug_logger import get_logger
    from relay.handoffs import HandoffStore
    from relay.models import (
        HandoffError,
        HandoffType,
        NoActiveHandoffError,
        StartupResult,
        now_utc,
    )
    from relay.monitor import load_flag_key, read_tracker
    from relay.store import FileStore, StateStore
    from relay.transcript import build_auto_handoff_content, extract_recent_context
except ImportError:
    from channel_lock import ChannelLock
    from channels import ChannelRegistry
    from config import RelayConfig, load_config
    from debug_logger import get_logger
    from handoffs import HandoffStore
    from models import (
        HandoffError,
        HandoffType,
        NoActiveHandoffError,
        StartupResult,
        now_utc,
    )
    from monitor import load_flag_key, read_tracker
    from store import FileStore, StateStore
    from transcript import build_auto_handoff_content, extract_recent_context


class HookContext:
    """Everything a hook needs, built from config unless given explicitly."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        store: Optional[StateStore] = None,
        registry: Optional[ChannelRegistry] = None,
        lock: Optional[ChannelLock] = None,
        handoffs: Optional[HandoffStore] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.config = config or load_config()
        self.store = store or FileStore(self.config.home)
        self.registry = registry if registry is not None else ChannelRegistry.load(self.config.registry_path)
        self.lock = lock or ChannelLock(self.store, self.config.lease_seconds)
        self.handoffs = handoffs or HandoffStore(self.store, self.config.retention_seconds)
        self.env = os.environ if env is None else env

    def channel_for(self, working_dir: str) -> str:
        return self.registry.resolve(working_dir)


def _consume_load_flag(ctx: HookContext, channel: str) -> bool:
    """Take the one-shot load flag if it is meant for this worker."""
    key = load_flag_key(channel)
    raw = ctx.store.get(key)
    if raw is None:
        return False
    expected = ctx.env.get("RELAY_SESSION_ID")
    if expected and raw.strip() and raw.strip() != expected:
        return False
    return ctx.store.compare_and_delete(key, raw)


def session_start(
    pid: int,
    working_dir: Optional[str] = None,
    force_load: bool = False,
    ctx: Optional[HookContext] = None,
) -> StartupResult:
    """
    Run the worker's startup path.

    Acquires the channel lock for pid. A denied worker is a parallel session
    and starts fresh. The primary loads the channel's handoff when the load
    flag was set for it (or force_load); otherwise it only reports a pending
    handoff.
    """
    ctx = ctx or HookContext()
    working_dir = working_dir or os.getcwd()
    channel = ctx.channel_for(working_dir)
    logger = get_logger()

    if not ctx.lock.acquire(channel, pid):
        holder = ctx.lock.holder(channel)
        return StartupResult(
            channel=channel,
            working_dir=working_dir,
            lock_granted=False,
            lock_holder_pid=holder.holder_pid if holder else None,
        )

    result = StartupResult(channel=channel, working_dir=working_dir, lock_granted=True)
    should_load = _consume_load_flag(ctx, channel) or force_load

    if should_load:
        handoff_id = ctx.handoffs.active_id(channel)
        try:
            result.content = ctx.handoffs.load(channel, pid)
            result.handoff_id = handoff_id
        except NoActiveHandoffError as e:
            result.notes.append(str(e))
        except HandoffError as e:
            result.error = str(e)
            logger.error("session_start_load", str(e), {"channel": channel})
    else:
        result.pending_handoff_id = ctx.handoffs.active_id(channel)

    return result


def hook_output(result: StartupResult) -> Dict[str, Any]:
    """Wrap a startup result in the worker's SessionStart hook JSON."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "SessionStart",
            "additionalContext": result.format(),
        }
    }


def pre_compact(
    pid: int,
    working_dir: Optional[str] = None,
    session_id: Optional[str] = None,
    transcript_path: Optional[str] = None,
    ctx: Optional[HookContext] = None,
) -> Optional[str]:
    """
    Save an auto handoff before the worker compacts, then release its lock.

    Returns the new handoff id, or None when this worker is a parallel
    session (another live process holds the channel) or creation failed.
    """
    ctx = ctx or HookContext()
    working_dir = working_dir or os.getcwd()
    channel = ctx.channel_for(working_dir)
    logger = get_logger()

    tracker = read_tracker(ctx.store)
    session_id = session_id or ctx.env.get("RELAY_SESSION_ID") or (tracker.session_id if tracker else None)
    if not transcript_path and tracker is not None and tracker.session_id == session_id:
        transcript_path = tracker.worker_state_path or None

    holder = ctx.lock.holder(channel)
    if holder is not None and holder.holder_pid != pid and not ctx.lock.is_stale(holder):
        logger.mutation("pre_compact_skipped", channel, {"holder_pid": holder.holder_pid})
        return None

    content = build_auto_handoff_content(
        channel=channel,
        working_dir=working_dir,
        session_id=session_id,
        timestamp=now_utc().strftime("%Y-%m-%d %H:%M"),
        recent=extract_recent_context(transcript_path) if transcript_path else [],
        reason="Auto-compaction was about to run",
    )

    handoff_id = None
    try:
        handoff_id = ctx.handoffs.create(
            channel,
            content,
            HandoffType.AUTO.value,
            session_id=session_id,
            working_dir=working_dir,
            created_by_pid=pid,
        )
    except HandoffError as e:
        logger.error("pre_compact", str(e), {"channel": channel})

    # This session is ending via compaction
    ctx.lock.release(channel, pid)
    return handoff_id
