#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
CLI interface for session relay.

Usage:
    relay run [--handoff] -- claude [args...]
    relay monitor [--watch] [--interval N]
    relay session-start [--pid PID]
    relay pre-compact [--pid PID]
    relay handoff {create,load,clear,status,show,archive}
    relay lock {acquire,release,status}
    relay channel [PATH]
    relay status
    relay dashboard
"""

import argparse
import json as json_module
import os
import sys

# Handle both module import and direct script execution
try:
    from relay.channel_lock import lock_key
    from relay.config import load_config
    from relay.hooks import HookContext, hook_output, pre_compact, session_start
    from relay.models import (
        HandoffType,
        RelayError,
        RestartCeilingError,
        StartupResult,
    )
    from relay.monitor import (
        ResourceMonitor,
        read_restart_request,
        read_status,
        read_tracker,
    )
    from relay.supervisor import Supervisor
except ImportError:
    from channel_lock import lock_key
    from config import load_config
    from hooks import HookContext, hook_output, pre_compact, session_start
    from models import (
        HandoffType,
        RelayError,
        RestartCeilingError,
        StartupResult,
    )
    from monitor import (
        ResourceMonitor,
        read_restart_request,
        read_status,
        read_tracker,
    )
    from supervisor import Supervisor


EXIT_RESTART_CEILING = 3


def _read_hook_input() -> dict:
    """Hook payload the worker pipes on stdin (empty when run by hand)."""
    if sys.stdin is None or sys.stdin.isatty():
        return {}
    try:
        data = json_module.loads(sys.stdin.read() or "{}")
    except json_module.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _print_manifest_line(ctx: HookContext, channel: str) -> None:
    record = ctx.handoffs.get_record(channel)
    if record is None:
        print(f"  {channel}: none")
        return
    print(f"  {channel}: {record.status} ({record.id})")


def _print_handoff_status(ctx: HookContext, channel: str) -> None:
    record = ctx.handoffs.get_record(channel)
    if record is None:
        print(f"No handoff for channel '{channel}'")
        return
    print(f"Channel:  {channel}")
    print(f"ID:       {record.id}")
    print(f"Status:   {record.status}")
    print(f"Type:     {record.type}")
    print(f"Session:  {record.session_id}")
    print(f"Created:  {record.created_at} (pid {record.created_by_pid})")
    print(f"Dir:      {record.working_dir}")
    if record.consumed_at:
        print(f"Consumed: {record.consumed_at} (pid {record.consumed_by_pid})")
    if record.expired_at:
        print(f"Expired:  {record.expired_at}")
    if record.cleared_at:
        print(f"Cleared:  {record.cleared_at}")
    path = ctx.handoffs.active_path(channel)
    if path:
        print(f"File:     {path}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Session relay - keep a long-running agent session alive across restarts"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Supervise a worker command")
    run_parser.add_argument("--handoff", action="store_true", help="Load the channel's handoff on first start")
    run_parser.add_argument("worker", nargs=argparse.REMAINDER, help="Worker command (after --)")

    # monitor command
    monitor_parser = subparsers.add_parser("monitor", help="Sample the worker's context size")
    monitor_parser.add_argument("--watch", action="store_true", help="Keep sampling until interrupted")
    monitor_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between samples")
    monitor_parser.add_argument("--pid", type=int, default=None, help="Worker pid (default: parent)")
    monitor_parser.add_argument("--quiet", "-q", action="store_true", help="Only update the status file")

    # session-start hook
    start_parser = subparsers.add_parser("session-start", help="Worker SessionStart hook")
    start_parser.add_argument("--pid", type=int, default=None, help="Worker pid (default: parent)")
    start_parser.add_argument("--load", action="store_true", help="Load the handoff even without the flag")

    # pre-compact hook
    compact_parser = subparsers.add_parser("pre-compact", help="Worker PreCompact hook")
    compact_parser.add_argument("--pid", type=int, default=None, help="Worker pid (default: parent)")

    # handoff command (with subcommands)
    handoff_parser = subparsers.add_parser("handoff", help="Manage channel handoffs")
    handoff_subparsers = handoff_parser.add_subparsers(dest="handoff_command", help="Handoff commands")

    handoff_create_parser = handoff_subparsers.add_parser("create", help="Create a handoff")
    handoff_create_parser.add_argument("content", nargs="?", help="Handoff content (default: stdin)")
    handoff_create_parser.add_argument("--file", help="Read content from file")
    handoff_create_parser.add_argument(
        "--type", default=HandoffType.MANUAL.value,
        choices=[t.value for t in HandoffType], help="Handoff type",
    )
    handoff_create_parser.add_argument("--channel", help="Channel (default: resolved from cwd)")
    handoff_create_parser.add_argument("--session", help="Session id (default: current session)")

    handoff_load_parser = handoff_subparsers.add_parser("load", help="Consume the active handoff")
    handoff_load_parser.add_argument("--channel", help="Channel (default: resolved from cwd)")
    handoff_load_parser.add_argument("--pid", type=int, default=None, help="Consumer pid (default: parent)")

    handoff_clear_parser = handoff_subparsers.add_parser("clear", help="Cancel the active handoff")
    handoff_clear_parser.add_argument("--channel", help="Channel (default: resolved from cwd)")

    handoff_status_parser = handoff_subparsers.add_parser("status", help="Show manifest status")
    handoff_status_parser.add_argument("--channel", help="Channel (default: all channels)")

    handoff_show_parser = handoff_subparsers.add_parser("show", help="Print the current blob without consuming it")
    handoff_show_parser.add_argument("--channel", help="Channel (default: resolved from cwd)")

    handoff_archive_parser = handoff_subparsers.add_parser("archive", help="List or print archived handoffs")
    handoff_archive_parser.add_argument("name", nargs="?", help="Archived handoff id to print")

    # lock command (with subcommands)
    lock_parser = subparsers.add_parser("lock", help="Inspect or manage channel locks")
    lock_subparsers = lock_parser.add_subparsers(dest="lock_command", help="Lock commands")
    for name, help_text in (
        ("acquire", "Acquire the channel lock"),
        ("release", "Release the channel lock"),
        ("status", "Show the channel lock holder"),
    ):
        sub = lock_subparsers.add_parser(name, help=help_text)
        sub.add_argument("--channel", help="Channel (default: resolved from cwd)")
        sub.add_argument("--pid", type=int, default=None, help="Holder pid (default: parent)")

    # channel command
    channel_parser = subparsers.add_parser("channel", help="Resolve the channel for a path")
    channel_parser.add_argument("path", nargs="?", help="Path (default: cwd)")

    # status command
    subparsers.add_parser("status", help="Show tier, session tracker and handoffs")

    # dashboard command
    subparsers.add_parser("dashboard", help="Launch the status dashboard")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    parent_pid = os.getppid()

    try:
        if args.command == "run":
            worker = list(args.worker)
            if worker and worker[0] == "--":
                worker = worker[1:]
            if not worker:
                print("Error: no worker command given (use: relay run -- CMD...)", file=sys.stderr)
                sys.exit(1)
            supervisor = Supervisor(worker, config=load_config(), load_handoff=args.handoff)
            try:
                returncode = supervisor.run()
            except OSError as e:
                print(f"Error: cannot start worker {worker[0]!r}: {e}", file=sys.stderr)
                sys.exit(1)
            sys.exit(returncode)

        elif args.command == "monitor":
            monitor = ResourceMonitor(worker_pid=args.pid or parent_pid)
            if args.watch:
                try:
                    monitor.run(args.interval)
                except KeyboardInterrupt:
                    pass
            else:
                sample = monitor.sample()
                if sample is not None and not args.quiet:
                    print(sample.format())

        elif args.command == "session-start":
            pid = args.pid or parent_pid
            try:
                result = session_start(pid, force_load=args.load)
            except (RelayError, OSError) as e:
                # Never keep the worker from starting
                cwd = os.getcwd()
                result = StartupResult(channel="global", working_dir=cwd, lock_granted=True, error=str(e))
            print(json_module.dumps(hook_output(result), indent=2))

        elif args.command == "pre-compact":
            payload = _read_hook_input()
            handoff_id = pre_compact(
                args.pid or parent_pid,
                session_id=payload.get("session_id"),
                transcript_path=payload.get("transcript_path"),
            )
            if handoff_id:
                print(f"Created handoff {handoff_id}", file=sys.stderr)

        elif args.command == "handoff":
            ctx = HookContext()
            cwd = os.getcwd()

            if not args.handoff_command:
                handoff_parser.print_help()
                sys.exit(1)

            channel = getattr(args, "channel", None) or ctx.channel_for(cwd)

            if args.handoff_command == "create":
                if args.file:
                    with open(args.file) as f:
                        content = f.read()
                elif args.content is not None:
                    content = args.content
                else:
                    content = sys.stdin.read()
                if not content.strip():
                    print("Error: handoff content is empty", file=sys.stderr)
                    sys.exit(1)
                tracker = read_tracker(ctx.store)
                session = args.session or ctx.env.get("RELAY_SESSION_ID") or (tracker.session_id if tracker else None)
                handoff_id = ctx.handoffs.create(
                    channel, content.rstrip("\n"), args.type,
                    session_id=session, working_dir=cwd,
                )
                print(handoff_id)

            elif args.handoff_command == "load":
                print(ctx.handoffs.load(channel, args.pid or parent_pid))

            elif args.handoff_command == "clear":
                if ctx.handoffs.clear(channel):
                    print(f"Cleared handoff for channel '{channel}'")
                else:
                    print(f"No active handoff for channel '{channel}'")

            elif args.handoff_command == "status":
                if args.channel:
                    _print_handoff_status(ctx, args.channel)
                else:
                    channels = ctx.handoffs.list_channels()
                    if not channels:
                        print("(no handoffs)")
                    for name in channels:
                        _print_manifest_line(ctx, name)

            elif args.handoff_command == "show":
                text = ctx.handoffs.read_blob(channel)
                if text is None:
                    print(f"Error: No handoff blob for channel '{channel}'", file=sys.stderr)
                    sys.exit(1)
                print(text, end="")

            elif args.handoff_command == "archive":
                if args.name:
                    text = ctx.handoffs.read_archived(args.name)
                    if text is None:
                        print(f"Error: Archived handoff {args.name} not found", file=sys.stderr)
                        sys.exit(1)
                    print(text, end="")
                else:
                    names = ctx.handoffs.list_archive()
                    if not names:
                        print("(archive is empty)")
                    for name in names:
                        print(name)

        elif args.command == "lock":
            ctx = HookContext()
            if not args.lock_command:
                lock_parser.print_help()
                sys.exit(1)
            channel = args.channel or ctx.channel_for(os.getcwd())
            pid = args.pid or parent_pid

            if args.lock_command == "acquire":
                if ctx.lock.acquire(channel, pid):
                    print(f"GRANTED:{channel}:{pid}")
                else:
                    holder = ctx.lock.holder(channel)
                    print(f"DENIED:{channel}:{holder.holder_pid if holder else 'unknown'}")
                    sys.exit(1)

            elif args.lock_command == "release":
                if ctx.lock.release(channel, pid):
                    print(f"Released lock for channel '{channel}'")
                else:
                    print(f"Not the lock holder for channel '{channel}'", file=sys.stderr)
                    sys.exit(1)

            elif args.lock_command == "status":
                holder = ctx.lock.holder(channel)
                if holder is None:
                    print(f"{channel}: unlocked")
                else:
                    stale = " [stale]" if ctx.lock.is_stale(holder) else ""
                    print(f"{channel}: held by pid {holder.holder_pid} (since {holder.acquired_at}){stale}")

        elif args.command == "channel":
            ctx = HookContext()
            print(ctx.channel_for(args.path or os.getcwd()))

        elif args.command == "status":
            ctx = HookContext()
            status = read_status(ctx.store)
            print(f"Context: {status[0]} ({status[1]})" if status else "Context: (no sample yet)")

            tracker = read_tracker(ctx.store)
            if tracker is None:
                print("Session: (no active session tracked)")
            else:
                print(f"Session: {tracker.session_id}")
                print(f"  Transcript: {tracker.worker_state_path or '(not yet known)'}")

            request = read_restart_request(ctx.store)
            if request is not None:
                print(f"Restart requested for {request.session_id} in {request.working_dir}")

            print("Handoffs:")
            channels = ctx.handoffs.list_channels()
            if not channels:
                print("  (none)")
            for name in channels:
                _print_manifest_line(ctx, name)
                if ctx.store.exists(lock_key(name)):
                    holder = ctx.lock.holder(name)
                    if holder is not None:
                        print(f"    lock: pid {holder.holder_pid}")

        elif args.command == "dashboard":
            try:
                from relay.tui import run_app
            except ImportError:
                from tui import run_app
            run_app()

    except RestartCeilingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_RESTART_CEILING)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
