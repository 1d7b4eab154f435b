#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Session supervisor: the outer loop that keeps a worker running across
restarts.

    SPAWN → RUNNING → RESTART_REQUESTED → VERIFY → KILL → SPAWN
                    ↘ EXIT → DONE

Per spawned worker two background tasks run next to it: the RestartWatcher
(consumes restart requests, verifies session identity, terminates the
worker) and the TrackerPopulator (records the worker's transcript path once
it appears). The supervisor loop itself is single-threaded: a successor is
only spawned after the previous worker has been reaped.
"""

import os
import signal
import subprocess
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

try:
    from relay.channel_lock import ChannelLock
    from relay.channels import ChannelRegistry
    from relay.config import RelayConfig, load_config
    from relay.debug_logger import get_logger
    from relay.handoffs import HandoffStore
    from relay.models import (
        ExitReason,
        HandoffType,
        RestartCeilingError,
        RestartRequest,
        SessionTracker,
        SupervisorState,
    )
    from relay.monitor import (
        RESTART_KEY,
        adopt_artifact,
        clear_tracker,
        load_flag_key,
        read_tracker,
        write_tracker,
    )
    from relay.scheduling import PeriodicTask
    from relay.store import FileStore, StateStore
except ImportError:
    from channel_lock import ChannelLock
    from channels import ChannelRegistry
    from config import RelayConfig, load_config
    from debug_logger import get_logger
    from handoffs import HandoffStore
    from models import (
        ExitReason,
        HandoffType,
        RestartCeilingError,
        RestartRequest,
        SessionTracker,
        SupervisorState,
    )
    from monitor import (
        RESTART_KEY,
        adopt_artifact,
        clear_tracker,
        load_flag_key,
        read_tracker,
        write_tracker,
    )
    from scheduling import PeriodicTask
    from store import FileStore, StateStore


USER_INTERRUPT_CODES = (130, -signal.SIGINT)
TRACKER_POLL_SECONDS = 1.0
TRACKER_MAX_WAIT_SECONDS = 300.0


def default_spawn(command: List[str], env: Dict[str, str], cwd: str) -> subprocess.Popen:
    return subprocess.Popen(command, env=env, cwd=cwd)


def terminate_process(process, grace_seconds: float, wait: Optional[Callable[[float], bool]] = None) -> None:
    """
    SIGTERM, give the process grace_seconds to exit, then SIGKILL.

    Another thread may be blocked in process.wait(); this only signals and
    polls, it never reaps.
    """
    sleep = wait or (lambda seconds: time.sleep(seconds) or False)
    if process.poll() is not None:
        return
    process.terminate()
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if process.returncode is not None or process.poll() is not None:
            return
        sleep(0.1)
    if process.returncode is None and process.poll() is None:
        process.kill()


class RestartWatcher:
    """
    Poll the restart-request surface for one worker.

    A request is consumed (compare-and-delete) before it is acted on, so it
    is handled at most once. The worker is terminated only when the request
    names the tracked session and that session is this watcher's worker;
    anything else is logged and dropped.
    """

    def __init__(
        self,
        store: StateStore,
        session_id: str,
        process,
        grace_seconds: float = 5.0,
        interval: float = 0.5,
        lock: Optional[ChannelLock] = None,
        channel: Optional[str] = None,
        lease_seconds: int = 0,
        on_state: Optional[Callable[[SupervisorState], None]] = None,
    ):
        self.store = store
        self.session_id = session_id
        self.process = process
        self.grace_seconds = grace_seconds
        self.lock = lock
        self.channel = channel
        self.renew_every = max(1.0, lease_seconds / 4) if lease_seconds else None
        self.on_state = on_state or (lambda state: None)
        self.killed = False
        self._last_renew = 0.0
        self.task = PeriodicTask(f"restart-watcher-{session_id[:8]}", interval, self.step)

    def start(self) -> "RestartWatcher":
        self.task.start()
        return self

    def cancel(self) -> None:
        self.task.cancel()

    def _renew_lease(self) -> None:
        if self.lock is None or self.channel is None or self.renew_every is None:
            return
        now = time.monotonic()
        if now - self._last_renew < self.renew_every:
            return
        self._last_renew = now
        self.lock.renew(self.channel, self.process.pid)

    def step(self) -> bool:
        """One poll. Returns False once the worker has been terminated."""
        if self.process.poll() is not None:
            return False

        raw = self.store.get(RESTART_KEY)
        if raw is None:
            self._renew_lease()
            return True
        if not self.store.compare_and_delete(RESTART_KEY, raw):
            return True

        logger = get_logger()
        self.on_state(SupervisorState.RESTART_REQUESTED)
        request = RestartRequest.parse(raw)
        self.on_state(SupervisorState.VERIFY)

        tracker = read_tracker(self.store)
        tracked = tracker.session_id if tracker else None
        if request is None or request.session_id != tracked or tracked != self.session_id:
            logger.restart_discarded(request.session_id if request else raw.strip(), tracked)
            self.on_state(SupervisorState.RUNNING)
            return True

        self.on_state(SupervisorState.KILL)
        self.killed = True
        logger.restart_verified(self.session_id, self.process.pid)
        terminate_process(self.process, self.grace_seconds, self.task.token.wait)
        return False


class TrackerPopulator:
    """
    Record the worker's transcript path in the tracker once it exists.

    A transcript named after the tracked session id is taken directly.
    Otherwise the newest transcript written since the tracker is adopted,
    since a worker that mints its own session id names the file after that.
    """

    def __init__(
        self,
        store: StateStore,
        session_id: str,
        projects_dir: Path,
        interval: float = TRACKER_POLL_SECONDS,
        max_wait: float = TRACKER_MAX_WAIT_SECONDS,
    ):
        self.store = store
        self.session_id = session_id
        self.projects_dir = Path(projects_dir)
        self.max_wait = max_wait
        self.found: Optional[Path] = None
        self._started = time.monotonic()
        self.task = PeriodicTask(f"tracker-{session_id[:8]}", interval, self.step)

    def start(self) -> "TrackerPopulator":
        self._started = time.monotonic()
        self.task.start()
        return self

    def cancel(self) -> None:
        self.task.cancel()

    def find(self) -> Optional[Path]:
        name = f"{self.session_id}.jsonl"
        direct = self.projects_dir / name
        if direct.is_file():
            return direct
        matches = sorted(self.projects_dir.glob(f"*/{name}"))
        return matches[0] if matches else None

    def step(self) -> bool:
        if time.monotonic() - self._started > self.max_wait:
            return False
        tracker = read_tracker(self.store)
        if tracker is not None and tracker.session_id != self.session_id:
            # A newer run owns the tracker now
            return False
        if tracker is not None and tracker.worker_state_path:
            self.found = Path(tracker.worker_state_path)
            return False
        path = self.find()
        if path is None:
            adopted = adopt_artifact(self.store, self.projects_dir, self.session_id)
            if adopted is None:
                return True
            self.found = adopted[1]
            return False
        write_tracker(self.store, SessionTracker(self.session_id, str(path)))
        self.found = path
        get_logger().mutation("tracker_populated", str(path), {"session_id": self.session_id})
        return False


class Supervisor:
    """
    Run a worker command, restarting it when the monitor asks for it.

    Args:
        command: Worker argv
        config: Resolved configuration
        store: State store (default: FileStore at the relay home)
        load_handoff: Ask the first worker to load the channel's handoff
        spawn: spawn(command, env, cwd) -> Popen-like (injectable for tests)
        session_ids: Factory for new session ids
    """

    def __init__(
        self,
        command: List[str],
        config: Optional[RelayConfig] = None,
        store: Optional[StateStore] = None,
        handoffs: Optional[HandoffStore] = None,
        lock: Optional[ChannelLock] = None,
        registry: Optional[ChannelRegistry] = None,
        working_dir: Optional[str] = None,
        load_handoff: bool = False,
        spawn: Callable = default_spawn,
        session_ids: Callable[[], str] = lambda: str(uuid.uuid4()),
        base_env: Optional[Dict[str, str]] = None,
    ):
        if not command:
            raise ValueError("No worker command given")
        self.command = list(command)
        self.config = config or load_config()
        self.store = store or FileStore(self.config.home)
        self.handoffs = handoffs or HandoffStore(self.store, self.config.retention_seconds)
        self.lock = lock or ChannelLock(self.store, self.config.lease_seconds)
        self.registry = registry if registry is not None else ChannelRegistry.load(self.config.registry_path)
        self.working_dir = working_dir or os.getcwd()
        self.load_handoff = load_handoff
        self.spawn = spawn
        self.session_ids = session_ids
        self.base_env = dict(os.environ) if base_env is None else dict(base_env)

        self.channel = self.registry.resolve(self.working_dir)
        self.state = SupervisorState.SPAWN
        self.restart_count = 0
        self.session_id: Optional[str] = None
        self.exit_reason: Optional[ExitReason] = None
        self.sessions: List[str] = []

    def _set_state(self, state: SupervisorState) -> None:
        self.state = state
        get_logger().supervisor_state(state.value, self.session_id, self.restart_count)

    def _worker_env(self, session_id: str, load: bool) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(
            {
                "RELAY_SESSION_ID": session_id,
                "RELAY_CHANNEL": self.channel,
                "RELAY_LOAD_HANDOFF": "1" if load else "0",
                "RELAY_SUPERVISOR_PID": str(os.getpid()),
                "RELAY_HOME": str(self.config.home),
            }
        )
        return env

    def _spawn(self, load: bool):
        self._set_state(SupervisorState.SPAWN)
        self.session_id = self.session_ids()
        self.sessions.append(self.session_id)
        write_tracker(self.store, SessionTracker(self.session_id, ""))
        if load:
            self.store.put(load_flag_key(self.channel), self.session_id)
        try:
            process = self.spawn(self.command, self._worker_env(self.session_id, load), self.working_dir)
        except OSError as e:
            get_logger().error("spawn", str(e), {"command": self.command[0], "channel": self.channel})
            clear_tracker(self.store, self.session_id)
            if load:
                self.store.compare_and_delete(load_flag_key(self.channel), self.session_id)
            self._set_state(SupervisorState.DONE)
            raise
        get_logger().worker_spawned(self.session_id, process.pid, self.channel, self.restart_count, load)
        return process

    def _wait(self, process) -> Optional[int]:
        """Wait for the worker. A KeyboardInterrupt is turned into a user exit."""
        try:
            return process.wait()
        except KeyboardInterrupt:
            self.exit_reason = ExitReason.USER_INTERRUPT
            terminate_process(process, self.config.kill_grace_seconds)
            return process.wait()

    def classify_exit(self, returncode: Optional[int], killed_by_watcher: bool) -> ExitReason:
        if killed_by_watcher:
            return ExitReason.RESTART
        if self.exit_reason == ExitReason.USER_INTERRUPT or returncode in USER_INTERRUPT_CODES:
            return ExitReason.USER_INTERRUPT
        return ExitReason.NATURAL

    def _cleanup(self, worker_pid: int, clear_auto_handoff: bool) -> None:
        """Tear down per-session surfaces after a final (non-restart) exit."""
        session_id = self.session_id
        clear_tracker(self.store, session_id)
        self.lock.release(self.channel, worker_pid)
        raw = self.store.get(RESTART_KEY)
        request = RestartRequest.parse(raw)
        if request is not None and request.session_id == session_id:
            self.store.compare_and_delete(RESTART_KEY, raw)
        flag = self.store.get(load_flag_key(self.channel))
        if flag is not None:
            self.store.compare_and_delete(load_flag_key(self.channel), flag)
        if clear_auto_handoff:
            self.handoffs.clear(self.channel, session_id=session_id, handoff_type=HandoffType.AUTO.value)

    def run(self) -> int:
        """
        Supervise until the worker exits on its own or the user interrupts.

        Returns the worker's final exit status.

        Raises:
            RestartCeilingError: more watcher restarts than the ceiling allows
        """
        logger = get_logger()
        load = self.load_handoff

        while True:
            self.exit_reason = None
            process = self._spawn(load)
            self._set_state(SupervisorState.RUNNING)

            watcher = RestartWatcher(
                self.store,
                self.session_id,
                process,
                grace_seconds=self.config.kill_grace_seconds,
                interval=self.config.poll_interval,
                lock=self.lock,
                channel=self.channel,
                lease_seconds=self.config.lease_seconds,
                on_state=self._set_state,
            ).start()
            populator = TrackerPopulator(self.store, self.session_id, self.config.projects_dir).start()

            try:
                returncode = self._wait(process)
            finally:
                watcher.cancel()
                populator.cancel()

            reason = self.classify_exit(returncode, watcher.killed)
            logger.worker_exited(self.session_id, process.pid, returncode, reason.value)

            if reason == ExitReason.RESTART:
                self.restart_count += 1
                # The killed worker cannot release its own lock
                self.lock.release(self.channel, process.pid)
                if self.restart_count > self.config.restart_ceiling:
                    self._set_state(SupervisorState.EXIT)
                    logger.error(
                        "restart_ceiling",
                        f"{self.restart_count} restarts exceed ceiling {self.config.restart_ceiling}",
                        {"channel": self.channel},
                    )
                    self._cleanup(process.pid, clear_auto_handoff=False)
                    self._set_state(SupervisorState.DONE)
                    raise RestartCeilingError(
                        f"Worker restarted {self.restart_count} times "
                        f"(ceiling {self.config.restart_ceiling}); giving up"
                    )
                load = True
                continue

            self._set_state(SupervisorState.EXIT)
            self.exit_reason = reason
            self._cleanup(process.pid, clear_auto_handoff=(reason == ExitReason.NATURAL))
            self._set_state(SupervisorState.DONE)
            if returncode is None:
                return 0
            return returncode if returncode >= 0 else 128 - returncode
