#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Data models for session relay.

Contains the enums, dataclasses, constants and exceptions shared by the
monitor, handoff store, channel lock and supervisor.
"""

import re
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Constants
# =============================================================================

RECORD_VERSION = 1
DEFAULT_CHANNEL = "global"

KB = 1024
MB = 1024 * 1024

# Tier boundaries (KB). Calibrated against a compaction trigger at ~1390KB.
EARLY_WARN_KB_DEFAULT = 800
WARN_KB_DEFAULT = 1024
CRITICAL_KB_DEFAULT = 1200
HARD_LIMIT_KB_DEFAULT = 1390

# Test mode boundaries (KB) - trigger almost immediately
TEST_EARLY_WARN_KB = 5
TEST_WARN_KB = 10
TEST_CRITICAL_KB = 15
TEST_HARD_LIMIT_KB = 20

RETENTION_SECONDS_DEFAULT = 2 * 60 * 60
RESTART_CEILING_DEFAULT = 10
POLL_INTERVAL_DEFAULT = 0.5
LEASE_SECONDS_DEFAULT = 120

# Artifact fallback scan bounds
SCAN_WINDOW_MINUTES = 60
SCAN_MAX_DEPTH = 2
SCAN_LIMIT = 200
EXCLUDED_ARTIFACT_DIRS = ("subagents",)

# Header of a handoff content blob: one HTML comment per field
HEADER_FIELD_PATTERN = re.compile(r"^<!--\s*([A-Z][A-Z-]*):\s*(.*?)\s*-->$")
HANDOFF_ID_PATTERN = re.compile(r"HO-\d{8}-\d{6}-[a-zA-Z0-9]+(?:-[0-9a-f]{4})?")

# Header field name -> HandoffRecord attribute
HEADER_FIELDS = (
    ("HANDOFF-ID", "id"),
    ("VERSION", "version"),
    ("SESSION", "session_id"),
    ("CHANNEL", "channel"),
    ("CREATED", "created_at"),
    ("TYPE", "type"),
    ("WORKING-DIR", "working_dir"),
)


# =============================================================================
# Enums
# =============================================================================


class Tier(str, Enum):
    """Resource usage tier, ordered OK < EARLY_WARN < WARN < CRITICAL."""
    OK = "OK"
    EARLY_WARN = "EARLY_WARN"
    WARN = "WARN"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


_TIER_ORDER = [Tier.OK, Tier.EARLY_WARN, Tier.WARN, Tier.CRITICAL]


class HandoffType(str, Enum):
    """Why a handoff was created."""
    AUTO = "auto"
    MANUAL = "manual"
    BYE = "bye"


class HandoffStatus(str, Enum):
    """Handoff record lifecycle status."""
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    CLEARED = "cleared"


class ExitReason(str, Enum):
    """How a supervised worker run ended."""
    RESTART = "restart"
    USER_INTERRUPT = "user_interrupt"
    NATURAL = "natural"


class SupervisorState(str, Enum):
    """Supervisor state machine states."""
    SPAWN = "SPAWN"
    RUNNING = "RUNNING"
    RESTART_REQUESTED = "RESTART_REQUESTED"
    VERIFY = "VERIFY"
    KILL = "KILL"
    EXIT = "EXIT"
    DONE = "DONE"


# =============================================================================
# Exceptions
# =============================================================================


class RelayError(ValueError):
    """Base class for session relay errors."""


class ConfigError(RelayError):
    """Invalid configuration values."""


class RegistryError(RelayError):
    """Channel registry is ambiguous or malformed."""


class HandoffError(RelayError):
    """Base class for handoff store failures."""


class NoActiveHandoffError(HandoffError):
    """No active handoff exists for the channel."""


class HandoffIntegrityError(HandoffError):
    """Blob header and manifest disagree about the record id."""


class HandoffExpiredError(HandoffError):
    """Handoff is older than the retention window."""


class HandoffConflictError(HandoffError):
    """Manifest changed underneath a create."""


class RestartCeilingError(RelayError):
    """Supervisor restarted the worker too many times."""


# =============================================================================
# Helpers
# =============================================================================


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Format a datetime as ISO-8601 with seconds precision and offset."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat(timespec="seconds")


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_handoff_id(session_id: Optional[str], when: Optional[datetime] = None) -> str:
    """Generate a handoff id: HO-{YYYYMMDD}-{HHMMSS}-{session prefix}-{4 hex}."""
    when = when or now_utc()
    prefix = re.sub(r"[^a-zA-Z0-9]", "", (session_id or "")[:8])
    if not prefix:
        prefix = "nosess"
    return f"HO-{when.strftime('%Y%m%d-%H%M%S')}-{prefix}-{secrets.token_hex(2)}"


def header_safe(value: str) -> bool:
    """True if value fits inside one `<!-- NAME: value -->` header line."""
    return "\n" not in value and "\r" not in value and "-->" not in value


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class HandoffRecord:
    """
    A single handoff record.

    The same record is rendered into the channel manifest (to_dict) and into
    the content blob header (to_header), so the two copies always come from
    one definition.
    """
    id: str
    session_id: str
    channel: str
    created_at: str
    created_by_pid: int
    working_dir: str
    type: str = HandoffType.AUTO.value
    status: str = HandoffStatus.ACTIVE.value
    version: int = RECORD_VERSION
    consumed_by_pid: Optional[int] = None
    consumed_at: Optional[str] = None
    expired_at: Optional[str] = None
    cleared_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == HandoffStatus.ACTIVE.value

    @property
    def created_dt(self) -> Optional[datetime]:
        return parse_timestamp(self.created_at)

    def age_seconds(self, now: datetime) -> float:
        """Seconds since creation. Unparseable timestamps count as infinitely old."""
        created = self.created_dt
        if created is None:
            return float("inf")
        return (now - created).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Manifest representation. Unset terminal fields are omitted."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandoffRecord":
        pid = data.get("created_by_pid", 0)
        consumer = data.get("consumed_by_pid")
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("session_id", "unknown")),
            channel=str(data.get("channel", "")),
            created_at=str(data.get("created_at", "")),
            created_by_pid=int(pid) if pid is not None else 0,
            working_dir=str(data.get("working_dir", "")),
            type=str(data.get("type", HandoffType.AUTO.value)),
            status=str(data.get("status", "none")),
            version=int(data.get("version", RECORD_VERSION)),
            consumed_by_pid=int(consumer) if consumer is not None else None,
            consumed_at=data.get("consumed_at"),
            expired_at=data.get("expired_at"),
            cleared_at=data.get("cleared_at"),
        )

    def to_header(self) -> str:
        """Render the blob header block (without trailing blank line)."""
        lines = []
        for name, attr in HEADER_FIELDS:
            lines.append(f"<!-- {name}: {getattr(self, attr)} -->")
        return "\n".join(lines)

    def render_blob(self, body: str) -> str:
        return f"{self.to_header()}\n\n{body}\n"


@dataclass
class BlobHeader:
    """Header fields parsed back out of a content blob."""
    fields: Dict[str, str]
    body: str

    @property
    def handoff_id(self) -> Optional[str]:
        return self.fields.get("id")


def parse_blob(text: str) -> BlobHeader:
    """
    Split a content blob into header fields and body.

    Header lines are leading HTML comments of the form `<!-- NAME: value -->`.
    The body starts after the first non-header line (a single separating
    blank line is dropped, as is the trailing newline written by render_blob).

    Blobs written before the header carried a VERSION line are still parsed;
    any id-looking token in the first lines is accepted as the HANDOFF-ID.
    """
    names = dict(HEADER_FIELDS)
    fields: Dict[str, str] = {}
    lines = text.split("\n")
    index = 0
    while index < len(lines):
        match = HEADER_FIELD_PATTERN.match(lines[index].strip())
        if not match:
            break
        attr = names.get(match.group(1))
        if attr:
            fields[attr] = match.group(2)
        index += 1

    if "id" not in fields:
        for line in lines[:5]:
            found = HANDOFF_ID_PATTERN.search(line)
            if found:
                fields["id"] = found.group(0)
                break

    if index < len(lines) and lines[index] == "" and index > 0:
        index += 1
    body = "\n".join(lines[index:])
    if body.endswith("\n"):
        body = body[:-1]
    return BlobHeader(fields=fields, body=body)


@dataclass
class Manifest:
    """Authoritative per-channel pointer to the current handoff record."""
    channel: str
    current: Optional[HandoffRecord] = None
    superseded: Optional[HandoffRecord] = None
    version: int = RECORD_VERSION

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version, "channel": self.channel}
        if self.current is not None:
            data["current"] = self.current.to_dict()
        if self.superseded is not None:
            data["superseded"] = self.superseded.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        current = data.get("current")
        superseded = data.get("superseded")
        return cls(
            channel=str(data.get("channel", "")),
            current=HandoffRecord.from_dict(current) if isinstance(current, dict) else None,
            superseded=HandoffRecord.from_dict(superseded) if isinstance(superseded, dict) else None,
            version=int(data.get("version", RECORD_VERSION)),
        )


@dataclass
class LockToken:
    """Holder of a channel lock: `holder_pid:acquired_at[:renewed_at]`."""
    holder_pid: int
    acquired_at: int
    renewed_at: Optional[int] = None

    def format(self) -> str:
        if self.renewed_at is None:
            return f"{self.holder_pid}:{self.acquired_at}"
        return f"{self.holder_pid}:{self.acquired_at}:{self.renewed_at}"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["LockToken"]:
        if not raw:
            return None
        parts = raw.strip().split(":")
        try:
            pid = int(parts[0])
            acquired = int(parts[1]) if len(parts) > 1 and parts[1] else 0
            renewed = int(parts[2]) if len(parts) > 2 and parts[2] else None
        except ValueError:
            return None
        return cls(holder_pid=pid, acquired_at=acquired, renewed_at=renewed)


@dataclass
class SessionTracker:
    """Identity of the supervised worker and its growing state artifact."""
    session_id: str
    worker_state_path: str = ""

    def format(self) -> str:
        return f"{self.session_id}:{self.worker_state_path}"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["SessionTracker"]:
        if not raw or not raw.strip():
            return None
        session_id, _, path = raw.strip().partition(":")
        if not session_id:
            return None
        return cls(session_id=session_id, worker_state_path=path)


@dataclass
class RestartRequest:
    """Pending request for the supervisor to restart a worker session."""
    session_id: str
    working_dir: str = ""

    def format(self) -> str:
        return f"{self.session_id}:{self.working_dir}"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["RestartRequest"]:
        if not raw or not raw.strip():
            return None
        session_id, _, working_dir = raw.strip().partition(":")
        if not session_id:
            return None
        return cls(session_id=session_id, working_dir=working_dir)


@dataclass
class TierThresholds:
    """Ascending tier boundaries in bytes."""
    early_warn: int
    warn: int
    critical: int
    hard_limit: int

    def as_list(self) -> List[int]:
        return [self.early_warn, self.warn, self.critical, self.hard_limit]


@dataclass
class TierSample:
    """One observation of the worker's state size."""
    tier: Tier
    size_bytes: int
    display: str
    artifact_path: str
    session_id: str
    handoff_id: Optional[str] = None
    restart_requested: bool = False

    def format(self) -> str:
        """Status surface line: TIER:DISPLAY_SIZE."""
        return f"{self.tier.value}:{self.display}"


@dataclass
class StartupResult:
    """Outcome of the worker's session-start path."""
    channel: str
    working_dir: str
    lock_granted: bool
    lock_holder_pid: Optional[int] = None
    handoff_id: Optional[str] = None
    content: Optional[str] = None
    pending_handoff_id: Optional[str] = None
    error: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def loaded(self) -> bool:
        return self.content is not None

    def format(self) -> str:
        """Format the additional context injected into the worker."""
        if not self.lock_granted:
            return (
                f"=== PARALLEL SESSION (Channel: {self.channel}) ===\n\n"
                f"Another instance is active (PID: {self.lock_holder_pid}).\n"
                f"Starting fresh to avoid conflicts.\n\n"
                f"Working directory: {self.working_dir}"
            )
        if self.loaded:
            return (
                f"=== HANDOFF LOADED ===\n"
                f"Channel: {self.channel}\n"
                f"Handoff ID: {self.handoff_id}\n\n"
                f"{self.content}\n\n"
                f"=== END HANDOFF ==="
            )
        lines = [f"=== SESSION START (Channel: {self.channel}) ===", ""]
        if self.error:
            lines.append(f"Handoff not loaded: {self.error}. Starting fresh.")
            lines.append("")
        if self.pending_handoff_id:
            lines.append(f"PENDING HANDOFF: {self.pending_handoff_id}")
            lines.append("To load: relay handoff load")
            lines.append("")
        lines.append(f"Working directory: {self.working_dir}")
        return "\n".join(lines)
