#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Manifest-backed handoff store.

Each channel has one manifest (the authoritative pointer to the current
handoff record) and at most one content blob. Blobs carry a header that
repeats the record id, so a load can verify the blob it is about to deliver
is the one the manifest points at.

Store layout (keys relative to the relay home):
    handoff/<channel>.manifest.json   manifest
    handoff/<channel>-CURRENT.md      content blob (header + opaque body)
    handoff/archive/<id>.md           every blob that left the CURRENT slot

Blobs are never deleted; each terminal transition moves them to the archive.
"""

import json
import os
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

try:
    from relay.debug_logger import get_logger
    from relay.models import (
        RETENTION_SECONDS_DEFAULT,
        HandoffConflictError,
        HandoffError,
        HandoffExpiredError,
        HandoffIntegrityError,
        HandoffRecord,
        HandoffStatus,
        HandoffType,
        Manifest,
        NoActiveHandoffError,
        generate_handoff_id,
        header_safe,
        isoformat,
        now_utc,
        parse_blob,
    )
    from relay.store import StateStore
except ImportError:
    from debug_logger import get_logger
    from models import (
        RETENTION_SECONDS_DEFAULT,
        HandoffConflictError,
        HandoffError,
        HandoffExpiredError,
        HandoffIntegrityError,
        HandoffRecord,
        HandoffStatus,
        HandoffType,
        Manifest,
        NoActiveHandoffError,
        generate_handoff_id,
        header_safe,
        isoformat,
        now_utc,
        parse_blob,
    )
    from store import StateStore


HANDOFF_PREFIX = "handoff"
ARCHIVE_PREFIX = "handoff/archive"
MANIFEST_SUFFIX = ".manifest.json"


def manifest_key(channel: str) -> str:
    return f"{HANDOFF_PREFIX}/{channel}{MANIFEST_SUFFIX}"


def blob_key(channel: str) -> str:
    return f"{HANDOFF_PREFIX}/{channel}-CURRENT.md"


def archive_key(name: str) -> str:
    return f"{ARCHIVE_PREFIX}/{name}.md"


def create_guard_key(channel: str) -> str:
    return f"{HANDOFF_PREFIX}/{channel}.create"


class HandoffStore:
    """
    Create, load and clear handoff records for channels.

    Args:
        store: Backing key-value store
        retention_seconds: A record older than this can no longer be loaded
        clock: Returns the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        store: StateStore,
        retention_seconds: int = RETENTION_SECONDS_DEFAULT,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self.retention_seconds = retention_seconds
        self.clock = clock

    # =========================================================================
    # Internals
    # =========================================================================

    def _read_manifest(self, channel: str) -> Tuple[Optional[str], Optional[Manifest]]:
        """Return (raw text, parsed manifest). Unreadable manifests parse as None."""
        raw = self.store.get(manifest_key(channel))
        if raw is None:
            return None, None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            get_logger().error("manifest_parse", str(e), {"channel": channel})
            return raw, None
        if not isinstance(data, dict):
            return raw, None
        manifest = Manifest.from_dict(data)
        if not manifest.channel:
            manifest.channel = channel
        return raw, manifest

    def _replace_manifest(self, channel: str, expected: Optional[str], manifest: Manifest) -> bool:
        text = json.dumps(manifest.to_dict(), indent=2) + "\n"
        return self.store.compare_and_put(manifest_key(channel), expected, text)

    def _archive_name(self, name: str) -> str:
        """Pick a free archive name, suffixing -1, -2... on collision."""
        candidate = name
        counter = 1
        while self.store.exists(archive_key(candidate)):
            candidate = f"{name}-{counter}"
            counter += 1
        return candidate

    def _archive_blob(self, channel: str, only_id: Optional[str] = None) -> Optional[str]:
        """
        Move the channel's CURRENT blob into the archive.

        With only_id set, the blob is moved only if its header carries that
        id (so a blob written by a newer create is left alone). A blob
        without a recognisable id is archived as <channel>-<timestamp>.

        Returns the archive key, or None if nothing was moved.
        """
        text = self.store.get(blob_key(channel))
        if text is None:
            return None
        header_id = parse_blob(text).handoff_id
        if only_id is not None and header_id != only_id:
            return None
        name = header_id or f"{channel}-{self.clock().strftime('%Y%m%d-%H%M%S')}"
        target = archive_key(self._archive_name(name))
        if not self.store.rename(blob_key(channel), target):
            return None
        get_logger().mutation("archive_blob", target, {"channel": channel})
        return target

    def _retire_missing(self, channel: str, handoff_id: str) -> None:
        """Clear an active record whose blob is gone, so it stops showing as pending."""
        with self.store.guard(create_guard_key(channel)):
            raw, manifest = self._read_manifest(channel)
            record = manifest.current if manifest is not None else None
            if record is None or record.id != handoff_id or not record.is_active:
                return
            if self.store.exists(blob_key(channel)):
                return
            cleared = replace(record, status=HandoffStatus.CLEARED.value, cleared_at=isoformat(self.clock()))
            if self._replace_manifest(channel, raw, Manifest(channel=channel, current=cleared, superseded=manifest.superseded)):
                get_logger().handoff_change(record.id, channel, HandoffStatus.ACTIVE.value, HandoffStatus.CLEARED.value)

    def _active_record(self, channel: str) -> Tuple[Optional[str], HandoffRecord]:
        raw, manifest = self._read_manifest(channel)
        if manifest is None or manifest.current is None or not manifest.current.is_active:
            raise NoActiveHandoffError(f"No active handoff for channel '{channel}'")
        return raw, manifest.current

    # =========================================================================
    # Operations
    # =========================================================================

    def create(
        self,
        channel: str,
        content: str,
        handoff_type: str = HandoffType.AUTO.value,
        session_id: Optional[str] = None,
        working_dir: Optional[str] = None,
        created_by_pid: Optional[int] = None,
    ) -> str:
        """
        Create a new active handoff for channel and return its id.

        Any existing blob is archived first; an active record it replaces is
        kept in the manifest as `superseded` with status cleared. Creates on
        one channel run one at a time under the store's guard, so the CURRENT
        slot only ever changes hands between the record a create read and
        the one it writes.

        Raises:
            HandoffError: a header field would contain a line break or `-->`
            HandoffConflictError: the manifest changed during the create
                (a concurrent load, clear or expiry)
        """
        handoff_type = HandoffType(handoff_type).value
        working_dir = working_dir if working_dir is not None else os.getcwd()
        for label, value in (("channel", channel), ("session id", session_id or ""), ("working directory", working_dir)):
            if not header_safe(value):
                raise HandoffError(f"Handoff {label} cannot contain a line break or '-->': {value!r}")

        with self.store.guard(create_guard_key(channel)):
            now = self.clock()
            raw, manifest = self._read_manifest(channel)

            superseded = None
            if manifest is not None and manifest.current is not None and manifest.current.is_active:
                superseded = replace(
                    manifest.current,
                    status=HandoffStatus.CLEARED.value,
                    cleared_at=isoformat(now),
                )

            self._archive_blob(channel)

            record = HandoffRecord(
                id=generate_handoff_id(session_id, now),
                session_id=session_id or "unknown",
                channel=channel,
                created_at=isoformat(now),
                created_by_pid=created_by_pid if created_by_pid is not None else os.getpid(),
                working_dir=working_dir,
                type=handoff_type,
            )
            self.store.put(blob_key(channel), record.render_blob(content))

            new_manifest = Manifest(channel=channel, current=record, superseded=superseded)
            if not self._replace_manifest(channel, raw, new_manifest):
                # A load or clear moved the manifest; take our blob back out
                self._archive_blob(channel, only_id=record.id)
                get_logger().error("handoff_create", "manifest changed during create", {"channel": channel})
                raise HandoffConflictError(f"Manifest for channel '{channel}' changed during create")

        logger = get_logger()
        if superseded is not None:
            logger.handoff_change(superseded.id, channel, HandoffStatus.ACTIVE.value, HandoffStatus.CLEARED.value)
        logger.handoff_created(
            record.id,
            channel,
            handoff_type,
            record.session_id,
            len(content),
            superseded_id=superseded.id if superseded else None,
        )
        return record.id

    def load(self, channel: str, consumer_pid: int) -> str:
        """
        Consume the active handoff for channel and return its body.

        Raises:
            NoActiveHandoffError: nothing active, blob missing (the record is
                then cleared), or another consumer won the race
            HandoffIntegrityError: blob header id disagrees with the manifest
                (nothing is modified)
            HandoffExpiredError: record older than the retention window
                (the record is marked expired and its blob archived)
        """
        logger = get_logger()
        with logger.timer("handoff_load", {"channel": channel}):
            raw, record = self._active_record(channel)

            text = self.store.get(blob_key(channel))
            if text is None:
                self._retire_missing(channel, record.id)
                raise NoActiveHandoffError(f"Handoff blob for channel '{channel}' is missing")

            blob = parse_blob(text)
            if blob.handoff_id != record.id:
                logger.error(
                    "handoff_load",
                    "id mismatch",
                    {"channel": channel, "blob_id": blob.handoff_id, "manifest_id": record.id},
                )
                raise HandoffIntegrityError(
                    f"ID mismatch for channel '{channel}': blob {blob.handoff_id} manifest {record.id}"
                )

            now = self.clock()
            age = record.age_seconds(now)
            if age > self.retention_seconds:
                expired = replace(record, status=HandoffStatus.EXPIRED.value, expired_at=isoformat(now))
                if not self._replace_manifest(channel, raw, Manifest(channel=channel, current=expired)):
                    raise NoActiveHandoffError(f"Handoff for channel '{channel}' changed during load")
                self._archive_blob(channel, only_id=record.id)
                logger.handoff_change(record.id, channel, HandoffStatus.ACTIVE.value, HandoffStatus.EXPIRED.value, consumer_pid)
                raise HandoffExpiredError(
                    f"Handoff {record.id} is {int(age)}s old (retention {self.retention_seconds}s)"
                )

            consumed = replace(
                record,
                status=HandoffStatus.CONSUMED.value,
                consumed_by_pid=consumer_pid,
                consumed_at=isoformat(now),
            )
            if not self._replace_manifest(channel, raw, Manifest(channel=channel, current=consumed)):
                raise NoActiveHandoffError(f"Handoff {record.id} was consumed by another process")

            self._archive_blob(channel, only_id=record.id)
            logger.handoff_change(record.id, channel, HandoffStatus.ACTIVE.value, HandoffStatus.CONSUMED.value, consumer_pid)
            return blob.body

    def clear(self, channel: str, session_id: Optional[str] = None, handoff_type: Optional[str] = None) -> bool:
        """
        Cancel the active handoff without consuming it.

        With session_id / handoff_type given, only a record created by that
        session (of that type) is cleared. A blob no active record points to
        is archived either way.

        Returns True if an active record was cleared.
        """
        # Guarded so an in-flight create's blob is never taken for an orphan
        with self.store.guard(create_guard_key(channel)):
            raw, manifest = self._read_manifest(channel)
            record = manifest.current if manifest is not None else None

            if record is None or not record.is_active:
                self._archive_blob(channel)
                return False
            if session_id is not None and record.session_id != session_id:
                return False
            if handoff_type is not None and record.type != handoff_type:
                return False

            cleared = replace(record, status=HandoffStatus.CLEARED.value, cleared_at=isoformat(self.clock()))
            if not self._replace_manifest(channel, raw, Manifest(channel=channel, current=cleared, superseded=manifest.superseded)):
                return False

            self._archive_blob(channel, only_id=record.id)
        get_logger().handoff_change(record.id, channel, HandoffStatus.ACTIVE.value, HandoffStatus.CLEARED.value)
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get_manifest(self, channel: str) -> Optional[Manifest]:
        return self._read_manifest(channel)[1]

    def get_record(self, channel: str) -> Optional[HandoffRecord]:
        manifest = self.get_manifest(channel)
        return manifest.current if manifest is not None else None

    def has_active(self, channel: str) -> bool:
        record = self.get_record(channel)
        return record is not None and record.is_active

    def active_id(self, channel: str) -> Optional[str]:
        record = self.get_record(channel)
        if record is None or not record.is_active:
            return None
        return record.id

    def active_path(self, channel: str) -> Optional[str]:
        """Location of the active blob, for display."""
        if not self.has_active(channel) or not self.store.exists(blob_key(channel)):
            return None
        return self.store.describe(blob_key(channel))

    def read_blob(self, channel: str) -> Optional[str]:
        """Raw CURRENT blob text (header included), without consuming it."""
        return self.store.get(blob_key(channel))

    def read_archived(self, name: str) -> Optional[str]:
        return self.store.get(archive_key(name))

    def list_channels(self) -> List[str]:
        channels = []
        for key in self.store.keys(HANDOFF_PREFIX):
            name = key.rsplit("/", 1)[-1]
            if name.endswith(MANIFEST_SUFFIX):
                channels.append(name[: -len(MANIFEST_SUFFIX)])
        return sorted(channels)

    def list_archive(self) -> List[str]:
        """Archived blob names (ids, or <channel>-<timestamp> for orphans)."""
        names = []
        for key in self.store.keys(ARCHIVE_PREFIX):
            name = key.rsplit("/", 1)[-1]
            if name.endswith(".md"):
                names.append(name[:-3])
        return sorted(names)
