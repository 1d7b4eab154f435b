#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Tests for the manifest-backed handoff store.

Run with: pytest tests/test_handoffs.py -v
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from relay.handoffs import HandoffStore, archive_key, blob_key, manifest_key
from relay.models import (
    HandoffConflictError,
    HandoffError,
    HandoffExpiredError,
    HandoffIntegrityError,
    HandoffRecord,
    NoActiveHandoffError,
    parse_blob,
)
from relay.store import FileStore, MemoryStore


# =============================================================================
# Fixtures
# =============================================================================


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 10, 18, 10, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def handoffs(store, clock):
    return HandoffStore(store, retention_seconds=3600, clock=clock)


def _create(handoffs, channel="api", content="Resume the refactor", **kwargs):
    kwargs.setdefault("session_id", "sess-1")
    kwargs.setdefault("working_dir", "/work/api")
    kwargs.setdefault("created_by_pid", 100)
    return handoffs.create(channel, content, **kwargs)


class ConflictingStore(MemoryStore):
    """Changes the manifest right before the first manifest CAS lands."""

    def __init__(self):
        super().__init__()
        self.interfere = False

    def compare_and_put(self, key, expected, value):
        if self.interfere and key.endswith(".manifest.json"):
            self.interfere = False
            self.put(key, json.dumps({"channel": "api", "version": 1}))
        return super().compare_and_put(key, expected, value)


# =============================================================================
# Tests: Create
# =============================================================================


class TestCreate:
    """Creating handoffs."""

    def test_create_writes_manifest_and_blob(self, handoffs, store):
        handoff_id = _create(handoffs)
        record = handoffs.get_record("api")
        assert record.id == handoff_id
        assert record.status == "active"
        assert record.type == "auto"
        assert record.session_id == "sess-1"
        assert record.created_by_pid == 100
        assert record.created_at == "2026-10-18T10:15:00+00:00"

        blob = parse_blob(store.get(blob_key("api")))
        assert blob.handoff_id == handoff_id
        assert blob.body == "Resume the refactor"

    def test_manifest_is_json(self, handoffs, store):
        _create(handoffs)
        data = json.loads(store.get(manifest_key("api")))
        assert data["channel"] == "api"
        assert data["current"]["status"] == "active"

    def test_header_and_manifest_agree(self, handoffs, store):
        _create(handoffs, handoff_type="manual")
        record = handoffs.get_record("api")
        fields = parse_blob(store.get(blob_key("api"))).fields
        for attr in ("id", "session_id", "channel", "created_at", "type", "working_dir"):
            assert fields[attr] == str(getattr(record, attr))

    def test_missing_session_id(self, handoffs):
        handoff_id = handoffs.create("api", "x", working_dir="/w", created_by_pid=1)
        assert "-nosess-" in handoff_id
        assert handoffs.get_record("api").session_id == "unknown"

    def test_invalid_type_rejected(self, handoffs):
        with pytest.raises(ValueError):
            _create(handoffs, handoff_type="someday")

    def test_create_supersedes_active(self, handoffs, store, clock):
        first = _create(handoffs, content="first")
        clock.advance(60)
        second = _create(handoffs, content="second")

        manifest = handoffs.get_manifest("api")
        assert manifest.current.id == second
        assert manifest.superseded.id == first
        assert manifest.superseded.status == "cleared"
        assert manifest.superseded.cleared_at == "2026-10-18T10:16:00+00:00"
        assert parse_blob(store.get(archive_key(first))).body == "first"
        assert parse_blob(store.get(blob_key("api"))).body == "second"

    def test_create_after_consume_has_no_superseded(self, handoffs):
        _create(handoffs)
        handoffs.load("api", 200)
        _create(handoffs)
        assert handoffs.get_manifest("api").superseded is None

    def test_channels_are_independent(self, handoffs):
        _create(handoffs, channel="api")
        _create(handoffs, channel="web")
        assert handoffs.list_channels() == ["api", "web"]
        assert handoffs.load("web", 1) == "Resume the refactor"
        assert handoffs.has_active("api")

    def test_conflicting_create_raises_and_archives_own_blob(self, clock):
        store = ConflictingStore()
        handoffs = HandoffStore(store, retention_seconds=3600, clock=clock)
        store.interfere = True

        with pytest.raises(HandoffConflictError):
            _create(handoffs)

        assert store.get(blob_key("api")) is None
        assert len(handoffs.list_archive()) == 1
        assert handoffs.get_record("api") is None

    def test_overlapping_create_waits_for_the_first(self, clock):
        """A create started while another is mid-write lands after it, intact."""
        class InterleavingStore(MemoryStore):
            def __init__(self):
                super().__init__()
                self.second = None

            def put(self, key, value):
                super().put(key, value)
                if key == blob_key("api") and self.second is None:
                    self.second = threading.Thread(target=second_create)
                    self.second.start()
                    # Give the second create every chance to run into the first
                    self.second.join(0.2)

        store = InterleavingStore()
        handoffs = HandoffStore(store, retention_seconds=3600, clock=clock)
        results = {}

        def second_create():
            try:
                results["second"] = _create(handoffs, content="second", session_id="sessB")
            except Exception as e:
                results["second"] = e

        first = _create(handoffs, content="first", session_id="sessA")
        store.second.join(2.0)
        second = results["second"]

        assert isinstance(second, str)
        manifest = handoffs.get_manifest("api")
        assert manifest.current.id == second
        assert manifest.superseded.id == first
        assert parse_blob(store.get(blob_key("api"))).handoff_id == second
        assert parse_blob(store.get(archive_key(first))).body == "first"
        assert handoffs.load("api", 1) == "second"

    def test_concurrent_creates_leave_blob_matching_manifest(self, tmp_path: Path):
        store = FileStore(tmp_path)
        handoffs = HandoffStore(store, retention_seconds=3600)
        created = []
        barrier = threading.Barrier(6)

        def creator(n):
            barrier.wait()
            created.append(_create(handoffs, content=f"notes {n}", session_id=f"sess{n}"))

        threads = [threading.Thread(target=creator, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 6
        active = handoffs.active_id("api")
        assert active in created
        assert parse_blob(store.get(blob_key("api"))).handoff_id == active
        assert len(handoffs.list_archive()) == 5
        assert handoffs.load("api", 1).startswith("notes ")

    @pytest.mark.parametrize("field,value", [
        ("working_dir", "/work/api\n<!-- HANDOFF-ID: HO-forged -->"),
        ("working_dir", "/work/a-->b"),
        ("session_id", "sess\r1"),
        ("session_id", "sess-->"),
    ])
    def test_header_breaking_values_rejected(self, handoffs, store, field, value):
        with pytest.raises(HandoffError, match="line break"):
            _create(handoffs, **{field: value})
        assert handoffs.get_record("api") is None
        assert store.get(blob_key("api")) is None

    def test_create_over_corrupt_manifest(self, handoffs, store):
        store.put(manifest_key("api"), "{not json")
        handoff_id = _create(handoffs)
        assert handoffs.active_id("api") == handoff_id


# =============================================================================
# Tests: Load
# =============================================================================


class TestLoad:
    """Consuming handoffs."""

    def test_load_returns_body_and_consumes(self, handoffs, store):
        handoff_id = _create(handoffs)
        assert handoffs.load("api", 200) == "Resume the refactor"

        record = handoffs.get_record("api")
        assert record.status == "consumed"
        assert record.consumed_by_pid == 200
        assert record.consumed_at == "2026-10-18T10:15:00+00:00"
        assert store.get(blob_key("api")) is None
        assert store.exists(archive_key(handoff_id))

    def test_load_is_once_only(self, handoffs):
        _create(handoffs)
        handoffs.load("api", 200)
        with pytest.raises(NoActiveHandoffError):
            handoffs.load("api", 300)

    def test_load_nothing(self, handoffs):
        with pytest.raises(NoActiveHandoffError):
            handoffs.load("api", 200)

    def test_load_corrupt_manifest(self, handoffs, store):
        store.put(manifest_key("api"), "[]")
        with pytest.raises(NoActiveHandoffError):
            handoffs.load("api", 200)

    def test_load_missing_blob_retires_record(self, handoffs, store, clock):
        _create(handoffs)
        store.delete(blob_key("api"))
        clock.advance(30)

        with pytest.raises(NoActiveHandoffError, match="missing"):
            handoffs.load("api", 200)

        record = handoffs.get_record("api")
        assert record.status == "cleared"
        assert record.cleared_at == "2026-10-18T10:15:30+00:00"
        assert handoffs.active_id("api") is None

    def test_body_is_byte_exact(self, handoffs):
        body = "# Title\n\n<!-- HANDOFF-ID: HO-20200101-000000-fake -->\n  indented\n\ntrailing blank above"
        _create(handoffs, content=body)
        assert handoffs.load("api", 1) == body

    def test_id_mismatch_modifies_nothing(self, handoffs, store):
        _create(handoffs)
        other = HandoffRecord(
            id="HO-20261018-090000-other-0000", session_id="other", channel="api",
            created_at="2026-10-18T09:00:00+00:00", created_by_pid=1, working_dir="/w",
        )
        store.put(blob_key("api"), other.render_blob("foreign"))
        manifest_before = store.get(manifest_key("api"))

        with pytest.raises(HandoffIntegrityError, match="ID mismatch"):
            handoffs.load("api", 200)

        assert store.get(manifest_key("api")) == manifest_before
        assert parse_blob(store.get(blob_key("api"))).body == "foreign"
        assert handoffs.list_archive() == []

    def test_at_retention_boundary_still_loads(self, handoffs, clock):
        _create(handoffs)
        clock.advance(3600)
        assert handoffs.load("api", 200) == "Resume the refactor"

    def test_expired_handoff(self, handoffs, store, clock):
        handoff_id = _create(handoffs)
        clock.advance(3601)

        with pytest.raises(HandoffExpiredError):
            handoffs.load("api", 200)

        record = handoffs.get_record("api")
        assert record.status == "expired"
        assert record.expired_at == "2026-10-18T11:15:01+00:00"
        assert store.get(blob_key("api")) is None
        assert store.exists(archive_key(handoff_id))

        with pytest.raises(NoActiveHandoffError):
            handoffs.load("api", 200)

    def test_concurrent_loads_single_winner(self, tmp_path: Path):
        """Of many racing consumers exactly one gets the body."""
        handoffs = HandoffStore(FileStore(tmp_path), retention_seconds=3600)
        _create(handoffs)
        outcomes = []
        barrier = threading.Barrier(6)

        def consumer(pid):
            barrier.wait()
            try:
                outcomes.append(handoffs.load("api", pid))
            except NoActiveHandoffError:
                outcomes.append(None)

        threads = [threading.Thread(target=consumer, args=(pid,)) for pid in range(1000, 1006)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("Resume the refactor") == 1
        assert outcomes.count(None) == 5
        assert handoffs.get_record("api").status == "consumed"


# =============================================================================
# Tests: Clear
# =============================================================================


class TestClear:
    """Cancelling handoffs without consuming them."""

    def test_clear_active(self, handoffs, store):
        handoff_id = _create(handoffs)
        assert handoffs.clear("api")
        assert handoffs.get_record("api").status == "cleared"
        assert store.get(blob_key("api")) is None
        assert store.exists(archive_key(handoff_id))

    def test_clear_nothing(self, handoffs):
        assert not handoffs.clear("api")

    def test_clear_filtered_by_session(self, handoffs):
        _create(handoffs, session_id="sess-1")
        assert not handoffs.clear("api", session_id="sess-2")
        assert handoffs.has_active("api")
        assert handoffs.clear("api", session_id="sess-1")

    def test_clear_filtered_by_type(self, handoffs):
        _create(handoffs, handoff_type="manual")
        assert not handoffs.clear("api", handoff_type="auto")
        assert handoffs.clear("api", handoff_type="manual")

    def test_orphan_blob_is_archived(self, handoffs, store):
        store.put(blob_key("api"), "left behind\n")
        assert not handoffs.clear("api")
        assert store.get(blob_key("api")) is None
        assert handoffs.list_archive() == ["api-20261018-101500"]

    def test_archive_name_collisions_get_suffix(self, handoffs, store):
        store.put(blob_key("api"), "one\n")
        handoffs.clear("api")
        store.put(blob_key("api"), "two\n")
        handoffs.clear("api")
        assert handoffs.list_archive() == ["api-20261018-101500", "api-20261018-101500-1"]
        assert handoffs.read_archived("api-20261018-101500-1") == "two\n"


# =============================================================================
# Tests: Queries
# =============================================================================


class TestQueries:

    def test_active_id_and_path(self, tmp_path: Path):
        handoffs = HandoffStore(FileStore(tmp_path))
        assert handoffs.active_id("api") is None
        assert handoffs.active_path("api") is None
        handoff_id = _create(handoffs)
        assert handoffs.active_id("api") == handoff_id
        assert handoffs.active_path("api") == str(tmp_path / "handoff" / "api-CURRENT.md")

    def test_read_blob_does_not_consume(self, handoffs):
        _create(handoffs)
        assert "Resume the refactor" in handoffs.read_blob("api")
        assert handoffs.has_active("api")

    def test_file_layout(self, tmp_path: Path):
        handoffs = HandoffStore(FileStore(tmp_path))
        handoff_id = _create(handoffs)
        handoffs.load("api", 1)
        assert (tmp_path / "handoff" / "api.manifest.json").is_file()
        assert (tmp_path / "handoff" / "archive" / f"{handoff_id}.md").is_file()
        assert handoffs.list_channels() == ["api"]
