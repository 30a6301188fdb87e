"""Tests for the SQLite record store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tillsync.errors import ValidationError
from tillsync.sync.conflict import ConflictResolver, ResolutionAction
from tillsync.sync.records import Record, SyncStatus
from tillsync.sync.store import RecordStore, SyncCursor
from tillsync.sync.tables import SyncTable

BASE = datetime(2024, 1, 1, 10, tzinfo=timezone.utc)


def _store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "state" / "sync.db").initialize()


def _record(record_id: str, device: str = "dev-a", minutes: int = 0, **payload) -> Record:
    return Record(
        id=record_id,
        device_id=device,
        updated_at=BASE + timedelta(minutes=minutes),
        payload=payload,
    )


def test_apply_assigns_increasing_watermarks(tmp_path: Path):
    store = _store(tmp_path)
    resolver = ConflictResolver()

    first = store.apply(SyncTable.CUSTOMERS, _record("c1"), resolver).record
    second = store.apply(SyncTable.CUSTOMERS, _record("c2"), resolver).record

    assert first.server_updated_at < second.server_updated_at
    assert first.sync_status is SyncStatus.SYNCED
    store.close()


def test_watermark_survives_reopen(tmp_path: Path):
    store = _store(tmp_path)
    stored = store.apply(SyncTable.CUSTOMERS, _record("c1"), ConflictResolver()).record
    store.close()

    reopened = _store(tmp_path)
    later = reopened.apply(SyncTable.CUSTOMERS, _record("c2"), ConflictResolver()).record

    assert later.server_updated_at > stored.server_updated_at
    reopened.close()


def test_discarded_version_is_logged_as_conflict(tmp_path: Path):
    store = _store(tmp_path)
    resolver = ConflictResolver()
    store.apply(SyncTable.CUSTOMERS, _record("c1", minutes=5, name="kept"), resolver)

    resolution = store.apply(
        SyncTable.CUSTOMERS,
        _record("c1", device="dev-b", minutes=1, name="lost"),
        resolver,
        device_id="dev-b",
    )

    assert resolution.action is ResolutionAction.DISCARD
    assert store.get(SyncTable.CUSTOMERS, "c1").payload == {"name": "kept"}
    conflicts = store.conflicts("dev-b")
    assert len(conflicts) == 1
    assert conflicts[0].record_id == "c1"
    assert store.conflict_counts() == {"OLDER_TIMESTAMP": 1}
    store.close()


def test_changes_since_pages_after_cursor_and_skips_own_device(tmp_path: Path):
    store = _store(tmp_path)
    resolver = ConflictResolver()
    for index in range(3):
        store.apply(SyncTable.JOBS, _record(f"j{index}", device="dev-a"), resolver)
    store.apply(SyncTable.JOBS, _record("mine", device="dev-b"), resolver)

    first_page = store.changes_since(SyncTable.JOBS, exclude_device="dev-b", limit=2)
    cursor = SyncCursor.from_record(first_page[-1])
    rest = store.changes_since(SyncTable.JOBS, exclude_device="dev-b", after=cursor, limit=10)

    assert [r.id for r in first_page] == ["j0", "j1"]
    assert [r.id for r in rest] == ["j2"]
    store.close()


def test_pending_and_mark_status(tmp_path: Path):
    store = _store(tmp_path)
    store.save_local(SyncTable.CUSTOMERS, _record("c1"))
    store.save_local(SyncTable.CUSTOMERS, _record("c2"))

    assert [r.id for r in store.pending(SyncTable.CUSTOMERS, "dev-a")] == ["c1", "c2"]

    store.mark_status(SyncTable.CUSTOMERS, ["c1"], SyncStatus.SYNCED)
    store.mark_status(SyncTable.CUSTOMERS, ["c2"], SyncStatus.FAILED)
    stats = store.statistics("dev-a")["customers"]
    assert stats == {"PENDING": 0, "SYNCED": 1, "FAILED": 1, "TOTAL": 2}

    assert store.reset_failed("dev-a") == 1
    assert [r.id for r in store.pending(SyncTable.CUSTOMERS, "dev-a")] == ["c2"]
    store.close()


def test_cursor_never_moves_backwards(tmp_path: Path):
    store = _store(tmp_path)
    newer = SyncCursor("2024-01-02T00:00:00.000000+00:00", "b")
    older = SyncCursor("2024-01-01T00:00:00.000000+00:00", "z")

    store.save_cursor("dev", SyncTable.JOBS, newer)
    kept = store.save_cursor("dev", SyncTable.JOBS, older)

    assert kept == newer
    assert store.get_cursor("dev", SyncTable.JOBS) == newer
    assert store.cursors("dev") == {"jobs": newer.encode()}
    store.close()


def test_cursor_decode_accepts_bare_timestamp():
    cursor = SyncCursor.decode("2024-01-01T10:00:00Z")

    assert cursor.watermark == "2024-01-01T10:00:00.000000+00:00"
    assert cursor.record_id == ""


def test_cursor_decode_rejects_garbage():
    with pytest.raises(ValidationError):
        SyncCursor.decode("not-a-time|x")


def test_device_registry_and_operation_log(tmp_path: Path):
    store = _store(tmp_path)
    store.register_device("dev-a")
    store.register_device("dev-a", name="Front desk")
    store.log_operation("dev-a", SyncTable.CUSTOMERS, 3, "UPLOAD", "SUCCESS")

    assert store.device_count() == 1
    assert store.get_device("dev-a")["name"] == "Front desk"
    operations = store.recent_operations("dev-a")
    assert operations[0]["record_count"] == 3
    assert operations[0]["sync_type"] == "UPLOAD"
    store.close()


def test_store_requires_initialize(tmp_path: Path):
    store = RecordStore(tmp_path / "sync.db")

    with pytest.raises(RuntimeError):
        store.get(SyncTable.CUSTOMERS, "c1")
