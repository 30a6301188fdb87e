"""Tests for the dependency retry queue."""

from __future__ import annotations

from pathlib import Path

import pytest

from tillsync.sync.coordinator import SyncCoordinator, SyncSettings
from tillsync.sync.queue import QueueEntry, QueueStatus
from tillsync.sync.store import RecordStore
from tillsync.sync.tables import SyncTable

DEVICE = "device-a"


def _coordinator(tmp_path: Path, **settings) -> SyncCoordinator:
    store = RecordStore(tmp_path / "server.db").initialize()
    return SyncCoordinator(store, SyncSettings(**settings))


def _job(record_id: str = "j1", customer: str = "c1", stamp: str = "2024-01-01T10:00:00Z") -> dict:
    return {"id": record_id, "updated_at": stamp, "customer_id": customer, "service_id": "s1"}


def _parent(record_id: str) -> dict:
    return {"id": record_id, "updated_at": "2024-01-01T09:00:00Z"}


def test_job_waits_for_customer_then_applies_in_one_sweep(tmp_path: Path):
    coordinator = _coordinator(tmp_path)

    upload = coordinator.upload(DEVICE, "jobs", [_job()])
    assert upload.queued[0]["id"] == "j1"
    assert upload.queued[0]["missingDependencies"] == {
        "customers": ["c1"],
        "service_types": ["s1"],
    }
    assert coordinator.store.get(SyncTable.JOBS, "j1") is None

    coordinator.upload(DEVICE, "customers", [_parent("c1")])
    coordinator.upload(DEVICE, "service_types", [_parent("s1")])
    sweep = coordinator.process_queue(DEVICE)

    assert [item["recordId"] for item in sweep.applied] == ["j1"]
    assert coordinator.store.get(SyncTable.JOBS, "j1") is not None
    assert coordinator.queue.stats(DEVICE)["totalQueued"] == 0


def test_direct_apply_clears_queued_copy(tmp_path: Path):
    coordinator = _coordinator(tmp_path)
    coordinator.upload(DEVICE, "jobs", [_job(stamp="2024-01-01T10:00:00Z")])
    coordinator.upload(DEVICE, "customers", [_parent("c1")])
    coordinator.upload(DEVICE, "service_types", [_parent("s1")])

    resend = coordinator.upload(DEVICE, "jobs", [_job(stamp="2024-01-01T11:00:00Z")])
    sweep = coordinator.process_queue(DEVICE)

    assert resend.accepted == ["j1"]
    assert coordinator.queue.stats(DEVICE)["totalQueued"] == 0
    assert sweep.processed == 0
    assert coordinator.conflicts(None) == []
    stored = coordinator.store.get(SyncTable.JOBS, "j1")
    assert stored.updated_at.hour == 11


def test_sweep_reports_superseded_entry_as_discarded(tmp_path: Path):
    coordinator = _coordinator(tmp_path)
    coordinator.upload(DEVICE, "jobs", [_job(stamp="2024-01-01T10:00:00Z")])
    other = "device-b"
    coordinator.upload(other, "customers", [_parent("c1")])
    coordinator.upload(other, "service_types", [_parent("s1")])
    coordinator.upload(other, "jobs", [_job(stamp="2024-01-01T11:00:00Z")])

    sweep = coordinator.process_queue(DEVICE)

    assert sweep.applied == []
    assert [(item["recordId"], item["reason"]) for item in sweep.discarded] == [("j1", "OLDER_TIMESTAMP")]
    assert sweep.to_dict()["discardedCount"] == 1
    assert coordinator.queue.stats(DEVICE)["totalQueued"] == 0


def test_entry_exhausts_after_max_attempts(tmp_path: Path):
    coordinator = _coordinator(tmp_path)
    coordinator.upload(DEVICE, "jobs", [_job()])

    for _ in range(9):
        sweep = coordinator.process_queue(DEVICE)
        assert len(sweep.still_queued) == 1
    final = coordinator.process_queue(DEVICE)

    assert len(final.exhausted) == 1
    assert final.exhausted[0]["attempts"] == 10
    entries = coordinator.queue.entries(DEVICE, status=QueueStatus.EXHAUSTED)
    assert entries[0].last_error.startswith("Missing dependencies")
    assert coordinator.process_queue(DEVICE).processed == 0


def test_reset_gives_exhausted_entries_new_attempts(tmp_path: Path):
    coordinator = _coordinator(tmp_path, queue_max_attempts=1)
    coordinator.upload(DEVICE, "jobs", [_job()])
    coordinator.process_queue(DEVICE)

    assert coordinator.reset_queue(DEVICE, "jobs") == 1
    entry = coordinator.queue.entries(DEVICE)[0]
    assert entry.attempts == 0
    assert entry.status is QueueStatus.QUEUED


def test_concurrent_sweep_is_skipped(tmp_path: Path):
    coordinator = _coordinator(tmp_path)
    coordinator.upload(DEVICE, "jobs", [_job()])

    lock = coordinator.queue._sweep_lock(DEVICE)
    lock.acquire()
    try:
        sweep = coordinator.process_queue(DEVICE)
    finally:
        lock.release()

    assert sweep.skipped
    assert sweep.processed == 0
    assert coordinator.queue.entries(DEVICE)[0].attempts == 0


def test_requeue_keeps_fifo_position_and_refreshes_payload(tmp_path: Path):
    coordinator = _coordinator(tmp_path)
    coordinator.upload(DEVICE, "jobs", [_job("j1", "c1")])
    coordinator.upload(DEVICE, "jobs", [_job("j2", "c2")])
    coordinator.process_queue(DEVICE)

    coordinator.upload(DEVICE, "jobs", [_job("j1", "c3", stamp="2024-01-01T11:00:00Z")])
    entries = coordinator.queue.entries(DEVICE)

    assert [entry.record_id for entry in entries] == ["j1", "j2"]
    assert entries[0].record["customer_id"] == "c3"
    assert entries[0].attempts == 1


def test_queue_is_per_device(tmp_path: Path):
    coordinator = _coordinator(tmp_path)
    coordinator.upload(DEVICE, "jobs", [_job()])

    sweep = coordinator.process_queue("device-b")

    assert sweep.processed == 0
    assert coordinator.queue.stats("device-b")["totalQueued"] == 0
    assert coordinator.queue.stats(DEVICE)["byTable"] == {"jobs": {"QUEUED": 1}}


def test_queue_entry_validates_attempts():
    with pytest.raises(ValueError):
        QueueEntry(
            device_id=DEVICE,
            table=SyncTable.JOBS,
            record={"id": "j1"},
            attempts=3,
            max_attempts=3,
        )


def test_purge_removes_old_exhausted_entries(tmp_path: Path):
    coordinator = _coordinator(tmp_path, queue_max_attempts=1)
    coordinator.upload(DEVICE, "jobs", [_job()])
    coordinator.process_queue(DEVICE)

    assert coordinator.queue.purge_exhausted(older_than_days=0) == 1
    assert coordinator.queue.entries(DEVICE, status=None) == []
