"""Tests for the device-side sync client against an in-process server."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from tillsync.errors import TransientStoreError, TransportError
from tillsync.sync.client import ClientSettings, SyncClient
from tillsync.sync.coordinator import SyncCoordinator, SyncSettings
from tillsync.sync.records import SyncStatus
from tillsync.sync.store import RecordStore
from tillsync.sync.tables import SyncTable

DEVICE_A = "device-a"
DEVICE_B = "device-b"


class _LoopbackTransport:
    """Calls the coordinator directly in place of HTTP."""

    def __init__(self, coordinator: SyncCoordinator, device_id: str):
        self.coordinator = coordinator
        self.device_id = device_id
        self.queue_sweeps = 0
        self.fail_uploads = False
        self.fail_dependency_fetch = False

    def upload(self, table, records):
        if self.fail_uploads:
            raise TransportError("POST /sync/upload failed after 6 attempts: connection error")
        return self.coordinator.upload(self.device_id, table, records).to_dict()

    def download(self, table, cursor=None, limit=None, since=None):
        return self.coordinator.download(self.device_id, table, since, limit, cursor).to_dict()

    def fetch_dependencies(self, table, record_ids):
        if self.fail_dependency_fetch:
            raise TransportError("POST /dependencies/fetch failed")
        return {"dependencies": self.coordinator.fetch_dependencies(table, record_ids)}

    def process_queue(self, limit=None):
        self.queue_sweeps += 1
        return self.coordinator.process_queue(self.device_id, limit).to_dict()


def _server(tmp_path: Path, **settings) -> SyncCoordinator:
    return SyncCoordinator(RecordStore(tmp_path / "server.db").initialize(), SyncSettings(**settings))


def _device(tmp_path: Path, server: SyncCoordinator, device_id: str, batch_size: int = 500) -> SyncClient:
    store = RecordStore(tmp_path / f"{device_id}.db").initialize()
    settings = ClientSettings(enabled=True, batch_size=batch_size)
    return SyncClient(store, device_id, settings, transport=_LoopbackTransport(server, device_id))


def _status(client: SyncClient, table: SyncTable, record_id: str) -> Optional[SyncStatus]:
    record = client.store.get(table, record_id)
    return record.sync_status if record else None


def _seed_job(client: SyncClient) -> None:
    client.save_local("customers", {"id": "c1", "name": "Ada", "updated_at": "2024-01-01T10:00:00Z"})
    client.save_local("service_types", {"id": "s1", "name": "Wash", "updated_at": "2024-01-01T10:00:00Z"})
    client.save_local(
        "jobs",
        {"id": "j1", "customer_id": "c1", "service_id": "s1", "updated_at": "2024-01-01T10:05:00Z"},
    )


def test_full_sync_moves_records_between_devices(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_b = _device(tmp_path, server, DEVICE_B)
    _seed_job(device_a)

    pushed = device_a.full_sync()
    pulled = device_b.full_sync()

    assert pushed.success
    assert pushed.uploaded == 3
    assert _status(device_a, SyncTable.JOBS, "j1") is SyncStatus.SYNCED
    assert pulled.downloaded == 3
    job = device_b.store.get(SyncTable.JOBS, "j1")
    assert job.device_id == DEVICE_A
    assert job.payload["customer_id"] == "c1"
    assert device_b.store.get_cursor(DEVICE_B, SyncTable.JOBS) is not None


def test_second_pull_only_sees_new_changes(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_b = _device(tmp_path, server, DEVICE_B)
    _seed_job(device_a)
    device_a.upload_pending()
    device_b.download_new()

    device_a.save_local("customers", {"id": "c2", "name": "Bob"})
    device_a.upload_pending()
    again = device_b.download_new()

    assert again.downloaded == 1
    assert device_b.store.get(SyncTable.CUSTOMERS, "c2").payload["name"] == "Bob"


def test_download_pages_through_small_batches(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_b = _device(tmp_path, server, DEVICE_B, batch_size=2)
    for index in range(5):
        device_a.save_local("customers", {"id": f"c{index}", "updated_at": "2024-01-01T10:00:00Z"})
    device_a.upload_pending()

    summary = device_b.download_table(SyncTable.CUSTOMERS)

    assert summary["downloaded"] == 5
    assert summary["applied"] == 5


def test_rejected_record_is_marked_failed(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_b = _device(tmp_path, server, DEVICE_B)
    device_b.save_local("customers", {"id": "c1", "name": "Newer", "updated_at": "2024-01-01T12:00:00Z"})
    device_b.upload_pending()
    device_a.save_local("customers", {"id": "c1", "name": "Older", "updated_at": "2024-01-01T11:00:00Z"})

    result = device_a.upload_pending()

    assert result.rejected == 1
    assert _status(device_a, SyncTable.CUSTOMERS, "c1") is SyncStatus.FAILED
    assert device_a.reset_failed("customers") == 1
    assert _status(device_a, SyncTable.CUSTOMERS, "c1") is SyncStatus.PENDING


def test_server_queued_record_stays_pending(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_a.save_local(
        "jobs",
        {"id": "j1", "customer_id": "c-unknown", "service_id": "s-unknown", "updated_at": "2024-01-01T10:00:00Z"},
    )

    result = device_a.upload_pending()

    assert result.queued == 1
    assert _status(device_a, SyncTable.JOBS, "j1") is SyncStatus.PENDING
    assert device_a.transport.queue_sweeps == 1
    assert server.queue.stats(DEVICE_A)["totalQueued"] == 1


def test_record_the_server_gave_up_on_is_marked_failed(tmp_path: Path):
    server = _server(tmp_path, queue_max_attempts=1)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_a.save_local(
        "jobs",
        {"id": "j1", "customer_id": "c-unknown", "service_id": "s-unknown", "updated_at": "2024-01-01T10:00:00Z"},
    )

    first = device_a.upload_pending()
    second = device_a.upload_pending()

    assert first.queued == 1
    assert [entry.status.value for entry in server.queue.entries(DEVICE_A, None)] == ["EXHAUSTED"]
    assert second.queued == 0
    assert second.rejected == 1
    assert _status(device_a, SyncTable.JOBS, "j1") is SyncStatus.FAILED


def test_storage_error_on_server_leaves_record_pending(tmp_path: Path, monkeypatch):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_a.save_local("customers", {"id": "c1", "updated_at": "2024-01-01T10:00:00Z"})

    def _locked(*args, **kwargs):
        raise TransientStoreError("Storage error: database is locked")

    monkeypatch.setattr(server.store, "apply", _locked)
    deferred = device_a.upload_pending()
    monkeypatch.undo()
    retried = device_a.upload_pending()

    assert deferred.retryable == 1
    assert deferred.rejected == 0
    assert retried.uploaded == 1
    assert _status(device_a, SyncTable.CUSTOMERS, "c1") is SyncStatus.SYNCED


def test_transport_failure_marks_batch_failed(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_a.save_local("customers", {"id": "c1", "updated_at": "2024-01-01T10:00:00Z"})
    device_a.transport.fail_uploads = True

    result = device_a.upload_pending()

    assert not result.success
    assert result.errors and "customers" in result.errors[0]
    assert _status(device_a, SyncTable.CUSTOMERS, "c1") is SyncStatus.FAILED


def test_missing_parents_are_fetched_before_applying(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_b = _device(tmp_path, server, DEVICE_B)
    _seed_job(device_a)
    device_a.upload_pending()

    summary = device_b.download_table(SyncTable.JOBS)

    assert summary["applied"] == 1
    assert summary["held"] == 0
    assert device_b.store.get(SyncTable.CUSTOMERS, "c1") is not None


def test_unresolvable_parents_hold_record_until_later_pass(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    device_b = _device(tmp_path, server, DEVICE_B)
    _seed_job(device_a)
    device_a.upload_pending()
    device_b.transport.fail_dependency_fetch = True

    summary = device_b.download_table(SyncTable.JOBS)
    assert summary["held"] == 1
    assert device_b.store.get(SyncTable.JOBS, "j1") is None

    device_b.transport.fail_dependency_fetch = False
    device_b.download_new()
    assert device_b.store.get(SyncTable.JOBS, "j1") is not None
    assert device_b.queue.stats(DEVICE_B)["totalQueued"] == 0


def test_concurrent_pass_is_refused(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)

    device_a._pass_lock.acquire()
    try:
        result = device_a.full_sync()
        assert device_a.get_status()["in_progress"] is True
    finally:
        device_a._pass_lock.release()

    assert not result.success
    assert result.message == "Sync already in progress"


def test_save_local_stamps_device_and_time(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)

    record = device_a.save_local("customers", {"id": "c1", "device_id": "someone-else"})

    assert record.device_id == DEVICE_A
    assert record.sync_status is SyncStatus.PENDING
    assert device_a.get_status()["pending"] == 1


def test_progress_callback_reports_each_table(tmp_path: Path):
    server = _server(tmp_path)
    device_a = _device(tmp_path, server, DEVICE_A)
    calls = []
    device_a.progress_callback = lambda message, current, total: calls.append((current, total))

    device_a.upload_pending()

    assert calls[0] == (1, len(SyncTable))
    assert calls[-1] == (len(SyncTable), len(SyncTable))


def test_client_settings_from_config():
    settings = ClientSettings.from_config(
        {"client": {"enabled": True, "server_url": "http://hub:9000", "retry_delays": [1, 3]}}
    )

    assert settings.enabled is True
    assert settings.server_url == "http://hub:9000"
    assert settings.retry_delays == (1, 3)
    assert settings.batch_size == 500
