"""Tests for the operator console wiring."""

from __future__ import annotations

from pathlib import Path
import uuid

import pytest

from tillsync import app
from tillsync.configuration import load_runtime_configuration
from tillsync.sync.tables import SyncTable


def _router(tmp_path: Path):
    return app.build_router(load_runtime_configuration(tmp_path))


def _close(router) -> None:
    server = router.metadata.get("api_server")
    if server is not None:
        server.close()
    client = router.metadata.get("sync_client")
    if client is not None:
        client.store.close()


def test_router_registers_console_commands(tmp_path: Path):
    router = _router(tmp_path)

    assert set(router.command_names) == {"help", "serve", "sync", "queue", "conflicts"}
    assert "/queue" in router.handle("help", [])


def test_execute_cli_command_records_history(tmp_path: Path, capsys):
    router = _router(tmp_path)
    history = []

    output = app.execute_cli_command("serve help", router, history)

    assert "[serve] Usage" in output
    assert history == ["serve help"]
    assert "[serve] Usage" in capsys.readouterr().out


def test_serve_status_before_start(tmp_path: Path):
    router = _router(tmp_path)

    output = router.handle("serve", ["status"])

    assert "Sync Server Status" in output
    assert "not initialized" in output


def test_sync_push_requires_enabled_client(tmp_path: Path):
    router = _router(tmp_path)

    assert "Sync is disabled" in router.handle("sync", ["push"])
    assert "Unknown subcommand" in router.handle("sync", ["bogus"])


def test_sync_status_creates_device_identity(tmp_path: Path):
    router = _router(tmp_path)

    output = router.handle("sync", ["status"])

    assert "Device Sync Status" in output
    device_id = (tmp_path / "config" / ".device_id").read_text(encoding="utf-8")
    assert uuid.UUID(device_id)
    assert (tmp_path / "state" / "device.db").exists()
    _close(router)


def test_sync_reset_reports_count(tmp_path: Path):
    router = _router(tmp_path)

    assert "Reset 0 failed record(s) in customers" in router.handle("sync", ["reset", "customers"])
    assert "Invalid table name" in router.handle("sync", ["reset", "invoices"])
    _close(router)


def test_queue_commands_against_server_store(tmp_path: Path):
    router = _router(tmp_path)
    device_id = str(uuid.uuid4())

    summary = router.handle("queue", [])
    server = router.metadata["api_server"]
    server.coordinator.upload(
        device_id,
        SyncTable.JOBS,
        [{"id": "j1", "updated_at": "2024-01-01T10:00:00Z", "customer_id": "c1", "service_id": "s1"}],
    )
    detail = router.handle("queue", [device_id])
    processed = router.handle("queue", [device_id, "process"])

    assert "Retry Queue" in summary
    assert "j1" in detail
    assert "1 still queued" in processed
    assert "must be a valid UUID" in router.handle("queue", ["not-a-device"])
    _close(router)


def test_conflicts_command_lists_discarded_versions(tmp_path: Path):
    router = _router(tmp_path)

    assert "No conflicts recorded" in router.handle("conflicts", [])

    coordinator = router.metadata["api_server"].coordinator
    stamp_new = {"id": "c1", "updated_at": "2024-01-01T12:00:00Z"}
    stamp_old = {"id": "c1", "updated_at": "2024-01-01T11:00:00Z"}
    coordinator.upload(str(uuid.uuid4()), "customers", [stamp_new])
    coordinator.upload(str(uuid.uuid4()), "customers", [stamp_old])

    output = router.handle("conflicts", ["all", "5"])

    assert "OLDER_TIMESTAMP" in output
    _close(router)


def test_prepare_runtime_sets_up_logging(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("TILLSYNC_LOG_LEVEL", raising=False)
    home = tmp_path / "home"

    bundle = app.prepare_runtime(home, console_logging=False)

    assert home.is_dir()
    assert bundle.log_path == home / "logs" / "tillsync.log"
    assert bundle.status == "ready"


def test_main_rejects_unknown_subcommand(capsys):
    with pytest.raises(SystemExit) as excinfo:
        app.main(["bogus"])

    assert excinfo.value.code == 2
    assert "Usage: tillsync [serve]" in capsys.readouterr().out
