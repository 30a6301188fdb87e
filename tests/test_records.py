"""Tests for the record model."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tillsync.errors import MalformedRecord
from tillsync.sync.records import Record, SyncStatus, format_timestamp, parse_timestamp
from tillsync.sync.tables import SyncTable


def test_from_dict_accepts_camel_case_keys():
    record = Record.from_dict(
        {
            "id": "c1",
            "deviceId": "dev-a",
            "updatedAt": "2024-01-01T10:00:00Z",
            "customerName": "Ada",
        }
    )

    assert record.device_id == "dev-a"
    assert record.updated_at == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert record.payload == {"customer_name": "Ada"}
    assert record.sync_status is SyncStatus.PENDING


def test_from_dict_falls_back_to_uploader_device():
    record = Record.from_dict(
        {"id": "c1", "updated_at": "2024-01-01T10:00:00Z"},
        device_id="uploader",
    )

    assert record.device_id == "uploader"


def test_append_only_tables_version_on_created_at():
    record = Record.from_dict(
        {"id": "l1", "device_id": "d", "created_at": "2024-01-01T10:00:00+00:00", "amount": 5},
        table=SyncTable.LEDGER_ENTRIES,
    )

    assert record.updated_at == parse_timestamp("2024-01-01T10:00:00Z")
    assert record.payload["created_at"] == "2024-01-01T10:00:00+00:00"


@pytest.mark.parametrize(
    "data",
    [
        {"device_id": "d", "updated_at": "2024-01-01T10:00:00Z"},
        {"id": "x", "device_id": "d"},
        {"id": "x", "device_id": "d", "updated_at": "yesterday"},
        {"id": "x", "updated_at": "2024-01-01T10:00:00Z"},
    ],
)
def test_from_dict_rejects_missing_metadata(data):
    with pytest.raises(MalformedRecord):
        Record.from_dict(data)


def test_to_dict_flattens_payload():
    record = Record(
        id="c1",
        device_id="dev",
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        payload={"name": "Ada"},
        server_updated_at="2024-01-02T00:00:00.000000+00:00",
    )

    data = record.to_dict()

    assert data["name"] == "Ada"
    assert data["updated_at"] == "2024-01-01T00:00:00.000000+00:00"
    assert data["server_updated_at"] == "2024-01-02T00:00:00.000000+00:00"


def test_format_timestamp_orders_lexically():
    earlier = format_timestamp(datetime(2024, 1, 1, 9, 59, 59, 999999, tzinfo=timezone.utc))
    later = format_timestamp(datetime(2024, 1, 1, 10, tzinfo=timezone.utc))

    assert earlier < later
    assert parse_timestamp(later).tzinfo is not None
