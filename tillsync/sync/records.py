"""Record model shared by the device store, the server store and the wire."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..errors import MalformedRecord
from .tables import SyncTable

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

META_FIELDS = (
    "id",
    "device_id",
    "updated_at",
    "sync_status",
    "server_updated_at",
)


class SyncStatus(str, Enum):
    """Per-record lifecycle on the originating device."""

    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


def snake_case(key: str) -> str:
    if "_" in key or key.islower():
        return key
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Raises ``ValueError`` when the value is missing or unparsable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO form; lexical order matches chronological order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Record:
    """One row of a synchronized table."""

    id: str
    device_id: str
    updated_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    sync_status: SyncStatus = SyncStatus.PENDING
    server_updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise MalformedRecord("record id is required")
        if not isinstance(self.device_id, str) or not self.device_id.strip():
            raise MalformedRecord("device_id is required", record_id=self.id)
        if not isinstance(self.updated_at, datetime):
            raise MalformedRecord("updated_at must be a datetime", record_id=self.id)
        if self.updated_at.tzinfo is None:
            self.updated_at = self.updated_at.replace(tzinfo=timezone.utc)
        self.sync_status = SyncStatus(self.sync_status)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        table: Optional[SyncTable] = None,
        device_id: Optional[str] = None,
    ) -> "Record":
        """Build a record from a wire/database mapping.

        Keys may be camelCase or snake_case. ``device_id`` fills in the origin
        device when the mapping has none. Append-only tables fall back to
        ``created_at`` as their version timestamp.
        """
        if not isinstance(data, Mapping):
            raise MalformedRecord("record must be a JSON object")

        normalized = {snake_case(str(key)): value for key, value in data.items()}
        record_id = normalized.get("id")
        if record_id is None or not str(record_id).strip():
            raise MalformedRecord("record id is required")
        record_id = str(record_id)

        raw_updated = normalized.get("updated_at")
        if raw_updated in (None, "") and table is not None and table.append_only:
            raw_updated = normalized.get("created_at")
        if raw_updated in (None, ""):
            raise MalformedRecord("updated_at is required", record_id=record_id)
        try:
            updated_at = parse_timestamp(raw_updated)
        except (TypeError, ValueError):
            raise MalformedRecord(
                f"updated_at is not a valid timestamp: {raw_updated!r}",
                record_id=record_id,
            )

        raw_status = normalized.get("sync_status") or SyncStatus.PENDING.value
        try:
            status = SyncStatus(str(raw_status).upper())
        except ValueError:
            raise MalformedRecord(
                f"unknown sync_status: {raw_status!r}", record_id=record_id
            )

        payload = {key: value for key, value in normalized.items() if key not in META_FIELDS}
        return cls(
            id=record_id,
            device_id=str(normalized.get("device_id") or device_id or ""),
            updated_at=updated_at,
            payload=payload,
            sync_status=status,
            server_updated_at=normalized.get("server_updated_at"),
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def version_key(self) -> Dict[str, Any]:
        """Everything that identifies this version, minus bookkeeping columns."""
        return {
            "device_id": self.device_id,
            "updated_at": format_timestamp(self.updated_at),
            "payload": self.payload,
        }

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "device_id": self.device_id,
            "updated_at": format_timestamp(self.updated_at),
            "sync_status": self.sync_status.value,
        }
        data.update(self.payload)
        if self.server_updated_at:
            data["server_updated_at"] = self.server_updated_at
        return data


__all__ = [
    "Record",
    "SyncStatus",
    "format_timestamp",
    "parse_timestamp",
    "snake_case",
    "utcnow",
]
