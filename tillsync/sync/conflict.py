"""Last-write-wins conflict resolution for synchronized records."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .records import Record, format_timestamp, utcnow
from .tables import SyncTable

logger = logging.getLogger("tillsync.sync.conflict")


class ResolutionAction(str, Enum):
    """What the store should do with an incoming record."""
    INSERT = "insert"
    OVERWRITE = "overwrite"
    UNCHANGED = "unchanged"
    DISCARD = "discard"


class ConflictType(str, Enum):
    OLDER_TIMESTAMP = "OLDER_TIMESTAMP"
    EQUAL_TIMESTAMP = "EQUAL_TIMESTAMP"
    IMMUTABLE_RECORD = "IMMUTABLE_RECORD"


@dataclass
class ConflictRecord:
    """Audit entry for a discarded version. Never mutates domain state."""

    table: SyncTable
    record_id: str
    device_id: str
    conflict_type: ConflictType
    incoming_updated_at: datetime
    existing_updated_at: datetime
    incoming: Dict[str, Any] = field(default_factory=dict)
    existing: Dict[str, Any] = field(default_factory=dict)
    winner: str = "existing"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.table = SyncTable.parse(self.table)
        self.conflict_type = ConflictType(self.conflict_type)
        if not self.record_id:
            raise ValueError("conflict record needs the record id")
        if self.winner != "existing":
            raise ValueError("the stored copy is always the surviving version")
        if (
            self.conflict_type is ConflictType.OLDER_TIMESTAMP
            and not self.incoming_updated_at < self.existing_updated_at
        ):
            raise ValueError("OLDER_TIMESTAMP requires incoming < existing")
        if (
            self.conflict_type is ConflictType.EQUAL_TIMESTAMP
            and self.incoming_updated_at != self.existing_updated_at
        ):
            raise ValueError("EQUAL_TIMESTAMP requires matching timestamps")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table.value,
            "record_id": self.record_id,
            "device_id": self.device_id,
            "conflict_type": self.conflict_type.value,
            "incoming_updated_at": format_timestamp(self.incoming_updated_at),
            "existing_updated_at": format_timestamp(self.existing_updated_at),
            "incoming": self.incoming,
            "existing": self.existing,
            "winner": self.winner,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class ConflictResolution:
    """Result of comparing an incoming record with the stored copy."""

    action: ResolutionAction
    record: Record
    conflict: Optional[ConflictRecord] = None
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.action is not ResolutionAction.DISCARD


class ConflictResolver:
    """Decides which version of a record survives.

    Policy is last-write-wins on ``updated_at``; on a tie the stored copy
    stays. Whole records win or lose: concurrent edits to different fields
    of one record keep only the newer record's fields.
    """

    def resolve(
        self,
        table: SyncTable,
        incoming: Record,
        existing: Optional[Record],
        device_id: Optional[str] = None,
    ) -> ConflictResolution:
        if existing is None:
            return ConflictResolution(
                action=ResolutionAction.INSERT,
                record=incoming,
                message="New record",
            )

        if incoming.version_key() == existing.version_key():
            return ConflictResolution(
                action=ResolutionAction.UNCHANGED,
                record=existing,
                message="Stored copy is already this version",
            )

        if table.append_only:
            return self._discard(
                table, incoming, existing, device_id, ConflictType.IMMUTABLE_RECORD,
                f"{table.value} rows are append-only",
            )

        if incoming.updated_at > existing.updated_at:
            return ConflictResolution(
                action=ResolutionAction.OVERWRITE,
                record=incoming,
                message=(
                    f"Incoming is newer ({format_timestamp(incoming.updated_at)} > "
                    f"{format_timestamp(existing.updated_at)})"
                ),
            )

        if incoming.updated_at == existing.updated_at:
            return self._discard(
                table, incoming, existing, device_id, ConflictType.EQUAL_TIMESTAMP,
                "Same updated_at; stored copy kept",
            )

        return self._discard(
            table, incoming, existing, device_id, ConflictType.OLDER_TIMESTAMP,
            (
                f"Incoming is older ({format_timestamp(incoming.updated_at)} < "
                f"{format_timestamp(existing.updated_at)})"
            ),
        )

    def _discard(
        self,
        table: SyncTable,
        incoming: Record,
        existing: Record,
        device_id: Optional[str],
        conflict_type: ConflictType,
        message: str,
    ) -> ConflictResolution:
        conflict = ConflictRecord(
            table=table,
            record_id=incoming.id,
            device_id=device_id or incoming.device_id,
            conflict_type=conflict_type,
            incoming_updated_at=incoming.updated_at,
            existing_updated_at=existing.updated_at,
            incoming=incoming.to_dict(),
            existing=existing.to_dict(),
        )
        logger.info(
            "Conflict on %s/%s: %s (%s)",
            table.value, incoming.id, conflict_type.value, message,
        )
        return ConflictResolution(
            action=ResolutionAction.DISCARD,
            record=existing,
            conflict=conflict,
            message=message,
        )


__all__ = [
    "ConflictRecord",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictType",
    "ResolutionAction",
]
