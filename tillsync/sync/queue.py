"""Retry queue for records whose foreign-key dependencies are not yet present."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

from ..errors import Err, Result
from .records import format_timestamp, utcnow
from .tables import SyncTable

if TYPE_CHECKING:
    from .dependencies import DependencyResolver
    from .store import RecordStore

logger = logging.getLogger("tillsync.sync.queue")

DEFAULT_MAX_ATTEMPTS = 10

MissingDependencies = Dict[str, List[Optional[str]]]
ApplyFn = Callable[[str, SyncTable, Mapping[str, Any]], Result]


class QueueStatus(str, Enum):
    """Entries leave the queue when applied; exhausted ones stay for diagnostics."""
    QUEUED = "QUEUED"
    EXHAUSTED = "EXHAUSTED"


@dataclass
class QueueEntry:
    """A record held back until its dependencies exist."""

    device_id: str
    table: SyncTable
    record: Dict[str, Any]
    missing: MissingDependencies = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    status: QueueStatus = QueueStatus.QUEUED
    last_error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.table = SyncTable.parse(self.table)
        self.status = QueueStatus(self.status)
        if not self.device_id:
            raise ValueError("queue entry needs a device id")
        if not isinstance(self.record, Mapping) or not self.record.get("id"):
            raise ValueError("queued record must carry an id")
        self.record = dict(self.record)
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.attempts < 0:
            raise ValueError("attempts cannot be negative")
        if self.status is QueueStatus.QUEUED and self.attempts >= self.max_attempts:
            raise ValueError("an entry past its attempt limit must be EXHAUSTED")

    @property
    def record_id(self) -> str:
        return str(self.record["id"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "tableName": self.table.value,
            "recordId": self.record_id,
            "missingDependencies": self.missing,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "status": self.status.value,
            "lastError": self.last_error,
            "enqueuedAt": format_timestamp(self.enqueued_at),
            "lastAttemptAt": (
                format_timestamp(self.last_attempt_at) if self.last_attempt_at else None
            ),
        }


@dataclass
class QueueSweepResult:
    """Outcome of one ``process_queue`` pass."""

    device_id: str
    processed: int = 0
    applied: List[Dict[str, Any]] = field(default_factory=list)
    discarded: List[Dict[str, Any]] = field(default_factory=list)
    still_queued: List[Dict[str, Any]] = field(default_factory=list)
    exhausted: List[Dict[str, Any]] = field(default_factory=list)
    skipped: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "processed": self.processed,
            "appliedCount": len(self.applied),
            "discardedCount": len(self.discarded),
            "stillQueuedCount": len(self.still_queued),
            "exhaustedCount": len(self.exhausted),
            "applied": self.applied,
            "discarded": self.discarded,
            "stillQueued": self.still_queued,
            "exhausted": self.exhausted,
            "skipped": self.skipped,
            "message": self.message,
        }


class QueueManager:
    """Holds and retries records with unmet dependencies, per device."""

    def __init__(
        self,
        store: "RecordStore",
        dependencies: "DependencyResolver",
        apply_fn: ApplyFn,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.store = store
        self.dependencies = dependencies
        self.apply_fn = apply_fn
        self.max_attempts = max_attempts
        self._sweep_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _sweep_lock(self, device_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._sweep_locks.setdefault(device_id, threading.Lock())

    def enqueue(
        self,
        device_id: str,
        table: SyncTable,
        record: Mapping[str, Any],
        missing: MissingDependencies,
    ) -> QueueEntry:
        entry = QueueEntry(
            device_id=device_id,
            table=table,
            record=dict(record),
            missing=missing,
            max_attempts=self.max_attempts,
        )
        stored = self.store.queue_upsert(entry)
        logger.info(
            "Queued %s/%s for device %s; missing %s",
            table.value, stored.record_id, device_id, missing,
        )
        return stored

    def process_queue(self, device_id: str, limit: int = 100) -> QueueSweepResult:
        """Retry up to ``limit`` queued entries in FIFO order.

        Only one sweep runs per device; a concurrent call returns at once
        with ``skipped`` set.
        """
        result = QueueSweepResult(device_id=device_id)
        lock = self._sweep_lock(device_id)
        if not lock.acquire(blocking=False):
            result.skipped = True
            result.message = "A queue sweep is already running for this device"
            return result

        try:
            for entry in self.store.queue_entries(device_id, QueueStatus.QUEUED, limit):
                current = self.store.queue_get(entry.id)
                if current is None or current.status is not QueueStatus.QUEUED:
                    continue
                result.processed += 1
                self._process_entry(device_id, current, result)
        finally:
            lock.release()

        result.message = (
            f"{len(result.applied)} applied, {len(result.discarded)} discarded, "
            f"{len(result.still_queued)} still queued, "
            f"{len(result.exhausted)} exhausted"
        )
        if result.processed:
            logger.info("Queue sweep for %s: %s", device_id, result.message)
        return result

    def _process_entry(self, device_id: str, entry: QueueEntry, result: QueueSweepResult) -> None:
        missing = self.dependencies.missing_for(entry.table, entry.record)
        if missing:
            self._record_failure(entry, result, f"Missing dependencies: {missing}", missing)
            return

        outcome = self.apply_fn(device_id, entry.table, entry.record)
        if isinstance(outcome, Err):
            self._record_failure(entry, result, outcome.reason, entry.missing)
            return

        self.store.queue_delete(entry.id)
        summary = {
            "id": entry.id,
            "tableName": entry.table.value,
            "recordId": entry.record_id,
        }
        resolution = outcome.value
        if resolution.accepted:
            result.applied.append(summary)
        else:
            # A newer version already won; retrying cannot change that.
            conflict = resolution.conflict
            summary["reason"] = conflict.conflict_type.value if conflict else resolution.message
            result.discarded.append(summary)

    def _record_failure(
        self,
        entry: QueueEntry,
        result: QueueSweepResult,
        reason: str,
        missing: MissingDependencies,
    ) -> None:
        entry.attempts += 1
        entry.missing = missing
        entry.last_error = reason
        entry.last_attempt_at = utcnow()
        summary = {
            "id": entry.id,
            "tableName": entry.table.value,
            "recordId": entry.record_id,
            "attempts": entry.attempts,
            "reason": reason,
        }
        if entry.attempts >= entry.max_attempts:
            entry.status = QueueStatus.EXHAUSTED
            result.exhausted.append(summary)
            logger.warning(
                "Queue entry %s/%s exhausted after %d attempts: %s",
                entry.table.value, entry.record_id, entry.attempts, reason,
            )
        else:
            result.still_queued.append(summary)
        self.store.queue_update(entry)

    def stats(self, device_id: str) -> Dict[str, Any]:
        by_table = self.store.queue_counts(device_id)
        by_status = {status.value: 0 for status in QueueStatus}
        for counts in by_table.values():
            for status, count in counts.items():
                by_status[status] = by_status.get(status, 0) + count
        return {
            "byTable": by_table,
            "byStatus": by_status,
            "totalQueued": by_status[QueueStatus.QUEUED.value],
        }

    def entries(
        self,
        device_id: str,
        status: Optional[QueueStatus] = QueueStatus.QUEUED,
        limit: int = 100,
    ) -> List[QueueEntry]:
        return self.store.queue_entries(device_id, status, limit)

    def reset_exhausted(self, device_id: str, table: Optional[SyncTable] = None) -> int:
        """Give exhausted entries a fresh set of attempts."""
        count = self.store.queue_reset_exhausted(device_id, table)
        if count:
            logger.info("Reset %d exhausted queue entries for %s", count, device_id)
        return count

    def purge_exhausted(self, older_than_days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        return self.store.queue_purge_exhausted(cutoff)


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "QueueEntry",
    "QueueManager",
    "QueueStatus",
    "QueueSweepResult",
]
