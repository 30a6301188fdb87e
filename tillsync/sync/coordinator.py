"""Server-side orchestration of upload, download and batch passes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..errors import (
    ConflictError,
    Err,
    MalformedRecord,
    NotFoundError,
    Ok,
    Result,
    TransientStoreError,
    ValidationError,
)
from .conflict import ConflictResolution, ConflictResolver
from .dependencies import DependencyResolver
from .queue import DEFAULT_MAX_ATTEMPTS, QueueManager, QueueStatus, QueueSweepResult
from .records import Record, format_timestamp, parse_timestamp, utcnow
from .store import RecordStore, SyncCursor
from .tables import SYNC_ORDER, SyncTable, order_tables

logger = logging.getLogger("tillsync.sync.coordinator")


@dataclass
class SyncSettings:
    """Limits applied by the coordinator."""

    max_upload_batch: int = 1000
    download_limit: int = 500
    max_download_limit: int = 1000
    batch_download_limit: int = 100
    max_batch_download_limit: int = 500
    max_dependency_fetch: int = 100
    max_clock_skew_seconds: int = 300
    queue_max_attempts: int = DEFAULT_MAX_ATTEMPTS

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "SyncSettings":
        raw = (config or {}).get("sync", {}) or {}
        defaults = cls()
        return cls(
            max_upload_batch=int(raw.get("max_upload_batch", defaults.max_upload_batch)),
            download_limit=int(raw.get("download_limit", defaults.download_limit)),
            max_download_limit=int(raw.get("max_download_limit", defaults.max_download_limit)),
            batch_download_limit=int(raw.get("batch_download_limit", defaults.batch_download_limit)),
            max_batch_download_limit=int(
                raw.get("max_batch_download_limit", defaults.max_batch_download_limit)
            ),
            max_dependency_fetch=int(raw.get("max_dependency_fetch", defaults.max_dependency_fetch)),
            max_clock_skew_seconds=int(
                raw.get("max_clock_skew_seconds", defaults.max_clock_skew_seconds)
            ),
            queue_max_attempts=int(raw.get("queue_max_attempts", defaults.queue_max_attempts)),
        )


@dataclass
class UploadResult:
    """Per-record outcome of one table upload.

    ``retryable`` holds records that hit a transient storage error; the
    device keeps them PENDING and sends them again on its next pass.
    """

    table: SyncTable
    total: int = 0
    accepted: List[str] = field(default_factory=list)
    accepted_details: List[Dict[str, Any]] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    queued: List[Dict[str, Any]] = field(default_factory=list)
    retryable: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.rejected and not self.retryable:
            return "SUCCESS"
        if self.accepted or self.queued:
            return "PARTIAL"
        return "FAILED"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tableName": self.table.value,
            "total": self.total,
            "acceptedCount": len(self.accepted),
            "rejectedCount": len(self.rejected),
            "queuedCount": len(self.queued),
            "retryableCount": len(self.retryable),
            "accepted": self.accepted,
            "acceptedDetails": self.accepted_details,
            "rejected": self.rejected,
            "queued": self.queued,
            "retryable": self.retryable,
        }


@dataclass
class DownloadResult:
    """One page of records from other devices."""

    table: SyncTable
    records: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tableName": self.table.value,
            "records": self.records,
            "count": len(self.records),
            "hasMore": self.has_more,
            "nextCursor": self.next_cursor,
        }


def parse_limit(value: Any, default: int, maximum: int, name: str = "limit") -> int:
    """Coerce a query/body limit, rejecting values outside ``1..maximum``."""
    if value in (None, ""):
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", [{"field": name, "value": value}])
    if limit < 1 or limit > maximum:
        raise ValidationError(
            f"{name} must be between 1 and {maximum}",
            [{"field": name, "value": value}],
        )
    return limit


def parse_since(value: Any, name: str = "since") -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        return format_timestamp(parse_timestamp(value))
    except (TypeError, ValueError):
        raise ValidationError(
            f"{name} must be an ISO-8601 timestamp",
            [{"field": name, "value": value}],
        )


def _conflict_item(record_id: str, resolution: ConflictResolution) -> Dict[str, Any]:
    """Rejected-list entry for a version that lost last-write-wins."""
    conflict = resolution.conflict
    kind = conflict.conflict_type.value if conflict else "CONFLICT"
    report = ConflictError(f"{kind}: {resolution.message}")
    return {
        "id": record_id,
        "error": report.name,
        "reason": report.message,
        "conflictId": conflict.id if conflict else None,
    }


class SyncCoordinator:
    """Applies uploads, serves downloads, and drives the retry queue.

    Holds no per-call state of its own; everything durable lives in the
    record store.
    """

    def __init__(self, store: RecordStore, settings: Optional[SyncSettings] = None):
        self.store = store
        self.settings = settings or SyncSettings()
        self.resolver = ConflictResolver()
        self.dependencies = DependencyResolver(store)
        self.queue = QueueManager(
            store,
            self.dependencies,
            self.apply_record,
            max_attempts=self.settings.queue_max_attempts,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def apply_record(self, device_id: str, table: SyncTable, data: Mapping[str, Any]) -> Result:
        """Validate one record and run it through the conflict resolver."""
        try:
            record = Record.from_dict(data, table=table, device_id=device_id)
            return Ok(self.store.apply(table, record, self.resolver, device_id=device_id))
        except MalformedRecord as exc:
            return Err.from_exception(exc)

    def upload(
        self,
        device_id: str,
        table: Union[str, SyncTable],
        records: Any,
    ) -> UploadResult:
        table = SyncTable.parse(table)
        if not isinstance(records, list) or not records:
            raise ValidationError(
                f"Records must be an array with 1-{self.settings.max_upload_batch} items",
                [{"field": "records"}],
            )
        if len(records) > self.settings.max_upload_batch:
            raise ValidationError(
                f"Upload batch of {len(records)} exceeds the limit of "
                f"{self.settings.max_upload_batch} records",
                [{"field": "records", "value": len(records)}],
            )

        self.store.register_device(device_id)
        result = self._upload(device_id, table, records)
        self.store.log_operation(device_id, table, len(records), "UPLOAD", result.status)
        logger.info(
            "Upload from %s: %s accepted=%d rejected=%d queued=%d",
            device_id, table.value, len(result.accepted), len(result.rejected), len(result.queued),
        )
        return result

    def _upload(self, device_id: str, table: SyncTable, records: List[Any]) -> UploadResult:
        result = UploadResult(table=table, total=len(records))
        for raw in records:
            raw_id = raw.get("id") if isinstance(raw, Mapping) else None
            try:
                record = Record.from_dict(raw, table=table, device_id=device_id)
            except MalformedRecord as exc:
                outcome = Err.from_exception(exc)
                result.rejected.append({"id": raw_id, "error": outcome.kind, "reason": outcome.reason})
                continue

            try:
                missing = self.dependencies.missing_for(table, record)
                if missing:
                    entry = self.queue.enqueue(device_id, table, record.to_dict(), missing)
                    result.queued.append({
                        "id": record.id,
                        "missingDependencies": missing,
                        "queueStatus": entry.status.value,
                    })
                    continue

                outcome = self.apply_record(device_id, table, record.to_dict())
                if isinstance(outcome, Ok):
                    # The version just resolved supersedes any copy still queued.
                    self.store.queue_discard(device_id, table, record.id)
            except TransientStoreError as exc:
                logger.warning("Deferring %s record %s: %s", table.value, record.id, exc.message)
                result.retryable.append({"id": record.id, "error": exc.name, "reason": exc.message})
                continue
            except Exception as exc:
                logger.exception("Failed to sync %s record %s", table.value, record.id)
                outcome = Err.from_exception(exc)

            if isinstance(outcome, Err):
                result.rejected.append({"id": record.id, "error": outcome.kind, "reason": outcome.reason})
                continue

            resolution = outcome.value
            if resolution.accepted:
                result.accepted.append(record.id)
                result.accepted_details.append({
                    "id": record.id,
                    "action": resolution.action.value,
                    "serverUpdatedAt": resolution.record.server_updated_at,
                })
            else:
                result.rejected.append(_conflict_item(record.id, resolution))
        return result

    def batch_upload(self, device_id: str, tables: Any) -> Dict[str, Any]:
        """Upload several tables, always in ascending tier order."""
        if not isinstance(tables, Mapping) or not tables:
            raise ValidationError("tables must be an object with table names as keys")
        ordered = order_tables(tables.keys())
        payloads = {SyncTable.parse(name): value for name, value in tables.items()}
        for table, records in payloads.items():
            if not isinstance(records, list):
                raise ValidationError(
                    f"tables.{table.value} must be an array of records",
                    [{"field": f"tables.{table.value}"}],
                )

        results: Dict[str, Any] = {}
        totals = {"accepted": 0, "rejected": 0, "queued": 0, "retryable": 0}
        for table in ordered:
            records = payloads[table]
            if not records:
                upload = UploadResult(table=table)
            else:
                upload = self.upload(device_id, table, records)
            results[table.value] = upload.to_dict()
            totals["accepted"] += len(upload.accepted)
            totals["rejected"] += len(upload.rejected)
            totals["queued"] += len(upload.queued)
            totals["retryable"] += len(upload.retryable)

        return {
            "results": results,
            "order": [table.value for table in ordered],
            "totalAccepted": totals["accepted"],
            "totalRejected": totals["rejected"],
            "totalQueued": totals["queued"],
            "totalRetryable": totals["retryable"],
            "tablesProcessed": len(results),
        }

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def download(
        self,
        device_id: str,
        table: Union[str, SyncTable],
        since: Any = None,
        limit: Any = None,
        cursor: Optional[str] = None,
    ) -> DownloadResult:
        """Records from other devices strictly after ``cursor``/``since``."""
        table = SyncTable.parse(table)
        page_size = parse_limit(limit, self.settings.download_limit, self.settings.max_download_limit)
        since_mark = parse_since(since)
        after = SyncCursor.decode(cursor) if cursor else None

        rows = self.store.changes_since(
            table,
            exclude_device=device_id,
            since=since_mark,
            after=after,
            limit=page_size + 1,
        )
        has_more = len(rows) > page_size
        rows = rows[:page_size]

        if rows:
            next_cursor: Optional[SyncCursor] = SyncCursor.from_record(rows[-1])
        elif after is not None:
            next_cursor = after
        elif since_mark:
            next_cursor = SyncCursor(watermark=since_mark)
        else:
            next_cursor = None

        self.store.register_device(device_id)
        if next_cursor is not None:
            self.store.save_cursor(device_id, table, next_cursor)
        self.store.log_operation(device_id, table, len(rows), "DOWNLOAD", "SUCCESS")
        logger.info(
            "Download for %s: %s returned %d record(s)%s",
            device_id, table.value, len(rows), " (more available)" if has_more else "",
        )
        return DownloadResult(
            table=table,
            records=[row.to_dict() for row in rows],
            has_more=has_more,
            next_cursor=next_cursor.encode() if next_cursor else None,
        )

    def batch_download(
        self,
        device_id: str,
        tables: Union[None, str, Iterable[str]] = None,
        since: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        """Download several tables in ascending tier order."""
        if isinstance(tables, str):
            names = [name for name in tables.split(",") if name.strip()]
        else:
            names = list(tables or [])
        ordered = order_tables(names) if names else list(SYNC_ORDER)
        page_size = parse_limit(
            limit, self.settings.batch_download_limit, self.settings.max_batch_download_limit
        )

        results: Dict[str, Any] = {}
        total = 0
        for table in ordered:
            page = self.download(device_id, table, since=since, limit=page_size)
            results[table.value] = page.to_dict()
            total += len(page.records)

        return {
            "results": results,
            "order": [table.value for table in ordered],
            "totalRecords": total,
            "tablesProcessed": len(results),
        }

    # ------------------------------------------------------------------
    # Status, queue, conflicts, dependencies
    # ------------------------------------------------------------------

    def device_status(self, device_id: str) -> Dict[str, Any]:
        queue = self.queue.stats(device_id)
        return {
            "device": self.store.get_device(device_id),
            "records": self.store.statistics(device_id),
            "queue": queue,
            "totalQueued": queue["totalQueued"],
            "cursors": self.store.cursors(device_id),
            "recentOperations": self.store.recent_operations(device_id, limit=10),
        }

    def queue_status(self, device_id: str, limit: Any = None) -> Dict[str, Any]:
        page_size = parse_limit(limit, 50, 500)
        stats = self.queue.stats(device_id)
        stats["entries"] = [
            entry.to_dict() for entry in self.queue.entries(device_id, status=None, limit=page_size)
        ]
        return stats

    def process_queue(self, device_id: str, limit: Any = None) -> QueueSweepResult:
        return self.queue.process_queue(device_id, parse_limit(limit, 100, 1000))

    def reset_queue(self, device_id: str, table: Optional[str] = None) -> int:
        return self.queue.reset_exhausted(device_id, SyncTable.parse(table) if table else None)

    def conflicts(
        self, device_id: Optional[str], limit: Any = None, since: Any = None
    ) -> List[Dict[str, Any]]:
        page_size = parse_limit(limit, 50, 100)
        return [
            conflict.to_dict()
            for conflict in self.store.conflicts(device_id, limit=page_size, since=parse_since(since))
        ]

    def fetch_dependencies(self, table: Union[str, SyncTable], record_ids: Any) -> Dict[str, Any]:
        table = SyncTable.parse(table)
        ids = self._validate_ids(record_ids, "recordIds")
        existing, missing = self.dependencies.check_ids(table, ids)
        if not existing:
            raise NotFoundError(
                f"None of the requested {table.value} records exist",
                [{"field": "recordIds", "value": missing}],
            )
        return self.dependencies.fetch(table, existing)

    def check_dependencies(self, table: Union[str, SyncTable], ids: Any) -> Dict[str, Any]:
        table = SyncTable.parse(table)
        if isinstance(ids, str):
            ids = [part.strip() for part in ids.split(",") if part.strip()]
        return self.dependencies.check(table, self._validate_ids(ids, "ids")).to_dict()

    def dependency_info(self, table: Union[str, SyncTable]) -> Dict[str, Any]:
        return self.dependencies.info(table)

    def _validate_ids(self, ids: Any, name: str) -> List[str]:
        limit = self.settings.max_dependency_fetch
        if not isinstance(ids, list) or not ids or len(ids) > limit:
            raise ValidationError(
                f"{name} must be an array with 1-{limit} items", [{"field": name}]
            )
        if not all(isinstance(rid, str) and rid.strip() for rid in ids):
            raise ValidationError(f"Each entry of {name} must be a non-empty string", [{"field": name}])
        return [rid.strip() for rid in ids]

    def health_stats(self) -> Dict[str, Any]:
        queue_counts: Dict[str, int] = {status.value.lower(): 0 for status in QueueStatus}
        for counts in self.store.queue_counts().values():
            for status, count in counts.items():
                queue_counts[status.lower()] = queue_counts.get(status.lower(), 0) + count
        day_ago = format_timestamp(utcnow() - timedelta(hours=24))
        return {
            "tables": self.store.table_counts(),
            "devices": self.store.device_count(),
            "syncQueue": queue_counts,
            "conflicts24h": self.store.conflict_counts(since=day_ago),
        }


__all__ = [
    "DownloadResult",
    "SyncCoordinator",
    "SyncSettings",
    "UploadResult",
    "parse_limit",
    "parse_since",
]
