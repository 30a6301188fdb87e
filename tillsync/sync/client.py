"""Device-side sync pass: upload local changes, pull other devices' changes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from ..errors import Err, MalformedRecord, Ok, RemoteError, Result, SyncError, TransportError
from ..logging_utils import device_context
from .conflict import ConflictResolver
from .dependencies import DependencyResolver
from .protocol import DEFAULT_RETRY_DELAYS, SyncTransport
from .queue import QueueManager
from .records import Record, SyncStatus, format_timestamp, utcnow
from .store import RecordStore, SyncCursor
from .tables import SYNC_ORDER, SyncTable

logger = logging.getLogger("tillsync.sync.client")


@dataclass
class ClientSettings:
    """Settings for the device-side sync client."""

    enabled: bool = False
    server_url: str = "http://127.0.0.1:8080"
    device_id: str = ""
    database: str = "state/device.db"
    timeout: float = 30
    batch_size: int = 500
    retry_delays: Tuple[float, ...] = DEFAULT_RETRY_DELAYS

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "ClientSettings":
        raw = (config or {}).get("client", {}) or {}
        return cls(
            enabled=bool(raw.get("enabled", False)),
            server_url=str(raw.get("server_url", "http://127.0.0.1:8080")),
            device_id=str(raw.get("device_id", "") or ""),
            database=str(raw.get("database", "state/device.db")),
            timeout=float(raw.get("timeout", 30)),
            batch_size=int(raw.get("batch_size", 500)),
            retry_delays=tuple(raw.get("retry_delays", DEFAULT_RETRY_DELAYS)),
        )


@dataclass
class SyncResult:
    """Result of a sync pass."""

    success: bool
    uploaded: int = 0
    rejected: int = 0
    queued: int = 0
    retryable: int = 0
    downloaded: int = 0
    held: int = 0
    tables: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "uploaded": self.uploaded,
            "rejected": self.rejected,
            "queued": self.queued,
            "retryable": self.retryable,
            "downloaded": self.downloaded,
            "held": self.held,
            "tables": self.tables,
            "errors": self.errors,
            "message": self.message,
        }


class SyncClient:
    """Synchronizes a device's local record store with the sync server.

    Only one pass (upload, download or full) runs at a time; a second call
    while one is in flight returns immediately with ``success=False``.
    Local writes go straight to the store and never wait on a pass.
    """

    def __init__(
        self,
        store: RecordStore,
        device_id: str,
        settings: Optional[ClientSettings] = None,
        transport: Optional[Any] = None,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
    ):
        self.store = store
        self.device_id = device_id
        self.settings = settings or ClientSettings()
        self.transport = transport or SyncTransport(
            self.settings.server_url,
            device_id,
            timeout=self.settings.timeout,
            retry_delays=self.settings.retry_delays,
        )
        self.progress_callback = progress_callback
        self.resolver = ConflictResolver()
        self.dependencies = DependencyResolver(store)
        self.queue = QueueManager(store, self.dependencies, self._apply_remote)
        self.last_sync_at: Optional[str] = None
        self._pass_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Local records
    # ------------------------------------------------------------------

    def save_local(self, table: Union[str, SyncTable], data: Mapping[str, Any]) -> Record:
        """Record a local mutation as PENDING; ``updated_at`` defaults to now."""
        table = SyncTable.parse(table)
        values = dict(data)
        if not values.get("updated_at") and not values.get("updatedAt"):
            values["updated_at"] = format_timestamp(utcnow())
        values["device_id"] = self.device_id
        record = Record.from_dict(values, table=table)
        return self.store.save_local(table, record)

    def pending(self, table: Union[str, SyncTable]) -> List[Record]:
        return self.store.pending(SyncTable.parse(table), self.device_id, self.settings.batch_size)

    def mark_synced(self, table: Union[str, SyncTable], record_ids: List[str]) -> int:
        return self.store.mark_status(SyncTable.parse(table), record_ids, SyncStatus.SYNCED)

    def mark_failed(self, table: Union[str, SyncTable], record_ids: List[str]) -> int:
        return self.store.mark_status(SyncTable.parse(table), record_ids, SyncStatus.FAILED)

    def reset_failed(self, table: Optional[str] = None) -> int:
        """Operator action: move FAILED rows back to PENDING."""
        count = self.store.reset_failed(self.device_id, SyncTable.parse(table) if table else None)
        if count:
            logger.info("Reset %d failed record(s) to PENDING", count)
        return count

    def statistics(self) -> Dict[str, Dict[str, int]]:
        return self.store.statistics(self.device_id)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _busy(self) -> SyncResult:
        return SyncResult(success=False, message="Sync already in progress")

    def _run_pass(self, *steps: Callable[[SyncResult], None]) -> SyncResult:
        # One pass at a time per device.
        if not self._pass_lock.acquire(blocking=False):
            return self._busy()
        try:
            with device_context(self.device_id):
                result = SyncResult(success=True)
                for step in steps:
                    step(result)
                self._finish(result)
                return result
        finally:
            self._pass_lock.release()

    def upload_pending(self) -> SyncResult:
        return self._run_pass(self._upload_all)

    def download_new(self) -> SyncResult:
        return self._run_pass(self._download_all)

    def full_sync(self) -> SyncResult:
        """Upload every tier, then download every tier."""
        return self._run_pass(self._upload_all, self._download_all)

    def _finish(self, result: SyncResult) -> None:
        result.success = not result.errors
        if result.success:
            self.last_sync_at = format_timestamp(utcnow())
        result.message = (
            f"{result.uploaded} uploaded, {result.rejected} rejected, {result.queued} queued "
            f"on server; {result.downloaded} downloaded, {result.held} held locally"
        )
        logger.info("Sync pass finished: %s", result.message)

    def _upload_all(self, result: SyncResult) -> None:
        total = len(SYNC_ORDER)
        for index, table in enumerate(SYNC_ORDER, start=1):
            self._report_progress(f"Uploading {table.value}", index, total)
            try:
                summary = self.upload_table(table)
            except SyncError as exc:
                logger.error("Upload of %s failed: %s", table.value, exc.message)
                result.errors.append(f"upload {table.value}: {exc.message}")
                continue
            result.tables.setdefault(table.value, {})["upload"] = summary
            result.uploaded += summary["accepted"]
            result.rejected += summary["rejected"]
            result.queued += summary["queued"]
            result.retryable += summary["retryable"]

        if result.queued:
            try:
                self.transport.process_queue()
            except SyncError as exc:
                logger.warning("Server queue sweep request failed: %s", exc.message)

    def upload_table(self, table: SyncTable) -> Dict[str, int]:
        """Upload this device's PENDING rows of one table in batches.

        Accepted rows become SYNCED. Rejected rows, and rows the server gave
        up on (queue entry EXHAUSTED), become FAILED. Rows the server queued
        or deferred after a storage error stay PENDING and are re-sent on a
        later pass. A transport failure marks the batch FAILED and re-raises.
        """
        summary = {"accepted": 0, "rejected": 0, "queued": 0, "retryable": 0}
        held: Set[str] = set()
        batch_size = self.settings.batch_size
        while True:
            candidates = self.store.pending(table, self.device_id, batch_size + len(held))
            batch = [record for record in candidates if record.id not in held][:batch_size]
            if not batch:
                return summary

            payload = []
            for record in batch:
                data = record.to_dict()
                data.pop("server_updated_at", None)
                payload.append(data)

            try:
                response = self.transport.upload(table.value, payload)
            except (TransportError, RemoteError):
                self.mark_failed(table, [record.id for record in batch])
                raise

            accepted = [str(rid) for rid in response.get("accepted", [])]
            rejected = [str(item["id"]) for item in response.get("rejected", []) if item.get("id")]
            queued: List[str] = []
            for item in response.get("queued", []):
                if not item.get("id"):
                    continue
                if item.get("queueStatus") == "EXHAUSTED":
                    # The server stopped retrying; only an operator reset revives it.
                    logger.info("Server gave up on %s/%s", table.value, item["id"])
                    rejected.append(str(item["id"]))
                else:
                    queued.append(str(item["id"]))
            retryable = [str(item["id"]) for item in response.get("retryable", []) if item.get("id")]
            self.mark_synced(table, accepted)
            self.mark_failed(table, rejected)
            for item in response.get("rejected", []):
                logger.info("Server rejected %s/%s: %s", table.value, item.get("id"), item.get("reason"))
            held.update(queued)
            held.update(retryable)

            summary["accepted"] += len(accepted)
            summary["rejected"] += len(rejected)
            summary["queued"] += len(queued)
            summary["retryable"] += len(retryable)
            if len(batch) < batch_size:
                return summary

    def _download_all(self, result: SyncResult) -> None:
        total = len(SYNC_ORDER)
        for index, table in enumerate(SYNC_ORDER, start=1):
            self._report_progress(f"Downloading {table.value}", index, total)
            try:
                summary = self.download_table(table)
            except SyncError as exc:
                logger.error("Download of %s failed: %s", table.value, exc.message)
                result.errors.append(f"download {table.value}: {exc.message}")
                continue
            result.tables.setdefault(table.value, {})["download"] = summary
            result.downloaded += summary["downloaded"]
            result.held += summary["held"]

        sweep = self.queue.process_queue(self.device_id)
        if sweep.applied:
            logger.info("Applied %d held record(s) after download", len(sweep.applied))

    def download_table(self, table: SyncTable) -> Dict[str, int]:
        """Pull pages after the stored cursor until the server reports no more."""
        summary = {"downloaded": 0, "applied": 0, "conflicts": 0, "held": 0}
        cursor = self.store.get_cursor(self.device_id, table)
        while True:
            page = self.transport.download(
                table.value,
                cursor=cursor.encode() if cursor else None,
                limit=self.settings.batch_size,
            )
            records = page.get("records", [])
            summary["downloaded"] += len(records)
            self._apply_page(table, records, summary)

            next_cursor = page.get("nextCursor")
            if next_cursor:
                cursor = self.store.save_cursor(self.device_id, table, SyncCursor.decode(next_cursor))
            if not page.get("hasMore") or not records:
                return summary

    def _apply_page(self, table: SyncTable, records: List[Dict[str, Any]], summary: Dict[str, int]) -> None:
        waiting: List[Record] = []
        for data in records:
            try:
                record = Record.from_dict(data, table=table)
            except MalformedRecord as exc:
                logger.warning("Skipping malformed %s record from server: %s", table.value, exc.message)
                continue
            if self.dependencies.missing_for(table, record):
                waiting.append(record)
            else:
                self._count(self._apply_remote(record.device_id, table, data), summary)

        if not waiting:
            return

        self._fetch_dependencies(table, [record.id for record in waiting])
        for record in waiting:
            missing = self.dependencies.missing_for(table, record)
            if missing:
                self.queue.enqueue(self.device_id, table, record.to_dict(), missing)
                summary["held"] += 1
            else:
                self._count(self._apply_remote(record.device_id, table, record.to_dict()), summary)

    def _fetch_dependencies(self, table: SyncTable, record_ids: List[str]) -> None:
        try:
            response = self.transport.fetch_dependencies(table.value, record_ids)
        except SyncError as exc:
            logger.warning("Could not fetch dependencies for %s: %s", table.value, exc.message)
            return

        fetched = response.get("dependencies", {}) or {}
        for table_name in sorted(fetched, key=lambda name: SyncTable.parse(name).tier):
            dep_table = SyncTable.parse(table_name)
            for data in fetched[table_name]:
                outcome = self._apply_remote(str(data.get("device_id", "")), dep_table, data)
                if isinstance(outcome, Err):
                    logger.warning("Could not apply fetched %s record: %s", table_name, outcome.reason)

    def _apply_remote(self, device_id: str, table: SyncTable, data: Mapping[str, Any]) -> Result:
        """Write a record that came from the server, through last-write-wins."""
        try:
            record = Record.from_dict(data, table=table, device_id=device_id or None)
            resolution = self.store.apply(table, record, self.resolver, device_id=self.device_id)
        except MalformedRecord as exc:
            return Err.from_exception(exc)
        # A held copy of this record is now stale.
        self.store.queue_discard(self.device_id, table, record.id)
        return Ok(resolution)

    @staticmethod
    def _count(outcome: Result, summary: Dict[str, int]) -> None:
        if isinstance(outcome, Ok) and outcome.value.accepted:
            summary["applied"] += 1
        elif isinstance(outcome, Ok):
            summary["conflicts"] += 1

    def _report_progress(self, message: str, current: int, total: int) -> None:
        """Report progress if callback is configured."""
        if self.progress_callback:
            self.progress_callback(message, current, total)
        logger.debug("Sync progress: %s (%d/%d)", message, current, total)

    def get_status(self) -> Dict[str, Any]:
        """Get current sync status."""
        stats = self.statistics()
        return {
            "enabled": self.settings.enabled,
            "server_url": self.settings.server_url or "(not configured)",
            "device_id": self.device_id,
            "last_sync": self.last_sync_at,
            "in_progress": self._pass_lock.locked(),
            "pending": sum(bucket["PENDING"] for bucket in stats.values()),
            "failed": sum(bucket["FAILED"] for bucket in stats.values()),
            "held": self.queue.stats(self.device_id)["totalQueued"],
            "statistics": stats,
        }


__all__ = ["ClientSettings", "SyncClient", "SyncResult"]
