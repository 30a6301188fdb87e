"""Durable record store backed by SQLite.

The same store serves both roles in the system: the server's authoritative
copy of every table, and each device's local replica with its per-row sync
status. Queue entries, conflict records, cursors, the device registry and the
operation log live in the same database so a restart loses no sync progress.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Union

from ..errors import TransientStoreError, ValidationError
from .conflict import ConflictRecord, ConflictResolution, ConflictResolver, ResolutionAction
from .queue import QueueEntry, QueueStatus
from .records import Record, SyncStatus, format_timestamp, parse_timestamp, utcnow
from .tables import SYNC_ORDER, SyncTable

logger = logging.getLogger("tillsync.sync.store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    table_name TEXT NOT NULL,
    id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    server_updated_at TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK(sync_status IN ('PENDING', 'SYNCED', 'FAILED')),
    payload TEXT NOT NULL,
    PRIMARY KEY (table_name, id)
);
CREATE INDEX IF NOT EXISTS idx_records_watermark
    ON records(table_name, server_updated_at, id);
CREATE INDEX IF NOT EXISTS idx_records_status
    ON records(table_name, device_id, sync_status);

CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    missing_dependencies TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'QUEUED' CHECK(status IN ('QUEUED', 'EXHAUSTED')),
    last_error TEXT,
    enqueued_at TEXT NOT NULL,
    last_attempt_at TEXT,
    UNIQUE(device_id, table_name, record_id)
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_device_status
    ON sync_queue(device_id, status, enqueued_at);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    incoming_updated_at TEXT NOT NULL,
    existing_updated_at TEXT NOT NULL,
    incoming TEXT NOT NULL,
    existing TEXT NOT NULL,
    winner TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_device
    ON sync_conflicts(device_id, created_at);

CREATE TABLE IF NOT EXISTS sync_cursors (
    device_id TEXT NOT NULL,
    table_name TEXT NOT NULL,
    cursor TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (device_id, table_name)
);

CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    name TEXT,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    table_name TEXT NOT NULL,
    record_count INTEGER NOT NULL,
    sync_type TEXT NOT NULL CHECK(sync_type IN ('UPLOAD', 'DOWNLOAD')),
    status TEXT NOT NULL CHECK(status IN ('SUCCESS', 'FAILED', 'PARTIAL')),
    error_message TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_operations_device
    ON sync_operations(device_id, created_at);
"""

_RECORD_COLUMNS = "id, device_id, updated_at, server_updated_at, sync_status, payload"


@dataclass(frozen=True, order=True)
class SyncCursor:
    """Download watermark: the last ``(server_updated_at, id)`` delivered."""

    watermark: str
    record_id: str = ""

    def encode(self) -> str:
        return f"{self.watermark}|{self.record_id}"

    @classmethod
    def decode(cls, raw: str) -> "SyncCursor":
        """Parse an encoded cursor. A bare ISO-8601 timestamp is also accepted."""
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError("cursor must be a non-empty string")
        stamp, _, record_id = raw.strip().partition("|")
        try:
            watermark = format_timestamp(parse_timestamp(stamp))
        except ValueError:
            raise ValidationError(f"cursor is not valid: {raw!r}")
        return cls(watermark=watermark, record_id=record_id)

    @classmethod
    def from_record(cls, record: Record) -> "SyncCursor":
        return cls(watermark=record.server_updated_at or "", record_id=record.id)


class RecordStore:
    """SQLite-backed store for synchronized records and sync bookkeeping.

    All mutations run under one re-entrant lock inside a transaction, which
    makes each read-compare-write on a record a single atomic step.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._last_watermark = ""

    def initialize(self) -> "RecordStore":
        """Open the database and create tables."""
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

        row = self._conn.execute("SELECT MAX(server_updated_at) FROM records").fetchone()
        self._last_watermark = row[0] or ""
        logger.info("Record store ready at %s", self.db_path)
        return self

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        if not self._conn:
            raise RuntimeError("Store not initialized")
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                raise TransientStoreError(f"Storage error: {exc}") from exc
            except BaseException:
                self._conn.rollback()
                raise

    def _next_watermark(self) -> str:
        """Strictly increasing server timestamp; call with the lock held."""
        now = utcnow()
        candidate = format_timestamp(now)
        if candidate <= self._last_watermark:
            candidate = format_timestamp(
                parse_timestamp(self._last_watermark) + timedelta(microseconds=1)
            )
        self._last_watermark = candidate
        return candidate

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            device_id=row["device_id"],
            updated_at=parse_timestamp(row["updated_at"]),
            payload=json.loads(row["payload"]),
            sync_status=SyncStatus(row["sync_status"]),
            server_updated_at=row["server_updated_at"],
        )

    def _write(self, cur: sqlite3.Cursor, table: SyncTable, record: Record, status: SyncStatus) -> Record:
        watermark = self._next_watermark()
        cur.execute(
            f"""
            INSERT INTO records (table_name, {_RECORD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(table_name, id) DO UPDATE SET
                device_id = excluded.device_id,
                updated_at = excluded.updated_at,
                server_updated_at = excluded.server_updated_at,
                sync_status = excluded.sync_status,
                payload = excluded.payload
            """,
            (
                table.value,
                record.id,
                record.device_id,
                format_timestamp(record.updated_at),
                watermark,
                status.value,
                json.dumps(record.payload, sort_keys=True, default=str),
            ),
        )
        return Record(
            id=record.id,
            device_id=record.device_id,
            updated_at=record.updated_at,
            payload=dict(record.payload),
            sync_status=status,
            server_updated_at=watermark,
        )

    def get(self, table: SyncTable, record_id: str) -> Optional[Record]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE table_name = ? AND id = ?",
                (table.value, record_id),
            )
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def get_many(self, table: SyncTable, record_ids: Sequence[str]) -> List[Record]:
        ids = list(dict.fromkeys(str(rid) for rid in record_ids if rid))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records "
                f"WHERE table_name = ? AND id IN ({placeholders}) ORDER BY id",
                (table.value, *ids),
            )
            rows = cur.fetchall()
        return [self._row_to_record(row) for row in rows]

    def existing_ids(self, table: SyncTable, record_ids: Iterable[str]) -> Set[str]:
        ids = list(dict.fromkeys(str(rid) for rid in record_ids if rid))
        if not ids:
            return set()
        placeholders = ", ".join("?" for _ in ids)
        with self._transaction() as cur:
            cur.execute(
                f"SELECT id FROM records WHERE table_name = ? AND id IN ({placeholders})",
                (table.value, *ids),
            )
            return {row["id"] for row in cur.fetchall()}

    def apply(
        self,
        table: SyncTable,
        record: Record,
        resolver: ConflictResolver,
        device_id: Optional[str] = None,
        status: SyncStatus = SyncStatus.SYNCED,
    ) -> ConflictResolution:
        """Compare-and-swap ``record`` against the stored copy.

        The read, the resolver decision, and the write (or conflict insert)
        happen in one locked transaction.
        """
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE table_name = ? AND id = ?",
                (table.value, record.id),
            )
            row = cur.fetchone()
            existing = self._row_to_record(row) if row else None
            resolution = resolver.resolve(table, record, existing, device_id=device_id)

            if resolution.action in (ResolutionAction.INSERT, ResolutionAction.OVERWRITE):
                resolution.record = self._write(cur, table, record, status)
            elif resolution.conflict is not None:
                self._insert_conflict(cur, resolution.conflict)
            return resolution

    def save_local(self, table: SyncTable, record: Record) -> Record:
        """Local mutation on a device: store unconditionally as PENDING."""
        with self._transaction() as cur:
            return self._write(cur, table, record, SyncStatus.PENDING)

    def changes_since(
        self,
        table: SyncTable,
        exclude_device: Optional[str] = None,
        since: Optional[str] = None,
        after: Optional[SyncCursor] = None,
        limit: int = 500,
    ) -> List[Record]:
        """Records ordered by ``(server_updated_at, id)`` past the given bounds."""
        clauses = ["table_name = ?"]
        params: List[Any] = [table.value]
        if exclude_device:
            clauses.append("device_id != ?")
            params.append(exclude_device)
        if since:
            clauses.append("server_updated_at > ?")
            params.append(since)
        if after is not None:
            clauses.append("(server_updated_at > ? OR (server_updated_at = ? AND id > ?))")
            params.extend([after.watermark, after.watermark, after.record_id])
        params.append(int(limit))

        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE {' AND '.join(clauses)} "
                "ORDER BY server_updated_at ASC, id ASC LIMIT ?",
                params,
            )
            rows = cur.fetchall()
        return [self._row_to_record(row) for row in rows]

    def pending(self, table: SyncTable, device_id: str, limit: int = 500) -> List[Record]:
        """Locally created rows still waiting for upload."""
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records "
                "WHERE table_name = ? AND device_id = ? AND sync_status = 'PENDING' "
                "ORDER BY server_updated_at ASC, id ASC LIMIT ?",
                (table.value, device_id, int(limit)),
            )
            rows = cur.fetchall()
        return [self._row_to_record(row) for row in rows]

    def mark_status(self, table: SyncTable, record_ids: Iterable[str], status: SyncStatus) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        changed = 0
        with self._transaction() as cur:
            for record_id in ids:
                cur.execute(
                    "UPDATE records SET sync_status = ? WHERE table_name = ? AND id = ?",
                    (status.value, table.value, record_id),
                )
                changed += cur.rowcount
        return changed

    def reset_failed(self, device_id: str, table: Optional[SyncTable] = None) -> int:
        """Move FAILED rows back to PENDING for another upload attempt."""
        query = (
            "UPDATE records SET sync_status = 'PENDING' "
            "WHERE device_id = ? AND sync_status = 'FAILED'"
        )
        params: List[Any] = [device_id]
        if table is not None:
            query += " AND table_name = ?"
            params.append(table.value)
        with self._transaction() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def statistics(self, device_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Per-table counts by sync status."""
        stats = {
            table.value: {"PENDING": 0, "SYNCED": 0, "FAILED": 0, "TOTAL": 0}
            for table in SYNC_ORDER
        }
        query = "SELECT table_name, sync_status, COUNT(*) AS count FROM records"
        params: List[Any] = []
        if device_id:
            query += " WHERE device_id = ?"
            params.append(device_id)
        query += " GROUP BY table_name, sync_status"
        with self._transaction() as cur:
            cur.execute(query, params)
            for row in cur.fetchall():
                bucket = stats.setdefault(
                    row["table_name"], {"PENDING": 0, "SYNCED": 0, "FAILED": 0, "TOTAL": 0}
                )
                bucket[row["sync_status"]] = row["count"]
                bucket["TOTAL"] += row["count"]
        return stats

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_conflict(cur: sqlite3.Cursor, conflict: ConflictRecord) -> None:
        data = conflict.to_dict()
        cur.execute(
            """
            INSERT INTO sync_conflicts (
                id, device_id, table_name, record_id, conflict_type,
                incoming_updated_at, existing_updated_at, incoming, existing,
                winner, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["id"],
                data["device_id"],
                data["table_name"],
                data["record_id"],
                data["conflict_type"],
                data["incoming_updated_at"],
                data["existing_updated_at"],
                json.dumps(data["incoming"], default=str),
                json.dumps(data["existing"], default=str),
                data["winner"],
                data["created_at"],
            ),
        )

    def conflicts(
        self,
        device_id: Optional[str] = None,
        limit: int = 50,
        since: Optional[str] = None,
    ) -> List[ConflictRecord]:
        """Most recent conflicts first."""
        clauses: List[str] = []
        params: List[Any] = []
        if device_id:
            clauses.append("device_id = ?")
            params.append(device_id)
        if since:
            clauses.append("created_at > ?")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self._transaction() as cur:
            cur.execute(
                f"SELECT * FROM sync_conflicts {where} ORDER BY created_at DESC, id LIMIT ?",
                params,
            )
            rows = cur.fetchall()
        return [
            ConflictRecord(
                id=row["id"],
                table=SyncTable(row["table_name"]),
                record_id=row["record_id"],
                device_id=row["device_id"],
                conflict_type=row["conflict_type"],
                incoming_updated_at=parse_timestamp(row["incoming_updated_at"]),
                existing_updated_at=parse_timestamp(row["existing_updated_at"]),
                incoming=json.loads(row["incoming"]),
                existing=json.loads(row["existing"]),
                winner=row["winner"],
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    def conflict_counts(self, since: Optional[str] = None) -> Dict[str, int]:
        query = "SELECT conflict_type, COUNT(*) AS count FROM sync_conflicts"
        params: List[Any] = []
        if since:
            query += " WHERE created_at > ?"
            params.append(since)
        query += " GROUP BY conflict_type"
        with self._transaction() as cur:
            cur.execute(query, params)
            return {row["conflict_type"]: row["count"] for row in cur.fetchall()}

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            device_id=row["device_id"],
            table=SyncTable(row["table_name"]),
            record=json.loads(row["payload"]),
            missing=json.loads(row["missing_dependencies"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            status=QueueStatus(row["status"]),
            last_error=row["last_error"],
            enqueued_at=parse_timestamp(row["enqueued_at"]),
            last_attempt_at=(
                parse_timestamp(row["last_attempt_at"]) if row["last_attempt_at"] else None
            ),
        )

    def queue_upsert(self, entry: QueueEntry) -> QueueEntry:
        """Insert an entry, or refresh the payload of the one already queued.

        Re-queuing keeps the first enqueue time (FIFO position) and the
        attempt count; an exhausted entry stays exhausted.
        """
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO sync_queue (
                    id, device_id, table_name, record_id, payload,
                    missing_dependencies, attempts, max_attempts, status,
                    last_error, enqueued_at, last_attempt_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id, table_name, record_id) DO UPDATE SET
                    payload = excluded.payload,
                    missing_dependencies = excluded.missing_dependencies
                """,
                (
                    entry.id,
                    entry.device_id,
                    entry.table.value,
                    entry.record_id,
                    json.dumps(entry.record, default=str),
                    json.dumps(entry.missing),
                    entry.attempts,
                    entry.max_attempts,
                    entry.status.value,
                    entry.last_error,
                    format_timestamp(entry.enqueued_at),
                    format_timestamp(entry.last_attempt_at) if entry.last_attempt_at else None,
                ),
            )
            cur.execute(
                "SELECT * FROM sync_queue WHERE device_id = ? AND table_name = ? AND record_id = ?",
                (entry.device_id, entry.table.value, entry.record_id),
            )
            return self._row_to_entry(cur.fetchone())

    def queue_get(self, entry_id: str) -> Optional[QueueEntry]:
        with self._transaction() as cur:
            cur.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
            row = cur.fetchone()
        return self._row_to_entry(row) if row else None

    def queue_entries(
        self,
        device_id: str,
        status: Optional[QueueStatus] = QueueStatus.QUEUED,
        limit: int = 100,
        table: Optional[SyncTable] = None,
    ) -> List[QueueEntry]:
        """Entries in FIFO order (enqueue time, then insertion order)."""
        clauses = ["device_id = ?"]
        params: List[Any] = [device_id]
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if table is not None:
            clauses.append("table_name = ?")
            params.append(table.value)
        params.append(int(limit))
        with self._transaction() as cur:
            cur.execute(
                f"SELECT * FROM sync_queue WHERE {' AND '.join(clauses)} "
                "ORDER BY enqueued_at ASC, rowid ASC LIMIT ?",
                params,
            )
            rows = cur.fetchall()
        return [self._row_to_entry(row) for row in rows]

    def queue_update(self, entry: QueueEntry) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE sync_queue SET
                    missing_dependencies = ?, attempts = ?, status = ?,
                    last_error = ?, last_attempt_at = ?
                WHERE id = ?
                """,
                (
                    json.dumps(entry.missing),
                    entry.attempts,
                    entry.status.value,
                    entry.last_error,
                    format_timestamp(entry.last_attempt_at) if entry.last_attempt_at else None,
                    entry.id,
                ),
            )

    def queue_delete(self, entry_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
            return cur.rowcount > 0

    def queue_discard(self, device_id: str, table: SyncTable, record_id: str) -> bool:
        """Drop the queued copy of a record, if any."""
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM sync_queue WHERE device_id = ? AND table_name = ? AND record_id = ?",
                (device_id, table.value, record_id),
            )
            return cur.rowcount > 0

    def queue_counts(self, device_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Counts grouped by table and status."""
        query = "SELECT table_name, status, COUNT(*) AS count FROM sync_queue"
        params: List[Any] = []
        if device_id:
            query += " WHERE device_id = ?"
            params.append(device_id)
        query += " GROUP BY table_name, status ORDER BY table_name, status"
        with self._transaction() as cur:
            cur.execute(query, params)
            counts: Dict[str, Dict[str, int]] = {}
            for row in cur.fetchall():
                counts.setdefault(row["table_name"], {})[row["status"]] = row["count"]
        return counts

    def queue_reset_exhausted(self, device_id: str, table: Optional[SyncTable] = None) -> int:
        query = (
            "UPDATE sync_queue SET status = 'QUEUED', attempts = 0, last_error = NULL "
            "WHERE device_id = ? AND status = 'EXHAUSTED'"
        )
        params: List[Any] = [device_id]
        if table is not None:
            query += " AND table_name = ?"
            params.append(table.value)
        with self._transaction() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def queue_purge_exhausted(self, older_than: datetime) -> int:
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM sync_queue WHERE status = 'EXHAUSTED' AND last_attempt_at < ?",
                (format_timestamp(older_than),),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Cursors, devices, operation log
    # ------------------------------------------------------------------

    def get_cursor(self, device_id: str, table: SyncTable) -> Optional[SyncCursor]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT cursor FROM sync_cursors WHERE device_id = ? AND table_name = ?",
                (device_id, table.value),
            )
            row = cur.fetchone()
        return SyncCursor.decode(row["cursor"]) if row else None

    def save_cursor(self, device_id: str, table: SyncTable, cursor: SyncCursor) -> SyncCursor:
        """Advance the stored cursor; an older cursor never moves it back."""
        with self._transaction() as cur:
            cur.execute(
                "SELECT cursor FROM sync_cursors WHERE device_id = ? AND table_name = ?",
                (device_id, table.value),
            )
            row = cur.fetchone()
            if row:
                current = SyncCursor.decode(row["cursor"])
                if cursor <= current:
                    return current
            cur.execute(
                """
                INSERT INTO sync_cursors (device_id, table_name, cursor, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(device_id, table_name) DO UPDATE SET
                    cursor = excluded.cursor,
                    updated_at = excluded.updated_at
                """,
                (device_id, table.value, cursor.encode(), format_timestamp(utcnow())),
            )
            return cursor

    def cursors(self, device_id: str) -> Dict[str, str]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT table_name, cursor FROM sync_cursors WHERE device_id = ?",
                (device_id,),
            )
            return {row["table_name"]: row["cursor"] for row in cur.fetchall()}

    def register_device(self, device_id: str, name: Optional[str] = None) -> None:
        now = format_timestamp(utcnow())
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO devices (id, name, first_seen, last_seen) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_seen = excluded.last_seen,
                    name = COALESCE(excluded.name, devices.name)
                """,
                (device_id, name, now, now),
            )

    def get_device(self, device_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as cur:
            cur.execute("SELECT * FROM devices WHERE id = ?", (device_id,))
            row = cur.fetchone()
        return dict(row) if row else None

    def device_count(self) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) FROM devices")
            return cur.fetchone()[0]

    def log_operation(
        self,
        device_id: str,
        table: SyncTable,
        record_count: int,
        sync_type: str,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO sync_operations (
                    device_id, table_name, record_count, sync_type, status,
                    error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device_id,
                    table.value,
                    record_count,
                    sync_type,
                    status,
                    error_message,
                    format_timestamp(utcnow()),
                ),
            )

    def recent_operations(self, device_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT * FROM sync_operations WHERE device_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (device_id, int(limit)),
            )
            return [dict(row) for row in cur.fetchall()]

    def table_counts(self) -> Dict[str, int]:
        counts = {table.value: 0 for table in SYNC_ORDER}
        with self._transaction() as cur:
            cur.execute("SELECT table_name, COUNT(*) AS count FROM records GROUP BY table_name")
            for row in cur.fetchall():
                counts[row["table_name"]] = row["count"]
        return counts


__all__ = ["RecordStore", "SyncCursor"]
