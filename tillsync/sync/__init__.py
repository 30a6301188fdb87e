"""Multi-device record synchronization engine."""

from __future__ import annotations

from .tables import SYNC_ORDER, DependencyField, SyncTable, order_tables
from .records import Record, SyncStatus
from .conflict import ConflictRecord, ConflictResolution, ConflictResolver, ConflictType, ResolutionAction
from .queue import QueueEntry, QueueManager, QueueStatus, QueueSweepResult
from .store import RecordStore, SyncCursor
from .dependencies import DependencyReport, DependencyResolver
from .clock import ClockSkewGuard, SkewReport
from .coordinator import DownloadResult, SyncCoordinator, SyncSettings, UploadResult
from .protocol import SyncTransport
from .client import ClientSettings, SyncClient, SyncResult

__all__ = [
    # Tables and records
    "SYNC_ORDER",
    "DependencyField",
    "SyncTable",
    "order_tables",
    "Record",
    "SyncStatus",
    # Conflict
    "ConflictRecord",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictType",
    "ResolutionAction",
    # Queue and store
    "QueueEntry",
    "QueueManager",
    "QueueStatus",
    "QueueSweepResult",
    "RecordStore",
    "SyncCursor",
    "DependencyReport",
    "DependencyResolver",
    # Server side
    "ClockSkewGuard",
    "SkewReport",
    "DownloadResult",
    "SyncCoordinator",
    "SyncSettings",
    "UploadResult",
    # Device side
    "SyncTransport",
    "ClientSettings",
    "SyncClient",
    "SyncResult",
]
