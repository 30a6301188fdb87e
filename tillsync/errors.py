"""Error taxonomy and per-record result values for the sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


class SyncError(Exception):
    """Base class for errors that map onto the wire envelope."""

    status_code = 500
    name = "SyncError"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.name,
            "message": self.message,
        }
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(SyncError):
    """Malformed or oversized request."""

    status_code = 400
    name = "ValidationError"


class MissingDeviceId(ValidationError):
    name = "MissingDeviceId"

    def __init__(self, message: str = "X-Device-ID header is required"):
        super().__init__(message)


class InvalidTable(SyncError):
    """Unknown table name, or one outside the tier configuration."""

    status_code = 400
    name = "InvalidTable"

    def __init__(self, table_name: Any, message: Optional[str] = None):
        super().__init__(message or f"Invalid table name: {table_name}")
        self.table_name = table_name


class NotFoundError(SyncError):
    status_code = 404
    name = "NotFoundError"


class ConflictError(SyncError):
    """Reports a resolved conflict outcome; not a processing failure."""

    status_code = 409
    name = "ConflictError"


class MalformedRecord(SyncError):
    """A record is missing required sync metadata (id, device, updated_at)."""

    status_code = 422
    name = "MalformedRecord"

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class TransientStoreError(SyncError):
    """Storage I/O failure; the caller may retry with backoff."""

    status_code = 503
    name = "TransientStoreError"


class TransportError(SyncError):
    """The sync server could not be reached within the retry budget."""

    status_code = 503
    name = "TransportError"


class RemoteError(SyncError):
    """The sync server answered with an error envelope."""

    def __init__(self, status_code: int, payload: Optional[Dict[str, Any]] = None):
        payload = payload or {}
        super().__init__(
            str(payload.get("message") or f"HTTP {status_code}"),
            payload.get("errors") or [],
        )
        self.status_code = status_code
        self.name = str(payload.get("error") or "RemoteError")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: str
    message: str

    @property
    def ok(self) -> bool:
        return False

    @property
    def reason(self) -> str:
        return f"{self.kind}: {self.message}"

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Err":
        if isinstance(exc, SyncError):
            return cls(kind=exc.name, message=exc.message)
        return cls(kind=type(exc).__name__, message=str(exc))


Result = Union[Ok[T], Err]


__all__ = [
    "SyncError",
    "ValidationError",
    "MissingDeviceId",
    "InvalidTable",
    "NotFoundError",
    "ConflictError",
    "MalformedRecord",
    "TransientStoreError",
    "TransportError",
    "RemoteError",
    "Ok",
    "Err",
    "Result",
]
