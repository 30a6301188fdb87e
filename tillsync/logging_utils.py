"""Logging helpers for the tillsync runtime."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Iterator, Optional, Union

LOG_SUBPATH = Path("logs") / "tillsync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "tillsync.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".tillsync_runtime"

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

_device_id: ContextVar[Optional[str]] = ContextVar("tillsync_device_id", default=None)


@contextmanager
def device_context(device_id: Optional[str]) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``device_id``."""
    token = _device_id.set(device_id)
    try:
        yield
    finally:
        _device_id.reset(token)


class DeviceContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        device_id = _device_id.get()
        if device_id is not None and not hasattr(record, "device_id"):
            record.device_id = device_id
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        # Fields passed through ``extra=`` (device id, path, duration)
        extra = {
            key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS
        }
        if extra:
            log_entry["extra"] = extra
        return json.dumps(log_entry, default=str)


def setup_logging(
    home_dir: Path,
    level: Union[str, int] = logging.INFO,
    structured: bool = True,
    structured_path: Optional[str] = None,
    console: bool = True,
) -> Path:
    """Configure tillsync logging with optional structured JSON output.

    Args:
        home_dir: Path to the home directory for log storage.
        level: Logging level (string name or int constant).
        structured: Whether to enable structured JSON logging.
        structured_path: Custom path for structured logs (relative to home_dir).
        console: Whether to also log to stderr.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_log_path(home_dir, LOG_SUBPATH)

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Primary file handler (human-readable text)
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)
    device_filter = DeviceContextFilter()
    file_handler.addFilter(device_filter)

    logger = logging.getLogger("tillsync")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(text_formatter)
        console_handler.addFilter(device_filter)
        logger.addHandler(console_handler)

    # Structured JSON handler (optional)
    if structured:
        json_path = _resolve_log_path(home_dir, Path(structured_path or STRUCTURED_LOG_SUBPATH))
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        json_handler.addFilter(device_filter)
        logger.addHandler(json_handler)

    logger.propagate = False

    _silence_third_party()
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _resolve_log_path(home_dir: Path, subpath: Path) -> Path:
    primary = home_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write logs under '{home_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _silence_third_party() -> None:
    # The request middleware already logs one line per request.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


__all__ = [
    "setup_logging",
    "device_context",
    "DeviceContextFilter",
    "JSONFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "FALLBACK_ROOT",
]
