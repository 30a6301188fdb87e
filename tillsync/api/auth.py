"""Device identity for the sync API."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..errors import MissingDeviceId, ValidationError

logger = logging.getLogger("tillsync.api.auth")

DEVICE_ID_HEADER = "X-Device-ID"


@dataclass
class DeviceIdentity:
    """Stable per-installation device id, persisted under the home directory."""

    home_dir: Path
    _cached_id: Optional[str] = None

    @property
    def id_file_path(self) -> Path:
        """Path to the stored device id file."""
        return self.home_dir / "config" / ".device_id"

    def get_or_create(self) -> str:
        """Get the existing device id or generate a new one."""
        if self._cached_id:
            return self._cached_id

        if self.id_file_path.exists():
            try:
                stored = self.id_file_path.read_text(encoding="utf-8").strip()
                self._cached_id = validate_device_id(stored)
                return self._cached_id
            except (OSError, ValidationError) as exc:
                logger.warning("Ignoring unreadable device id at %s: %s", self.id_file_path, exc)

        device_id = str(uuid.uuid4())
        self._save(device_id)
        self._cached_id = device_id
        return device_id

    def _save(self, device_id: str) -> None:
        """Save the device id; a device that cannot persist it still syncs this session."""
        try:
            self.id_file_path.parent.mkdir(parents=True, exist_ok=True)
            self.id_file_path.write_text(device_id, encoding="utf-8")
        except OSError as exc:
            logger.error("Could not persist device id to %s: %s", self.id_file_path, exc)


def validate_device_id(raw: Any) -> str:
    """Normalize an ``X-Device-ID`` value, which must be a UUID."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise MissingDeviceId()
    try:
        return str(uuid.UUID(str(raw).strip()))
    except ValueError:
        raise ValidationError(
            f"{DEVICE_ID_HEADER} must be a valid UUID",
            [{"field": DEVICE_ID_HEADER, "value": str(raw)}],
        )


__all__ = ["DEVICE_ID_HEADER", "DeviceIdentity", "validate_device_id"]
