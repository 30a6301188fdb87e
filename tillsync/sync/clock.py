"""Client/server clock divergence detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .records import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger("tillsync.sync.clock")

MAX_CLOCK_SKEW = timedelta(minutes=5)

SERVER_TIMESTAMP_HEADER = "X-Server-Timestamp"
CLOCK_SKEW_HEADER = "X-Clock-Skew-Warning"
CLIENT_TIMESTAMP_HEADER = "X-Client-Timestamp"


@dataclass
class SkewReport:
    """What the guard observed for one request."""

    server_time: datetime
    client_time: Optional[datetime] = None
    skew_seconds: float = 0.0
    direction: str = ""
    exceeded: bool = False

    @property
    def server_timestamp(self) -> str:
        return format_timestamp(self.server_time)

    @property
    def warning(self) -> Optional[str]:
        if not self.exceeded:
            return None
        minutes = round(self.skew_seconds / 60)
        return f"Client clock is {minutes} minutes {self.direction}"

    def headers(self) -> Dict[str, str]:
        headers = {SERVER_TIMESTAMP_HEADER: self.server_timestamp}
        if self.exceeded:
            headers[CLOCK_SKEW_HEADER] = self.warning or ""
        return headers


class ClockSkewGuard:
    """Flags requests whose client clock is too far from the server's.

    Last-write-wins depends on device clocks being roughly aligned, so a
    large skew is surfaced as a warning. Requests are never rejected.
    """

    def __init__(self, max_skew: timedelta = MAX_CLOCK_SKEW):
        self.max_skew = max_skew

    def inspect(
        self,
        client_timestamp: Any = None,
        now: Optional[datetime] = None,
        device_id: Optional[str] = None,
    ) -> SkewReport:
        server_time = now or utcnow()
        report = SkewReport(server_time=server_time)
        if client_timestamp in (None, ""):
            return report

        try:
            client_time = parse_timestamp(client_timestamp)
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring unparsable client timestamp %r from device %s",
                client_timestamp, device_id,
            )
            return report

        delta = (client_time - server_time).total_seconds()
        report.client_time = client_time
        report.skew_seconds = abs(delta)
        report.direction = "ahead" if delta > 0 else "behind"
        report.exceeded = report.skew_seconds > self.max_skew.total_seconds()

        if report.exceeded:
            logger.warning(
                "Clock skew detected: device %s is %d minutes %s (client %s, server %s)",
                device_id,
                round(report.skew_seconds / 60),
                report.direction,
                format_timestamp(client_time),
                report.server_timestamp,
            )
        return report


__all__ = [
    "CLIENT_TIMESTAMP_HEADER",
    "CLOCK_SKEW_HEADER",
    "ClockSkewGuard",
    "MAX_CLOCK_SKEW",
    "SERVER_TIMESTAMP_HEADER",
    "SkewReport",
]
