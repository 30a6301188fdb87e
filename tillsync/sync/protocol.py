"""HTTP transport for the device side of the sync protocol."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..errors import RemoteError, TransportError
from .clock import CLIENT_TIMESTAMP_HEADER, CLOCK_SKEW_HEADER

logger = logging.getLogger("tillsync.sync.protocol")

API_PREFIX = "/api"
DEVICE_ID_HEADER = "X-Device-ID"
DEFAULT_RETRY_DELAYS = (1, 2, 4, 8, 16)


def _error_payload(exc: HTTPError) -> Dict[str, Any]:
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return {"message": f"HTTP {exc.code} {exc.reason}"}
    return payload if isinstance(payload, dict) else {"message": str(payload)}


class SyncTransport:
    """JSON-over-HTTP calls to the sync server.

    Transient failures (connection errors, timeouts, 5xx) are retried after
    each delay in ``retry_delays``; 4xx answers raise ``RemoteError`` at once.
    """

    def __init__(
        self,
        base_url: str,
        device_id: str,
        timeout: float = 30,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        opener: Callable[..., Any] = urlopen,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.timeout = timeout
        self.retry_delays = tuple(retry_delays)
        self._opener = opener
        self._sleep = sleep

    def _url(self, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        url = f"{self.base_url}{API_PREFIX}{path}"
        query = {key: value for key, value in (params or {}).items() if value not in (None, "")}
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def _send(self, method: str, url: str, body: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = Request(
            url,
            data=data,
            headers={
                "Content-Type": "application/json",
                DEVICE_ID_HEADER: self.device_id,
                CLIENT_TIMESTAMP_HEADER: datetime.now(timezone.utc).isoformat(),
            },
            method=method,
        )
        with self._opener(req, timeout=self.timeout) as resp:
            warning = resp.headers.get(CLOCK_SKEW_HEADER) if resp.headers else None
            if warning:
                logger.warning("Sync server reports clock skew: %s", warning)
            raw = resp.read().decode("utf-8")
        return json.loads(raw) if raw else {}

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._url(path, params)
        delays = (0.0,) + self.retry_delays
        last_error = ""
        for attempt, delay in enumerate(delays, start=1):
            if delay:
                self._sleep(delay)
            try:
                return self._send(method, url, body)
            except HTTPError as exc:
                payload = _error_payload(exc)
                if exc.code < 500:
                    raise RemoteError(exc.code, payload)
                last_error = f"HTTP {exc.code}: {payload.get('message', exc.reason)}"
            except URLError as exc:
                last_error = f"connection error: {exc.reason}"
            except (TimeoutError, ConnectionError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            except ValueError as exc:
                last_error = f"invalid JSON response: {exc}"
            logger.warning(
                "%s %s failed (attempt %d/%d): %s",
                method, path, attempt, len(delays), last_error,
            )
        raise TransportError(f"{method} {path} failed after {len(delays)} attempts: {last_error}")

    def health(self) -> Dict[str, Any]:
        return self.request("GET", "/health")

    def upload(self, table: str, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self.request("POST", "/sync/upload", body={"tableName": table, "records": records})

    def download(
        self,
        table: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        since: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.request(
            "GET",
            "/sync/download",
            params={"tableName": table, "cursor": cursor, "limit": limit, "since": since},
        )

    def fetch_dependencies(self, table: str, record_ids: List[str]) -> Dict[str, Any]:
        return self.request(
            "POST",
            "/dependencies/fetch",
            body={"tableName": table, "recordIds": record_ids},
        )

    def process_queue(self, limit: Optional[int] = None) -> Dict[str, Any]:
        return self.request("POST", "/sync/queue/process", params={"limit": limit})

    def status(self) -> Dict[str, Any]:
        return self.request("GET", "/sync/status")


__all__ = ["API_PREFIX", "DEFAULT_RETRY_DELAYS", "SyncTransport"]
