"""Tests for the HTTP transport's retry and error handling."""

from __future__ import annotations

import io
import json
from urllib.error import HTTPError, URLError

import pytest

from tillsync.errors import RemoteError, TransportError
from tillsync.sync.protocol import SyncTransport

DEVICE = "6f1c2a4e-6b1e-4c43-9c39-0d3c6a1d2b7e"


class _FakeResponse:
    def __init__(self, payload, headers=None):
        self._body = json.dumps(payload).encode("utf-8")
        self.headers = headers or {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self._body


def _http_error(code: int, payload: dict) -> HTTPError:
    body = io.BytesIO(json.dumps(payload).encode("utf-8"))
    return HTTPError("http://sync.test", code, "error", None, body)


def _transport(outcomes, sleeps, requests=None) -> SyncTransport:
    pending = list(outcomes)

    def opener(req, timeout=None):
        if requests is not None:
            requests.append(req)
        outcome = pending.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return SyncTransport(
        "http://sync.test/",
        DEVICE,
        timeout=5,
        opener=opener,
        sleep=sleeps.append,
    )


def test_request_builds_api_url_and_headers():
    requests = []
    transport = _transport([_FakeResponse({"success": True})], [], requests)

    transport.download("customers", cursor="2024-01-01T00:00:00.000000+00:00|c1", limit=50)

    req = requests[0]
    assert req.full_url.startswith("http://sync.test/api/sync/download?")
    assert "tableName=customers" in req.full_url
    assert "since" not in req.full_url
    assert req.get_header("X-device-id") == DEVICE
    assert req.get_method() == "GET"


def test_upload_posts_json_body():
    requests = []
    transport = _transport([_FakeResponse({"accepted": ["c1"]})], [], requests)

    response = transport.upload("customers", [{"id": "c1"}])

    assert response == {"accepted": ["c1"]}
    assert json.loads(requests[0].data) == {"tableName": "customers", "records": [{"id": "c1"}]}


def test_transient_failures_are_retried_with_backoff():
    sleeps = []
    transport = _transport(
        [
            URLError("refused"),
            _http_error(503, {"message": "busy"}),
            _FakeResponse({"status": "ok"}),
        ],
        sleeps,
    )

    assert transport.health() == {"status": "ok"}
    assert sleeps == [1, 2]


def test_client_errors_are_not_retried():
    sleeps = []
    transport = _transport(
        [_http_error(400, {"error": "InvalidTable", "message": "Invalid table name: x"})],
        sleeps,
    )

    with pytest.raises(RemoteError) as excinfo:
        transport.upload("x", [{"id": "1"}])

    assert excinfo.value.name == "InvalidTable"
    assert excinfo.value.status_code == 400
    assert sleeps == []


def test_exhausted_retries_raise_transport_error():
    sleeps = []
    transport = _transport([TimeoutError("slow")] * 6, sleeps)

    with pytest.raises(TransportError):
        transport.status()

    assert sleeps == [1, 2, 4, 8, 16]
