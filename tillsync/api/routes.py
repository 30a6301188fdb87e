"""Route handlers for the sync API server."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict

from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse

from ..errors import ValidationError
from ..sync.records import format_timestamp, utcnow

if TYPE_CHECKING:
    from starlette.requests import Request

    from ..sync.coordinator import SyncCoordinator

logger = logging.getLogger("tillsync.api.routes")


def _ok(payload: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    body = {"success": True}
    body.update(payload)
    body["serverTimestamp"] = format_timestamp(utcnow())
    return JSONResponse(body, status_code=status_code)


def _coordinator(request: "Request") -> "SyncCoordinator":
    return request.app.state.sync_server.coordinator


async def _read_json(request: "Request") -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def health_handler(request: "Request") -> JSONResponse:
    """Liveness check; needs no device header."""
    return JSONResponse({
        "success": True,
        "status": "ok",
        "service": "tillsync",
        "timestamp": format_timestamp(utcnow()),
    })


async def health_stats_handler(request: "Request") -> JSONResponse:
    stats = await run_in_threadpool(_coordinator(request).health_stats)
    return _ok(stats)


async def upload_handler(request: "Request") -> JSONResponse:
    body = await _read_json(request)
    result = await run_in_threadpool(
        _coordinator(request).upload,
        request.state.device_id,
        body.get("tableName"),
        body.get("records"),
    )
    return _ok(result.to_dict())


async def download_handler(request: "Request") -> JSONResponse:
    params = request.query_params
    result = await run_in_threadpool(
        _coordinator(request).download,
        request.state.device_id,
        params.get("tableName"),
        params.get("since"),
        params.get("limit"),
        params.get("cursor"),
    )
    return _ok(result.to_dict())


async def batch_upload_handler(request: "Request") -> JSONResponse:
    body = await _read_json(request)
    result = await run_in_threadpool(
        _coordinator(request).batch_upload,
        request.state.device_id,
        body.get("tables"),
    )
    return _ok(result)


async def batch_download_handler(request: "Request") -> JSONResponse:
    params = request.query_params
    result = await run_in_threadpool(
        _coordinator(request).batch_download,
        request.state.device_id,
        params.get("tables"),
        params.get("since"),
        params.get("limit"),
    )
    return _ok(result)


async def status_handler(request: "Request") -> JSONResponse:
    status = await run_in_threadpool(_coordinator(request).device_status, request.state.device_id)
    return _ok(status)


async def queue_handler(request: "Request") -> JSONResponse:
    status = await run_in_threadpool(
        _coordinator(request).queue_status,
        request.state.device_id,
        request.query_params.get("limit"),
    )
    return _ok(status)


async def queue_process_handler(request: "Request") -> JSONResponse:
    result = await run_in_threadpool(
        _coordinator(request).process_queue,
        request.state.device_id,
        request.query_params.get("limit"),
    )
    return _ok(result.to_dict())


async def conflicts_handler(request: "Request") -> JSONResponse:
    params = request.query_params
    conflicts = await run_in_threadpool(
        _coordinator(request).conflicts,
        request.state.device_id,
        params.get("limit"),
        params.get("since"),
    )
    return _ok({"conflicts": conflicts, "count": len(conflicts)})


async def dependencies_fetch_handler(request: "Request") -> JSONResponse:
    body = await _read_json(request)
    table_name = body.get("tableName")
    dependencies = await run_in_threadpool(
        _coordinator(request).fetch_dependencies,
        table_name,
        body.get("recordIds"),
    )
    return _ok({"tableName": table_name, "dependencies": dependencies})


async def dependencies_check_handler(request: "Request") -> JSONResponse:
    params = request.query_params
    report = await run_in_threadpool(
        _coordinator(request).check_dependencies,
        params.get("tableName"),
        params.get("ids"),
    )
    return _ok(report)


async def dependencies_info_handler(request: "Request") -> JSONResponse:
    info = _coordinator(request).dependency_info(request.path_params.get("tableName", ""))
    return _ok(info)


__all__ = [
    "batch_download_handler",
    "batch_upload_handler",
    "conflicts_handler",
    "dependencies_check_handler",
    "dependencies_fetch_handler",
    "dependencies_info_handler",
    "download_handler",
    "health_handler",
    "health_stats_handler",
    "queue_handler",
    "queue_process_handler",
    "status_handler",
    "upload_handler",
]
