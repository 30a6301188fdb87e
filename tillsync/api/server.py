"""Sync API server implementation using Starlette."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from ..errors import SyncError
from ..logging_utils import device_context
from ..sync.clock import CLIENT_TIMESTAMP_HEADER, SERVER_TIMESTAMP_HEADER, ClockSkewGuard
from ..sync.coordinator import SyncCoordinator, SyncSettings
from ..sync.records import format_timestamp, utcnow
from ..sync.store import RecordStore
from .auth import DEVICE_ID_HEADER, validate_device_id

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import JSONResponse

    from ..configuration import ConfigurationBundle

logger = logging.getLogger("tillsync.api.server")

API_PREFIX = "/api"


class APIServerState(str, Enum):
    """API server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


def _is_exempt(path: str) -> bool:
    if path.startswith(API_PREFIX + "/"):
        path = path[len(API_PREFIX):]
    return path == "/health" or path.startswith("/health/")


@dataclass
class SyncAPIServer:
    """HTTP API through which devices upload and download records."""

    config_bundle: "ConfigurationBundle"
    store: Optional[RecordStore] = None

    # Server state
    _state: APIServerState = field(default=APIServerState.STOPPED, init=False)
    _coordinator: Optional[SyncCoordinator] = field(default=None, init=False)
    _server: Optional[Any] = field(default=None, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, init=False)

    @property
    def state(self) -> APIServerState:
        """Current server state."""
        return self._state

    @property
    def host(self) -> str:
        """Configured host address."""
        return self._get_server_config().get("host", "127.0.0.1")

    @property
    def port(self) -> int:
        """Configured port number."""
        return int(self._get_server_config().get("port", 8080))

    @property
    def environment(self) -> str:
        runtime = self.config_bundle.merged.get("runtime", {}) or {}
        return str(runtime.get("environment", "production"))

    @property
    def settings(self) -> SyncSettings:
        return SyncSettings.from_config(self.config_bundle.merged)

    @property
    def coordinator(self) -> SyncCoordinator:
        """The coordinator, opening the server database on first use."""
        if self._coordinator is None:
            if self.store is None:
                raw = self._get_server_config().get("database", "state/server.db")
                self.store = RecordStore(self.config_bundle.resolve_path(raw)).initialize()
            self._coordinator = SyncCoordinator(self.store, self.settings)
        return self._coordinator

    def _get_server_config(self) -> Dict[str, Any]:
        """Get server configuration from bundle."""
        if self.config_bundle.merged:
            return self.config_bundle.merged.get("server", {}) or {}
        return {}

    def create_app(self) -> Any:
        """Create the Starlette application."""
        from starlette.applications import Starlette
        from starlette.middleware import Middleware
        from starlette.middleware.cors import CORSMiddleware
        from starlette.routing import Mount, Route

        from .routes import (
            batch_download_handler,
            batch_upload_handler,
            conflicts_handler,
            dependencies_check_handler,
            dependencies_fetch_handler,
            dependencies_info_handler,
            download_handler,
            health_handler,
            health_stats_handler,
            queue_handler,
            queue_process_handler,
            status_handler,
            upload_handler,
        )

        # Build middleware list
        middleware = []
        cors_origins = self._get_server_config().get("cors_origins", [])

        if cors_origins:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=cors_origins,
                    allow_credentials=True,
                    allow_methods=["*"],
                    allow_headers=["*"],
                )
            )

        middleware.append(Middleware(self._request_middleware_class()))

        routes: List[Any] = [
            Route("/health", health_handler, methods=["GET"]),
            Route("/health/stats", health_stats_handler, methods=["GET"]),
            Route("/sync/upload", upload_handler, methods=["POST"]),
            Route("/sync/download", download_handler, methods=["GET"]),
            Route("/sync/batch-upload", batch_upload_handler, methods=["POST"]),
            Route("/sync/batch-download", batch_download_handler, methods=["GET"]),
            Route("/sync/status", status_handler, methods=["GET"]),
            Route("/sync/queue", queue_handler, methods=["GET"]),
            Route("/sync/queue/process", queue_process_handler, methods=["POST"]),
            Route("/sync/conflicts", conflicts_handler, methods=["GET"]),
            Route("/dependencies/fetch", dependencies_fetch_handler, methods=["POST"]),
            Route("/dependencies/check", dependencies_check_handler, methods=["GET"]),
            Route("/dependencies/info/{tableName}", dependencies_info_handler, methods=["GET"]),
        ]

        app = Starlette(
            routes=[Mount(API_PREFIX, routes=routes), *routes],
            middleware=middleware,
            exception_handlers={
                SyncError: self._sync_error_handler,
                Exception: self._unhandled_error_handler,
            },
            lifespan=self._lifespan,
        )

        # Store reference to server in app state
        app.state.sync_server = self

        return app

    async def _sync_error_handler(self, request: "Request", exc: SyncError) -> "JSONResponse":
        from starlette.responses import JSONResponse

        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    async def _unhandled_error_handler(self, request: "Request", exc: Exception) -> "JSONResponse":
        from starlette.responses import JSONResponse

        logger.error(
            "Unhandled error on %s %s",
            request.method, request.url.path,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        body: Dict[str, Any] = {
            "success": False,
            "error": "InternalServerError",
            "message": "Internal server error",
        }
        if self.environment != "production":
            body["message"] = str(exc) or body["message"]
            body["stack"] = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        return JSONResponse(
            body,
            status_code=500,
            headers={SERVER_TIMESTAMP_HEADER: format_timestamp(utcnow())},
        )

    def _request_middleware_class(self) -> type:
        """Create the device-id, clock-skew and request-logging middleware."""
        guard = ClockSkewGuard(timedelta(seconds=self.settings.max_clock_skew_seconds))

        from starlette.middleware.base import BaseHTTPMiddleware
        from starlette.responses import JSONResponse

        class SyncRequestMiddleware(BaseHTTPMiddleware):
            async def dispatch(self, request, call_next):
                started = time.perf_counter()
                path = request.url.path
                device_id = None

                if not _is_exempt(path):
                    try:
                        device_id = validate_device_id(request.headers.get(DEVICE_ID_HEADER))
                    except SyncError as exc:
                        logger.info("%s %s rejected: %s", request.method, path, exc.message)
                        return JSONResponse(
                            exc.to_dict(),
                            status_code=exc.status_code,
                            headers={SERVER_TIMESTAMP_HEADER: format_timestamp(utcnow())},
                        )
                request.state.device_id = device_id

                skew = guard.inspect(
                    request.headers.get(CLIENT_TIMESTAMP_HEADER),
                    device_id=device_id,
                )
                with device_context(device_id):
                    response = await call_next(request)
                for name, value in skew.headers().items():
                    response.headers[name] = value

                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.info(
                    "%s %s %s %.1fms device=%s",
                    request.method, path, response.status_code, elapsed_ms, device_id or "-",
                    extra={
                        "method": request.method,
                        "path": path,
                        "status": response.status_code,
                        "duration_ms": round(elapsed_ms, 1),
                        "device_id": device_id,
                    },
                )
                return response

        return SyncRequestMiddleware

    @asynccontextmanager
    async def _lifespan(self, app: Any) -> AsyncIterator[None]:
        """Track server state across startup and shutdown."""
        logger.info("Sync API server starting on %s:%s", self.host, self.port)
        self._state = APIServerState.RUNNING
        try:
            yield
        finally:
            logger.info("Sync API server shutting down")
            self._state = APIServerState.STOPPED

    def start(self, blocking: bool = False) -> bool:
        """Start the API server.

        Args:
            blocking: If True, block until server stops. If False, run in background thread.

        Returns:
            True if server started successfully.
        """
        if self._state == APIServerState.RUNNING:
            logger.warning("Sync API server is already running")
            return False

        import uvicorn

        self._state = APIServerState.STARTING
        app = self.create_app()

        config = uvicorn.Config(
            app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        if blocking:
            try:
                asyncio.run(self._server.serve())
            except Exception as e:
                logger.exception("Sync API server error: %s", e)
                self._state = APIServerState.ERROR
                return False
            return True

        self._thread = threading.Thread(
            target=self._run_in_thread,
            daemon=True,
            name="tillsync-api-server",
        )
        self._thread.start()

        # Wait briefly for server to start
        for _ in range(20):
            time.sleep(0.1)
            if self._state == APIServerState.RUNNING:
                break

        return self._state == APIServerState.RUNNING

    def _run_in_thread(self) -> None:
        """Run the server in a background thread."""
        try:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._loop.run_until_complete(self._server.serve())
        except Exception as e:
            logger.exception("Sync API server thread error: %s", e)
            self._state = APIServerState.ERROR
        finally:
            if self._loop:
                self._loop.close()
            if self._state != APIServerState.ERROR:
                self._state = APIServerState.STOPPED

    def stop(self) -> bool:
        """Stop the API server.

        Returns:
            True if server stopped successfully.
        """
        if self._state != APIServerState.RUNNING:
            logger.warning("Sync API server is not running")
            return False

        self._state = APIServerState.STOPPING

        if self._server:
            self._server.should_exit = True

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._state = APIServerState.STOPPED
        self._server = None
        self._thread = None

        return True

    def close(self) -> None:
        """Release the database; the server must be stopped first."""
        if self.store is not None:
            self.store.close()
            self.store = None
        self._coordinator = None

    def status(self) -> Dict[str, Any]:
        """Get server status information."""
        return {
            "state": self._state.value,
            "host": self.host,
            "port": self.port,
            "url": f"http://{self.host}:{self.port}" if self._state == APIServerState.RUNNING else None,
        }


__all__ = ["API_PREFIX", "APIServerState", "SyncAPIServer"]
