"""
Litestar application setup for the relay HTTP server.

Serves the control API and the HLS files. Binary (JSMpeg) clients connect to
the per-stream WebSocket listeners directly, not through this app.
"""

import logging
import time

from litestar import Litestar, Request, Response, get
from litestar.config.cors import CORSConfig
from litestar.di import Provide
from litestar.middleware import AbstractMiddleware
from litestar.types import Receive, Scope, Send

from .routes import (
    AdminController,
    StreamsController,
    LogsController,
    HLSController,
)
from ..streaming import StreamError, StreamManager

logger = logging.getLogger(__name__)
http_logger = logging.getLogger("http.requests")

# HLS players poll every few seconds and SSE responses never finish
QUIET_PATHS = {"/health"}
QUIET_PREFIXES = ("/hls/",)
QUIET_SUFFIXES = ("/logs/stream",)


def is_quiet_path(path: str) -> bool:
    """Requests that are not worth an access log line."""
    return path in QUIET_PATHS or path.startswith(QUIET_PREFIXES) or path.endswith(QUIET_SUFFIXES)


def stream_error_handler(request: Request, exc: StreamError) -> Response:
    """Registry conflicts (port taken, stream limit) map to 409."""
    logger.warning(f"{request.method} {request.url.path}: {exc}")
    return Response(
        content={"status_code": 409, "detail": str(exc)},
        status_code=409,
    )


class RequestLoggingMiddleware(AbstractMiddleware):
    """Middleware to log HTTP requests."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if is_quiet_path(path):
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "?")
        start_time = time.time()
        status_code = 0

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.time() - start_time) * 1000
            # Log format: METHOD /path STATUS DURATIONms
            http_logger.info(f"{method} {path} {status_code} {duration_ms:.1f}ms")


def create_app(
    stream_manager: StreamManager,
    debug: bool = False,
) -> Litestar:
    """
    Create and configure the Litestar application.

    Args:
        stream_manager: StreamManager instance shared by all handlers
        debug: Litestar debug mode (tracebacks in error responses)

    Returns:
        Configured Litestar application
    """

    async def provide_stream_manager() -> StreamManager:
        return stream_manager

    @get("/health")
    async def health_check() -> dict:
        return {"status": "ok", "streams": len(stream_manager)}

    # Browsers load HLS from other origins
    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app = Litestar(
        route_handlers=[
            health_check,
            AdminController,
            StreamsController,
            LogsController,
            HLSController,
        ],
        dependencies={
            "stream_manager": Provide(provide_stream_manager),
        },
        middleware=[RequestLoggingMiddleware],
        exception_handlers={StreamError: stream_error_handler},
        cors_config=cors_config,
        debug=debug,
    )

    return app
