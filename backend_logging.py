# backend/logging.py

"""
structlog setup for the FixLens backend.

Modules grab a logger at import time, before the app has read its settings,
so configure_logging() may run more than once: the first call installs the
handler and renderer, later calls only move the level.
"""

import logging
import os
import sys
import time
import uuid
from collections.abc import Mapping, MutableMapping
from typing import Any, List, Optional

import structlog
from structlog.types import Processor


REQUEST_ID_HEADER = "x-request-id"

_configured = False


def _is_development() -> bool:
    from backend_settings import get_settings

    return get_settings().debug or os.getenv("ENV", "development") == "development"


def _add_service(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    event_dict["service"] = "fixlens"
    return event_dict


def get_processors(development: bool) -> List[Processor]:
    shared: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _add_service,
    ]
    if development:
        return shared + [structlog.dev.ConsoleRenderer(colors=False)]
    return shared + [
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def _level(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)


def configure_logging(level: str = "INFO") -> None:
    """Install structlog on first call; every call applies `level` to the root logger."""
    global _configured

    root = logging.getLogger()
    if not _configured:
        logging.basicConfig(format="%(message)s", stream=sys.stdout)
        structlog.configure(
            processors=get_processors(_is_development()),
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _configured = True
    root.setLevel(_level(level))


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)


class RequestLoggingMiddleware:
    """
    Binds a request id for the duration of each HTTP request and logs one
    line when it completes. The id is taken from the client's x-request-id
    header when present (the mobile app sends one) and echoed back.
    """

    def __init__(self, app):
        self.app = app
        self.logger = get_logger("http")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        request_id = headers.get(REQUEST_ID_HEADER.encode(), b"").decode("latin-1") or uuid.uuid4().hex[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 500)
                message.setdefault("headers", [])
                message["headers"] = list(message["headers"]) + [
                    (REQUEST_ID_HEADER.encode(), request_id.encode("latin-1"))
                ]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            if status_code >= 500:
                log_method = self.logger.error
            elif status_code >= 400:
                log_method = self.logger.warning
            else:
                log_method = self.logger.info
            log_method(
                "request_complete",
                method=scope.get("method", ""),
                path=scope.get("path", ""),
                status_code=status_code,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            structlog.contextvars.clear_contextvars()
