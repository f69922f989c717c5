from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_event_logger = logging.getLogger("observability")


def log_event(event: str, level: str = "info", **context: Any) -> None:
    """Emit one structured observability event.

    The line is rendered as ``event=<name> key=value ...`` for log aggregation, and the
    raw values stay attached to the record (``record.event`` / ``record.context``) so
    handlers and tests can read them without parsing.
    """
    rendered = " ".join(f"{key}={value}" for key, value in context.items())
    _event_logger.log(
        _LEVELS.get(level, logging.INFO),
        "event=%s %s",
        event,
        rendered,
        extra={"event": event, "context": dict(context)},
    )


# Paths whose rejections must carry a reasonCode, mapped to the event they are logged under
_rejection_events: dict[str, str] = {}

_STATUS_REASON_CODES = {
    400: "invalid_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    429: "rate_limited",
}


def register_rejection_event(path: str, event: str) -> None:
    _rejection_events[path] = event


def mark_rejection_logged(request: Request) -> None:
    request.state.rejection_logged = True


def _log_rejection(request: Request, status_code: int, reason_code: str) -> None:
    event = _rejection_events.get(request.url.path)
    if event is None or getattr(request.state, "rejection_logged", False):
        return
    mark_rejection_logged(request)
    log_event(
        event,
        "error" if status_code >= 500 else "warn",
        reasonCode=reason_code,
        status=status_code,
        path=request.url.path,
        requestId=get_request_id(request),
    )


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
    return request_id


class RequestTimingLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that measures request processing time and logs concise request/response info.

    Adds an 'X-Process-Time-Ms' header on responses to aid in quick diagnostics, and
    propagates (or creates) an 'X-Request-Id' so audit rows can be correlated with logs.
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        request_id = get_request_id(request)
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Process-Time-Ms"] = str(duration_ms)
        response.headers["X-Request-Id"] = request_id

        client_ip = request.client.host if request.client else "?"
        self.logger.info(
            "method=%s path=%s status=%s duration_ms=%s ip=%s request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            client_ip,
            request_id,
        )
        return response


def _error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message}, headers=headers)


def add_exception_handlers(app: FastAPI) -> None:
    """Register consistent error payload shapes: every failure is {"ok": false, "error": "<message>"}."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        _log_rejection(request, exc.status_code, _STATUS_REASON_CODES.get(exc.status_code, f"http_{exc.status_code}"))
        return _error_response(exc.status_code, message, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logging.getLogger("request").info(
            "validation_failed path=%s errors=%s", request.url.path, len(exc.errors())
        )
        _log_rejection(request, 400, "invalid_payload")
        return _error_response(400, "Invalid payload")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # Generic body; the traceback goes to the error log only
        logging.getLogger("error").exception("Unhandled exception: %s", exc)
        _log_rejection(request, 500, "internal_error")
        return _error_response(500, "Internal server error")
