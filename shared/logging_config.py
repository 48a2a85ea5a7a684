import logging
import json
import sys
import time
import uuid
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# Correlation data for the request being served; read by every log record
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
identity_var: ContextVar[Optional[str]] = ContextVar("identity", default=None)

# Extra attributes a log call may attach to its line
EXTRA_FIELDS = (
    "user_id", "method", "path", "status_code", "duration_ms",
    "sku", "cache_key", "source", "order_id",
)


def mask_session(session_id: str) -> str:
    """Guest session ids are bearer-like; keep only enough to correlate."""
    if len(session_id) <= 6:
        return "session:***"
    return f"session:{session_id[:4]}***"


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        if not hasattr(record, "identity"):
            record.identity = identity_var.get()
        return True


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if getattr(record, "request_id", None):
            line["request_id"] = record.request_id
        if getattr(record, "identity", None):
            line["identity"] = record.identity

        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                line[field] = value

        if record.exc_info:
            line["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(line, default=str)


def setup_logging(service_name: str, level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(logging.getLevelName(level.upper()))

    if root.handlers:
        root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    # uvicorn's access log duplicates the request line below
    logging.getLogger("uvicorn.access").disabled = True

    return logging.getLogger(service_name)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One line per request, plus correlation for everything logged while serving it."""

    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        request_token = request_id_var.set(request_id)

        session_id = request.query_params.get("session_id")
        identity_token = identity_var.set(mask_session(session_id) if session_id else None)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, exc_info=sys.exc_info())
            raise
        else:
            self.log_request(request, response.status_code, started)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            identity_var.reset(identity_token)
            request_id_var.reset(request_token)

    def log_request(self, request: Request, status_code: int, started: float, exc_info=None):
        extra = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            # Set by the auth dependency once the token is verified
            "user_id": getattr(request.state, "user_id", None),
        }

        if status_code >= 500:
            self.logger.error("Request failed", extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning("Request rejected", extra=extra)
        else:
            self.logger.info("Request served", extra=extra)
