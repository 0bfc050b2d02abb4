"""
HTTP middleware and logging setup for the TradeFlow API.

Every request gets a correlation id that also lands in structured log
lines; write requests are logged with secrets redacted; the optional API key
gate and the shutdown guard sit in front of the routes. Run endpoints are
rate limited through slowapi.
"""
import json
import logging
import secrets
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config.settings import get_settings

logger = logging.getLogger(__name__)

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Record attributes the workflow engine attaches through `extra=`.
RUN_CONTEXT_FIELDS = ("workflow_id", "log_id", "step_id")

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
SENSITIVE_KEYS = frozenset({"api_key", "secret_key", "password", "token", "authorization", "auth_token"})
PUBLIC_PATHS = frozenset({"/", "/status"})
_DOC_PREFIXES = ("/docs", "/redoc", "/openapi")


def get_request_id() -> str:
    """Correlation id of the request being served, or an empty string."""
    return request_id_ctx.get("")


def run_rate_limit() -> str:
    return get_settings().api_run_rate_limit


# Per-process memory storage; limits reset on restart.
limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "detail": f"Rate limit exceeded: {exc.detail}",
            "retry_after": str(getattr(exc, "retry_after", 60)),
        },
    )


def redact(value: Any) -> Any:
    """Copy of a JSON-like value with credential-looking keys masked."""
    if isinstance(value, dict):
        return {
            key: "***REDACTED***" if str(key).lower() in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(_DOC_PREFIXES)


def extract_api_key(request: Request) -> str:
    """API key from X-API-Key, falling back to a Bearer token."""
    direct = request.headers.get("x-api-key", "").strip()
    if direct:
        return direct
    authorization = request.headers.get("authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return ""


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Correlation id, timing and write-request audit logging.

    An incoming X-Request-ID is reused, otherwise a short random id is
    minted; either way it is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = request.headers.get("x-request-id", "").strip() or uuid.uuid4().hex[:16]
        token = request_id_ctx.set(rid)
        started = time.monotonic()
        method, path = request.method, request.url.path
        if method in WRITE_METHODS:
            logger.info("HTTP %s %s query=%s", method, path, redact(dict(request.query_params.items())))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "req=%s method=%s path=%s duration_ms=%.1f unhandled_exception",
                rid, method, path, (time.monotonic() - started) * 1000,
            )
            raise
        finally:
            request_id_ctx.reset(token)

        response.headers["X-Request-ID"] = rid
        logger.log(
            logging.DEBUG if method == "GET" else logging.INFO,
            "req=%s method=%s path=%s status=%d duration_ms=%.1f",
            rid, method, path, response.status_code, (time.monotonic() - started) * 1000,
        )
        return response


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional API key gate.

    Enforced when auth is switched on or a key is configured; public paths
    and CORS preflights always pass.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "OPTIONS" or is_public_path(request.url.path):
            return await call_next(request)

        settings = get_settings()
        expected = (settings.api_auth_key or "").strip()
        if not settings.api_auth_enabled and not expected:
            return await call_next(request)
        if not expected:
            return JSONResponse(
                status_code=503,
                content={"detail": "API auth is enabled but TRADEFLOW_API_KEY is not configured"},
            )

        provided = extract_api_key(request)
        if not provided or not secrets.compare_digest(provided, expected):
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
        return await call_next(request)


class ShutdownGuardMiddleware(BaseHTTPMiddleware):
    """Refuse new writes once `is_shutting_down()` turns true."""

    def __init__(self, app, is_shutting_down: Callable[[], bool]):
        super().__init__(app)
        self.is_shutting_down = is_shutting_down

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if (
            request.method in WRITE_METHODS
            and request.url.path not in PUBLIC_PATHS
            and self.is_shutting_down()
        ):
            return JSONResponse(
                status_code=503,
                content={"detail": "Server is shutting down. Please retry shortly."},
            )
        return await call_next(request)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with request and workflow run context."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get("")
        if rid:
            payload["request_id"] = rid
        payload.update(
            (key, getattr(record, key))
            for key in RUN_CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Switch every root handler to JSON output, adding a console handler when
    only file handlers are attached.
    """
    root = logging.getLogger()
    level = getattr(logging, log_level.upper(), logging.INFO)
    root.setLevel(level)

    formatter = StructuredFormatter()
    has_console = False
    for handler in root.handlers:
        handler.setFormatter(formatter)
        if type(handler) is logging.StreamHandler:
            has_console = True

    if not has_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root.addHandler(console)
