import logging
import sys
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import settings

LOGGER_NAME = "eventreview"
REQUEST_ID_HEADER = "X-Request-ID"

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_configured = False

logger = logging.getLogger(LOGGER_NAME)


def configure_logging() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO))
    logger.propagate = False
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    _configured = True


def current_request_id() -> str | None:
    return _request_id.get()


def _format_fields(fields: dict) -> str:
    request_id = current_request_id()
    if request_id and "request_id" not in fields:
        fields = {"request_id": request_id, **fields}
    return " ".join(f"{key}={value}" for key, value in fields.items())


def log_event(name: str, **fields) -> None:
    rendered = _format_fields(fields)
    logger.info(f"{name} {rendered}".rstrip())


def log_warning(name: str, **fields) -> None:
    rendered = _format_fields(fields)
    logger.warning(f"{name} {rendered}".rstrip())


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = _request_id.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            log_event(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response
        finally:
            _request_id.reset(token)
