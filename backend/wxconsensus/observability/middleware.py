from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Tuple, Type

import structlog
from fastapi import FastAPI, Request
from fastapi import status as http
from fastapi.responses import JSONResponse

from wxconsensus.errors import LeaseUnavailableError, StorageError, UpstreamError, WxConsensusError
from wxconsensus.schemas.common import fail

from .metrics import REQUEST_COUNTER, REQUEST_LATENCY, record_latency

logger = structlog.get_logger("http")

UNMATCHED_ROUTE = "<unmatched>"

# first match wins; order subclasses before their bases
_ERROR_STATUS: Tuple[Tuple[Type[WxConsensusError], int, str], ...] = (
    (LeaseUnavailableError, http.HTTP_409_CONFLICT, "lease_unavailable"),
    (StorageError, http.HTTP_500_INTERNAL_SERVER_ERROR, "storage_error"),
    (UpstreamError, http.HTTP_502_BAD_GATEWAY, "upstream_error"),
)


def _route_label(request: Request) -> str:
    """Route template for metric labels; unknown paths share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=str(request.url.path),
    )
    try:
        response = await call_next(request)
    except Exception:
        duration = (time.perf_counter() - start) * 1000
        _record(request, duration, "500")
        logger.exception("request.error", status_code=500, duration_ms=round(duration, 2))
        structlog.contextvars.clear_contextvars()
        raise

    duration = (time.perf_counter() - start) * 1000
    _record(request, duration, str(response.status_code))
    logger.info(
        "request.completed",
        route=_route_label(request),
        status_code=response.status_code,
        duration_ms=round(duration, 2),
    )
    response.headers["X-Request-Id"] = request_id
    structlog.contextvars.clear_contextvars()
    return response


def _record(request: Request, duration_ms: float, status: str) -> None:
    route = _route_label(request)
    record_latency(route, duration_ms)
    REQUEST_COUNTER.labels(path=route, method=request.method, status=status).inc()
    REQUEST_LATENCY.labels(path=route, method=request.method).observe(duration_ms / 1000)


def register_request_middleware(app: FastAPI) -> None:
    app.middleware("http")(request_context_middleware)


def wxconsensus_error_handler(request: Request, exc: WxConsensusError) -> JSONResponse:
    """Service errors escaping a route become an ``ok: false`` envelope with a matching status."""
    status_code, code = http.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"
    for exc_type, mapped_status, mapped_code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code, code = mapped_status, mapped_code
            break

    details: Dict[str, Any] = {"request_id": _request_id(request)}
    if isinstance(exc, LeaseUnavailableError):
        details.update(lease_id=exc.lease_id, holder_id=exc.holder_id)
        logger.info("request.lease_unavailable", holder_id=exc.holder_id)
    elif status_code >= 500:
        logger.error("request.service_error", exc_type=type(exc).__name__, error=str(exc), exc_info=exc)
    return fail(code, str(exc), status_code=status_code, details=details)


def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request.unhandled_exception",
        exc_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc,
    )
    return fail(
        "internal_error",
        "Internal Server Error",
        status_code=http.HTTP_500_INTERNAL_SERVER_ERROR,
        details={"request_id": _request_id(request)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WxConsensusError, wxconsensus_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
