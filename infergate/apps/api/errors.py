from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from infergate.core.errors import (
    GatewayError,
    LedgerReadFailed,
    MalformedRequest,
    QuotaExceeded,
    RateLimited,
    Unauthenticated,
    UpstreamError,
    UpstreamTimeout,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "MalformedRequest",
    401: "Unauthenticated",
    404: "NotFound",
    405: "MethodNotAllowed",
    415: "UnsupportedMediaType",
    429: "RateLimited",
    500: "InternalError",
    503: "ServiceUnavailable",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "HttpError")


def _request_id_headers(request: Request, headers: dict[str, str] | None = None) -> dict[str, str]:
    merged = dict(headers or {})
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        merged.setdefault("X-Request-Id", request_id)
    return merged


def error_payload(code: str, message: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": code, "message": message}
    payload.update({key: value for key, value in extra.items() if value is not None})
    return payload


def upstream_error_payload(exc: UpstreamError) -> dict[str, Any]:
    return error_payload("UpstreamError", str(exc), reason=exc.reason)


def gateway_error_response(request: Request, exc: GatewayError) -> JSONResponse:
    # Map the error taxonomy onto the public status codes and bodies.
    headers: dict[str, str] = {}
    if isinstance(exc, MalformedRequest):
        status_code = 400
        payload = error_payload(exc.code, str(exc), details=exc.details)
    elif isinstance(exc, Unauthenticated):
        status_code = 401
        payload = error_payload(exc.code, str(exc))
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, RateLimited):
        status_code = 429
        payload = error_payload(exc.code, str(exc), retryAfter=exc.retry_after_s)
        headers["Retry-After"] = str(exc.retry_after_s)
    elif isinstance(exc, QuotaExceeded):
        status_code = 429
        payload = error_payload(exc.code, str(exc), usage={"current": exc.current, "limit": exc.limit})
    elif isinstance(exc, UpstreamError):
        status_code = 504 if isinstance(exc, UpstreamTimeout) else 502
        payload = upstream_error_payload(exc)
    elif isinstance(exc, LedgerReadFailed):
        status_code = 503
        payload = error_payload(exc.code, "Usage ledger unavailable")
        logger.error("ledger_unavailable path=%s", request.url.path, exc_info=exc)
    else:
        # Configuration and unexpected gateway errors stay opaque to callers.
        status_code = 500
        payload = error_payload("InternalError", "Internal server error")
        logger.error("gateway_error path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    return JSONResponse(content=payload, status_code=status_code, headers=_request_id_headers(request, headers))


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return gateway_error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details; nothing upstream has run yet.
    payload = error_payload(
        "MalformedRequest",
        "Request body failed validation",
        details=jsonable_encoder(exc.errors()),
    )
    return JSONResponse(content=payload, status_code=400, headers=_request_id_headers(request))


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    payload = error_payload(_default_code(exc.status_code), message)
    return JSONResponse(
        content=payload,
        status_code=exc.status_code,
        headers=_request_id_headers(request, dict(exc.headers or {})),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_payload("InternalError", "Internal server error")
    return JSONResponse(content=payload, status_code=500, headers=_request_id_headers(request))
