"""Request-id middleware and JSON error handlers for the HTTP surface."""

from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sprintboard.core.config import settings
from sprintboard.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.responses import Response

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
_HEALTH_PATHS = frozenset({"/healthz", "/readyz"})


def _json_safe(value: object) -> object:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if not isinstance(request_id, str) or not request_id:
        return None
    return request_id


def _error_payload(
    *,
    detail: object,
    request_id: str | None,
    code: str | None = None,
    retryable: bool | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail}
    if request_id is not None:
        payload["request_id"] = request_id
    if code is not None:
        payload["code"] = code
    if retryable is not None:
        payload["retryable"] = retryable
    return payload


def error_response(
    request: Request,
    *,
    status_code: int,
    detail: object,
    code: str | None = None,
    retryable: bool | None = None,
) -> JSONResponse:
    """Build a JSON error response carrying the request correlation id."""
    request_id = _get_request_id(request)
    response = JSONResponse(
        status_code=status_code,
        content=_error_payload(
            detail=jsonable_encoder(detail),
            request_id=request_id,
            code=code,
            retryable=retryable,
        ),
    )
    if request_id is not None:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        msg = "Expected RequestValidationError"
        raise TypeError(msg)
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=_json_safe(exc.errors()),
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, ResponseValidationError):
        msg = "Expected ResponseValidationError"
        raise TypeError(msg)
    logger.error(
        "http.response.validation_failed",
        extra={"path": request.url.path, "request_id": _get_request_id(request)},
    )
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        msg = "Expected StarletteHTTPException"
        raise TypeError(msg)
    response = error_response(request, status_code=exc.status_code, detail=exc.detail)
    if exc.headers:
        for key, value in exc.headers.items():
            response.headers[key] = value
    return response


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "http.request.unhandled_exception",
        extra={
            "path": request.url.path,
            "request_id": _get_request_id(request),
            "error": str(exc),
        },
    )
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


def install_error_handling(app: FastAPI) -> None:
    """Attach request-id middleware, request timing logs, and JSON error handlers."""

    @app.middleware("http")
    async def _request_context(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        supplied = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        request_id = supplied or uuid4().hex
        request.state.request_id = request_id

        started = perf_counter()
        response = await call_next(request)
        duration_ms = int((perf_counter() - started) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id

        path = request.url.path
        if path in _HEALTH_PATHS and not settings.request_log_include_health:
            return response
        context = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "request_id": request_id,
        }
        if duration_ms >= settings.request_log_slow_ms:
            logger.warning(
                "http.request.slow",
                extra={**context, "slow_threshold_ms": settings.request_log_slow_ms},
            )
        else:
            logger.info("http.request.complete", extra=context)
        return response

    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
