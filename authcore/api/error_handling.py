from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import get_logger
from authcore.service.errors import ServiceError
from authcore.storage.errors import ConstraintViolation, StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    502: "provider_error",
}

_INTERNAL_ERROR_MESSAGE = "internal server error"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
    )


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _envelope_error(detail: Any) -> Optional[dict]:
    """Return the ``error`` object of an envelope-shaped HTTPException detail."""
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        return detail["error"]
    return None


async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    # kind and reason explain the failure to operators; clients get the uniform message
    _log_failure(
        request,
        "service_error",
        exc.status_code,
        error_code=exc.error_code,
        kind=exc.kind,
        reason=exc.reason,
    )
    return _error_response(exc.status_code, exc.message, exc.detail or None, exc.error_code)


async def handle_constraint_violation(
    request: Request, exc: ConstraintViolation
) -> JSONResponse:
    _log_failure(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
    return _error_response(409, "conflict", code="conflict")


async def handle_storage_error(request: Request, exc: StorageError) -> JSONResponse:
    _log_failure(request, "storage_error", 500, operation=exc.operation, error=exc.message)
    return _error_response(500, _INTERNAL_ERROR_MESSAGE, code="server_error")


async def handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    _log_failure(request, "request_validation_failed", 400, error_count=len(details))
    return _error_response(400, "invalid request", details, "validation_error")


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    error = _envelope_error(exc.detail)
    if error is not None:
        # Built by routes._http_error()
        message = error.get("message", "http error")
        code = error.get("code")
        _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, error.get("details"), code)
    # Raised by routing (unknown path, wrong method)
    message = exc.detail if isinstance(exc.detail, str) else "http error"
    if exc.status_code >= 500:
        _log_failure(request, "http_error", exc.status_code, message=message)
    return _error_response(exc.status_code, message)


async def handle_uncaught(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return _error_response(500, _INTERNAL_ERROR_MESSAGE, code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the error envelope."""
    app.add_exception_handler(ServiceError, handle_service_error)
    app.add_exception_handler(ConstraintViolation, handle_constraint_violation)
    app.add_exception_handler(StorageError, handle_storage_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_uncaught)
