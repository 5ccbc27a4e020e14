"""
Domain error taxonomy and the exception handlers that turn it into the
JSON error envelope.

Services raise these; routes never build error responses by hand.
"""
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException

from .config import settings


log = structlog.get_logger(__name__)


class DomainError(Exception):
    code = "ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationFailed(DomainError):
    code = "VALIDATION_FAILED"
    status_code = 400


class ConflictOrDuplicate(DomainError):
    code = "CONFLICT"
    status_code = 409


class InsufficientStock(DomainError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409


class PreconditionNotMet(DomainError):
    """Raised when a completion or state transition is attempted before its
    required checks pass. ``reason`` is the human readable cause."""

    code = "PRECONDITION_NOT_MET"
    status_code = 422

    @property
    def reason(self) -> str:
        return self.message


class Unauthorized(DomainError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(DomainError):
    code = "FORBIDDEN"
    status_code = 403


class Internal(DomainError):
    code = "INTERNAL"
    status_code = 500


_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "PRECONDITION_NOT_MET",
    429: "RATE_LIMITED",
}


def error_body(message: str, code: str, details: Optional[Any] = None) -> dict:
    body = {"success": False, "message": message, "code": code}
    if details is not None:
        body["details"] = details
    return body


async def _domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        log.error("domain_error", code=exc.code, error=exc.message, path=request.url.path)
    else:
        log.info("domain_error", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_body(exc.message, exc.code, exc.details)),
    )


async def _http_exception_handler(request: Request, exc: HTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message, _HTTP_CODES.get(exc.status_code, "ERROR")),
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", []) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(error_body("Validation failed", ValidationFailed.code, details)),
    )


async def _unhandled_exception_handler(request: Request, exc: Exception):
    log.exception("unhandled_error", path=request.url.path, method=request.method)
    message = str(exc) if settings.environment == "dev" else "Internal server error"
    return JSONResponse(status_code=500, content=error_body(message, Internal.code))


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
