"""Structured error responses for the audit API.

Every error leaves the API in one envelope:

    {
        "error": {
            "code": "VALIDATION_ERROR",
            "message": "Human-readable description",
            "details": [...optional field-level errors...],
            "request_id": "abc-123"
        }
    }
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Error codes returned in the envelope."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    UNSUPPORTED_LANGUAGE = "UNSUPPORTED_LANGUAGE"
    AUDIT_NOT_FINISHED = "AUDIT_NOT_FINISHED"


# ── Error Schemas ────────────────────────────────────────────────────────────


class FieldError(BaseModel):
    field: str
    message: str
    type: str


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: list[FieldError] | list[dict[str, Any]] | None = None
    request_id: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorEnvelope


_STATUS_TO_CODE: dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.METHOD_NOT_ALLOWED,
    409: ErrorCode.CONFLICT,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    422: ErrorCode.VALIDATION_ERROR,
    500: ErrorCode.INTERNAL_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def request_id_of(request: Request) -> str | None:
    """Request ID set by RequestIDMiddleware, or the client's header."""
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")


def error_response(
    request: Request,
    status_code: int,
    code: ErrorCode | str,
    message: str,
    details: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorEnvelope(
            code=code.value if isinstance(code, ErrorCode) else code,
            message=message,
            details=details,
            request_id=request_id_of(request),
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ── Exception Handlers ──────────────────────────────────────────────────────


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Submission validation errors (bad thresholds, unknown analyzers, language)."""
    details = []
    for err in exc.errors():
        loc = err.get("loc", [])
        field = ".".join(str(part) for part in loc if part != "body")
        details.append(
            FieldError(
                field=field or "unknown",
                message=err.get("msg", "Invalid value"),
                type=err.get("type", "value_error"),
            ).model_dump()
        )
    code = ErrorCode.VALIDATION_ERROR
    if any(d["field"].endswith("language") and "Unsupported" in d["message"] for d in details):
        code = ErrorCode.UNSUPPORTED_LANGUAGE
    return error_response(
        request, 422, code,
        f"Request validation failed: {len(details)} error(s)", details,
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code = _STATUS_TO_CODE.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return error_response(
        request, exc.status_code, code, str(exc.detail) if exc.detail else code.value,
    )


async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Log the full traceback; return a generic error."""
    logger.exception(
        "Unhandled exception on %s %s: %s", request.method, request.url.path, exc,
        extra={"request_id": request_id_of(request)},
    )
    return error_response(
        request, 500, ErrorCode.INTERNAL_ERROR,
        "An internal server error occurred. Please try again later.",
    )


# ── Domain errors ────────────────────────────────────────────────────────────


class AuditEngineAPIError(Exception):
    """Domain-specific API error with structured code + message."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: list[dict[str, Any]] | None = None,
    ):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


async def audit_engine_error_handler(request: Request, exc: AuditEngineAPIError) -> JSONResponse:
    return error_response(request, exc.status_code, exc.code, exc.message, exc.details)


def register_error_handlers(app: Any) -> None:
    """Register all structured error handlers on a FastAPI app."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(AuditEngineAPIError, audit_engine_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
