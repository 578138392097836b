# File: restgen/errors.py
"""
NexaFlow RestGen - Error Taxonomy & Centralised Error Rendering
=================================================================
Every request-time failure raised by the engine is an ``AppError`` (or a
subclass) carrying an HTTP status, a machine-readable ``code`` and optional
``meta``.  Operation code only *classifies* failures; rendering happens in
one place, the FastAPI exception handlers installed by
``register_error_handlers``.

``ConfigurationError`` is not an ``AppError``: it is raised while
routers are being assembled, before the server accepts traffic, and is never
rendered to an HTTP client.
"""

from __future__ import annotations

import logging
import re
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("restgen.errors")


# ---------------------------------------------------------------------------
# Base error
# ---------------------------------------------------------------------------


class AppError(Exception):
    """
    Operational error with an HTTP status attached.

    ``status`` is ``"fail"`` for client errors (4xx) and ``"error"`` for
    everything else.
    """

    default_status_code: int = 500
    default_code: str = "InternalServerError"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        meta: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message: str = message
        self.status_code: int = status_code or self.default_status_code
        self.meta: Dict[str, Any] = dict(meta or {})
        self.code: str = code or self.default_code
        self.status: str = "fail" if str(self.status_code).startswith("4") else "error"
        self.is_operational: bool = True

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": self.status,
            "message": self.message,
            "code": self.code,
        }
        if self.meta:
            body["meta"] = self.meta
        return body

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.status_code} {self.code}: {self.message}>"


# ---------------------------------------------------------------------------
# 400-class errors
# ---------------------------------------------------------------------------


class BadRequest(AppError):
    default_status_code = 400
    default_code = "BadRequest"


class MissingRequestQueryParameters(BadRequest):
    """Bulk update/delete requested without any real filter."""

    default_code = "MissingRequestQueryParameters"


class InvalidFilterMode(BadRequest):
    """A filter combination mode that is unknown or forbidden here."""

    default_code = "InvalidFilterMode"


class MissingArrayRequestBody(BadRequest):
    default_code = "MissingArrayRequestBody"


class MissingRequestBody(BadRequest):
    default_code = "MissingRequestBody"


class ValidationFailed(BadRequest):
    """Request body rejected by the configured validator."""

    default_code = "ValidationError"

    def __init__(
        self,
        message: str = "Invalid request body",
        errors: Optional[List[Dict[str, Any]]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, meta=meta)
        self.errors: List[Dict[str, Any]] = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


# ---------------------------------------------------------------------------
# Auth errors
# ---------------------------------------------------------------------------


class Unauthorized(AppError):
    default_status_code = 401
    default_code = "Unauthorized"


class Forbidden(AppError):
    default_status_code = 403
    default_code = "Forbidden"


# ---------------------------------------------------------------------------
# 404 / 409
# ---------------------------------------------------------------------------


class NotFound(AppError):
    """A single-record operation matched nothing."""

    default_status_code = 404
    default_code = "NotFound"


class NoRecordsAffected(NotFound):
    """A bulk update/delete matched zero rows."""

    default_code = "NoRecordsAffected"


class Conflict(AppError):
    default_status_code = 409
    default_code = "DuplicateResource"


# ---------------------------------------------------------------------------
# Startup-time errors
# ---------------------------------------------------------------------------


class ConfigurationError(Exception):
    """Fatal assembly-time misconfiguration (bad router, bad interceptor, ...)."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message: str = message
        self.context: Dict[str, Any] = dict(context or {})


# ---------------------------------------------------------------------------
# ORM error translation
# ---------------------------------------------------------------------------

_UNIQUE_RE: re.Pattern[str] = re.compile(
    r"UNIQUE constraint failed: (?:\w+\.)?(\w+)|Key \((\w+)\)=.*already exists",
    re.IGNORECASE,
)
_NOT_NULL_RE: re.Pattern[str] = re.compile(
    r"NOT NULL constraint failed: (?:\w+\.)?(\w+)|null value in column \"(\w+)\"",
    re.IGNORECASE,
)


def translate_integrity_error(exc: IntegrityError) -> AppError:
    """Map a database integrity violation onto a client-facing ``AppError``."""
    text: str = str(exc.orig) if exc.orig is not None else str(exc)

    unique = _UNIQUE_RE.search(text)
    if unique or "duplicate key" in text.lower():
        field_name: Optional[str] = None
        if unique:
            field_name = unique.group(1) or unique.group(2)
        message = (
            f"Duplicate value for field '{field_name}'."
            if field_name
            else "A record with the same unique value already exists."
        )
        return Conflict(message, meta={"field": field_name} if field_name else None)

    not_null = _NOT_NULL_RE.search(text)
    if not_null:
        field_name = not_null.group(1) or not_null.group(2)
        return BadRequest(
            f"Missing required field '{field_name}'.",
            meta={"field": field_name},
            code="MissingRequiredField",
        )

    if "foreign key" in text.lower():
        return BadRequest(
            "Referenced related record does not exist.",
            code="InvalidRelation",
        )

    return BadRequest("Database constraint violated.", code="ConstraintViolation")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _render(exc: AppError, environment: str) -> JSONResponse:
    if environment == "production" and not exc.is_operational:
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "message": "Internal server error, please try again later.",
                "code": "InternalServerError",
            },
        )
    body: Dict[str, Any] = exc.to_dict()
    if environment == "development":
        body["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return JSONResponse(status_code=exc.status_code, content=body)


def register_error_handlers(app: FastAPI, environment: str = "development") -> None:
    """
    Install the centralised error-to-response translator on *app*.

    Handles:
    - AppError: rendered with its own status and code
    - IntegrityError: translated, then rendered as an AppError
    - RequestValidationError: FastAPI's own parameter validation (400)
    - Exception: anything else becomes a non-operational 500
    """

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %r", request.method, request.url.path, exc)
        else:
            logger.debug("%s %s rejected: %r", request.method, request.url.path, exc)
        return _render(exc, environment)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        translated = translate_integrity_error(exc)
        logger.debug("%s %s integrity error: %r", request.method, request.url.path, translated)
        return _render(translated, environment)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors: List[Dict[str, Any]] = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return _render(ValidationFailed("Invalid request", errors=errors), environment)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s", request.method, request.url.path, exc_info=exc
        )
        wrapped = AppError(str(exc) or type(exc).__name__, 500)
        wrapped.is_operational = False
        wrapped.__traceback__ = exc.__traceback__
        return _render(wrapped, environment)


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "AppError",
    "BadRequest",
    "MissingRequestQueryParameters",
    "InvalidFilterMode",
    "MissingArrayRequestBody",
    "MissingRequestBody",
    "ValidationFailed",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "NoRecordsAffected",
    "Conflict",
    "ConfigurationError",
    "translate_integrity_error",
    "register_error_handlers",
]

logger.debug("restgen.errors loaded: %d public symbols.", len(__all__))
