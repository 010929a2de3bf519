"""Error taxonomy and FastAPI exception handlers.

Every failure leaves the service as the envelope
``{"status": "error", "message": ..., "code": ...}``. Transport failures of
the Physical Store and the catalog are logged with their context and reported
as 503 without internal paths; anything unexpected is a generic 500.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException

from objectstore.storage import StorageError

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Base for errors that map onto a structured HTTP response."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class NotFoundError(ObjectStoreError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ObjectStoreError):
    status_code = 409
    default_code = "CONFLICT"


class ValidationFailedError(ObjectStoreError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class UnauthorizedError(ObjectStoreError):
    status_code = 401
    default_code = "INVALID_TOKEN"


class AccessDeniedError(ObjectStoreError):
    """Explicit policy deny, or fail-closed when the oracle is unreachable."""

    status_code = 403
    default_code = "ACCESS_DENIED"

    def __init__(self, reason: str, policy_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.policy_id = policy_id


class ServiceUnavailableError(ObjectStoreError):
    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"


class InternalError(ObjectStoreError):
    status_code = 500
    default_code = "INTERNAL_ERROR"


def success(data: Any) -> Dict[str, Any]:
    return {"status": "success", "data": data}


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": message, "code": code},
    )


async def object_store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ObjectStoreError)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return error_response(exc.status_code, exc.code, exc.message)


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"
    return error_response(exc.status_code, f"HTTP_{exc.status_code}", message)


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Report pydantic failures by field name only, never echoing raw input."""
    assert isinstance(exc, RequestValidationError)
    fields = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        fields.append(".".join(loc) or "request")
    message = "Request validation failed"
    if fields:
        message += ": " + ", ".join(sorted(set(fields)))
    return error_response(422, "REQUEST_VALIDATION_FAILED", message)


async def storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Physical store failure on %s %s: %s", request.method, request.url.path, exc)
    return error_response(503, "SERVICE_UNAVAILABLE", "Object storage is temporarily unavailable")


async def catalog_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Catalog failure on %s %s: %s", request.method, request.url.path, exc)
    return error_response(503, "SERVICE_UNAVAILABLE", "Metadata catalog is temporarily unavailable")


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, type(exc).__name__)
    return error_response(500, "INTERNAL_ERROR", "An internal error occurred")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ObjectStoreError, object_store_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(OperationalError, catalog_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
