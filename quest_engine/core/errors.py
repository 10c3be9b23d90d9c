"""
Engine error types and their HTTP rendering.

Every error response has the same body:
    {"error": {"code", "message", "request_id", ...}, "detail": message}
and carries the request id in the x-request-id header.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quest_engine.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.request_id = request_id

    def details(self) -> Dict[str, Any]:
        """Extra fields rendered inside the error object."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class StaleInstanceError(ConflictError):
    """The challenge instance changed since it was read (version mismatch)."""
    code = "stale_instance"


class QuestRejectedError(AppError):
    """A completion attempt failed validation. The code is the rejection reason."""
    code = "quest_rejected"
    status_code = 409


class CollaboratorError(AppError):
    """A sub-flow writer reported failure; nothing was appended to the ledger."""
    code = "collaborator_failure"
    status_code = 422

    def __init__(self, message: str, *, already_completed: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.already_completed = already_completed

    def details(self) -> Dict[str, Any]:
        return {"already_completed": self.already_completed}


class StoreError(AppError):
    """Persistence failed. Re-read state and retry the whole attempt."""
    code = "store_error"
    status_code = 503


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    error = {"code": code, "message": message, "request_id": request_id, **(details or {})}
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        f"{exc.code}: {exc.message}",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code, "path": request.url.path},
    )
    return error_response(rid, exc.status_code, exc.code, exc.message, exc.details())


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = str(exc.detail) if exc.detail else "HTTP error"
    logger.warning(message, extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(rid, exc.status_code, code, message)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    problems = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.info("Request failed validation", extra={"request_id": rid, "error_code": "validation_error", "status": 422})
    return error_response(rid, 422, "validation_error", "Request validation failed", {"fields": problems})


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("Unhandled exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(rid, 500, "internal_error", "Unexpected error")
