"""
Errors raised by the rainfall service and the handlers that render them.

Every error leaves the API with the same body::

    {"error": {"code": "MALFORMED_SERIES", "message": "...", "status": 422,
               "details": {"index": 3, "field": "rain_30d"}}}

A short history is not an error: the outlook engine answers it with the
minimal low-confidence forecast.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class RainfallAPIError(Exception):
    """Base of the service errors; subclasses pin the HTTP status and code."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(RainfallAPIError):
    """Bad query parameters, e.g. a start date after the end date."""

    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, **details)


class MalformedSeriesError(RainfallAPIError):
    """
    A snapshot of the accumulated series cannot be sorted or read as numbers.

    Points at an upstream data bug; the engine never retries or repairs it.
    """

    status_code = 422
    error_code = "MALFORMED_SERIES"


class DataAccessError(RainfallAPIError):
    """The reading store failed (PostgreSQL down, query error)."""

    status_code = 503
    error_code = "DATA_ACCESS_ERROR"

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            f"Reading store '{operation}' failed: {message}",
            operation=operation, **details,
        )


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"code": code, "message": message, "status": status_code}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


def _request_problems(exc: RequestValidationError) -> List[Dict[str, str]]:
    # pydantic error ctx may hold exception objects, keep the JSON-safe parts
    return [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(RainfallAPIError)
    async def rainfall_error(request: Request, exc: RainfallAPIError):
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message,
            extra={"status_code": exc.status_code},
        )
        return error_response(exc.status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        problems = _request_problems(exc)
        logger.info(
            "Rejected %s %s: %d invalid field(s)", request.method, request.url.path, len(problems),
        )
        return error_response(422, "INVALID_REQUEST", "Request validation failed", {"errors": problems})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(
            "Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path,
            exc_info=exc,
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return error_response(500, "INTERNAL_ERROR", message)
