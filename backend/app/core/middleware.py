"""
Access logging for the rainfall API.

Each request gets a correlation id (taken from ``X-Request-ID`` when the
caller sends one) and one access line. Station routes also put the
station code into the log context, so the service and engine log lines
of that request carry it too.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_STATION_ROUTE = re.compile(r"^/api/v1/stations/(?P<code>[^/]+)/(?:accumulated|forecast)/?$")
_UNLOGGED = ("/docs", "/redoc", "/openapi.json", "/favicon.ico", "/health/live")


def station_code_from_path(path: str) -> Optional[str]:
    match = _STATION_ROUTE.match(path)
    return match.group("code") if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        station_code = station_code_from_path(path)

        context = {"request_id": request_id, "endpoint": path}
        if station_code:
            context["station_code"] = station_code
        set_request_context(**context)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._access_log(request, 500, started, station_code)
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            if station_code:
                response.headers["X-Station-Code"] = station_code
            if not path.startswith(_UNLOGGED):
                self._access_log(request, response.status_code, started, station_code)
            return response
        finally:
            set_request_context()

    @staticmethod
    def _access_log(request: Request, status: int, started: float, station_code: Optional[str]) -> None:
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
        extra = {"status_code": status, "duration_ms": elapsed_ms}
        if station_code:
            extra["station_code"] = station_code
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        logger.log(
            level, "%s %s -> %d (%.1fms)",
            request.method, request.url.path, status, elapsed_ms,
            extra=extra,
        )
