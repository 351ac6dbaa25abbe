"""
Health report for ``/health``.

Two dependencies are checked. The reading store is required: when it is
unreachable the service is unhealthy and readiness answers 503. The
Redis series cache only speeds up repeated requests, so a failing cache
degrades the report, and a disabled cache is not contacted at all.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.cache import ping_redis
from backend.app.core.config import settings
from backend.app.core.database import engine

logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = [HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNHEALTHY]


@dataclass
class DependencyCheck:
    """Outcome of checking one dependency."""
    dependency: str
    status: HealthStatus = HealthStatus.HEALTHY
    detail: str = ""
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependency": self.dependency,
            "status": self.status.value,
            "detail": self.detail,
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass
class HealthReport:
    checks: List[DependencyCheck] = field(default_factory=list)

    @property
    def status(self) -> HealthStatus:
        return max((c.status for c in self.checks), key=_SEVERITY.index, default=HealthStatus.HEALTHY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - _STARTED, 1),
            "checks": [c.to_dict() for c in self.checks],
        }


async def check_reading_store() -> DependencyCheck:
    check = DependencyCheck("reading_store")
    t0 = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        check.detail = settings.DATABASE_URL.rsplit("@", 1)[-1]
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Reading store unreachable: %s", e)
        check.status = HealthStatus.UNHEALTHY
        check.detail = str(e)
    check.latency_ms = (time.perf_counter() - t0) * 1000
    return check


async def check_series_cache() -> DependencyCheck:
    check = DependencyCheck("series_cache")
    if not settings.SERIES_CACHE_ENABLED:
        check.detail = "disabled"
        return check
    t0 = time.perf_counter()
    try:
        await ping_redis()
        check.detail = f"ttl={settings.SERIES_CACHE_TTL}s"
    except (RedisError, OSError) as e:
        logger.warning("Series cache unreachable: %s", e)
        check.status = HealthStatus.DEGRADED
        check.detail = str(e)
    check.latency_ms = (time.perf_counter() - t0) * 1000
    return check


async def run_health_check() -> HealthReport:
    return HealthReport(checks=[await check_reading_store(), await check_series_cache()])
