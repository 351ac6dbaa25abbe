"""
Async queries over the rain_readings table.

The repository is the only blocking I/O step in front of the forecast
engine. Query failures are wrapped into DataAccessError; retry policy, if
any, belongs to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.errors import DataAccessError
from backend.app.stations.models import RainReading, ReadingPoint

logger = logging.getLogger(__name__)


class RainReadingRepository:
    """Read/maintenance access to raw station readings."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def earliest_reading_at(self, station_code: str) -> Optional[datetime]:
        """Timestamp of the first reading ever stored for the station."""
        stmt = select(func.min(RainReading.measured_at)).where(
            RainReading.station_code == station_code
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise DataAccessError("earliest_reading_at", str(e), station_code=station_code) from e
        return result.scalar_one_or_none()

    async def readings_between(
        self,
        station_code: str,
        start: datetime,
        end: datetime,
    ) -> List[ReadingPoint]:
        """Readings with start <= measured_at < end, oldest first."""
        stmt = (
            select(RainReading.measured_at, RainReading.value_mm)
            .where(
                RainReading.station_code == station_code,
                RainReading.measured_at >= start,
                RainReading.measured_at < end,
            )
            .order_by(RainReading.measured_at)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise DataAccessError("readings_between", str(e), station_code=station_code) from e
        return [ReadingPoint(measured_at=row.measured_at, value_mm=row.value_mm) for row in result]

    async def purge_corrupted(
        self,
        station_code: Optional[str] = None,
        max_mm: float = settings.MAX_READING_MM,
    ) -> int:
        """Delete readings outside [0, max_mm]. Returns the number removed."""
        stmt = delete(RainReading).where(
            or_(RainReading.value_mm < 0, RainReading.value_mm > max_mm)
        )
        if station_code is not None:
            stmt = stmt.where(RainReading.station_code == station_code)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise DataAccessError("purge_corrupted", str(e), station_code=station_code) from e
        removed = result.rowcount or 0
        logger.info(
            "Purged %d corrupted readings (station=%s)",
            removed, station_code or "all",
            extra={"station_code": station_code, "dropped_readings": removed},
        )
        return removed
