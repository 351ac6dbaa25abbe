"""
FastAPI endpoints for per-station accumulated rainfall and outlooks.

Routes:
    GET    /api/v1/stations/{station_code}/accumulated  — Daily accumulated series
    GET    /api/v1/stations/{station_code}/forecast     — Next-month outlook
    DELETE /api/v1/stations/readings/corrupted          — Purge out-of-range readings
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.schemas import (
    AccumulatedSeriesResponse,
    AccumulatedSnapshotOut,
    PurgeResponse,
    RainfallOutlookOut,
)
from backend.app.core.config import settings
from backend.app.core.database import get_db
from backend.app.stations.repository import RainReadingRepository
from backend.app.stations.service import (
    forecast_station,
    get_accumulated_series,
    purge_corrupted_readings,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/stations",
    tags=["stations"],
)


# ── Dependencies ───────────────────────────────────────────────────


async def get_reading_repository(
    session: AsyncSession = Depends(get_db),
) -> RainReadingRepository:
    return RainReadingRepository(session)


# ── Endpoints ──────────────────────────────────────────────────────


@router.get(
    "/{station_code}/accumulated",
    response_model=AccumulatedSeriesResponse,
    summary="Accumulated rainfall series",
)
async def accumulated_series(
    station_code: str,
    start: Optional[datetime] = Query(None, description="First snapshot day (inclusive)"),
    end: Optional[datetime] = Query(None, description="Last snapshot day (inclusive)"),
    repository: RainReadingRepository = Depends(get_reading_repository),
) -> AccumulatedSeriesResponse:
    """
    One snapshot per day with 24h/3d/7d/15d/30d/45d totals, newest first.

    At most the 100 most recent days are returned. Without any bound the
    series covers the last 90 days.
    """
    series = await get_accumulated_series(repository, station_code, start, end)
    return AccumulatedSeriesResponse(
        success=True,
        data=[AccumulatedSnapshotOut(**s.to_dict()) for s in series],
        total=len(series),
    )


@router.get(
    "/{station_code}/forecast",
    response_model=RainfallOutlookOut,
    summary="Next-month rainfall outlook for a station",
)
async def station_forecast(
    station_code: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    repository: RainReadingRepository = Depends(get_reading_repository),
) -> RainfallOutlookOut:
    """
    Accumulate the station's readings and run the outlook on them.

    Short histories (< 30 days) still return 200 with the minimal,
    low-confidence outlook.
    """
    outlook = await forecast_station(repository, station_code, start, end)
    return RainfallOutlookOut.model_validate(outlook.to_dict())


@router.delete(
    "/readings/corrupted",
    response_model=PurgeResponse,
    summary="Delete readings outside the plausible range",
)
async def purge_corrupted(
    station_code: Optional[str] = Query(None, description="Limit to one station"),
    repository: RainReadingRepository = Depends(get_reading_repository),
) -> PurgeResponse:
    removed = await purge_corrupted_readings(repository, station_code)
    scope = f"station {station_code}" if station_code else "all stations"
    return PurgeResponse(
        success=True,
        removed=removed,
        message=(
            f"Removed {removed} readings outside [0, {settings.MAX_READING_MM:.0f}] mm "
            f"for {scope}"
        ),
    )
