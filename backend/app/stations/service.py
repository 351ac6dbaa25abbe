"""
Station service — builds accumulated series and outlooks on demand.

Glue between the reading store, the pure accumulation functions and the
forecast engine. Each call is one independent request: nothing is kept
between calls except the optional Redis cache of serialised series.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from backend.app.core.cache import cache_clear_prefix, cache_get, cache_set
from backend.app.core.config import settings
from backend.app.core.errors import ValidationError
from backend.app.ml.rainfall_outlook import RainfallOutlook, compute_forecast
from backend.app.stations.accumulation import (
    accumulate_windows,
    as_utc,
    cap_date_range,
    daily_totals,
    reading_fetch_bounds,
    resolve_date_range,
    split_valid_readings,
)
from backend.app.stations.models import AccumulatedSnapshot
from backend.app.stations.repository import RainReadingRepository

logger = logging.getLogger(__name__)

SERIES_CACHE_PREFIX = "series:"


def _series_cache_key(station_code: str, first_day, last_day) -> str:
    return f"{SERIES_CACHE_PREFIX}{station_code}:{first_day.isoformat()}:{last_day.isoformat()}"


async def get_accumulated_series(
    repository: RainReadingRepository,
    station_code: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    use_cache: Optional[bool] = None,
) -> List[AccumulatedSnapshot]:
    """
    Daily accumulated snapshots for one station, newest first.

    Parameters
    ----------
    repository : RainReadingRepository
        Source of raw readings.
    station_code : str
        Station identifier.
    start, end : datetime, optional
        Inclusive date bounds. Missing bounds are resolved by
        ``resolve_date_range``.
    now : datetime, optional
        Reference moment; defaults to the current UTC time.
    use_cache : bool, optional
        Read/write the Redis series cache. Defaults to
        ``settings.SERIES_CACHE_ENABLED``.

    Returns
    -------
    list of AccumulatedSnapshot
        One snapshot per day of the range, capped to the most recent
        ``settings.MAX_SNAPSHOTS`` days. Days without valid readings
        count as zero. Empty only when the station has no readings.

    Raises
    ------
    ValidationError
        If ``start`` is after ``end``.
    DataAccessError
        If the reading store fails.
    """
    start = as_utc(start) if start is not None else None
    end = as_utc(end) if end is not None else None

    if start is not None and end is not None and start > end:
        raise ValidationError(
            "start must not be after end",
            field="start",
            start=start.isoformat(),
            end=end.isoformat(),
        )

    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    use_cache = settings.SERIES_CACHE_ENABLED if use_cache is None else use_cache
    t0 = time.perf_counter()

    earliest = await repository.earliest_reading_at(station_code)
    if earliest is None:
        logger.info(
            "Station %s has no readings", station_code,
            extra={"station_code": station_code},
        )
        return []

    first_day, last_day = cap_date_range(*resolve_date_range(start, end, earliest, now))
    cache_key = _series_cache_key(station_code, first_day, last_day)

    if use_cache:
        cached = await cache_get(cache_key)
        if cached is not None:
            logger.debug("Series cache hit: %s", cache_key)
            return [AccumulatedSnapshot.from_dict(row) for row in cached]

    fetch_start, fetch_end = reading_fetch_bounds(first_day, last_day)
    readings = await repository.readings_between(station_code, fetch_start, fetch_end)

    valid, dropped = split_valid_readings(readings)
    if dropped:
        logger.warning(
            "Dropped %d corrupted readings for station %s (outside [0, %.0f] mm)",
            dropped, station_code, settings.MAX_READING_MM,
            extra={"station_code": station_code, "dropped_readings": dropped},
        )

    snapshots = accumulate_windows(station_code, daily_totals(valid), first_day, last_day)

    if use_cache:
        await cache_set(cache_key, [s.to_dict(precision=None) for s in snapshots])

    logger.info(
        "Accumulated %d snapshots for station %s from %d readings",
        len(snapshots), station_code, len(valid),
        extra={
            "station_code": station_code,
            "samples": len(snapshots),
            "duration_ms": round((time.perf_counter() - t0) * 1000, 1),
        },
    )
    return snapshots


async def forecast_station(
    repository: RainReadingRepository,
    station_code: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    use_cache: Optional[bool] = None,
) -> RainfallOutlook:
    """Accumulate the station's series and run the outlook engine on it."""
    now = now or datetime.now(timezone.utc)
    series = await get_accumulated_series(
        repository, station_code, start, end, now=now, use_cache=use_cache,
    )
    return compute_forecast(series, now=now)


async def purge_corrupted_readings(
    repository: RainReadingRepository,
    station_code: Optional[str] = None,
) -> int:
    """Delete out-of-range readings and invalidate cached series."""
    removed = await repository.purge_corrupted(station_code)
    if removed and settings.SERIES_CACHE_ENABLED:
        prefix = SERIES_CACHE_PREFIX if station_code is None else f"{SERIES_CACHE_PREFIX}{station_code}:"
        cleared = await cache_clear_prefix(prefix)
        logger.info("Invalidated %d cached series", cleared)
    return removed
