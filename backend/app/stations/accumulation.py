"""
accumulation.py — Rolling-window rainfall accumulation per station.

Turns raw station readings into one AccumulatedSnapshot per calendar day.

Rainfall Accumulation — How It Works
======================================
Readings arrive at irregular sub-daily intervals. They are first summed
per UTC calendar day, then each snapshot day D gets six trailing totals:

    rain_24h = total[D]
    rain_3d  = total[D-2] + total[D-1] + total[D]
    rain_7d  = Σ total[D-6 … D]
    rain_15d = Σ total[D-14 … D]
    rain_30d = Σ total[D-29 … D]
    rain_45d = Σ total[D-44 … D]

i.e. every day strictly after (D − N days) up to and including D.
Days without readings contribute 0.

Data quality
============
Readings outside [0, MAX_READING_MM] are corrupted sensor output. They are
dropped here (the caller logs a warning with the count) and never reach
the daily totals.

Everything in this module is pure: no I/O, no clock access.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from backend.app.core.config import settings
from backend.app.stations.models import AccumulatedSnapshot, ReadingPoint


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Snapshot field → trailing window length in days
ACCUMULATION_WINDOWS: Dict[str, int] = {
    "rain_24h": 1,
    "rain_3d": 3,
    "rain_7d": 7,
    "rain_15d": 15,
    "rain_30d": 30,
    "rain_45d": 45,
}

LONGEST_WINDOW_DAYS = max(ACCUMULATION_WINDOWS.values())


# ---------------------------------------------------------------------------
# Reading validation
# ---------------------------------------------------------------------------

def is_valid_reading(value_mm: Optional[float], max_mm: float = settings.MAX_READING_MM) -> bool:
    """True when the measurement is a finite value inside [0, max_mm]."""
    if value_mm is None:
        return False
    return math.isfinite(value_mm) and 0.0 <= value_mm <= max_mm


def split_valid_readings(
    readings: Iterable[ReadingPoint],
    max_mm: float = settings.MAX_READING_MM,
) -> Tuple[List[ReadingPoint], int]:
    """Return (valid readings, number of corrupted readings dropped)."""
    valid: List[ReadingPoint] = []
    dropped = 0
    for reading in readings:
        if is_valid_reading(reading.value_mm, max_mm):
            valid.append(reading)
        else:
            dropped += 1
    return valid, dropped


# ---------------------------------------------------------------------------
# Daily totals
# ---------------------------------------------------------------------------

def as_utc(ts: datetime) -> datetime:
    """Aware UTC timestamp (naive timestamps are taken as UTC)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def utc_day(ts: datetime) -> date:
    """Calendar day of a timestamp in UTC (naive timestamps are taken as UTC)."""
    return as_utc(ts).date()


def day_start(day: date) -> datetime:
    """Midnight UTC of a calendar day."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def daily_totals(readings: Iterable[ReadingPoint]) -> Dict[date, float]:
    """Sum millimetres per UTC calendar day."""
    totals: Dict[date, float] = {}
    for reading in readings:
        day = utc_day(reading.measured_at)
        totals[day] = totals.get(day, 0.0) + reading.value_mm
    return totals


# ---------------------------------------------------------------------------
# Range resolution
# ---------------------------------------------------------------------------

def resolve_date_range(
    start: Optional[datetime],
    end: Optional[datetime],
    earliest_reading: Optional[datetime],
    now: datetime,
    *,
    default_lookback_days: int = settings.DEFAULT_LOOKBACK_DAYS,
    no_data_lookback_days: int = settings.NO_DATA_LOOKBACK_DAYS,
) -> Tuple[date, date]:
    """
    Resolve the inclusive (first_day, last_day) of the snapshot series.

    Rules:
        • no start → earliest reading of the station, or one year back
          when the station has never reported
        • no end   → today
        • neither bound given → lookback capped to the most recent
          ``default_lookback_days``
    """
    last_day = utc_day(end) if end is not None else utc_day(now)

    if start is not None:
        first_day = utc_day(start)
    elif earliest_reading is not None:
        first_day = utc_day(earliest_reading)
    else:
        first_day = utc_day(now) - timedelta(days=no_data_lookback_days)

    if start is None and end is None:
        first_day = max(first_day, last_day - timedelta(days=default_lookback_days))

    return first_day, last_day


def reading_fetch_bounds(first_day: date, last_day: date) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) timestamp range of readings needed to fill
    every window of every snapshot between first_day and last_day.
    """
    fetch_start = day_start(first_day - timedelta(days=LONGEST_WINDOW_DAYS - 1))
    fetch_end = day_start(last_day + timedelta(days=1))
    return fetch_start, fetch_end


# ---------------------------------------------------------------------------
# Window accumulation
# ---------------------------------------------------------------------------

def window_total(totals: Dict[date, float], day: date, window_days: int) -> float:
    """Sum of daily totals for days in (day − window_days, day]."""
    return sum(
        totals.get(day - timedelta(days=offset), 0.0)
        for offset in range(window_days)
    )


def cap_date_range(
    first_day: date,
    last_day: date,
    limit: Optional[int] = settings.MAX_SNAPSHOTS,
) -> Tuple[date, date]:
    """Keep only the most recent ``limit`` days of [first_day, last_day]."""
    if limit is not None and limit > 0:
        first_day = max(first_day, last_day - timedelta(days=limit - 1))
    return first_day, last_day


def accumulate_windows(
    station_code: str,
    totals: Dict[date, float],
    first_day: date,
    last_day: date,
    *,
    limit: Optional[int] = settings.MAX_SNAPSHOTS,
) -> List[AccumulatedSnapshot]:
    """
    Build one snapshot per calendar day in [first_day, last_day].

    Returns snapshots newest first. When ``limit`` is set only the most
    recent ``limit`` days are generated.
    """
    if last_day < first_day:
        return []

    first_day, last_day = cap_date_range(first_day, last_day, limit)

    snapshots: List[AccumulatedSnapshot] = []
    day = last_day
    while day >= first_day:
        windows = {
            field_name: window_total(totals, day, n_days)
            for field_name, n_days in ACCUMULATION_WINDOWS.items()
        }
        snapshots.append(AccumulatedSnapshot(
            station_code=station_code,
            snapshot_at=day_start(day),
            **windows,
        ))
        day -= timedelta(days=1)

    return snapshots
