"""
Station rainfall package.

This module provides:
- The rain_readings ORM table and the AccumulatedSnapshot value type
- Rolling-window accumulation (24h, 3d, 7d, 15d, 30d, 45d) per calendar day
- Async repository queries over the reading store
- Service functions (``stations.service``) that build accumulated series
  and station forecasts
"""

from .models import AccumulatedSnapshot, RainReading, ReadingPoint
from .accumulation import ACCUMULATION_WINDOWS, accumulate_windows, daily_totals
from .repository import RainReadingRepository

__all__ = [
    "AccumulatedSnapshot",
    "RainReading",
    "ReadingPoint",
    "ACCUMULATION_WINDOWS",
    "accumulate_windows",
    "daily_totals",
    "RainReadingRepository",
]
