"""
Data models for station rainfall readings and accumulated snapshots.

═══════════════════════════════════════════════════════════════════════════
DATABASE SCHEMA
═══════════════════════════════════════════════════════════════════════════

Table: rain_readings
─────────────────────────────────────────────────────────────────────────────
| Column        | Type          | Description                             |
|---------------|---------------|-----------------------------------------|
| id            | SERIAL PK     | Auto-increment primary key              |
| station_code  | VARCHAR(32)   | Sensor station code (e.g. 261000402A)   |
| station_name  | VARCHAR(128)  | Human-readable station name             |
| state         | VARCHAR(2)    | Federative unit (UF)                    |
| measured_at   | TIMESTAMPTZ   | Reading timestamp                       |
| value_mm      | FLOAT         | Measured rainfall in mm                 |
| latitude      | FLOAT         | Station latitude                        |
| longitude     | FLOAT         | Station longitude                       |
| created_at    | TIMESTAMPTZ   | Ingestion time                          |
─────────────────────────────────────────────────────────────────────────────

Constraints:
- UNIQUE (station_code, measured_at) - ingestion is idempotent
- INDEX on (station_code, measured_at) for range queries

Readings outside [0, 1000] mm are corrupted sensor output. They are kept
in the table (ingestion is out of scope here) but never aggregated.

═══════════════════════════════════════════════════════════════════════════
ACCUMULATED SNAPSHOT
═══════════════════════════════════════════════════════════════════════════

One per (station, day): six trailing-window totals ending on that day.
Materialised per request from rain_readings, never persisted or mutated.
The wire names (cod_estacao, chuva_30d, ...) are kept for downstream
consumers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from backend.app.core.database import Base


class RainReading(Base):
    """Single raw rainfall measurement from a monitoring station."""

    __tablename__ = "rain_readings"

    __table_args__ = (
        UniqueConstraint("station_code", "measured_at", name="uq_station_measured_at"),
        Index("ix_rain_readings_station_time", "station_code", "measured_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_code: Mapped[str] = mapped_column(String(32), nullable=False)
    station_name: Mapped[Optional[str]] = mapped_column(String(128))
    state: Mapped[Optional[str]] = mapped_column(String(2))
    measured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value_mm: Mapped[float] = mapped_column(Float, nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<RainReading {self.station_code} "
            f"{self.measured_at.isoformat()} {self.value_mm}mm>"
        )


@dataclass(frozen=True)
class ReadingPoint:
    """Timestamp/value pair handed from the repository to the aggregator."""
    measured_at: datetime
    value_mm: float


@dataclass(frozen=True)
class AccumulatedSnapshot:
    """
    Accumulated rainfall for one station at one snapshot day.

    Every total is the sum of daily totals inside the trailing window that
    ends at ``snapshot_at`` (inclusive).
    """
    station_code: str
    snapshot_at: datetime
    rain_24h: float = 0.0
    rain_3d: float = 0.0
    rain_7d: float = 0.0
    rain_15d: float = 0.0
    rain_30d: float = 0.0
    rain_45d: float = 0.0

    def to_dict(self, precision: Optional[int] = 2) -> Dict[str, Any]:
        """
        Convert to the wire format.

        Totals are rounded to ``precision`` decimals for API responses;
        ``precision=None`` keeps full precision (cache entries).
        """
        def total(value: float) -> float:
            return value if precision is None else round(value, precision)

        return {
            "cod_estacao": self.station_code,
            "snapshot_at": self.snapshot_at.isoformat(),
            "chuva_24h": total(self.rain_24h),
            "chuva_3d": total(self.rain_3d),
            "chuva_7d": total(self.rain_7d),
            "chuva_15d": total(self.rain_15d),
            "chuva_30d": total(self.rain_30d),
            "chuva_45d": total(self.rain_45d),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccumulatedSnapshot":
        """Rebuild from the wire format (cache entries, request bodies)."""
        snapshot_at = data["snapshot_at"]
        if isinstance(snapshot_at, str):
            snapshot_at = datetime.fromisoformat(snapshot_at)
        if snapshot_at.tzinfo is None:
            snapshot_at = snapshot_at.replace(tzinfo=timezone.utc)
        return cls(
            station_code=data["cod_estacao"],
            snapshot_at=snapshot_at,
            rain_24h=float(data.get("chuva_24h", 0.0)),
            rain_3d=float(data.get("chuva_3d", 0.0)),
            rain_7d=float(data.get("chuva_7d", 0.0)),
            rain_15d=float(data.get("chuva_15d", 0.0)),
            rain_30d=float(data.get("chuva_30d", 0.0)),
            rain_45d=float(data.get("chuva_45d", 0.0)),
        )
