"""
Pydantic schemas for the station rainfall API.

Separated from the route handlers so they are reusable across the
codebase (background workers, tests). Field names follow the published
wire format (``cod_estacao``, ``chuva_30d``, ``probabilidadeChuva`` ...),
which downstream consumers depend on verbatim.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.ml.rainfall_outlook import RainfallCategory, Trend
from backend.app.stations.models import AccumulatedSnapshot


# ---------------------------------------------------------------------------
# Accumulated series
# ---------------------------------------------------------------------------

class AccumulatedSnapshotIn(BaseModel):
    """One accumulated snapshot supplied by the caller."""
    cod_estacao: str = Field(..., min_length=1, examples=["261000402A"])
    snapshot_at: datetime = Field(..., description="Snapshot day (ISO-8601, naive = UTC)")
    chuva_24h: float = Field(0.0, allow_inf_nan=False)
    chuva_3d: float = Field(0.0, allow_inf_nan=False)
    chuva_7d: float = Field(0.0, allow_inf_nan=False)
    chuva_15d: float = Field(0.0, allow_inf_nan=False)
    chuva_30d: float = Field(0.0, allow_inf_nan=False)
    chuva_45d: float = Field(0.0, allow_inf_nan=False)

    def to_snapshot(self) -> AccumulatedSnapshot:
        return AccumulatedSnapshot(
            station_code=self.cod_estacao,
            snapshot_at=self.snapshot_at,
            rain_24h=self.chuva_24h,
            rain_3d=self.chuva_3d,
            rain_7d=self.chuva_7d,
            rain_15d=self.chuva_15d,
            rain_30d=self.chuva_30d,
            rain_45d=self.chuva_45d,
        )


class AccumulatedSnapshotOut(BaseModel):
    cod_estacao: str
    snapshot_at: str
    chuva_24h: float
    chuva_3d: float
    chuva_7d: float
    chuva_15d: float
    chuva_30d: float
    chuva_45d: float


class AccumulatedSeriesResponse(BaseModel):
    """Response for GET /api/v1/stations/{station_code}/accumulated."""
    success: bool = True
    data: List[AccumulatedSnapshotOut]
    total: int


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------

class ForecastRequest(BaseModel):
    """Request body for POST /api/v1/forecast."""
    serie: List[AccumulatedSnapshotIn] = Field(
        ...,
        max_length=20000,
        description="Accumulated snapshots of one station, in any order",
    )
    reference_time: Optional[datetime] = Field(
        default=None,
        description="Reference moment for recency windows (default: now, UTC)",
    )

    @field_validator("serie")
    @classmethod
    def single_station(cls, v: List[AccumulatedSnapshotIn]) -> List[AccumulatedSnapshotIn]:
        codes = {s.cod_estacao for s in v}
        if len(codes) > 1:
            raise ValueError(f"serie must belong to a single station, got {sorted(codes)}")
        return v


class ConfidenceIntervalOut(BaseModel):
    min: float
    max: float


class NextMonthOut(BaseModel):
    estimativaChuva: float = Field(..., ge=0, le=300)
    categoria: RainfallCategory
    intervaloConfianca: ConfidenceIntervalOut


class MethodologyOut(BaseModel):
    algoritmo: str
    amostras: int
    periodoAnalise: str
    factorSazonalidade: float


class RainfallOutlookOut(BaseModel):
    """Next-month outlook in the published wire shape."""
    probabilidadeChuva: int = Field(..., ge=0, le=100)
    tendencia: Trend
    acuracia: float
    confianca: int
    mediaHistorica30d: float
    mediaHistorica45d: float
    proximoMes: NextMonthOut
    metodologia: MethodologyOut


class CategoryOut(BaseModel):
    categoria: RainfallCategory
    min_mm: float
    max_mm: Optional[float] = Field(None, description="Exclusive upper bound; null = open-ended")


class CategoriesResponse(BaseModel):
    categories: List[CategoryOut]


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

class PurgeResponse(BaseModel):
    """Response for DELETE /api/v1/stations/readings/corrupted."""
    success: bool = True
    removed: int
    message: str
