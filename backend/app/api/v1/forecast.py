"""
FastAPI endpoints for the stateless rainfall outlook engine.

Routes:
    POST /api/v1/forecast             — Outlook for a caller-supplied series
    GET  /api/v1/forecast/categories  — Rainfall category thresholds
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter

from backend.app.api.schemas import (
    CategoriesResponse,
    CategoryOut,
    ForecastRequest,
    RainfallOutlookOut,
)
from backend.app.ml.rainfall_outlook import (
    CATEGORY_THRESHOLDS,
    RainfallCategory,
    compute_forecast,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/forecast",
    tags=["forecast"],
)


@router.post("", response_model=RainfallOutlookOut, summary="Next-month rainfall outlook")
def forecast_series(req: ForecastRequest) -> RainfallOutlookOut:
    """
    Run the outlook on an accumulated series supplied in the body.

    Fewer than 30 snapshots yield the minimal outlook; snapshots may be
    sent in any order. Sync handler: FastAPI runs it in the worker
    threadpool, off the event loop.
    """
    t0 = time.perf_counter()
    series = [s.to_snapshot() for s in req.serie]

    outlook = compute_forecast(series, now=req.reference_time)

    logger.debug(
        "Outlook for %d snapshots computed in %.1fms",
        len(series), (time.perf_counter() - t0) * 1000,
    )
    return RainfallOutlookOut.model_validate(outlook.to_dict())


@router.get("/categories", response_model=CategoriesResponse, summary="List rainfall categories")
async def list_categories() -> CategoriesResponse:
    """Return the [min, max) estimate range of every category."""
    categories = []
    lower = 0.0
    for upper, category in CATEGORY_THRESHOLDS:
        categories.append(CategoryOut(categoria=category, min_mm=lower, max_mm=upper))
        lower = upper
    categories.append(CategoryOut(categoria=RainfallCategory.VERY_HIGH, min_mm=lower, max_mm=None))
    return CategoriesResponse(categories=categories)
