"""
rainfall_outlook.py — Next-month rainfall outlook for a monitoring station.

Given the accumulated-rainfall snapshots of one station (see
``stations.accumulation``), produces:
    • a point estimate of rainfall for the next month (mm) + interval
    • a categorical trend       (aumento / diminuicao / estavel)
    • a probability of rain     (0–100 %)
    • model accuracy and confidence self-scores

The engine is a deterministic, single-pass statistical computation:
stateless module-level functions over an in-memory list, no I/O, no
shared state. Identical input (in any order) and the same reference
``now`` always give bit-identical output.

═══════════════════════════════════════════════════════════════════════════
PIPELINE
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────────────────────────────────────┐
    │  prepare_series: validate + sort ascending           │
    │  < 30 snapshots  ──→  minimal_forecast (degraded)    │
    └──────────────┬───────────────────────────────────────┘
                   ▼
    ┌──────────────────────────────────────────────────────┐
    │  downsample_series (only > 1000 snapshots)           │
    │  last 6 months in full, 1-in-7 for older history     │
    └──────────────┬───────────────────────────────────────┘
                   ▼
    ┌──────────────────────────────────────────────────────┐
    │  TREND (linear regression, last 60)                  │
    │  SEASONALITY (current month ± 1)                     │
    │  MOVING AVERAGES (30/45/90 d, capped, IQR-cleaned)   │
    │  VARIABILITY (mean, stddev, CV)                      │
    └──────────────┬───────────────────────────────────────┘
                   ▼
    ┌──────────────────────────────────────────────────────┐
    │  PREDICTIVE MODEL                                    │
    │   est = (0.6·m30 + 0.4·m45) · season [+ 15·slope]    │
    │   P   = heuristic(est, trend, season, consistency)   │
    │   CI  = est ± min(σ, est/2)                          │
    └──────────────┬───────────────────────────────────────┘
                   ▼
    ┌──────────────────────────────────────────────────────┐
    │  COHERENCE: |P − hist. freq| > 15 → 0.6·P + 0.4·freq │
    │  ACCURACY (consistency + backtest), CONFIDENCE       │
    └──────────────────────────────────────────────────────┘

The weights, clamps and thresholds below are empirically chosen tuning
parameters kept for compatibility with previously published outlooks.

Error policy:
    • Too little history      → minimal forecast, never an exception
    • Zero means / variance   → neutral ratios (1 or 0) inline
    • Unparseable timestamps or non-numeric totals → MalformedSeriesError
"""

from __future__ import annotations

import calendar
import dataclasses
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from numbers import Real
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from backend.app.core.errors import MalformedSeriesError
from backend.app.stations.models import AccumulatedSnapshot

logger = logging.getLogger(__name__)


# ===================================================================
#  CONSTANTS
# ===================================================================

MIN_FULL_PIPELINE_SAMPLES = 30

# Downsampling
DOWNSAMPLE_THRESHOLD = 1000
DOWNSAMPLE_RECENT_MONTHS = 6
DOWNSAMPLE_STRIDE = 7

# Trend regression
TREND_WINDOW = 60
TREND_MIN_POINTS = 10
TREND_SLOPE_THRESHOLD = 0.1
TREND_R2_THRESHOLD = 0.1

# Seasonality
SEASONAL_MIN_SAMPLES = 5

# Moving averages / outliers
RAIN_30D_CAP_MM = 500.0
RAIN_45D_CAP_MM = 750.0
IQR_MIN_SAMPLES = 4
IQR_FENCE = 1.5

# Predictive model
WEIGHT_MEAN_30D = 0.6
WEIGHT_MEAN_45D = 0.4
MEAN_CAP_MM = 500.0
SEASONAL_FACTOR_MIN = 0.5
SEASONAL_FACTOR_MAX = 2.0
TREND_ADJUST_MIN_R2 = 0.3
TREND_ADJUST_MAX_SLOPE = 10.0
TREND_PROJECTION_STEPS = 15
ESTIMATE_MAX_MM = 300.0

# Probability heuristic
PROBABILITY_BASE = 35.0
PROBABILITY_RAIN_MAX_BONUS = 40.0
PROBABILITY_RAIN_LOG_SCALE = 15.0
PROBABILITY_TREND_UP = 15.0
PROBABILITY_TREND_DOWN = -10.0
PROBABILITY_MIN = 5.0
PROBABILITY_MAX = 95.0

# Coherence validation
COHERENCE_SIMILARITY_BAND = 0.3   # ±30 % of the estimate
COHERENCE_TOLERANCE = 15.0        # percentage points
COHERENCE_MODEL_WEIGHT = 0.6
COHERENCE_HISTORY_WEIGHT = 0.4

# Accuracy self-score
ACCURACY_BASE = 70.0
ACCURACY_MIN = 45.0
ACCURACY_MAX = 88.0
ACCURACY_REPORTED_MIN = 50.0
ACCURACY_REPORTED_MAX = 95.0
BACKTEST_MIN_SAMPLES = 40
BACKTEST_MAX_POINTS = 10
BACKTEST_BAND_START = 0.3
BACKTEST_BAND_WIDTH = 0.4
BACKTEST_HOLDOUT = 5
BACKTEST_MIN_TOLERANCE_MM = 20.0
BACKTEST_RELATIVE_TOLERANCE = 0.4
SIMPLE_FORECAST_WINDOW = 20

# Confidence self-score
CONFIDENCE_BASE = 40.0
CONFIDENCE_MIN = 20.0
CONFIDENCE_MAX = 85.0

ALGORITHM_LABEL = "Análise Temporal Avançada + Padrões Sazonais + Regressão Linear"
MINIMAL_ALGORITHM_LABEL = "Modelo Simplificado - Dados Limitados"

_RAIN_FIELDS = ("rain_24h", "rain_3d", "rain_7d", "rain_15d", "rain_30d", "rain_45d")


class Trend(str, Enum):
    """Direction of the recent 30-day accumulation."""
    INCREASING = "aumento"
    DECREASING = "diminuicao"
    STABLE = "estavel"


class RainfallCategory(str, Enum):
    """Next-month rainfall class."""
    VERY_LOW = "muito_baixa"
    LOW = "baixa"
    NORMAL = "normal"
    HIGH = "alta"
    VERY_HIGH = "muito_alta"


# Upper bounds (exclusive), checked in order
CATEGORY_THRESHOLDS: List[Tuple[float, RainfallCategory]] = [
    (10.0, RainfallCategory.VERY_LOW),
    (30.0, RainfallCategory.LOW),
    (70.0, RainfallCategory.NORMAL),
    (120.0, RainfallCategory.HIGH),
]


# ===================================================================
#  DATA STRUCTURES
# ===================================================================


@dataclass
class TrendAnalysis:
    """Least-squares fit of rain_30d against sample index."""
    trend: Trend = Trend.STABLE
    slope: float = 0.0
    intercept: float = 0.0
    r_squared: float = 0.0
    points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trend": self.trend.value,
            "slope": round(self.slope, 4),
            "intercept": round(self.intercept, 4),
            "r_squared": round(self.r_squared, 4),
            "points": self.points,
        }


@dataclass
class SeasonalityAnalysis:
    factor: float = 1.0
    seasonal_mean: float = 0.0
    seasonal_samples: int = 0


@dataclass
class MovingAverages:
    mean_30d: float = 0.0
    mean_45d: float = 0.0
    mean_90d: float = 0.0


@dataclass
class Variability:
    mean: float = 0.0
    std_dev: float = 0.0
    coefficient_of_variation: float = 0.0


@dataclass
class ModelEstimate:
    """Output of the combined predictive model, before coherence checks."""
    estimate_mm: float
    probability: float
    trend: Trend
    interval_min: float
    interval_max: float


@dataclass
class CoherenceCheck:
    """Heuristic probability reconciled against historical frequency."""
    coherent: bool
    probability: float
    historical_frequency: float
    reason: str


@dataclass
class RainfallOutlook:
    """
    Complete next-month outlook for one station.

    ``to_dict`` emits the published wire shape (Portuguese field names);
    downstream consumers depend on those names verbatim.
    """
    probability: int
    trend: Trend
    accuracy: float
    confidence: int
    historical_mean_30d: float
    historical_mean_45d: float
    estimate_mm: float
    category: RainfallCategory
    interval_min: float
    interval_max: float
    algorithm: str
    samples: int
    analysis_period: str
    seasonal_factor: float
    degraded: bool = False  # True for the minimal (insufficient data) forecast

    def to_dict(self) -> Dict[str, Any]:
        return {
            "probabilidadeChuva": self.probability,
            "tendencia": self.trend.value,
            "acuracia": self.accuracy,
            "confianca": self.confidence,
            "mediaHistorica30d": self.historical_mean_30d,
            "mediaHistorica45d": self.historical_mean_45d,
            "proximoMes": {
                "estimativaChuva": self.estimate_mm,
                "categoria": self.category.value,
                "intervaloConfianca": {
                    "min": self.interval_min,
                    "max": self.interval_max,
                },
            },
            "metodologia": {
                "algoritmo": self.algorithm,
                "amostras": self.samples,
                "periodoAnalise": self.analysis_period,
                "factorSazonalidade": self.seasonal_factor,
            },
        }


# ===================================================================
#  HELPERS
# ===================================================================


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round2(value: float) -> float:
    return math.floor(value * 100.0 + 0.5) / 100.0


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) > 0 else 0.0


def _months_before(moment: datetime, months: int) -> datetime:
    """Same wall-clock moment ``months`` calendar months earlier (day clamped)."""
    index = moment.year * 12 + (moment.month - 1) - months
    year, month0 = divmod(index, 12)
    day = min(moment.day, calendar.monthrange(year, month0 + 1)[1])
    return moment.replace(year=year, month=month0 + 1, day=day)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _coerce_timestamp(value: Any, index: int) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        try:
            return _as_utc(datetime.fromisoformat(value))
        except ValueError as e:
            raise MalformedSeriesError(
                f"snapshot {index}: unparseable snapshot_at {value!r}",
                index=index, field="snapshot_at",
            ) from e
    raise MalformedSeriesError(
        f"snapshot {index}: snapshot_at is not a timestamp ({type(value).__name__})",
        index=index, field="snapshot_at",
    )


def _sort_key(snapshot: AccumulatedSnapshot) -> Tuple[Any, ...]:
    # Total order so that shuffled input always sorts identically
    return (snapshot.snapshot_at, str(snapshot.station_code)) + tuple(
        getattr(snapshot, name) for name in _RAIN_FIELDS
    )


def _format_period(first: datetime, last: datetime) -> str:
    days = _round_half_up((last - first).total_seconds() / 86400.0)
    return f"{first:%d/%m/%Y} até {last:%d/%m/%Y} ({days} dias)"


# ===================================================================
#  1. INPUT PREPARATION
# ===================================================================


def prepare_series(series: Sequence[AccumulatedSnapshot]) -> List[AccumulatedSnapshot]:
    """
    Validate snapshots and return them sorted by time, oldest first.

    Timestamps may be aware or naive datetimes (naive = UTC) or ISO-8601
    strings; they are normalised to aware UTC. Every accumulated total
    must be a finite real number.

    Raises
    ------
    MalformedSeriesError
        On an unparseable timestamp or a non-numeric / non-finite total.
    """
    prepared: List[AccumulatedSnapshot] = []
    for index, snapshot in enumerate(series):
        ts = _coerce_timestamp(getattr(snapshot, "snapshot_at", None), index)

        for name in _RAIN_FIELDS:
            value = getattr(snapshot, name, None)
            if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
                raise MalformedSeriesError(
                    f"snapshot {index}: {name} is not a finite number ({value!r})",
                    index=index, field=name,
                )

        if ts is not snapshot.snapshot_at:
            snapshot = dataclasses.replace(snapshot, snapshot_at=ts)
        prepared.append(snapshot)

    prepared.sort(key=_sort_key)
    return prepared


def downsample_series(
    series: List[AccumulatedSnapshot],
    now: datetime,
    threshold: int = DOWNSAMPLE_THRESHOLD,
) -> List[AccumulatedSnapshot]:
    """
    Bound analytical cost on very long histories.

    Keeps every snapshot from the last 6 calendar months and one in every
    7 older snapshots (weekly stride), preserving long-range seasonal
    signal. Series at or below ``threshold`` are returned unchanged.
    """
    if len(series) <= threshold:
        return list(series)

    cutoff = _months_before(now, DOWNSAMPLE_RECENT_MONTHS)
    older = [s for s in series if s.snapshot_at < cutoff]
    recent = [s for s in series if s.snapshot_at >= cutoff]
    sampled = older[::DOWNSAMPLE_STRIDE]

    logger.debug(
        "Downsampled %d snapshots → %d recent + %d historical",
        len(series), len(recent), len(sampled),
    )
    return sampled + recent


# ===================================================================
#  2. TEMPORAL TREND
# ===================================================================


def analyse_trend(series: Sequence[AccumulatedSnapshot]) -> TrendAnalysis:
    """
    Fit rain_30d = slope · index + intercept over the last 60 snapshots.

    Classification:
        slope >  0.1 and R² > 0.1 → aumento
        slope < -0.1 and R² > 0.1 → diminuicao
        otherwise                 → estavel

    Fewer than 10 points → estavel with slope 0 and R² 0. A flat series
    (zero total variance) has R² 0.
    """
    window = list(series)[-TREND_WINDOW:]
    n = len(window)
    if n < TREND_MIN_POINTS:
        return TrendAnalysis(points=n)

    x = np.arange(n, dtype=np.float64)
    y = np.array([s.rain_30d for s in window], dtype=np.float64)

    slope, intercept = np.polyfit(x, y, deg=1)
    fitted = slope * x + intercept
    ss_res = float(np.sum((y - fitted) ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    r_squared = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0

    trend = Trend.STABLE
    if abs(slope) > TREND_SLOPE_THRESHOLD and r_squared > TREND_R2_THRESHOLD:
        trend = Trend.INCREASING if slope > 0 else Trend.DECREASING

    return TrendAnalysis(
        trend=trend,
        slope=float(slope),
        intercept=float(intercept),
        r_squared=float(r_squared),
        points=n,
    )


# ===================================================================
#  3. SEASONALITY
# ===================================================================


def seasonal_months(month: int) -> Tuple[int, int, int]:
    """Previous, current and next calendar month (1–12, wrapping)."""
    return (month - 2) % 12 + 1, month, month % 12 + 1


def analyse_seasonality(series: Sequence[AccumulatedSnapshot], month: int) -> SeasonalityAnalysis:
    """Ratio of same-season mean rain_30d to the overall mean."""
    months = seasonal_months(month)
    seasonal = [s.rain_30d for s in series if s.snapshot_at.month in months]

    if len(seasonal) < SEASONAL_MIN_SAMPLES:
        return SeasonalityAnalysis(seasonal_samples=len(seasonal))

    seasonal_mean = _mean(seasonal)
    overall_mean = _mean([s.rain_30d for s in series])
    factor = seasonal_mean / overall_mean if overall_mean > 0 else 1.0

    return SeasonalityAnalysis(
        factor=factor,
        seasonal_mean=seasonal_mean,
        seasonal_samples=len(seasonal),
    )


# ===================================================================
#  4. CLEANED MOVING AVERAGES
# ===================================================================


def filter_iqr_outliers(values: Sequence[float]) -> List[float]:
    """
    Drop values outside the 1.5×IQR fences.

    Quartiles are taken by position in the sorted sample
    (q1 = v[⌊0.25n⌋], q3 = v[⌊0.75n⌋]). Samples smaller than 4 are
    returned untouched.
    """
    if len(values) < IQR_MIN_SAMPLES:
        return list(values)

    ordered = sorted(values)
    n = len(ordered)
    q1 = ordered[int(n * 0.25)]
    q3 = ordered[int(n * 0.75)]
    iqr = q3 - q1
    lower = q1 - IQR_FENCE * iqr
    upper = q3 + IQR_FENCE * iqr
    return [v for v in ordered if lower <= v <= upper]


def _window_values(
    series: Sequence[AccumulatedSnapshot],
    now: datetime,
    days: int,
    field_name: str,
    cap: float,
) -> List[float]:
    span = timedelta(days=days)
    return [
        min(getattr(s, field_name), cap)
        for s in series
        if now - s.snapshot_at <= span and getattr(s, field_name) >= 0
    ]


def compute_moving_averages(series: Sequence[AccumulatedSnapshot], now: datetime) -> MovingAverages:
    """Outlier-cleaned means over the last 30, 45 and 90 days."""
    values_30d = _window_values(series, now, 30, "rain_30d", RAIN_30D_CAP_MM)
    values_45d = _window_values(series, now, 45, "rain_45d", RAIN_45D_CAP_MM)
    values_90d = _window_values(series, now, 90, "rain_30d", RAIN_30D_CAP_MM)

    return MovingAverages(
        mean_30d=_mean(filter_iqr_outliers(values_30d)),
        mean_45d=_mean(filter_iqr_outliers(values_45d)),
        mean_90d=_mean(filter_iqr_outliers(values_90d)),
    )


# ===================================================================
#  5. VARIABILITY
# ===================================================================


def compute_variability(series: Sequence[AccumulatedSnapshot]) -> Variability:
    """Population mean, standard deviation and coefficient of variation of rain_30d."""
    if len(series) == 0:
        return Variability()

    values = np.array([s.rain_30d for s in series], dtype=np.float64)
    mean = float(values.mean())
    std_dev = float(values.std())
    cv = std_dev / mean if mean > 0 else 0.0
    return Variability(mean=mean, std_dev=std_dev, coefficient_of_variation=cv)


# ===================================================================
#  6–8. PREDICTIVE MODEL
# ===================================================================


def compute_rain_probability(
    estimate_mm: float,
    trend: TrendAnalysis,
    seasonality: SeasonalityAnalysis,
    averages: MovingAverages,
) -> float:
    """
    Heuristic probability of rain next month (unclamped).

        base                              35
        rain volume   min(40, 15·log10(est + 1))
        trend         +15 aumento / −10 diminuicao
        season        f > 1.2 → +min(20, 25·(f − 1))
                      f < 0.8 → −min(15, 20·(1 − f))
        consistency   |m30 − m45| / max(m30, m45, 1)
                      < 0.3 → +8,  > 0.7 → −5

    The volume term is log-damped so small estimates do not swamp it.
    """
    probability = PROBABILITY_BASE

    if estimate_mm > 0:
        probability += min(
            PROBABILITY_RAIN_MAX_BONUS,
            math.log10(estimate_mm + 1) * PROBABILITY_RAIN_LOG_SCALE,
        )

    if trend.trend is Trend.INCREASING:
        probability += PROBABILITY_TREND_UP
    elif trend.trend is Trend.DECREASING:
        probability += PROBABILITY_TREND_DOWN

    factor = seasonality.factor
    if factor > 1.2:
        probability += min(20.0, (factor - 1.0) * 25.0)
    elif factor < 0.8:
        probability -= min(15.0, (1.0 - factor) * 20.0)

    consistency = abs(averages.mean_30d - averages.mean_45d) / max(
        averages.mean_30d, averages.mean_45d, 1.0
    )
    if consistency < 0.3:
        probability += 8.0
    elif consistency > 0.7:
        probability -= 5.0

    return probability


def apply_predictive_model(
    trend: TrendAnalysis,
    seasonality: SeasonalityAnalysis,
    averages: MovingAverages,
    variability: Variability,
) -> ModelEstimate:
    """
    Combine the analyses into estimate, probability and interval.

    Estimate:
        (0.6 · min(m30, 500) + 0.4 · min(m45, 500))
        × clamp(seasonal factor, 0.5, 2.0)
        + 15 · slope           when R² > 0.3 and |slope| < 10
        clamped to [0, 300] mm

    Interval: estimate ± min(σ, estimate / 2), lower bound ≥ 0.
    """
    mean_30d = min(averages.mean_30d, MEAN_CAP_MM)
    mean_45d = min(averages.mean_45d, MEAN_CAP_MM)

    estimate = mean_30d * WEIGHT_MEAN_30D + mean_45d * WEIGHT_MEAN_45D
    estimate *= _clamp(seasonality.factor, SEASONAL_FACTOR_MIN, SEASONAL_FACTOR_MAX)

    if trend.r_squared > TREND_ADJUST_MIN_R2 and abs(trend.slope) < TREND_ADJUST_MAX_SLOPE:
        estimate += trend.slope * TREND_PROJECTION_STEPS

    estimate = _clamp(estimate, 0.0, ESTIMATE_MAX_MM)

    raw_probability = compute_rain_probability(estimate, trend, seasonality, averages)
    logger.debug("Probability: estimate=%.1fmm → %.1f%%", estimate, raw_probability)
    probability = _clamp(raw_probability, PROBABILITY_MIN, PROBABILITY_MAX)

    margin = min(variability.std_dev, estimate * 0.5)

    return ModelEstimate(
        estimate_mm=estimate,
        probability=probability,
        trend=trend.trend,
        interval_min=max(0.0, estimate - margin),
        interval_max=estimate + margin,
    )


# ===================================================================
#  9. COHERENCE VALIDATION
# ===================================================================


def validate_probability_coherence(
    probability: float,
    series: Sequence[AccumulatedSnapshot],
    estimate_mm: float,
    *,
    similarity_band: float = COHERENCE_SIMILARITY_BAND,
    tolerance: float = COHERENCE_TOLERANCE,
    model_weight: float = COHERENCE_MODEL_WEIGHT,
    history_weight: float = COHERENCE_HISTORY_WEIGHT,
) -> CoherenceCheck:
    """
    Anchor the heuristic probability to the empirical base rate.

    Historical frequency = % of snapshots whose rain_30d lies within
    ±30 % of the estimate. Within 15 points of the heuristic the
    probability is kept; otherwise it becomes
    round(0.6 · heuristic + 0.4 · frequency).
    """
    if len(series) == 0:
        return CoherenceCheck(True, probability, 0.0, "No history to compare against")

    similar = sum(
        1 for s in series
        if abs(s.rain_30d - estimate_mm) <= estimate_mm * similarity_band
    )
    frequency = similar / len(series) * 100.0

    if abs(probability - frequency) <= tolerance:
        return CoherenceCheck(
            coherent=True,
            probability=probability,
            historical_frequency=frequency,
            reason=f"Coherent with history ({frequency:.1f}% vs {probability:.1f}%)",
        )

    adjusted = _round_half_up(probability * model_weight + frequency * history_weight)
    return CoherenceCheck(
        coherent=False,
        probability=float(adjusted),
        historical_frequency=frequency,
        reason=(
            f"Adjusted: model={probability:.1f}% → history={frequency:.1f}% "
            f"→ final={adjusted}%"
        ),
    )


# ===================================================================
#  10. ACCURACY (self-score)
# ===================================================================


def simple_weighted_forecast(series: Sequence[AccumulatedSnapshot]) -> float:
    """Recency-weighted mean of the last 20 plausible rain_30d values."""
    recent = [s.rain_30d for s in list(series)[-SIMPLE_FORECAST_WINDOW:]]
    values = [v for v in recent if 0 <= v <= RAIN_30D_CAP_MM]
    if not values:
        return 0.0

    n = len(values)
    weights = np.arange(1, n + 1, dtype=np.float64) / n
    return float(np.dot(np.asarray(values, dtype=np.float64), weights) / weights.sum())


def backtest_hit_rate(series: Sequence[AccumulatedSnapshot]) -> float:
    """
    Simplified leave-window-out validation.

    Up to 10 held-out indices, evenly spaced over the 30 %–70 % band of
    the series. Each drops a 5-snapshot block from training, predicts the
    held-out rain_30d with ``simple_weighted_forecast`` and counts a hit
    when the error is within max(20, 40 % of max(actual, predicted)).
    """
    ordered = list(series)
    n = len(ordered)
    points = min(BACKTEST_MAX_POINTS, n // 6)
    if points == 0:
        return 0.0

    band_start = int(n * BACKTEST_BAND_START)
    band_width = n * BACKTEST_BAND_WIDTH

    hits = 0
    for k in range(points):
        index = band_start + int(k * band_width / points)
        if index >= n - BACKTEST_HOLDOUT:
            continue

        training = ordered[:index] + ordered[index + BACKTEST_HOLDOUT:]
        actual = ordered[index].rain_30d
        predicted = simple_weighted_forecast(training)

        tolerance = max(
            BACKTEST_MIN_TOLERANCE_MM,
            max(actual, predicted) * BACKTEST_RELATIVE_TOLERANCE,
        )
        if abs(predicted - actual) <= tolerance:
            hits += 1

    return hits / points


def compute_accuracy(series: Sequence[AccumulatedSnapshot], now: datetime) -> float:
    """
    Quality-of-model self-score in [45, 88]. Not ground-truth validated.

    Starts at 70 and adjusts for data consistency (CV), recency (last 60
    days), same-month coverage, a detectable first-third vs last-third
    shift, and the backtest hit rate: (hit_rate − 0.5) · 20.
    """
    ordered = list(series)
    n = len(ordered)
    if n < MIN_FULL_PIPELINE_SAMPLES:
        return 65.0

    score = ACCURACY_BASE

    # 1. Consistency
    values = [s.rain_30d for s in ordered if s.rain_30d >= 0]
    if values:
        mean = _mean(values)
        cv = float(np.std(values)) / mean if mean > 0 else 0.0
        if cv < 0.5:
            score += 15
        elif cv > 2.0:
            score -= 10

    # 2. Recency
    recent = sum(1 for s in ordered if now - s.snapshot_at <= timedelta(days=60))
    if recent > 50:
        score += 10
    elif recent < 20:
        score -= 5

    # 3. Same-month coverage
    same_month = sum(1 for s in ordered if s.snapshot_at.month == now.month)
    if same_month > 5:
        score += 5

    # 4. Long-run shift between first and last thirds
    if n > 60:
        third = n // 3
        first_mean = _mean([s.rain_30d for s in ordered[:third]])
        last_mean = _mean([s.rain_30d for s in ordered[-third:]])
        relative_change = abs(last_mean - first_mean) / max(first_mean, 1.0)
        if 0.2 < relative_change < 2.0:
            score += 5

    # 5. Backtest
    if n > BACKTEST_MIN_SAMPLES:
        score += (backtest_hit_rate(ordered) - 0.5) * 20

    return float(_clamp(_round_half_up(score), ACCURACY_MIN, ACCURACY_MAX))


# ===================================================================
#  11. CONFIDENCE (data sufficiency)
# ===================================================================


def compute_confidence(
    series: Sequence[AccumulatedSnapshot],
    variability: Variability,
    now: datetime,
) -> int:
    """Data-sufficiency score in [20, 85]."""
    n = len(series)
    if n == 0:
        return int(CONFIDENCE_MIN)

    confidence = CONFIDENCE_BASE

    valid = sum(1 for s in series if s.rain_30d >= 0)
    confidence += valid / n * 20

    # Diminishing returns on sample count
    if n > 180:
        confidence += 25
    elif n > 90:
        confidence += 20
    elif n > 30:
        confidence += 15
    else:
        confidence += n / 3

    cv = min(variability.coefficient_of_variation, 2.0)
    if cv < 0.3:
        confidence += 15
    elif cv < 0.6:
        confidence += 10
    elif cv > 1.5:
        confidence -= 20

    recent = sum(1 for s in series if now - s.snapshot_at <= timedelta(days=15))
    if recent > 10:
        confidence += 15
    elif recent > 5:
        confidence += 10
    elif recent < 3:
        confidence -= 15

    return int(_clamp(_round_half_up(confidence), CONFIDENCE_MIN, CONFIDENCE_MAX))


# ===================================================================
#  12. CATEGORY
# ===================================================================


def classify_rainfall(estimate_mm: float) -> RainfallCategory:
    for upper, category in CATEGORY_THRESHOLDS:
        if estimate_mm < upper:
            return category
    return RainfallCategory.VERY_HIGH


# ===================================================================
#  DEGRADED MODE
# ===================================================================


def minimal_forecast(sample_count: int) -> RainfallOutlook:
    """
    Low-confidence outlook for short histories (< 30 snapshots).

    A valid answer, not a failure: neutral 25 mm "normal" estimate,
    50 % probability, accuracy tiered by sample count.
    """
    accuracy = 55.0
    if sample_count > 15:
        accuracy = 62.0
    if sample_count > 25:
        accuracy = 68.0

    return RainfallOutlook(
        probability=50,
        trend=Trend.STABLE,
        accuracy=accuracy,
        confidence=int(_clamp(sample_count * 2, 30, 60)),
        historical_mean_30d=0.0,
        historical_mean_45d=0.0,
        estimate_mm=25.0,
        category=RainfallCategory.NORMAL,
        interval_min=10.0,
        interval_max=40.0,
        algorithm=MINIMAL_ALGORITHM_LABEL,
        samples=sample_count,
        analysis_period=f"{sample_count} registros disponíveis",
        seasonal_factor=1.0,
        degraded=True,
    )


# ===================================================================
#  MAIN ENTRY POINT
# ===================================================================


def compute_forecast(
    series: Sequence[AccumulatedSnapshot],
    *,
    now: Optional[datetime] = None,
) -> RainfallOutlook:
    """
    Run the complete outlook for one station.

    Parameters
    ----------
    series : sequence of AccumulatedSnapshot
        Snapshots of a single station, in any order.
    now : datetime, optional
        Reference moment for recency windows and the current month.
        Defaults to the current UTC time.

    Returns
    -------
    RainfallOutlook
        ``degraded=True`` when fewer than 30 snapshots were available.

    Raises
    ------
    MalformedSeriesError
        When a snapshot cannot be sorted or read as numbers.
    """
    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)

    ordered = prepare_series(series)
    total = len(ordered)

    if total < MIN_FULL_PIPELINE_SAMPLES:
        logger.warning(
            "Only %d snapshots available, returning minimal forecast", total,
            extra={"samples": total},
        )
        return minimal_forecast(total)

    analysis = downsample_series(ordered, now) if total > DOWNSAMPLE_THRESHOLD else ordered

    trend = analyse_trend(analysis)
    seasonality = analyse_seasonality(analysis, now.month)
    averages = compute_moving_averages(analysis, now)
    variability = compute_variability(analysis)

    model = apply_predictive_model(trend, seasonality, averages, variability)
    accuracy = compute_accuracy(analysis, now)
    confidence = compute_confidence(analysis, variability, now)

    # Historical means always use the complete series
    full_averages = compute_moving_averages(ordered, now)

    coherence = validate_probability_coherence(model.probability, analysis, model.estimate_mm)
    probability = int(_clamp(_round_half_up(coherence.probability), 0, 100))
    reported_accuracy = _clamp(accuracy, ACCURACY_REPORTED_MIN, ACCURACY_REPORTED_MAX)

    first, last = ordered[0].snapshot_at, ordered[-1].snapshot_at
    station_code = ordered[-1].station_code

    logger.info(
        "Outlook %s: %d samples (%d analysed), estimate=%.1fmm (%s), "
        "probability=%d%%, accuracy=%.1f%%, confidence=%d%%, season=%.2fx",
        station_code, total, len(analysis), model.estimate_mm, model.trend.value,
        probability, reported_accuracy, confidence, seasonality.factor,
        extra={
            "station_code": station_code,
            "samples": total,
            "probability": probability,
            "estimate_mm": round(model.estimate_mm, 2),
        },
    )
    logger.debug("Trend fit: %s", trend.to_dict())
    logger.debug("Coherence: %s", coherence.reason)

    return RainfallOutlook(
        probability=probability,
        trend=model.trend,
        accuracy=_round2(reported_accuracy),
        confidence=confidence,
        historical_mean_30d=_round2(full_averages.mean_30d),
        historical_mean_45d=_round2(full_averages.mean_45d),
        estimate_mm=_round2(model.estimate_mm),
        category=classify_rainfall(model.estimate_mm),
        interval_min=_round2(model.interval_min),
        interval_max=_round2(model.interval_max),
        algorithm=ALGORITHM_LABEL,
        samples=total,
        analysis_period=_format_period(first, last),
        seasonal_factor=_round2(seasonality.factor),
    )
