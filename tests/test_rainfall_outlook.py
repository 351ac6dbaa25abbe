"""
Tests for the next-month rainfall outlook engine.

Covers:
    • Input preparation (validation, sorting, downsampling)
    • Trend regression and seasonality factor
    • IQR cleaning and capped moving averages
    • Predictive model, probability heuristic and coherence blending
    • Accuracy / confidence self-scores
    • Category thresholds
    • Minimal (insufficient data) outlook
    • End-to-end determinism, order invariance and output ranges
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from backend.app.core.errors import MalformedSeriesError
from backend.app.ml.rainfall_outlook import (
    ALGORITHM_LABEL,
    MINIMAL_ALGORITHM_LABEL,
    MovingAverages,
    RainfallCategory,
    SeasonalityAnalysis,
    Trend,
    TrendAnalysis,
    Variability,
    _months_before,
    analyse_seasonality,
    analyse_trend,
    apply_predictive_model,
    backtest_hit_rate,
    classify_rainfall,
    compute_accuracy,
    compute_confidence,
    compute_forecast,
    compute_moving_averages,
    compute_rain_probability,
    compute_variability,
    downsample_series,
    filter_iqr_outliers,
    minimal_forecast,
    prepare_series,
    seasonal_months,
    simple_weighted_forecast,
    validate_probability_coherence,
)
from backend.app.stations.models import AccumulatedSnapshot


NOW = datetime(2025, 3, 28, 12, 0, tzinfo=timezone.utc)
STATION = "261000402A"


# ── Helpers ────────────────────────────────────────────────────────


def snap(ts, rain_30d: float = 0.0, rain_45d: float = None) -> AccumulatedSnapshot:
    return AccumulatedSnapshot(
        station_code=STATION,
        snapshot_at=ts,
        rain_30d=rain_30d,
        rain_45d=rain_30d * 1.5 if rain_45d is None else rain_45d,
    )


def steady_series(n: int = 45, step_hours: int = 12, rain_30d: float = 40.0, rain_45d: float = 60.0):
    """n snapshots ending at NOW, newest first."""
    return [
        snap(NOW - timedelta(hours=step_hours * k), rain_30d, rain_45d)
        for k in range(n)
    ]


def noisy_daily_series(n: int, seed: int = 42):
    rng = np.random.default_rng(seed)
    values = rng.gamma(shape=2.0, scale=30.0, size=n)
    return [
        snap(NOW - timedelta(days=k), float(values[k]), float(values[k] * 1.4))
        for k in range(n)
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Input preparation
# ═══════════════════════════════════════════════════════════════════════════

class TestPrepareSeries:
    def test_sorts_ascending(self):
        series = steady_series(10)
        prepared = prepare_series(series)
        stamps = [s.snapshot_at for s in prepared]
        assert stamps == sorted(stamps)

    def test_iso_string_and_naive_are_utc(self):
        prepared = prepare_series([snap("2025-03-01T00:00:00", 10.0)])
        assert prepared[0].snapshot_at == datetime(2025, 3, 1, tzinfo=timezone.utc)

    def test_unparseable_timestamp_raises(self):
        with pytest.raises(MalformedSeriesError):
            prepare_series([snap("yesterday", 10.0)])

    def test_missing_timestamp_raises(self):
        with pytest.raises(MalformedSeriesError):
            prepare_series([snap(None, 10.0)])

    def test_nan_total_raises(self):
        with pytest.raises(MalformedSeriesError) as exc:
            prepare_series([snap(NOW, float("nan"))])
        assert exc.value.details["field"] == "rain_30d"

    def test_non_numeric_total_raises(self):
        with pytest.raises(MalformedSeriesError):
            prepare_series([snap(NOW, "12.5", 0.0)])

    def test_bool_total_raises(self):
        with pytest.raises(MalformedSeriesError):
            prepare_series([snap(NOW, True)])

    def test_compute_forecast_propagates(self):
        series = steady_series(40) + [snap("not-a-date", 10.0)]
        with pytest.raises(MalformedSeriesError):
            compute_forecast(series, now=NOW)


class TestDownsample:
    def test_short_series_unchanged(self):
        series = prepare_series(noisy_daily_series(1000))
        assert downsample_series(series, NOW) == series

    def test_keeps_recent_and_strides_older(self):
        series = prepare_series(noisy_daily_series(1200))
        sampled = downsample_series(series, NOW)

        cutoff = datetime(2024, 9, 28, 12, 0, tzinfo=timezone.utc)
        recent = [s for s in sampled if s.snapshot_at >= cutoff]
        older = [s for s in sampled if s.snapshot_at < cutoff]

        # k = 0..181 days back are on or after the cutoff
        assert len(recent) == 182
        # 1018 older snapshots, one in seven starting from the oldest
        assert len(older) == 146
        assert older[0] == series[0]
        assert older[1] == series[7]

    def test_result_sorted(self):
        sampled = downsample_series(prepare_series(noisy_daily_series(1100)), NOW)
        stamps = [s.snapshot_at for s in sampled]
        assert stamps == sorted(stamps)

    def test_months_before_clamps_day(self):
        ts = datetime(2025, 8, 31, 10, 0, tzinfo=timezone.utc)
        assert _months_before(ts, 6) == datetime(2025, 2, 28, 10, 0, tzinfo=timezone.utc)

    def test_months_before_crosses_year(self):
        ts = datetime(2025, 3, 15, tzinfo=timezone.utc)
        assert _months_before(ts, 6) == datetime(2024, 9, 15, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Trend & seasonality
# ═══════════════════════════════════════════════════════════════════════════

class TestTrend:
    def _linear(self, n, intercept, slope):
        return [snap(NOW - timedelta(days=n - i), intercept + slope * i) for i in range(n)]

    def test_increasing(self):
        result = analyse_trend(self._linear(60, 10.0, 2.0))
        assert result.trend is Trend.INCREASING
        assert result.slope == pytest.approx(2.0)
        assert result.r_squared == pytest.approx(1.0)

    def test_decreasing(self):
        result = analyse_trend(self._linear(60, 200.0, -1.5))
        assert result.trend is Trend.DECREASING
        assert result.slope == pytest.approx(-1.5)

    def test_uses_last_sixty(self):
        flat = self._linear(40, 50.0, 0.0)
        rising = [snap(NOW + timedelta(days=i), 10.0 + 3.0 * i) for i in range(60)]
        result = analyse_trend(flat + rising)
        assert result.points == 60
        assert result.slope == pytest.approx(3.0)

    def test_too_few_points_is_stable(self):
        result = analyse_trend(self._linear(9, 10.0, 5.0))
        assert result.trend is Trend.STABLE
        assert result.slope == 0.0
        assert result.r_squared == 0.0

    def test_flat_series_has_zero_r2(self):
        result = analyse_trend(self._linear(30, 40.0, 0.0))
        assert result.r_squared == 0.0
        assert result.trend is Trend.STABLE

    def test_small_slope_is_stable(self):
        result = analyse_trend(self._linear(60, 40.0, 0.05))
        assert result.trend is Trend.STABLE


class TestSeasonality:
    def test_months_wrap(self):
        assert seasonal_months(1) == (12, 1, 2)
        assert seasonal_months(12) == (11, 12, 1)
        assert seasonal_months(6) == (5, 6, 7)

    def test_factor_is_seasonal_over_overall(self):
        march = [snap(datetime(2024, 3, d, tzinfo=timezone.utc), 60.0) for d in range(1, 11)]
        august = [snap(datetime(2024, 8, d, tzinfo=timezone.utc), 20.0) for d in range(1, 11)]
        result = analyse_seasonality(march + august, month=3)
        assert result.factor == pytest.approx(1.5)
        assert result.seasonal_samples == 10

    def test_too_few_seasonal_samples(self):
        march = [snap(datetime(2024, 3, d, tzinfo=timezone.utc), 60.0) for d in range(1, 5)]
        august = [snap(datetime(2024, 8, d, tzinfo=timezone.utc), 20.0) for d in range(1, 30)]
        result = analyse_seasonality(march + august, month=3)
        assert result.factor == 1.0

    def test_zero_overall_mean(self):
        series = [snap(datetime(2024, 3, d, tzinfo=timezone.utc), 0.0) for d in range(1, 11)]
        assert analyse_seasonality(series, month=3).factor == 1.0


# ═══════════════════════════════════════════════════════════════════════════
# Moving averages & variability
# ═══════════════════════════════════════════════════════════════════════════

class TestIQRFilter:
    def test_excludes_outlier(self):
        cleaned = filter_iqr_outliers([10, 11, 12, 13, 14, 15, 16, 1000])
        assert 1000 not in cleaned
        assert len(cleaned) == 7

    def test_small_sample_untouched(self):
        assert filter_iqr_outliers([1, 500, 3]) == [1, 500, 3]

    def test_constant_sample_kept(self):
        assert filter_iqr_outliers([5.0] * 10) == [5.0] * 10


class TestMovingAverages:
    def test_outlier_removed_from_mean(self):
        series = [snap(NOW - timedelta(days=d), 50.0) for d in range(20)]
        series.append(snap(NOW - timedelta(days=3), 480.0))
        averages = compute_moving_averages(series, NOW)
        assert averages.mean_30d == pytest.approx(50.0)

    def test_window_excludes_old(self):
        series = [
            snap(NOW - timedelta(days=10), 20.0, 30.0),
            snap(NOW - timedelta(days=40), 80.0, 100.0),
            snap(NOW - timedelta(days=80), 140.0, 200.0),
        ]
        averages = compute_moving_averages(series, NOW)
        assert averages.mean_30d == pytest.approx(20.0)
        assert averages.mean_45d == pytest.approx(65.0)
        assert averages.mean_90d == pytest.approx(80.0)

    def test_caps_applied(self):
        series = [snap(NOW - timedelta(days=1), 900.0, 900.0)]
        averages = compute_moving_averages(series, NOW)
        assert averages.mean_30d == 500.0
        assert averages.mean_45d == 750.0

    def test_negative_values_ignored(self):
        series = [snap(NOW - timedelta(days=1), -5.0, -5.0), snap(NOW, 10.0, 10.0)]
        assert compute_moving_averages(series, NOW).mean_30d == pytest.approx(10.0)

    def test_empty_window_is_zero(self):
        series = [snap(NOW - timedelta(days=200), 10.0)]
        averages = compute_moving_averages(series, NOW)
        assert averages.mean_30d == 0.0
        assert averages.mean_90d == 0.0


class TestVariability:
    def test_population_std(self):
        result = compute_variability([snap(NOW, v) for v in (10.0, 20.0, 30.0)])
        assert result.mean == pytest.approx(20.0)
        assert result.std_dev == pytest.approx(math.sqrt(200.0 / 3.0))
        assert result.coefficient_of_variation == pytest.approx(math.sqrt(200.0 / 3.0) / 20.0)

    def test_zero_mean_cv(self):
        result = compute_variability([snap(NOW, 0.0) for _ in range(5)])
        assert result.coefficient_of_variation == 0.0


# ═══════════════════════════════════════════════════════════════════════════
# Predictive model
# ═══════════════════════════════════════════════════════════════════════════

class TestPredictiveModel:
    def test_weighted_blend_and_interval(self):
        est = apply_predictive_model(
            TrendAnalysis(), SeasonalityAnalysis(),
            MovingAverages(100.0, 100.0, 100.0), Variability(100.0, 10.0, 0.1),
        )
        assert est.estimate_mm == pytest.approx(100.0)
        assert est.interval_min == pytest.approx(90.0)
        assert est.interval_max == pytest.approx(110.0)

    def test_seasonal_factor_clamped(self):
        est = apply_predictive_model(
            TrendAnalysis(), SeasonalityAnalysis(factor=3.0),
            MovingAverages(100.0, 100.0, 100.0), Variability(),
        )
        assert est.estimate_mm == pytest.approx(200.0)

    def test_estimate_capped(self):
        est = apply_predictive_model(
            TrendAnalysis(), SeasonalityAnalysis(),
            MovingAverages(600.0, 600.0, 600.0), Variability(),
        )
        assert est.estimate_mm == 300.0

    def test_trend_projection_when_fit_is_good(self):
        trend = TrendAnalysis(trend=Trend.INCREASING, slope=2.0, r_squared=0.5, points=60)
        est = apply_predictive_model(
            trend, SeasonalityAnalysis(), MovingAverages(50.0, 50.0, 50.0), Variability(),
        )
        assert est.estimate_mm == pytest.approx(80.0)

    def test_no_projection_for_steep_slope(self):
        trend = TrendAnalysis(trend=Trend.INCREASING, slope=12.0, r_squared=0.9, points=60)
        est = apply_predictive_model(
            trend, SeasonalityAnalysis(), MovingAverages(50.0, 50.0, 50.0), Variability(),
        )
        assert est.estimate_mm == pytest.approx(50.0)

    def test_margin_limited_to_half_estimate(self):
        est = apply_predictive_model(
            TrendAnalysis(), SeasonalityAnalysis(),
            MovingAverages(20.0, 20.0, 20.0), Variability(20.0, 100.0, 5.0),
        )
        assert est.interval_min == pytest.approx(10.0)
        assert est.interval_max == pytest.approx(30.0)

    def test_probability_clamped(self):
        trend = TrendAnalysis(trend=Trend.INCREASING, slope=1.0, r_squared=0.2, points=60)
        est = apply_predictive_model(
            trend, SeasonalityAnalysis(factor=2.0),
            MovingAverages(500.0, 500.0, 500.0), Variability(),
        )
        assert est.probability == 95.0


class TestRainProbability:
    def test_base_with_no_rain(self):
        p = compute_rain_probability(0.0, TrendAnalysis(), SeasonalityAnalysis(), MovingAverages())
        # base 35 + consistency bonus 8
        assert p == pytest.approx(43.0)

    def test_volume_bonus_log_scaled(self):
        p = compute_rain_probability(99.0, TrendAnalysis(), SeasonalityAnalysis(), MovingAverages())
        assert p == pytest.approx(35.0 + 30.0 + 8.0)

    def test_trend_adjustments(self):
        up = compute_rain_probability(
            0.0, TrendAnalysis(trend=Trend.INCREASING), SeasonalityAnalysis(), MovingAverages(),
        )
        down = compute_rain_probability(
            0.0, TrendAnalysis(trend=Trend.DECREASING), SeasonalityAnalysis(), MovingAverages(),
        )
        assert up == pytest.approx(58.0)
        assert down == pytest.approx(33.0)

    def test_seasonal_adjustments(self):
        wet = compute_rain_probability(0.0, TrendAnalysis(), SeasonalityAnalysis(factor=1.4), MovingAverages())
        dry = compute_rain_probability(0.0, TrendAnalysis(), SeasonalityAnalysis(factor=0.5), MovingAverages())
        assert wet == pytest.approx(43.0 + 10.0)
        assert dry == pytest.approx(43.0 - 10.0)

    def test_inconsistent_means_penalised(self):
        p = compute_rain_probability(
            0.0, TrendAnalysis(), SeasonalityAnalysis(), MovingAverages(10.0, 100.0, 0.0),
        )
        assert p == pytest.approx(30.0)


class TestCoherence:
    def _history(self, estimate, similar, total):
        return [snap(NOW, estimate) for _ in range(similar)] + [
            snap(NOW, 0.0) for _ in range(total - similar)
        ]

    def test_blends_when_far_from_history(self):
        result = validate_probability_coherence(95.0, self._history(100.0, 1, 10), 100.0)
        assert result.historical_frequency == pytest.approx(10.0)
        assert result.coherent is False
        assert result.probability == 61

    def test_keeps_probability_within_tolerance(self):
        result = validate_probability_coherence(20.0, self._history(100.0, 1, 10), 100.0)
        assert result.coherent is True
        assert result.probability == 20.0

    def test_custom_weights(self):
        result = validate_probability_coherence(
            95.0, self._history(100.0, 1, 10), 100.0,
            model_weight=0.5, history_weight=0.5,
        )
        assert result.probability == 53

    def test_empty_history(self):
        result = validate_probability_coherence(70.0, [], 50.0)
        assert result.coherent is True
        assert result.probability == 70.0


# ═══════════════════════════════════════════════════════════════════════════
# Self-scores
# ═══════════════════════════════════════════════════════════════════════════

class TestAccuracy:
    def test_short_series_fixed(self):
        assert compute_accuracy(steady_series(20), NOW) == 65.0

    def test_steady_series_capped(self):
        series = prepare_series(steady_series(45))
        assert compute_accuracy(series, NOW) == 88.0

    def test_bounds(self):
        series = prepare_series(noisy_daily_series(400, seed=3))
        assert 45.0 <= compute_accuracy(series, NOW) <= 88.0

    def test_simple_weighted_forecast(self):
        series = [snap(NOW, 10.0), snap(NOW, 20.0)]
        assert simple_weighted_forecast(series) == pytest.approx(50.0 / 3.0)

    def test_simple_weighted_forecast_skips_implausible(self):
        series = [snap(NOW, 800.0), snap(NOW, -1.0)]
        assert simple_weighted_forecast(series) == 0.0

    def test_backtest_perfect_on_constant(self):
        assert backtest_hit_rate(prepare_series(steady_series(60))) == pytest.approx(1.0)

    def test_backtest_deterministic(self):
        series = prepare_series(noisy_daily_series(120, seed=9))
        assert backtest_hit_rate(series) == backtest_hit_rate(series)


class TestConfidence:
    def test_bounds(self):
        series = prepare_series(noisy_daily_series(300, seed=5))
        value = compute_confidence(series, compute_variability(series), NOW)
        assert 20 <= value <= 85

    def test_steady_recent_series_maxes_out(self):
        series = prepare_series(steady_series(45))
        assert compute_confidence(series, compute_variability(series), NOW) == 85

    def test_stale_volatile_series_low(self):
        old = NOW - timedelta(days=400)
        series = [snap(old + timedelta(days=i), 0.0 if i % 2 else 300.0) for i in range(31)]
        # 40 + 20 (valid) + 15 (count), cv ≈ 1 adds nothing, −15 (nothing recent)
        value = compute_confidence(series, compute_variability(series), NOW)
        assert value == 60


# ═══════════════════════════════════════════════════════════════════════════
# Category
# ═══════════════════════════════════════════════════════════════════════════

class TestClassifyRainfall:
    @pytest.mark.parametrize("estimate, expected", [
        (0.0, RainfallCategory.VERY_LOW),
        (9.99, RainfallCategory.VERY_LOW),
        (10.0, RainfallCategory.LOW),
        (29.99, RainfallCategory.LOW),
        (30.0, RainfallCategory.NORMAL),
        (69.99, RainfallCategory.NORMAL),
        (70.0, RainfallCategory.HIGH),
        (119.99, RainfallCategory.HIGH),
        (120.0, RainfallCategory.VERY_HIGH),
        (300.0, RainfallCategory.VERY_HIGH),
    ])
    def test_thresholds(self, estimate, expected):
        assert classify_rainfall(estimate) is expected


# ═══════════════════════════════════════════════════════════════════════════
# Minimal outlook
# ═══════════════════════════════════════════════════════════════════════════

class TestMinimalForecast:
    def test_empty_series(self):
        result = compute_forecast([], now=NOW)
        assert result.degraded is True
        assert result.to_dict() == {
            "probabilidadeChuva": 50,
            "tendencia": "estavel",
            "acuracia": 55.0,
            "confianca": 30,
            "mediaHistorica30d": 0.0,
            "mediaHistorica45d": 0.0,
            "proximoMes": {
                "estimativaChuva": 25.0,
                "categoria": "normal",
                "intervaloConfianca": {"min": 10.0, "max": 40.0},
            },
            "metodologia": {
                "algoritmo": MINIMAL_ALGORITHM_LABEL,
                "amostras": 0,
                "periodoAnalise": "0 registros disponíveis",
                "factorSazonalidade": 1.0,
            },
        }

    @pytest.mark.parametrize("n, accuracy, confidence", [
        (10, 55.0, 30),
        (16, 62.0, 32),
        (20, 62.0, 40),
        (29, 68.0, 58),
    ])
    def test_tiers(self, n, accuracy, confidence):
        result = minimal_forecast(n)
        assert result.accuracy == accuracy
        assert result.confidence == confidence
        assert result.samples == n

    def test_twenty_nine_snapshots_is_minimal(self):
        result = compute_forecast(steady_series(29), now=NOW)
        assert result.degraded is True
        assert result.algorithm == MINIMAL_ALGORITHM_LABEL

    def test_thirty_snapshots_is_full(self):
        result = compute_forecast(steady_series(30), now=NOW)
        assert result.degraded is False
        assert result.algorithm == ALGORITHM_LABEL


# ═══════════════════════════════════════════════════════════════════════════
# End-to-end
# ═══════════════════════════════════════════════════════════════════════════

class TestComputeForecast:
    def test_steady_month(self):
        result = compute_forecast(steady_series(45), now=NOW)
        out = result.to_dict()

        assert out["tendencia"] == "estavel"
        assert out["proximoMes"]["estimativaChuva"] == pytest.approx(48.0)
        assert out["proximoMes"]["categoria"] == "normal"
        assert out["mediaHistorica30d"] == pytest.approx(40.0)
        assert out["mediaHistorica45d"] == pytest.approx(60.0)
        assert out["confianca"] > 50
        assert out["acuracia"] == 88.0
        # heuristic 60.35 % blended towards a 100 % historical frequency
        assert out["probabilidadeChuva"] == 76
        assert out["metodologia"]["amostras"] == 45
        assert out["metodologia"]["factorSazonalidade"] == 1.0
        assert out["metodologia"]["periodoAnalise"] == "06/03/2025 até 28/03/2025 (22 dias)"

    def test_debug_log_reports_trend_fit(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="backend.app.ml.rainfall_outlook"):
            compute_forecast(steady_series(45), now=NOW)
        fit = [r for r in caplog.records if r.getMessage().startswith("Trend fit")]
        assert len(fit) == 1
        assert "'trend': 'estavel'" in fit[0].getMessage()
        assert "'points': 45" in fit[0].getMessage()

    def test_output_ranges(self):
        for seed in (1, 2, 3):
            out = compute_forecast(noisy_daily_series(365, seed=seed), now=NOW).to_dict()
            assert 0 <= out["probabilidadeChuva"] <= 100
            assert 0 <= out["proximoMes"]["estimativaChuva"] <= 300
            interval = out["proximoMes"]["intervaloConfianca"]
            assert interval["min"] <= out["proximoMes"]["estimativaChuva"] <= interval["max"]
            assert interval["min"] >= 0
            assert 20 <= out["confianca"] <= 85
            assert 45 <= out["acuracia"] <= 88
            assert out["tendencia"] in {t.value for t in Trend}

    def test_idempotent(self):
        series = noisy_daily_series(200, seed=11)
        assert compute_forecast(series, now=NOW).to_dict() == compute_forecast(series, now=NOW).to_dict()

    def test_order_invariant(self):
        series = noisy_daily_series(200, seed=12)
        shuffled = list(series)
        random.Random(7).shuffle(shuffled)
        assert compute_forecast(shuffled, now=NOW).to_dict() == compute_forecast(series, now=NOW).to_dict()

    def test_large_series_reports_full_count(self):
        out = compute_forecast(noisy_daily_series(1500, seed=4), now=NOW).to_dict()
        assert out["metodologia"]["amostras"] == 1500
        assert 0 <= out["probabilidadeChuva"] <= 100

    def test_naive_now_is_utc(self):
        series = steady_series(45)
        naive = compute_forecast(series, now=NOW.replace(tzinfo=None))
        aware = compute_forecast(series, now=NOW)
        assert naive.to_dict() == aware.to_dict()
