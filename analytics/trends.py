"""
analytics/trends.py

TrendAnalyzer — statistics over one nutrient's daily series.

All functions take a list of SeriesPoint ordered oldest → newest. Short or
empty series give neutral answers (stable trend, 0 % change, score 0, empty
streak) instead of raising; only calculate_trend requires at least one point.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Optional, Sequence

import numpy as np

from analytics.adherence import clamp_percent
from analytics.errors import InsufficientDataError
from schemas.nutrients import MINIMIZE_NUTRIENTS
from schemas.nutrition_schemas import (
    ImprovementOpportunity, SeriesPoint, StreakRecord, StreakType,
    TrendDirection, TrendResult,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW         = 7
CORRELATION_THRESHOLD  = 0.3
LOW_ADHERENCE_PCT      = float(os.getenv("TREND_LOW_ADHERENCE_PCT", "70"))
HIGH_ADHERENCE_PCT     = float(os.getenv("TREND_HIGH_ADHERENCE_PCT", "130"))
STABLE_CHANGE_PCT      = 5.0
CONSISTENCY_FLOOR      = float(os.getenv("INSIGHT_CONSISTENCY_FLOOR", "60"))

Condition = Callable[[float, float], bool]


def _values(series: Sequence[SeriesPoint]) -> np.ndarray:
    return np.array([p.value for p in series], dtype=float)


# ── Smoothing ─────────────────────────────────────────────────────────────────

def calculate_rolling_averages(series: Sequence[SeriesPoint], window_size: int = DEFAULT_WINDOW) -> list[SeriesPoint]:
    """
    Sliding mean, one point per full window (len - window + 1 points), dated
    at the window's last day. A window whose mean target is 0 carries no
    target. Series shorter than the window come back unchanged.
    """
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    points = list(series)
    if len(points) < window_size:
        return points

    windows = np.lib.stride_tricks.sliding_window_view
    values  = windows(_values(points), window_size).mean(axis=1)
    targets = windows(np.array([p.target or 0.0 for p in points], dtype=float), window_size).mean(axis=1)
    return [
        SeriesPoint(
            log_date=points[i + window_size - 1].log_date,
            value=float(values[i]),
            target=float(targets[i]) if targets[i] > 0 else None,
        )
        for i in range(len(values))
    ]


# ── Direction + change ────────────────────────────────────────────────────────

def determine_trend_direction(series: Sequence[SeriesPoint]) -> TrendDirection:
    """
    Least-squares line over (index, value). |Pearson r| below 0.3 is noise,
    so it reads as stable whatever the slope says.
    """
    y = _values(series)
    if len(y) < 2 or np.ptp(y) == 0:
        return "stable"
    x = np.arange(len(y), dtype=float)
    correlation = float(np.corrcoef(x, y)[0, 1])
    if not np.isfinite(correlation) or abs(correlation) < CORRELATION_THRESHOLD:
        return "stable"
    slope = float(np.polyfit(x, y, 1)[0])
    return "increasing" if slope > 0 else "decreasing"


def calculate_percentage_change(series: Sequence[SeriesPoint]) -> float:
    """Signed change first → last. From a zero start: 100 if it rose, else 0."""
    if len(series) < 2:
        return 0.0
    first, last = series[0].value, series[-1].value
    if first == 0:
        return 100.0 if last > 0 else 0.0
    return round((last - first) / first * 100, 2)


# ── Streaks ───────────────────────────────────────────────────────────────────

def detect_nutrient_streaks(
    series: Sequence[SeriesPoint],
    streak_type: StreakType,
    condition: Optional[Condition] = None,
    nutrient: str = "",
) -> StreakRecord:
    """
    One backward pass from the newest point. The streak is active only when
    the newest point satisfies the condition. Dates and averages describe the
    active streak, or the longest (most recent on ties) when none is active.
    """
    points = list(series)
    if not points:
        return StreakRecord(nutrient=nutrient, streak_type=streak_type)

    check = condition or streak_type.matches
    current = run = best = 0
    best_span: Optional[tuple[int, int]] = None
    in_current = True
    run_end = 0

    for idx in range(len(points) - 1, -1, -1):
        p = points[idx]
        if check(p.value, p.target or 0.0):
            if run == 0:
                run_end = idx
            run += 1
            if in_current:
                current = run
            if run > best:
                best, best_span = run, (idx, run_end)
        else:
            in_current = False
            run = 0

    if current:
        span = (len(points) - current, len(points) - 1)
    else:
        span = best_span
    if span is None:
        return StreakRecord(nutrient=nutrient, streak_type=streak_type, max_streak=0)

    streak = points[span[0]:span[1] + 1]
    targets = [p.target for p in streak if p.target is not None]
    return StreakRecord(
        nutrient=nutrient,
        streak_type=streak_type,
        current_streak=current,
        max_streak=best,
        is_active=current > 0,
        start_date=streak[0].log_date,
        end_date=streak[-1].log_date,
        avg_value=round(float(np.mean([p.value for p in streak])), 2),
        avg_target=round(float(np.mean(targets)), 2) if targets else None,
    )


# ── Consistency ───────────────────────────────────────────────────────────────

def _percent_of_target(point: SeriesPoint) -> float:
    if not point.target:
        return 100.0 if point.value == 0 else 0.0
    return point.value / point.target * 100


def calculate_consistency_score(series: Sequence[SeriesPoint]) -> float:
    """100 - CV% of the percent-of-target series, clamped to [0, 100]."""
    if not series:
        return 0.0
    pct  = np.array([_percent_of_target(p) for p in series], dtype=float)
    mean = float(pct.mean())
    cv   = float(pct.std()) / mean if mean > 0 else 1.0
    return round(clamp_percent(100 - cv * 100), 2)


# ── Composite ─────────────────────────────────────────────────────────────────

def calculate_trend(nutrient: str, series: Sequence[SeriesPoint], window_size: int = DEFAULT_WINDOW) -> TrendResult:
    if not series:
        raise InsufficientDataError(f"No data points for {nutrient}")
    ordered  = sorted(series, key=lambda p: p.log_date)
    smoothed = calculate_rolling_averages(ordered, window_size)
    return TrendResult(
        nutrient=nutrient,
        points=ordered,
        trend=determine_trend_direction(smoothed),
        percent_change=calculate_percentage_change(smoothed),
    )


def identify_improvement_opportunities(trends: Sequence[TrendResult], recent_days: int = DEFAULT_WINDOW) -> list[ImprovementOpportunity]:
    """
    increase_intake      recent adherence < 70 % and falling
    decrease_intake      limit nutrient, recent intake > 130 % and rising
    improve_consistency  flat (|change| < 5 %) but consistency score < 60
    """
    found: list[ImprovementOpportunity] = []
    for trend in trends:
        recent = [p for p in trend.points[-recent_days:] if p.target]
        if not recent:
            continue
        avg_pct = float(np.mean([p.value / p.target * 100 for p in recent]))
        label = trend.nutrient

        if avg_pct < LOW_ADHERENCE_PCT and trend.trend == "decreasing":
            kind, severity = "increase_intake", "high"
            message = f"{label} is at {avg_pct:.0f}% of target and falling. Add more {label}-rich foods."
        elif (trend.nutrient in MINIMIZE_NUTRIENTS
              and avg_pct > HIGH_ADHERENCE_PCT and trend.trend == "increasing"):
            kind, severity = "decrease_intake", "warn"
            message = f"{label} is at {avg_pct:.0f}% of its limit and rising. Cut back on {label} sources."
        elif (trend.trend == "stable" and abs(trend.percent_change) < STABLE_CHANGE_PCT
              and calculate_consistency_score(trend.points) < CONSISTENCY_FLOOR):
            kind, severity = "improve_consistency", "info"
            message = f"{label} swings a lot from day to day. Aim for a steadier daily intake."
        else:
            continue

        found.append(ImprovementOpportunity(
            nutrient=trend.nutrient, kind=kind, severity=severity,
            avg_adherence=round(avg_pct, 2), trend=trend.trend,
            percent_change=trend.percent_change, message=message,
        ))
    return found
