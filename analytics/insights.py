"""
analytics/insights.py

InsightRuleEngine — pattern detection over a window of DayAnalytics.

Rule catalogue (priority: lower first within a severity):

  {nutrient}_low_streak   1  iron / calcium / potassium / magnesium under 70 %
                             of target for 3+ consecutive most-recent days
  sodium_high_trend       1  sodium rising and recent mean above the limit
  macro_imbalance         2  7-day macro calorie shares outside healthy ranges
  fiber_consistently_low  2  5 of the last 7 days under 60 % of fiber target
  weekend_pattern         3  weekend calories differ from weekdays by > 25 %
  increase_intake /       4  trend-based opportunities from analytics.trends
  decrease_intake /
  improve_consistency

Each rule sees the whole window and nothing else; one rule raising does not
stop the others. Results are deduplicated by id and sorted by severity
(high > warn > info), then priority, then key.
"""

from __future__ import annotations

import logging
import os
from datetime import date, timedelta
from typing import Callable, NamedTuple, Optional, Sequence

import numpy as np

from analytics.adherence import macro_balance, target_for
from analytics.trends import (
    calculate_trend, determine_trend_direction, identify_improvement_opportunities,
)
from schemas.nutrients import MINIMIZE_NUTRIENTS, nutrient_label
from schemas.nutrition_schemas import DayAnalytics, Insight, SeriesPoint, Severity

logger = logging.getLogger(__name__)


# ── Thresholds ────────────────────────────────────────────────────────────────
DEFICIENCY_FRACTION  = float(os.getenv("INSIGHT_DEFICIENCY_FRACTION", "0.7"))
DEFICIENCY_MIN_DAYS  = int(os.getenv("INSIGHT_DEFICIENCY_MIN_DAYS", "3"))
DEFICIENCY_HIGH_DAYS = int(os.getenv("INSIGHT_DEFICIENCY_HIGH_DAYS", "7"))
DEFICIENCY_NUTRIENTS = ("iron_mg", "calcium_mg", "potassium_mg", "magnesium_mg")

MACRO_WINDOW_DAYS = 7
MACRO_RANGES = {              # (warn below, warn above, high below, high above)
    "protein_pct": (10.0, 35.0, 5.0, 40.0),
    "carbs_pct":   (20.0, 65.0, 10.0, 75.0),
    "fat_pct":     (15.0, 40.0, None, None),
}

FIBER_LOW_FRACTION      = 0.6
FIBER_VERY_LOW_FRACTION = 0.4
FIBER_LOW_MIN_DAYS      = 5
FIBER_WINDOW_DAYS       = 7

SODIUM_HIGH_MULTIPLIER = 1.5
SODIUM_RECENT_DAYS     = 7

WEEKEND_MIN_DAYS     = 14
WEEKEND_MIN_WEEKENDS = 4
WEEKEND_MIN_WEEKDAYS = 8
WEEKEND_DIFF_PCT     = float(os.getenv("INSIGHT_WEEKEND_DIFF_PCT", "25"))
WEEKEND_WARN_PCT     = float(os.getenv("INSIGHT_WEEKEND_WARN_PCT", "40"))

TREND_NUTRIENTS = ("calories", "protein_g", "carbs_g", "fat_g", "fiber_g", *sorted(MINIMIZE_NUTRIENTS))

SEVERITY_RANK: dict[str, int] = {"high": 3, "warn": 2, "info": 1}

FOOD_SOURCES = {
    "iron_mg":      ["lean red meat", "lentils", "spinach", "fortified cereals"],
    "calcium_mg":   ["dairy", "fortified plant milk", "tofu", "leafy greens"],
    "potassium_mg": ["bananas", "potatoes", "beans", "yogurt"],
    "magnesium_mg": ["nuts", "seeds", "whole grains", "dark chocolate"],
}


def _insight_id(key: str, start: date, end: date, nutrient: Optional[str] = None) -> str:
    return f"{key}:{nutrient}:{start}:{end}" if nutrient else f"{key}:{start}:{end}"


def _recorded(days: Sequence[DayAnalytics], nutrient: str) -> list[DayAnalytics]:
    return [d for d in days if nutrient in d.nutrients]


# ═══════════════════════════════════════════════════════════════
# RULES
# ═══════════════════════════════════════════════════════════════

def deficiency_streak_rule(days: Sequence[DayAnalytics]) -> list[Insight]:
    found = []
    for nutrient in DEFICIENCY_NUTRIENTS:
        streak: list[DayAnalytics] = []
        for day in reversed(days):
            if streak and (streak[-1].log_date - day.log_date) != timedelta(days=1):
                break
            value  = day.nutrients.get(nutrient)
            target = target_for(nutrient, day.targets)
            if value is None or not target or value >= target * DEFICIENCY_FRACTION:
                break
            streak.append(day)
        if len(streak) < DEFICIENCY_MIN_DAYS:
            continue

        streak.reverse()
        label    = nutrient_label(nutrient)
        values   = [d.nutrients[nutrient] for d in streak]
        targets  = [target_for(nutrient, d.targets) for d in streak]
        avg      = float(np.mean(values))
        severity = "high" if len(streak) >= DEFICIENCY_HIGH_DAYS else "warn"
        key      = f"{label}_low_streak"
        found.append(Insight(
            id=_insight_id(key, streak[0].log_date, streak[-1].log_date),
            key=key, nutrient=nutrient,
            start_date=streak[0].log_date, end_date=streak[-1].log_date,
            severity=severity, priority=1,
            message=(f"{label.capitalize()} has been below {DEFICIENCY_FRACTION:.0%} "
                     f"of target for {len(streak)} days in a row."),
            details={
                "streak_days":     len(streak),
                "avg_intake":      round(avg, 2),
                "avg_target":      round(float(np.mean(targets)), 2),
                "avg_deficit":     round(float(np.mean(targets)) - avg, 2),
                "recommendations": [f"Add {food}" for food in FOOD_SOURCES.get(nutrient, [])],
            },
        ))
    return found


def macro_imbalance_rule(days: Sequence[DayAnalytics]) -> list[Insight]:
    if len(days) < MACRO_WINDOW_DAYS:
        return []
    recent = days[-MACRO_WINDOW_DAYS:]
    shares = [b for b in (macro_balance(d.nutrients) for d in recent) if b["macro_calories"] > 0]
    if not shares:
        return []
    avg = {k: round(float(np.mean([s[k] for s in shares])), 2) for k in MACRO_RANGES}

    outside = False
    high = False
    for key, (lo, hi, high_lo, high_hi) in MACRO_RANGES.items():
        if avg[key] < lo or avg[key] > hi:
            outside = True
        if (high_lo is not None and avg[key] < high_lo) or (high_hi is not None and avg[key] > high_hi):
            high = True
    if not outside:
        return []

    recommendations = []
    if avg["protein_pct"] < 15:
        recommendations.append("Increase protein: add lean meat, fish, eggs or legumes to each meal.")
    elif avg["protein_pct"] > MACRO_RANGES["protein_pct"][1]:
        recommendations.append("Protein share is very high: swap some protein for whole grains and vegetables.")
    if avg["carbs_pct"] > 60:
        recommendations.append("Reduce refined carbs: prefer whole grains and vegetables.")
    elif avg["carbs_pct"] < MACRO_RANGES["carbs_pct"][0]:
        recommendations.append("Carbs are very low: add fruit, oats or starchy vegetables.")
    if avg["fat_pct"] < 20:
        recommendations.append("Add healthy fats: nuts, olive oil, avocado.")
    elif avg["fat_pct"] > MACRO_RANGES["fat_pct"][1]:
        recommendations.append("Fat share is high: choose leaner cuts and less added oil.")

    start, end = recent[0].log_date, recent[-1].log_date
    return [Insight(
        id=_insight_id("macro_imbalance", start, end),
        key="macro_imbalance", start_date=start, end_date=end,
        severity="high" if high else "warn", priority=2,
        message=(f"Macro split over the last {len(recent)} days is "
                 f"protein {avg['protein_pct']:.0f}% / carbs {avg['carbs_pct']:.0f}% / fat {avg['fat_pct']:.0f}%."),
        details={**avg, "days_with_macros": len(shares), "recommendations": recommendations},
    )]


def fiber_low_rule(days: Sequence[DayAnalytics]) -> list[Insight]:
    recent = _recorded(days[-FIBER_WINDOW_DAYS:], "fiber_g")
    if len(recent) < FIBER_LOW_MIN_DAYS:
        return []
    target = target_for("fiber_g", recent[-1].targets)
    if not target:
        return []
    low_days = [d for d in recent if d.nutrients["fiber_g"] < target * FIBER_LOW_FRACTION]
    if len(low_days) < FIBER_LOW_MIN_DAYS:
        return []

    avg = float(np.mean([d.nutrients["fiber_g"] for d in recent]))
    start, end = recent[0].log_date, recent[-1].log_date
    return [Insight(
        id=_insight_id("fiber_consistently_low", start, end),
        key="fiber_consistently_low", nutrient="fiber_g", start_date=start, end_date=end,
        severity="warn" if avg < target * FIBER_VERY_LOW_FRACTION else "info", priority=2,
        message=f"Fiber was under {FIBER_LOW_FRACTION:.0%} of target on {len(low_days)} of the last {len(recent)} days.",
        details={
            "low_days":   len(low_days),
            "avg_fiber":  round(avg, 2),
            "target":     target,
            "recommendations": ["Add beans, berries, oats or whole-grain bread."],
        },
    )]


def sodium_trend_rule(days: Sequence[DayAnalytics]) -> list[Insight]:
    recorded = _recorded(days, "sodium_mg")
    if len(recorded) < 2:
        return []
    series = [SeriesPoint(log_date=d.log_date, value=d.nutrients["sodium_mg"]) for d in recorded]
    if determine_trend_direction(series) != "increasing":
        return []
    limit = target_for("sodium_mg", recorded[-1].targets)
    recent_avg = float(np.mean([p.value for p in series[-SODIUM_RECENT_DAYS:]]))
    if not limit or recent_avg <= limit:
        return []

    start, end = recorded[0].log_date, recorded[-1].log_date
    return [Insight(
        id=_insight_id("sodium_high_trend", start, end),
        key="sodium_high_trend", nutrient="sodium_mg", start_date=start, end_date=end,
        severity="high" if recent_avg > limit * SODIUM_HIGH_MULTIPLIER else "warn", priority=1,
        message=f"Sodium is trending up and averaged {recent_avg:.0f} mg recently (limit {limit:.0f} mg).",
        details={
            "recent_avg": round(recent_avg, 2),
            "limit":      limit,
            "recommendations": ["Cut back on processed foods, sauces and salty snacks."],
        },
    )]


def weekend_pattern_rule(days: Sequence[DayAnalytics]) -> list[Insight]:
    if len(days) < WEEKEND_MIN_DAYS:
        return []
    recorded = _recorded(days, "calories")
    weekend = [d.nutrients["calories"] for d in recorded if d.log_date.weekday() >= 5]
    weekday = [d.nutrients["calories"] for d in recorded if d.log_date.weekday() < 5]
    if len(weekend) < WEEKEND_MIN_WEEKENDS or len(weekday) < WEEKEND_MIN_WEEKDAYS:
        return []

    weekend_avg = float(np.mean(weekend))
    weekday_avg = float(np.mean(weekday))
    if weekday_avg <= 0:
        return []
    diff_pct = (weekend_avg - weekday_avg) / weekday_avg * 100
    if abs(diff_pct) <= WEEKEND_DIFF_PCT:
        return []

    direction = "more" if diff_pct > 0 else "fewer"
    start, end = days[0].log_date, days[-1].log_date
    return [Insight(
        id=_insight_id("weekend_pattern", start, end),
        key="weekend_pattern", nutrient="calories", start_date=start, end_date=end,
        severity="warn" if abs(diff_pct) > WEEKEND_WARN_PCT else "info", priority=3,
        message=f"You eat {abs(diff_pct):.0f}% {direction} calories on weekends than on weekdays.",
        details={
            "weekend_avg": round(weekend_avg, 2),
            "weekday_avg": round(weekday_avg, 2),
            "diff_pct":    round(diff_pct, 2),
        },
    )]


def trend_opportunity_rule(days: Sequence[DayAnalytics]) -> list[Insight]:
    trends = []
    for nutrient in TREND_NUTRIENTS:
        recorded = _recorded(days, nutrient)
        if len(recorded) < 2:
            continue
        series = [
            SeriesPoint(log_date=d.log_date, value=d.nutrients[nutrient], target=target_for(nutrient, d.targets))
            for d in recorded
        ]
        trends.append(calculate_trend(nutrient, series))

    found = []
    for opp in identify_improvement_opportunities(trends):
        points = next(t.points for t in trends if t.nutrient == opp.nutrient)
        start, end = points[0].log_date, points[-1].log_date
        found.append(Insight(
            id=_insight_id(opp.kind, start, end, nutrient=opp.nutrient),
            key=opp.kind, nutrient=opp.nutrient, start_date=start, end_date=end,
            severity=opp.severity, priority=4, message=opp.message,
            details={
                "avg_adherence":  opp.avg_adherence,
                "trend":          opp.trend,
                "percent_change": opp.percent_change,
            },
        ))
    return found


# ═══════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════

class InsightRule(NamedTuple):
    key:      str
    evaluate: Callable[[Sequence[DayAnalytics]], list[Insight]]


DEFAULT_RULES: tuple[InsightRule, ...] = (
    InsightRule("deficiency_streak",      deficiency_streak_rule),
    InsightRule("sodium_high_trend",      sodium_trend_rule),
    InsightRule("macro_imbalance",        macro_imbalance_rule),
    InsightRule("fiber_consistently_low", fiber_low_rule),
    InsightRule("weekend_pattern",        weekend_pattern_rule),
    InsightRule("trend_opportunity",      trend_opportunity_rule),
)


def sort_insights(insights: Sequence[Insight]) -> list[Insight]:
    return sorted(insights, key=lambda i: (-SEVERITY_RANK[i.severity], i.priority, i.key, i.id))


class InsightRuleEngine:

    def __init__(self, rules: Sequence[InsightRule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def evaluate(self, window: Sequence[DayAnalytics]) -> list[Insight]:
        """Empty and single-day windows have no pattern to find."""
        if len(window) < 2:
            return []
        days = sorted(window, key=lambda d: d.log_date)

        by_id: dict[str, Insight] = {}
        for rule in self.rules:
            try:
                found = rule.evaluate(days)
            except Exception:
                logger.exception("Insight rule %s failed, skipping", rule.key)
                continue
            for insight in found:
                kept = by_id.get(insight.id)
                if kept is None or SEVERITY_RANK[insight.severity] > SEVERITY_RANK[kept.severity]:
                    by_id[insight.id] = insight

        return sort_insights(list(by_id.values()))


def severity_counts(insights: Sequence[Insight]) -> dict[Severity, int]:
    counts: dict[Severity, int] = {"high": 0, "warn": 0, "info": 0}
    for insight in insights:
        counts[insight.severity] += 1
    return counts
