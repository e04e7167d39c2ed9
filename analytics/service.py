"""
analytics/service.py

AnalyticsService — the query surface callers (UI facades, reporting jobs,
the CLI) use. Wires the repositories into the rollup aggregator, target
resolver, trend analyzer and insight engine.

Reads go through stored daily summaries only; raw intake is touched by the
rollup jobs and nowhere else.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Callable, Iterable, Optional, Union

from analytics.adherence import daily_adherence, overall_adherence, target_for
from analytics.errors import TargetResolutionError
from analytics.insights import InsightRuleEngine
from analytics.rollup import ROLLUP_MAX_WORKERS, RollupAggregator
from analytics.targets import TargetResolver
from analytics.trends import DEFAULT_WINDOW, calculate_trend, detect_nutrient_streaks
from cache.target_cache import TargetCache
from schemas.nutrition_schemas import (
    BackfillReport, DailySummary, DayAnalytics, Insight, MonthlySummary,
    RollupCompleted, RollupPeriod, SeriesPoint, StreakRecord, StreakType,
    TargetVector, TrendResult, WeeklySummary, utcnow,
)

logger = logging.getLogger(__name__)


class AnalyticsService:

    def __init__(
        self,
        intake_repo,
        summary_repo,
        goal_repo,
        profile_repo=None,
        cache: Optional[TargetCache] = None,
        clock: Callable[[], datetime] = utcnow,
        engine: Optional[InsightRuleEngine] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.summary_repo = summary_repo
        self.aggregator   = RollupAggregator(
            intake_repo, summary_repo, clock=clock,
            max_workers=max_workers or ROLLUP_MAX_WORKERS,
        )
        self.resolver     = TargetResolver(goal_repo, profile_repo, cache=cache)
        self.engine       = engine or InsightRuleEngine()

    # ── Targets ───────────────────────────────────────────────────────────────

    def resolve_target(self, user_id: str, day: date) -> TargetVector:
        return self.resolver.resolve(user_id, day)

    def _targets_or_none(self, user_id: str, day: date) -> Optional[TargetVector]:
        try:
            return self.resolver.resolve(user_id, day)
        except TargetResolutionError as e:
            logger.warning("%s, falling back to reference intakes", e)
            return None

    # ── Rollups ───────────────────────────────────────────────────────────────

    def run_rollup(
        self, user_id: str, period: RollupPeriod, day: date,
    ) -> Union[DailySummary, WeeklySummary, MonthlySummary, None]:
        """Roll up the day, ISO week or month containing `day`."""
        if period == "daily":
            return self.aggregator.run_daily_rollup(user_id, day)
        if period == "weekly":
            iso_year, iso_week, _ = day.isocalendar()
            return self.aggregator.run_weekly_rollup(user_id, iso_year, iso_week)
        if period == "monthly":
            return self.aggregator.run_monthly_rollup(user_id, day.year, day.month)
        raise ValueError(f"Unknown rollup period: {period}")

    def backfill(
        self,
        user_id: str,
        start: date,
        end: date,
        max_workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BackfillReport:
        return self.aggregator.backfill_user_rollups(
            user_id, start, end, max_workers=max_workers, cancel_event=cancel_event,
        )

    def on_rollup_completed(self, listener: Callable[[RollupCompleted], None]) -> None:
        """listener(event) after every summary row the rollup jobs write."""
        self.aggregator.subscribe(listener)

    # ── Analytics window ──────────────────────────────────────────────────────

    def build_window(self, user_id: str, start: date, end: date) -> list[DayAnalytics]:
        """One DayAnalytics per stored day that has data, oldest first."""
        window = []
        for row in self.summary_repo.list_daily(user_id, start, end):
            if not row.has_data:
                continue
            targets = self._targets_or_none(user_id, row.log_date)
            window.append(DayAnalytics(
                log_date=row.log_date,
                nutrients=row.nutrients,
                targets=targets,
                adherence=daily_adherence(row.nutrients, targets),
                entry_count=row.entry_count,
            ))
        return window

    def daily_adherence(self, user_id: str, day: date) -> Optional[DayAnalytics]:
        row = self.summary_repo.get_daily(user_id, day)
        if row is None:
            return None
        targets = self._targets_or_none(user_id, day)
        adherence = daily_adherence(row.nutrients, targets)
        logger.debug("Adherence %s %s: overall %.1f", user_id, day, overall_adherence(adherence))
        return DayAnalytics(
            log_date=day, nutrients=row.nutrients, targets=targets,
            adherence=adherence, entry_count=row.entry_count,
        )

    def _series(self, window: list[DayAnalytics], nutrient: str) -> list[SeriesPoint]:
        return [
            SeriesPoint(
                log_date=d.log_date,
                value=d.nutrients[nutrient],
                target=target_for(nutrient, d.targets),
            )
            for d in window
            if nutrient in d.nutrients
        ]

    # ── Queries ───────────────────────────────────────────────────────────────

    def compute_trends(
        self,
        user_id: str,
        start: date,
        end: date,
        nutrient_keys: Iterable[str],
        window_size: int = DEFAULT_WINDOW,
    ) -> list[TrendResult]:
        """Nutrients never recorded in the range are left out of the result."""
        window = self.build_window(user_id, start, end)
        results = []
        for nutrient in nutrient_keys:
            series = self._series(window, nutrient)
            if not series:
                logger.debug("No %s data for %s in %s..%s", nutrient, user_id, start, end)
                continue
            results.append(calculate_trend(nutrient, series, window_size))
        return results

    def detect_streaks(
        self,
        user_id: str,
        start: date,
        end: date,
        nutrient_keys: Iterable[str],
        streak_type: StreakType = StreakType.MEETING_GOAL,
    ) -> list[StreakRecord]:
        window = self.build_window(user_id, start, end)
        return [
            detect_nutrient_streaks(self._series(window, nutrient), streak_type, nutrient=nutrient)
            for nutrient in nutrient_keys
        ]

    def evaluate_insights(self, user_id: str, start: date, end: date) -> list[Insight]:
        insights = self.engine.evaluate(self.build_window(user_id, start, end))
        logger.info("Insights for %s %s..%s: %d", user_id, start, end, len(insights))
        return insights
