from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta

from analytics.errors import TargetResolutionError
from analytics.service import AnalyticsService
from schemas.nutrition_schemas import GoalLayer, StreakType, TargetVector
from tests.fakes import (
    InMemoryGoalLayerRepository, InMemoryIntakeRepository,
    InMemoryProfileRepository, InMemorySummaryRepository,
)

START   = date(2024, 3, 4)
TARGETS = TargetVector(calories=2000, protein_g=100, carbs_g=250, fat_g=70, fiber_g=25)


class TestAnalyticsService(unittest.TestCase):
    def setUp(self) -> None:
        self.intake    = InMemoryIntakeRepository()
        self.summaries = InMemorySummaryRepository()
        self.goals     = InMemoryGoalLayerRepository()
        self.service   = AnalyticsService(
            self.intake, self.summaries, self.goals, InMemoryProfileRepository(),
            clock=lambda: datetime(2024, 4, 1, 3, 0),
        )
        self.goals.add_layer(GoalLayer(user_id="u1", layer_class="base", start_date=date(2024, 1, 1), targets=TARGETS))

    def log_days(self, count: int, nutrients: dict, user_id: str = "u1") -> None:
        for offset in range(count):
            day = START + timedelta(days=offset)
            self.intake.add(user_id, datetime.combine(day, datetime.min.time()) + timedelta(hours=13), nutrients)

    def test_run_rollup_per_period(self) -> None:
        self.log_days(3, {"calories": 1800})
        self.service.run_rollup("u1", "daily", START)
        self.service.run_rollup("u1", "daily", START + timedelta(days=1))

        weekly = self.service.run_rollup("u1", "weekly", START + timedelta(days=3))
        monthly = self.service.run_rollup("u1", "monthly", START)
        self.assertEqual((weekly.iso_year, weekly.iso_week, weekly.days_with_data), (2024, 10, 2))
        self.assertEqual((monthly.month, monthly.avg_nutrients), (3, {"calories": 1800.0}))
        with self.assertRaises(ValueError):
            self.service.run_rollup("u1", "yearly", START)

    def test_backfill_then_insights(self) -> None:
        self.log_days(7, {"calories": 2000, "iron_mg": 5})
        report = self.service.backfill("u1", START, START + timedelta(days=6))
        self.assertEqual((report.days_processed, report.weeks_processed, report.failed_count), (7, 1, 0))

        insights = self.service.evaluate_insights("u1", START, START + timedelta(days=6))
        self.assertEqual([(i.key, i.severity) for i in insights], [("iron_low_streak", "high")])

    def test_window_skips_empty_days_and_scores_adherence(self) -> None:
        self.log_days(2, {"calories": 1000, "fiber_g": 25})
        self.service.backfill("u1", START, START + timedelta(days=4))

        window = self.service.build_window("u1", START, START + timedelta(days=4))
        self.assertEqual([d.log_date for d in window], [START, START + timedelta(days=1)])
        self.assertEqual(window[0].adherence, {"calories": 50.0, "fiber_g": 100.0})
        self.assertEqual(window[0].targets, TARGETS)

    def test_daily_adherence(self) -> None:
        self.assertIsNone(self.service.daily_adherence("u1", START))
        self.log_days(1, {"calories": 2500, "sodium_mg": 3450})
        self.service.run_rollup("u1", "daily", START)
        day = self.service.daily_adherence("u1", START)
        self.assertEqual(day.adherence, {"calories": 100.0, "sodium_mg": 50.0})

    def test_unknown_user_falls_back_to_reference_intakes(self) -> None:
        self.log_days(2, {"iron_mg": 9}, user_id="ghost")
        self.service.backfill("ghost", START, START + timedelta(days=1))
        with self.assertRaises(TargetResolutionError):
            self.service.resolve_target("ghost", START)

        with self.assertLogs("analytics.service", level="WARNING"):
            window = self.service.build_window("ghost", START, START + timedelta(days=1))
        self.assertIsNone(window[0].targets)
        self.assertEqual(window[0].adherence, {"iron_mg": 50.0})

    def test_trends_leave_out_unrecorded_nutrients(self) -> None:
        for offset, kcal in enumerate((1500, 1600, 1700, 1800, 1900, 2000, 2100, 2200, 2300, 2400)):
            day = START + timedelta(days=offset)
            self.intake.add("u1", datetime.combine(day, datetime.min.time()), {"calories": kcal})
        self.service.backfill("u1", START, START + timedelta(days=9))

        trends = self.service.compute_trends("u1", START, START + timedelta(days=9), ["calories", "iron_mg"])
        self.assertEqual([t.nutrient for t in trends], ["calories"])
        self.assertEqual(trends[0].trend, "increasing")
        self.assertEqual(len(trends[0].points), 10)
        self.assertEqual(trends[0].points[0].target, 2000.0)

    def test_streaks(self) -> None:
        self.log_days(4, {"protein_g": 120})
        self.service.backfill("u1", START, START + timedelta(days=3))
        streaks = self.service.detect_streaks(
            "u1", START, START + timedelta(days=3), ["protein_g", "iron_mg"], StreakType.EXCEEDING_GOAL,
        )
        self.assertEqual([(s.nutrient, s.current_streak) for s in streaks], [("protein_g", 4), ("iron_mg", 0)])

    def test_rollup_completion_reaches_subscribers(self) -> None:
        events = []
        self.service.on_rollup_completed(events.append)
        self.log_days(1, {"calories": 1800})
        self.service.run_rollup("u1", "daily", START)
        self.service.run_rollup("u1", "weekly", START + timedelta(days=2))

        self.assertEqual([(e.period, e.period_start) for e in events], [("daily", START), ("weekly", START)])

    def test_goal_change_reaches_cached_targets(self) -> None:
        self.assertEqual(self.service.resolve_target("u1", START), TARGETS)
        newer = TARGETS.model_copy(update={"calories": 1700})
        self.goals.add_layer(GoalLayer(user_id="u1", layer_class="base", start_date=START, targets=newer))
        self.assertEqual(self.service.resolve_target("u1", START).calories, 1700)


if __name__ == "__main__":
    unittest.main()
