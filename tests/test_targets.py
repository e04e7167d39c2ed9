from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from analytics.errors import TargetResolutionError
from analytics.targets import TargetResolver, select_active_layers
from schemas.nutrition_schemas import GoalLayer, PhysicalProfile, TargetVector, utcnow
from tests.fakes import InMemoryGoalLayerRepository, InMemoryProfileRepository
from tools.macro_calculator import calculate_macros, compute_targets

MONDAY  = date(2024, 3, 4)
SUNDAY  = date(2024, 3, 10)

BASE_TARGETS   = TargetVector(calories=2000, protein_g=100, carbs_g=250, fat_g=70)
SUNDAY_TARGETS = TargetVector(calories=2600, protein_g=110, carbs_g=330, fat_g=90)
PHASE_TARGETS  = TargetVector(calories=2200, protein_g=105, carbs_g=270, fat_g=75)

PROFILE = PhysicalProfile(
    user_id="u1", age=30, gender="male", weight_kg=80, height_cm=180,
    activity_level="sedentary", default_goal="maintenance",
)


def base_layer(**kwargs) -> GoalLayer:
    fields = {"user_id": "u1", "layer_class": "base", "start_date": date(2024, 1, 1), "targets": BASE_TARGETS}
    fields.update(kwargs)
    return GoalLayer(**fields)


class TestGoalLayerShape(unittest.TestCase):
    def test_layer_needs_targets_or_goal_type(self) -> None:
        with self.assertRaises(ValueError):
            GoalLayer(user_id="u1", layer_class="base", start_date=MONDAY)

    def test_weekly_layer_needs_weekday(self) -> None:
        with self.assertRaises(ValueError):
            GoalLayer(user_id="u1", layer_class="weekly_cycle", start_date=MONDAY, targets=BASE_TARGETS)

    def test_phase_layer_cycle_days(self) -> None:
        layer = GoalLayer(
            user_id="u1", layer_class="phase_based", start_date=date(2024, 3, 1),
            targets=PHASE_TARGETS, phase="luteal", phase_start_day=15, phase_end_day=28,
        )
        self.assertEqual(layer.cycle_day(date(2024, 3, 1)), 1)
        self.assertFalse(layer.is_active_on(date(2024, 3, 14)))
        self.assertTrue(layer.is_active_on(date(2024, 3, 15)))
        self.assertTrue(layer.is_active_on(date(2024, 3, 28)))
        # next cycle starts Mar 29
        self.assertFalse(layer.is_active_on(date(2024, 3, 29)))
        self.assertTrue(layer.is_active_on(date(2024, 4, 12)))

    def test_goal_type_accepts_spaced_and_hyphenated_names(self) -> None:
        layer = GoalLayer(user_id="u1", layer_class="base", start_date=MONDAY, goal_type="weight loss")
        self.assertEqual(layer.goal_type, "weight_loss")
        profile = PROFILE.model_validate({**PROFILE.model_dump(), "default_goal": " Muscle-Gain "})
        self.assertEqual(profile.default_goal, "muscle_gain")
        with self.assertRaises(ValueError):
            GoalLayer(user_id="u1", layer_class="base", start_date=MONDAY, goal_type="bulk")

    def test_created_at_defaults_to_naive_utc_now(self) -> None:
        before = datetime.now(timezone.utc).replace(tzinfo=None)
        layer = base_layer()
        self.assertIsNone(layer.created_at.tzinfo)
        self.assertLessEqual(before, layer.created_at)
        self.assertLessEqual(layer.created_at, utcnow())

    def test_phase_window_must_fit_cycle(self) -> None:
        with self.assertRaises(ValueError):
            GoalLayer(
                user_id="u1", layer_class="phase_based", start_date=MONDAY,
                targets=PHASE_TARGETS, phase_start_day=20, phase_end_day=30,
            )


class TestSelectActiveLayers(unittest.TestCase):
    def test_latest_start_wins_within_class(self) -> None:
        older = base_layer(start_date=date(2024, 1, 1))
        newer = base_layer(start_date=date(2024, 2, 1), targets=SUNDAY_TARGETS)
        active = select_active_layers([newer, older], MONDAY)
        self.assertEqual(active.base.id, newer.id)

    def test_tie_on_start_date_broken_by_created_at(self) -> None:
        first  = base_layer(created_at=datetime(2024, 1, 1, 8, 0))
        second = base_layer(created_at=datetime(2024, 1, 1, 9, 0), targets=SUNDAY_TARGETS)
        self.assertEqual(select_active_layers([second, first], MONDAY).base.id, second.id)

    def test_ended_layer_is_ignored(self) -> None:
        ended = base_layer(end_date=date(2024, 3, 3))
        self.assertIsNone(select_active_layers([ended], MONDAY).winner())


class RacingGoalLayerRepository(InMemoryGoalLayerRepository):
    """Adds a new base layer while the first lookup is in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.raced = False

    def get_active_layers(self, user_id, day):
        active = super().get_active_layers(user_id, day)
        if not self.raced:
            self.raced = True
            self.add_layer(base_layer(start_date=date(2024, 3, 1), targets=BASE_TARGETS.model_copy(update={"calories": 1500})))
        return active


class TestTargetResolver(unittest.TestCase):
    def setUp(self) -> None:
        self.goals    = InMemoryGoalLayerRepository()
        self.profiles = InMemoryProfileRepository(PROFILE)
        self.resolver = TargetResolver(self.goals, self.profiles)

        self.base = self.goals.add_layer(base_layer())
        self.sunday = self.goals.add_layer(GoalLayer(
            user_id="u1", layer_class="weekly_cycle", start_date=date(2024, 1, 1),
            day_of_week=6, targets=SUNDAY_TARGETS,
        ))

    def test_weekly_layer_overrides_base_on_its_weekday(self) -> None:
        self.assertEqual(self.resolver.resolve("u1", MONDAY), BASE_TARGETS)
        self.assertEqual(self.resolver.resolve("u1", SUNDAY), SUNDAY_TARGETS)

    def test_phase_layer_overrides_weekly_layer(self) -> None:
        self.goals.add_layer(GoalLayer(
            user_id="u1", layer_class="phase_based", start_date=date(2024, 3, 1),
            targets=PHASE_TARGETS, phase="follicular", phase_start_day=6, phase_end_day=13,
        ))
        # Mar 10 is cycle day 10 and a Sunday
        self.assertEqual(self.resolver.resolve("u1", SUNDAY), PHASE_TARGETS)

    def test_removing_a_layer_falls_through(self) -> None:
        self.assertEqual(self.resolver.resolve("u1", SUNDAY), SUNDAY_TARGETS)
        self.assertTrue(self.goals.remove_layer(self.sunday.id))
        self.assertEqual(self.resolver.resolve("u1", SUNDAY), BASE_TARGETS)

    def test_goal_type_layer_computed_from_profile(self) -> None:
        self.goals.add_layer(base_layer(start_date=date(2024, 3, 1), targets=None, goal_type="weight_loss"))
        targets = self.resolver.resolve("u1", MONDAY)
        self.assertEqual(targets, compute_targets(PROFILE, "weight_loss"))
        self.assertLess(targets.calories, compute_targets(PROFILE, "maintenance").calories)

    def test_no_layer_uses_profile_default_goal(self) -> None:
        resolver = TargetResolver(InMemoryGoalLayerRepository(), self.profiles)
        self.assertEqual(resolver.resolve("u1", MONDAY), compute_targets(PROFILE, "maintenance"))

    def test_no_layer_and_no_profile_raises(self) -> None:
        resolver = TargetResolver(InMemoryGoalLayerRepository(), InMemoryProfileRepository())
        with self.assertRaises(TargetResolutionError) as ctx:
            resolver.resolve("ghost", MONDAY)
        self.assertEqual(ctx.exception.user_id, "ghost")

    def test_resolved_targets_are_cached(self) -> None:
        self.resolver.resolve("u1", MONDAY)
        self.resolver.resolve("u1", MONDAY)
        self.assertEqual(self.goals.active_lookups, 1)

    def test_layer_change_invalidates_cache(self) -> None:
        self.assertEqual(self.resolver.resolve("u1", MONDAY), BASE_TARGETS)
        self.goals.add_layer(base_layer(start_date=date(2024, 3, 1), targets=SUNDAY_TARGETS))
        self.assertEqual(self.resolver.resolve("u1", MONDAY), SUNDAY_TARGETS)
        self.assertEqual(self.goals.active_lookups, 2)

    def test_ending_a_layer_invalidates_cache(self) -> None:
        self.assertEqual(self.resolver.resolve("u1", SUNDAY), SUNDAY_TARGETS)
        self.goals.end_layer(self.sunday.id, date(2024, 3, 9))
        self.assertEqual(self.resolver.resolve("u1", SUNDAY), BASE_TARGETS)

    def test_goal_change_during_resolve_is_not_cached_over(self) -> None:
        repo = RacingGoalLayerRepository()
        repo.add_layer(base_layer())
        resolver = TargetResolver(repo, self.profiles)

        first = resolver.resolve("u1", date(2024, 3, 1))
        self.assertEqual(first.calories, 2000)
        self.assertEqual(resolver.resolve("u1", date(2024, 3, 1)).calories, 1500)

    def test_get_range_is_inclusive(self) -> None:
        targets = self.resolver.get_range("u1", MONDAY, SUNDAY)
        self.assertEqual(len(targets), 7)
        self.assertEqual(targets[SUNDAY], SUNDAY_TARGETS)
        self.assertEqual(targets[date(2024, 3, 9)], BASE_TARGETS)

    def test_get_range_rejects_reversed_range(self) -> None:
        with self.assertRaises(ValueError):
            self.resolver.get_range("u1", SUNDAY, MONDAY)


class TestMacroCalculator(unittest.TestCase):
    def test_maintenance_for_reference_profile(self) -> None:
        # BMR 1780 kcal, sedentary x1.2
        result = calculate_macros(30, "male", 80, 180, "sedentary", "maintenance")
        self.assertEqual(result["target_calories"], 2136)
        self.assertEqual(result["macros"]["protein_g"], 80.0)
        self.assertEqual(result["macros"]["fat_g"], 71.2)

    def test_compute_targets_builds_positive_vector(self) -> None:
        targets = compute_targets(PROFILE, "muscle_gain")
        self.assertGreater(targets.calories, 2136)
        self.assertIsNotNone(targets.fiber_g)


if __name__ == "__main__":
    unittest.main()
