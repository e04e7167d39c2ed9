"""
analytics/targets.py

TargetResolver — effective TargetVector for (user, date).

Precedence, highest first, each class looked up independently:

    phase_based   active on the date's cycle day
    weekly_cycle  active on the date's weekday
    base          active on the date

Within one class the layer with the latest start_date wins (ties: latest
created_at, then id). The winner's explicit targets are used verbatim;
a goal_type-only layer is computed from the user's physical profile.
With no active layer at all the profile's default goal is used.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Callable, Iterable, Optional

from analytics.errors import TargetResolutionError
from cache.target_cache import InMemoryTargetCache, TargetCache
from schemas.nutrition_schemas import (
    ActiveGoalLayers, GoalLayer, PhysicalProfile, TargetVector,
)
from tools.macro_calculator import compute_targets

logger = logging.getLogger(__name__)

LAYER_CLASSES = ("base", "weekly_cycle", "phase_based")


def select_active_layers(layers: Iterable[GoalLayer], day: date) -> ActiveGoalLayers:
    """At most one active layer per precedence class."""
    best: dict[str, GoalLayer] = {}
    for layer in layers:
        if not layer.is_active_on(day):
            continue
        current = best.get(layer.layer_class)
        rank = (layer.start_date, layer.created_at, layer.id)
        if current is None or rank > (current.start_date, current.created_at, current.id):
            best[layer.layer_class] = layer
    return ActiveGoalLayers(**best)


class TargetResolver:

    def __init__(
        self,
        goal_repo,
        profile_repo=None,
        cache: Optional[TargetCache] = None,
        calculator: Callable[[PhysicalProfile, str], TargetVector] = compute_targets,
    ) -> None:
        self.goal_repo    = goal_repo
        self.profile_repo = profile_repo
        self.cache        = cache if cache is not None else InMemoryTargetCache()
        self.calculator   = calculator
        goal_repo.subscribe(self.invalidate_user)

    def invalidate_user(self, user_id: str) -> None:
        dropped = self.cache.invalidate_user(user_id)
        logger.info("Goal change for user %s, dropped %d cached target(s)", user_id, dropped)

    def resolve(self, user_id: str, day: date) -> TargetVector:
        cached = self.cache.get(user_id, day)
        if cached is not None:
            return cached
        # read before resolving so a goal change mid-resolve voids the fill
        generation = self.cache.generation(user_id)
        targets = self._resolve_uncached(user_id, day)
        self.cache.set(user_id, day, targets, generation=generation)
        return targets

    def get_range(self, user_id: str, start: date, end: date) -> dict[date, TargetVector]:
        """Inclusive range, resolved (and cached) one date at a time."""
        if start > end:
            raise ValueError(f"start {start} is after end {end}")
        out: dict[date, TargetVector] = {}
        day = start
        while day <= end:
            out[day] = self.resolve(user_id, day)
            day += timedelta(days=1)
        return out

    def _resolve_uncached(self, user_id: str, day: date) -> TargetVector:
        winner = self.goal_repo.get_active_layers(user_id, day).winner()
        if winner is not None and winner.targets is not None:
            logger.debug("Targets for %s on %s from %s layer %s", user_id, day, winner.layer_class, winner.id)
            return winner.targets

        profile = self.profile_repo.get_profile(user_id) if self.profile_repo else None
        if profile is None:
            reason = (
                f"{winner.layer_class} layer {winner.id} needs a profile for goal '{winner.goal_type}'"
                if winner is not None else f"no active goal layer on {day} and no profile"
            )
            raise TargetResolutionError(user_id, reason)

        goal_type = winner.goal_type if winner is not None else profile.default_goal
        return self.calculator(profile, goal_type)
