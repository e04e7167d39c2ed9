"""
analytics/adherence.py

Adherence scores (0–100) and macro calorie shares.

Adherence is asymmetric:
  - "minimize" nutrients (sodium, saturated fat, ...) score 100 up to the
    limit and lose one point per percent above it
  - everything else scores the percent of target reached, capped at 100
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from schemas.nutrients import CALORIES_PER_GRAM, MINIMIZE_NUTRIENTS, REFERENCE_INTAKES
from schemas.nutrition_schemas import TargetVector


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def nutrient_adherence(nutrient: str, actual: float, target: Optional[float]) -> float:
    if not target or target <= 0:
        return 100.0 if actual == 0 else 0.0

    ratio = actual / target
    if nutrient in MINIMIZE_NUTRIENTS:
        score = 100.0 if ratio <= 1 else 100.0 - (ratio - 1) * 100
    else:
        score = ratio * 100
    return round(clamp_percent(score), 2)


def target_for(nutrient: str, targets: Optional[TargetVector]) -> Optional[float]:
    """Explicit target if the vector has one, else the reference intake."""
    if targets is not None:
        explicit = targets.get(nutrient)
        if explicit is not None:
            return explicit
    return REFERENCE_INTAKES.get(nutrient)


def daily_adherence(
    nutrients: Mapping[str, float],
    targets: Optional[TargetVector],
    keys: Optional[Iterable[str]] = None,
) -> dict[str, float]:
    """
    Per-nutrient adherence for one day. Only keys the day actually recorded
    are scored; an unrecorded nutrient has no adherence rather than 0.
    By default every recorded nutrient with an explicit or reference target.
    """
    if keys is None:
        keys = sorted(nutrients)
    out: dict[str, float] = {}
    for key in keys:
        if key not in nutrients:
            continue
        target = target_for(key, targets)
        if target is None:
            continue
        out[key] = nutrient_adherence(key, nutrients[key], target)
    return out


def overall_adherence(adherence: Mapping[str, float]) -> float:
    if not adherence:
        return 0.0
    return round(sum(adherence.values()) / len(adherence), 2)


def macro_balance(nutrients: Mapping[str, float]) -> dict[str, float]:
    """Calorie share of protein / carbs / fat, in percent of macro calories."""
    kcal = {
        key: nutrients.get(key, 0.0) * per_gram
        for key, per_gram in CALORIES_PER_GRAM.items()
    }
    total = sum(kcal.values())
    if total <= 0:
        return {"protein_pct": 0.0, "carbs_pct": 0.0, "fat_pct": 0.0, "macro_calories": 0.0}
    return {
        "protein_pct":    round(kcal["protein_g"] / total * 100, 2),
        "carbs_pct":      round(kcal["carbs_g"] / total * 100, 2),
        "fat_pct":        round(kcal["fat_g"] / total * 100, 2),
        "macro_calories": round(total, 2),
    }
