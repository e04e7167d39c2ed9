"""
analytics/accumulator.py

Pure arithmetic on NutrientVectors.

Every function here is total: bad input degrades to an empty or smaller
vector, never an exception. Outputs are sparse (only positive keys) and
rounded to 2 decimal places so long folds don't accumulate float drift.
"""

from __future__ import annotations

import logging
import math
from functools import reduce
from typing import Any, Iterable, Mapping, Optional

from schemas.nutrition_schemas import NutrientVector

logger = logging.getLogger(__name__)

DECIMALS = 2


def _amount(value: Any) -> Optional[float]:
    """Positive finite float, or None for anything that isn't one."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _rounded(value: Any) -> float:
    amount = _amount(value)
    return round(amount, DECIMALS) if amount is not None else 0.0


def merge(a: Mapping[str, Any], b: Mapping[str, Any]) -> NutrientVector:
    """
    Key-wise sum. A key appears only if the rounded sum is positive.

    Each operand is rounded to DECIMALS before adding, so every sum is taken
    over 2-dp values and the grouping of a fold never changes the result.
    """
    out: NutrientVector = {}
    for key in sorted(set(a) | set(b)):
        total = _rounded(a.get(key)) + _rounded(b.get(key))
        if total > 0:
            out[key] = round(total, DECIMALS)
    return out


def scale(vector: Mapping[str, Any], factor: Any) -> NutrientVector:
    """Multiply every present key by `factor`. Non-positive factors give {}."""
    ratio = _amount(factor)
    if ratio is None:
        return {}
    out: NutrientVector = {}
    for key in sorted(vector):
        amount = _amount(vector[key])
        if amount is None:
            continue
        scaled = round(amount * ratio, DECIMALS)
        if scaled > 0:
            out[key] = scaled
    return out


def accumulate(vectors: Iterable[Mapping[str, Any]]) -> NutrientVector:
    return reduce(merge, vectors, {})


def sanitize(vector: Any, context: str = "") -> NutrientVector:
    """
    Clean a vector read back from storage. Non-numeric or negative amounts
    are dropped with a warning; zeros and amounts that round to 0 are
    dropped silently, matching what merge keeps.
    """
    if not isinstance(vector, Mapping):
        if vector is not None:
            logger.warning("Discarding non-mapping nutrient payload %s: %r", context, vector)
        return {}
    out: NutrientVector = {}
    for key in sorted(vector):
        raw = vector[key]
        amount = _amount(raw)
        if amount is None:
            if raw not in (0, 0.0, None):
                logger.warning("Dropping malformed nutrient value %s=%r %s", key, raw, context)
            continue
        rounded = round(amount, DECIMALS)
        if rounded > 0:
            out[str(key)] = rounded
    return out
