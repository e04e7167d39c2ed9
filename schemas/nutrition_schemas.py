"""
schemas/nutrition_schemas.py

Pydantic models shared by the analytics core and the repositories.

- NutrientVector alias (sparse dict of nutrient key -> amount)
- RawIntakeRecord, DailySummary, WeeklySummary, MonthlySummary
- TargetVector, GoalLayer, ActiveGoalLayers, PhysicalProfile
- SeriesPoint, TrendResult, StreakType, StreakRecord
- DayAnalytics, Insight, ImprovementOpportunity
- BackfillReport, RollupCompleted
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schemas.nutrients import MACRO_KEYS


NutrientVector = dict[str, float]

GoalType        = Literal["weight_loss", "maintenance", "muscle_gain", "body_recomposition"]
GoalLayerClass  = Literal["base", "weekly_cycle", "phase_based"]
TrendDirection  = Literal["increasing", "decreasing", "stable"]
Severity        = Literal["info", "warn", "high"]
OpportunityKind = Literal["increase_intake", "decrease_intake", "improve_consistency"]
RollupPeriod    = Literal["daily", "weekly", "monthly"]


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_goal_type(value):
    """'Weight Loss' and 'weight-loss' both mean weight_loss."""
    if isinstance(value, str):
        return value.strip().lower().replace(" ", "_").replace("-", "_")
    return value


# ─────────────────────────────────────────────
# 1. Intake + summaries
# ─────────────────────────────────────────────

class RawIntakeRecord(BaseModel):
    """One logged consumption event, already scaled to the eaten quantity."""
    model_config = ConfigDict(frozen=True)

    id:          Optional[str]  = Field(default=None, description="Source row id")
    user_id:     str            = Field(..., description="Owner of the entry")
    consumed_at: datetime       = Field(..., description="When the food was eaten")
    nutrients:   NutrientVector = Field(default_factory=dict)
    source:      Optional[str]  = Field(default=None, description="manual / barcode / recipe / ...")


class DailySummary(BaseModel):
    user_id:     str
    log_date:    date
    nutrients:   NutrientVector = Field(default_factory=dict, description="Sum of every entry on log_date")
    entry_count: int            = Field(default=0, ge=0)
    computed_at: datetime

    @property
    def has_data(self) -> bool:
        return self.entry_count > 0 or bool(self.nutrients)


class WeeklySummary(BaseModel):
    user_id:         str
    iso_year:        int
    iso_week:        int            = Field(..., ge=1, le=53)
    week_start_date: date           = Field(..., description="Monday of the ISO week")
    avg_nutrients:   NutrientVector = Field(default_factory=dict, description="Per-day mean over contributing days")
    days_with_data:  int            = Field(..., ge=0)
    total_entries:   int            = Field(..., ge=0)
    computed_at:     datetime


class MonthlySummary(BaseModel):
    user_id:        str
    year:           int
    month:          int            = Field(..., ge=1, le=12)
    avg_nutrients:  NutrientVector = Field(default_factory=dict)
    days_with_data: int            = Field(..., ge=0)
    total_entries:  int            = Field(..., ge=0)
    computed_at:    datetime


# ─────────────────────────────────────────────
# 2. Targets + goal layers
# ─────────────────────────────────────────────

class TargetVector(BaseModel):
    """
    Effective daily targets. The four macro fields are mandatory and must be
    positive; anything else lives in `micronutrients` keyed like NutrientVector.
    """
    calories:       float           = Field(..., gt=0, description="Daily energy target in kcal")
    protein_g:      float           = Field(..., gt=0)
    carbs_g:        float           = Field(..., gt=0)
    fat_g:          float           = Field(..., gt=0)
    fiber_g:        Optional[float] = Field(default=None, gt=0)
    micronutrients: NutrientVector  = Field(default_factory=dict, description="Per-nutrient overrides, e.g. iron_mg")

    @field_validator("micronutrients")
    @classmethod
    def overrides_must_be_positive(cls, v: NutrientVector) -> NutrientVector:
        bad = {k: x for k, x in v.items() if x <= 0}
        if bad:
            raise ValueError(f"Micronutrient targets must be > 0. Got: {bad}")
        return v

    def get(self, key: str) -> Optional[float]:
        if key in MACRO_KEYS or key == "fiber_g":
            return getattr(self, key)
        return self.micronutrients.get(key)

    def as_vector(self) -> NutrientVector:
        out = {k: getattr(self, k) for k in MACRO_KEYS}
        if self.fiber_g is not None:
            out["fiber_g"] = self.fiber_g
        out.update(self.micronutrients)
        return out


class GoalLayer(BaseModel):
    """
    A time-bounded target definition. Exactly one of the precedence classes:

      base          — applies on every day between start_date and end_date
      weekly_cycle  — applies only on `day_of_week` (0 = Monday … 6 = Sunday)
      phase_based   — applies on cycle days phase_start_day..phase_end_day,
                      counted from start_date and repeating every cycle_length_days
    """
    id:                str                 = Field(default_factory=_uuid)
    user_id:           str
    layer_class:       GoalLayerClass
    start_date:        date
    end_date:          Optional[date]         = None
    targets:           Optional[TargetVector] = Field(default=None, description="Explicit numbers, used verbatim")
    goal_type:         Optional[GoalType]     = Field(default=None, description="Computed from profile when targets is empty")
    day_of_week:       Optional[int]          = Field(default=None, ge=0, le=6)
    phase:             Optional[str]          = Field(default=None, description="menstrual / follicular / ovulation / luteal")
    phase_start_day:   Optional[int]          = Field(default=None, ge=1)
    phase_end_day:     Optional[int]          = Field(default=None, ge=1)
    cycle_length_days: int                    = Field(default=28, ge=1)
    created_at:        datetime               = Field(default_factory=utcnow)

    @field_validator("goal_type", mode="before")
    @classmethod
    def check_goal_type(cls, v):
        return normalize_goal_type(v)

    @model_validator(mode="after")
    def check_layer_shape(self) -> "GoalLayer":
        if self.targets is None and self.goal_type is None:
            raise ValueError("A goal layer needs explicit targets or a goal_type.")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError(f"end_date {self.end_date} is before start_date {self.start_date}")
        if self.layer_class == "weekly_cycle" and self.day_of_week is None:
            raise ValueError("weekly_cycle layers require day_of_week.")
        if self.layer_class == "phase_based":
            if self.phase_start_day is None or self.phase_end_day is None:
                raise ValueError("phase_based layers require phase_start_day and phase_end_day.")
            if self.phase_start_day > self.phase_end_day:
                raise ValueError("phase_start_day must not exceed phase_end_day.")
            if self.phase_end_day > self.cycle_length_days:
                raise ValueError("phase_end_day must fall inside the cycle.")
        return self

    def covers(self, day: date) -> bool:
        """Date-range check only; ignores day-of-week and phase keys."""
        return self.start_date <= day and (self.end_date is None or self.end_date >= day)

    def cycle_day(self, day: date) -> int:
        return (day - self.start_date).days % self.cycle_length_days + 1

    def is_active_on(self, day: date) -> bool:
        if not self.covers(day):
            return False
        if self.layer_class == "weekly_cycle":
            return day.weekday() == self.day_of_week
        if self.layer_class == "phase_based":
            return self.phase_start_day <= self.cycle_day(day) <= self.phase_end_day
        return True


class ActiveGoalLayers(BaseModel):
    base:         Optional[GoalLayer] = None
    weekly_cycle: Optional[GoalLayer] = None
    phase_based:  Optional[GoalLayer] = None

    def winner(self) -> Optional[GoalLayer]:
        """Highest-precedence active layer: phase_based > weekly_cycle > base."""
        return self.phase_based or self.weekly_cycle or self.base


class PhysicalProfile(BaseModel):
    user_id:        str
    age:            int   = Field(..., gt=0, le=120)
    gender:         str   = Field(..., description="male / female / other")
    weight_kg:      float = Field(..., gt=0)
    height_cm:      float = Field(..., gt=0)
    activity_level: str   = Field(default="sedentary")
    default_goal:   GoalType = Field(default="maintenance", description="Used when no goal layer is active")

    @field_validator("default_goal", mode="before")
    @classmethod
    def check_default_goal(cls, v):
        return normalize_goal_type(v)


# ─────────────────────────────────────────────
# 3. Trends + streaks
# ─────────────────────────────────────────────

class SeriesPoint(BaseModel):
    log_date: date
    value:    float
    target:   Optional[float] = None


class TrendResult(BaseModel):
    nutrient:       str
    points:         list[SeriesPoint] = Field(default_factory=list, description="Raw points ordered by date")
    trend:          TrendDirection
    percent_change: float


class StreakType(str, Enum):
    MEETING_GOAL   = "meeting_goal"
    EXCEEDING_GOAL = "exceeding_goal"
    UNDER_GOAL     = "under_goal"

    def matches(self, value: float, target: float) -> bool:
        return _STREAK_PREDICATES[self](value, target)


_STREAK_PREDICATES: dict[StreakType, Callable[[float, float], bool]] = {
    StreakType.MEETING_GOAL:   lambda v, t: v >= t,
    StreakType.EXCEEDING_GOAL: lambda v, t: v >= t * 1.1,
    StreakType.UNDER_GOAL:     lambda v, t: v < t * 0.9,
}


class StreakRecord(BaseModel):
    nutrient:       str
    streak_type:    StreakType
    current_streak: int             = Field(default=0, ge=0)
    max_streak:     int             = Field(default=0, ge=0)
    is_active:      bool            = False
    start_date:     Optional[date]  = None
    end_date:       Optional[date]  = None
    avg_value:      Optional[float] = None
    avg_target:     Optional[float] = None


# ─────────────────────────────────────────────
# 4. Insights
# ─────────────────────────────────────────────

class DayAnalytics(BaseModel):
    """Per-day input tuple of the insight rules."""
    log_date:    date
    nutrients:   NutrientVector         = Field(default_factory=dict)
    targets:     Optional[TargetVector] = None
    adherence:   dict[str, float]       = Field(default_factory=dict, description="Per-nutrient adherence 0–100")
    entry_count: int                    = 0


class Insight(BaseModel):
    id:         str
    key:        str            = Field(..., description="Stable rule key, e.g. 'iron_low_streak'")
    nutrient:   Optional[str]  = None
    start_date: date
    end_date:   date
    severity:   Severity
    priority:   int            = Field(..., ge=1, description="Lower runs first within a severity")
    message:    str
    details:    dict           = Field(default_factory=dict)


class ImprovementOpportunity(BaseModel):
    nutrient:         str
    kind:             OpportunityKind
    severity:         Severity
    avg_adherence:    float
    trend:            TrendDirection
    percent_change:   float
    message:          str


# ─────────────────────────────────────────────
# 5. Backfill
# ─────────────────────────────────────────────

class PeriodFailure(BaseModel):
    period: str = Field(..., description="e.g. 'day:2024-03-01', 'week:2024-W09', 'month:2024-03'")
    error:  str


class BackfillReport(BaseModel):
    user_id:          str
    start_date:       date
    end_date:         date
    days_processed:   int = 0
    weeks_processed:  int = 0
    weeks_skipped:    int = 0
    months_processed: int = 0
    months_skipped:   int = 0
    failures:         list[PeriodFailure] = Field(default_factory=list)
    cancelled:        bool = False

    @property
    def failed_count(self) -> int:
        return len(self.failures)


class RollupCompleted(BaseModel):
    """Emitted after a rollup row is written; period_start is the day, Monday or 1st."""
    user_id:      str
    period:       RollupPeriod
    period_start: date
