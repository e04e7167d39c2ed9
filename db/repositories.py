"""
db/repositories.py

Repository pattern — one class per domain.
The analytics core calls these instead of writing raw SQLAlchemy queries.

Rule: repositories accept/return Pydantic schemas or plain values.
      They never expose SQLAlchemy ORM objects outside this file.

Each interface is a typing.Protocol so the core can run against any store;
the Sql* classes are the PostgreSQL / SQLite implementations. Every call
opens its own session and commits before returning, so one period's
compute-then-upsert is atomic and repositories are safe to share between
backfill worker threads.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, date
from typing import Callable, Generator, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from analytics.accumulator import sanitize
from analytics.errors import RepositoryError
from analytics.targets import select_active_layers
from db.database import SessionLocal, get_db
from db.models import (
    User, UserProfile, IntakeLog, NutrientDaily, NutrientWeekly,
    NutrientMonthly, UserGoalLayer,
)
from schemas.nutrition_schemas import (
    ActiveGoalLayers, DailySummary, GoalLayer, MonthlySummary,
    PhysicalProfile, RawIntakeRecord, TargetVector, WeeklySummary, utcnow,
)

logger = logging.getLogger(__name__)

GoalChangeListener = Callable[[str], None]


# ═══════════════════════════════════════════════════════════════
# INTERFACES
# ═══════════════════════════════════════════════════════════════

class RawIntakeRepository(Protocol):
    def find_by_user_and_date_range(
        self, user_id: str, start_inclusive: datetime, end_exclusive: datetime,
    ) -> list[RawIntakeRecord]: ...


class SummaryRepository(Protocol):
    def upsert_daily(self, summary: DailySummary) -> DailySummary: ...
    def get_daily(self, user_id: str, log_date: date) -> Optional[DailySummary]: ...
    def list_daily(self, user_id: str, start: date, end: date) -> list[DailySummary]: ...
    def upsert_weekly(self, summary: WeeklySummary) -> WeeklySummary: ...
    def get_weekly(self, user_id: str, iso_year: int, iso_week: int) -> Optional[WeeklySummary]: ...
    def upsert_monthly(self, summary: MonthlySummary) -> MonthlySummary: ...
    def get_monthly(self, user_id: str, year: int, month: int) -> Optional[MonthlySummary]: ...


class GoalLayerRepository(Protocol):
    def get_active_layers(self, user_id: str, day: date) -> ActiveGoalLayers: ...
    def add_layer(self, layer: GoalLayer) -> GoalLayer: ...
    def end_layer(self, layer_id: str, end_date: date) -> Optional[GoalLayer]: ...
    def remove_layer(self, layer_id: str) -> bool: ...
    def subscribe(self, listener: GoalChangeListener) -> None: ...


class ProfileRepository(Protocol):
    def get_profile(self, user_id: str) -> Optional[PhysicalProfile]: ...


# ── Change hook shared by goal repositories ──────────────────────────────────

class GoalChangeNotifier:
    """Fan-out of "goals changed for user X" to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[GoalChangeListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: GoalChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def notify(self, user_id: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(user_id)


# ═══════════════════════════════════════════════════════════════
# SQL BASE
# ═══════════════════════════════════════════════════════════════

class _SqlRepository:

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self, action: str) -> Generator[Session, None, None]:
        try:
            with get_db(self.session_factory) as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("%s failed: %s", action, exc)
            raise RepositoryError(f"{action} failed: {exc}") from exc


# ═══════════════════════════════════════════════════════════════
# INTAKE REPOSITORY
# ═══════════════════════════════════════════════════════════════

class SqlIntakeRepository(_SqlRepository):

    def find_by_user_and_date_range(
        self, user_id: str, start_inclusive: datetime, end_exclusive: datetime,
    ) -> list[RawIntakeRecord]:
        with self._session("find_by_user_and_date_range") as db:
            rows = (
                db.query(IntakeLog)
                .filter(
                    IntakeLog.user_id == user_id,
                    IntakeLog.consumed_at >= start_inclusive,
                    IntakeLog.consumed_at < end_exclusive,
                )
                .order_by(IntakeLog.consumed_at.asc(), IntakeLog.id.asc())
                .all()
            )
            return [
                RawIntakeRecord(
                    id=r.id,
                    user_id=r.user_id,
                    consumed_at=r.consumed_at,
                    nutrients=sanitize(r.nutrients, context=f"intake_log {r.id}"),
                    source=r.source,
                )
                for r in rows
            ]


# ═══════════════════════════════════════════════════════════════
# SUMMARY REPOSITORY
# ═══════════════════════════════════════════════════════════════

class SqlSummaryRepository(_SqlRepository):

    # ── Daily ─────────────────────────────────────────────────────────────────

    def upsert_daily(self, summary: DailySummary) -> DailySummary:
        with self._session("upsert_daily") as db:
            row = (
                db.query(NutrientDaily)
                .filter_by(user_id=summary.user_id, log_date=summary.log_date)
                .first()
            )
            if row:
                row.nutrients   = dict(summary.nutrients)
                row.entry_count = summary.entry_count
                row.computed_at = summary.computed_at
            else:
                db.add(NutrientDaily(
                    user_id=summary.user_id, log_date=summary.log_date,
                    nutrients=dict(summary.nutrients),
                    entry_count=summary.entry_count,
                    computed_at=summary.computed_at,
                ))
            db.flush()
        return summary

    def get_daily(self, user_id: str, log_date: date) -> Optional[DailySummary]:
        with self._session("get_daily") as db:
            row = db.query(NutrientDaily).filter_by(user_id=user_id, log_date=log_date).first()
            return self._daily(row) if row else None

    def list_daily(self, user_id: str, start: date, end: date) -> list[DailySummary]:
        """Inclusive on both ends, ordered by date."""
        with self._session("list_daily") as db:
            rows = (
                db.query(NutrientDaily)
                .filter(
                    NutrientDaily.user_id == user_id,
                    NutrientDaily.log_date >= start,
                    NutrientDaily.log_date <= end,
                )
                .order_by(NutrientDaily.log_date.asc())
                .all()
            )
            return [self._daily(r) for r in rows]

    @staticmethod
    def _daily(row: NutrientDaily) -> DailySummary:
        return DailySummary(
            user_id=row.user_id,
            log_date=row.log_date,
            nutrients=sanitize(row.nutrients, context=f"nutrient_daily {row.log_date}"),
            entry_count=max(0, row.entry_count or 0),
            computed_at=row.computed_at,
        )

    # ── Weekly ────────────────────────────────────────────────────────────────

    def upsert_weekly(self, summary: WeeklySummary) -> WeeklySummary:
        with self._session("upsert_weekly") as db:
            row = (
                db.query(NutrientWeekly)
                .filter_by(user_id=summary.user_id, iso_year=summary.iso_year, iso_week=summary.iso_week)
                .first()
            )
            if not row:
                row = NutrientWeekly(
                    user_id=summary.user_id, iso_year=summary.iso_year, iso_week=summary.iso_week,
                )
                db.add(row)
            row.week_start_date = summary.week_start_date
            row.avg_nutrients   = dict(summary.avg_nutrients)
            row.days_with_data  = summary.days_with_data
            row.total_entries   = summary.total_entries
            row.computed_at     = summary.computed_at
            db.flush()
        return summary

    def get_weekly(self, user_id: str, iso_year: int, iso_week: int) -> Optional[WeeklySummary]:
        with self._session("get_weekly") as db:
            row = (
                db.query(NutrientWeekly)
                .filter_by(user_id=user_id, iso_year=iso_year, iso_week=iso_week)
                .first()
            )
            if not row:
                return None
            return WeeklySummary(
                user_id=row.user_id, iso_year=row.iso_year, iso_week=row.iso_week,
                week_start_date=row.week_start_date,
                avg_nutrients=sanitize(row.avg_nutrients, context=f"nutrient_weekly {iso_year}-W{iso_week:02d}"),
                days_with_data=row.days_with_data, total_entries=row.total_entries,
                computed_at=row.computed_at,
            )

    # ── Monthly ───────────────────────────────────────────────────────────────

    def upsert_monthly(self, summary: MonthlySummary) -> MonthlySummary:
        with self._session("upsert_monthly") as db:
            row = (
                db.query(NutrientMonthly)
                .filter_by(user_id=summary.user_id, year=summary.year, month=summary.month)
                .first()
            )
            if not row:
                row = NutrientMonthly(user_id=summary.user_id, year=summary.year, month=summary.month)
                db.add(row)
            row.avg_nutrients  = dict(summary.avg_nutrients)
            row.days_with_data = summary.days_with_data
            row.total_entries  = summary.total_entries
            row.computed_at    = summary.computed_at
            db.flush()
        return summary

    def get_monthly(self, user_id: str, year: int, month: int) -> Optional[MonthlySummary]:
        with self._session("get_monthly") as db:
            row = db.query(NutrientMonthly).filter_by(user_id=user_id, year=year, month=month).first()
            if not row:
                return None
            return MonthlySummary(
                user_id=row.user_id, year=row.year, month=row.month,
                avg_nutrients=sanitize(row.avg_nutrients, context=f"nutrient_monthly {year}-{month:02d}"),
                days_with_data=row.days_with_data, total_entries=row.total_entries,
                computed_at=row.computed_at,
            )


# ═══════════════════════════════════════════════════════════════
# GOAL LAYER REPOSITORY
# ═══════════════════════════════════════════════════════════════

class SqlGoalLayerRepository(_SqlRepository):

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        super().__init__(session_factory)
        self._notifier = GoalChangeNotifier()

    def subscribe(self, listener: GoalChangeListener) -> None:
        self._notifier.subscribe(listener)

    def get_active_layers(self, user_id: str, day: date) -> ActiveGoalLayers:
        with self._session("get_active_layers") as db:
            rows = (
                db.query(UserGoalLayer)
                .filter(
                    UserGoalLayer.user_id == user_id,
                    UserGoalLayer.start_date <= day,
                    (UserGoalLayer.end_date.is_(None)) | (UserGoalLayer.end_date >= day),
                )
                .all()
            )
            layers = [self._layer(r) for r in rows]
        return select_active_layers(layers, day)

    def list_layers(self, user_id: str) -> list[GoalLayer]:
        with self._session("list_layers") as db:
            rows = (
                db.query(UserGoalLayer)
                .filter_by(user_id=user_id)
                .order_by(UserGoalLayer.start_date.asc(), UserGoalLayer.created_at.asc())
                .all()
            )
            return [self._layer(r) for r in rows]

    def add_layer(self, layer: GoalLayer) -> GoalLayer:
        with self._session("add_layer") as db:
            db.add(UserGoalLayer(
                id=layer.id, user_id=layer.user_id, layer_class=layer.layer_class,
                start_date=layer.start_date, end_date=layer.end_date,
                goal_type=layer.goal_type,
                targets=layer.targets.model_dump() if layer.targets else None,
                day_of_week=layer.day_of_week, phase=layer.phase,
                phase_start_day=layer.phase_start_day, phase_end_day=layer.phase_end_day,
                cycle_length_days=layer.cycle_length_days, created_at=layer.created_at,
            ))
            db.flush()
        logger.info("Goal layer %s (%s) added for user %s", layer.id, layer.layer_class, layer.user_id)
        self._notifier.notify(layer.user_id)
        return layer

    def end_layer(self, layer_id: str, end_date: date) -> Optional[GoalLayer]:
        with self._session("end_layer") as db:
            row = db.query(UserGoalLayer).filter_by(id=layer_id).first()
            if not row:
                return None
            row.end_date = end_date
            db.flush()
            layer = self._layer(row)
        self._notifier.notify(layer.user_id)
        return layer

    def remove_layer(self, layer_id: str) -> bool:
        with self._session("remove_layer") as db:
            row = db.query(UserGoalLayer).filter_by(id=layer_id).first()
            if not row:
                return False
            user_id = row.user_id
            db.delete(row)
            db.flush()
        self._notifier.notify(user_id)
        return True

    @staticmethod
    def _layer(row: UserGoalLayer) -> GoalLayer:
        return GoalLayer(
            id=row.id, user_id=row.user_id, layer_class=row.layer_class,
            start_date=row.start_date, end_date=row.end_date,
            targets=TargetVector.model_validate(row.targets) if row.targets else None,
            goal_type=row.goal_type, day_of_week=row.day_of_week, phase=row.phase,
            phase_start_day=row.phase_start_day, phase_end_day=row.phase_end_day,
            cycle_length_days=row.cycle_length_days or 28, created_at=row.created_at,
        )


# ═══════════════════════════════════════════════════════════════
# PROFILE REPOSITORY
# ═══════════════════════════════════════════════════════════════

class SqlProfileRepository(_SqlRepository):

    def get_profile(self, user_id: str) -> Optional[PhysicalProfile]:
        with self._session("get_profile") as db:
            row = db.query(UserProfile).filter_by(user_id=user_id).first()
            if not row or None in (row.age, row.gender, row.weight_kg, row.height_cm):
                return None
            return PhysicalProfile(
                user_id=row.user_id, age=row.age, gender=row.gender,
                weight_kg=row.weight_kg, height_cm=row.height_cm,
                activity_level=row.activity_level or "sedentary",
                default_goal=row.default_goal or "maintenance",
            )

    def upsert_profile(self, profile: PhysicalProfile, name: Optional[str] = None) -> PhysicalProfile:
        """Creates the user row on first sight so the profile FK holds."""
        with self._session("upsert_profile") as db:
            if not db.query(User).filter_by(id=profile.user_id).first():
                db.add(User(id=profile.user_id, name=name or profile.user_id))
            row = db.query(UserProfile).filter_by(user_id=profile.user_id).first()
            if not row:
                row = UserProfile(user_id=profile.user_id)
                db.add(row)
            row.age            = profile.age
            row.gender         = profile.gender
            row.weight_kg      = profile.weight_kg
            row.height_cm      = profile.height_cm
            row.activity_level = profile.activity_level
            row.default_goal   = profile.default_goal
            row.updated_at     = utcnow()
            db.flush()
        return profile
