"""
db/models.py

SQLAlchemy ORM models for the nutrient analytics store.

Tables:
  users              — core identity
  user_profiles      — physical stats used to compute goal-type targets

  intake_log         — raw consumption events (written by the logging
                       subsystem, read-only here)

  nutrient_daily     — one row per (user, date), upserted by the daily rollup
  nutrient_weekly    — one row per (user, ISO year, ISO week)
  nutrient_monthly   — one row per (user, year, month)

  goal_layers        — base / weekly_cycle / phase_based target layers

Nutrient vectors are stored as JSON objects with sorted keys so a rerun of
the same rollup writes an identical payload.
"""

from __future__ import annotations

import uuid
from datetime import datetime, date

from sqlalchemy import (
    JSON, String, Integer, Float, DateTime, Date,
    ForeignKey, UniqueConstraint, Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from schemas.nutrition_schemas import utcnow


# ── Base ──────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


# ═══════════════════════════════════════════════════════════════
# USER DOMAIN
# ═══════════════════════════════════════════════════════════════

class User(Base):
    __tablename__ = "users"

    id:         Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    name:       Mapped[str]      = mapped_column(String(100), nullable=False)
    email:      Mapped[str|None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    profile:     Mapped[UserProfile | None]  = relationship("UserProfile",   back_populates="user", uselist=False, cascade="all, delete-orphan")
    goal_layers: Mapped[list[UserGoalLayer]] = relationship("UserGoalLayer", back_populates="user", cascade="all, delete-orphan")


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id:             Mapped[str]        = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id:        Mapped[str]        = mapped_column(String(36), ForeignKey("users.id"), unique=True)
    age:            Mapped[int|None]   = mapped_column(Integer,    nullable=True)
    gender:         Mapped[str|None]   = mapped_column(String(10), nullable=True)
    weight_kg:      Mapped[float|None] = mapped_column(Float,      nullable=True)
    height_cm:      Mapped[float|None] = mapped_column(Float,      nullable=True)
    activity_level: Mapped[str|None]   = mapped_column(String(20), nullable=True)
    default_goal:   Mapped[str]        = mapped_column(String(30), default="maintenance")
    updated_at:     Mapped[datetime]   = mapped_column(DateTime,   default=utcnow, onupdate=utcnow)

    user: Mapped[User] = relationship("User", back_populates="profile")


# ═══════════════════════════════════════════════════════════════
# RAW INTAKE
# ═══════════════════════════════════════════════════════════════

class IntakeLog(Base):
    """One consumption event. nutrients is already scaled to the eaten quantity."""
    __tablename__ = "intake_log"

    id:          Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id:     Mapped[str]      = mapped_column(String(36), ForeignKey("users.id"))
    consumed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    nutrients:   Mapped[dict]     = mapped_column(JSON, default=dict)
    source:      Mapped[str|None] = mapped_column(String(20), nullable=True)   # manual / barcode / recipe

    __table_args__ = (
        Index("ix_intake_log_user_consumed", "user_id", "consumed_at"),
    )


# ═══════════════════════════════════════════════════════════════
# SUMMARIES
# ═══════════════════════════════════════════════════════════════

class NutrientDaily(Base):
    __tablename__ = "nutrient_daily"

    id:          Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id:     Mapped[str]      = mapped_column(String(36), ForeignKey("users.id"))
    log_date:    Mapped[date]     = mapped_column(Date, nullable=False)
    nutrients:   Mapped[dict]     = mapped_column(JSON, default=dict)
    entry_count: Mapped[int]      = mapped_column(Integer, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "log_date", name="uq_nutrient_daily_user_date"),
    )


class NutrientWeekly(Base):
    __tablename__ = "nutrient_weekly"

    id:              Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id:         Mapped[str]      = mapped_column(String(36), ForeignKey("users.id"))
    iso_year:        Mapped[int]      = mapped_column(Integer, nullable=False)
    iso_week:        Mapped[int]      = mapped_column(Integer, nullable=False)
    week_start_date: Mapped[date]     = mapped_column(Date, nullable=False)
    avg_nutrients:   Mapped[dict]     = mapped_column(JSON, default=dict)
    days_with_data:  Mapped[int]      = mapped_column(Integer, default=0)
    total_entries:   Mapped[int]      = mapped_column(Integer, default=0)
    computed_at:     Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "iso_year", "iso_week", name="uq_nutrient_weekly_user_week"),
    )


class NutrientMonthly(Base):
    __tablename__ = "nutrient_monthly"

    id:             Mapped[str]      = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id:        Mapped[str]      = mapped_column(String(36), ForeignKey("users.id"))
    year:           Mapped[int]      = mapped_column(Integer, nullable=False)
    month:          Mapped[int]      = mapped_column(Integer, nullable=False)
    avg_nutrients:  Mapped[dict]     = mapped_column(JSON, default=dict)
    days_with_data: Mapped[int]      = mapped_column(Integer, default=0)
    total_entries:  Mapped[int]      = mapped_column(Integer, default=0)
    computed_at:    Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_nutrient_monthly_user_month"),
    )


# ═══════════════════════════════════════════════════════════════
# GOALS
# ═══════════════════════════════════════════════════════════════

class UserGoalLayer(Base):
    """
    Layered targets. Several rows of one class may overlap in storage;
    the resolver picks the most recent start_date among the active ones.
    """
    __tablename__ = "goal_layers"

    id:                Mapped[str]       = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id:           Mapped[str]       = mapped_column(String(36), ForeignKey("users.id"))
    layer_class:       Mapped[str]       = mapped_column(String(20), nullable=False)   # base / weekly_cycle / phase_based
    start_date:        Mapped[date]      = mapped_column(Date, nullable=False)
    end_date:          Mapped[date|None] = mapped_column(Date, nullable=True)
    goal_type:         Mapped[str|None]  = mapped_column(String(30), nullable=True)
    targets:           Mapped[dict|None] = mapped_column(JSON, nullable=True)
    day_of_week:       Mapped[int|None]  = mapped_column(Integer, nullable=True)       # 0 = Monday
    phase:             Mapped[str|None]  = mapped_column(String(20), nullable=True)
    phase_start_day:   Mapped[int|None]  = mapped_column(Integer, nullable=True)
    phase_end_day:     Mapped[int|None]  = mapped_column(Integer, nullable=True)
    cycle_length_days: Mapped[int]       = mapped_column(Integer, default=28)
    created_at:        Mapped[datetime]  = mapped_column(DateTime, default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="goal_layers")

    __table_args__ = (
        Index("ix_goal_layers_user_class_start", "user_id", "layer_class", "start_date"),
    )
