"""
db/migrations/versions/001_initial_schema.py

Initial migration — users, profiles, raw intake, period summaries, goal layers.

Generate future migrations with:
  alembic revision --autogenerate -m "your description"
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:

    # ── users ─────────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id",         sa.String(36),  primary_key=True),
        sa.Column("name",       sa.String(100), nullable=False),
        sa.Column("email",      sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime,    nullable=False),
        sa.Column("updated_at", sa.DateTime,    nullable=False),
    )

    # ── user_profiles ─────────────────────────────────────────────────────────
    op.create_table(
        "user_profiles",
        sa.Column("id",             sa.String(36),  primary_key=True),
        sa.Column("user_id",        sa.String(36),  sa.ForeignKey("users.id"), unique=True),
        sa.Column("age",            sa.Integer,     nullable=True),
        sa.Column("gender",         sa.String(10),  nullable=True),
        sa.Column("weight_kg",      sa.Float,       nullable=True),
        sa.Column("height_cm",      sa.Float,       nullable=True),
        sa.Column("activity_level", sa.String(20),  nullable=True),
        sa.Column("default_goal",   sa.String(30),  nullable=False, server_default="maintenance"),
        sa.Column("updated_at",     sa.DateTime,    nullable=False),
    )

    # ── intake_log ────────────────────────────────────────────────────────────
    op.create_table(
        "intake_log",
        sa.Column("id",          sa.String(36), primary_key=True),
        sa.Column("user_id",     sa.String(36), sa.ForeignKey("users.id")),
        sa.Column("consumed_at", sa.DateTime,   nullable=False),
        sa.Column("nutrients",   sa.JSON,       nullable=False),
        sa.Column("source",      sa.String(20), nullable=True),
    )
    op.create_index("ix_intake_log_user_consumed", "intake_log", ["user_id", "consumed_at"])

    # ── nutrient_daily ────────────────────────────────────────────────────────
    op.create_table(
        "nutrient_daily",
        sa.Column("id",          sa.String(36), primary_key=True),
        sa.Column("user_id",     sa.String(36), sa.ForeignKey("users.id")),
        sa.Column("log_date",    sa.Date,       nullable=False),
        sa.Column("nutrients",   sa.JSON,       nullable=False),
        sa.Column("entry_count", sa.Integer,    nullable=False),
        sa.Column("computed_at", sa.DateTime,   nullable=False),
        sa.UniqueConstraint("user_id", "log_date", name="uq_nutrient_daily_user_date"),
    )

    # ── nutrient_weekly ───────────────────────────────────────────────────────
    op.create_table(
        "nutrient_weekly",
        sa.Column("id",              sa.String(36), primary_key=True),
        sa.Column("user_id",         sa.String(36), sa.ForeignKey("users.id")),
        sa.Column("iso_year",        sa.Integer,    nullable=False),
        sa.Column("iso_week",        sa.Integer,    nullable=False),
        sa.Column("week_start_date", sa.Date,       nullable=False),
        sa.Column("avg_nutrients",   sa.JSON,       nullable=False),
        sa.Column("days_with_data",  sa.Integer,    nullable=False),
        sa.Column("total_entries",   sa.Integer,    nullable=False),
        sa.Column("computed_at",     sa.DateTime,   nullable=False),
        sa.UniqueConstraint("user_id", "iso_year", "iso_week", name="uq_nutrient_weekly_user_week"),
    )

    # ── nutrient_monthly ──────────────────────────────────────────────────────
    op.create_table(
        "nutrient_monthly",
        sa.Column("id",             sa.String(36), primary_key=True),
        sa.Column("user_id",        sa.String(36), sa.ForeignKey("users.id")),
        sa.Column("year",           sa.Integer,    nullable=False),
        sa.Column("month",          sa.Integer,    nullable=False),
        sa.Column("avg_nutrients",  sa.JSON,       nullable=False),
        sa.Column("days_with_data", sa.Integer,    nullable=False),
        sa.Column("total_entries",  sa.Integer,    nullable=False),
        sa.Column("computed_at",    sa.DateTime,   nullable=False),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_nutrient_monthly_user_month"),
    )

    # ── goal_layers ───────────────────────────────────────────────────────────
    op.create_table(
        "goal_layers",
        sa.Column("id",                sa.String(36), primary_key=True),
        sa.Column("user_id",           sa.String(36), sa.ForeignKey("users.id")),
        sa.Column("layer_class",       sa.String(20), nullable=False),
        sa.Column("start_date",        sa.Date,       nullable=False),
        sa.Column("end_date",          sa.Date,       nullable=True),
        sa.Column("goal_type",         sa.String(30), nullable=True),
        sa.Column("targets",           sa.JSON,       nullable=True),
        sa.Column("day_of_week",       sa.Integer,    nullable=True),
        sa.Column("phase",             sa.String(20), nullable=True),
        sa.Column("phase_start_day",   sa.Integer,    nullable=True),
        sa.Column("phase_end_day",     sa.Integer,    nullable=True),
        sa.Column("cycle_length_days", sa.Integer,    nullable=False, server_default="28"),
        sa.Column("created_at",        sa.DateTime,   nullable=False),
        sa.CheckConstraint("layer_class IN ('base', 'weekly_cycle', 'phase_based')", name="ck_goal_layers_class"),
        sa.CheckConstraint("day_of_week IS NULL OR (day_of_week BETWEEN 0 AND 6)", name="ck_goal_layers_dow"),
    )
    op.create_index("ix_goal_layers_user_class_start", "goal_layers", ["user_id", "layer_class", "start_date"])


def downgrade() -> None:
    op.drop_index("ix_goal_layers_user_class_start", table_name="goal_layers")
    op.drop_table("goal_layers")
    op.drop_table("nutrient_monthly")
    op.drop_table("nutrient_weekly")
    op.drop_table("nutrient_daily")
    op.drop_index("ix_intake_log_user_consumed", table_name="intake_log")
    op.drop_table("intake_log")
    op.drop_table("user_profiles")
    op.drop_table("users")
