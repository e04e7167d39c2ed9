"""
main.py

Entry point for the scheduler and for operators.

Usage:
  python main.py --mode create-tables
  python main.py --mode rollup   --user u1 --period daily --date 2024-03-01
  python main.py --mode backfill --user u1 --start 2024-01-01 --end 2024-03-31 --workers 4
  python main.py --mode trends   --user u1 --start 2024-03-01 --end 2024-03-31 --nutrients calories,protein_g
  python main.py --mode streaks  --user u1 --start 2024-03-01 --end 2024-03-31 --nutrients iron_mg --streak-type under_goal
  python main.py --mode insights --user u1 --start 2024-03-01 --end 2024-03-31
  python main.py --mode target   --user u1 --date 2024-03-01

Results are printed as JSON on stdout; logs go to stderr.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import date, timedelta

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from analytics.errors import AnalyticsError
from analytics.insights import severity_counts
from analytics.service import AnalyticsService
from schemas.nutrition_schemas import StreakType


DEFAULT_NUTRIENTS = "calories,protein_g,carbs_g,fat_g,fiber_g"


# ═══════════════════════════════════════════════════════════════
# Wiring
# ═══════════════════════════════════════════════════════════════

def build_service(max_workers=None) -> AnalyticsService:
    from cache.target_cache import build_target_cache
    from db.database import SessionLocal
    from db.repositories import (
        SqlGoalLayerRepository, SqlIntakeRepository,
        SqlProfileRepository, SqlSummaryRepository,
    )

    return AnalyticsService(
        intake_repo=SqlIntakeRepository(SessionLocal),
        summary_repo=SqlSummaryRepository(SessionLocal),
        goal_repo=SqlGoalLayerRepository(SessionLocal),
        profile_repo=SqlProfileRepository(SessionLocal),
        cache=build_target_cache(),
        max_workers=max_workers,
    )


def emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _dump(model):
    return model.model_dump(mode="json") if model is not None else None


# ═══════════════════════════════════════════════════════════════
# Run modes
# ═══════════════════════════════════════════════════════════════

def run_create_tables(args) -> None:
    from db.database import create_tables
    create_tables()
    emit({"status": "ok"})


def run_rollup(args) -> None:
    service = build_service()
    result  = service.run_rollup(args.user, args.period, args.date)
    if result is None:
        emit({"status": "skipped", "reason": f"no daily data for the {args.period} period containing {args.date}"})
        return
    emit(_dump(result))


def run_backfill(args) -> None:
    service = build_service(max_workers=args.workers)
    cancel  = threading.Event()

    def _stop(signum, frame):
        logger.warning("Signal %s received, finishing in-flight periods and stopping backfill", signum)
        cancel.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    report = service.backfill(args.user, args.start, args.end, max_workers=args.workers, cancel_event=cancel)
    emit(_dump(report))
    if report.failures:
        sys.exit(2)


def run_trends(args) -> None:
    service = build_service()
    trends  = service.compute_trends(args.user, args.start, args.end, args.nutrients, window_size=args.window)
    emit([_dump(t) for t in trends])


def run_streaks(args) -> None:
    service = build_service()
    streaks = service.detect_streaks(args.user, args.start, args.end, args.nutrients, StreakType(args.streak_type))
    emit([_dump(s) for s in streaks])


def run_insights(args) -> None:
    service  = build_service()
    insights = service.evaluate_insights(args.user, args.start, args.end)
    emit({"counts": severity_counts(insights), "insights": [_dump(i) for i in insights]})


def run_target(args) -> None:
    service = build_service()
    emit({"date": args.date, "targets": _dump(service.resolve_target(args.user, args.date))})


MODES = {
    "create-tables": run_create_tables,
    "rollup":        run_rollup,
    "backfill":      run_backfill,
    "trends":        run_trends,
    "streaks":       run_streaks,
    "insights":      run_insights,
    "target":        run_target,
}


def parse_args(argv=None) -> argparse.Namespace:
    today = date.today()
    parser = argparse.ArgumentParser(description="Nutrient analytics jobs and queries")
    parser.add_argument("--mode", choices=sorted(MODES), required=True, help="What to run")
    parser.add_argument("--user", help="User id")
    parser.add_argument("--date", type=date.fromisoformat, default=today, help="Day for rollup / target (default: today)")
    parser.add_argument("--start", type=date.fromisoformat, default=today - timedelta(days=29), help="Range start, inclusive")
    parser.add_argument("--end", type=date.fromisoformat, default=today, help="Range end, inclusive")
    parser.add_argument("--period", choices=["daily", "weekly", "monthly"], default="daily")
    parser.add_argument("--nutrients", type=lambda s: [k.strip() for k in s.split(",") if k.strip()],
                        default=DEFAULT_NUTRIENTS.split(","), help="Comma-separated nutrient keys")
    parser.add_argument("--window", type=int, default=7, help="Rolling-average window in days")
    parser.add_argument("--streak-type", choices=[t.value for t in StreakType], default=StreakType.MEETING_GOAL.value)
    parser.add_argument("--workers", type=int, default=None, help="Backfill worker threads")
    args = parser.parse_args(argv)
    if args.mode != "create-tables" and not args.user:
        parser.error("--user is required for this mode")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        MODES[args.mode](args)
    except AnalyticsError as e:
        logger.error("%s failed: %s", args.mode, e)
        return 1
    return 0


# ═══════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    sys.exit(main())
