"""
analytics/rollup.py

RollupAggregator — compresses raw intake events into period summaries.

    raw intake ──daily──▶ nutrient_daily ──weekly──▶ nutrient_weekly
                                        └─monthly──▶ nutrient_monthly

Daily rows are sums; weekly and monthly rows are per-day means over the days
that recorded data (3 logged days average over 3, not 7). Every write is an
upsert keyed by the period, and an unchanged recomputation leaves the stored
row untouched, so rerunning any job is idempotent.

Backfill runs all days, then all ISO weeks touched, then all months touched.
One bad period is logged and reported; its siblings still run.

Every write is announced to subscribed listeners as a RollupCompleted event.
Unchanged recomputations write nothing and announce nothing.
"""

from __future__ import annotations

import calendar
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterable, Iterator, Optional

from analytics.accumulator import DECIMALS, accumulate
from schemas.nutrition_schemas import (
    BackfillReport, DailySummary, MonthlySummary, NutrientVector,
    PeriodFailure, RollupCompleted, RollupPeriod, WeeklySummary, utcnow,
)

logger = logging.getLogger(__name__)

ROLLUP_MAX_WORKERS: int = int(os.getenv("ROLLUP_MAX_WORKERS", "1"))

RollupListener = Callable[[RollupCompleted], None]

_CANCELLED = object()


# ═══════════════════════════════════════════════════════════════
# CALENDAR HELPERS
# ═══════════════════════════════════════════════════════════════

def iso_weeks_in_year(iso_year: int) -> int:
    # Dec 28 always falls in the last ISO week of its year.
    return date(iso_year, 12, 28).isocalendar()[1]


def iso_week_start(iso_year: int, iso_week: int) -> date:
    """Monday of the ISO-8601 week (week 1 holds the year's first Thursday)."""
    if not 1 <= iso_week <= iso_weeks_in_year(iso_year):
        raise ValueError(f"ISO year {iso_year} has no week {iso_week}")
    return date.fromisocalendar(iso_year, iso_week, 1)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def days_in_range(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def iso_weeks_in_range(start: date, end: date) -> list[tuple[int, int]]:
    """Every (iso_year, iso_week) touched by [start, end], in order."""
    weeks = []
    monday = start - timedelta(days=start.weekday())
    while monday <= end:
        iso_year, iso_week, _ = monday.isocalendar()
        weeks.append((iso_year, iso_week))
        monday += timedelta(days=7)
    return weeks


def months_in_range(start: date, end: date) -> list[tuple[int, int]]:
    months = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        months.append((year, month))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def average_daily_summaries(rows: Iterable[DailySummary]) -> tuple[NutrientVector, int, int]:
    """
    (per-nutrient mean, days_with_data, total_entries).

    A nutrient is averaged over the days that recorded it; a day that
    never logged iron does not drag the iron mean toward zero.
    """
    sums: dict[str, float] = {}
    counts: dict[str, int] = {}
    days = 0
    entries = 0
    for row in rows:
        if not row.has_data:
            continue
        days += 1
        entries += row.entry_count
        for key, value in row.nutrients.items():
            sums[key] = sums.get(key, 0.0) + value
            counts[key] = counts.get(key, 0) + 1
    averages = {
        key: round(sums[key] / counts[key], DECIMALS)
        for key in sorted(sums)
        if sums[key] > 0
    }
    return averages, days, entries


# ═══════════════════════════════════════════════════════════════
# AGGREGATOR
# ═══════════════════════════════════════════════════════════════

class RollupAggregator:

    def __init__(
        self,
        intake_repo,
        summary_repo,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = ROLLUP_MAX_WORKERS,
    ) -> None:
        self.intake_repo  = intake_repo
        self.summary_repo = summary_repo
        self.clock        = clock
        self.max_workers  = max(1, max_workers)
        self._listeners: list[RollupListener] = []
        self._listeners_lock = threading.Lock()

    # ── Completion hook ───────────────────────────────────────────────────────

    def subscribe(self, listener: RollupListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def _completed(self, user_id: str, period: RollupPeriod, period_start: date) -> None:
        event = RollupCompleted(user_id=user_id, period=period, period_start=period_start)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # the row is already written; a listener cannot undo it
                logger.exception("Rollup listener failed for %s %s %s", user_id, period, period_start)

    # ── Daily ─────────────────────────────────────────────────────────────────

    def run_daily_rollup(self, user_id: str, day: date) -> DailySummary:
        start   = datetime.combine(day, time.min)
        records = self.intake_repo.find_by_user_and_date_range(user_id, start, start + timedelta(days=1))
        totals  = accumulate(r.nutrients for r in records)

        existing = self.summary_repo.get_daily(user_id, day)
        if existing and existing.nutrients == totals and existing.entry_count == len(records):
            logger.debug("Daily rollup %s %s unchanged", user_id, day)
            return existing

        summary = DailySummary(
            user_id=user_id, log_date=day, nutrients=totals,
            entry_count=len(records), computed_at=self.clock(),
        )
        self.summary_repo.upsert_daily(summary)
        logger.info("Daily rollup %s %s: %d entries, %d nutrients", user_id, day, len(records), len(totals))
        self._completed(user_id, "daily", day)
        return summary

    # ── Weekly ────────────────────────────────────────────────────────────────

    def run_weekly_rollup(self, user_id: str, iso_year: int, iso_week: int) -> Optional[WeeklySummary]:
        """None when no day of the week has data (nothing is written)."""
        monday = iso_week_start(iso_year, iso_week)
        rows = self.summary_repo.list_daily(user_id, monday, monday + timedelta(days=6))
        averages, days, entries = average_daily_summaries(rows)
        if days == 0:
            logger.warning("No daily data for %s in %d-W%02d, weekly rollup skipped", user_id, iso_year, iso_week)
            return None

        existing = self.summary_repo.get_weekly(user_id, iso_year, iso_week)
        if existing and (existing.avg_nutrients, existing.days_with_data, existing.total_entries) == (averages, days, entries):
            return existing

        summary = WeeklySummary(
            user_id=user_id, iso_year=iso_year, iso_week=iso_week,
            week_start_date=monday, avg_nutrients=averages,
            days_with_data=days, total_entries=entries, computed_at=self.clock(),
        )
        self.summary_repo.upsert_weekly(summary)
        logger.info("Weekly rollup %s %d-W%02d: %d day(s)", user_id, iso_year, iso_week, days)
        self._completed(user_id, "weekly", monday)
        return summary

    # ── Monthly ───────────────────────────────────────────────────────────────

    def run_monthly_rollup(self, user_id: str, year: int, month: int) -> Optional[MonthlySummary]:
        first, last = month_bounds(year, month)
        averages, days, entries = average_daily_summaries(self.summary_repo.list_daily(user_id, first, last))
        if days == 0:
            logger.warning("No daily data for %s in %d-%02d, monthly rollup skipped", user_id, year, month)
            return None

        existing = self.summary_repo.get_monthly(user_id, year, month)
        if existing and (existing.avg_nutrients, existing.days_with_data, existing.total_entries) == (averages, days, entries):
            return existing

        summary = MonthlySummary(
            user_id=user_id, year=year, month=month, avg_nutrients=averages,
            days_with_data=days, total_entries=entries, computed_at=self.clock(),
        )
        self.summary_repo.upsert_monthly(summary)
        logger.info("Monthly rollup %s %d-%02d: %d day(s)", user_id, year, month, days)
        self._completed(user_id, "monthly", first)
        return summary

    # ── Backfill ──────────────────────────────────────────────────────────────

    def backfill_user_rollups(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        max_workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BackfillReport:
        if start_date > end_date:
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")

        workers = max(1, max_workers if max_workers is not None else self.max_workers)
        cancel  = cancel_event or threading.Event()
        report  = BackfillReport(user_id=user_id, start_date=start_date, end_date=end_date)
        logger.info("Backfill %s %s..%s (workers=%d)", user_id, start_date, end_date, workers)

        phases: list[tuple[str, list, Callable[[Any], Any]]] = [
            ("day",   list(days_in_range(start_date, end_date)), lambda d: self.run_daily_rollup(user_id, d)),
            ("week",  iso_weeks_in_range(start_date, end_date),  lambda k: self.run_weekly_rollup(user_id, *k)),
            ("month", months_in_range(start_date, end_date),     lambda k: self.run_monthly_rollup(user_id, *k)),
        ]
        for label, keys, job in phases:
            processed, skipped = self._run_phase(label, keys, job, workers, cancel, report)
            if label == "day":
                report.days_processed = processed
            elif label == "week":
                report.weeks_processed, report.weeks_skipped = processed, skipped
            else:
                report.months_processed, report.months_skipped = processed, skipped
            if report.cancelled:
                break

        logger.info(
            "Backfill %s done: %d days, %d weeks, %d months, %d failure(s)%s",
            user_id, report.days_processed, report.weeks_processed,
            report.months_processed, report.failed_count,
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def _run_phase(
        self,
        label: str,
        keys: list,
        job: Callable[[Any], Any],
        workers: int,
        cancel: threading.Event,
        report: BackfillReport,
    ) -> tuple[int, int]:
        processed = skipped = 0

        def guarded(key: Any) -> Any:
            if cancel.is_set():
                return _CANCELLED
            return job(key)

        def record(key: Any, outcome: Any, error: Optional[BaseException]) -> None:
            nonlocal processed, skipped
            if error is not None:
                period = _period_name(label, key)
                logger.error("Backfill %s failed: %s", period, error, exc_info=error)
                report.failures.append(PeriodFailure(period=period, error=str(error)))
            elif outcome is _CANCELLED:
                report.cancelled = True
            elif outcome is None:
                skipped += 1
            else:
                processed += 1

        if workers == 1:
            for key in keys:
                if cancel.is_set():
                    report.cancelled = True
                    break
                try:
                    outcome = job(key)
                except Exception as exc:
                    record(key, None, exc)
                else:
                    record(key, outcome, None)
            return processed, skipped

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"rollup-{label}") as pool:
            futures = {pool.submit(guarded, key): key for key in keys}
            for future in as_completed(futures):
                error = future.exception()
                record(futures[future], None if error else future.result(), error)
        return processed, skipped


def _period_name(label: str, key: Any) -> str:
    if label == "day":
        return f"day:{key.isoformat()}"
    if label == "week":
        return f"week:{key[0]}-W{key[1]:02d}"
    return f"month:{key[0]}-{key[1]:02d}"
