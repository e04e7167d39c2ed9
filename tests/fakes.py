from __future__ import annotations

import threading
from datetime import date, datetime
from typing import Optional

from analytics.errors import RepositoryError
from analytics.targets import select_active_layers
from db.repositories import GoalChangeNotifier
from schemas.nutrition_schemas import (
    ActiveGoalLayers, DailySummary, GoalLayer, MonthlySummary,
    PhysicalProfile, RawIntakeRecord, WeeklySummary,
)


class InMemoryIntakeRepository:
    def __init__(self, records: Optional[list[RawIntakeRecord]] = None) -> None:
        self.records = list(records or [])
        self.fail_on: set[date] = set()
        self.calls = 0

    def add(self, user_id: str, consumed_at: datetime, nutrients: dict) -> None:
        self.records.append(RawIntakeRecord(user_id=user_id, consumed_at=consumed_at, nutrients=nutrients))

    def find_by_user_and_date_range(self, user_id, start_inclusive, end_exclusive):
        self.calls += 1
        if start_inclusive.date() in self.fail_on:
            raise RepositoryError(f"intake store unreachable for {start_inclusive.date()}")
        return [
            r for r in self.records
            if r.user_id == user_id and start_inclusive <= r.consumed_at < end_exclusive
        ]


class InMemorySummaryRepository:
    def __init__(self) -> None:
        self.daily: dict[tuple[str, date], DailySummary] = {}
        self.weekly: dict[tuple[str, int, int], WeeklySummary] = {}
        self.monthly: dict[tuple[str, int, int], MonthlySummary] = {}
        self.writes = 0
        self._lock = threading.Lock()

    def upsert_daily(self, summary):
        with self._lock:
            self.writes += 1
            self.daily[(summary.user_id, summary.log_date)] = summary
        return summary

    def get_daily(self, user_id, log_date):
        return self.daily.get((user_id, log_date))

    def list_daily(self, user_id, start, end):
        with self._lock:
            rows = [s for (uid, d), s in self.daily.items() if uid == user_id and start <= d <= end]
        return sorted(rows, key=lambda s: s.log_date)

    def upsert_weekly(self, summary):
        with self._lock:
            self.writes += 1
            self.weekly[(summary.user_id, summary.iso_year, summary.iso_week)] = summary
        return summary

    def get_weekly(self, user_id, iso_year, iso_week):
        return self.weekly.get((user_id, iso_year, iso_week))

    def upsert_monthly(self, summary):
        with self._lock:
            self.writes += 1
            self.monthly[(summary.user_id, summary.year, summary.month)] = summary
        return summary

    def get_monthly(self, user_id, year, month):
        return self.monthly.get((user_id, year, month))


class InMemoryGoalLayerRepository:
    def __init__(self) -> None:
        self.layers: dict[str, GoalLayer] = {}
        self.active_lookups = 0
        self._notifier = GoalChangeNotifier()

    def subscribe(self, listener):
        self._notifier.subscribe(listener)

    def get_active_layers(self, user_id, day) -> ActiveGoalLayers:
        self.active_lookups += 1
        return select_active_layers((l for l in self.layers.values() if l.user_id == user_id), day)

    def add_layer(self, layer):
        self.layers[layer.id] = layer
        self._notifier.notify(layer.user_id)
        return layer

    def end_layer(self, layer_id, end_date):
        layer = self.layers.get(layer_id)
        if layer is None:
            return None
        layer = layer.model_copy(update={"end_date": end_date})
        self.layers[layer_id] = layer
        self._notifier.notify(layer.user_id)
        return layer

    def remove_layer(self, layer_id):
        layer = self.layers.pop(layer_id, None)
        if layer is None:
            return False
        self._notifier.notify(layer.user_id)
        return True


class InMemoryProfileRepository:
    def __init__(self, *profiles: PhysicalProfile) -> None:
        self.profiles = {p.user_id: p for p in profiles}

    def get_profile(self, user_id):
        return self.profiles.get(user_id)
