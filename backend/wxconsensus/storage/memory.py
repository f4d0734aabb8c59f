from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

import structlog

from wxconsensus.services.scoring import fold_error
from wxconsensus.storage.base import (
    AccuracyScore,
    AccuracyStore,
    ActualWeatherRecord,
    HistoricalForecastRecord,
    Lease,
    PendingForecast,
    PruneResult,
    ReconciliationBatch,
    ScoreCell,
)
from wxconsensus.utils.timeutils import as_utc

logger = structlog.get_logger(__name__)

_CellKey = Tuple[int, str, str, str]


class InMemoryAccuracyStore(AccuracyStore):
    """Process-local store. One lock serializes every operation, which makes each call atomic."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingForecast] = {}
        self._pending_keys: Dict[Tuple[int, str, str, datetime], int] = {}
        self._actuals: Dict[Tuple[int, datetime], ActualWeatherRecord] = {}
        self._history: List[HistoricalForecastRecord] = []
        self._cells: Dict[_CellKey, ScoreCell] = {}
        self._names: Dict[Tuple[int, str], Tuple[Optional[str], Optional[str]]] = {}
        self._leases: Dict[str, Lease] = {}

    # --- pending forecasts ---
    def add_pending_forecasts(self, batch: Sequence[PendingForecast]) -> int:
        inserted = 0
        with self._lock:
            for f in batch:
                target = as_utc(f.target_time)
                key = (f.location_id, f.model_key, f.metric_key, target)
                if key in self._pending_keys:
                    continue
                new_id = next(self._ids)
                self._pending[new_id] = PendingForecast(
                    location_id=f.location_id,
                    model_key=f.model_key,
                    metric_key=f.metric_key,
                    target_time=target,
                    forecasted_value=float(f.forecasted_value),
                    forecast_lead_time_hours=int(f.forecast_lead_time_hours),
                    generation_time=as_utc(f.generation_time) if f.generation_time else None,
                    id=new_id,
                )
                self._pending_keys[key] = new_id
                inserted += 1
        return inserted

    def get_due_pending_forecasts(self, cutoff: datetime) -> List[PendingForecast]:
        cutoff = as_utc(cutoff)
        with self._lock:
            due = [f for f in self._pending.values() if f.target_time <= cutoff]
        return sorted(due, key=lambda f: (f.target_time, f.id or 0))

    def _delete_pending(self, ids) -> Set[int]:
        removed: Set[int] = set()
        for pid in ids:
            f = self._pending.pop(pid, None)
            if f is None:
                continue
            self._pending_keys.pop((f.location_id, f.model_key, f.metric_key, f.target_time), None)
            removed.add(pid)
        return removed

    # --- actual weather ---
    def add_actual_weather(self, record: ActualWeatherRecord) -> bool:
        key = (record.location_id, as_utc(record.time))
        with self._lock:
            if key in self._actuals:
                return False
            self._actuals[key] = replace(record, time=key[1])
            return True

    def get_actuals_for_range(self, location_id: int, start: datetime, end: datetime) -> List[ActualWeatherRecord]:
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            rows = [
                r for (loc, t), r in self._actuals.items()
                if loc == location_id and start <= t <= end
            ]
        return sorted(rows, key=lambda r: r.time)

    def get_latest_actual_time(self, location_id: int) -> Optional[datetime]:
        with self._lock:
            times = [t for (loc, t) in self._actuals if loc == location_id]
        return max(times) if times else None

    # --- history and scores ---
    def get_historical_forecasts(self, location_id: int, start: datetime, end: datetime) -> List[HistoricalForecastRecord]:
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            return [
                h for h in self._history
                if h.location_id == location_id and start <= h.target_time <= end
            ]

    def get_accuracy_scores(self) -> List[AccuracyScore]:
        with self._lock:
            out: Dict[Tuple[int, str], AccuracyScore] = {}
            for (loc, model, metric, interval), cell in sorted(self._cells.items()):
                score = out.get((loc, model))
                if score is None:
                    loc_name, model_name = self._names.get((loc, model), (None, None))
                    score = AccuracyScore(loc, model, loc_name, model_name)
                    out[(loc, model)] = score
                target = score.cell(metric, interval)
                target.mean_absolute_error = cell.mean_absolute_error
                target.hours_tracked = cell.hours_tracked
            return list(out.values())

    def apply_reconciliation(self, batch: ReconciliationBatch) -> int:
        with self._lock:
            removed = self._delete_pending(batch.retired_ids)
            batch = batch.claimed_by(removed)
            cells = dict(self._cells)
            for u in batch.score_updates:
                key = (u.location_id, u.model_key, u.metric_key, u.interval)
                cells[key] = fold_error(cells.get(key), u.error)
                if u.location_name or u.model_name:
                    self._names[(u.location_id, u.model_key)] = (u.location_name, u.model_name)
            self._cells = cells
            self._history.extend(
                replace(h, target_time=as_utc(h.target_time), pending_id=None) for h in batch.history
            )
        return len(removed)

    def prune_older_than(self, cutoff: datetime) -> PruneResult:
        cutoff = as_utc(cutoff)
        with self._lock:
            stale_ids = [pid for pid, f in self._pending.items() if f.target_time <= cutoff]
            expired = len(self._delete_pending(stale_ids))
            stale_actuals = [k for k in self._actuals if k[1] <= cutoff]
            for k in stale_actuals:
                del self._actuals[k]
            kept = [h for h in self._history if h.target_time > cutoff]
            history_deleted = len(self._history) - len(kept)
            self._history = kept
        return PruneResult(expired, len(stale_actuals), history_deleted)

    def clear_accuracy_data(self) -> None:
        with self._lock:
            self._pending.clear()
            self._pending_keys.clear()
            self._actuals.clear()
            self._history.clear()
            self._cells.clear()
            self._names.clear()

    def are_accuracy_stores_empty(self) -> bool:
        with self._lock:
            return not self._pending and not self._actuals

    # --- leases ---
    def get_lease(self, lease_id: str) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(lease_id)

    def put_lease(self, lease: Lease) -> None:
        with self._lock:
            self._leases[lease.id] = lease

    def try_acquire_lease(self, lease_id: str, holder_id: str, now_ms: int, duration_ms: int) -> bool:
        with self._lock:
            cur = self._leases.get(lease_id)
            if cur is None or cur.holder_id == holder_id or now_ms - cur.timestamp_ms > duration_ms:
                self._leases[lease_id] = Lease(lease_id, holder_id, now_ms)
                return True
            return False

    def renew_lease(self, lease_id: str, holder_id: str, now_ms: int) -> bool:
        with self._lock:
            cur = self._leases.get(lease_id)
            if cur is None or cur.holder_id != holder_id:
                return False
            self._leases[lease_id] = Lease(lease_id, holder_id, now_ms)
            return True

    def release_lease(self, lease_id: str, holder_id: str) -> bool:
        with self._lock:
            cur = self._leases.get(lease_id)
            if cur is None or cur.holder_id != holder_id:
                return False
            del self._leases[lease_id]
            return True
