"""
Storage interface shared by the SQL and in-memory adapters.

The adapters are intentionally dumb: what counts as "due", "stale" or "expired" is
decided by the reconciliation engine, which only hands over cutoffs and batches.
All datetimes crossing this interface are timezone-aware UTC.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from wxconsensus.services.scoring import ScoreCell

INTERVALS = ("24h", "48h", "5d")

ACTUAL_METRIC_FIELDS = (
    "temperature_2m",
    "rain",
    "snowfall",
    "wind_speed_10m",
    "wind_gusts_10m",
    "cloud_cover",
    "visibility",
)


@dataclass(frozen=True)
class PendingForecast:
    location_id: int
    model_key: str
    metric_key: str
    target_time: datetime
    forecasted_value: float
    forecast_lead_time_hours: int
    generation_time: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class ActualWeatherRecord:
    location_id: int
    time: datetime
    temperature_2m: Optional[float] = None
    rain: Optional[float] = None
    snowfall: Optional[float] = None
    wind_speed_10m: Optional[float] = None
    wind_gusts_10m: Optional[float] = None
    cloud_cover: Optional[float] = None
    visibility: Optional[float] = None

    def value_for(self, metric_key: str) -> Optional[float]:
        if metric_key not in ACTUAL_METRIC_FIELDS:
            return None
        return getattr(self, metric_key)


@dataclass(frozen=True)
class HistoricalForecastRecord:
    location_id: int
    model_key: str
    metric_key: str
    target_time: datetime
    forecast_lead_time_hours: int
    forecasted_value: float
    actual_value: float
    error: float
    # pending row this record retires; None for rows not tied to a pending forecast
    pending_id: Optional[int] = None


@dataclass
class AccuracyScore:
    """Nested read view: scores[metric_key][interval] -> ScoreCell."""

    location_id: int
    model_key: str
    location_name: Optional[str] = None
    model_name: Optional[str] = None
    scores: Dict[str, Dict[str, ScoreCell]] = field(default_factory=dict)

    def cell(self, metric_key: str, interval: str) -> ScoreCell:
        return self.scores.setdefault(metric_key, empty_intervals())[interval]


def empty_intervals() -> Dict[str, ScoreCell]:
    return {k: ScoreCell() for k in INTERVALS}


@dataclass(frozen=True)
class ScoreUpdate:
    location_id: int
    model_key: str
    metric_key: str
    interval: str
    error: float
    location_name: Optional[str] = None
    model_name: Optional[str] = None
    pending_id: Optional[int] = None


@dataclass
class ReconciliationBatch:
    """Everything one reconciliation pass mutates, applied as a single transaction."""

    score_updates: List[ScoreUpdate] = field(default_factory=list)
    retired_ids: List[int] = field(default_factory=list)
    history: List[HistoricalForecastRecord] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.score_updates or self.retired_ids or self.history)

    def claimed_by(self, removed_ids: Set[int]) -> "ReconciliationBatch":
        """The part of this batch whose pending rows are in ``removed_ids`` (or that has none)."""

        def keep(pending_id: Optional[int]) -> bool:
            return pending_id is None or pending_id in removed_ids

        return ReconciliationBatch(
            score_updates=[u for u in self.score_updates if keep(u.pending_id)],
            retired_ids=[i for i in self.retired_ids if i in removed_ids],
            history=[h for h in self.history if keep(h.pending_id)],
        )


@dataclass(frozen=True)
class PruneResult:
    expired_pending: int = 0
    actuals_deleted: int = 0
    history_deleted: int = 0


@dataclass(frozen=True)
class Lease:
    id: str
    holder_id: str
    timestamp_ms: int


class AccuracyStore(abc.ABC):
    # --- pending forecasts ---
    @abc.abstractmethod
    def add_pending_forecasts(self, batch: Sequence[PendingForecast]) -> int:
        """Insert-or-ignore on (location, model, metric, target hour); returns rows inserted."""

    @abc.abstractmethod
    def get_due_pending_forecasts(self, cutoff: datetime) -> List[PendingForecast]:
        """All pending forecasts with target_time <= cutoff."""

    # --- actual weather ---
    @abc.abstractmethod
    def add_actual_weather(self, record: ActualWeatherRecord) -> bool:
        """Insert-or-ignore on (location, time); True when a row was written."""

    def add_actual_weather_batch(self, records: Iterable[ActualWeatherRecord]) -> int:
        return sum(1 for r in records if self.add_actual_weather(r))

    @abc.abstractmethod
    def get_actuals_for_range(self, location_id: int, start: datetime, end: datetime) -> List[ActualWeatherRecord]:
        """Inclusive range, ordered by time."""

    @abc.abstractmethod
    def get_latest_actual_time(self, location_id: int) -> Optional[datetime]:
        ...

    # --- history and scores ---
    @abc.abstractmethod
    def get_historical_forecasts(self, location_id: int, start: datetime, end: datetime) -> List[HistoricalForecastRecord]:
        ...

    @abc.abstractmethod
    def get_accuracy_scores(self) -> List[AccuracyScore]:
        ...

    @abc.abstractmethod
    def apply_reconciliation(self, batch: ReconciliationBatch) -> int:
        """
        Delete retired pending rows, then fold score updates and append history atomically.

        Updates and history carrying a ``pending_id`` are applied only when this call
        removed that pending row, so two overlapping passes never score one forecast
        twice. Returns the number of pending rows removed.
        """

    @abc.abstractmethod
    def prune_older_than(self, cutoff: datetime) -> PruneResult:
        """Delete pending, actual and historical rows at or before cutoff."""

    @abc.abstractmethod
    def clear_accuracy_data(self) -> None:
        ...

    @abc.abstractmethod
    def are_accuracy_stores_empty(self) -> bool:
        ...

    # --- leases ---
    @abc.abstractmethod
    def get_lease(self, lease_id: str) -> Optional[Lease]:
        ...

    @abc.abstractmethod
    def put_lease(self, lease: Lease) -> None:
        """Unconditional upsert; used for bookkeeping rows such as the last-check marker."""

    @abc.abstractmethod
    def try_acquire_lease(self, lease_id: str, holder_id: str, now_ms: int, duration_ms: int) -> bool:
        """
        Take the lease when it is absent, older than duration_ms, or already ours.
        Must be a single conditional write: two racing callers never both get True.
        """

    @abc.abstractmethod
    def renew_lease(self, lease_id: str, holder_id: str, now_ms: int) -> bool:
        """Refresh the timestamp only if holder_id still holds the lease."""

    @abc.abstractmethod
    def release_lease(self, lease_id: str, holder_id: str) -> bool:
        ...
