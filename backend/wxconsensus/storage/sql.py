from __future__ import annotations

import functools
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from wxconsensus.errors import StorageError
from wxconsensus.models import (
    AccuracyScoreCell,
    ActualWeather,
    HistoricalForecast,
    LeaderLease,
    PendingForecast as PendingRow,
)
from wxconsensus.services.scoring import fold_error
from wxconsensus.storage.base import (
    ACTUAL_METRIC_FIELDS,
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
from wxconsensus.utils.timeutils import as_utc, to_naive_utc

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# keeps multi-row inserts under sqlite's legacy 999 bound-parameter limit
_CHUNK = 100


def _storage_op(func_: F) -> F:
    """Surface driver/ORM failures as StorageError so callers abort the cycle uniformly."""

    @functools.wraps(func_)
    def wrapper(*args: Any, **kwargs: Any):
        try:
            return func_(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("storage.error", op=func_.__name__, error=str(exc))
            raise StorageError(f"{func_.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


def _insert_ignore(session: Session, model, rows: List[Dict[str, Any]], index_elements: Sequence[str]):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(rows)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(rows)
    else:  # pragma: no cover - only sqlite/postgres are deployed
        raise StorageError(f"insert-or-ignore not supported on dialect {dialect!r}")
    return stmt.on_conflict_do_nothing(index_elements=list(index_elements))


def _chunks(items: Sequence[Any], size: int = _CHUNK):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _opt_utc(dt: Optional[datetime]) -> Optional[datetime]:
    return as_utc(dt) if dt is not None else None


def _to_pending(row: PendingRow) -> PendingForecast:
    return PendingForecast(
        id=row.id,
        location_id=row.location_id,
        model_key=row.model_key,
        metric_key=row.metric_key,
        target_time=as_utc(row.target_time),
        forecasted_value=float(row.forecasted_value),
        forecast_lead_time_hours=int(row.forecast_lead_time_hours),
        generation_time=_opt_utc(row.generation_time),
    )


def _to_actual(row: ActualWeather) -> ActualWeatherRecord:
    values = {k: getattr(row, k) for k in ACTUAL_METRIC_FIELDS}
    return ActualWeatherRecord(location_id=row.location_id, time=as_utc(row.time), **values)


def _to_history(row: HistoricalForecast) -> HistoricalForecastRecord:
    return HistoricalForecastRecord(
        location_id=row.location_id,
        model_key=row.model_key,
        metric_key=row.metric_key,
        target_time=as_utc(row.target_time),
        forecast_lead_time_hours=int(row.forecast_lead_time_hours),
        forecasted_value=float(row.forecasted_value),
        actual_value=float(row.actual_value),
        error=float(row.error),
    )


class SqlAccuracyStore(AccuracyStore):
    """SQLAlchemy adapter. Every public method runs in its own transaction."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # --- pending forecasts ---
    @_storage_op
    def add_pending_forecasts(self, batch: Sequence[PendingForecast]) -> int:
        rows = [
            {
                "location_id": f.location_id,
                "model_key": f.model_key,
                "metric_key": f.metric_key,
                "target_time": to_naive_utc(f.target_time),
                "forecasted_value": float(f.forecasted_value),
                "forecast_lead_time_hours": int(f.forecast_lead_time_hours),
                "generation_time": to_naive_utc(f.generation_time) if f.generation_time else None,
            }
            for f in batch
        ]
        if not rows:
            return 0
        inserted = 0
        with self._session_factory.begin() as s:
            for chunk in _chunks(rows):
                stmt = _insert_ignore(
                    s, PendingRow, chunk, ("location_id", "model_key", "metric_key", "target_time")
                )
                inserted += max(int(s.execute(stmt).rowcount or 0), 0)
        return inserted

    @_storage_op
    def get_due_pending_forecasts(self, cutoff: datetime) -> List[PendingForecast]:
        stmt = (
            select(PendingRow)
            .where(PendingRow.target_time <= to_naive_utc(cutoff))
            .order_by(PendingRow.target_time.asc(), PendingRow.id.asc())
        )
        with self._session_factory() as s:
            return [_to_pending(r) for r in s.execute(stmt).scalars().all()]

    # --- actual weather ---
    @_storage_op
    def add_actual_weather(self, record: ActualWeatherRecord) -> bool:
        return self._insert_actuals([record]) == 1

    @_storage_op
    def add_actual_weather_batch(self, records) -> int:
        return self._insert_actuals(list(records))

    def _insert_actuals(self, records: List[ActualWeatherRecord]) -> int:
        rows = []
        for r in records:
            row = {k: getattr(r, k) for k in ACTUAL_METRIC_FIELDS}
            row.update(location_id=r.location_id, time=to_naive_utc(r.time))
            rows.append(row)
        if not rows:
            return 0
        inserted = 0
        with self._session_factory.begin() as s:
            for chunk in _chunks(rows):
                stmt = _insert_ignore(s, ActualWeather, chunk, ("location_id", "time"))
                inserted += max(int(s.execute(stmt).rowcount or 0), 0)
        return inserted

    @_storage_op
    def get_actuals_for_range(self, location_id: int, start: datetime, end: datetime) -> List[ActualWeatherRecord]:
        stmt = (
            select(ActualWeather)
            .where(
                ActualWeather.location_id == location_id,
                ActualWeather.time >= to_naive_utc(start),
                ActualWeather.time <= to_naive_utc(end),
            )
            .order_by(ActualWeather.time.asc())
        )
        with self._session_factory() as s:
            return [_to_actual(r) for r in s.execute(stmt).scalars().all()]

    @_storage_op
    def get_latest_actual_time(self, location_id: int) -> Optional[datetime]:
        stmt = select(func.max(ActualWeather.time)).where(ActualWeather.location_id == location_id)
        with self._session_factory() as s:
            latest = s.execute(stmt).scalar()
        return as_utc(latest) if latest is not None else None

    # --- history and scores ---
    @_storage_op
    def get_historical_forecasts(self, location_id: int, start: datetime, end: datetime) -> List[HistoricalForecastRecord]:
        stmt = (
            select(HistoricalForecast)
            .where(
                HistoricalForecast.location_id == location_id,
                HistoricalForecast.target_time >= to_naive_utc(start),
                HistoricalForecast.target_time <= to_naive_utc(end),
            )
            .order_by(HistoricalForecast.target_time.asc(), HistoricalForecast.id.asc())
        )
        with self._session_factory() as s:
            return [_to_history(r) for r in s.execute(stmt).scalars().all()]

    @_storage_op
    def get_accuracy_scores(self) -> List[AccuracyScore]:
        stmt = select(AccuracyScoreCell).order_by(
            AccuracyScoreCell.location_id,
            AccuracyScoreCell.model_key,
            AccuracyScoreCell.metric_key,
            AccuracyScoreCell.interval_key,
        )
        out: Dict[Tuple[int, str], AccuracyScore] = {}
        with self._session_factory() as s:
            for row in s.execute(stmt).scalars().all():
                key = (row.location_id, row.model_key)
                score = out.get(key)
                if score is None:
                    score = AccuracyScore(row.location_id, row.model_key, row.location_name, row.model_name)
                    out[key] = score
                cell = score.cell(row.metric_key, row.interval_key)
                cell.mean_absolute_error = float(row.mean_absolute_error)
                cell.hours_tracked = int(row.hours_tracked)
        return list(out.values())

    @_storage_op
    def apply_reconciliation(self, batch: ReconciliationBatch) -> int:
        if batch.is_empty():
            return 0
        with self._session_factory.begin() as s:
            # a concurrent pass that already retired a row gets nothing back for it here
            removed: Set[int] = set()
            for ids in _chunks(list(batch.retired_ids)):
                stmt = delete(PendingRow).where(PendingRow.id.in_(ids)).returning(PendingRow.id)
                removed.update(s.execute(stmt).scalars().all())
            batch = batch.claimed_by(removed)

            touched: Dict[Tuple[int, str, str, str], AccuracyScoreCell] = {}
            for u in batch.score_updates:
                key = (u.location_id, u.model_key, u.metric_key, u.interval)
                row = touched.get(key)
                if row is None:
                    row = s.get(
                        AccuracyScoreCell,
                        {
                            "location_id": u.location_id,
                            "model_key": u.model_key,
                            "metric_key": u.metric_key,
                            "interval_key": u.interval,
                        },
                    )
                if row is None:
                    row = AccuracyScoreCell(
                        location_id=u.location_id,
                        model_key=u.model_key,
                        metric_key=u.metric_key,
                        interval_key=u.interval,
                        mean_absolute_error=0.0,
                        hours_tracked=0,
                    )
                    s.add(row)
                folded = fold_error(ScoreCell(row.mean_absolute_error or 0.0, row.hours_tracked or 0), u.error)
                row.mean_absolute_error = folded.mean_absolute_error
                row.hours_tracked = folded.hours_tracked
                if u.location_name:
                    row.location_name = u.location_name
                if u.model_name:
                    row.model_name = u.model_name
                touched[key] = row

            s.add_all(
                HistoricalForecast(
                    location_id=h.location_id,
                    model_key=h.model_key,
                    metric_key=h.metric_key,
                    target_time=to_naive_utc(h.target_time),
                    forecast_lead_time_hours=h.forecast_lead_time_hours,
                    forecasted_value=h.forecasted_value,
                    actual_value=h.actual_value,
                    error=h.error,
                )
                for h in batch.history
            )
        return len(removed)

    @_storage_op
    def prune_older_than(self, cutoff: datetime) -> PruneResult:
        naive = to_naive_utc(cutoff)
        with self._session_factory.begin() as s:
            expired = s.execute(delete(PendingRow).where(PendingRow.target_time <= naive)).rowcount
            actuals = s.execute(delete(ActualWeather).where(ActualWeather.time <= naive)).rowcount
            history = s.execute(
                delete(HistoricalForecast).where(HistoricalForecast.target_time <= naive)
            ).rowcount
        return PruneResult(int(expired or 0), int(actuals or 0), int(history or 0))

    @_storage_op
    def clear_accuracy_data(self) -> None:
        with self._session_factory.begin() as s:
            for model in (AccuracyScoreCell, PendingRow, ActualWeather, HistoricalForecast):
                s.execute(delete(model))

    @_storage_op
    def are_accuracy_stores_empty(self) -> bool:
        with self._session_factory() as s:
            pending = s.execute(select(func.count()).select_from(PendingRow)).scalar() or 0
            actual = s.execute(select(func.count()).select_from(ActualWeather)).scalar() or 0
        return pending == 0 and actual == 0

    # --- leases ---
    @_storage_op
    def get_lease(self, lease_id: str) -> Optional[Lease]:
        with self._session_factory() as s:
            row = s.get(LeaderLease, lease_id)
            if row is None:
                return None
            return Lease(row.id, row.holder_id, int(row.timestamp_ms))

    @_storage_op
    def put_lease(self, lease: Lease) -> None:
        with self._session_factory.begin() as s:
            s.merge(LeaderLease(id=lease.id, holder_id=lease.holder_id, timestamp_ms=lease.timestamp_ms))

    @_storage_op
    def try_acquire_lease(self, lease_id: str, holder_id: str, now_ms: int, duration_ms: int) -> bool:
        with self._session_factory.begin() as s:
            created = s.execute(
                _insert_ignore(
                    s,
                    LeaderLease,
                    [{"id": lease_id, "holder_id": holder_id, "timestamp_ms": now_ms}],
                    ("id",),
                )
            ).rowcount
            if created == 1:
                return True
            # Conditional write: the database re-checks the predicate under its row/db lock,
            # so only one of two racing candidates can match an expired row.
            taken = s.execute(
                update(LeaderLease)
                .where(
                    LeaderLease.id == lease_id,
                    or_(
                        LeaderLease.holder_id == holder_id,
                        LeaderLease.timestamp_ms < now_ms - duration_ms,
                    ),
                )
                .values(holder_id=holder_id, timestamp_ms=now_ms)
            ).rowcount
            return taken == 1

    @_storage_op
    def renew_lease(self, lease_id: str, holder_id: str, now_ms: int) -> bool:
        with self._session_factory.begin() as s:
            res = s.execute(
                update(LeaderLease)
                .where(LeaderLease.id == lease_id, LeaderLease.holder_id == holder_id)
                .values(timestamp_ms=now_ms)
            )
            return res.rowcount == 1

    @_storage_op
    def release_lease(self, lease_id: str, holder_id: str) -> bool:
        with self._session_factory.begin() as s:
            res = s.execute(
                delete(LeaderLease).where(LeaderLease.id == lease_id, LeaderLease.holder_id == holder_id)
            )
            return res.rowcount == 1
