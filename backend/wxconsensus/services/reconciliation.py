"""
Accuracy reconciliation: matches due pending forecasts with observed weather.

Lifecycle of a pending forecast::

    PENDING --(target_time <= now - warmup)--> DUE --(actual found)--> SCORED
                                               DUE --(past retention)--> EXPIRED

A DUE forecast without a usable actual stays pending and is retried on the next
pass, so running a pass twice with the same data scores nothing new.
"""
from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from wxconsensus.observability.instrument import log_job
from wxconsensus.observability.metrics import FORECASTS_EXPIRED, FORECASTS_SCORED
from wxconsensus.services.scoring import absolute_error, interval_for_lead
from wxconsensus.storage.base import (
    AccuracyStore,
    ActualWeatherRecord,
    HistoricalForecastRecord,
    PendingForecast,
    PruneResult,
    ReconciliationBatch,
    ScoreUpdate,
)
from wxconsensus.utils.numeric import finite_float
from wxconsensus.utils.timeutils import as_utc

logger = structlog.get_logger(__name__)


class ForecastState(str, enum.Enum):
    PENDING = "pending"
    DUE = "due"
    SCORED = "scored"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ReconciliationResult:
    due: int = 0
    scored: int = 0
    skipped: int = 0

    @property
    def size(self) -> int:
        return self.scored


def due_cutoff(now: datetime, warmup_hours: int) -> datetime:
    return as_utc(now) - timedelta(hours=warmup_hours)


def forecast_state(
    forecast: PendingForecast,
    now: datetime,
    warmup_hours: int,
    retention_hours: int,
) -> ForecastState:
    """State of a forecast that is still pending (scored rows no longer exist as pending)."""
    target = as_utc(forecast.target_time)
    now = as_utc(now)
    if target <= now - timedelta(hours=retention_hours):
        return ForecastState.EXPIRED
    if target <= due_cutoff(now, warmup_hours):
        return ForecastState.DUE
    return ForecastState.PENDING


def _group_by_location(forecasts: List[PendingForecast]) -> Dict[int, List[PendingForecast]]:
    grouped: Dict[int, List[PendingForecast]] = defaultdict(list)
    for f in forecasts:
        grouped[f.location_id].append(f)
    return grouped


def build_batch(
    forecasts: List[PendingForecast],
    actuals: Mapping[Tuple[int, datetime], ActualWeatherRecord],
    min_lead_hours: int,
    location_names: Optional[Mapping[int, str]] = None,
    model_names: Optional[Mapping[str, str]] = None,
) -> Tuple[ReconciliationBatch, int]:
    """Pure scoring step: returns the batch to apply and the number of forecasts skipped."""
    location_names = location_names or {}
    model_names = model_names or {}
    batch = ReconciliationBatch()
    skipped = 0

    for f in forecasts:
        if f.forecast_lead_time_hours < min_lead_hours:
            skipped += 1
            continue
        record = actuals.get((f.location_id, as_utc(f.target_time)))
        actual = finite_float(record.value_for(f.metric_key)) if record is not None else None
        predicted = finite_float(f.forecasted_value)
        if actual is None or predicted is None or f.id is None:
            skipped += 1
            continue

        error = absolute_error(predicted, actual)
        batch.score_updates.append(ScoreUpdate(
            location_id=f.location_id,
            model_key=f.model_key,
            metric_key=f.metric_key,
            interval=interval_for_lead(f.forecast_lead_time_hours),
            error=error,
            location_name=location_names.get(f.location_id),
            model_name=model_names.get(f.model_key),
            pending_id=f.id,
        ))
        batch.retired_ids.append(f.id)
        batch.history.append(HistoricalForecastRecord(
            location_id=f.location_id,
            model_key=f.model_key,
            metric_key=f.metric_key,
            target_time=as_utc(f.target_time),
            forecast_lead_time_hours=f.forecast_lead_time_hours,
            forecasted_value=predicted,
            actual_value=actual,
            error=error,
            pending_id=f.id,
        ))
    return batch, skipped


@log_job("reconcile_due")
def reconcile_due(
    store: AccuracyStore,
    now: datetime,
    warmup_hours: int = 1,
    min_lead_hours: int = 1,
    location_names: Optional[Mapping[int, str]] = None,
    model_names: Optional[Mapping[str, str]] = None,
) -> ReconciliationResult:
    """Score every due pending forecast that has an observed actual, in one storage transaction."""
    due = store.get_due_pending_forecasts(due_cutoff(now, warmup_hours))
    if not due:
        logger.info("reconcile.nothing_due")
        return ReconciliationResult()

    actuals: Dict[Tuple[int, datetime], ActualWeatherRecord] = {}
    for location_id, group in _group_by_location(due).items():
        start = min(as_utc(f.target_time) for f in group)
        end = max(as_utc(f.target_time) for f in group)
        for record in store.get_actuals_for_range(location_id, start, end):
            actuals[(record.location_id, as_utc(record.time))] = record

    batch, skipped = build_batch(due, actuals, min_lead_hours, location_names, model_names)
    scored = store.apply_reconciliation(batch) if not batch.is_empty() else 0
    if scored:
        FORECASTS_SCORED.inc(scored)

    result = ReconciliationResult(due=len(due), scored=scored, skipped=skipped)
    logger.info("reconcile.complete", due=result.due, scored=result.scored, skipped=result.skipped)
    return result


def prune_stale(store: AccuracyStore, now: datetime, retention_hours: int = 336) -> PruneResult:
    """Drop data older than the retention horizon; pending forecasts removed here are EXPIRED."""
    cutoff = as_utc(now) - timedelta(hours=retention_hours)
    result = store.prune_older_than(cutoff)
    if result.expired_pending:
        FORECASTS_EXPIRED.inc(result.expired_pending)
        logger.warning(
            "reconcile.expired",
            count=result.expired_pending,
            cutoff=cutoff.isoformat(),
        )
    logger.info(
        "reconcile.pruned",
        actuals=result.actuals_deleted,
        history=result.history_deleted,
    )
    return result
