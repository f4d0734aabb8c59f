"""
Accuracy tracking cycle: pulls observed weather, records fresh model forecasts as
pending, scores the ones that came due and prunes stale rows.

Only the lease holder writes; every leader-only entry point takes a LeaseToken.
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import structlog

from wxconsensus.config import Settings, get_settings
from wxconsensus.core.catalog import (
    ACCURACY_LOCATIONS,
    MODELS,
    TRACKABLE_METRIC_KEYS,
    Location,
    ModelSpec,
)
from wxconsensus.errors import LeaseUnavailableError, StorageError, UpstreamError
from wxconsensus.observability.instrument import log_job
from wxconsensus.observability.metrics import CYCLE_DURATION
from wxconsensus.services.ensemble import ProcessedForecasts, with_median_model
from wxconsensus.services.fetch_queue import RateLimitedFetchQueue
from wxconsensus.services.lease import LeaseManager, LeaseToken
from wxconsensus.services.normalize import HOURLY, VIEWS
from wxconsensus.services.open_meteo import CurrentConditions, ModelFailure, ModelRun, OpenMeteoClient
from wxconsensus.services.reconciliation import (
    ReconciliationResult,
    prune_stale,
    reconcile_due,
)
from wxconsensus.storage import get_store
from wxconsensus.storage.base import (
    ACTUAL_METRIC_FIELDS,
    AccuracyStore,
    Lease,
    PendingForecast,
    PruneResult,
)
from wxconsensus.utils.numeric import finite_float
from wxconsensus.utils.timeutils import HOUR, as_utc, floor_hour, ms_to_datetime, parse_api_time, utc_now

logger = structlog.get_logger(__name__)

LAST_CHECK_KEY = "last-accuracy-check"
LAST_CHECK_HOLDER = "accuracy-service"


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    actuals_added: int = 0
    pending_added: int = 0
    reconciliation: ReconciliationResult = field(default_factory=ReconciliationResult)
    pruned: PruneResult = field(default_factory=PruneResult)
    failures: List[ModelFailure] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.reconciliation.scored

    def as_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "actuals_added": self.actuals_added,
            "pending_added": self.pending_added,
            "due": self.reconciliation.due,
            "scored": self.reconciliation.scored,
            "skipped": self.reconciliation.skipped,
            "expired": self.pruned.expired_pending,
            "failures": [f.as_dict() for f in self.failures],
        }


@dataclass
class CycleStatus:
    last_cycle_ok: Optional[bool] = None
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    failures: List[ModelFailure] = field(default_factory=list)
    is_leader: bool = False


@dataclass
class HourlyCheckResult:
    ran: bool
    seeded: bool = False
    report: Optional[CycleReport] = None


@dataclass
class ForecastResult:
    forecasts: ProcessedForecasts
    failures: List[ModelFailure]


class AccuracyService:
    def __init__(
        self,
        store: AccuracyStore,
        client: OpenMeteoClient,
        lease_manager: LeaseManager,
        settings: Optional[Settings] = None,
        locations: Optional[Sequence[Location]] = None,
        models: Optional[Sequence[ModelSpec]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.client = client
        self.lease = lease_manager
        self.settings = settings or get_settings()
        self.locations = list(locations if locations is not None else ACCURACY_LOCATIONS)
        self.models = list(models if models is not None else MODELS)
        self._clock = clock
        self._status = CycleStatus()
        self._cycle_lock = asyncio.Lock()

    # --- leadership ---
    def _check_token(self, token: LeaseToken) -> None:
        if token.holder_id != self.lease.holder_id or not self.lease.is_leader:
            raise LeaseUnavailableError(token.lease_id, self.lease.current_holder())

    # --- cycle steps ---
    async def sync_actual_weather(self, token: LeaseToken) -> int:
        self._check_token(token)
        return await self._sync_actuals()

    async def _sync_actuals(self) -> int:
        """Fill observed hours from the last stored actual (or the baseline window) up to the last full hour."""
        now = as_utc(self._clock())
        end = floor_hour(now) - HOUR
        added = 0
        for location in self.locations:
            latest = self.store.get_latest_actual_time(location.id)
            if latest is not None:
                start = as_utc(latest) + HOUR
            else:
                start = floor_hour(now - timedelta(days=self.settings.ACTUALS_BASELINE_DAYS))
            if start > end:
                logger.info("accuracy.actuals_up_to_date", location_id=location.id)
                continue

            days = max(1, math.ceil((now - start) / timedelta(days=1)))
            try:
                records = await self.client.fetch_past_weather(location, days)
            except (UpstreamError, httpx.HTTPError):
                logger.exception("accuracy.actuals_fetch_failed", location_id=location.id)
                continue

            # trailing archive hours come back all-null until observations land
            usable = [
                r for r in records
                if start <= r.time <= end
                and any(getattr(r, k) is not None for k in ACTUAL_METRIC_FIELDS)
            ]
            inserted = self.store.add_actual_weather_batch(usable)
            added += inserted
            logger.info(
                "accuracy.actuals_synced",
                location_id=location.id,
                start=start.isoformat(),
                end=end.isoformat(),
                inserted=inserted,
            )
        return added

    def _pending_rows(self, location: Location, run: ModelRun, now: datetime) -> List[PendingForecast]:
        horizon = now + timedelta(hours=self.settings.ACCURACY_MAX_FORECAST_HOURS)
        generated = as_utc(run.generation_time)
        rows: List[PendingForecast] = []
        for record in run.records:
            target = parse_api_time(record["time"])
            if target > horizon:
                continue
            lead = round((target - generated) / HOUR)
            if lead < self.settings.ACCURACY_MIN_LEAD_HOURS:
                continue
            for metric in TRACKABLE_METRIC_KEYS:
                value = finite_float(record.get(metric))
                if value is None:
                    continue
                rows.append(PendingForecast(
                    location_id=location.id,
                    model_key=run.model.key,
                    metric_key=metric,
                    target_time=target,
                    forecasted_value=value,
                    forecast_lead_time_hours=lead,
                    generation_time=generated,
                ))
        return rows

    async def store_future_forecasts(self, token: LeaseToken) -> tuple[int, List[ModelFailure]]:
        self._check_token(token)
        return await self._store_pending()

    async def _store_pending(self) -> tuple[int, List[ModelFailure]]:
        added = 0
        failures: List[ModelFailure] = []
        for location in self.locations:
            outcome = await self.client.fetch_models(
                location.latitude, location.longitude, HOURLY, accuracy_run=True, models=self.models
            )
            failures.extend(outcome.failures)
            now = as_utc(self._clock())
            rows: List[PendingForecast] = []
            for run in outcome.runs:
                rows.extend(self._pending_rows(location, run, now))
            if rows:
                inserted = self.store.add_pending_forecasts(rows)
                added += inserted
                logger.info(
                    "accuracy.pending_stored",
                    location_id=location.id,
                    candidates=len(rows),
                    inserted=inserted,
                )
        return added, failures

    def process_past_forecasts(self, token: LeaseToken) -> ReconciliationResult:
        self._check_token(token)
        return self._reconcile()

    def _reconcile(self) -> ReconciliationResult:
        return reconcile_due(
            self.store,
            as_utc(self._clock()),
            warmup_hours=self.settings.ACCURACY_WARMUP_HOURS,
            min_lead_hours=self.settings.ACCURACY_MIN_LEAD_HOURS,
            location_names={loc.id: loc.name for loc in self.locations},
            model_names={m.key: m.name for m in self.models},
        )

    @log_job("accuracy_full_cycle")
    async def run_full_cycle(self, token: LeaseToken) -> CycleReport:
        """sync actuals -> store pending -> reconcile -> prune.

        Leadership is checked once on entry; a cycle that started as leader runs
        to completion even if the lease is lost part way. Any error aborts the
        cycle, marks it failed and re-raises.
        """
        self._check_token(token)
        async with self._cycle_lock:
            started = as_utc(self._clock())
            self._status.last_attempt_at = started
            report = CycleReport(started_at=started)
            t0 = time.perf_counter()
            logger.info("accuracy.cycle.start", holder_id=token.holder_id)
            try:
                report.actuals_added = await self._sync_actuals()
                report.pending_added, report.failures = await self._store_pending()
                report.reconciliation = self._reconcile()
                report.pruned = prune_stale(
                    self.store, as_utc(self._clock()), self.settings.ACCURACY_RETENTION_HOURS
                )
            except Exception as exc:
                self._status.last_cycle_ok = False
                logger.exception(
                    "accuracy.cycle.failed",
                    holder_id=token.holder_id,
                    storage=isinstance(exc, StorageError),
                    exc_type=type(exc).__name__,
                )
                raise
            finally:
                CYCLE_DURATION.observe(time.perf_counter() - t0)

            report.finished_at = as_utc(self._clock())
            self._status.last_cycle_ok = True
            self._status.last_success_at = report.finished_at
            self._status.failures = list(report.failures)
            logger.info("accuracy.cycle.complete", **report.as_dict())
            return report

    def _mark_checked(self, at: datetime) -> None:
        self.store.put_lease(Lease(LAST_CHECK_KEY, LAST_CHECK_HOLDER, int(as_utc(at).timestamp() * 1000)))

    def _last_check(self) -> Optional[datetime]:
        marker = self.store.get_lease(LAST_CHECK_KEY)
        return ms_to_datetime(marker.timestamp_ms) if marker else None

    # --- entry points ---
    async def check_and_run_hourly_update(self) -> Optional[HourlyCheckResult]:
        """Scheduled entry point. Returns None when another replica is the leader."""
        token = self.lease.acquire()
        if token is None:
            logger.info("accuracy.not_leader", holder_id=self.lease.holder_id)
            return None
        self.lease.start_renewal(token)

        if self.store.are_accuracy_stores_empty():
            logger.info("accuracy.seeding")
            report = await self.run_full_cycle(token)
            self._mark_checked(as_utc(self._clock()))
            return HourlyCheckResult(ran=True, seeded=True, report=report)

        now = as_utc(self._clock())
        last = self._last_check()
        spacing = timedelta(minutes=self.settings.CYCLE_MIN_SPACING_MIN)
        if last is not None and now - last <= spacing:
            logger.info("accuracy.cycle.skipped", last_check=last.isoformat())
            return HourlyCheckResult(ran=False)

        report = await self.run_full_cycle(token)
        self._mark_checked(now)
        return HourlyCheckResult(ran=True, report=report)

    async def run_full_cycle_now(self) -> CycleReport:
        """Manual trigger; raises LeaseUnavailableError when another replica leads."""
        token = self.lease.acquire()
        if token is None:
            raise LeaseUnavailableError(self.lease.lease_id, self.lease.current_holder())
        logger.info("accuracy.manual_cycle", holder_id=token.holder_id)
        report = await self.run_full_cycle(token)
        self._mark_checked(as_utc(self._clock()))
        return report

    def reconcile_now(self) -> ReconciliationResult:
        return self._reconcile()

    def reset_accuracy_data(self) -> None:
        self.store.clear_accuracy_data()
        self._status = CycleStatus(is_leader=self.lease.is_leader)
        logger.warning("accuracy.reset")

    def get_status(self) -> CycleStatus:
        self._status.is_leader = self.lease.is_leader
        return self._status

    async def fetch_forecasts(self, view: str, latitude: float, longitude: float) -> ForecastResult:
        """Live display path: every eligible model normalized, plus the median model."""
        if view not in VIEWS:
            raise ValueError(f"unknown view {view!r}")
        outcome = await self.client.fetch_models(latitude, longitude, view, accuracy_run=False, models=self.models)
        processed: ProcessedForecasts = {run.model.key: run.records for run in outcome.runs}
        return ForecastResult(forecasts=with_median_model(processed, view), failures=outcome.failures)

    async def fetch_current_weather(self, latitude: float, longitude: float) -> CurrentConditions:
        return await self.client.fetch_current_weather(latitude, longitude)

    async def fetch_past_weather(self, latitude: float, longitude: float, days: int) -> List[Dict[str, Any]]:
        """Observed hourly weather for display; nothing here is written to the accuracy store."""
        return await self.client.fetch_archive(latitude, longitude, days)

    async def aclose(self) -> None:
        self.lease.stop_renewal()
        await self.client.aclose()


def build_accuracy_service(settings: Optional[Settings] = None, store: Optional[AccuracyStore] = None) -> AccuracyService:
    settings = settings or get_settings()
    store = store or get_store()
    http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_S)
    queue = RateLimitedFetchQueue(http, min_interval_s=settings.FETCH_MIN_INTERVAL_MS / 1000)
    client = OpenMeteoClient(queue, settings)
    lease = LeaseManager(
        store,
        lease_id=settings.LEASE_ID,
        holder_id=settings.INSTANCE_ID,
        duration_s=settings.LEASE_DURATION_S,
        renew_interval_s=settings.LEASE_RENEWAL_S,
    )
    return AccuracyService(store, client, lease, settings)


@lru_cache
def get_accuracy_service() -> AccuracyService:
    return build_accuracy_service()
