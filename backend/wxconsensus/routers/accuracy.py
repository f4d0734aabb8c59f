"""
Accuracy endpoints. Service errors (storage failures, lease contention) are
turned into envelopes by the handlers in ``observability.middleware``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi import status as http

from wxconsensus.schemas.accuracy import (
    AccuracyScoreOut,
    ActualWeatherOut,
    CycleStatusOut,
    HistoricalForecastOut,
    ReconcileOut,
)
from wxconsensus.schemas.common import fail, meta_now, ok
from wxconsensus.services.accuracy import AccuracyService, get_accuracy_service
from wxconsensus.utils.timeutils import as_utc, utc_now

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/accuracy", tags=["accuracy"])


def _window(baseline_days: int, start: Optional[datetime], end: Optional[datetime]) -> tuple[datetime, datetime]:
    end = as_utc(end) if end else utc_now()
    start = as_utc(start) if start else end - timedelta(days=baseline_days)
    return start, end


def _invalid_range():
    return fail("invalid_range", "start must not be after end", status_code=http.HTTP_422_UNPROCESSABLE_ENTITY)


@router.get("/scores")
def read_scores(service: AccuracyService = Depends(get_accuracy_service)):
    data = [AccuracyScoreOut.model_validate(s).model_dump() for s in service.store.get_accuracy_scores()]
    return ok(data=data, meta=meta_now(count=len(data)))


@router.get("/actuals")
def read_actuals(
    location_id: int = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    service: AccuracyService = Depends(get_accuracy_service),
):
    start, end = _window(service.settings.ACTUALS_BASELINE_DAYS, start, end)
    if start > end:
        return _invalid_range()
    rows = service.store.get_actuals_for_range(location_id, start, end)
    return ok(
        data=[ActualWeatherOut.model_validate(r).model_dump() for r in rows],
        meta=meta_now(location_id=location_id, start=start.isoformat(), end=end.isoformat()),
    )


@router.get("/historical")
def read_historical(
    location_id: int = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    service: AccuracyService = Depends(get_accuracy_service),
):
    start, end = _window(service.settings.ACTUALS_BASELINE_DAYS, start, end)
    if start > end:
        return _invalid_range()
    rows = service.store.get_historical_forecasts(location_id, start, end)
    return ok(
        data=[HistoricalForecastOut.model_validate(r).model_dump() for r in rows],
        meta=meta_now(location_id=location_id, start=start.isoformat(), end=end.isoformat()),
    )


@router.get("/status")
def read_status(service: AccuracyService = Depends(get_accuracy_service)):
    return ok(data=CycleStatusOut.model_validate(service.get_status()).model_dump(), meta=meta_now())


@router.post("/update")
async def run_hourly_update(service: AccuracyService = Depends(get_accuracy_service)):
    result = await service.check_and_run_hourly_update()
    if result is None:
        return ok(data={"ran": False, "leader": False}, meta=meta_now())
    return ok(
        data={
            "ran": result.ran,
            "leader": True,
            "seeded": result.seeded,
            "report": result.report.as_dict() if result.report else None,
        },
        meta=meta_now(),
    )


@router.post("/full-cycle")
async def run_full_cycle(service: AccuracyService = Depends(get_accuracy_service)):
    """Manual cycle; 409 ``lease_unavailable`` while another replica leads."""
    report = await service.run_full_cycle_now()
    return ok(data=report.as_dict(), meta=meta_now())


@router.post("/reconcile")
def run_reconcile(service: AccuracyService = Depends(get_accuracy_service)):
    result = service.reconcile_now()
    return ok(data=ReconcileOut.model_validate(result).model_dump(), meta=meta_now())


@router.post("/reset")
def reset_accuracy(service: AccuracyService = Depends(get_accuracy_service)):
    service.reset_accuracy_data()
    logger.warning("accuracy.reset_requested")
    return ok(data={"reset": True}, meta=meta_now())
