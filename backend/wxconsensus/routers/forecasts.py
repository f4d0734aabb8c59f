from fastapi import APIRouter, Depends, Query
from fastapi import status as http

from wxconsensus.schemas.common import fail, meta_now, ok
from wxconsensus.schemas.forecast import CurrentWeatherOut, ForecastsOut, PastWeatherOut
from wxconsensus.services.accuracy import AccuracyService, get_accuracy_service
from wxconsensus.services.normalize import VIEWS

router = APIRouter(prefix="/api/forecasts", tags=["forecasts"])


@router.get("")
async def read_forecasts(
    view: str = Query("hourly"),
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    service: AccuracyService = Depends(get_accuracy_service),
):
    if view not in VIEWS:
        return fail(
            "invalid_view",
            f"view must be one of {', '.join(VIEWS)}",
            status_code=http.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    result = await service.fetch_forecasts(view, latitude, longitude)
    body = ForecastsOut(
        view=view,
        latitude=latitude,
        longitude=longitude,
        forecasts=result.forecasts,
        errors=[f.as_dict() for f in result.failures],
    )
    return ok(
        data=body.model_dump(),
        meta=meta_now(models=len(result.forecasts), failures=len(result.failures)),
    )


@router.get("/current")
async def read_current_weather(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    service: AccuracyService = Depends(get_accuracy_service),
):
    result = await service.fetch_current_weather(latitude, longitude)
    body = CurrentWeatherOut(
        latitude=latitude,
        longitude=longitude,
        current=result.current,
        timezone_abbreviation=result.timezone_abbreviation,
    )
    return ok(data=body.model_dump(), meta=meta_now())


@router.get("/past")
async def read_past_weather(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    days: int = Query(1, ge=1, le=7),
    service: AccuracyService = Depends(get_accuracy_service),
):
    records = await service.fetch_past_weather(latitude, longitude, days)
    body = PastWeatherOut(latitude=latitude, longitude=longitude, days=days, records=records)
    return ok(data=body.model_dump(), meta=meta_now(count=len(records)))
