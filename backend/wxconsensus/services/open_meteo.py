from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from wxconsensus.config import Settings, get_settings
from wxconsensus.core.catalog import ENDPOINTS, Location, ModelSpec, eligible_models
from wxconsensus.errors import ModelDataError, UpstreamError
from wxconsensus.observability.metrics import MODEL_FETCH_FAILURES
from wxconsensus.services.fetch_queue import RateLimitedFetchQueue
from wxconsensus.services.normalize import (
    ARCHIVE_PARAMS,
    CURRENT_HOURLY_PARAMS,
    CURRENT_PARAMS,
    DAILY,
    DAILY_PARAMS,
    HOURLY,
    normalize_archive,
    normalize_current,
    normalize_model_payload,
)
from wxconsensus.storage.base import ActualWeatherRecord
from wxconsensus.utils.timeutils import parse_api_time, utc_now

logger = structlog.get_logger(__name__)

DAILY_FORECAST_DAYS = 8


@dataclass(frozen=True)
class ModelRun:
    model: ModelSpec
    records: List[Dict[str, Any]]
    generation_time: datetime


@dataclass(frozen=True)
class ModelFailure:
    model_name: str
    reason: str

    def as_dict(self) -> Dict[str, str]:
        return {"model_name": self.model_name, "reason": self.reason}


ModelResult = Union[ModelRun, ModelFailure]


@dataclass(frozen=True)
class CurrentConditions:
    current: Optional[Dict[str, Any]]
    timezone_abbreviation: Optional[str] = None


@dataclass
class FetchOutcome:
    runs: List[ModelRun] = field(default_factory=list)
    failures: List[ModelFailure] = field(default_factory=list)


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("reason"):
        return str(body["reason"])
    return f"HTTP {response.status_code}"


class OpenMeteoClient:
    """Builds Open-Meteo requests and pushes every one of them through the shared fetch queue."""

    def __init__(
        self,
        queue: RateLimitedFetchQueue,
        settings: Optional[Settings] = None,
        clock=utc_now,
    ) -> None:
        self._queue = queue
        self._settings = settings or get_settings()
        self._clock = clock

    def model_url(self, model: ModelSpec) -> str:
        path, _ = ENDPOINTS[model.endpoint]
        return f"{self._settings.OPEN_METEO_BASE_URL.rstrip('/')}/{path}"

    def model_params(
        self,
        model: ModelSpec,
        latitude: float,
        longitude: float,
        view: str = HOURLY,
        accuracy_run: bool = True,
    ) -> Dict[str, str]:
        params: Dict[str, str] = {
            "latitude": str(latitude),
            "longitude": str(longitude),
            "wind_speed_unit": "kn",
            "temperature_unit": "celsius",
            "precipitation_unit": "mm",
            "timezone": "UTC" if accuracy_run else "auto",
        }
        if view == DAILY:
            params["daily"] = ",".join(DAILY_PARAMS)
            params["forecast_days"] = str(DAILY_FORECAST_DAYS)
        else:
            params["hourly"] = ",".join(model.params)
            if model.forecast_days:
                params["forecast_days"] = str(model.forecast_days)
        _, selector = ENDPOINTS[model.endpoint]
        if selector:
            params[selector] = model.api_name
        return params

    async def _fetch_one(
        self,
        model: ModelSpec,
        latitude: float,
        longitude: float,
        view: str,
        accuracy_run: bool,
    ) -> ModelResult:
        request = httpx.Request(
            "GET",
            self.model_url(model),
            params=self.model_params(model, latitude, longitude, view, accuracy_run),
        )
        try:
            response = await self._queue.enqueue(request)
            if response.status_code >= 400:
                raise UpstreamError(str(request.url), response.status_code, _error_reason(response))
            try:
                payload = response.json()
            except ValueError as exc:
                raise ModelDataError(model.name, f"Invalid JSON: {exc}") from exc
            records = normalize_model_payload(payload, model, view)
        except (ModelDataError, UpstreamError, httpx.HTTPError) as exc:
            reason = exc.reason if isinstance(exc, (ModelDataError, UpstreamError)) else str(exc) or type(exc).__name__
            logger.warning("fetch.model_failed", model=model.key, view=view, reason=reason)
            MODEL_FETCH_FAILURES.labels(model=model.key).inc()
            return ModelFailure(model.name, reason)
        return ModelRun(model=model, records=records, generation_time=self._clock())

    async def fetch_models(
        self,
        latitude: float,
        longitude: float,
        view: str = HOURLY,
        accuracy_run: bool = True,
        models: Optional[Sequence[ModelSpec]] = None,
    ) -> FetchOutcome:
        """Fan out one request per eligible model; one model failing never affects the others."""
        split = eligible_models(latitude, longitude, list(models) if models is not None else None)
        if split.skipped:
            logger.info(
                "fetch.models_skipped",
                reason="region",
                models=[m.name for m in split.skipped],
            )
        logger.info("fetch.start", view=view, models=len(split.eligible), accuracy_run=accuracy_run)

        results = await asyncio.gather(
            *(self._fetch_one(m, latitude, longitude, view, accuracy_run) for m in split.eligible),
            return_exceptions=True,
        )

        outcome = FetchOutcome()
        for model, result in zip(split.eligible, results):
            if isinstance(result, ModelRun):
                outcome.runs.append(result)
            elif isinstance(result, ModelFailure):
                outcome.failures.append(result)
            else:
                logger.error("fetch.model_crashed", model=model.key, error=repr(result))
                MODEL_FETCH_FAILURES.labels(model=model.key).inc()
                outcome.failures.append(ModelFailure(model.name, str(result) or type(result).__name__))
        logger.info("fetch.complete", view=view, succeeded=len(outcome.runs), failed=len(outcome.failures))
        return outcome

    async def _get_json(self, request: httpx.Request) -> Any:
        """Send one request through the queue; non-2xx replies and undecodable bodies raise UpstreamError."""
        response = await self._queue.enqueue(request)
        if response.status_code >= 400:
            raise UpstreamError(str(request.url), response.status_code, _error_reason(response))
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(str(request.url), response.status_code, f"Invalid JSON: {exc}") from exc

    async def fetch_archive(self, latitude: float, longitude: float, days: int) -> List[Dict[str, Any]]:
        """Observed hourly weather for the last `days` days as normalized rows."""
        now = self._clock()
        params = {
            "latitude": str(latitude),
            "longitude": str(longitude),
            "start_date": (now - timedelta(days=days)).date().isoformat(),
            "end_date": now.date().isoformat(),
            "hourly": ",".join(ARCHIVE_PARAMS),
            "wind_speed_unit": "kn",
            "temperature_unit": "celsius",
            "precipitation_unit": "mm",
            "timezone": "UTC",
        }
        request = httpx.Request("GET", self._settings.OPEN_METEO_ARCHIVE_URL, params=params)
        rows = normalize_archive(await self._get_json(request))
        if not rows:
            logger.warning("fetch.archive_empty", latitude=latitude, longitude=longitude)
        return rows

    async def fetch_past_weather(self, location: Location, days: int) -> List[ActualWeatherRecord]:
        rows = await self.fetch_archive(location.latitude, location.longitude, days)
        return [
            ActualWeatherRecord(
                location_id=location.id,
                time=parse_api_time(row["time"]),
                temperature_2m=row["temperature_2m"],
                rain=row["rain"],
                snowfall=row["snowfall"],
                wind_speed_10m=row["wind_speed_10m"],
                wind_gusts_10m=row["wind_gusts_10m"],
                cloud_cover=row["cloud_cover"],
                visibility=row["visibility"],
            )
            for row in rows
        ]

    async def fetch_current_weather(self, latitude: float, longitude: float) -> CurrentConditions:
        params = {
            "latitude": str(latitude),
            "longitude": str(longitude),
            "current": ",".join(CURRENT_PARAMS),
            "hourly": ",".join(CURRENT_HOURLY_PARAMS),
            "forecast_days": "1",
            "wind_speed_unit": "kn",
            "temperature_unit": "celsius",
            "precipitation_unit": "mm",
        }
        url = f"{self._settings.OPEN_METEO_BASE_URL.rstrip('/')}/forecast"
        payload = await self._get_json(httpx.Request("GET", url, params=params))
        current = normalize_current(payload)
        if current is None:
            logger.warning("fetch.current_empty", latitude=latitude, longitude=longitude)
        tz = payload.get("timezone_abbreviation") if isinstance(payload, dict) else None
        return CurrentConditions(current=current, timezone_abbreviation=tz)

    async def aclose(self) -> None:
        await self._queue.aclose()
        await self._queue.client.aclose()
