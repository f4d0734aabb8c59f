from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from wxconsensus.schemas.accuracy import ModelFailureOut


class ForecastsOut(BaseModel):
    view: str
    latitude: float
    longitude: float
    # model key -> normalized points; includes "median_model" when any model answered
    forecasts: Dict[str, List[Dict[str, Any]]]
    errors: List[ModelFailureOut] = []


class CurrentWeatherOut(BaseModel):
    latitude: float
    longitude: float
    # None when the upstream reply had no current block
    current: Optional[Dict[str, Any]] = None
    timezone_abbreviation: Optional[str] = None


class PastWeatherOut(BaseModel):
    latitude: float
    longitude: float
    days: int
    records: List[Dict[str, Any]]
