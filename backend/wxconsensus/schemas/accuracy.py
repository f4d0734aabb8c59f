from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class ScoreCellOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    mean_absolute_error: float
    hours_tracked: int


class AccuracyScoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    location_id: int
    model_key: str
    location_name: Optional[str] = None
    model_name: Optional[str] = None
    # metric -> interval ("24h" | "48h" | "5d") -> cell
    scores: Dict[str, Dict[str, ScoreCellOut]]


class ActualWeatherOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    location_id: int
    time: datetime
    temperature_2m: Optional[float] = None
    rain: Optional[float] = None
    snowfall: Optional[float] = None
    wind_speed_10m: Optional[float] = None
    wind_gusts_10m: Optional[float] = None
    cloud_cover: Optional[float] = None
    visibility: Optional[float] = None


class HistoricalForecastOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    location_id: int
    model_key: str
    metric_key: str
    target_time: datetime
    forecast_lead_time_hours: int
    forecasted_value: float
    actual_value: float
    error: float


class ModelFailureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    model_name: str
    reason: str


class CycleStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    last_cycle_ok: Optional[bool] = None
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    failures: List[ModelFailureOut] = []
    is_leader: bool = False


class ReconcileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    due: int
    scored: int
    skipped: int
