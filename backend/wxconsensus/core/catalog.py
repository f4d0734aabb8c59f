"""
Static catalog of forecast models, tracked locations and scored metrics.

The core consumes this module read-only; it never mutates the descriptors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

GLOBAL = "Global"
CANADIAN = "Canadian"
NA_REGIONAL = "North American Regional"
DERIVED = "Derived"

MEDIAN_MODEL_KEY = "median_model"


@dataclass(frozen=True)
class Location:
    id: int
    name: str
    latitude: float
    longitude: float
    country: str = ""
    admin1: str = ""


@dataclass(frozen=True)
class ModelSpec:
    key: str
    name: str
    api_name: str
    category: str
    params: Tuple[str, ...] = ()
    endpoint: str = "forecast"
    forecast_days: Optional[int] = None
    enabled: bool = True

    @property
    def is_derived(self) -> bool:
        return self.category == DERIVED


@dataclass(frozen=True)
class Metric:
    key: str
    label: str
    unit: str


# (base path, selector parameter) per upstream endpoint
ENDPOINTS: Dict[str, Tuple[str, Optional[str]]] = {
    "forecast": ("forecast", "models"),
    "gfs": ("gfs", "models"),
    "gem": ("gem", "domain"),
    "bom": ("bom", "domain"),
    "meteofrance": ("meteofrance", "domain"),
    "ecmwf": ("ecmwf", None),
}

_PARAMS_NO_VISIBILITY = (
    "temperature_2m", "precipitation", "rain", "snowfall",
    "wind_speed_10m", "wind_direction_10m", "wind_gusts_10m", "cloud_cover",
)
_PARAMS_FULL = _PARAMS_NO_VISIBILITY + ("visibility",)
_PARAMS_LIMITED = ("temperature_2m", "precipitation", "wind_speed_10m", "wind_direction_10m")
_PARAMS_ACCESS_G2 = (
    "temperature_2m", "precipitation", "rain", "snowfall",
    "wind_speed_10m", "wind_direction_10m", "cloud_cover",
)
# GEM and ECMWF endpoints only accept the concatenated names (windspeed_10m, cloudcover).
_PARAMS_GEM = (
    "temperature_2m", "rain", "snowfall",
    "windspeed_10m", "winddirection_10m", "windgusts_10m", "cloudcover",
)
_PARAMS_AIFS = (
    "temperature_2m", "rain", "snowfall",
    "wind_speed_10m", "wind_direction_10m", "windgusts_10m", "cloud_cover",
)
_PARAMS_ECMWF_IFS = (
    "temperature_2m", "precipitation", "rain", "snowfall",
    "windspeed_10m", "winddirection_10m", "windgusts_10m", "cloudcover",
)

MODELS: List[ModelSpec] = [
    ModelSpec("icon_global", "ICON Global 7km", "icon_global", GLOBAL, _PARAMS_FULL),
    ModelSpec("jma_gsm", "JMA GSM 20km", "jma_gsm", GLOBAL, _PARAMS_NO_VISIBILITY),
    ModelSpec("cma_grapes_global", "CMA Grapes 12km", "cma_grapes_global", GLOBAL, _PARAMS_NO_VISIBILITY),
    ModelSpec("arpege_world", "ARPEGE World 11km", "arpege-world", GLOBAL, _PARAMS_FULL, endpoint="meteofrance"),
    ModelSpec("bom_access_global", "ACCESS-G 12km", "access-g", GLOBAL, _PARAMS_NO_VISIBILITY, endpoint="bom"),
    ModelSpec("bom_access_g2", "BOM ACCESS-G 17km", "access-g2", GLOBAL, _PARAMS_ACCESS_G2, endpoint="bom"),
    ModelSpec("gfs_global", "GFS 11km", "gfs_global", GLOBAL, _PARAMS_FULL, endpoint="gfs"),
    ModelSpec("gfs_graphcast025", "GFS GraphCast 25km", "gfs_graphcast025", GLOBAL, _PARAMS_LIMITED, endpoint="gfs"),
    ModelSpec("nam_conus", "NAM Conus 5km", "nam_conus", NA_REGIONAL, _PARAMS_FULL, endpoint="gfs", forecast_days=3),
    ModelSpec("hrrr_subhourly", "HRRR Conus 3km", "hrrr_subhourly", NA_REGIONAL, _PARAMS_FULL, endpoint="gfs", forecast_days=2),
    ModelSpec("gem_global", "GEM Global 15km (GDPS)", "global", CANADIAN, _PARAMS_GEM, endpoint="gem"),
    ModelSpec("hrdps_continental", "HRDPS Continental 2.5km", "hrdps_continental", NA_REGIONAL, _PARAMS_GEM, endpoint="gem", forecast_days=2),
    ModelSpec("gem_regional", "GEM Regional 10km (RDPS)", "regional", CANADIAN, _PARAMS_GEM, endpoint="gem"),
    ModelSpec("ecmwf_ifs", "ECMWF IFS 9km", "ecmwf_ifs", GLOBAL, _PARAMS_ECMWF_IFS, endpoint="ecmwf"),
    ModelSpec("aifs025", "AIFS 25km", "aifs025", GLOBAL, _PARAMS_AIFS, endpoint="ecmwf"),
    ModelSpec(MEDIAN_MODEL_KEY, "Median of Models", MEDIAN_MODEL_KEY, DERIVED),
]

MODELS_BY_KEY: Dict[str, ModelSpec] = {m.key: m for m in MODELS}

DERIVED_MODEL_KEYS = frozenset(m.key for m in MODELS if m.is_derived)

ACCURACY_LOCATIONS: List[Location] = [
    Location(1, "37 Jubilation", 53.66435844967257, -113.64584647888562, "Canada", "Alberta"),
    Location(2, "66 Aspenglen Cres", 53.5602078582863, -113.910951582919, "Canada", "Alberta"),
    Location(3, "Edmonton Airport CYEG", 53.314143603363405, -113.58986567205196, "Canada", "Alberta"),
    Location(4, "Villeneuve Airport CZVL", 53.67007644383797, -113.8631353717015, "Canada", "Alberta"),
]

LOCATIONS_BY_ID: Dict[int, Location] = {loc.id: loc for loc in ACCURACY_LOCATIONS}

TRACKABLE_METRICS: List[Metric] = [
    Metric("temperature_2m", "Temperature", "°C"),
    Metric("rain", "Rainfall", "mm"),
    Metric("snowfall", "Snowfall", "cm"),
    Metric("wind_speed_10m", "Wind Speed", "kn"),
    Metric("wind_gusts_10m", "Wind Gusts", "kn"),
    Metric("cloud_cover", "Cloud Cover", "%"),
    Metric("visibility", "Visibility", "mi"),
]

TRACKABLE_METRIC_KEYS: Tuple[str, ...] = tuple(m.key for m in TRACKABLE_METRICS)


def is_us_mainland(lat: float, lon: float) -> bool:
    return 24 <= lat <= 50 and -125 <= lon <= -66


def _region_ok(model: ModelSpec, lat: float, lon: float) -> bool:
    if model.category == NA_REGIONAL:
        return is_us_mainland(lat, lon)
    return True


@dataclass
class Eligibility:
    eligible: List[ModelSpec] = field(default_factory=list)
    skipped: List[ModelSpec] = field(default_factory=list)


def eligible_models(
    lat: float,
    lon: float,
    models: Optional[List[ModelSpec]] = None,
    region_ok: Callable[[ModelSpec, float, float], bool] = _region_ok,
) -> Eligibility:
    """Split fetchable (real, enabled) models into eligible/skipped for a coordinate."""
    out = Eligibility()
    for m in models if models is not None else MODELS:
        if m.is_derived or not m.enabled:
            continue
        if region_ok(m, lat, lon):
            out.eligible.append(m)
        else:
            out.skipped.append(m)
    return out
