"""
Table-driven normalization of Open-Meteo model payloads.

Every function here is pure: payload dicts in, plain record dicts out. Units of the
records produced:

    temperature_2m  degC         rain, precipitation  mm
    snowfall        cm           wind_*               kn
    cloud_cover     %            visibility           statute miles
"""
from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from wxconsensus.core.catalog import ModelSpec
from wxconsensus.errors import ModelDataError
from wxconsensus.utils.numeric import finite_float, scale
from wxconsensus.utils.timeutils import parse_api_time

HOURLY = "hourly"
DAILY = "daily"
VIEWS = (HOURLY, DAILY)

METERS_PER_MILE = 1609.34
MM_PER_CM = 10.0
# Rain (mm) or snow (cm) at or below this is treated as absent.
PRECIP_PRESENCE_THRESHOLD = 0.05

# canonical metric -> aliases some endpoints return instead
METRIC_ALIASES: Dict[str, tuple[str, ...]] = {
    "wind_speed_10m": ("windspeed_10m",),
    "wind_direction_10m": ("winddirection_10m",),
    "wind_gusts_10m": ("windgusts_10m",),
    "cloud_cover": ("cloudcover",),
}

STAT_SUFFIXES = ("", "_mean", "_dominant", "_percentile_25", "_percentile_50", "_percentile_75")

DAILY_PARAMS = (
    "temperature_2m_max",
    "temperature_2m_min",
    "precipitation_sum",
    "rain_sum",
    "snowfall_sum",
    "wind_speed_10m_max",
    "wind_gusts_10m_max",
    "wind_direction_10m_dominant",
)

ARCHIVE_PARAMS = (
    "temperature_2m",
    "rain",
    "snowfall",
    "wind_speed_10m",
    "wind_gusts_10m",
    "cloud_cover",
    "visibility",
)

CURRENT_PARAMS = (
    "temperature_2m",
    "wind_speed_10m",
    "wind_direction_10m",
    "weather_code",
    "is_day",
    "wind_gusts_10m",
    "cloud_cover",
    "visibility",
    "rain",
    "snowfall",
    "dew_point_2m",
    "pressure_msl",
)

CURRENT_HOURLY_PARAMS = ("temperature_2m", "cloud_cover_low", "cloud_cover_mid", "cloud_cover_high")

_CARDINALS = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)


class PrecipitationType(IntEnum):
    NONE = 0
    RAIN = 1
    MIXED = 2
    SNOW = 3


def classify_precipitation(rain_mm: Optional[float], snow_cm: Optional[float]) -> PrecipitationType:
    rain = (rain_mm or 0.0) > PRECIP_PRESENCE_THRESHOLD
    snow = (snow_cm or 0.0) > PRECIP_PRESENCE_THRESHOLD
    if rain and snow:
        return PrecipitationType.MIXED
    if snow:
        return PrecipitationType.SNOW
    if rain:
        return PrecipitationType.RAIN
    return PrecipitationType.NONE


def degrees_to_cardinal(degrees: Optional[float]) -> Optional[str]:
    if degrees is None:
        return None
    return _CARDINALS[round((degrees % 360) / 22.5) % 16]


def extract_model_block(payload: Mapping[str, Any], model: ModelSpec, view: str) -> Dict[str, Any]:
    """
    Return the part of `payload` holding `model`'s data for `view`.

    Flat responses carry ``hourly``/``hourly_units`` at top level; multi-model responses
    nest them under ``models[api_name]`` or ``payload[api_name]``.
    """
    if view not in VIEWS:
        raise ValueError(f"unknown view {view!r}")
    if not isinstance(payload, Mapping):
        raise ModelDataError(model.name, "Response body is not a JSON object.")
    if payload.get("error"):
        raise ModelDataError(model.name, str(payload.get("reason") or "Upstream reported an error."))

    data_key, units_key = view, f"{view}_units"
    if payload.get(data_key) and payload.get(units_key):
        return dict(payload)

    nested = payload.get("models")
    block = nested.get(model.api_name) if isinstance(nested, Mapping) else None
    if block is None:
        block = payload.get(model.api_name)
    if isinstance(block, Mapping) and block.get(data_key) and block.get(units_key):
        base = {k: v for k, v in payload.items() if k not in ("models", model.api_name)}
        base.update(block)
        return base

    raise ModelDataError(
        model.name,
        f"Model data for '{model.api_name}' not found in response from '{model.endpoint}' endpoint for {view} view.",
    )


def normalize_keys(block: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename alias metric keys to their canonical names across every statistical suffix."""
    out = dict(block)
    for canonical, aliases in METRIC_ALIASES.items():
        for alias in aliases:
            for suffix in STAT_SUFFIXES:
                src, dst = f"{alias}{suffix}", f"{canonical}{suffix}"
                if src not in out:
                    continue
                value = out.pop(src)
                out.setdefault(dst, value)
    return out


def _series(block: Mapping[str, Any], key: str, i: int) -> Optional[float]:
    values = block.get(key)
    if not isinstance(values, Sequence) or isinstance(values, (str, bytes)) or i >= len(values):
        return None
    return finite_float(values[i])


def _times(block: Mapping[str, Any]) -> List[str]:
    times = block.get("time")
    if not isinstance(times, list):
        return []
    return [str(t) for t in times]


def normalize_hourly(hourly: Mapping[str, Any]) -> List[Dict[str, Any]]:
    block = normalize_keys(hourly)
    records: List[Dict[str, Any]] = []
    for i, t in enumerate(_times(block)):
        rain = _series(block, "rain", i)
        snow_mm = _series(block, "snowfall", i)
        precipitation = _series(block, "precipitation", i)
        if precipitation is None and (rain is not None or snow_mm is not None):
            precipitation = (rain or 0.0) + (snow_mm or 0.0)
        snow_cm = scale(snow_mm, MM_PER_CM)

        records.append({
            "time": t,
            "temperature_2m": _series(block, "temperature_2m", i),
            "precipitation": precipitation,
            "rain": rain,
            "snowfall": snow_cm,
            "wind_speed_10m": _series(block, "wind_speed_10m", i),
            "wind_direction_10m": degrees_to_cardinal(_series(block, "wind_direction_10m", i)),
            "wind_gusts_10m": _series(block, "wind_gusts_10m", i),
            "cloud_cover": _series(block, "cloud_cover", i),
            "visibility": scale(_series(block, "visibility", i), METERS_PER_MILE),
            "precipitation_type": int(classify_precipitation(rain, snow_cm)),
        })
    return records


def normalize_daily(daily: Mapping[str, Any]) -> List[Dict[str, Any]]:
    block = normalize_keys(daily)
    records: List[Dict[str, Any]] = []
    for i, t in enumerate(_times(block)):
        records.append({
            "time": t,
            "temperature_2m": None,
            "temperature_2m_max": _series(block, "temperature_2m_max", i),
            "temperature_2m_min": _series(block, "temperature_2m_min", i),
            "precipitation": _series(block, "precipitation_sum", i),
            "rain": _series(block, "rain_sum", i),
            # daily sums arrive in cm already
            "snowfall": _series(block, "snowfall_sum", i),
            "wind_speed_10m": None,
            "wind_speed_10m_max": _series(block, "wind_speed_10m_max", i),
            "wind_direction_10m": degrees_to_cardinal(_series(block, "wind_direction_10m_dominant", i)),
            "wind_gusts_10m": None,
            "wind_gusts_10m_max": _series(block, "wind_gusts_10m_max", i),
            "cloud_cover": None,
            "visibility": None,
            "precipitation_type": None,
        })
    return records


def normalize_model_payload(payload: Mapping[str, Any], model: ModelSpec, view: str) -> List[Dict[str, Any]]:
    """Extract and normalize one model's response; raises ModelDataError for unusable payloads."""
    block = extract_model_block(payload, model, view)
    data = block.get(view)
    if not isinstance(data, Mapping) or not _times(data):
        raise ModelDataError(model.name, f"Empty {view} time axis.")
    if view == DAILY:
        return normalize_daily(data)
    return normalize_hourly(data)


def normalize_archive(payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Observed hourly weather from the archive endpoint, in canonical units."""
    hourly = payload.get("hourly") if isinstance(payload, Mapping) else None
    if not isinstance(hourly, Mapping):
        return []
    block = normalize_keys(hourly)
    out: List[Dict[str, Any]] = []
    for i, t in enumerate(_times(block)):
        out.append({
            "time": t,
            "temperature_2m": _series(block, "temperature_2m", i),
            "rain": _series(block, "rain", i),
            "snowfall": scale(_series(block, "snowfall", i), MM_PER_CM),
            "wind_speed_10m": _series(block, "wind_speed_10m", i),
            "wind_gusts_10m": _series(block, "wind_gusts_10m", i),
            "cloud_cover": _series(block, "cloud_cover", i),
            "visibility": scale(_series(block, "visibility", i), METERS_PER_MILE),
        })
    return out


def _closest_index(times: Sequence[str], target: str) -> Optional[int]:
    try:
        at = parse_api_time(target)
        parsed = [parse_api_time(t) for t in times]
    except ValueError:
        return None
    if not parsed:
        return None
    return min(range(len(parsed)), key=lambda i: abs(parsed[i] - at))


def normalize_current(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Current conditions in canonical units, or None when the payload has no ``current`` block.

    Cloud layers come from the hourly point closest to the observation time; a missing
    low layer falls back to total cloud cover.
    """
    current = payload.get("current") if isinstance(payload, Mapping) else None
    if not isinstance(current, Mapping):
        return None
    block = normalize_keys(current)

    def value(key: str) -> Optional[float]:
        return finite_float(block.get(key))

    rain = value("rain")
    snow_cm = scale(value("snowfall"), MM_PER_CM)
    out: Dict[str, Any] = {
        "time": block.get("time"),
        "temperature_2m": value("temperature_2m"),
        "dew_point_2m": value("dew_point_2m"),
        "pressure_msl": value("pressure_msl"),
        "rain": rain,
        "snowfall": snow_cm,
        "wind_speed_10m": value("wind_speed_10m"),
        "wind_direction_10m": value("wind_direction_10m"),
        "wind_direction_cardinal": degrees_to_cardinal(value("wind_direction_10m")),
        "wind_gusts_10m": value("wind_gusts_10m"),
        "cloud_cover": value("cloud_cover"),
        "visibility": scale(value("visibility"), METERS_PER_MILE),
        "weather_code": block.get("weather_code"),
        "is_day": bool(block.get("is_day")) if block.get("is_day") is not None else None,
        "precipitation_type": int(classify_precipitation(rain, snow_cm)),
        "cloud_cover_low": value("cloud_cover"),
        "cloud_cover_mid": None,
        "cloud_cover_high": None,
    }

    hourly = payload.get("hourly")
    if isinstance(hourly, Mapping) and isinstance(out["time"], str):
        i = _closest_index(_times(hourly), out["time"])
        if i is not None:
            low = _series(hourly, "cloud_cover_low", i)
            out["cloud_cover_low"] = low if low is not None else out["cloud_cover"]
            out["cloud_cover_mid"] = _series(hourly, "cloud_cover_mid", i)
            out["cloud_cover_high"] = _series(hourly, "cloud_cover_high", i)
    return out
