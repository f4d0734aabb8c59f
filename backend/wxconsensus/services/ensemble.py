from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Sequence

import structlog

from wxconsensus.core.catalog import DERIVED_MODEL_KEYS, MEDIAN_MODEL_KEY
from wxconsensus.services.normalize import HOURLY, classify_precipitation
from wxconsensus.utils.numeric import finite_float

logger = structlog.get_logger(__name__)

ProcessedForecasts = Dict[str, List[Dict[str, Any]]]

# Re-derived from the median's own rain/snow, never averaged across models.
_NON_MEDIAN_KEYS = frozenset({"time", "precipitation_type"})


def median(values: Iterable[float]) -> float:
    """Statistical median; the mean of the two middle values for even counts."""
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        raise ValueError("median() of an empty sequence")
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def _real_model_keys(forecasts: Mapping[str, Sequence[Mapping[str, Any]]]) -> List[str]:
    return sorted(k for k in forecasts if k not in DERIVED_MODEL_KEYS)


def build_median_series(
    forecasts: Mapping[str, Sequence[Mapping[str, Any]]],
    view: str,
) -> List[Dict[str, Any]]:
    """
    Per timestamp and numeric metric, the median across all real models.

    Timestamps with no finite value from any model are dropped.
    """
    model_keys = _real_model_keys(forecasts)
    by_time: Dict[str, Dict[str, List[float]]] = {}

    for key in model_keys:
        for point in forecasts[key]:
            t = point.get("time")
            if t is None:
                continue
            bucket = by_time.setdefault(str(t), {})
            for metric, raw in point.items():
                if metric in _NON_MEDIAN_KEYS:
                    continue
                value = finite_float(raw)
                if value is None:
                    continue
                bucket.setdefault(metric, []).append(value)

    series: List[Dict[str, Any]] = []
    for t in sorted(by_time):
        values_at_time = by_time[t]
        if not values_at_time:
            continue
        point: Dict[str, Any] = {"time": t}
        for metric in sorted(values_at_time):
            point[metric] = median(values_at_time[metric])
        if view == HOURLY:
            point["precipitation_type"] = int(
                classify_precipitation(point.get("rain"), point.get("snowfall"))
            )
        else:
            point["precipitation_type"] = None
        series.append(point)
    return series


def with_median_model(forecasts: Mapping[str, Sequence[Mapping[str, Any]]], view: str) -> ProcessedForecasts:
    """Copy of `forecasts` with the synthetic median model added (when any real model is present)."""
    out: ProcessedForecasts = {k: [dict(p) for p in v] for k, v in forecasts.items()}
    if not _real_model_keys(forecasts):
        logger.info("ensemble.no_models", view=view)
        return out
    out[MEDIAN_MODEL_KEY] = build_median_series(forecasts, view)
    logger.info(
        "ensemble.median_built",
        view=view,
        models=len(_real_model_keys(forecasts)),
        points=len(out[MEDIAN_MODEL_KEY]),
    )
    return out
