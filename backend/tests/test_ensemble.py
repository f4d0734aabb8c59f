from __future__ import annotations

import copy
import random

import pytest

from wxconsensus.core.catalog import MEDIAN_MODEL_KEY
from wxconsensus.services.ensemble import build_median_series, median, with_median_model
from wxconsensus.services.normalize import DAILY, HOURLY, PrecipitationType


def _reference_median(values):
    ordered = sorted(values)
    n = len(ordered)
    if n % 2 == 1:
        return ordered[n // 2]
    return (ordered[n // 2 - 1] + ordered[n // 2]) / 2


@pytest.mark.parametrize("seed", range(25))
def test_median_matches_reference(seed):
    rng = random.Random(seed)
    values = [rng.choice([rng.uniform(-40, 40), float(rng.randint(-3, 3))]) for _ in range(rng.randint(1, 16))]
    assert median(values) == _reference_median(values)


def test_median_even_count_and_ties():
    assert median([1.0, 3.0]) == 2.0
    assert median([2.0, 2.0, 5.0, 5.0]) == 3.5
    assert median([4.0, 4.0, 4.0, 1.0]) == 4.0


def test_median_empty_raises():
    with pytest.raises(ValueError):
        median([])


def test_three_models_median_temperature():
    forecasts = {
        "icon_global": [{"time": "2024-05-01T00:00", "temperature_2m": 2.0}],
        "gfs_global": [{"time": "2024-05-01T00:00", "temperature_2m": 9.0}],
        "gem_global": [{"time": "2024-05-01T00:00", "temperature_2m": 4.0}],
    }
    (point,) = build_median_series(forecasts, HOURLY)
    assert point["temperature_2m"] == 4.0


def test_median_series_covers_union_of_timestamps():
    forecasts = {
        "a": [{"time": "t1", "temperature_2m": 1.0}, {"time": "t2", "temperature_2m": 3.0}],
        "b": [{"time": "t2", "temperature_2m": 5.0}, {"time": "t3", "temperature_2m": 7.0}],
    }
    series = build_median_series(forecasts, HOURLY)
    assert [p["time"] for p in series] == ["t1", "t2", "t3"]
    assert [p["temperature_2m"] for p in series] == [1.0, 4.0, 7.0]


def test_timestamp_without_values_is_dropped():
    forecasts = {
        "a": [{"time": "t1", "temperature_2m": None}, {"time": "t2", "temperature_2m": 2.0}],
        "b": [{"time": "t1", "temperature_2m": float("nan"), "wind_direction_10m": "N"}],
    }
    series = build_median_series(forecasts, HOURLY)
    assert [p["time"] for p in series] == ["t2"]


def test_non_numeric_and_bool_values_ignored():
    forecasts = {
        "a": [{"time": "t1", "cloud_cover": True, "rain": 1.0, "wind_direction_10m": "S"}],
        "b": [{"time": "t1", "cloud_cover": 30.0, "rain": 3.0}],
    }
    (point,) = build_median_series(forecasts, HOURLY)
    assert point["cloud_cover"] == 30.0
    assert point["rain"] == 2.0
    assert "wind_direction_10m" not in point


def test_hourly_precipitation_type_rederived_from_median():
    # two models say snow, one says rain; the median's own rain/snow decide
    forecasts = {
        "a": [{"time": "t1", "rain": 0.0, "snowfall": 0.3, "precipitation_type": 3}],
        "b": [{"time": "t1", "rain": 0.0, "snowfall": 0.4, "precipitation_type": 3}],
        "c": [{"time": "t1", "rain": 2.0, "snowfall": 0.0, "precipitation_type": 1}],
    }
    (point,) = build_median_series(forecasts, HOURLY)
    assert point["rain"] == 0.0
    assert point["snowfall"] == 0.3
    assert point["precipitation_type"] == PrecipitationType.SNOW


def test_daily_precipitation_type_is_none():
    forecasts = {"a": [{"time": "2024-05-01", "rain": 4.0, "snowfall": 0.0, "precipitation_type": None}]}
    (point,) = build_median_series(forecasts, DAILY)
    assert point["precipitation_type"] is None


def test_derived_models_do_not_feed_the_median():
    forecasts = {
        "a": [{"time": "t1", "temperature_2m": 1.0}],
        MEDIAN_MODEL_KEY: [{"time": "t1", "temperature_2m": 100.0}],
    }
    (point,) = build_median_series(forecasts, HOURLY)
    assert point["temperature_2m"] == 1.0


def test_with_median_model_is_pure():
    forecasts = {
        "a": [{"time": "t1", "temperature_2m": 1.0}],
        "b": [{"time": "t1", "temperature_2m": 2.0}],
    }
    before = copy.deepcopy(forecasts)
    out = with_median_model(forecasts, HOURLY)
    assert forecasts == before
    assert MEDIAN_MODEL_KEY in out
    assert out[MEDIAN_MODEL_KEY][0]["temperature_2m"] == 1.5
    assert with_median_model(forecasts, HOURLY) == out


def test_with_median_model_without_real_models():
    assert with_median_model({}, HOURLY) == {}
