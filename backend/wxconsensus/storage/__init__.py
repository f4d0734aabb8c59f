from __future__ import annotations

from functools import lru_cache

from wxconsensus.config import Settings, get_settings
from .base import (
    AccuracyScore,
    AccuracyStore,
    ActualWeatherRecord,
    HistoricalForecastRecord,
    Lease,
    PendingForecast,
    PruneResult,
    ReconciliationBatch,
    ScoreCell,
    ScoreUpdate,
)
from .memory import InMemoryAccuracyStore
from .sql import SqlAccuracyStore


def build_store(settings: Settings | None = None) -> AccuracyStore:
    settings = settings or get_settings()
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryAccuracyStore()

    # Lazy import: the session module builds the engine at import time
    from wxconsensus.db.session import get_sessionmaker, init_db  # pylint: disable=import-outside-toplevel

    init_db()
    return SqlAccuracyStore(get_sessionmaker())


@lru_cache
def get_store() -> AccuracyStore:
    return build_store()


__all__ = [
    "AccuracyScore",
    "AccuracyStore",
    "ActualWeatherRecord",
    "HistoricalForecastRecord",
    "InMemoryAccuracyStore",
    "Lease",
    "PendingForecast",
    "PruneResult",
    "ReconciliationBatch",
    "ScoreCell",
    "ScoreUpdate",
    "SqlAccuracyStore",
    "build_store",
    "get_store",
]
