import os
import sys
from pathlib import Path

import pytest
import structlog
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend/ is importable as the top-level "wxconsensus" package even when pytest runs from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure the application runs in test/sqlite mode *before* importing any wxconsensus modules
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_BACKEND", "sql")
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("FETCH_MIN_INTERVAL_MS", "0")

# Import the DB session module first so we can patch it before the app is imported
import wxconsensus.db.session as app_db_session  # noqa: E402

# --- Use a single in-memory SQLite DB for the whole test session ---
ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    future=True,
)
SessionTesting = sessionmaker(bind=ENGINE, autocommit=False, autoflush=False, expire_on_commit=False, future=True)

# --- Ensure tests and app code share the SAME in-memory engine/sessionmaker ---
setattr(app_db_session, "ENGINE", ENGINE)
setattr(app_db_session, "engine", ENGINE)
app_db_session.SessionLocal = SessionTesting
app_db_session.get_engine = lambda: ENGINE            # type: ignore
app_db_session.get_sessionmaker = lambda: SessionTesting  # type: ignore

from wxconsensus.db.base import Base  # noqa: E402
from wxconsensus.main import app  # noqa: E402
from wxconsensus.services.accuracy import get_accuracy_service  # noqa: E402
from wxconsensus.storage import InMemoryAccuracyStore, SqlAccuracyStore  # noqa: E402

from _helpers import build_service, default_handler  # noqa: E402

Base.metadata.create_all(bind=ENGINE)

# capture_logs only sees loggers that are re-bound after it patches the processors
structlog.configure(cache_logger_on_first_use=False)


@pytest.fixture(scope="function")
def reset_db():
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
    yield
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)


@pytest.fixture(scope="function")
def sql_store(reset_db):
    return SqlAccuracyStore(SessionTesting)


@pytest.fixture(scope="function")
def memory_store():
    return InMemoryAccuracyStore()


@pytest.fixture(params=["sql", "memory"])
def store(request):
    """Every storage-facing test runs against both adapters."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture(scope="function")
def service(sql_store):
    return build_service(sql_store, default_handler)


@pytest.fixture(scope="function")
def client(service):
    app.dependency_overrides[get_accuracy_service] = lambda: service
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_accuracy_service, None)
