from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from wxconsensus.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def _select_database_url() -> str:
    env_name = (settings.ENV or "dev").lower()

    if env_name == "test" or os.getenv("PYTEST_CURRENT_TEST"):
        test_url = settings.TEST_DATABASE_URL or os.getenv("TEST_DATABASE_URL")
        if test_url:
            return test_url

    runtime_url = settings.DATABASE_URL or os.getenv("DATABASE_URL")
    if runtime_url:
        return runtime_url

    return "sqlite:///./wxconsensus.db"


def _enable_sqlite_wal(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_conn, _record):  # noqa: ANN001
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.close()


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:") or url.endswith(":memory:?cache=shared"):
            return create_engine(
                url,
                connect_args=connect_args,
                poolclass=StaticPool,
                future=True,
            )
        engine = create_engine(url, connect_args=connect_args, future=True)
        _enable_sqlite_wal(engine)
        return engine

    return create_engine(url, pool_pre_ping=True, future=True)


DATABASE_URL = _select_database_url()
ENGINE: Engine = _build_engine(DATABASE_URL)
engine: Engine = ENGINE  # alias used in tests
SessionLocal: sessionmaker[Session] = sessionmaker(
    bind=ENGINE,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)

logger.info("Using database %s", ENGINE.url.render_as_string(hide_password=True))


def get_engine() -> Engine:
    return ENGINE


def get_sessionmaker() -> sessionmaker[Session]:
    return SessionLocal


def init_db(bind: Engine | None = None) -> None:
    # Lazy import to avoid circular dependency at module import time
    from wxconsensus.db.base import Base  # pylint: disable=import-outside-toplevel

    Base.metadata.create_all(bind=bind or ENGINE)
