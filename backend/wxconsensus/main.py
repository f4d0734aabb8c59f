# wxconsensus/main.py
from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import router objects explicitly to avoid module name collisions
from wxconsensus import __version__
from wxconsensus.routers.health import router as health_router
from wxconsensus.routers.accuracy import router as accuracy_router
from wxconsensus.routers.forecasts import router as forecasts_router
from wxconsensus.db.session import init_db
from wxconsensus.observability.logging import configure_logging
from wxconsensus.observability.middleware import register_exception_handlers, register_request_middleware
from wxconsensus.observability.metrics import router as observability_router
from wxconsensus.scheduler.setup import init_scheduler, shutdown_scheduler
from wxconsensus.config import get_settings

configure_logging()

logger = structlog.get_logger(__name__)

DEV_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="wx-consensus", version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400
    )

    register_request_middleware(app)
    register_exception_handlers(app)

    @app.on_event("startup")
    async def _startup() -> None:
        if settings.STORAGE_BACKEND == "sql":
            init_db()
        await init_scheduler(app)
        logger.info("app.started", env=settings.ENV, storage=settings.STORAGE_BACKEND)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_scheduler()

    app.include_router(health_router)
    app.include_router(observability_router)
    app.include_router(accuracy_router)
    app.include_router(forecasts_router)

    return app


app = create_app()
