from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from backend.src.api.database import async_session_factory, engine
from backend.src.api.routes import limiter, router
from backend.src.config import VERSION, settings
from backend.src.contracts.models import Base
from backend.src.dispatcher.dispatcher import Dispatcher
from backend.src.fetcher.fetcher import InventoryFetcher
from backend.src.notifier.web_push_notifier import WebPushTransport
from backend.src.scheduler.coordinator import CycleCoordinator
from backend.src.scheduler.scheduler import AlertScheduler

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.get_config().get("min_level", 0),
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def build_coordinator() -> CycleCoordinator:
    dispatcher = Dispatcher(
        WebPushTransport(settings),
        async_session_factory,
        concurrency=settings.dispatch_concurrency,
    )
    return CycleCoordinator(
        settings,
        async_session_factory,
        fetcher=InventoryFetcher(settings),
        dispatcher=dispatcher,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    logger.info(
        "starting_up",
        version=VERSION,
        environment=settings.environment,
        cors_origins=settings.cors_origin_list,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready")

    coordinator = build_coordinator()
    app.state.coordinator = coordinator

    scheduler: AlertScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = AlertScheduler(coordinator, settings)
        scheduler.start()
        logger.info("scheduler_started")

    yield

    # Shutdown
    if scheduler is not None:
        scheduler.stop()
        logger.info("scheduler_stopped")

    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="SplatNet Shop Alert API",
    description="Watches the SplatNet 3 gear shop and pushes matching items to subscribers",
    version=VERSION,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
