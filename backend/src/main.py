from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from backend.src.api.database import async_session_factory, engine
from backend.src.api.routes import limiter, router
from backend.src.cache.price_cache import PriceCache
from backend.src.config import settings
from backend.src.contracts.models import Base, Platform
from backend.src.fetcher.fetcher import ElevenStreetFetcher
from backend.src.history.repository import PriceHistoryRepository
from backend.src.notifier.apns_sender import ApnsPushSender
from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.notifier.fcm_sender import FcmPushSender
from backend.src.notifier.registry import PushSenderRegistry
from backend.src.notifier.web_push_sender import WebPushSender
from backend.src.products.repository import ProductRepository
from backend.src.products.service import ProductService
from backend.src.scheduler.scheduler import PricePoller
from backend.src.tracking.repository import TrackingRepository

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
        logging.getLevelName(settings.log_level.upper()),
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    logger.info("starting_up", cors_origins=settings.cors_origin_list)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready")

    history = PriceHistoryRepository(async_session_factory)
    tracking = TrackingRepository(async_session_factory)

    # Polling must not start without a baseline; a failure here aborts startup.
    cache = await PriceCache.from_history(history)

    fetcher = ElevenStreetFetcher(settings)
    sender = PushSenderRegistry(
        {
            Platform.ANDROID: FcmPushSender(settings),
            Platform.IOS: ApnsPushSender(settings),
            Platform.WEB: WebPushSender(settings),
        }
    )
    dispatcher = NotificationDispatcher(tracking, sender, settings.push_timeout_seconds)

    app.state.price_cache = cache
    app.state.product_service = ProductService(
        products=ProductRepository(async_session_factory),
        tracking=tracking,
        history=history,
        cache=cache,
        fetcher=fetcher,
    )

    poller = PricePoller(
        settings=settings,
        tracking=tracking,
        fetcher=fetcher,
        history=history,
        cache=cache,
        dispatcher=dispatcher,
    )
    poller.start()
    logger.info("scheduler_started")

    yield

    # Shutdown
    poller.stop()
    logger.info("scheduler_stopped")

    await fetcher.aclose()
    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="PriceGuard API",
    description="Product price tracking and price-drop alerts",
    version="0.1.0",
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
