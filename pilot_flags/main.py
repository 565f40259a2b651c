"""
Pilot flag service - main entry point
Feature flag checks with pilot whitelists behind a read-through cache.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from pilot_flags.api import api_router, health
from pilot_flags.core.caching import CacheBackend, InMemoryCache, RedisCache
from pilot_flags.core.config import Settings, get_settings
from pilot_flags.core.feature_flags import FeatureFlagService, FlagCache, create_flag_store
from pilot_flags.core.feature_flags.seed import seed_demo_flags
from pilot_flags.utils.cache import close_redis, init_redis
from pilot_flags.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def _build_cache_backend(settings: Settings) -> CacheBackend:
    if settings.REDIS_ENABLED:
        client = await init_redis(settings.REDIS_URL)
        if client is not None:
            return RedisCache(client)
        logger.warning("Redis unavailable, using in-memory flag cache", extra={"backend": "memory"})
    return InMemoryCache()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: store, seed data, cache and service wiring."""
    settings: Settings = app.state.settings
    logger.info("Starting pilot flag service...")

    store = create_flag_store(settings.FLAG_STORE_BACKEND, settings.FLAG_STORE_PATH)
    if settings.SEED_DEMO_FLAGS:
        await seed_demo_flags(store)

    backend = await _build_cache_backend(settings)
    cache = FlagCache(backend, ttl_seconds=settings.FLAG_CACHE_TTL_SECONDS)
    app.state.flag_service = FeatureFlagService(store, cache)
    logger.info(
        "Pilot flag service started",
        extra={"backend": backend.name, "operation": "startup"},
    )

    yield

    logger.info("Shutting down pilot flag service...")
    app.state.flag_service = None
    await store.close()
    await close_redis()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    app = FastAPI(
        title="Pilot Flag Service API",
        description="Feature flag checks with pilot whitelists",
        version="1.0.0",
        lifespan=lifespan,
        debug=settings.DEBUG,
    )
    app.state.settings = settings
    app.state.flag_service = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(api_router, prefix="/api")
    app.mount("/metrics", make_asgi_app())
    return app


app = create_app()


if __name__ == "__main__":
    _settings = get_settings()
    uvicorn.run(
        "pilot_flags.main:app",
        host=_settings.HOST,
        port=_settings.PORT,
        reload=_settings.DEBUG,
    )
