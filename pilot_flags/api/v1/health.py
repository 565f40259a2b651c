"""Health endpoint: service status plus cache backend connectivity."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel

from pilot_flags.core.feature_flags.cache import ALL_FLAGS_KEY
from pilot_flags.utils.cache import redis_healthy

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: datetime
    cache_backend: str
    redis_connected: bool
    flags_cached: bool


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    settings = request.app.state.settings
    service = getattr(request.app.state, "flag_service", None)
    backend = service.cache.backend.name if service is not None else "none"
    # Whether the flag listing is currently warm in the cache
    flags_cached = await service.cache.exists(ALL_FLAGS_KEY) if service is not None else False
    return HealthResponse(
        status="healthy" if service is not None else "starting",
        service=settings.APP_NAME,
        timestamp=datetime.now(timezone.utc),
        cache_backend=backend,
        redis_connected=await redis_healthy(),
        flags_cached=flags_cached,
    )
