"""API router aggregation."""
from fastapi import APIRouter

from pilot_flags.api.v1 import feature_flags, health

api_router = APIRouter()

# v1 routes
v1_router = APIRouter(prefix="/v1")
v1_router.include_router(feature_flags.router, prefix="/feature-flags", tags=["feature-flags"])

api_router.include_router(v1_router)

__all__ = ["api_router", "health"]
