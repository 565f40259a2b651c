"""API dependencies."""

from fastapi import HTTPException, Request

from pilot_flags.core.errors import ErrorCode, build_error
from pilot_flags.core.feature_flags import FeatureFlagService


def get_flag_service(request: Request) -> FeatureFlagService:
    """Service wired by the application lifespan."""
    service = getattr(request.app.state, "flag_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail=build_error(ErrorCode.STORE_ERROR, "Feature flag service not ready"),
        )
    return service
