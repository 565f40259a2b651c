"""
Feature flag API endpoints
Flag checks for callers plus management of flags and pilot whitelists.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from pilot_flags.api.dependencies import get_flag_service
from pilot_flags.core.errors import (
    DuplicateConflictError,
    ErrorCode,
    FeatureFlagError,
    FlagNotFoundError,
    ValidationFailedError,
    build_error,
)
from pilot_flags.core.feature_flags import (
    AddWhitelistRequest,
    CheckRequest,
    CheckResult,
    CreateFlagRequest,
    FeatureFlagService,
    FlagSnapshot,
    PilotWhitelistEntry,
    UpdateFlagRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter()


class FlagCheckRequest(BaseModel):
    """Flag check request"""
    feature_name: Optional[str] = Field(None, description="Feature flag name")
    user_identifier: Optional[str] = Field(None, description="Customer number, username, ...")
    user_type: Optional[str] = Field(None, description="Customer, Employee, ...")
    app_version: Optional[str] = Field(None, description="Caller app version, e.g. 1.2.0")

    def to_domain(self) -> CheckRequest:
        return CheckRequest(
            feature_name=self.feature_name,
            user_identifier=self.user_identifier,
            user_type=self.user_type,
            app_version=self.app_version,
        )


class FlagCheckResponse(BaseModel):
    is_enabled: bool
    is_in_pilot: bool
    reason: str
    checked_at: datetime

    @classmethod
    def from_result(cls, result: CheckResult) -> "FlagCheckResponse":
        return cls(
            is_enabled=result.is_enabled,
            is_in_pilot=result.is_in_pilot,
            reason=result.reason,
            checked_at=result.checked_at,
        )


class WhitelistEntryResponse(BaseModel):
    id: int
    feature_flag_id: int
    user_identifier: str
    user_type: Optional[str] = None
    min_version: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: PilotWhitelistEntry) -> "WhitelistEntryResponse":
        return cls(
            id=entry.id,
            feature_flag_id=entry.feature_flag_id,
            user_identifier=entry.user_identifier,
            user_type=entry.user_type,
            min_version=entry.min_version,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
            created_by=entry.created_by,
        )


class FlagResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    enabled: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    pilot_whitelist: List[WhitelistEntryResponse] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: FlagSnapshot) -> "FlagResponse":
        return cls(
            id=snapshot.id,
            name=snapshot.name,
            description=snapshot.description,
            enabled=snapshot.enabled,
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
            created_by=snapshot.created_by,
            updated_by=snapshot.updated_by,
            pilot_whitelist=[WhitelistEntryResponse.from_entry(e) for e in snapshot.whitelist],
        )


class CreateFlagBody(BaseModel):
    name: str = ""
    description: Optional[str] = None
    enabled: bool = False
    created_by: Optional[str] = None


class UpdateFlagBody(BaseModel):
    description: Optional[str] = None
    enabled: bool = False
    updated_by: Optional[str] = None


class AddWhitelistBody(BaseModel):
    feature_flag_id: int
    user_identifier: str = ""
    user_type: Optional[str] = None
    min_version: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None


class CacheRefreshResponse(BaseModel):
    message: str
    flag_count: int


def _raise_http(error: FeatureFlagError) -> NoReturn:
    if isinstance(error, ValidationFailedError):
        status = 400
    elif isinstance(error, FlagNotFoundError):
        status = 404
    elif isinstance(error, DuplicateConflictError):
        status = 409
    else:
        status = 500
        logger.error(f"Flag management failed: {error}", extra={"reason": error.code.value})
    raise HTTPException(status_code=status, detail=error.to_dict())


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=404, detail=build_error(ErrorCode.NOT_FOUND, message))


# Checks

@router.post("/validation", response_model=FlagCheckResponse)
async def check_feature_flag(
    body: FlagCheckRequest,
    service: FeatureFlagService = Depends(get_flag_service),
):
    """Check whether a feature flag is active for the given user."""
    request = body.to_domain()
    if not request.has_required_fields():
        raise HTTPException(
            status_code=400,
            detail=build_error(
                ErrorCode.VALIDATION_FAILED,
                "feature_name and user_identifier are required",
            ),
        )
    result = await service.check_flag(request)
    return FlagCheckResponse.from_result(result)


@router.post("/validation/batch", response_model=List[FlagCheckResponse])
async def check_feature_flags_batch(
    body: List[FlagCheckRequest],
    service: FeatureFlagService = Depends(get_flag_service),
):
    """Check several flags; incomplete entries are denied, not rejected."""
    if not body:
        raise HTTPException(
            status_code=400,
            detail=build_error(ErrorCode.VALIDATION_FAILED, "At least one check is required"),
        )
    results = await service.check_multiple([item.to_domain() for item in body])
    return [FlagCheckResponse.from_result(r) for r in results]


# Flags

@router.get("/", response_model=List[FlagResponse])
async def list_feature_flags(service: FeatureFlagService = Depends(get_flag_service)):
    flags = await service.get_all_flags()
    return [FlagResponse.from_snapshot(f) for f in flags]


@router.get("/by-name/{name}", response_model=FlagResponse)
async def get_feature_flag_by_name(
    name: str,
    service: FeatureFlagService = Depends(get_flag_service),
):
    snapshot = await service.get_flag_by_name(name)
    if snapshot is None:
        raise _not_found(f"Feature flag '{name}' not found")
    return FlagResponse.from_snapshot(snapshot)


@router.get("/{flag_id}", response_model=FlagResponse)
async def get_feature_flag(
    flag_id: int,
    service: FeatureFlagService = Depends(get_flag_service),
):
    snapshot = await service.get_flag_by_id(flag_id)
    if snapshot is None:
        raise _not_found(f"Feature flag {flag_id} not found")
    return FlagResponse.from_snapshot(snapshot)


@router.post("/", response_model=FlagResponse, status_code=201)
async def create_feature_flag(
    body: CreateFlagBody,
    response: Response,
    service: FeatureFlagService = Depends(get_flag_service),
):
    try:
        snapshot = await service.create_flag(
            CreateFlagRequest(
                name=body.name,
                description=body.description,
                enabled=body.enabled,
                created_by=body.created_by,
            )
        )
    except FeatureFlagError as e:
        _raise_http(e)
    response.headers["Location"] = f"/api/v1/feature-flags/{snapshot.id}"
    return FlagResponse.from_snapshot(snapshot)


@router.put("/{flag_id}", response_model=FlagResponse)
async def update_feature_flag(
    flag_id: int,
    body: UpdateFlagBody,
    service: FeatureFlagService = Depends(get_flag_service),
):
    try:
        snapshot = await service.update_flag(
            flag_id,
            UpdateFlagRequest(
                enabled=body.enabled,
                description=body.description,
                updated_by=body.updated_by,
            ),
        )
    except FeatureFlagError as e:
        _raise_http(e)
    if snapshot is None:
        raise _not_found(f"Feature flag {flag_id} not found")
    return FlagResponse.from_snapshot(snapshot)


@router.delete("/{flag_id}", status_code=204)
async def delete_feature_flag(
    flag_id: int,
    service: FeatureFlagService = Depends(get_flag_service),
):
    try:
        deleted = await service.delete_flag(flag_id)
    except FeatureFlagError as e:
        _raise_http(e)
    if not deleted:
        raise _not_found(f"Feature flag {flag_id} not found")
    return Response(status_code=204)


# Pilot whitelist

@router.get("/{flag_id}/pilot-whitelist", response_model=List[WhitelistEntryResponse])
async def list_pilot_whitelist(
    flag_id: int,
    service: FeatureFlagService = Depends(get_flag_service),
):
    entries = await service.list_whitelist(flag_id)
    return [WhitelistEntryResponse.from_entry(e) for e in entries]


@router.post("/pilot-whitelist", response_model=WhitelistEntryResponse, status_code=201)
async def add_to_pilot_whitelist(
    body: AddWhitelistBody,
    service: FeatureFlagService = Depends(get_flag_service),
):
    try:
        entry = await service.add_to_whitelist(
            AddWhitelistRequest(
                feature_flag_id=body.feature_flag_id,
                user_identifier=body.user_identifier,
                user_type=body.user_type,
                min_version=body.min_version,
                expires_at=body.expires_at,
                created_by=body.created_by,
            )
        )
    except FeatureFlagError as e:
        _raise_http(e)
    return WhitelistEntryResponse.from_entry(entry)


@router.delete("/pilot-whitelist/{entry_id}", status_code=204)
async def remove_from_pilot_whitelist(
    entry_id: int,
    service: FeatureFlagService = Depends(get_flag_service),
):
    try:
        deleted = await service.remove_from_whitelist(entry_id)
    except FeatureFlagError as e:
        _raise_http(e)
    if not deleted:
        raise _not_found(f"Pilot whitelist entry {entry_id} not found")
    return Response(status_code=204)


# Cache

@router.post("/cache", response_model=CacheRefreshResponse)
async def refresh_flag_cache(service: FeatureFlagService = Depends(get_flag_service)):
    """Purge and eagerly reload cached flags for immediate consistency."""
    try:
        count = await service.refresh_cache()
    except FeatureFlagError as e:
        _raise_http(e)
    return CacheRefreshResponse(message="Cache refreshed", flag_count=count)
