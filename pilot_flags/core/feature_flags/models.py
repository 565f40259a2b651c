"""Feature flag data shapes.

Ownership is one-directional: a flag holds its whitelist entries by value,
and an entry points back at its flag only through ``feature_flag_id``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pilot_flags.core.errors import ValidationFailedError

# Column limits of the persisted schema
MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_AUDIT_USER_LENGTH = 50
MAX_USER_IDENTIFIER_LENGTH = 100
MAX_USER_TYPE_LENGTH = 50
MAX_MIN_VERSION_LENGTH = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _check_length(field_name: str, value: Optional[str], limit: int) -> None:
    if value is not None and len(value) > limit:
        raise ValidationFailedError(
            f"{field_name} must be at most {limit} characters",
            field=field_name,
        )


@dataclass
class PilotWhitelistEntry:
    """Per-user exception granting access to a pilot flag."""

    feature_flag_id: int
    user_identifier: str
    user_type: Optional[str] = None
    min_version: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None
    id: Optional[int] = None

    def is_expired(self, now: datetime) -> bool:
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at <= now

    def matches(self, user_identifier: str, user_type: Optional[str], now: datetime) -> bool:
        """Identifier equal, type unset or equal, and not yet expired."""
        if self.user_identifier != user_identifier:
            return False
        if self.user_type and self.user_type != user_type:
            return False
        return not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "feature_flag_id": self.feature_flag_id,
            "user_identifier": self.user_identifier,
            "user_type": self.user_type,
            "min_version": self.min_version,
            "expires_at": _dt_to_str(self.expires_at),
            "created_at": _dt_to_str(self.created_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PilotWhitelistEntry":
        return cls(
            id=data.get("id"),
            feature_flag_id=data["feature_flag_id"],
            user_identifier=data["user_identifier"],
            user_type=data.get("user_type"),
            min_version=data.get("min_version"),
            expires_at=_dt_from_str(data.get("expires_at")),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            created_by=data.get("created_by"),
        )


@dataclass
class FeatureFlag:
    """Store entity: a named toggle plus its pilot whitelist."""

    name: str
    enabled: bool = False
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    whitelist: List[PilotWhitelistEntry] = field(default_factory=list)
    id: Optional[int] = None


@dataclass(frozen=True)
class FlagSnapshot:
    """Immutable cached projection of a flag and its whitelist.

    Replaced wholesale on invalidation, never patched in place.
    """

    id: int
    name: str
    enabled: bool
    description: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    created_by: Optional[str]
    updated_by: Optional[str]
    whitelist: Tuple[PilotWhitelistEntry, ...] = ()

    @classmethod
    def from_flag(cls, flag: FeatureFlag) -> "FlagSnapshot":
        return cls(
            id=flag.id,
            name=flag.name,
            enabled=flag.enabled,
            description=flag.description,
            created_at=flag.created_at,
            updated_at=flag.updated_at,
            created_by=flag.created_by,
            updated_by=flag.updated_by,
            whitelist=tuple(flag.whitelist),
        )

    def find_pilot_entry(
        self,
        user_identifier: str,
        user_type: Optional[str],
        now: datetime,
    ) -> Optional[PilotWhitelistEntry]:
        """First whitelist entry that admits the user, if any."""
        for entry in self.whitelist:
            if entry.matches(user_identifier, user_type, now):
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "description": self.description,
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "whitelist": [entry.to_dict() for entry in self.whitelist],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagSnapshot":
        return cls(
            id=data["id"],
            name=data["name"],
            enabled=bool(data.get("enabled", False)),
            description=data.get("description"),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
            whitelist=tuple(
                PilotWhitelistEntry.from_dict(e) for e in data.get("whitelist", [])
            ),
        )


@dataclass
class CheckRequest:
    feature_name: Optional[str]
    user_identifier: Optional[str]
    user_type: Optional[str] = None
    app_version: Optional[str] = None

    def has_required_fields(self) -> bool:
        return bool(self.feature_name) and bool(self.user_identifier)


@dataclass
class CheckResult:
    is_enabled: bool
    is_in_pilot: bool
    reason: str
    checked_at: datetime = field(default_factory=utcnow)

    @classmethod
    def deny(cls, reason: str) -> "CheckResult":
        return cls(is_enabled=False, is_in_pilot=False, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_enabled": self.is_enabled,
            "is_in_pilot": self.is_in_pilot,
            "reason": self.reason,
            "checked_at": _dt_to_str(self.checked_at),
        }


@dataclass
class CreateFlagRequest:
    name: str
    enabled: bool = False
    description: Optional[str] = None
    created_by: Optional[str] = None

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationFailedError("name is required", field="name")
        _check_length("name", self.name, MAX_NAME_LENGTH)
        _check_length("description", self.description, MAX_DESCRIPTION_LENGTH)
        _check_length("created_by", self.created_by, MAX_AUDIT_USER_LENGTH)


@dataclass
class UpdateFlagRequest:
    """Only description, enabled and audit fields are mutable."""

    enabled: bool
    description: Optional[str] = None
    updated_by: Optional[str] = None

    def validate(self) -> None:
        _check_length("description", self.description, MAX_DESCRIPTION_LENGTH)
        _check_length("updated_by", self.updated_by, MAX_AUDIT_USER_LENGTH)


@dataclass
class AddWhitelistRequest:
    feature_flag_id: int
    user_identifier: str
    user_type: Optional[str] = None
    min_version: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None

    def validate(self) -> None:
        if not self.user_identifier or not self.user_identifier.strip():
            raise ValidationFailedError(
                "user_identifier is required", field="user_identifier"
            )
        _check_length("user_identifier", self.user_identifier, MAX_USER_IDENTIFIER_LENGTH)
        _check_length("user_type", self.user_type, MAX_USER_TYPE_LENGTH)
        _check_length("min_version", self.min_version, MAX_MIN_VERSION_LENGTH)
        _check_length("created_by", self.created_by, MAX_AUDIT_USER_LENGTH)

    def to_entry(self) -> PilotWhitelistEntry:
        return PilotWhitelistEntry(
            feature_flag_id=self.feature_flag_id,
            user_identifier=self.user_identifier,
            user_type=self.user_type,
            min_version=self.min_version,
            expires_at=as_utc(self.expires_at),
            created_by=self.created_by,
        )
