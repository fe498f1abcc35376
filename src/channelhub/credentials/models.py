"""Typed, versioned credential records for every supported platform."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from channelhub.core.domain import ChannelType, utcnow
from channelhub.core.errors import CredentialError

CURRENT_SCHEMA_VERSION = "2"
LEGACY_SCHEMA_VERSION = "1.0"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    INVALID = "invalid"


_ALLOWED_STATUS_MOVES: dict[CredentialStatus, frozenset[CredentialStatus]] = {
    CredentialStatus.ACTIVE: frozenset({CredentialStatus.EXPIRED, CredentialStatus.INVALID}),
    CredentialStatus.EXPIRED: frozenset({CredentialStatus.INVALID}),
    CredentialStatus.INVALID: frozenset(),
}


class _CredentialBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )

    version: str = CURRENT_SCHEMA_VERSION
    saved_at: datetime = Field(default_factory=utcnow)
    status: CredentialStatus = CredentialStatus.ACTIVE
    expires_at: datetime | None = None

    @field_validator("saved_at", "expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class MetaCredentials(_CredentialBase):
    """Page-scoped token shared by Instagram and Facebook Messenger channels."""

    platform: Literal["meta"] = "meta"
    page_access_token: str
    page_id: str
    app_id: str | None = None
    permissions: list[str] = Field(default_factory=list)
    refresh_token: str | None = None


class WhatsAppCredentials(_CredentialBase):
    platform: Literal["whatsapp"] = "whatsapp"
    access_token: str
    phone_number_id: str
    business_account_id: str
    webhook_verify_token: str | None = None
    refresh_token: str | None = None


class TikTokCredentials(_CredentialBase):
    platform: Literal["tiktok"] = "tiktok"
    access_token: str
    refresh_token: str | None = None
    scope: list[str] = Field(default_factory=list)
    app_id: str | None = None


class MockCredentials(_CredentialBase):
    """Development-only credentials; always validate."""

    platform: Literal["mock"] = "mock"
    mock_token: str = "mock-token"
    mock_config: dict[str, Any] = Field(default_factory=dict)


ChannelCredentials = Annotated[
    Union[MetaCredentials, WhatsAppCredentials, TikTokCredentials, MockCredentials],
    Field(discriminator="platform"),
]

_CREDENTIALS_ADAPTER: TypeAdapter[ChannelCredentials] = TypeAdapter(ChannelCredentials)

_PLATFORM_BY_CHANNEL: dict[ChannelType, str] = {
    ChannelType.INSTAGRAM: "meta",
    ChannelType.FACEBOOK: "meta",
    ChannelType.WHATSAPP: "whatsapp",
    ChannelType.TIKTOK: "tiktok",
    ChannelType.MOCK: "mock",
}

# Legacy and operator-facing field names mapped to the current aliases.
_FIELD_RENAMES: dict[str, dict[str, str]] = {
    "meta": {"accessToken": "pageAccessToken"},
    "whatsapp": {
        "phoneId": "phoneNumberId",
        "businessId": "businessAccountId",
        "verifyToken": "webhookVerifyToken",
    },
    "tiktok": {},
    "mock": {},
}


def platform_for(channel_type: ChannelType | str) -> str:
    return _PLATFORM_BY_CHANNEL[ChannelType.parse(channel_type)]


def _rename_fields(data: dict[str, Any], platform: str) -> dict[str, Any]:
    renamed = dict(data)
    for old, new in _FIELD_RENAMES[platform].items():
        if old in renamed:
            value = renamed.pop(old)
            renamed.setdefault(new, value)
    return renamed


def migrate_credentials(
    data: dict[str, Any], channel_type: ChannelType | str | None = None
) -> dict[str, Any]:
    """Upgrade a stored credential blob to the current schema version."""

    version = str(data.get("version") or LEGACY_SCHEMA_VERSION)
    if version == CURRENT_SCHEMA_VERSION:
        return data
    if version != LEGACY_SCHEMA_VERSION:
        raise CredentialError(
            "unsupported credential schema version", details={"version": version}
        )

    platform = data.get("platform")
    if not platform:
        if channel_type is None:
            raise CredentialError("cannot migrate credentials without a channel type")
        platform = platform_for(channel_type)
    upgraded = _rename_fields(data, platform)
    upgraded["platform"] = platform
    upgraded["version"] = CURRENT_SCHEMA_VERSION
    if isinstance(upgraded.get("scope"), str):
        upgraded["scope"] = [item for item in upgraded["scope"].split(",") if item]
    return upgraded


def parse_credentials(
    data: dict[str, Any], channel_type: ChannelType | str | None = None
) -> ChannelCredentials:
    """Validate (and if necessary migrate) a stored credential blob."""

    if not isinstance(data, dict):
        raise CredentialError("credential payload must be an object")
    if data.get("version") != CURRENT_SCHEMA_VERSION:
        data = migrate_credentials(data, channel_type)
    elif "platform" not in data and channel_type is not None:
        data = {**data, "platform": platform_for(channel_type)}
    try:
        return _CREDENTIALS_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise CredentialError(
            "credential payload failed validation",
            details={"errors": [error["msg"] for error in exc.errors()]},
        ) from exc


def dump_credentials(credentials: ChannelCredentials) -> dict[str, Any]:
    """JSON-ready representation using the camelCase storage aliases."""

    return credentials.model_dump(mode="json", by_alias=True, exclude_none=True)


def _split_scope(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def create_channel_credentials(
    channel_type: ChannelType | str, config: dict[str, Any]
) -> ChannelCredentials:
    """Build the credential variant for a channel from operator configuration."""

    channel_type = ChannelType.parse(channel_type)
    platform = platform_for(channel_type)
    data = _rename_fields({k: v for k, v in config.items() if v not in (None, "")}, platform)

    if platform == "tiktok":
        data["scope"] = _split_scope(data.get("scope"))
    if platform == "meta" and "permissions" in data:
        data["permissions"] = _split_scope(data["permissions"])
    if platform == "mock":
        data = {
            "mockToken": data.get("mockToken", "mock-token"),
            "mockConfig": dict(config),
            "expiresAt": data.get("expiresAt"),
        }

    data.update(platform=platform, version=CURRENT_SCHEMA_VERSION, savedAt=utcnow())
    data.pop("status", None)
    return parse_credentials(data)


def get_access_token(credentials: ChannelCredentials) -> str:
    if isinstance(credentials, MetaCredentials):
        return credentials.page_access_token
    if isinstance(credentials, MockCredentials):
        return credentials.mock_token
    return credentials.access_token


def get_refresh_token(credentials: ChannelCredentials) -> str | None:
    return getattr(credentials, "refresh_token", None)


def are_credentials_expired(
    credentials: ChannelCredentials, now: datetime | None = None
) -> bool:
    if credentials.expires_at is None:
        return False
    return (now or utcnow()) >= credentials.expires_at


def with_status(
    credentials: ChannelCredentials, status: CredentialStatus
) -> ChannelCredentials:
    """Return a copy in ``status``; reverse moves must go through a refresh."""

    if status is credentials.status:
        return credentials
    if status not in _ALLOWED_STATUS_MOVES[credentials.status]:
        raise CredentialError(
            "illegal credential status transition",
            details={"from": credentials.status.value, "to": status.value},
        )
    return credentials.model_copy(update={"status": status})


def with_refreshed_token(
    credentials: ChannelCredentials,
    access_token: str,
    *,
    expires_at: datetime | None,
    refresh_token: str | None = None,
) -> ChannelCredentials:
    """Apply a successful refresh; the only path from expired back to active."""

    if credentials.status is CredentialStatus.INVALID:
        raise CredentialError("invalid credentials require manual re-authentication")

    token_field = {
        MetaCredentials: "page_access_token",
        MockCredentials: "mock_token",
    }.get(type(credentials), "access_token")

    update: dict[str, Any] = {
        token_field: access_token,
        "expires_at": expires_at,
        "status": CredentialStatus.ACTIVE,
        "saved_at": utcnow(),
    }
    if refresh_token and "refresh_token" in type(credentials).model_fields:
        update["refresh_token"] = refresh_token
    return credentials.model_copy(update=update)


def expires_in(seconds: int | float | None, *, default: int) -> datetime:
    """Absolute expiry from a provider's relative ``expires_in``."""

    try:
        value = int(seconds) if seconds is not None else default
    except (TypeError, ValueError):
        value = default
    return utcnow() + timedelta(seconds=value)
