"""Pre-save credential validation used by the channel setup flow."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from channelhub.core.domain import ChannelType, utcnow
from channelhub.core.errors import CoreError

from .access import MANAGER_ROLES, AccessPolicy
from .models import (
    ChannelCredentials,
    MetaCredentials,
    TikTokCredentials,
    WhatsAppCredentials,
    are_credentials_expired,
    create_channel_credentials,
    get_access_token,
)
from .repository import require_channel
from .store import CredentialStore

if TYPE_CHECKING:
    from channelhub.adapters.registry import AdapterRegistry

logger = logging.getLogger(__name__)

EXPIRY_WARNING_DAYS = 7

REQUIRED_FIELDS: dict[ChannelType, tuple[str, ...]] = {
    ChannelType.INSTAGRAM: ("pageId", "accessToken"),
    ChannelType.FACEBOOK: ("pageId", "accessToken"),
    ChannelType.WHATSAPP: ("phoneId", "accessToken", "businessId"),
    ChannelType.TIKTOK: ("appId", "appSecret", "accessToken"),
    ChannelType.MOCK: (),
}

_META_ID = re.compile(r"^\d{15,16}$")
_TIKTOK_APP_ID = re.compile(r"^\d+$")

# (field, pattern, message) format checks applied after the presence check
_FORMAT_CHECKS: dict[ChannelType, tuple[tuple[str, re.Pattern[str], str], ...]] = {
    ChannelType.INSTAGRAM: (("pageId", _META_ID, "Facebook Page id is not valid"),),
    ChannelType.FACEBOOK: (("pageId", _META_ID, "Facebook Page id is not valid"),),
    ChannelType.WHATSAPP: (("phoneId", _META_ID, "WhatsApp phone number id is not valid"),),
    ChannelType.TIKTOK: (("appId", _TIKTOK_APP_ID, "TikTok app id is not valid"),),
    ChannelType.MOCK: (),
}

RECOMMENDATIONS: dict[ChannelType, tuple[str, ...]] = {
    ChannelType.INSTAGRAM: (
        "Subscribe the page to webhooks to receive messages in real time",
        "Check that the page has messaging permissions",
    ),
    ChannelType.FACEBOOK: (
        "Subscribe the page to webhooks to receive messages in real time",
        "Check that the page has messaging permissions",
    ),
    ChannelType.WHATSAPP: (
        "Configure the WhatsApp Business API webhook",
        "Check that the phone number is verified",
        "Set up message templates if you need to start conversations",
    ),
    ChannelType.TIKTOK: (
        "Check the scopes granted to the TikTok application",
        "Configure TikTok for Business webhooks",
    ),
    ChannelType.MOCK: ("This is a test channel; do not use it in production",),
}


@dataclass(slots=True)
class CredentialCheck:
    """Outcome of validating operator-supplied credentials."""

    valid: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    credentials: ChannelCredentials | None = None
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    saved: bool = False

    @classmethod
    def rejected(cls, error: str, **details: Any) -> CredentialCheck:
        return cls(valid=False, error=error, details=dict(details))


def check_basic_config(channel_type: ChannelType, config: Mapping[str, Any]) -> str | None:
    """Return an error message when required fields are absent or malformed."""

    for name in REQUIRED_FIELDS[channel_type]:
        value = config.get(name)
        if value is None or not str(value).strip():
            return f"missing required field: {name}"
    for name, pattern, message in _FORMAT_CHECKS[channel_type]:
        if not pattern.match(str(config.get(name, "")).strip()):
            return message
    return None


def expiry_warnings(
    credentials: ChannelCredentials, now: datetime
) -> tuple[list[str], list[str]]:
    warnings: list[str] = []
    recommendations: list[str] = []
    if credentials.expires_at is None:
        if isinstance(credentials, MetaCredentials):
            recommendations.append("Consider using a long-lived page token")
        return warnings, recommendations
    if are_credentials_expired(credentials, now):
        warnings.append("The credentials have already expired")
        return warnings, recommendations
    days = math.ceil((credentials.expires_at - now).total_seconds() / 86400)
    if days <= EXPIRY_WARNING_DAYS:
        warnings.append(f"The credentials expire in {days} days")
        recommendations.append("Enable automatic token refresh for this channel")
    return warnings, recommendations


def config_from_credentials(
    credentials: ChannelCredentials, *, tiktok_app_secret: str | None = None
) -> dict[str, Any]:
    """Rebuild the operator-facing config shape from stored credentials."""

    if isinstance(credentials, MetaCredentials):
        return {"pageId": credentials.page_id, "accessToken": credentials.page_access_token}
    if isinstance(credentials, WhatsAppCredentials):
        return {
            "phoneId": credentials.phone_number_id,
            "accessToken": credentials.access_token,
            "businessId": credentials.business_account_id,
        }
    if isinstance(credentials, TikTokCredentials):
        return {
            "appId": credentials.app_id,
            "appSecret": tiktok_app_secret,
            "accessToken": credentials.access_token,
        }
    return {}


class CredentialValidator:
    """Validates credentials against the provider before they are stored."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        store: CredentialStore,
        access_policy: AccessPolicy,
        *,
        tiktok_app_secret: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._adapters = adapters
        self._store = store
        self._access = access_policy
        self._tiktok_app_secret = tiktok_app_secret
        self._clock = clock

    async def validate(
        self,
        channel_type: ChannelType | str,
        config: Mapping[str, Any],
        *,
        tenant_id: str,
        user_id: str,
        channel_id: str | None = None,
        auto_save: bool = False,
        fields_to_encrypt: Iterable[str] | None = None,
    ) -> CredentialCheck:
        await self._access.require_role(user_id, tenant_id, MANAGER_ROLES)
        try:
            channel_type = ChannelType.parse(channel_type)
        except ValueError:
            return CredentialCheck.rejected(
                "unsupported channel type", channel_type=str(channel_type)
            )

        basic_error = check_basic_config(channel_type, config)
        if basic_error is not None:
            return CredentialCheck.rejected(basic_error, type=channel_type.value)

        adapter = self._adapters.get(channel_type)
        result = await adapter.validate_credentials(config)
        if not result.valid:
            logger.info(
                "credential validation rejected by provider",
                extra={"tenant_id": tenant_id, "channel_type": channel_type.value},
            )
            return CredentialCheck(
                valid=False,
                error=result.error or "credentials were rejected",
                details=dict(result.details),
            )

        try:
            credentials = create_channel_credentials(channel_type, dict(config))
        except CoreError as exc:
            return CredentialCheck.rejected(exc.message, **exc.details)

        access_token = get_access_token(credentials)
        if not access_token:
            return CredentialCheck.rejected("no access token could be read from the credentials")

        warnings, recommendations = expiry_warnings(credentials, self._clock())
        recommendations.extend(RECOMMENDATIONS[channel_type])

        check = CredentialCheck(
            valid=True,
            details={
                **dict(result.details),
                "type": channel_type.value,
                "has_expiration": credentials.expires_at is not None,
                "expires_at": (
                    credentials.expires_at.isoformat() if credentials.expires_at else None
                ),
                "token_length": len(access_token),
            },
            credentials=credentials,
            warnings=warnings,
            recommendations=recommendations,
        )

        if auto_save and channel_id:
            try:
                await self._store.save(
                    channel_id,
                    credentials,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    fields_to_encrypt=fields_to_encrypt,
                )
            except CoreError as exc:
                check.warnings.append(f"valid credentials could not be saved: {exc.message}")
            else:
                check.saved = True
        return check

    async def revalidate(
        self, channel_id: str, *, tenant_id: str, user_id: str
    ) -> CredentialCheck:
        """Re-run provider validation for credentials already on a channel."""

        decrypted = await self._store.get_decrypted(
            channel_id, tenant_id=tenant_id, user_id=user_id
        )
        record = await require_channel(self._store.repository, channel_id)
        config = config_from_credentials(
            decrypted.credentials, tiktok_app_secret=self._tiktok_app_secret
        )
        return await self.validate(
            record.type, config, tenant_id=tenant_id, user_id=user_id, channel_id=channel_id
        )
