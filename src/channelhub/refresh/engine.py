"""Token refresh: provider calls, expiry scanning and per-channel orchestration."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

import httpx

from channelhub.adapters.errors import (
    AdapterError,
    ErrorType,
    adapter_error,
    classify,
    classify_meta_error,
    classify_status,
    is_credential_failure,
)
from channelhub.core.config import MetaSettings, RefreshSettings, TikTokSettings
from channelhub.core.domain import ChannelStatus, utcnow
from channelhub.core.errors import ConcurrentUpdateError, CoreError
from channelhub.credentials.models import (
    ChannelCredentials,
    CredentialStatus,
    MetaCredentials,
    MockCredentials,
    TikTokCredentials,
    WhatsAppCredentials,
    expires_in,
    get_refresh_token,
    with_refreshed_token,
)
from channelhub.credentials.store import CredentialStore

from .models import (
    BatchRefreshReport,
    ChannelRefreshOutcome,
    RefreshResult,
    RefreshStatus,
    TokenExpirationInfo,
)

logger = logging.getLogger(__name__)

META_DEFAULT_EXPIRES_IN = 5_184_000
TIKTOK_DEFAULT_EXPIRES_IN = 86_400
MOCK_TOKEN_LIFETIME = timedelta(hours=24)
MANUAL_REAUTH_MESSAGE = "channel has no refresh token; manual re-authentication required"


def needs_refresh(
    credentials: ChannelCredentials,
    threshold_minutes: int = 30,
    now: datetime | None = None,
) -> bool:
    """True when the token expires within ``threshold_minutes``."""

    if credentials.expires_at is None:
        return False
    return credentials.expires_at <= (now or utcnow()) + timedelta(minutes=threshold_minutes)


def minutes_until_expiration(
    credentials: ChannelCredentials, now: datetime | None = None
) -> int | None:
    if credentials.expires_at is None:
        return None
    remaining = (credentials.expires_at - (now or utcnow())).total_seconds()
    return max(0, int(remaining // 60))


def has_refresh_token(credentials: ChannelCredentials) -> bool:
    # mock tokens are minted locally and can always be renewed
    if isinstance(credentials, MockCredentials):
        return True
    return bool(get_refresh_token(credentials))


class TokenRefresher:
    """Calls each provider's token endpoint; failures come back as data."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        meta: MetaSettings,
        tiktok: TikTokSettings,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._meta = meta
        self._tiktok = tiktok
        self._timeout = timeout

    async def refresh(self, credentials: ChannelCredentials) -> RefreshResult:
        if isinstance(credentials, MockCredentials):
            return RefreshResult(
                success=True,
                access_token=f"mock-token-{int(utcnow().timestamp())}",
                expires_at=utcnow() + MOCK_TOKEN_LIFETIME,
            )
        refresh_token = get_refresh_token(credentials)
        if not refresh_token:
            return RefreshResult.failed(
                adapter_error(ErrorType.INVALID_CREDENTIALS, MANUAL_REAUTH_MESSAGE)
            )
        try:
            if isinstance(credentials, (MetaCredentials, WhatsAppCredentials)):
                platform = "Meta" if isinstance(credentials, MetaCredentials) else "WhatsApp"
                return await self._exchange_meta_token(refresh_token, platform)
            if isinstance(credentials, TikTokCredentials):
                return await self._refresh_tiktok_token(refresh_token)
        except httpx.HTTPError as exc:
            return RefreshResult.failed(classify(exc, type(credentials).__name__, "refreshToken"))
        return RefreshResult.failed(
            adapter_error(ErrorType.VALIDATION, "credential type does not support refresh")
        )

    async def _exchange_meta_token(self, token: str, platform: str) -> RefreshResult:
        if not self._meta.app_id or not self._meta.app_secret:
            return RefreshResult.failed(
                adapter_error(
                    ErrorType.VALIDATION,
                    "META_APP_ID and META_APP_SECRET must be set to refresh Meta tokens",
                    details={"platform": platform},
                )
            )
        logger.info("exchanging meta token", extra={"platform": platform})
        response = await self._client.get(
            self._meta.oauth_url,
            params={
                "client_id": self._meta.app_id,
                "client_secret": self._meta.app_secret,
                "grant_type": "fb_exchange_token",
                "fb_exchange_token": token,
            },
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )
        data = _json(response)
        if response.is_error or "error" in data:
            return RefreshResult.failed(
                classify_meta_error(
                    data,
                    platform,
                    "refreshToken",
                    status_code=response.status_code if response.is_error else None,
                )
            )
        return _token_result(data, token, META_DEFAULT_EXPIRES_IN, platform)

    async def _refresh_tiktok_token(self, token: str) -> RefreshResult:
        if not self._tiktok.client_key or not self._tiktok.client_secret:
            return RefreshResult.failed(
                adapter_error(
                    ErrorType.VALIDATION,
                    "TIKTOK_CLIENT_KEY and TIKTOK_CLIENT_SECRET must be set to refresh tokens",
                    details={"platform": "TikTok"},
                )
            )
        response = await self._client.post(
            self._tiktok.refresh_url,
            data={
                "client_key": self._tiktok.client_key,
                "client_secret": self._tiktok.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": token,
            },
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )
        body = _json(response)
        if response.is_error:
            return RefreshResult.failed(
                classify_status(response.status_code, "TikTok", "refreshToken", body=body)
            )
        data = body.get("data") if isinstance(body.get("data"), Mapping) else body
        error_code = data.get("error_code")
        if body.get("error") or error_code not in (None, 0):
            return RefreshResult.failed(
                adapter_error(
                    ErrorType.AUTHENTICATION,
                    "TikTok rejected the refresh token",
                    details={
                        "platform": "TikTok",
                        "context": "refreshToken",
                        "code": error_code,
                        "provider_message": data.get("description") or body.get("message"),
                    },
                )
            )
        return _token_result(data, token, TIKTOK_DEFAULT_EXPIRES_IN, "TikTok")


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _token_result(
    data: Mapping[str, Any], previous_refresh: str, default_expires_in: int, platform: str
) -> RefreshResult:
    access_token = data.get("access_token")
    if not access_token:
        return RefreshResult.failed(
            adapter_error(
                ErrorType.API,
                f"{platform} token response carried no access token",
                details={"platform": platform, "context": "refreshToken"},
            )
        )
    return RefreshResult(
        success=True,
        access_token=str(access_token),
        refresh_token=str(data.get("refresh_token") or previous_refresh),
        expires_at=expires_in(data.get("expires_in"), default=default_expires_in),
        details={"token_type": data.get("token_type"), "scope": data.get("scope")},
    )


class RefreshService:
    """Scans tenants for expiring tokens and renews them through the store."""

    def __init__(
        self,
        store: CredentialStore,
        refresher: TokenRefresher,
        settings: RefreshSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._settings = settings
        self._clock = clock
        self._sleep = sleep

    async def channels_needing_refresh(
        self, tenant_id: str, threshold_minutes: int | None = None
    ) -> list[TokenExpirationInfo]:
        """Expiring channels of a tenant, most urgent first."""

        threshold = (
            self._settings.refresh_before_minutes
            if threshold_minutes is None
            else threshold_minutes
        )
        now = self._clock()
        found: list[TokenExpirationInfo] = []
        for record in await self._store.repository.list_by_tenant(tenant_id):
            if record.status is ChannelStatus.INACTIVE or record.credentials is None:
                continue
            try:
                credentials = self._store.open(record)
            except CoreError as exc:
                logger.warning(
                    "skipping channel with unreadable credentials",
                    extra={"channel_id": record.id, "error": exc.message},
                )
                continue
            if not needs_refresh(credentials, threshold, now):
                continue
            found.append(
                TokenExpirationInfo(
                    channel_id=record.id,
                    channel_type=record.type.value,
                    display_name=record.display_name,
                    expires_at=credentials.expires_at,
                    minutes_until_expiration=minutes_until_expiration(credentials, now) or 0,
                    has_refresh_token=has_refresh_token(credentials),
                )
            )
        found.sort(key=lambda info: info.minutes_until_expiration)
        logger.info(
            "channels needing refresh",
            extra={"tenant_id": tenant_id, "count": len(found), "threshold": threshold},
        )
        return found

    async def refresh_channel(self, channel_id: str) -> ChannelRefreshOutcome:
        try:
            decrypted = await self._store.get_decrypted(channel_id)
        except CoreError as exc:
            return self._failed(channel_id, exc.message, retryable=False)

        credentials = decrypted.credentials
        if credentials.status is CredentialStatus.INVALID:
            return self._skipped(channel_id, "credentials are invalid; reconfigure the channel")
        if not has_refresh_token(credentials):
            return self._skipped(channel_id, MANUAL_REAUTH_MESSAGE)

        result = await self._refresher.refresh(credentials)
        if not result.success:
            return await self._handle_failure(channel_id, result.error)

        try:
            await self._store.update_credentials(
                channel_id,
                lambda current: with_refreshed_token(
                    current,
                    result.access_token or "",
                    expires_at=result.expires_at,
                    refresh_token=result.refresh_token,
                ),
                channel_status=ChannelStatus.ACTIVE,
                config_changes={"lastRefreshAt": self._clock().isoformat(), "lastError": None},
            )
        except ConcurrentUpdateError as exc:
            return self._failed(channel_id, exc.message, retryable=True)
        except CoreError as exc:
            return self._failed(channel_id, exc.message, retryable=False)

        logger.info(
            "channel token refreshed",
            extra={
                "channel_id": channel_id,
                "expires_at": result.expires_at.isoformat() if result.expires_at else None,
            },
        )
        return ChannelRefreshOutcome(
            channel_id=channel_id, status=RefreshStatus.SUCCESS, expires_at=result.expires_at
        )

    async def _handle_failure(
        self, channel_id: str, error: AdapterError | None
    ) -> ChannelRefreshOutcome:
        error = error or adapter_error(ErrorType.UNKNOWN, "refresh failed")
        if is_credential_failure(error):
            try:
                await self._store.mark_invalid(channel_id, error.message)
            except CoreError as exc:
                logger.error(
                    "could not invalidate channel credentials",
                    extra={"channel_id": channel_id, "error": exc.message},
                )
        return self._failed(channel_id, error.message, retryable=error.retryable)

    @staticmethod
    def _failed(channel_id: str, message: str, *, retryable: bool) -> ChannelRefreshOutcome:
        logger.error(
            "channel token refresh failed",
            extra={"channel_id": channel_id, "error": message, "retryable": retryable},
        )
        return ChannelRefreshOutcome(
            channel_id=channel_id,
            status=RefreshStatus.FAILED,
            error=message,
            retryable=retryable,
        )

    @staticmethod
    def _skipped(channel_id: str, reason: str) -> ChannelRefreshOutcome:
        logger.warning(
            "channel token refresh skipped", extra={"channel_id": channel_id, "reason": reason}
        )
        return ChannelRefreshOutcome(
            channel_id=channel_id, status=RefreshStatus.SKIPPED, error=reason
        )

    async def refresh_batch(
        self, tenant_id: str, channel_ids: Iterable[str] | None = None
    ) -> BatchRefreshReport:
        """Refresh channels one at a time, pausing between provider calls."""

        if channel_ids is None:
            infos = await self.channels_needing_refresh(tenant_id)
            targets = [info.channel_id for info in infos]
        else:
            targets = list(channel_ids)

        report = BatchRefreshReport()
        for index, channel_id in enumerate(targets):
            if index and self._settings.batch_pause_seconds:
                await self._sleep(self._settings.batch_pause_seconds)
            report.record(await self.refresh_channel(channel_id))

        logger.info(
            "batch refresh finished",
            extra={
                "tenant_id": tenant_id,
                "processed": report.processed,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "skipped": report.skipped,
            },
        )
        return report
