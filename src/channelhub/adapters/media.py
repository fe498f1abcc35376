"""Resolution of short-lived provider media references into fetchable URLs."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any, Protocol

import httpx

from channelhub.core.domain import Attachment, ChannelType
from channelhub.credentials.models import ChannelCredentials, get_access_token

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300.0


class CredentialSource(Protocol):
    """Anything able to hand out decrypted credentials for a channel."""

    async def get_decrypted(self, channel_id: str) -> Any:
        ...


class MediaMapper:
    """Turns WhatsApp/Meta media ids into URLs; TikTok media passes through."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        graph_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 10.0,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._graph_url = graph_url.rstrip("/")
        self._timeout = timeout
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, Attachment]] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    def clean_expired_cache(self) -> int:
        """Drop entries older than the TTL; returns how many were removed."""

        cutoff = self._clock() - self._ttl
        expired = [key for key, (stored_at, _) in self._cache.items() if stored_at <= cutoff]
        for key in expired:
            del self._cache[key]
        return len(expired)

    async def map_attachments(
        self,
        attachments: Sequence[Attachment],
        channel_type: ChannelType,
        credentials: ChannelCredentials,
    ) -> list[Attachment]:
        self.clean_expired_cache()
        return list(
            await asyncio.gather(
                *(self.map_attachment(item, channel_type, credentials) for item in attachments)
            )
        )

    async def map_attachment(
        self,
        attachment: Attachment,
        channel_type: ChannelType,
        credentials: ChannelCredentials,
    ) -> Attachment:
        if not attachment.url or attachment.url.startswith("http"):
            return attachment
        if channel_type is ChannelType.TIKTOK or channel_type is ChannelType.MOCK:
            return attachment

        cached = self._cache.get(attachment.url)
        if cached is not None and self._clock() - cached[0] >= self._ttl:
            del self._cache[attachment.url]
            cached = None
        if cached is not None:
            hit = cached[1]
            return replace(
                attachment,
                url=hit.url,
                mime_type=hit.mime_type or attachment.mime_type,
                filename=hit.filename or attachment.filename,
            )

        try:
            resolved = await self._fetch_graph_media(attachment, get_access_token(credentials))
        except httpx.HTTPError as exc:
            logger.error(
                "media url lookup failed",
                extra={
                    "platform": channel_type.value,
                    "media_id": attachment.url,
                    "error": str(exc),
                },
            )
            return attachment

        if resolved is not attachment:
            self._cache[attachment.url] = (self._clock(), resolved)
        return resolved

    async def _fetch_graph_media(self, attachment: Attachment, access_token: str) -> Attachment:
        if not access_token:
            return attachment
        response = await self._client.get(
            f"{self._graph_url}/{attachment.url}",
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self._timeout,
        )
        if response.is_error:
            logger.error(
                "media url lookup rejected",
                extra={"media_id": attachment.url, "status_code": response.status_code},
            )
            return attachment
        try:
            data = response.json()
        except ValueError:
            return attachment
        if not isinstance(data, dict):
            return attachment
        return replace(
            attachment,
            url=data.get("url") or attachment.url,
            mime_type=data.get("mime_type") or attachment.mime_type,
            filename=data.get("filename") or attachment.filename,
        )
