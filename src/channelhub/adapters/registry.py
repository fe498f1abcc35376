"""Lookup of channel adapters by channel type."""

from __future__ import annotations

from collections.abc import Callable, Mapping

import httpx

from channelhub.core.config import AppSettings
from channelhub.core.domain import ChannelType
from channelhub.gateway.exceptions import UnsupportedChannelError

from .base import ChannelAdapter
from .media import CredentialSource, MediaMapper
from .meta import FacebookAdapter, InstagramAdapter
from .mock import MockAdapter
from .tiktok import TikTokAdapter
from .whatsapp import WhatsAppAdapter

AdapterFactory = Callable[[], ChannelAdapter]


class AdapterRegistry:
    """One adapter per channel type, created lazily and reused."""

    def __init__(self, factories: Mapping[ChannelType, AdapterFactory]) -> None:
        missing = [member.value for member in ChannelType if member not in factories]
        if missing:
            raise ValueError(f"no adapter factory for: {', '.join(missing)}")
        self._factories = dict(factories)
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def get(self, channel_type: ChannelType) -> ChannelAdapter:
        adapter = self._adapters.get(channel_type)
        if adapter is None:
            adapter = self._factories[channel_type]()
            self._adapters[channel_type] = adapter
        return adapter

    def resolve(self, value: str | ChannelType) -> ChannelAdapter:
        """Like :meth:`get` but accepts raw channel type strings."""

        try:
            channel_type = ChannelType.parse(value)
        except ValueError as exc:
            raise UnsupportedChannelError(f"unsupported channel type: {value!r}") from exc
        return self.get(channel_type)


def build_adapter_registry(
    settings: AppSettings,
    client: httpx.AsyncClient,
    media_mapper: MediaMapper | None = None,
    credential_source: CredentialSource | None = None,
) -> AdapterRegistry:
    """Wire every platform adapter from application settings."""

    common = {
        "send_timeout": settings.http.send_timeout_seconds,
        "validation_timeout": settings.http.validation_timeout_seconds,
        "allow_unsigned_webhooks": settings.allow_unsigned_webhooks,
        "media_mapper": media_mapper,
        "credential_source": credential_source,
    }
    graph_url = settings.meta.graph_url
    return AdapterRegistry(
        {
            ChannelType.INSTAGRAM: lambda: InstagramAdapter(client, graph_url=graph_url, **common),
            ChannelType.FACEBOOK: lambda: FacebookAdapter(client, graph_url=graph_url, **common),
            ChannelType.WHATSAPP: lambda: WhatsAppAdapter(client, graph_url=graph_url, **common),
            ChannelType.TIKTOK: lambda: TikTokAdapter(
                client,
                api_url=settings.tiktok.api_url,
                user_info_url=settings.tiktok.user_info_url,
                **common,
            ),
            ChannelType.MOCK: MockAdapter,
        }
    )
