"""Dependency wiring for the webhook gateway."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

import httpx
from fastapi import Depends

from channelhub.adapters.media import MediaMapper
from channelhub.adapters.registry import AdapterRegistry, build_adapter_registry
from channelhub.core.config import AppSettings
from channelhub.core.db.session import create_engine_from_settings
from channelhub.credentials.store import CredentialStore, build_credential_store

from .dispatch import WebhookDispatcher
from .sinks import HttpInboundForwarder, InboundSink, LoggingInboundSink


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings.load()


SettingsDep = Annotated[AppSettings, Depends(get_settings)]

_http_client: httpx.AsyncClient | None = None
_credential_store: CredentialStore | None = None
_registry: AdapterRegistry | None = None
_sink: InboundSink | None = None


def get_http_client(settings: SettingsDep) -> httpx.AsyncClient:
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(timeout=settings.http.send_timeout_seconds)
    return _http_client


HttpClientDep = Annotated[httpx.AsyncClient, Depends(get_http_client)]


def get_credential_store(settings: SettingsDep) -> CredentialStore:
    global _credential_store
    if _credential_store is None:
        _credential_store = build_credential_store(settings, create_engine_from_settings(settings))
    return _credential_store


CredentialStoreDep = Annotated[CredentialStore, Depends(get_credential_store)]


def get_adapter_registry(
    settings: SettingsDep, client: HttpClientDep, store: CredentialStoreDep
) -> AdapterRegistry:
    global _registry
    if _registry is None:
        _registry = build_adapter_registry(
            settings,
            client,
            media_mapper=MediaMapper(client, graph_url=settings.meta.graph_url),
            credential_source=store,
        )
    return _registry


RegistryDep = Annotated[AdapterRegistry, Depends(get_adapter_registry)]


def get_inbound_sink(settings: SettingsDep) -> InboundSink:
    global _sink
    if _sink is None:
        if settings.webhooks.inbound_forward_url:
            _sink = HttpInboundForwarder(
                settings.webhooks.inbound_forward_url,
                timeout=settings.webhooks.forward_timeout_seconds,
            )
        else:
            _sink = LoggingInboundSink()
    return _sink


def get_dispatcher(
    registry: RegistryDep,
    store: CredentialStoreDep,
    sink: Annotated[InboundSink, Depends(get_inbound_sink)],
) -> WebhookDispatcher:
    return WebhookDispatcher(registry, store.repository, sink)


DispatcherDep = Annotated[WebhookDispatcher, Depends(get_dispatcher)]


async def close_dependencies() -> None:
    """Release pooled clients; the next request rebuilds them."""

    global _http_client, _credential_store, _registry, _sink
    if _sink is not None:
        await _sink.close()
    if _http_client is not None:
        await _http_client.aclose()
    _http_client = None
    _credential_store = None
    _registry = None
    _sink = None
