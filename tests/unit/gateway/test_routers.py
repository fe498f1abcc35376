from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import httpx
import pytest
from fastapi import FastAPI

from channelhub.adapters.registry import build_adapter_registry
from channelhub.core.config import (
    AppSettings,
    Environment,
    MetaSettings,
    TikTokSettings,
    WebhookSettings,
    WhatsAppSettings,
)
from channelhub.core.domain import ChannelType
from channelhub.credentials.models import WhatsAppCredentials
from channelhub.credentials.repository import ChannelRecord, InMemoryChannelRepository
from channelhub.gateway.app import create_app
from channelhub.gateway.dependencies import get_adapter_registry, get_dispatcher, get_settings
from channelhub.gateway.dispatch import WebhookDispatcher
from channelhub.gateway.sinks import InboundEvent
from tests.factories import meta_credentials

pytestmark = pytest.mark.unit

META_SECRET = "meta-app-secret"
WHATSAPP_SECRET = "whatsapp-app-secret"
VERIFY_TOKEN = "verify-me"


class RecordingSink:
    def __init__(self, error: Exception | None = None) -> None:
        self.events: list[InboundEvent] = []
        self.error = error

    async def deliver(self, event: InboundEvent) -> None:
        if self.error is not None:
            raise self.error
        self.events.append(event)

    async def close(self) -> None:
        return None


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected outbound call to {request.url}")


@dataclass
class Gateway:
    app: FastAPI
    sink: RecordingSink
    settings: AppSettings

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app), base_url="http://test"
        )


def _settings(**overrides: Any) -> AppSettings:
    values: dict[str, Any] = {
        "environment": Environment.PRODUCTION,
        "meta": MetaSettings(verify_token=VERIFY_TOKEN, webhook_secret=META_SECRET),
        "whatsapp": WhatsAppSettings(verify_token=VERIFY_TOKEN, webhook_secret=WHATSAPP_SECRET),
        "tiktok": TikTokSettings(webhook_secret="tiktok-secret"),
    }
    values.update(overrides)
    return AppSettings.load(**values)


def _build_gateway(
    repository: InMemoryChannelRepository,
    settings: AppSettings,
    sink: RecordingSink | None = None,
) -> Gateway:
    sink = sink or RecordingSink()
    app = create_app()
    registry = build_adapter_registry(
        settings, httpx.AsyncClient(transport=httpx.MockTransport(_no_network))
    )
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_adapter_registry] = lambda: registry
    app.dependency_overrides[get_dispatcher] = lambda: WebhookDispatcher(
        registry, repository, sink
    )
    return Gateway(app=app, sink=sink, settings=settings)


@pytest.fixture()
def make_gateway(
    repository: InMemoryChannelRepository, add_channel: Callable[..., ChannelRecord]
) -> Iterator[Callable[..., Gateway]]:
    add_channel("fb-main", meta_credentials())
    add_channel("fb-other", meta_credentials(page_id="999999999999999"))
    add_channel(
        "wa-main",
        WhatsAppCredentials(
            access_token="wa-token",
            phone_number_id="111111111111111",
            business_account_id="222222222222222",
        ),
        channel_type=ChannelType.WHATSAPP,
    )

    def _make(sink: RecordingSink | None = None, **overrides: Any) -> Gateway:
        return _build_gateway(repository, _settings(**overrides), sink)

    yield _make
    get_settings.cache_clear()


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _page_message(event: dict[str, Any] | None = None) -> bytes:
    event = event or {
        "sender": {"id": "user-1"},
        "recipient": {"id": "123456789012345"},
        "timestamp": 1_700_000_000_000,
        "message": {"mid": "m_1", "text": "hello"},
    }
    payload = {"object": "page", "entry": [{"id": "123456789012345", "messaging": [event]}]}
    return json.dumps(payload).encode()


async def _post_meta(gateway: Gateway, body: bytes, secret: str = META_SECRET) -> httpx.Response:
    async with gateway.client() as client:
        return await client.post(
            "/webhooks/meta",
            content=body,
            headers={"X-Hub-Signature-256": _sign(body, secret)},
        )


@pytest.mark.asyncio
async def test_subscription_handshake_echoes_challenge(make_gateway) -> None:
    gateway = make_gateway()
    params = {"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "4242"}

    async with gateway.client() as client:
        meta = await client.get("/webhooks/meta", params=params)
        whatsapp = await client.get("/webhooks/whatsapp", params=params)

    assert meta.status_code == 200
    assert meta.text == "4242"
    assert whatsapp.text == "4242"


@pytest.mark.asyncio
async def test_subscription_handshake_rejects_wrong_token(make_gateway) -> None:
    gateway = make_gateway()

    async with gateway.client() as client:
        response = await client.get(
            "/webhooks/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
        )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_meta_message_is_delivered_to_matching_page(make_gateway) -> None:
    gateway = make_gateway()

    response = await _post_meta(gateway, _page_message())

    assert response.status_code == 200
    assert response.json() == {"status": "accepted", "messages": 1}
    [event] = gateway.sink.events
    assert event.channel_id == "fb-main"
    assert event.channel_type is ChannelType.FACEBOOK
    assert event.message.body == "hello"


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_before_dispatch(make_gateway) -> None:
    gateway = make_gateway()

    response = await _post_meta(gateway, _page_message(), secret="someone-else")

    assert response.status_code == 403
    assert gateway.sink.events == []


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(make_gateway) -> None:
    gateway = make_gateway()

    async with gateway.client() as client:
        response = await client.post("/webhooks/meta", content=_page_message())

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_signed_invalid_json_is_bad_request(make_gateway) -> None:
    gateway = make_gateway()

    response = await _post_meta(gateway, b"{not json")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_meta_object_is_ignored(make_gateway) -> None:
    gateway = make_gateway()

    response = await _post_meta(gateway, json.dumps({"object": "user", "entry": []}).encode())

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_read_receipt_is_acknowledged_without_messages(make_gateway) -> None:
    gateway = make_gateway()
    body = _page_message(
        {
            "sender": {"id": "user-1"},
            "recipient": {"id": "123456789012345"},
            "read": {"watermark": 1},
        }
    )

    response = await _post_meta(gateway, body)

    assert response.json() == {"status": "ignored"}
    assert gateway.sink.events == []


@pytest.mark.asyncio
async def test_whatsapp_message_is_accepted(make_gateway) -> None:
    gateway = make_gateway()
    payload = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "222222222222222",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": "111111111111111"},
                            "messages": [
                                {
                                    "from": "5511999999999",
                                    "id": "wamid.1",
                                    "timestamp": "1700000000",
                                    "type": "text",
                                    "text": {"body": "oi"},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }
    body = json.dumps(payload).encode()

    async with gateway.client() as client:
        response = await client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"X-Hub-Signature-256": _sign(body, WHATSAPP_SECRET)},
        )

    assert response.json() == {"status": "accepted", "messages": 1}
    assert [event.channel_id for event in gateway.sink.events] == ["wa-main"]


@pytest.mark.asyncio
async def test_sink_failure_maps_to_bad_gateway(make_gateway) -> None:
    sink = RecordingSink(error=httpx.ConnectError("inbox down"))
    gateway = make_gateway(sink)

    response = await _post_meta(gateway, _page_message())

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_unsigned_webhooks_accepted_only_in_development(make_gateway) -> None:
    unsigned = {"meta": MetaSettings(verify_token=VERIFY_TOKEN)}
    webhooks = WebhookSettings(allow_unsigned=True)
    dev = make_gateway(environment=Environment.DEVELOPMENT, webhooks=webhooks, **unsigned)
    prod = make_gateway(environment=Environment.PRODUCTION, webhooks=webhooks, **unsigned)

    async with dev.client() as client:
        accepted = await client.post("/webhooks/meta", content=_page_message())
    async with prod.client() as client:
        rejected = await client.post("/webhooks/meta", content=_page_message())

    assert accepted.json() == {"status": "accepted", "messages": 1}
    assert rejected.status_code == 403


@pytest.mark.asyncio
async def test_health_endpoint(make_gateway) -> None:
    gateway = make_gateway()

    async with gateway.client() as client:
        response = await client.get("/health")

    assert response.json() == {"status": "ok"}
