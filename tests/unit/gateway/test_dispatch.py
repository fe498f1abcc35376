from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from channelhub.adapters.registry import build_adapter_registry
from channelhub.core.config import AppSettings
from channelhub.core.domain import ChannelStatus, ChannelType, MessageDTO
from channelhub.credentials.repository import ChannelRecord, InMemoryChannelRepository
from channelhub.gateway.dispatch import WebhookDispatcher, payload_account_id
from channelhub.gateway.sinks import HttpInboundForwarder, InboundEvent, LoggingInboundSink
from channelhub.utils.retry import RetryConfig
from tests.factories import TENANT_ID, meta_credentials

pytestmark = pytest.mark.unit


class ListSink:
    def __init__(self) -> None:
        self.events: list[InboundEvent] = []

    async def deliver(self, event: InboundEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        return None


def _dispatcher(repository: InMemoryChannelRepository, sink: ListSink) -> WebhookDispatcher:
    def no_network(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected outbound call to {request.url}")

    client = httpx.AsyncClient(transport=httpx.MockTransport(no_network))
    return WebhookDispatcher(build_adapter_registry(AppSettings.load(), client), repository, sink)


def _page_payload(page_id: str) -> dict[str, Any]:
    event = {
        "sender": {"id": "user-1"},
        "recipient": {"id": page_id},
        "timestamp": 1_700_000_000_000,
        "message": {"mid": "m_1", "text": "hello"},
    }
    return {"object": "page", "entry": [{"id": page_id, "messaging": [event]}]}


def _event() -> InboundEvent:
    return InboundEvent(
        tenant_id=TENANT_ID,
        channel_id="fb-main",
        channel_type=ChannelType.FACEBOOK,
        message=MessageDTO(
            external_id="m_1",
            body="hello",
            sent_at=datetime(2023, 11, 14, tzinfo=timezone.utc),
            sender_handle="user-1",
            thread_external_id="user-1",
        ),
    )


def test_payload_account_id() -> None:
    assert payload_account_id(_page_payload("123")) == "123"
    whatsapp = {
        "entry": [
            {
                "id": "waba-1",
                "changes": [{"value": {"metadata": {"phone_number_id": "phone-1"}}}],
            }
        ]
    }
    assert payload_account_id(whatsapp) == "phone-1"
    assert payload_account_id({"entry": []}) is None
    assert payload_account_id({"entry": [{}]}) is None
    assert payload_account_id(["entry"]) is None


@pytest.mark.asyncio
async def test_dispatch_targets_channel_owning_the_account(
    repository: InMemoryChannelRepository, add_channel: Callable[..., ChannelRecord]
) -> None:
    add_channel("fb-main", meta_credentials())
    add_channel("fb-other", meta_credentials(page_id="999999999999999"))
    sink = ListSink()

    events = await _dispatcher(repository, sink).dispatch(
        ChannelType.FACEBOOK, _page_payload("999999999999999")
    )

    assert [event.channel_id for event in events] == ["fb-other"]
    assert sink.events == events


@pytest.mark.asyncio
async def test_dispatch_falls_back_to_every_active_channel(
    repository: InMemoryChannelRepository, add_channel: Callable[..., ChannelRecord]
) -> None:
    add_channel("fb-main", meta_credentials())
    add_channel("fb-other", meta_credentials(page_id="999999999999999"))
    add_channel("fb-off", meta_credentials(page_id="555"), status=ChannelStatus.INACTIVE)
    add_channel("ig-main", meta_credentials(page_id="555"), channel_type=ChannelType.INSTAGRAM)
    sink = ListSink()

    events = await _dispatcher(repository, sink).dispatch(
        ChannelType.FACEBOOK, _page_payload("555")
    )

    assert sorted(event.channel_id for event in events) == ["fb-main", "fb-other"]


@pytest.mark.asyncio
async def test_event_serializes_channel_and_message() -> None:
    payload = _event().to_dict()

    assert payload["channel_type"] == "facebook"
    assert payload["message"]["external_id"] == "m_1"
    await LoggingInboundSink().deliver(_event())


@pytest.mark.asyncio
async def test_forwarder_posts_event_json() -> None:
    seen: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    forwarder = HttpInboundForwarder("http://inbox.test/inbound", client=client)

    await forwarder.deliver(_event())

    assert len(seen) == 1
    assert seen[0]["channel_id"] == "fb-main"
    assert seen[0]["message"]["body"] == "hello"
    await forwarder.close()
    assert not client.is_closed


@pytest.mark.asyncio
async def test_forwarder_retries_transport_errors() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    forwarder = HttpInboundForwarder(
        "http://inbox.test/inbound",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_config=RetryConfig(attempts=3, base_delay=0.0, jitter=0.0),
    )

    await forwarder.deliver(_event())

    assert attempts == 2


@pytest.mark.asyncio
async def test_forwarder_raises_on_rejection() -> None:
    forwarder = HttpInboundForwarder(
        "http://inbox.test/inbound",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda _: httpx.Response(500))),
    )

    with pytest.raises(httpx.HTTPStatusError):
        await forwarder.deliver(_event())
