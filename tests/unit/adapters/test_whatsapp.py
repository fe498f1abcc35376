from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from channelhub.adapters.errors import ErrorType
from channelhub.adapters.whatsapp import WhatsAppAdapter
from channelhub.core.domain import Attachment, AttachmentType, SendMessageDTO
from channelhub.credentials.models import WhatsAppCredentials

pytestmark = pytest.mark.unit

CREDENTIALS = WhatsAppCredentials(
    access_token="wa-token",
    phone_number_id="111111111111111",
    business_account_id="222222222222222",
)


class Recorder:
    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def _adapter(recorder: Recorder) -> WhatsAppAdapter:
    return WhatsAppAdapter(httpx.AsyncClient(transport=httpx.MockTransport(recorder)))


def _payload(value: dict[str, Any]) -> dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "222222222222222", "changes": [{"field": "messages", "value": value}]}],
    }


@pytest.mark.asyncio
async def test_ingest_text_message_with_contact_name() -> None:
    payload = _payload(
        {
            "metadata": {"phone_number_id": "111111111111111"},
            "contacts": [{"wa_id": "5511999999999", "profile": {"name": "Ana"}}],
            "messages": [
                {
                    "from": "5511999999999",
                    "id": "wamid.1",
                    "timestamp": "1700000000",
                    "type": "text",
                    "text": {"body": "oi"},
                }
            ],
        }
    )

    message = await _adapter(Recorder()).ingest_webhook(payload, "ch-1")

    assert message is not None
    assert message.external_id == "wamid.1"
    assert message.body == "oi"
    assert message.sender_name == "Ana"
    assert message.thread_external_id == "5511999999999"
    assert message.sent_at.timestamp() == 1_700_000_000


@pytest.mark.asyncio
async def test_ingest_image_keeps_media_id_without_mapper() -> None:
    payload = _payload(
        {
            "messages": [
                {
                    "from": "5511",
                    "id": "wamid.2",
                    "type": "image",
                    "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "look"},
                }
            ]
        }
    )

    message = await _adapter(Recorder()).ingest_webhook(payload, "ch-1")

    assert message.body == "look"
    assert message.attachments[0].type is AttachmentType.IMAGE
    assert message.attachments[0].url == "media-1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "value",
    [
        {"statuses": [{"id": "wamid.1", "status": "read"}]},
        {"messages": [{"from": "5511", "id": "wamid.3", "type": "sticker", "sticker": {}}]},
        {"messages": []},
    ],
)
async def test_ingest_ignores_statuses_and_unsupported_types(value: dict[str, Any]) -> None:
    assert await _adapter(Recorder()).ingest_webhook(_payload(value), "ch-1") is None


@pytest.mark.asyncio
async def test_overlong_message_is_rejected_before_any_call() -> None:
    recorder = Recorder()

    result = await _adapter(recorder).send_message(
        "ch-1", SendMessageDTO(thread_external_id="5511", body="x" * 4097), CREDENTIALS
    )

    assert not result.success
    assert result.error.type is ErrorType.MESSAGE_TOO_LONG
    assert result.error.details["limit"] == 4096
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_message_at_the_limit_is_sent() -> None:
    recorder = Recorder(httpx.Response(200, json={"messages": [{"id": "wamid.9"}]}))

    result = await _adapter(recorder).send_message(
        "ch-1", SendMessageDTO(thread_external_id="5511", body="x" * 4096), CREDENTIALS
    )

    assert result.success
    assert result.data == {"external_id": "wamid.9"}
    request = recorder.requests[0]
    assert request.url.path == "/v18.0/111111111111111/messages"
    assert request.headers["authorization"] == "Bearer wa-token"
    body = json.loads(request.content)
    assert body["type"] == "text"
    assert body["to"] == "5511"


@pytest.mark.asyncio
async def test_document_payload_carries_caption_and_filename() -> None:
    recorder = Recorder(httpx.Response(200, json={"messages": [{"id": "wamid.10"}]}))
    message = SendMessageDTO(
        thread_external_id="5511",
        body="invoice",
        attachments=[
            Attachment(type=AttachmentType.FILE, url="https://cdn/inv.pdf", filename="inv.pdf")
        ],
    )

    await _adapter(recorder).send_message("ch-1", message, CREDENTIALS)

    body = json.loads(recorder.requests[0].content)
    assert body["type"] == "document"
    assert body["document"] == {
        "link": "https://cdn/inv.pdf",
        "caption": "invoice",
        "filename": "inv.pdf",
    }


@pytest.mark.asyncio
async def test_expired_token_is_authentication_error() -> None:
    recorder = Recorder(
        httpx.Response(401, json={"error": {"code": 190, "message": "Session has expired"}})
    )

    result = await _adapter(recorder).send_message(
        "ch-1", SendMessageDTO(thread_external_id="5511", body="hi"), CREDENTIALS
    )

    assert result.error.type is ErrorType.AUTHENTICATION
    assert not result.error.retryable


@pytest.mark.asyncio
async def test_validate_checks_phone_and_business() -> None:
    recorder = Recorder(
        httpx.Response(
            200,
            json={"id": "111111111111111", "display_phone_number": "+55 11", "verified_name": "S"},
        ),
        httpx.Response(200, json={"id": "222222222222222", "name": "Shop"}),
    )

    result = await _adapter(recorder).validate_credentials(
        {"phoneId": "111111111111111", "businessId": "222222222222222", "accessToken": "t"}
    )

    assert result.valid
    assert result.details["business_name"] == "Shop"
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_validate_reports_failing_object() -> None:
    recorder = Recorder(
        httpx.Response(400, json={"error": {"code": 100, "message": "bad id"}}),
    )

    result = await _adapter(recorder).validate_credentials(
        {"phoneId": "111111111111111", "businessId": "222222222222222", "accessToken": "t"}
    )

    assert not result.valid
    assert result.details["details"]["object_id"] == "111111111111111"


@pytest.mark.asyncio
async def test_list_threads_is_empty() -> None:
    result = await _adapter(Recorder()).list_threads("ch-1", CREDENTIALS)

    assert result.success and result.data == []


_TEXT = {"from": "5511999999999", "id": "wamid.1", "type": "text", "text": {"body": "oi"}}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        _payload({"messages": [{"from": "1", "id": "wamid.2", "type": "text", "text": "hello"}]}),
        _payload({"messages": {"id": "wamid.3"}}),
        _payload({"messages": ["not-a-message"]}),
        _payload([_TEXT]),
        {"object": "whatsapp_business_account", "entry": {"changes": []}},
        {"object": "whatsapp_business_account", "entry": [{"changes": "messages"}]},
        {"object": "whatsapp_business_account", "entry": ["entry"]},
        _payload({"messages": [{**_TEXT, "type": "image", "image": "media-id"}]}),
    ],
)
async def test_malformed_payloads_are_ignored(payload: Any) -> None:
    assert await _adapter(Recorder()).ingest_webhook(payload, "ch-1") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("contacts", ["Ana", {"wa_id": "1"}, [{"profile": "Ana"}], [7]])
async def test_malformed_contacts_keep_the_message(contacts: Any) -> None:
    payload = _payload({"contacts": contacts, "messages": [_TEXT]})

    message = await _adapter(Recorder()).ingest_webhook(payload, "ch-1")

    assert message is not None
    assert message.body == "oi"
    assert message.sender_name is None
