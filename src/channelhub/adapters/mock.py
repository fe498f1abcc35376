"""In-process adapter for development tenants and demos."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from channelhub.core.domain import (
    AdapterResult,
    Attachment,
    AttachmentType,
    ChannelType,
    MessageDTO,
    SendMessageDTO,
    ThreadDTO,
    ValidationResult,
    from_timestamp,
    utcnow,
)
from channelhub.credentials.models import ChannelCredentials

from .base import MESSAGES_SENT, synthesize_message_id

logger = logging.getLogger(__name__)


def _attachments(raw: Any) -> list[Attachment]:
    items: list[Attachment] = []
    for item in raw or []:
        if not isinstance(item, Mapping) or not item.get("url"):
            continue
        try:
            attachment_type = AttachmentType(str(item.get("type", "file")))
        except ValueError:
            attachment_type = AttachmentType.FILE
        items.append(
            Attachment(
                type=attachment_type,
                url=str(item["url"]),
                mime_type=item.get("mimeType"),
                filename=item.get("filename"),
            )
        )
    return items


class MockAdapter:
    """Accepts anything, sends nothing, always validates."""

    channel_type = ChannelType.MOCK
    platform_name = "Mock"

    async def subscribe_webhooks(
        self, channel_id: str, webhook_url: str, credentials: ChannelCredentials
    ) -> AdapterResult[None]:
        logger.info(
            "mock webhook subscription",
            extra={"channel_id": channel_id, "webhook_url": webhook_url},
        )
        return AdapterResult.ok()

    async def ingest_webhook(self, payload: Any, channel_id: str) -> MessageDTO | None:
        if not isinstance(payload, Mapping):
            return None
        sender = str(payload.get("sender") or "mock_user")
        return MessageDTO(
            external_id=str(payload.get("messageId") or synthesize_message_id("mock")),
            body=str(payload.get("text") or payload.get("body") or "Mock message"),
            sent_at=from_timestamp(payload["timestamp"], milliseconds=True)
            if payload.get("timestamp")
            else utcnow(),
            sender_handle=sender,
            sender_name=payload.get("senderName") or "Mock User",
            thread_external_id=str(payload.get("threadId") or sender),
            attachments=_attachments(payload.get("attachments")),
        )

    async def send_message(
        self, channel_id: str, message: SendMessageDTO, credentials: ChannelCredentials
    ) -> AdapterResult[dict[str, str]]:
        logger.info(
            "mock send",
            extra={"channel_id": channel_id, "thread_id": message.thread_external_id},
        )
        MESSAGES_SENT.labels(self.channel_type.value).inc()
        return AdapterResult.ok({"external_id": synthesize_message_id("mock_sent")})

    async def list_threads(
        self, channel_id: str, credentials: ChannelCredentials
    ) -> AdapterResult[list[ThreadDTO]]:
        return AdapterResult.ok(
            [
                ThreadDTO(
                    external_id="mock_thread_1",
                    participant_handle="user_123",
                    participant_name="Demo User",
                    last_message_at=utcnow(),
                )
            ]
        )

    def verify_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> bool:
        return True

    async def validate_credentials(self, config: Mapping[str, Any]) -> ValidationResult:
        return ValidationResult(
            valid=True, details={"message": "mock channel needs no credentials"}
        )
