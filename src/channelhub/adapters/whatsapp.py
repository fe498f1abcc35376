"""WhatsApp Cloud API adapter."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

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
)
from channelhub.credentials.models import ChannelCredentials, WhatsAppCredentials

from .errors import classify_meta_error
from .base import as_mapping, first_mapping, optional_str
from .meta import GraphAdapter

logger = logging.getLogger(__name__)

WEBHOOK_OBJECT = "whatsapp_business_account"

_MEDIA_TYPES: dict[str, AttachmentType] = {
    "image": AttachmentType.IMAGE,
    "video": AttachmentType.VIDEO,
    "document": AttachmentType.FILE,
}

_OUTBOUND_TYPES: dict[AttachmentType, str] = {
    AttachmentType.IMAGE: "image",
    AttachmentType.VIDEO: "video",
    AttachmentType.AUDIO: "audio",
    AttachmentType.FILE: "document",
}


def _message_text(message: Mapping[str, Any]) -> str:
    kind = message.get("type")
    if kind == "text":
        return str(as_mapping(message.get("text")).get("body") or "")
    if not isinstance(kind, str) or kind not in _MEDIA_TYPES:
        return ""
    media = message.get(kind)
    if isinstance(media, Mapping):
        return str(media.get("caption") or "")
    return ""


def _message_attachments(message: Mapping[str, Any]) -> list[Attachment]:
    kind = message.get("type")
    attachment_type = _MEDIA_TYPES.get(kind) if isinstance(kind, str) else None
    media = message.get(kind) if attachment_type is not None else None
    if not isinstance(media, Mapping) or not media.get("id"):
        return []
    # the media id is swapped for a download URL by the media mapper
    return [
        Attachment(
            type=attachment_type,
            url=str(media["id"]),
            mime_type=optional_str(media.get("mime_type")),
            filename=optional_str(media.get("filename")),
        )
    ]


class WhatsAppAdapter(GraphAdapter):
    channel_type = ChannelType.WHATSAPP
    platform_name = "WhatsApp"
    max_message_length = 4096

    async def ingest_webhook(self, payload: Any, channel_id: str) -> MessageDTO | None:
        if not isinstance(payload, Mapping) or payload.get("object") != WEBHOOK_OBJECT:
            return None
        change = first_mapping(first_mapping(payload.get("entry")).get("changes"))
        value = change.get("value")
        if not isinstance(value, Mapping) or change.get("field", "messages") != "messages":
            return None

        # status-only deliveries (sent/delivered/read) have no messages
        message = first_mapping(value.get("messages"))
        if not message:
            return None
        # audio, stickers, reactions and system notices are not relayed
        kind = message.get("type")
        if kind != "text" and not (isinstance(kind, str) and kind in _MEDIA_TYPES):
            return None

        sender = message.get("from")
        message_id = message.get("id")
        if not sender or not message_id:
            return None

        body = _message_text(message)
        attachments = _message_attachments(message)
        if not body and not attachments:
            return None
        attachments = await self._resolve_media(channel_id, attachments)

        profile = as_mapping(first_mapping(value.get("contacts")).get("profile"))

        return MessageDTO(
            external_id=str(message_id),
            body=body,
            sent_at=from_timestamp(message.get("timestamp")),
            sender_handle=str(sender),
            sender_name=optional_str(profile.get("name")),
            thread_external_id=str(sender),
            attachments=attachments,
        )

    def _whatsapp_credentials(
        self, operation: str, credentials: ChannelCredentials, channel_id: str
    ) -> WhatsAppCredentials | AdapterResult[Any]:
        if not isinstance(credentials, WhatsAppCredentials):
            return self._wrong_credentials(operation, channel_id)
        missing = self._missing_fields(
            operation,
            {
                "phoneNumberId": credentials.phone_number_id,
                "accessToken": credentials.access_token,
            },
            channel_id=channel_id,
        )
        if missing is not None:
            return AdapterResult.fail(missing)
        return credentials

    @staticmethod
    def _message_payload(message: SendMessageDTO) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": message.thread_external_id,
        }
        if not message.attachments:
            payload.update(type="text", text={"preview_url": False, "body": message.body})
            return payload

        attachment = message.attachments[0]
        kind = _OUTBOUND_TYPES[attachment.type]
        media: dict[str, Any] = {"link": attachment.url}
        if message.body and attachment.type is not AttachmentType.AUDIO:
            media["caption"] = message.body
        if attachment.type is AttachmentType.FILE and attachment.filename:
            media["filename"] = attachment.filename
        payload.update({"type": kind, kind: media})
        return payload

    async def send_message(
        self, channel_id: str, message: SendMessageDTO, credentials: ChannelCredentials
    ) -> AdapterResult[dict[str, str]]:
        too_long = self._check_length(message, channel_id)
        if too_long is not None:
            return AdapterResult.fail(too_long)
        checked = self._whatsapp_credentials("sendMessage", credentials, channel_id)
        if isinstance(checked, AdapterResult):
            return checked

        data, failure = await self._graph_call(
            "sendMessage",
            channel_id,
            "POST",
            f"{checked.phone_number_id}/messages",
            json=self._message_payload(message),
            headers={"Authorization": f"Bearer {checked.access_token}"},
        )
        if failure is not None:
            return failure
        messages = data.get("messages") if isinstance(data, Mapping) else None
        message_id = None
        if messages and isinstance(messages[0], Mapping):
            message_id = messages[0].get("id")
        return self._sent(message_id, channel_id)

    async def list_threads(
        self, channel_id: str, credentials: ChannelCredentials
    ) -> AdapterResult[list[ThreadDTO]]:
        # the Cloud API has no conversation listing; threads are built from webhooks
        return AdapterResult.ok([])

    async def subscribe_webhooks(
        self, channel_id: str, webhook_url: str, credentials: ChannelCredentials
    ) -> AdapterResult[None]:
        if not isinstance(credentials, WhatsAppCredentials):
            return self._wrong_credentials("subscribeWebhooks", channel_id)
        missing = self._missing_fields(
            "subscribeWebhooks",
            {
                "businessAccountId": credentials.business_account_id,
                "accessToken": credentials.access_token,
            },
            channel_id=channel_id,
        )
        if missing is not None:
            return AdapterResult.fail(missing)

        _, failure = await self._graph_call(
            "subscribeWebhooks",
            channel_id,
            "POST",
            f"{credentials.business_account_id}/subscribed_apps",
            headers={"Authorization": f"Bearer {credentials.access_token}"},
        )
        if failure is not None:
            return failure
        logger.info(
            "webhook subscription registered",
            extra={
                "platform": self.platform_name,
                "channel_id": channel_id,
                "webhook_url": webhook_url,
            },
        )
        return AdapterResult.ok()

    async def validate_credentials(self, config: Mapping[str, Any]) -> ValidationResult:
        phone_id = str(config.get("phoneNumberId") or config.get("phoneId") or "")
        business_id = str(config.get("businessAccountId") or config.get("businessId") or "")
        token = str(config.get("accessToken") or "")
        missing = self._missing_fields(
            "validateCredentials",
            {"phoneId": phone_id, "businessId": business_id, "accessToken": token},
        )
        if missing is not None:
            return ValidationResult(valid=False, error=missing.message, details=missing.to_dict())

        headers = {"Authorization": f"Bearer {token}"}
        lookups = (
            (phone_id, "id,display_phone_number,verified_name,quality_rating"),
            (business_id, "id,name"),
        )
        found: list[Mapping[str, Any]] = []
        for object_id, fields in lookups:
            try:
                response = await self._request(
                    "GET",
                    f"{self._graph_url}/{object_id}",
                    params={"fields": fields},
                    headers=headers,
                    validation=True,
                )
            except httpx.HTTPError as exc:
                error = self._exception("validateCredentials", exc)
                return ValidationResult(valid=False, error=error.message, details=error.to_dict())
            data = self._json(response)
            if response.is_error or (isinstance(data, Mapping) and "error" in data):
                error = classify_meta_error(
                    data,
                    self.platform_name,
                    "validateCredentials",
                    status_code=response.status_code if response.is_error else None,
                )
                error.details["object_id"] = object_id
                return ValidationResult(valid=False, error=error.message, details=error.to_dict())
            found.append(data if isinstance(data, Mapping) else {})

        phone, business = found
        return ValidationResult(
            valid=True,
            details={
                "phone_number_id": phone_id,
                "display_phone_number": phone.get("display_phone_number"),
                "verified_name": phone.get("verified_name"),
                "business_name": business.get("name"),
            },
        )
