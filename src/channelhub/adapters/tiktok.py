"""TikTok for Business direct-message adapter."""

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
from channelhub.credentials.models import ChannelCredentials, TikTokCredentials

from .base import HttpChannelAdapter, optional_str
from .errors import AdapterError, ErrorType, adapter_error, classify_status

logger = logging.getLogger(__name__)

SEND_PATH = "/business/message/send/"
# TikTok reports auth problems in the body of a 200 response
_AUTH_CODES = frozenset({40102, 40104, 40105})
_RATE_LIMIT_CODES = frozenset({40100})


def _media_items(message: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    media = message.get("media")
    if isinstance(media, Mapping):
        return [media]
    if isinstance(media, list):
        return [item for item in media if isinstance(item, Mapping)]
    return []


def parse_tiktok_attachments(message: Mapping[str, Any]) -> list[Attachment]:
    attachments: list[Attachment] = []
    for media in _media_items(message):
        try:
            attachment_type = AttachmentType(str(media.get("type")))
        except ValueError:
            continue
        if not media.get("url"):
            continue
        attachments.append(
            Attachment(
                type=attachment_type,
                url=str(media["url"]),
                mime_type=optional_str(media.get("mime_type")),
                filename=(
                    optional_str(media.get("filename"))
                    if attachment_type is AttachmentType.FILE
                    else None
                ),
            )
        )
    return attachments


class TikTokAdapter(HttpChannelAdapter):
    channel_type = ChannelType.TIKTOK
    platform_name = "TikTok"
    max_message_length = 1000

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_url: str = "https://business-api.tiktok.com/open_api/v1.3",
        user_info_url: str = "https://open.tiktokapis.com/v2/user/info/",
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self._api_url = api_url.rstrip("/")
        self._user_info_url = user_info_url

    async def ingest_webhook(self, payload: Any, channel_id: str) -> MessageDTO | None:
        message = payload.get("message") if isinstance(payload, Mapping) else None
        if not isinstance(message, Mapping):
            return None
        sender = message.get("sender_id")
        message_id = message.get("message_id")
        if not sender or not message_id:
            return None

        body = optional_str(message.get("text")) or ""
        attachments = parse_tiktok_attachments(message)
        if not body and not attachments:
            return None
        attachments = await self._resolve_media(channel_id, attachments)

        return MessageDTO(
            external_id=str(message_id),
            body=body,
            sent_at=from_timestamp(message.get("timestamp")),
            sender_handle=str(sender),
            sender_name=optional_str(message.get("sender_name")),
            thread_external_id=str(message.get("conversation_id") or sender),
            attachments=attachments,
        )

    @staticmethod
    def _message_payload(message: SendMessageDTO) -> dict[str, Any]:
        content: dict[str, Any] = {"text": message.body}
        if message.attachments:
            attachment = message.attachments[0]
            media: dict[str, Any] = {"type": attachment.type.value, "url": attachment.url}
            if attachment.type is AttachmentType.FILE and attachment.filename:
                media["filename"] = attachment.filename
            content["media"] = media
        return {"recipient": {"user_id": message.thread_external_id}, "message": content}

    def _body_error(self, operation: str, data: Mapping[str, Any]) -> AdapterError:
        code = data.get("code")
        message = str(data.get("message") or "unknown error")
        details = {"platform": self.platform_name, "context": operation, "code": code}
        if code in _AUTH_CODES:
            return adapter_error(
                ErrorType.AUTHENTICATION, f"TikTok rejected the token: {message}", details=details
            )
        if code in _RATE_LIMIT_CODES:
            return adapter_error(
                ErrorType.RATE_LIMIT,
                f"TikTok rate limit: {message}",
                retryable=True,
                details=details,
            )
        return adapter_error(ErrorType.API, f"TikTok API error: {message}", details=details)

    async def send_message(
        self, channel_id: str, message: SendMessageDTO, credentials: ChannelCredentials
    ) -> AdapterResult[dict[str, str]]:
        too_long = self._check_length(message, channel_id)
        if too_long is not None:
            return AdapterResult.fail(too_long)
        if not isinstance(credentials, TikTokCredentials):
            return self._wrong_credentials("sendMessage", channel_id)
        missing = self._missing_fields(
            "sendMessage", {"accessToken": credentials.access_token}, channel_id=channel_id
        )
        if missing is not None:
            return AdapterResult.fail(missing)

        try:
            response = await self._request(
                "POST",
                f"{self._api_url}{SEND_PATH}",
                json=self._message_payload(message),
                headers={"Authorization": f"Bearer {credentials.access_token}"},
            )
        except httpx.HTTPError as exc:
            return AdapterResult.fail(self._exception("sendMessage", exc, channel_id=channel_id))

        data = self._json(response)
        if response.is_error:
            error = classify_status(
                response.status_code, self.platform_name, "sendMessage", body=data
            )
            return AdapterResult.fail(self._fail("sendMessage", error, channel_id=channel_id))
        if isinstance(data, Mapping) and data.get("code") not in (None, 0):
            error = self._body_error("sendMessage", data)
            return AdapterResult.fail(self._fail("sendMessage", error, channel_id=channel_id))
        result = data.get("data") if isinstance(data, Mapping) else None
        message_id = result.get("message_id") if isinstance(result, Mapping) else None
        return self._sent(message_id, channel_id)

    async def list_threads(
        self, channel_id: str, credentials: ChannelCredentials
    ) -> AdapterResult[list[ThreadDTO]]:
        return AdapterResult.ok([])

    async def subscribe_webhooks(
        self, channel_id: str, webhook_url: str, credentials: ChannelCredentials
    ) -> AdapterResult[None]:
        # TikTok webhooks are registered in the developer portal, not per channel
        logger.info(
            "webhook subscription acknowledged",
            extra={
                "platform": self.platform_name,
                "channel_id": channel_id,
                "webhook_url": webhook_url,
            },
        )
        return AdapterResult.ok()

    async def validate_credentials(self, config: Mapping[str, Any]) -> ValidationResult:
        app_id = str(config.get("appId") or "")
        token = str(config.get("accessToken") or "")
        missing = self._missing_fields(
            "validateCredentials",
            {"appId": app_id, "appSecret": config.get("appSecret"), "accessToken": token},
        )
        if missing is not None:
            return ValidationResult(valid=False, error=missing.message, details=missing.to_dict())

        try:
            response = await self._request(
                "GET",
                self._user_info_url,
                params={"fields": "open_id,display_name"},
                headers={"Authorization": f"Bearer {token}"},
                validation=True,
            )
        except httpx.HTTPError as exc:
            error = self._exception("validateCredentials", exc)
            return ValidationResult(valid=False, error=error.message, details=error.to_dict())

        data = self._json(response)
        if response.is_error:
            error = classify_status(
                response.status_code, self.platform_name, "validateCredentials", body=data
            )
            return ValidationResult(valid=False, error=error.message, details=error.to_dict())

        user = (data.get("data") or {}).get("user") if isinstance(data, Mapping) else None
        user = user if isinstance(user, Mapping) else {}
        return ValidationResult(
            valid=True,
            details={
                "app_id": app_id,
                "open_id": user.get("open_id"),
                "display_name": user.get("display_name"),
            },
        )
