"""Instagram and Facebook Messenger adapters over the Meta Graph API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
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
    utcnow,
)
from channelhub.credentials.models import ChannelCredentials, MetaCredentials

from .base import HttpChannelAdapter, as_mapping, first_mapping, optional_str
from .errors import ErrorType, adapter_error, classify_meta_error

logger = logging.getLogger(__name__)

SUBSCRIBED_FIELDS = "messages,messaging_postbacks,message_reads,message_deliveries"

# Instagram business account ids share this prefix; page ids never do.
_INSTAGRAM_ACCOUNT_PREFIX = "1784"


def parse_graph_time(value: Any) -> datetime:
    """Graph timestamps look like ``2024-05-01T10:00:00+0000``."""

    if not isinstance(value, str) or not value:
        return utcnow()
    for parse in (datetime.fromisoformat, _parse_compact_offset):
        try:
            parsed = parse(value)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return utcnow()


def _parse_compact_offset(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")


def _attachment_type(raw: Any) -> AttachmentType:
    try:
        return AttachmentType(str(raw))
    except ValueError:
        return AttachmentType.FILE


def parse_meta_attachments(message: Mapping[str, Any]) -> list[Attachment]:
    attachments: list[Attachment] = []
    items = message.get("attachments")
    if not isinstance(items, list):
        return attachments
    for item in items:
        if not isinstance(item, Mapping):
            continue
        url = as_mapping(item.get("payload")).get("url")
        if not url:
            continue
        attachments.append(Attachment(type=_attachment_type(item.get("type")), url=str(url)))
    return attachments


class GraphAdapter(HttpChannelAdapter):
    """Adapter speaking the Graph API error envelope (Messenger and WhatsApp Cloud)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        graph_url: str = "https://graph.facebook.com/v18.0",
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self._graph_url = graph_url.rstrip("/")

    async def _graph_call(
        self,
        operation: str,
        channel_id: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> tuple[Any, AdapterResult[Any] | None]:
        """Perform a Graph call, returning either the JSON body or a failure."""

        try:
            response = await self._request(method, f"{self._graph_url}/{path}", **kwargs)
        except httpx.HTTPError as exc:
            return None, AdapterResult.fail(self._exception(operation, exc, channel_id=channel_id))
        data = self._json(response)
        if response.is_error or (isinstance(data, Mapping) and "error" in data):
            error = classify_meta_error(
                data,
                self.platform_name,
                operation,
                status_code=response.status_code if response.is_error else None,
            )
            return None, AdapterResult.fail(self._fail(operation, error, channel_id=channel_id))
        return data, None


class MetaMessengerAdapter(GraphAdapter):
    """Shared Messenger Platform behaviour; subclasses pin the webhook object."""

    webhook_object: str = ""
    page_fields: str = "id,name"
    required_permissions: tuple[str, ...] = ()
    conversation_params: Mapping[str, str] = {}

    # -- inbound -----------------------------------------------------------

    async def ingest_webhook(self, payload: Any, channel_id: str) -> MessageDTO | None:
        if not isinstance(payload, Mapping) or payload.get("object") != self.webhook_object:
            return None
        event = first_mapping(first_mapping(payload.get("entry")).get("messaging"))

        # read receipts, deliveries, reactions and edits carry no "message"
        message = event.get("message")
        if not isinstance(message, Mapping) or message.get("is_echo") or message.get("is_deleted"):
            return None

        sender_id = as_mapping(event.get("sender")).get("id")
        message_id = message.get("mid")
        if not sender_id or not message_id:
            return None

        body = optional_str(message.get("text")) or ""
        attachments = parse_meta_attachments(message)
        if not body and not attachments:
            return None
        attachments = await self._resolve_media(channel_id, attachments)

        return MessageDTO(
            external_id=str(message_id),
            body=body,
            sent_at=from_timestamp(event.get("timestamp"), milliseconds=True),
            sender_handle=str(sender_id),
            thread_external_id=str(sender_id),
            attachments=attachments,
        )

    # -- outbound ----------------------------------------------------------

    @staticmethod
    def _message_payload(message: SendMessageDTO) -> dict[str, Any]:
        if not message.attachments:
            return {"text": message.body}
        attachment = message.attachments[0]
        payload: dict[str, Any] = {
            "attachment": {
                "type": attachment.type.value,
                "payload": {"url": attachment.url, "is_reusable": True},
            }
        }
        if message.body and attachment.type is not AttachmentType.AUDIO:
            payload["text"] = message.body
        return payload

    def _meta_credentials(
        self, operation: str, credentials: ChannelCredentials, channel_id: str
    ) -> MetaCredentials | AdapterResult[Any]:
        if not isinstance(credentials, MetaCredentials):
            return self._wrong_credentials(operation, channel_id)
        missing = self._missing_fields(
            operation,
            {"pageId": credentials.page_id, "pageAccessToken": credentials.page_access_token},
            channel_id=channel_id,
        )
        if missing is not None:
            return AdapterResult.fail(missing)
        return credentials

    async def send_message(
        self, channel_id: str, message: SendMessageDTO, credentials: ChannelCredentials
    ) -> AdapterResult[dict[str, str]]:
        checked = self._meta_credentials("sendMessage", credentials, channel_id)
        if isinstance(checked, AdapterResult):
            return checked
        too_long = self._check_length(message, channel_id)
        if too_long is not None:
            return AdapterResult.fail(too_long)

        data, failure = await self._graph_call(
            "sendMessage",
            channel_id,
            "POST",
            f"{checked.page_id}/messages",
            json={
                "recipient": {"id": message.thread_external_id},
                "message": self._message_payload(message),
                "access_token": checked.page_access_token,
            },
        )
        if failure is not None:
            return failure
        message_id = data.get("message_id") if isinstance(data, Mapping) else None
        return self._sent(message_id, channel_id)

    async def list_threads(
        self, channel_id: str, credentials: ChannelCredentials
    ) -> AdapterResult[list[ThreadDTO]]:
        checked = self._meta_credentials("listThreads", credentials, channel_id)
        if isinstance(checked, AdapterResult):
            return checked

        data, failure = await self._graph_call(
            "listThreads",
            channel_id,
            "GET",
            f"{checked.page_id}/conversations",
            params={
                **self.conversation_params,
                "fields": "participants,updated_time",
                "access_token": checked.page_access_token,
            },
        )
        if failure is not None:
            return failure

        threads: list[ThreadDTO] = []
        for conversation in data.get("data", []) if isinstance(data, Mapping) else []:
            if not isinstance(conversation, Mapping) or not conversation.get("id"):
                continue
            participant = self._counterpart(conversation, checked.page_id)
            threads.append(
                ThreadDTO(
                    external_id=str(conversation["id"]),
                    participant_handle=str(
                        participant.get("id") or participant.get("username") or ""
                    ),
                    participant_name=participant.get("name") or participant.get("username"),
                    last_message_at=parse_graph_time(conversation.get("updated_time")),
                )
            )
        return AdapterResult.ok(threads)

    @staticmethod
    def _counterpart(conversation: Mapping[str, Any], page_id: str) -> Mapping[str, Any]:
        participants = (conversation.get("participants") or {}).get("data") or []
        participants = [item for item in participants if isinstance(item, Mapping)]
        for participant in participants:
            if str(participant.get("id")) != page_id:
                return participant
        return participants[0] if participants else {}

    async def subscribe_webhooks(
        self, channel_id: str, webhook_url: str, credentials: ChannelCredentials
    ) -> AdapterResult[None]:
        checked = self._meta_credentials("subscribeWebhooks", credentials, channel_id)
        if isinstance(checked, AdapterResult):
            return checked

        data, failure = await self._graph_call(
            "subscribeWebhooks",
            channel_id,
            "POST",
            f"{checked.page_id}/subscribed_apps",
            params={
                "subscribed_fields": SUBSCRIBED_FIELDS,
                "access_token": checked.page_access_token,
            },
        )
        if failure is not None:
            return failure
        if isinstance(data, Mapping) and data.get("success") is False:
            return AdapterResult.fail(
                self._fail(
                    "subscribeWebhooks",
                    adapter_error(
                        ErrorType.API,
                        f"{self.platform_name} refused the webhook subscription",
                        details={"platform": self.platform_name},
                    ),
                    channel_id=channel_id,
                )
            )
        logger.info(
            "webhook subscription registered",
            extra={
                "platform": self.platform_name,
                "channel_id": channel_id,
                "webhook_url": webhook_url,
            },
        )
        return AdapterResult.ok()

    # -- validation --------------------------------------------------------

    def _check_page(self, page_id: str, page: Mapping[str, Any]) -> ValidationResult | None:
        return None

    def _page_lookup_hint(self, page_id: str) -> str | None:
        return None

    async def validate_credentials(self, config: Mapping[str, Any]) -> ValidationResult:
        page_id = str(config.get("pageId") or "")
        token = str(config.get("pageAccessToken") or config.get("accessToken") or "")
        missing = self._missing_fields(
            "validateCredentials", {"pageId": page_id, "accessToken": token}
        )
        if missing is not None:
            return ValidationResult(valid=False, error=missing.message, details=missing.to_dict())

        headers = {"Authorization": f"Bearer {token}"}
        try:
            page_response = await self._request(
                "GET",
                f"{self._graph_url}/{page_id}",
                params={"fields": self.page_fields},
                headers=headers,
                validation=True,
            )
            page = self._json(page_response)
            if page_response.is_error:
                error = classify_meta_error(
                    page,
                    self.platform_name,
                    "validateCredentials",
                    status_code=page_response.status_code,
                )
                hint = self._page_lookup_hint(page_id)
                return ValidationResult(
                    valid=False,
                    error=hint or error.message,
                    details=error.to_dict(),
                )

            linked = self._check_page(page_id, page if isinstance(page, Mapping) else {})
            if linked is not None:
                return linked

            permissions_response = await self._request(
                "GET", f"{self._graph_url}/me/permissions", headers=headers, validation=True
            )
        except httpx.HTTPError as exc:
            error = self._exception("validateCredentials", exc)
            return ValidationResult(valid=False, error=error.message, details=error.to_dict())

        permissions = self._json(permissions_response)
        if permissions_response.is_error:
            error = classify_meta_error(
                permissions,
                self.platform_name,
                "validateCredentials",
                status_code=permissions_response.status_code,
            )
            return ValidationResult(valid=False, error=error.message, details=error.to_dict())

        granted = {
            str(item.get("permission"))
            for item in (permissions.get("data") or [] if isinstance(permissions, Mapping) else [])
            if isinstance(item, Mapping) and item.get("status") == "granted"
        }
        absent = [name for name in self.required_permissions if name not in granted]
        if absent:
            error = adapter_error(
                ErrorType.PERMISSION_DENIED,
                f"missing permissions: {', '.join(absent)}",
                details={"platform": self.platform_name, "missing": absent},
            )
            return ValidationResult(valid=False, error=error.message, details=error.to_dict())

        return ValidationResult(
            valid=True,
            details={
                "page_id": page_id,
                "page_name": page.get("name") if isinstance(page, Mapping) else None,
                "permissions": sorted(granted),
            },
        )


class InstagramAdapter(MetaMessengerAdapter):
    channel_type = ChannelType.INSTAGRAM
    platform_name = "Instagram"
    webhook_object = "instagram"
    page_fields = "id,name,instagram_business_account"
    required_permissions = (
        "pages_messaging",
        "instagram_manage_messages",
        "pages_manage_metadata",
    )
    conversation_params = {"platform": "instagram"}

    def _page_lookup_hint(self, page_id: str) -> str | None:
        if page_id.startswith(_INSTAGRAM_ACCOUNT_PREFIX):
            return (
                f"{page_id} looks like an Instagram Business Account id; "
                "use the id of the Facebook Page it is linked to"
            )
        return None

    def _check_page(self, page_id: str, page: Mapping[str, Any]) -> ValidationResult | None:
        account = page.get("instagram_business_account")
        if isinstance(account, Mapping) and account.get("id"):
            return None
        error = adapter_error(
            ErrorType.VALIDATION,
            "the Facebook Page has no linked Instagram Business Account",
            details={"platform": self.platform_name, "page_id": page_id},
        )
        return ValidationResult(valid=False, error=error.message, details=error.to_dict())


class FacebookAdapter(MetaMessengerAdapter):
    channel_type = ChannelType.FACEBOOK
    platform_name = "Facebook"
    webhook_object = "page"
    page_fields = "id,name,category"
    required_permissions = ("pages_messaging", "pages_manage_metadata")
