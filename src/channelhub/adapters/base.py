"""Channel adapter interface and the shared HTTP plumbing behind it."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from prometheus_client import Counter

from channelhub.core.domain import (
    AdapterResult,
    Attachment,
    ChannelType,
    MessageDTO,
    SendMessageDTO,
    ThreadDTO,
    ValidationResult,
)
from channelhub.core.errors import CoreError
from channelhub.credentials.models import ChannelCredentials
from channelhub.security.webhooks import verify_signature

from .errors import (
    AdapterError,
    ErrorType,
    adapter_error,
    classify,
    log_adapter_error,
)
from .media import CredentialSource, MediaMapper

logger = logging.getLogger(__name__)

MESSAGES_SENT = Counter(
    "channel_messages_sent_total",
    "Outbound messages accepted by a provider.",
    ["platform"],
)

DEFAULT_SEND_TIMEOUT = 30.0
DEFAULT_VALIDATION_TIMEOUT = 8.0


class ChannelAdapter(Protocol):
    """Uniform contract implemented by every messaging platform."""

    channel_type: ChannelType

    async def subscribe_webhooks(
        self, channel_id: str, webhook_url: str, credentials: ChannelCredentials
    ) -> AdapterResult[None]:
        ...

    async def ingest_webhook(self, payload: Any, channel_id: str) -> MessageDTO | None:
        ...

    async def send_message(
        self, channel_id: str, message: SendMessageDTO, credentials: ChannelCredentials
    ) -> AdapterResult[dict[str, str]]:
        ...

    async def list_threads(
        self, channel_id: str, credentials: ChannelCredentials
    ) -> AdapterResult[list[ThreadDTO]]:
        ...

    def verify_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> bool:
        ...

    async def validate_credentials(self, config: Mapping[str, Any]) -> ValidationResult:
        ...


def as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def first_mapping(value: Any) -> Mapping[str, Any]:
    """First element of a webhook list, or an empty mapping when the shape is off."""

    if isinstance(value, list) and value:
        return as_mapping(value[0])
    return {}


def optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def synthesize_message_id(platform: str) -> str:
    """Stand-in id when a provider accepts a message without returning one."""

    return f"{platform}_{uuid.uuid4().hex}"


class HttpChannelAdapter:
    """Base class wiring an ``httpx.AsyncClient`` with bounded timeouts.

    Subclasses provide the platform specifics; 4xx responses are returned to
    them unraised so provider error bodies can be classified.
    """

    channel_type: ChannelType
    platform_name: str = "Channel"
    max_message_length: int = 2000

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        validation_timeout: float = DEFAULT_VALIDATION_TIMEOUT,
        allow_unsigned_webhooks: bool = False,
        media_mapper: MediaMapper | None = None,
        credential_source: CredentialSource | None = None,
    ) -> None:
        self._client = client
        self._send_timeout = send_timeout
        self._validation_timeout = validation_timeout
        self._allow_unsigned = allow_unsigned_webhooks
        self._media = media_mapper
        self._credentials = credential_source

    async def _request(
        self,
        method: str,
        url: str,
        *,
        validation: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        timeout = self._validation_timeout if validation else self._send_timeout
        return await self._client.request(method, url, timeout=timeout, **kwargs)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {}

    def verify_webhook(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> bool:
        return verify_signature(
            payload,
            signature,
            secret,
            platform=self.channel_type.value,
            allow_unsigned=self._allow_unsigned,
        )

    def _fail(
        self,
        operation: str,
        error: AdapterError,
        *,
        channel_id: str | None = None,
        **context: Any,
    ) -> AdapterError:
        log_adapter_error(self.platform_name, operation, error, channel_id=channel_id, **context)
        return error

    def _exception(
        self, operation: str, exc: Exception, *, channel_id: str | None = None
    ) -> AdapterError:
        error = classify(exc, self.platform_name, operation)
        return self._fail(operation, error, channel_id=channel_id)

    def _check_length(self, message: SendMessageDTO, channel_id: str) -> AdapterError | None:
        if len(message.body) <= self.max_message_length:
            return None
        return self._fail(
            "sendMessage",
            adapter_error(
                ErrorType.MESSAGE_TOO_LONG,
                f"message exceeds the {self.max_message_length} character limit",
                details={
                    "platform": self.platform_name,
                    "length": len(message.body),
                    "limit": self.max_message_length,
                },
            ),
            channel_id=channel_id,
        )

    def _missing_fields(
        self, operation: str, fields: Mapping[str, Any], *, channel_id: str | None = None
    ) -> AdapterError | None:
        missing = sorted(name for name, value in fields.items() if not value)
        if not missing:
            return None
        return self._fail(
            operation,
            adapter_error(
                ErrorType.INVALID_CREDENTIALS
                if operation != "validateCredentials"
                else ErrorType.VALIDATION,
                f"missing required fields: {', '.join(missing)}",
                details={"platform": self.platform_name, "missing": missing},
            ),
            channel_id=channel_id,
        )

    def _sent(self, external_id: str | None, channel_id: str) -> AdapterResult[dict[str, str]]:
        if not external_id:
            external_id = synthesize_message_id(self.channel_type.value)
            logger.info(
                "provider response carried no message id; synthesized one",
                extra={"platform": self.platform_name, "channel_id": channel_id},
            )
        MESSAGES_SENT.labels(self.channel_type.value).inc()
        return AdapterResult.ok({"external_id": external_id})

    async def _resolve_media(
        self, channel_id: str, attachments: list[Attachment]
    ) -> list[Attachment]:
        """Swap provider media ids for URLs; failures keep the original items."""

        if not attachments or self._media is None or self._credentials is None:
            return attachments
        try:
            decrypted = await self._credentials.get_decrypted(channel_id)
        except CoreError as exc:
            logger.warning(
                "credentials unavailable for media resolution",
                extra={"channel_id": channel_id, "error": exc.message},
            )
            return attachments
        return await self._media.map_attachments(
            attachments, self.channel_type, decrypted.credentials
        )

    def _wrong_credentials(self, operation: str, channel_id: str) -> AdapterResult[Any]:
        return AdapterResult.fail(
            self._fail(
                operation,
                adapter_error(
                    ErrorType.INVALID_CREDENTIALS,
                    f"{self.platform_name} channel holds credentials for another platform",
                    details={"platform": self.platform_name},
                ),
                channel_id=channel_id,
            )
        )
