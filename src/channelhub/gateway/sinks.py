"""Destinations for canonical inbound messages produced by the webhook gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from channelhub.core.domain import ChannelType, MessageDTO
from channelhub.utils.retry import RetryConfig, RetryState, async_retry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InboundEvent:
    """A canonical message tagged with the channel it arrived on."""

    tenant_id: str
    channel_id: str
    channel_type: ChannelType
    message: MessageDTO

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "channel_id": self.channel_id,
            "channel_type": self.channel_type.value,
            "message": self.message.to_dict(),
        }


class InboundSink(Protocol):
    async def deliver(self, event: InboundEvent) -> None:
        ...

    async def close(self) -> None:
        ...


class LoggingInboundSink:
    """Records inbound messages in the log; used when no forward URL is set."""

    async def deliver(self, event: InboundEvent) -> None:
        logger.info(
            "inbound message received",
            extra={
                "tenant_id": event.tenant_id,
                "channel_id": event.channel_id,
                "channel_type": event.channel_type.value,
                "external_id": event.message.external_id,
                "attachments": len(event.message.attachments),
            },
        )

    async def close(self) -> None:
        return None


async def _log_retry(state: RetryState) -> None:
    logger.warning(
        "retrying inbound forward",
        extra={"attempt": state.attempt, "delay": round(state.delay, 2)},
    )


class HttpInboundForwarder:
    """POSTs each inbound event to the inbox service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._post = async_retry(
            config=retry_config or RetryConfig(attempts=3, base_delay=0.2, max_delay=2.0),
            exceptions=(httpx.TransportError,),
            before_sleep=_log_retry,
        )(self._client.post)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def deliver(self, event: InboundEvent) -> None:
        try:
            response = await self._post(self._url, json=event.to_dict())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "inbox rejected inbound message",
                extra={
                    "status": exc.response.status_code,
                    "channel_id": event.channel_id,
                    "external_id": event.message.external_id,
                },
            )
            raise
        except httpx.HTTPError:
            logger.exception(
                "failed to forward inbound message", extra={"channel_id": event.channel_id}
            )
            raise
