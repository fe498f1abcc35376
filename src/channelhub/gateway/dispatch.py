"""Routing of verified webhook payloads to the channels they belong to."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from channelhub.adapters.registry import AdapterRegistry
from channelhub.core.domain import ChannelStatus, ChannelType
from channelhub.credentials.repository import ChannelRecord, ChannelRepository

from .sinks import InboundEvent, InboundSink

logger = logging.getLogger(__name__)

META_OBJECTS: dict[str, ChannelType] = {
    "instagram": ChannelType.INSTAGRAM,
    "page": ChannelType.FACEBOOK,
}

_ACCOUNT_FIELDS = ("pageId", "phoneNumberId", "businessAccountId", "appId")


def payload_account_id(payload: Any) -> str | None:
    """Provider account the delivery is addressed to, when the payload names one."""

    if not isinstance(payload, Mapping):
        return None
    entries = payload.get("entry")
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], Mapping):
        return None
    entry = entries[0]
    changes = entry.get("changes")
    if isinstance(changes, list) and changes and isinstance(changes[0], Mapping):
        value = changes[0].get("value")
        metadata = value.get("metadata") if isinstance(value, Mapping) else None
        if isinstance(metadata, Mapping) and metadata.get("phone_number_id"):
            return str(metadata["phone_number_id"])
    return str(entry["id"]) if entry.get("id") else None


def _account_ids(record: ChannelRecord) -> set[str]:
    credentials = record.credentials or {}
    return {str(credentials[name]) for name in _ACCOUNT_FIELDS if credentials.get(name)}


class WebhookDispatcher:
    """Ingests one payload for every matching active channel and hands results to a sink."""

    def __init__(
        self,
        registry: AdapterRegistry,
        repository: ChannelRepository,
        sink: InboundSink,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._sink = sink

    async def _targets(self, channel_type: ChannelType, payload: Any) -> list[ChannelRecord]:
        channels = await self._repository.list_by_type(channel_type, status=ChannelStatus.ACTIVE)
        account_id = payload_account_id(payload)
        if account_id is None:
            return channels
        matched = [record for record in channels if account_id in _account_ids(record)]
        return matched or channels

    async def dispatch(self, channel_type: ChannelType, payload: Any) -> list[InboundEvent]:
        adapter = self._registry.get(channel_type)
        events: list[InboundEvent] = []
        for record in await self._targets(channel_type, payload):
            message = await adapter.ingest_webhook(payload, record.id)
            if message is None:
                continue
            event = InboundEvent(
                tenant_id=record.tenant_id,
                channel_id=record.id,
                channel_type=channel_type,
                message=message,
            )
            await self._sink.deliver(event)
            events.append(event)

        logger.info(
            "webhook dispatched",
            extra={"channel_type": channel_type.value, "delivered": len(events)},
        )
        return events
