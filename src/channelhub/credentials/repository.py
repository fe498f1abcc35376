"""Channel persistence behind a small async protocol.

Every write carries the row version the caller read; a mismatch raises
``ConcurrentUpdateError`` instead of silently overwriting a newer row.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from channelhub.core.db.models import Channel
from channelhub.core.domain import ChannelStatus, ChannelType
from channelhub.core.errors import ConcurrentUpdateError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChannelRecord:
    """A channel row with its opaque ``{type, credentials, config}`` metadata."""

    id: str
    tenant_id: str
    type: ChannelType
    display_name: str = ""
    status: ChannelStatus = ChannelStatus.ACTIVE
    meta: dict[str, Any] = field(default_factory=dict)
    version: int = 1

    @property
    def credentials(self) -> dict[str, Any] | None:
        value = self.meta.get("credentials")
        return value if isinstance(value, dict) else None

    @property
    def config(self) -> dict[str, Any]:
        value = self.meta.get("config")
        return value if isinstance(value, dict) else {}

    def with_meta(self, **changes: Any) -> ChannelRecord:
        meta = copy.deepcopy(self.meta)
        meta.update(changes)
        return replace(self, meta=meta)


class ChannelRepository(Protocol):
    async def get(self, channel_id: str) -> ChannelRecord | None:
        ...

    async def list_by_tenant(self, tenant_id: str) -> list[ChannelRecord]:
        ...

    async def list_by_type(
        self, channel_type: ChannelType, *, status: ChannelStatus | None = None
    ) -> list[ChannelRecord]:
        ...

    async def save(self, record: ChannelRecord, *, expected_version: int) -> ChannelRecord:
        ...


async def require_channel(repository: ChannelRepository, channel_id: str) -> ChannelRecord:
    record = await repository.get(channel_id)
    if record is None:
        raise NotFoundError("channel not found", details={"channel_id": channel_id})
    return record


class InMemoryChannelRepository:
    """Process-local repository used by tests and the development server."""

    def __init__(self, records: list[ChannelRecord] | None = None) -> None:
        self._records: dict[str, ChannelRecord] = {}
        for record in records or []:
            self._records[record.id] = copy.deepcopy(record)

    def add(self, record: ChannelRecord) -> ChannelRecord:
        self._records[record.id] = copy.deepcopy(record)
        return record

    async def get(self, channel_id: str) -> ChannelRecord | None:
        record = self._records.get(channel_id)
        return copy.deepcopy(record) if record is not None else None

    async def list_by_tenant(self, tenant_id: str) -> list[ChannelRecord]:
        return [
            copy.deepcopy(record)
            for record in self._records.values()
            if record.tenant_id == tenant_id
        ]

    async def list_by_type(
        self, channel_type: ChannelType, *, status: ChannelStatus | None = None
    ) -> list[ChannelRecord]:
        return [
            copy.deepcopy(record)
            for record in self._records.values()
            if record.type is channel_type and (status is None or record.status is status)
        ]

    async def save(self, record: ChannelRecord, *, expected_version: int) -> ChannelRecord:
        current = self._records.get(record.id)
        if current is None:
            raise NotFoundError("channel not found", details={"channel_id": record.id})
        if current.version != expected_version:
            raise ConcurrentUpdateError(
                record.id, expected=expected_version, actual=current.version
            )
        stored = replace(copy.deepcopy(record), version=expected_version + 1)
        self._records[record.id] = stored
        return copy.deepcopy(stored)


def _to_record(row: Channel) -> ChannelRecord:
    return ChannelRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        type=ChannelType.parse(row.type),
        display_name=row.display_name,
        status=ChannelStatus(row.status),
        meta=copy.deepcopy(row.meta_json or {}),
        version=row.row_version,
    )


class SqlChannelRepository:
    """SQLModel-backed repository; blocking calls run in a worker thread."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def get(self, channel_id: str) -> ChannelRecord | None:
        return await asyncio.to_thread(self._get_sync, channel_id)

    async def list_by_tenant(self, tenant_id: str) -> list[ChannelRecord]:
        return await asyncio.to_thread(self._list_sync, tenant_id=tenant_id)

    async def list_by_type(
        self, channel_type: ChannelType, *, status: ChannelStatus | None = None
    ) -> list[ChannelRecord]:
        return await asyncio.to_thread(
            self._list_sync, channel_type=channel_type, status=status
        )

    async def save(self, record: ChannelRecord, *, expected_version: int) -> ChannelRecord:
        return await asyncio.to_thread(self._save_sync, record, expected_version)

    def create(self, record: ChannelRecord) -> ChannelRecord:
        with Session(self._engine) as session:
            session.add(
                Channel(
                    id=record.id,
                    tenant_id=record.tenant_id,
                    type=record.type.value,
                    display_name=record.display_name,
                    status=record.status.value,
                    meta_json=record.meta,
                    row_version=record.version,
                )
            )
            session.commit()
        return record

    def _get_sync(self, channel_id: str) -> ChannelRecord | None:
        with Session(self._engine) as session:
            row = session.get(Channel, channel_id)
            return _to_record(row) if row is not None else None

    def _list_sync(
        self,
        *,
        tenant_id: str | None = None,
        channel_type: ChannelType | None = None,
        status: ChannelStatus | None = None,
    ) -> list[ChannelRecord]:
        statement = select(Channel)
        if tenant_id is not None:
            statement = statement.where(Channel.tenant_id == tenant_id)
        if channel_type is not None:
            statement = statement.where(Channel.type == channel_type.value)
        if status is not None:
            statement = statement.where(Channel.status == status.value)
        with Session(self._engine) as session:
            return [_to_record(row) for row in session.exec(statement)]

    def _save_sync(self, record: ChannelRecord, expected_version: int) -> ChannelRecord:
        statement = (
            update(Channel)
            .where(Channel.id == record.id, Channel.row_version == expected_version)
            .values(
                {
                    Channel.display_name: record.display_name,
                    Channel.status: record.status.value,
                    Channel.meta_json: record.meta,
                    Channel.row_version: expected_version + 1,
                }
            )
        )
        with Session(self._engine) as session:
            result = session.execute(statement)
            if result.rowcount != 1:
                session.rollback()
                current = session.get(Channel, record.id)
                if current is None:
                    raise NotFoundError("channel not found", details={"channel_id": record.id})
                raise ConcurrentUpdateError(
                    record.id, expected=expected_version, actual=current.row_version
                )
            session.commit()
        logger.debug(
            "channel row updated",
            extra={"channel_id": record.id, "version": expected_version + 1},
        )
        return replace(record, version=expected_version + 1)
