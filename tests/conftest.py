from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from channelhub.core.domain import ChannelStatus, ChannelType
from channelhub.credentials.access import MembershipRole, StaticAccessPolicy
from channelhub.credentials.models import ChannelCredentials
from channelhub.credentials.repository import ChannelRecord, InMemoryChannelRepository
from channelhub.credentials.store import CredentialStore
from channelhub.security.encryption import CredentialCipher
from tests.factories import AGENT_ID, MASTER_KEY, OWNER_ID, TENANT_ID


@pytest.fixture()
def cipher() -> CredentialCipher:
    return CredentialCipher(MASTER_KEY)


@pytest.fixture()
def access_policy() -> StaticAccessPolicy:
    return StaticAccessPolicy(
        {
            (TENANT_ID, OWNER_ID): MembershipRole.OWNER,
            (TENANT_ID, AGENT_ID): MembershipRole.AGENT,
        }
    )


@pytest.fixture()
def repository() -> InMemoryChannelRepository:
    return InMemoryChannelRepository()


@pytest.fixture()
def store(
    repository: InMemoryChannelRepository,
    cipher: CredentialCipher,
    access_policy: StaticAccessPolicy,
) -> CredentialStore:
    return CredentialStore(repository, cipher, access_policy)


@pytest.fixture()
def add_channel(
    repository: InMemoryChannelRepository, store: CredentialStore
) -> Callable[..., ChannelRecord]:
    """Insert a channel whose credentials are sealed the way the store seals them."""

    def _add(
        channel_id: str,
        credentials: ChannelCredentials | None = None,
        *,
        channel_type: ChannelType = ChannelType.FACEBOOK,
        tenant_id: str = TENANT_ID,
        status: ChannelStatus = ChannelStatus.ACTIVE,
        config: dict[str, Any] | None = None,
    ) -> ChannelRecord:
        meta: dict[str, Any] = {"type": channel_type.value, "config": dict(config or {})}
        if credentials is not None:
            meta["credentials"] = store.seal(credentials)
        record = ChannelRecord(
            id=channel_id,
            tenant_id=tenant_id,
            type=channel_type,
            display_name=channel_id,
            status=status,
            meta=meta,
        )
        return repository.add(record)

    return _add
