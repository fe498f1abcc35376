from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from channelhub.core.domain import ChannelStatus, ChannelType, utcnow
from channelhub.core.errors import (
    ConcurrentUpdateError,
    EncryptionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from channelhub.credentials.models import (
    CredentialStatus,
    TikTokCredentials,
    dump_credentials,
    with_refreshed_token,
)
from channelhub.credentials.repository import ChannelRecord, InMemoryChannelRepository
from channelhub.credentials.store import CredentialStore, is_hybrid
from channelhub.security.encryption import CredentialCipher
from tests.factories import (
    AGENT_ID,
    MASTER_KEY,
    OTHER_KEY,
    OWNER_ID,
    TENANT_ID,
    meta_credentials,
)

pytestmark = pytest.mark.unit


def _empty_channel(repository: InMemoryChannelRepository, channel_id: str = "ch-1") -> None:
    repository.add(
        ChannelRecord(
            id=channel_id,
            tenant_id=TENANT_ID,
            type=ChannelType.FACEBOOK,
            status=ChannelStatus.INACTIVE,
            meta={"type": "facebook", "config": {"webhookUrl": "https://hub/wh"}},
        )
    )


@pytest.mark.asyncio
async def test_save_seals_sensitive_fields(store, repository) -> None:
    _empty_channel(repository)

    await store.save("ch-1", meta_credentials(), tenant_id=TENANT_ID, user_id=OWNER_ID)

    record = await repository.get("ch-1")
    stored = record.credentials
    assert is_hybrid(stored)
    assert "pageAccessToken" not in stored
    assert "refreshToken" not in stored
    assert stored["pageId"] == "123456789012345"
    assert "page-token" not in str(stored)
    assert set(stored["encrypted"]["encryptedFields"]) == {"pageAccessToken", "refreshToken"}
    assert record.status is ChannelStatus.ACTIVE
    assert record.config == {"webhookUrl": "https://hub/wh", "encryptionEnabled": True}
    assert record.version == 2


@pytest.mark.asyncio
async def test_saved_credentials_read_back(store, repository) -> None:
    _empty_channel(repository)
    await store.save("ch-1", meta_credentials(), tenant_id=TENANT_ID, user_id=OWNER_ID)

    decrypted = await store.get_decrypted("ch-1", tenant_id=TENANT_ID, user_id=AGENT_ID)

    assert decrypted.access_token == "page-token"
    assert decrypted.status is CredentialStatus.ACTIVE
    assert decrypted.credentials.refresh_token == "meta-refresh"


@pytest.mark.asyncio
async def test_agents_cannot_save(store, repository) -> None:
    _empty_channel(repository)

    with pytest.raises(UnauthorizedError):
        await store.save("ch-1", meta_credentials(), tenant_id=TENANT_ID, user_id=AGENT_ID)


@pytest.mark.asyncio
async def test_strangers_cannot_read(store, add_channel) -> None:
    add_channel("ch-1", meta_credentials())

    with pytest.raises(UnauthorizedError):
        await store.get_decrypted("ch-1", tenant_id=TENANT_ID, user_id="someone")


@pytest.mark.asyncio
async def test_other_tenant_sees_not_found(store, add_channel) -> None:
    add_channel("ch-1", meta_credentials(), tenant_id="tenant-2")

    with pytest.raises(NotFoundError):
        await store.get_decrypted("ch-1", tenant_id=TENANT_ID)


@pytest.mark.asyncio
async def test_save_rejects_mismatched_platform(store, repository) -> None:
    _empty_channel(repository)
    credentials = TikTokCredentials(access_token="tt")

    with pytest.raises(ValidationError):
        await store.save("ch-1", credentials, tenant_id=TENANT_ID, user_id=OWNER_ID)


@pytest.mark.asyncio
async def test_missing_channel_raises_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        await store.get_decrypted("missing")


@pytest.mark.asyncio
async def test_expired_credentials_are_marked_on_read(store, repository, add_channel) -> None:
    add_channel("ch-1", meta_credentials(expires_at=utcnow() - timedelta(minutes=1)))

    decrypted = await store.get_decrypted("ch-1")

    assert decrypted.status is CredentialStatus.EXPIRED
    record = await repository.get("ch-1")
    assert record.status is ChannelStatus.ERROR
    assert store.open(record).status is CredentialStatus.EXPIRED


@pytest.mark.asyncio
async def test_valid_credentials_are_untouched_on_read(store, repository, add_channel) -> None:
    add_channel("ch-1", meta_credentials(expires_at=utcnow() + timedelta(days=1)))

    await store.get_decrypted("ch-1")

    record = await repository.get("ch-1")
    assert record.version == 1
    assert record.status is ChannelStatus.ACTIVE


@pytest.mark.asyncio
async def test_legacy_plaintext_credentials_are_readable(store, repository) -> None:
    repository.add(
        ChannelRecord(
            id="ch-1",
            tenant_id=TENANT_ID,
            type=ChannelType.INSTAGRAM,
            meta={"credentials": {"accessToken": "plain", "pageId": "123456789012345"}},
        )
    )

    decrypted = await store.get_decrypted("ch-1")

    assert decrypted.access_token == "plain"


@pytest.mark.asyncio
async def test_migrate_to_encrypted_is_idempotent(store, repository) -> None:
    plaintext = dump_credentials(meta_credentials())
    repository.add(
        ChannelRecord(
            id="ch-1",
            tenant_id=TENANT_ID,
            type=ChannelType.FACEBOOK,
            meta={"credentials": plaintext},
        )
    )

    first = await store.migrate_to_encrypted("ch-1", tenant_id=TENANT_ID, user_id=OWNER_ID)
    second = await store.migrate_to_encrypted("ch-1", tenant_id=TENANT_ID, user_id=OWNER_ID)

    record = await repository.get("ch-1")
    assert (first, second) == (True, False)
    assert is_hybrid(record.credentials)
    assert record.config["encryptionEnabled"] is True
    assert (await store.get_decrypted("ch-1")).access_token == "page-token"


@pytest.mark.asyncio
async def test_mark_invalid_records_reason(store, repository, add_channel) -> None:
    add_channel("ch-1", meta_credentials())

    await store.mark_invalid("ch-1", "token revoked")

    record = await repository.get("ch-1")
    assert record.status is ChannelStatus.ERROR
    assert record.config["lastError"] == "token revoked"
    assert store.open(record).status is CredentialStatus.INVALID


@pytest.mark.asyncio
async def test_update_credentials_keeps_encrypted_fields(store, repository, add_channel) -> None:
    add_channel("ch-1", meta_credentials())

    await store.update_credentials(
        "ch-1",
        lambda creds: with_refreshed_token(creds, "fresh", expires_at=None),
        config_changes={"lastRefreshAt": "now"},
    )

    record = await repository.get("ch-1")
    assert "fresh" not in str(record.credentials)
    assert record.config["lastRefreshAt"] == "now"
    assert store.open(record).page_access_token == "fresh"


class _ConflictingRepository(InMemoryChannelRepository):
    """Bumps the stored row between every read and write."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def save(self, record: ChannelRecord, *, expected_version: int) -> ChannelRecord:
        if self.conflicts:
            self.conflicts -= 1
            current = await self.get(record.id)
            self.add(replace(current, version=current.version + 1))
        return await super().save(record, expected_version=expected_version)


def _store_with(repository: InMemoryChannelRepository, access_policy) -> CredentialStore:
    return CredentialStore(repository, CredentialCipher(MASTER_KEY), access_policy)


@pytest.mark.asyncio
async def test_write_retries_once_after_version_conflict(access_policy) -> None:
    repository = _ConflictingRepository(conflicts=1)
    store = _store_with(repository, access_policy)
    _empty_channel(repository)

    await store.save("ch-1", meta_credentials(), tenant_id=TENANT_ID, user_id=OWNER_ID)

    assert is_hybrid((await repository.get("ch-1")).credentials)


@pytest.mark.asyncio
async def test_persistent_version_conflict_is_raised(access_policy) -> None:
    repository = _ConflictingRepository(conflicts=5)
    store = _store_with(repository, access_policy)
    _empty_channel(repository)

    with pytest.raises(ConcurrentUpdateError):
        await store.save("ch-1", meta_credentials(), tenant_id=TENANT_ID, user_id=OWNER_ID)


@pytest.mark.asyncio
async def test_rotate_key_reseals_and_is_idempotent(
    store, repository, add_channel, access_policy
) -> None:
    add_channel("ch-1", meta_credentials())
    add_channel("ch-2", meta_credentials(page_access_token="second"))
    add_channel("ch-3")

    first = await store.rotate_key(
        TENANT_ID, user_id=OWNER_ID, old_key=MASTER_KEY, new_key=OTHER_KEY
    )
    second = await store.rotate_key(
        TENANT_ID, user_id=OWNER_ID, old_key=MASTER_KEY, new_key=OTHER_KEY
    )

    assert (first.migrated_count, first.skipped_count, first.success) == (2, 0, True)
    assert (second.migrated_count, second.skipped_count, second.success) == (0, 2, True)

    rotated = CredentialCipher(OTHER_KEY)
    record = await repository.get("ch-2")
    assert store.open(record, cipher=rotated).page_access_token == "second"
    with pytest.raises(EncryptionError):
        store.open(record, cipher=CredentialCipher(MASTER_KEY))
    rotated_store = CredentialStore(repository, rotated, access_policy)
    assert (await rotated_store.get_decrypted("ch-2")).access_token == "second"


@pytest.mark.asyncio
async def test_rotate_key_leaves_other_tenants_readable(store, repository, add_channel) -> None:
    add_channel("ch-a", meta_credentials(page_access_token="tenant-1-token"))
    add_channel("ch-b", meta_credentials(page_access_token="tenant-2-token"), tenant_id="tenant-2")

    report = await store.rotate_key(
        TENANT_ID, user_id=OWNER_ID, old_key=MASTER_KEY, new_key=OTHER_KEY
    )

    assert report.migrated_count == 1
    assert (await store.get_decrypted("ch-b")).access_token == "tenant-2-token"
    rotated = await repository.get("ch-a")
    assert store.open(rotated, cipher=CredentialCipher(OTHER_KEY)).page_access_token == (
        "tenant-1-token"
    )


@pytest.mark.asyncio
async def test_rotate_key_reports_unreadable_channels(store, repository, add_channel) -> None:
    add_channel("ch-1", meta_credentials())
    foreign = CredentialStore(repository, CredentialCipher("x" * 30 + "-unrelated-9"), None)
    repository.add(
        ChannelRecord(
            id="ch-2",
            tenant_id=TENANT_ID,
            type=ChannelType.FACEBOOK,
            meta={"credentials": foreign.seal(meta_credentials())},
        )
    )

    report = await store.rotate_key(
        TENANT_ID, user_id=OWNER_ID, old_key=MASTER_KEY, new_key=OTHER_KEY
    )

    assert report.migrated_count == 1
    assert report.error_count == 1
    assert "ch-2" in report.errors
    assert not report.success


@pytest.mark.asyncio
async def test_rotate_key_requires_manager(store) -> None:
    with pytest.raises(UnauthorizedError):
        await store.rotate_key(
            TENANT_ID, user_id=AGENT_ID, old_key=MASTER_KEY, new_key=OTHER_KEY
        )
