"""Encrypted credential storage attached to channel records.

Credentials are persisted as a hybrid structure: non-sensitive fields stay in
clear so a channel stays queryable, while the sensitive subset is sealed in an
``EncryptedEnvelope``. Plaintext tokens only ever exist in process memory.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine

from channelhub.core.config import DEFAULT_FIELDS_TO_ENCRYPT, AppSettings
from channelhub.core.domain import ChannelStatus, utcnow
from channelhub.core.errors import (
    ConcurrentUpdateError,
    CredentialError,
    EncryptionError,
    NotFoundError,
    ValidationError,
)
from channelhub.security.encryption import CredentialCipher

from .access import ANY_ROLE, MANAGER_ROLES, AccessPolicy, SqlAccessPolicy
from .models import (
    ChannelCredentials,
    CredentialStatus,
    are_credentials_expired,
    dump_credentials,
    get_access_token,
    parse_credentials,
    platform_for,
    with_status,
)
from .repository import (
    ChannelRecord,
    ChannelRepository,
    SqlChannelRepository,
    require_channel,
)

logger = logging.getLogger(__name__)

ENCRYPTION_VERSION = "1.0"
_WRITE_ATTEMPTS = 2


@dataclass(slots=True)
class DecryptedCredentials:
    credentials: ChannelCredentials
    access_token: str
    status: CredentialStatus
    expires_at: datetime | None


@dataclass(slots=True)
class RotationReport:
    migrated_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.error_count == 0


def is_hybrid(stored: Any) -> bool:
    return isinstance(stored, dict) and isinstance(stored.get("encrypted"), dict)


class CredentialStore:
    """Get, save, migrate and rotate per-channel credentials.

    All writes are read-modify-write cycles serialised by a per-channel
    ``asyncio.Lock`` and guarded by the repository's row-version check, so a
    send-path expiry update cannot clobber a concurrent refresh.
    """

    def __init__(
        self,
        repository: ChannelRepository,
        cipher: CredentialCipher,
        access_policy: AccessPolicy,
        *,
        fields_to_encrypt: Iterable[str] = DEFAULT_FIELDS_TO_ENCRYPT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._access = access_policy
        self._fields_to_encrypt = tuple(fields_to_encrypt)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def repository(self) -> ChannelRepository:
        return self._repository

    def _lock_for(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    # -- sealing -----------------------------------------------------------

    def seal(
        self,
        credentials: ChannelCredentials,
        fields_to_encrypt: Iterable[str] | None = None,
        *,
        cipher: CredentialCipher | None = None,
    ) -> dict[str, Any]:
        """Split ``credentials`` into clear fields plus a sealed envelope."""

        fields = tuple(fields_to_encrypt or self._fields_to_encrypt)
        clear = dump_credentials(credentials)
        sensitive = {name: clear.pop(name) for name in fields if name in clear}
        envelope = (cipher or self._cipher).seal(sensitive)
        clear["encrypted"] = {
            "envelope": envelope.to_dict(),
            "encryptedAt": self._clock().isoformat(),
            "encryptionVersion": ENCRYPTION_VERSION,
            "encryptedFields": sorted(sensitive),
        }
        return clear

    def open(
        self,
        record: ChannelRecord,
        *,
        cipher: CredentialCipher | None = None,
    ) -> ChannelCredentials:
        """Rebuild typed credentials from a stored record."""

        stored = record.credentials
        if stored is None:
            raise CredentialError(
                "channel has no credentials", details={"channel_id": record.id}
            )
        if not is_hybrid(stored):
            return parse_credentials(dict(stored), record.type)

        clear = {key: value for key, value in stored.items() if key != "encrypted"}
        sealed = stored["encrypted"]
        secrets = (cipher or self._cipher).open(sealed.get("envelope"))
        if not isinstance(secrets, dict):
            raise CredentialError(
                "decrypted credential payload is corrupt", details={"channel_id": record.id}
            )
        return parse_credentials({**clear, **secrets}, record.type)

    def _encrypted_fields(self, record: ChannelRecord) -> tuple[str, ...] | None:
        stored = record.credentials
        if is_hybrid(stored):
            fields = stored["encrypted"].get("encryptedFields")
            if fields:
                return tuple(set(fields) | set(self._fields_to_encrypt))
        return None

    # -- writes ------------------------------------------------------------

    async def _write(
        self, channel_id: str, build: Callable[[ChannelRecord], ChannelRecord]
    ) -> ChannelRecord:
        async with self._lock_for(channel_id):
            for attempt in range(1, _WRITE_ATTEMPTS + 1):
                record = await require_channel(self._repository, channel_id)
                updated = build(record)
                try:
                    return await self._repository.save(updated, expected_version=record.version)
                except ConcurrentUpdateError:
                    if attempt == _WRITE_ATTEMPTS:
                        raise
                    logger.warning(
                        "channel row changed during credential write; retrying",
                        extra={"channel_id": channel_id, "attempt": attempt},
                    )
        raise RuntimeError("credential write loop exited unexpectedly")

    async def save(
        self,
        channel_id: str,
        credentials: ChannelCredentials,
        *,
        tenant_id: str,
        user_id: str,
        fields_to_encrypt: Iterable[str] | None = None,
    ) -> ChannelRecord:
        """Seal and persist operator-supplied credentials (OWNER/ADMIN only)."""

        await self._access.require_role(user_id, tenant_id, MANAGER_ROLES)

        def build(record: ChannelRecord) -> ChannelRecord:
            self._ensure_tenant(record, tenant_id)
            if platform_for(record.type) != credentials.platform:
                raise ValidationError(
                    "credentials do not match the channel type",
                    details={"channel_type": record.type.value, "platform": credentials.platform},
                )
            config = {**record.config, "encryptionEnabled": True}
            updated = record.with_meta(
                type=record.type.value,
                credentials=self.seal(credentials, fields_to_encrypt),
                config=config,
            )
            return replace(updated, status=ChannelStatus.ACTIVE)

        saved = await self._write(channel_id, build)
        logger.info(
            "channel credentials saved",
            extra={
                "channel_id": channel_id,
                "tenant_id": tenant_id,
                "platform": credentials.platform,
                "key_fingerprint": self._cipher.fingerprint,
            },
        )
        return saved

    async def update_credentials(
        self,
        channel_id: str,
        mutate: Callable[[ChannelCredentials], ChannelCredentials],
        *,
        channel_status: ChannelStatus | None = None,
        config_changes: dict[str, Any] | None = None,
    ) -> ChannelCredentials:
        """Apply ``mutate`` to the current credentials and write them back sealed."""

        result: dict[str, ChannelCredentials] = {}

        def build(record: ChannelRecord) -> ChannelRecord:
            current = self.open(record)
            updated_credentials = mutate(current)
            result["credentials"] = updated_credentials
            changes: dict[str, Any] = {
                "credentials": self.seal(updated_credentials, self._encrypted_fields(record)),
            }
            if config_changes:
                changes["config"] = {**record.config, **config_changes}
            updated = record.with_meta(**changes)
            if channel_status is not None:
                updated = replace(updated, status=channel_status)
            return updated

        await self._write(channel_id, build)
        return result["credentials"]

    async def mark_invalid(self, channel_id: str, reason: str) -> None:
        """Terminal failure: operator must reconfigure the channel."""

        await self.update_credentials(
            channel_id,
            lambda creds: with_status(creds, CredentialStatus.INVALID),
            channel_status=ChannelStatus.ERROR,
            config_changes={"lastError": reason},
        )
        logger.error(
            "channel credentials invalidated",
            extra={"channel_id": channel_id, "reason": reason},
        )

    # -- reads -------------------------------------------------------------

    async def get_decrypted(
        self,
        channel_id: str,
        *,
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> DecryptedCredentials:
        """Return usable credentials, expiring them first if their time has passed.

        Interactive callers pass ``tenant_id`` and ``user_id``; background
        workers omit them.
        """

        if user_id is not None:
            if tenant_id is None:
                raise ValidationError("tenant_id is required when user_id is given")
            await self._access.require_role(user_id, tenant_id, ANY_ROLE)

        record = await require_channel(self._repository, channel_id)
        if tenant_id is not None:
            self._ensure_tenant(record, tenant_id)

        credentials = self.open(record)
        if (
            credentials.status is CredentialStatus.ACTIVE
            and are_credentials_expired(credentials, self._clock())
        ):
            credentials = await self._expire(channel_id)

        return DecryptedCredentials(
            credentials=credentials,
            access_token=get_access_token(credentials),
            status=credentials.status,
            expires_at=credentials.expires_at,
        )

    async def _expire(self, channel_id: str) -> ChannelCredentials:
        def expire(creds: ChannelCredentials) -> ChannelCredentials:
            # A concurrent refresh may already have renewed the token.
            if creds.status is CredentialStatus.ACTIVE and are_credentials_expired(
                creds, self._clock()
            ):
                return with_status(creds, CredentialStatus.EXPIRED)
            return creds

        updated = await self.update_credentials(channel_id, expire)
        if updated.status is CredentialStatus.EXPIRED:
            await self._set_channel_status(channel_id, ChannelStatus.ERROR)
            logger.warning("channel credentials expired", extra={"channel_id": channel_id})
        return updated

    async def _set_channel_status(self, channel_id: str, status: ChannelStatus) -> None:
        await self._write(channel_id, lambda record: replace(record, status=status))

    # -- maintenance -------------------------------------------------------

    async def migrate_to_encrypted(
        self, channel_id: str, *, tenant_id: str, user_id: str
    ) -> bool:
        """Seal a legacy plaintext record; returns False when already sealed."""

        await self._access.require_role(user_id, tenant_id, MANAGER_ROLES)
        record = await require_channel(self._repository, channel_id)
        self._ensure_tenant(record, tenant_id)
        if is_hybrid(record.credentials):
            logger.info("channel already encrypted", extra={"channel_id": channel_id})
            return False

        migrated = {"value": False}

        def build(current: ChannelRecord) -> ChannelRecord:
            if is_hybrid(current.credentials):
                return current
            credentials = self.open(current)
            migrated["value"] = True
            return current.with_meta(
                credentials=self.seal(credentials),
                config={**current.config, "encryptionEnabled": True},
            )

        await self._write(channel_id, build)
        if migrated["value"]:
            logger.info(
                "channel credentials migrated to encrypted storage",
                extra={"channel_id": channel_id},
            )
        return migrated["value"]

    async def rotate_key(
        self, tenant_id: str, *, user_id: str, old_key: str, new_key: str
    ) -> RotationReport:
        """Re-seal every encrypted channel of a tenant under ``new_key``.

        Channels already sealed with ``new_key`` are skipped, so an
        interrupted rotation can be re-run with the same arguments.
        The store keeps reading with its configured key; switch
        ``ENCRYPTION_MASTER_KEY`` once every tenant has been rotated.
        """

        await self._access.require_role(user_id, tenant_id, MANAGER_ROLES)
        old_cipher = self._cipher.with_key(old_key)
        new_cipher = self._cipher.with_key(new_key)
        report = RotationReport()

        for record in await self._repository.list_by_tenant(tenant_id):
            if not is_hybrid(record.credentials):
                continue
            try:
                rotated = await self._reseal_channel(record.id, old_cipher, new_cipher)
            except (EncryptionError, CredentialError, NotFoundError, ConcurrentUpdateError) as exc:
                report.error_count += 1
                report.errors[record.id] = str(exc)
                logger.error(
                    "credential key rotation failed for channel",
                    extra={"channel_id": record.id, "error": str(exc)},
                )
                continue
            if rotated:
                report.migrated_count += 1
            else:
                report.skipped_count += 1

        logger.info(
            "credential key rotation finished",
            extra={
                "tenant_id": tenant_id,
                "migrated": report.migrated_count,
                "skipped": report.skipped_count,
                "errors": report.error_count,
                "old_key": old_cipher.fingerprint,
                "new_key": new_cipher.fingerprint,
            },
        )
        return report

    async def _reseal_channel(
        self,
        channel_id: str,
        old_cipher: CredentialCipher,
        new_cipher: CredentialCipher,
    ) -> bool:
        outcome = {"rotated": False}

        def build(record: ChannelRecord) -> ChannelRecord:
            fields = self._encrypted_fields(record)
            try:
                credentials = self.open(record, cipher=old_cipher)
            except EncryptionError:
                # Raises again when neither key opens the envelope.
                self.open(record, cipher=new_cipher)
                return record
            outcome["rotated"] = True
            return record.with_meta(
                credentials=self.seal(credentials, fields, cipher=new_cipher)
            )

        await self._write(channel_id, build)
        return outcome["rotated"]

    @staticmethod
    def _ensure_tenant(record: ChannelRecord, tenant_id: str) -> None:
        if record.tenant_id != tenant_id:
            raise NotFoundError(
                "channel not found for tenant",
                details={"channel_id": record.id, "tenant_id": tenant_id},
            )


def build_credential_store(settings: AppSettings, engine: Engine) -> CredentialStore:
    """Store over the SQL channel table, sealed with the configured master key."""

    return CredentialStore(
        SqlChannelRepository(engine),
        CredentialCipher.from_settings(settings.encryption),
        SqlAccessPolicy(engine),
        fields_to_encrypt=settings.encryption.fields_to_encrypt,
    )
