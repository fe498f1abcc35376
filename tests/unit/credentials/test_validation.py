from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from channelhub.core.domain import ChannelStatus, ChannelType, ValidationResult, utcnow
from channelhub.core.errors import UnauthorizedError
from channelhub.credentials.models import MetaCredentials
from channelhub.credentials.repository import ChannelRecord
from channelhub.credentials.validation import (
    CredentialValidator,
    check_basic_config,
    config_from_credentials,
    expiry_warnings,
)
from tests.factories import AGENT_ID, OWNER_ID, TENANT_ID, meta_credentials, tiktok_credentials

pytestmark = pytest.mark.unit

PAGE_CONFIG = {"pageId": "123456789012345", "accessToken": "page-token"}


class StubAdapter:
    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        self.configs: list[dict[str, Any]] = []

    async def validate_credentials(self, config):
        self.configs.append(dict(config))
        return self.result


class StubRegistry:
    def __init__(self, adapter: StubAdapter) -> None:
        self.adapter = adapter

    def get(self, channel_type: ChannelType) -> StubAdapter:
        return self.adapter


def _validator(store, access_policy, result: ValidationResult) -> CredentialValidator:
    return CredentialValidator(
        StubRegistry(StubAdapter(result)), store, access_policy, tiktok_app_secret="tt-secret"
    )


@pytest.mark.parametrize(
    ("channel_type", "config", "expected"),
    [
        (ChannelType.FACEBOOK, {"pageId": "123456789012345"}, "missing required field"),
        (ChannelType.INSTAGRAM, {"pageId": "12ab", "accessToken": "t"}, "not valid"),
        (
            ChannelType.WHATSAPP,
            {"phoneId": "123456789012345", "accessToken": "t"},
            "businessId",
        ),
        (ChannelType.TIKTOK, {"appId": "abc", "appSecret": "s", "accessToken": "t"}, "not valid"),
    ],
)
def test_basic_config_errors(channel_type: ChannelType, config: dict, expected: str) -> None:
    error = check_basic_config(channel_type, config)

    assert error is not None and expected in error


def test_basic_config_accepts_complete_config() -> None:
    assert check_basic_config(ChannelType.FACEBOOK, PAGE_CONFIG) is None
    assert check_basic_config(ChannelType.MOCK, {}) is None


def test_expiry_warnings() -> None:
    now = utcnow()

    warnings, recommendations = expiry_warnings(
        meta_credentials(expires_at=now + timedelta(days=3)), now
    )
    assert warnings == ["The credentials expire in 3 days"]
    assert recommendations

    warnings, _ = expiry_warnings(meta_credentials(expires_at=now - timedelta(days=1)), now)
    assert warnings == ["The credentials have already expired"]

    warnings, recommendations = expiry_warnings(meta_credentials(), now)
    assert warnings == []
    assert recommendations == ["Consider using a long-lived page token"]


def test_config_from_credentials_round_trips_operator_shape() -> None:
    assert config_from_credentials(meta_credentials()) == {
        "pageId": "123456789012345",
        "accessToken": "page-token",
    }
    assert config_from_credentials(tiktok_credentials(), tiktok_app_secret="s") == {
        "appId": "7000000001",
        "appSecret": "s",
        "accessToken": "tt-access",
    }


@pytest.mark.asyncio
async def test_valid_credentials_are_built(store, access_policy) -> None:
    validator = _validator(
        store, access_policy, ValidationResult(valid=True, details={"page_name": "Shop"})
    )

    check = await validator.validate(
        "facebook", PAGE_CONFIG, tenant_id=TENANT_ID, user_id=OWNER_ID
    )

    assert check.valid
    assert isinstance(check.credentials, MetaCredentials)
    assert check.details["page_name"] == "Shop"
    assert check.details["token_length"] == len("page-token")
    assert check.details["has_expiration"] is False
    assert check.recommendations
    assert not check.saved


@pytest.mark.asyncio
async def test_provider_rejection_is_returned(store, access_policy) -> None:
    validator = _validator(
        store, access_policy, ValidationResult(valid=False, error="token expired")
    )

    check = await validator.validate(
        ChannelType.FACEBOOK, PAGE_CONFIG, tenant_id=TENANT_ID, user_id=OWNER_ID
    )

    assert not check.valid
    assert check.error == "token expired"


@pytest.mark.asyncio
async def test_basic_errors_skip_the_provider(store, access_policy) -> None:
    adapter = StubAdapter(ValidationResult(valid=True))
    validator = CredentialValidator(StubRegistry(adapter), store, access_policy)

    check = await validator.validate(
        ChannelType.FACEBOOK, {"pageId": "1"}, tenant_id=TENANT_ID, user_id=OWNER_ID
    )

    assert not check.valid
    assert adapter.configs == []


@pytest.mark.asyncio
async def test_unknown_channel_type(store, access_policy) -> None:
    validator = _validator(store, access_policy, ValidationResult(valid=True))

    check = await validator.validate("myspace", {}, tenant_id=TENANT_ID, user_id=OWNER_ID)

    assert not check.valid
    assert check.error == "unsupported channel type"


@pytest.mark.asyncio
async def test_validation_requires_manager(store, access_policy) -> None:
    validator = _validator(store, access_policy, ValidationResult(valid=True))

    with pytest.raises(UnauthorizedError):
        await validator.validate(
            ChannelType.FACEBOOK, PAGE_CONFIG, tenant_id=TENANT_ID, user_id=AGENT_ID
        )


@pytest.mark.asyncio
async def test_auto_save_stores_credentials(store, access_policy, repository) -> None:
    repository.add(
        ChannelRecord(
            id="ch-1",
            tenant_id=TENANT_ID,
            type=ChannelType.FACEBOOK,
            status=ChannelStatus.INACTIVE,
        )
    )
    validator = _validator(store, access_policy, ValidationResult(valid=True))

    check = await validator.validate(
        ChannelType.FACEBOOK,
        PAGE_CONFIG,
        tenant_id=TENANT_ID,
        user_id=OWNER_ID,
        channel_id="ch-1",
        auto_save=True,
    )

    assert check.saved
    decrypted = await store.get_decrypted("ch-1")
    assert decrypted.access_token == "page-token"


@pytest.mark.asyncio
async def test_auto_save_failure_becomes_warning(store, access_policy) -> None:
    validator = _validator(store, access_policy, ValidationResult(valid=True))

    check = await validator.validate(
        ChannelType.FACEBOOK,
        PAGE_CONFIG,
        tenant_id=TENANT_ID,
        user_id=OWNER_ID,
        channel_id="missing",
        auto_save=True,
    )

    assert check.valid
    assert not check.saved
    assert any("could not be saved" in warning for warning in check.warnings)


@pytest.mark.asyncio
async def test_revalidate_uses_stored_credentials(store, access_policy, add_channel) -> None:
    add_channel("ch-1", meta_credentials())
    adapter = StubAdapter(ValidationResult(valid=True))
    validator = CredentialValidator(StubRegistry(adapter), store, access_policy)

    check = await validator.revalidate("ch-1", tenant_id=TENANT_ID, user_id=OWNER_ID)

    assert check.valid
    assert adapter.configs == [PAGE_CONFIG]
