"""Channel credential models, encrypted storage and validation."""

from .access import AccessPolicy, MembershipRole, SqlAccessPolicy, StaticAccessPolicy
from .models import (
    ChannelCredentials,
    CredentialStatus,
    MetaCredentials,
    MockCredentials,
    TikTokCredentials,
    WhatsAppCredentials,
    create_channel_credentials,
    migrate_credentials,
    parse_credentials,
)
from .repository import (
    ChannelRecord,
    ChannelRepository,
    InMemoryChannelRepository,
    SqlChannelRepository,
)
from .store import CredentialStore, DecryptedCredentials, RotationReport

__all__ = [
    "AccessPolicy",
    "MembershipRole",
    "SqlAccessPolicy",
    "StaticAccessPolicy",
    "ChannelCredentials",
    "CredentialStatus",
    "MetaCredentials",
    "MockCredentials",
    "TikTokCredentials",
    "WhatsAppCredentials",
    "create_channel_credentials",
    "migrate_credentials",
    "parse_credentials",
    "ChannelRecord",
    "ChannelRepository",
    "InMemoryChannelRepository",
    "SqlChannelRepository",
    "CredentialStore",
    "DecryptedCredentials",
    "RotationReport",
]
