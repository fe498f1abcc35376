"""Configuration loaders for the channel hub services.

Leverages pydantic-settings to hydrate runtime configuration from environment
variables, an optional ``.env`` file, or default values. Nested settings classes
mirror infrastructure concerns (datastore, queue, providers, encryption).
"""

from __future__ import annotations

from enum import Enum
from functools import cached_property
from typing import Annotated, Any

from arq.connections import RedisSettings as ArqRedisSettings
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_FIELDS_TO_ENCRYPT = ("pageAccessToken", "accessToken", "refreshToken", "mockToken")


class Environment(str, Enum):
    """Deployment environments recognised by the services."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class BaseAppSettings(BaseSettings):
    """Base settings that looks at environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class PostgresSettings(BaseAppSettings):
    """Postgres connection details."""

    model_config = SettingsConfigDict(
        env_prefix="postgres_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(
        default="channelhub",
        validation_alias=AliasChoices("database", "db"),
    )
    user: str = "channelhub"
    password: str = "changeme"
    sslmode: str = "prefer"

    @cached_property
    def dsn(self) -> str:
        """Return a libpq compatible DSN string."""

        return (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.sslmode}"
        )


class RedisSettings(BaseAppSettings):
    """Redis connection details for the refresh queue."""

    model_config = SettingsConfigDict(
        env_prefix="redis_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    db: int = Field(default=0, ge=0)
    password: str | None = None

    def arq_settings(self) -> ArqRedisSettings:
        """Translate into the connection settings understood by arq."""

        return ArqRedisSettings(
            host=self.host,
            port=self.port,
            database=self.db,
            password=self.password,
        )


class EncryptionSettings(BaseAppSettings):
    """Master key and key-derivation parameters for credential envelopes."""

    model_config = SettingsConfigDict(
        env_prefix="encryption_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    master_key: str | None = None
    pbkdf2_iterations: int = Field(default=100_000, ge=100_000)
    associated_data: str = "channel-credentials"
    fields_to_encrypt: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_FIELDS_TO_ENCRYPT)
    )

    @field_validator("fields_to_encrypt", mode="before")
    @classmethod
    def _split_fields(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


class MetaSettings(BaseAppSettings):
    """Graph API endpoints and app credentials shared by Instagram and Facebook."""

    model_config = SettingsConfigDict(
        env_prefix="meta_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    graph_url: str = "https://graph.facebook.com/v18.0"
    oauth_url: str = "https://graph.facebook.com/oauth/access_token"
    app_id: str | None = None
    app_secret: str | None = None
    verify_token: str | None = None
    webhook_secret: str | None = None


class WhatsAppSettings(BaseAppSettings):
    """Webhook secrets for the WhatsApp Cloud API."""

    model_config = SettingsConfigDict(
        env_prefix="whatsapp_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    verify_token: str | None = None
    webhook_secret: str | None = None


class TikTokSettings(BaseAppSettings):
    """TikTok for Business endpoints and client credentials."""

    model_config = SettingsConfigDict(
        env_prefix="tiktok_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_url: str = "https://business-api.tiktok.com/open_api/v1.3"
    refresh_url: str = "https://open-api.tiktok.com/oauth/refresh_token/"
    user_info_url: str = "https://open.tiktokapis.com/v2/user/info/"
    client_key: str | None = None
    client_secret: str | None = None
    webhook_secret: str | None = None


class HttpSettings(BaseAppSettings):
    """Timeouts applied to outbound provider calls."""

    model_config = SettingsConfigDict(
        env_prefix="http_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    send_timeout_seconds: float = Field(default=30.0, ge=0.1)
    validation_timeout_seconds: float = Field(default=8.0, ge=0.1)


class RefreshSettings(BaseAppSettings):
    """Scheduling, retry and concurrency parameters for token refresh."""

    model_config = SettingsConfigDict(
        env_prefix="refresh_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    check_interval_minutes: int = Field(default=60, ge=1)
    refresh_before_minutes: int = Field(default=30, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=2.0, ge=0.0)
    backoff_max_seconds: float = Field(default=900.0, ge=0.0)
    concurrency: int = Field(default=3, ge=1)
    batch_pause_seconds: float = Field(default=1.0, ge=0.0)
    poll_interval_seconds: float = Field(default=5.0, ge=0.1)
    queue_name: str = "oauth-refresh"
    keep_completed: int = Field(default=100, ge=0)
    keep_failed: int = Field(default=50, ge=0)


class WebhookSettings(BaseAppSettings):
    """Inbound webhook handling switches."""

    model_config = SettingsConfigDict(
        env_prefix="webhook_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    allow_unsigned: bool = False
    inbound_forward_url: str | None = None
    forward_timeout_seconds: float = Field(default=5.0, ge=0.1)


class TelemetrySettings(BaseAppSettings):
    """Prometheus exporter configuration."""

    model_config = SettingsConfigDict(
        env_prefix="telemetry_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    metrics_host: str = "0.0.0.0"
    metrics_port: int | None = None


class AppSettings(BaseAppSettings):
    """Top level settings object used by services."""

    environment: Environment = Environment.DEVELOPMENT
    app_version: str = "0.1.0"

    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)
    meta: MetaSettings = Field(default_factory=MetaSettings)
    whatsapp: WhatsAppSettings = Field(default_factory=WhatsAppSettings)
    tiktok: TikTokSettings = Field(default_factory=TikTokSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    @property
    def allow_unsigned_webhooks(self) -> bool:
        """Unsigned webhooks are only tolerated in development."""

        return self.webhooks.allow_unsigned and self.environment is Environment.DEVELOPMENT

    @classmethod
    def load(cls, **kwargs: Any) -> AppSettings:
        """Helper factory that mirrors BaseSettings semantics."""

        return cls(**kwargs)
