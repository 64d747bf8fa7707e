"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
The variable names used by the existing deployment (``DATABASE_URL``,
``R2_*``, ``HTTP_PORT``, ``SMTP_SERVICE_API_KEY``, ``LOG_LEVEL``) are
accepted as-is.
"""

from __future__ import annotations

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Relational store (PostgreSQL) settings."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    url: str = Field(description="Async SQLAlchemy URL of the mail database")
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Connections allowed above pool_size")
    ensure_schema: bool = Field(
        default=True,
        description="Create missing tables/columns on startup",
    )

    @field_validator("url")
    @classmethod
    def _use_async_driver(cls, value: str) -> str:
        for prefix in ("postgres://", "postgresql://"):
            if value.startswith(prefix):
                return "postgresql+asyncpg://" + value[len(prefix):]
        return value


class StoreConfig(BaseSettings):
    """Cloudflare R2 (S3-compatible) settings for message bodies."""

    model_config = SettingsConfigDict(env_prefix="R2_")

    account_id: str | None = Field(default=None, description="Cloudflare account ID")
    access_key_id: str | None = Field(default=None, description="R2 access key ID")
    secret_access_key: SecretStr | None = Field(default=None, description="R2 secret access key")
    bucket_name: str = Field(description="Bucket holding message bodies")
    endpoint_url: str | None = Field(
        default=None,
        description="Explicit endpoint URL (e.g. MinIO); derived from account_id when unset",
    )
    region: str = Field(default="auto", description="Region name passed to boto3")
    prefix: str = Field(default="", description="Optional key prefix inside the bucket")

    @property
    def resolved_endpoint_url(self) -> str | None:
        if self.endpoint_url:
            return self.endpoint_url
        if self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return None


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_attempts: int = Field(default=3, description="Maximum attempts per operation")
    initial_wait_seconds: float = Field(default=1.0, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class SyncConfig(BaseSettings):
    """Mailbox polling behaviour."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    poll_interval_seconds: float = Field(default=60.0, description="Seconds between sync passes")
    batch_size: int = Field(default=50, gt=0, description="Messages fetched per IMAP round trip")
    snippet_length: int = Field(default=100, ge=0, description="Characters kept in the snippet")
    store_body_html: bool = Field(
        default=True,
        description="Also keep the rendered body in the email row",
    )
    upload_attachments: bool = Field(
        default=True,
        description="Upload attachment payloads to object storage",
    )
    default_folders: list[str] = Field(
        default_factory=lambda: ["INBOX"],
        description="Folders synced when a connection does not list its own",
    )
    imap_timeout_seconds: float = Field(default=30.0, description="IMAP socket timeout")


class SmtpRelayConfig(BaseSettings):
    """Outbound relay settings."""

    model_config = SettingsConfigDict(env_prefix="SMTP_", populate_by_name=True)

    api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("SMTP_SERVICE_API_KEY", "SMTP_API_KEY"),
        description="Shared secret required by POST /send; unset rejects every request",
    )
    timeout_seconds: float = Field(default=30.0, description="SMTP command timeout")


class ServiceConfig(BaseSettings):
    """Root configuration for the IMAP service process.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = SettingsConfigDict(env_prefix="SERVICE_", populate_by_name=True)

    name: str = Field(default="imap-service", description="Service name used in logs and health")
    http_host: str = Field(default="0.0.0.0", description="Bind address of the HTTP API")
    http_port: int = Field(
        default=3001,
        validation_alias=AliasChoices("HTTP_PORT", "SERVICE_HTTP_PORT"),
        description="Port of the HTTP API (health + send)",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "SERVICE_LOG_LEVEL"),
        description="Log level",
    )
    log_json: bool = Field(default=True, description="Use JSON log output (True for prod)")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    smtp: SmtpRelayConfig = Field(default_factory=SmtpRelayConfig)
