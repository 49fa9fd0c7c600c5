"""Application configuration schema and validation."""

from typing import Literal

from pydantic import AliasChoices, Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables.

    Provider and ledger credentials may be supplied under their primary name
    or under the ``OP_``-prefixed alternate name.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    env: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Application environment",
    )
    stripe_secret_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("STRIPE_SECRET_KEY", "OP_STRIPE_SECRET_KEY"),
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("STRIPE_WEBHOOK_SECRET", "OP_STRIPE_WEBHOOK_SECRET"),
        description="Stripe webhook signing secret (whsec_...)",
    )
    stripe_api_version: str = Field(
        default="2024-06-20",
        description="Stripe API version pinned on outbound requests",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        validation_alias=AliasChoices("DB_DSN", "OP_DB_DSN"),
        description="Ledger store (PostgreSQL) connection string",
    )
    db_service_password: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("DB_SERVICE_PASSWORD", "OP_DB_SERVICE_PASSWORD"),
        description="Service credential for the ledger store",
    )
    db_pool_min: int = Field(
        default=1,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    db_command_timeout: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Per-statement timeout for ledger writes (seconds)",
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for a single Stripe API call (seconds)",
    )
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        description="Maximum signature timestamp age (seconds); 0 disables the check",
    )
    webhook_server_host: str = Field(
        default="0.0.0.0",
        description="Interface the webhook server binds to",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port the webhook server listens on",
    )
    webhook_path: str = Field(
        default="/webhooks/stripe",
        description="Route of the Stripe webhook endpoint",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator(
        "stripe_secret_key",
        "stripe_webhook_secret",
        "db_service_password",
    )
    @classmethod
    def validate_not_blank(cls, v: SecretStr) -> SecretStr:
        """Reject empty or whitespace-only secrets."""
        if not v.get_secret_value().strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("webhook_path")
    @classmethod
    def validate_webhook_path(cls, v: str) -> str:
        """Ensure the route is absolute."""
        if not v.startswith("/"):
            raise ValueError("webhook_path must start with '/'")
        return v

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @property
    def signature_tolerance(self) -> int | None:
        """Tolerance passed to signature verification (None disables it)."""
        return self.webhook_tolerance_seconds or None


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the process-wide AppConfig instance.

    Only entry points call this; everything below them receives the config
    explicitly.
    """
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
