"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    lemonsqueezy_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="LemonSqueezy API key",
    )
    lemonsqueezy_store_id: str = Field(
        default="",
        description="LemonSqueezy store ID",
    )
    lemonsqueezy_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="LemonSqueezy webhook signing secret",
    )
    lemonsqueezy_api_base_url: str = Field(
        default="https://api.lemonsqueezy.com/v1",
        description="LemonSqueezy REST API base URL",
    )
    public_base_url: str = Field(
        default="http://localhost:5173",
        description="Public site URL, used for portal return links",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="Bind address for the HTTP server",
    )
    server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the HTTP server",
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for payment provider HTTP calls",
    )
    billing_history_default_limit: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Billing history page size when the caller gives none",
    )
    billing_history_max_limit: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Upper bound on billing history page size",
    )
    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency reported when the provider gives none",
    )
    pro_default_amount: int = Field(
        default=1900,
        ge=0,
        description="Fallback next billing amount for pro tier (cents)",
    )
    enterprise_default_amount: int = Field(
        default=4900,
        ge=0,
        description="Fallback next billing amount for enterprise tier (cents)",
    )
    session_cookie_name: str = Field(
        default="better-auth.session_token",
        description="Cookie carrying the auth session token",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret.get_secret_value())

    @property
    def lemonsqueezy_configured(self) -> bool:
        return bool(self.lemonsqueezy_api_key.get_secret_value() and self.lemonsqueezy_store_id)


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
