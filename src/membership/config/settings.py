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
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="Interface the HTTP server binds to",
    )
    server_port: int = Field(
        default=5000,
        ge=1,
        le=65535,
        description="Port the HTTP server listens on",
    )
    public_base_url: str = Field(
        default="http://localhost:5000",
        description="Externally reachable base URL (media links, callback registration)",
    )

    # Stripe
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    stripe_product_name: str = Field(
        default="Telegram Channel Subscription",
        description="Product name shown on the Checkout page",
    )
    stripe_unit_amount: int = Field(
        default=6000,
        ge=50,
        description="Price per renewal period in the smallest currency unit",
    )
    stripe_currency: str = Field(
        default="usd",
        min_length=3,
        max_length=3,
        description="ISO currency code for the Checkout price",
    )
    checkout_success_url: str = Field(
        default="http://localhost:3000/success?session_id={CHECKOUT_SESSION_ID}",
        description="Redirect after successful checkout (email is appended)",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/cancel",
        description="Redirect after cancelled checkout",
    )

    # Telegram
    telegram_bot_token: SecretStr = Field(
        default=SecretStr(""),
        description="Telegram bot token",
    )
    telegram_group_id: str = Field(
        default="",
        description="Telegram group/channel the subscription grants access to",
    )
    telegram_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Expected X-Telegram-Bot-Api-Secret-Token header (empty disables the check)",
    )
    telegram_api_base_url: str = Field(
        default="https://api.telegram.org",
        description="Telegram Bot API base URL",
    )

    # Discord
    discord_token: SecretStr = Field(
        default=SecretStr(""),
        description="Discord bot token",
    )
    discord_guild_id: str = Field(
        default="",
        description="Discord guild (server) ID the subscription grants access to",
    )
    discord_invite_channel: str = Field(
        default="",
        description="Text channel invites point at (empty = first text channel)",
    )

    # WhatsApp gateway
    whatsapp_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="360messenger API key",
    )
    whatsapp_api_base_url: str = Field(
        default="https://api.360messenger.com/v2",
        description="360messenger API base URL",
    )
    whatsapp_invite_link: str = Field(
        default="",
        description="Static wa.me link to the broadcast number, shared by every subscriber",
    )

    # Lifecycle
    renewal_period_days: int = Field(
        default=30,
        ge=1,
        le=366,
        description="Days of access granted per settled payment",
    )
    reconcile_interval_seconds: int = Field(
        default=60,
        ge=5,
        le=3600,
        description="Seconds between expiry reconciliation passes",
    )

    # Outbound calls
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Total timeout for each outbound provider call",
    )
    channel_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=5,
        description="Attempts for channel calls failing with a not-ready condition",
    )
    channel_retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        le=30,
        description="Fixed backoff between channel retry attempts",
    )
    discord_ready_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for the Discord bot at startup",
    )

    # Broadcast
    broadcast_max_upload_bytes: int = Field(
        default=16 * 1024 * 1024,
        ge=1024,
        description="Maximum size of a broadcast attachment",
    )
    media_dir: str = Field(
        default="media",
        description="Directory broadcast attachments are stored in and served from",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
