"""
Configuration management for the update ingestion monitor.

This module handles environment variables, settings validation, and account
resolution using Pydantic Settings for type safety and validation.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

DEFAULT_ACCOUNT_ID = "default"


class Account(BaseModel):
    """Resolved credentials for the single account a monitor serves."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., description="Account identifier")
    token: str = Field(..., description="Bot API token")
    proxy: str | None = Field(default=None, description="Outbound proxy URL")


class AccountConfig(BaseModel):
    """Per-account configuration entry."""

    bot_token: str = Field(default="", description="Bot API token")
    token_file: str = Field(default="", description="File containing the token")
    proxy: str | None = Field(default=None, description="Outbound proxy URL")


class BackoffPolicy(BaseModel):
    """Retry delay policy for restarting the poller after a conflict."""

    model_config = ConfigDict(frozen=True)

    initial_delay_ms: int = Field(default=2000, ge=0, description="First delay")
    max_delay_ms: int = Field(default=30_000, ge=0, description="Delay cap")
    growth_factor: float = Field(default=1.8, ge=1.0, description="Growth factor")
    jitter_fraction: float = Field(
        default=0.25, ge=0.0, le=1.0, description="Symmetric jitter fraction"
    )


class WebhookConfig(BaseModel):
    """Webhook receiver configuration settings."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8787, description="Bind port")
    path: str = Field(default="/telegram-webhook", description="Receiver path")
    secret: str = Field(default="", description="Secret token checked per request")
    public_url: str = Field(default="", description="URL registered with provider")

    @property
    def resolved_public_url(self) -> str:
        """Get the URL to register, deriving one from host/port/path if unset."""
        if self.public_url:
            return self.public_url
        host = "localhost" if self.host == "0.0.0.0" else self.host
        return f"http://{host}:{self.port}{self.path}"


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Account configuration
    telegram_account_id: str = Field(
        default=DEFAULT_ACCOUNT_ID, description="Account this monitor serves"
    )
    telegram_bot_token: str = Field(
        default="", description="Bot token for the default account"
    )
    telegram_token_file: str = Field(
        default="", description="Token file for the default account"
    )
    telegram_proxy: str | None = Field(
        default=None, description="Proxy URL used when the account sets none"
    )
    telegram_accounts: dict[str, AccountConfig] = Field(
        default_factory=dict, description="Per-account configuration (JSON)"
    )
    telegram_api_base_url: str = Field(
        default="https://api.telegram.org", description="Bot API base URL"
    )

    # Ingestion configuration
    monitor_mode: str = Field(default="poll", description="poll or webhook")
    poll_timeout_seconds: int = Field(
        default=30, ge=0, description="getUpdates long-poll timeout"
    )
    allowed_updates: str | list[str] = Field(
        default_factory=lambda: ["message", "message_reaction"],
        description="Update types requested from the provider (comma-separated)",
    )
    request_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for non-polling API requests"
    )

    # Poll restart backoff
    poll_restart_initial_ms: int = Field(default=2000, ge=0)
    poll_restart_max_ms: int = Field(default=30_000, ge=0)
    poll_restart_factor: float = Field(default=1.8, ge=1.0)
    poll_restart_jitter: float = Field(default=0.25, ge=0.0, le=1.0)

    # Webhook configuration
    webhook_host: str = Field(default="0.0.0.0", description="Webhook bind host")
    webhook_port: int = Field(default=8787, description="Webhook bind port")
    webhook_path: str = Field(
        default="/telegram-webhook", description="Webhook receiver path"
    )
    webhook_secret: str = Field(default="", description="Webhook secret token")
    webhook_public_url: str = Field(
        default="", description="Public URL registered with the provider"
    )

    # Offset storage
    offset_store_backend: str = Field(default="file", description="file or memory")
    state_dir: str = Field(
        default="./state", description="Directory for persisted offsets"
    )

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    # Entry point
    consumer: str = Field(
        default="update_monitor.main:log_update",
        description="Dotted path (module:attr) of the update consumer",
    )

    @field_validator("allowed_updates", mode="before")
    @classmethod
    def parse_allowed_updates(cls, v: Any) -> list[str]:
        """Parse allowed updates from comma-separated string or list."""
        if isinstance(v, str):
            return [kind.strip() for kind in v.split(",") if kind.strip()]
        elif isinstance(v, list):
            return v
        else:
            error_msg = f"allowed_updates must be a string or list, got {type(v)}"
            raise ValueError(error_msg)

    @field_validator("monitor_mode")
    @classmethod
    def validate_monitor_mode(cls, v: str) -> str:
        """Validate monitor mode."""
        v = v.lower()
        if v not in {"poll", "webhook"}:
            raise ValueError(f"Invalid monitor mode: {v}")
        return v

    @field_validator("offset_store_backend")
    @classmethod
    def validate_offset_store_backend(cls, v: str) -> str:
        """Validate offset store backend."""
        v = v.lower()
        if v not in {"file", "memory"}:
            raise ValueError(f"Invalid offset store backend: {v}")
        return v

    @field_validator("webhook_path")
    @classmethod
    def validate_webhook_path(cls, v: str) -> str:
        """Ensure the webhook path is absolute."""
        return v if v.startswith("/") else f"/{v}"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}")
        return v

    @property
    def use_webhook(self) -> bool:
        """Check if the monitor should receive updates via webhook."""
        return self.monitor_mode == "webhook"

    @property
    def allowed_update_types(self) -> list[str]:
        """Get allowed update types as a list."""
        return list(self.allowed_updates)

    @property
    def backoff_policy(self) -> BackoffPolicy:
        """Get poll restart backoff policy."""
        return BackoffPolicy(
            initial_delay_ms=self.poll_restart_initial_ms,
            max_delay_ms=self.poll_restart_max_ms,
            growth_factor=self.poll_restart_factor,
            jitter_fraction=self.poll_restart_jitter,
        )

    @property
    def webhook_config(self) -> WebhookConfig:
        """Get webhook configuration."""
        return WebhookConfig(
            host=self.webhook_host,
            port=self.webhook_port,
            path=self.webhook_path,
            secret=self.webhook_secret,
            public_url=self.webhook_public_url,
        )


def _read_token_file(path: str, account_id: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigurationError(
            f'Cannot read token file for account "{account_id}": {e}',
            context={"account_id": account_id, "token_file": path},
        ) from e


def resolve_account(
    settings: Settings, account_id: str | None = None, token: str | None = None
) -> Account:
    """
    Resolve the credentials for one account.

    Args:
        settings: Application settings
        account_id: Account to resolve (defaults to ``telegram_account_id``)
        token: Explicit token override

    Returns:
        Resolved account

    Raises:
        ConfigurationError: If no token is configured for the account
    """
    resolved_id = (account_id or settings.telegram_account_id).strip()
    if not resolved_id:
        resolved_id = DEFAULT_ACCOUNT_ID
    entry = settings.telegram_accounts.get(resolved_id, AccountConfig())

    resolved_token = (token or "").strip() or entry.bot_token.strip()
    if not resolved_token and entry.token_file:
        resolved_token = _read_token_file(entry.token_file, resolved_id)
    if not resolved_token and resolved_id == DEFAULT_ACCOUNT_ID:
        resolved_token = settings.telegram_bot_token.strip()
        if not resolved_token and settings.telegram_token_file:
            resolved_token = _read_token_file(
                settings.telegram_token_file, resolved_id
            )

    if not resolved_token:
        raise ConfigurationError(
            f'Bot token missing for account "{resolved_id}" (set '
            f"telegram_accounts.{resolved_id}.bot_token/token_file or "
            "TELEGRAM_BOT_TOKEN for the default account).",
            context={"account_id": resolved_id},
        )

    return Account(
        account_id=resolved_id,
        token=resolved_token,
        proxy=entry.proxy or settings.telegram_proxy,
    )


# Global settings instance - initialized lazily to avoid import-time errors
_settings_instance = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
