"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Smart Money Tracker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

CHAIN_NAMES: dict[int, str] = {
    501: "Solana",
    1: "Ethereum",
    56: "BSC",
    8453: "Base",
}
SUPPORTED_CHAINS = tuple(CHAIN_NAMES)


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must be an HTTP(S) endpoint")
    return v.rstrip("/")


class TelegramSettings(BaseSettings):
    """Telegram delivery settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="TELEGRAM_BOT_TOKEN",
        description="Telegram bot token",
    )
    chat_id: str | None = Field(
        default=None,
        alias="TELEGRAM_CHAT_ID",
        description="Primary chat ID for detailed signal alerts",
    )
    public_chat_id: str | None = Field(
        default=None,
        alias="TELEGRAM_PUBLIC_CHAT_ID",
        description="Optional public chat ID for redacted signal alerts",
    )
    api_base: str = Field(
        default="https://api.telegram.org",
        alias="TELEGRAM_API_BASE",
        description="Bot API base URL",
    )

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        return _validate_http_url(v)

    @property
    def enabled(self) -> bool:
        """Check if Telegram delivery is configured."""
        return self.bot_token is not None and bool(self.chat_id)


class StoreSettings(BaseSettings):
    """Durable record store settings (records are Telegram channel messages)."""

    model_config = SettingsConfigDict(env_prefix="STORE_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="STORE_ENABLED",
        description="Persist signals and aggregates to the record store",
    )
    chat_id: str | None = Field(
        default=None,
        alias="STORE_CHAT_ID",
        description="Default channel for records (falls back to TELEGRAM_CHAT_ID)",
    )
    index_chat_ids: Annotated[dict[int, str], NoDecode] = Field(
        default_factory=dict,
        alias="STORE_INDEX_CHAT_IDS",
        description="Per-chain index channels, e.g. '501:-100123,1:-100456'",
    )
    signal_chat_id: str | None = Field(
        default=None,
        alias="STORE_SIGNAL_CHAT_ID",
        description="Channel override for signal records",
    )
    token_chat_id: str | None = Field(
        default=None,
        alias="STORE_TOKEN_CHAT_ID",
        description="Channel override for token aggregates",
    )
    wallet_chat_id: str | None = Field(
        default=None,
        alias="STORE_WALLET_CHAT_ID",
        description="Channel override for wallet aggregates",
    )
    max_record_chars: int = Field(
        default=3800,
        alias="STORE_MAX_RECORD_CHARS",
        ge=256,
        le=4000,
        description="Maximum serialized record size (JSON characters)",
    )

    @field_validator("index_chat_ids", mode="before")
    @classmethod
    def _parse_index_chat_ids(cls, v: object) -> dict[int, str]:
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            parsed: dict[int, str] = {}
            for part in (p.strip() for p in v.split(",")):
                if not part:
                    continue
                chain, sep, chat = part.partition(":")
                if not sep or not chat.strip():
                    raise ValueError(f"Invalid STORE_INDEX_CHAT_IDS entry: {part!r}")
                parsed[int(chain)] = chat.strip()
            return parsed
        if isinstance(v, dict):
            return {int(k): str(val) for k, val in v.items()}
        raise TypeError("Invalid STORE_INDEX_CHAT_IDS type")


class RedisSettings(BaseSettings):
    """Redis settings for the short-lived recent-signal tier."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (in-memory tier when unset)",
    )
    recent_signals_ttl_seconds: int = Field(
        default=86400,
        alias="RECENT_SIGNALS_TTL_SECONDS",
        ge=60,
        le=30 * 86400,
        description="How long processed signal keys stay in the recent tier",
    )
    recent_signals_max: int = Field(
        default=50,
        alias="RECENT_SIGNALS_MAX",
        ge=1,
        le=10_000,
        description="Maximum signal keys kept per chain in the recent tier",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class MarketDataSettings(BaseSettings):
    """OKX web3 market-data API settings."""

    model_config = SettingsConfigDict(env_prefix="OKX_", extra="ignore")

    base_url: str = Field(
        default="https://web3.okx.com",
        alias="OKX_BASE_URL",
        description="Market-data API host",
    )
    requests_per_second: float = Field(
        default=5.0,
        alias="OKX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=100.0,
        description="Client-side request rate limit",
    )
    timeout_seconds: float = Field(
        default=15.0,
        alias="OKX_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Per-request timeout",
    )
    max_retries: int = Field(
        default=2,
        alias="OKX_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries on 429/5xx responses",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return _validate_http_url(v)


class SecuritySettings(BaseSettings):
    """Token security scan settings."""

    model_config = SettingsConfigDict(env_prefix="SECURITY_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="SECURITY_ENABLED",
        description="Scan tokens with GoPlus / RugCheck before delivery",
    )
    goplus_url: str = Field(
        default="https://api.gopluslabs.io",
        alias="SECURITY_GOPLUS_URL",
        description="GoPlus API host (EVM chains)",
    )
    rugcheck_url: str = Field(
        default="https://api.rugcheck.xyz",
        alias="SECURITY_RUGCHECK_URL",
        description="RugCheck API host (Solana)",
    )

    @field_validator("goplus_url", "rugcheck_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_http_url(v)


class PriceSettings(BaseSettings):
    """Token price refresh settings."""

    model_config = SettingsConfigDict(env_prefix="PRICES_", extra="ignore")

    dexscreener_url: str = Field(
        default="https://api.dexscreener.com",
        alias="PRICES_DEXSCREENER_URL",
        description="DexScreener API host",
    )

    @field_validator("dexscreener_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_http_url(v)


class PollSettings(BaseSettings):
    """Signal polling cycle settings."""

    model_config = SettingsConfigDict(env_prefix="POLL_", extra="ignore")

    trend: str = Field(
        default="1",
        alias="POLL_TREND",
        description="Activity trend filter passed to the provider (1 = buys)",
    )
    page_size: int = Field(
        default=10,
        alias="POLL_PAGE_SIZE",
        ge=1,
        le=100,
        description="Activities fetched per cycle",
    )
    min_wallets: int = Field(
        default=1,
        alias="POLL_MIN_WALLETS",
        ge=1,
        le=1000,
        description="Minimum participating wallets for a signal to be processed",
    )
    min_score: float = Field(
        default=0.0,
        alias="POLL_MIN_SCORE",
        ge=-2.0,
        le=2.0,
        description="Signals with a mean entry score at or below this are filtered",
    )
    wallet_max_tokens: int = Field(
        default=10,
        alias="POLL_WALLET_MAX_TOKENS",
        ge=1,
        le=100,
        description="History items fetched per wallet when scoring",
    )
    score_wallets: bool = Field(
        default=True,
        alias="POLL_SCORE_WALLETS",
        description="Score participant entries (off leaves every wallet unscored)",
    )
    host_timeout_seconds: float = Field(
        default=60.0,
        alias="POLL_HOST_TIMEOUT_SECONDS",
        gt=0.0,
        le=900.0,
        description="Hard timeout of the hosting environment",
    )
    safety_margin_seconds: float = Field(
        default=10.0,
        alias="POLL_SAFETY_MARGIN_SECONDS",
        ge=0.0,
        le=300.0,
        description="Time reserved for flushing the store before the host timeout",
    )
    wallet_delay_seconds: float = Field(
        default=0.1,
        alias="POLL_WALLET_DELAY_SECONDS",
        ge=0.0,
        le=10.0,
        description="Pause between wallet scoring calls",
    )
    signal_delay_seconds: float = Field(
        default=0.2,
        alias="POLL_SIGNAL_DELAY_SECONDS",
        ge=0.0,
        le=10.0,
        description="Pause between candidates",
    )

    @property
    def time_budget_seconds(self) -> float:
        """Wall-clock budget for one cycle's candidate loop."""
        return max(0.0, self.host_timeout_seconds - self.safety_margin_seconds)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from smart_money_tracker.config import get_settings

        settings = get_settings()
        print(settings.poll.min_score)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    telegram: TelegramSettings = Field(
        default_factory=lambda: TelegramSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    store: StoreSettings = Field(
        default_factory=lambda: StoreSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    market_data: MarketDataSettings = Field(
        default_factory=lambda: MarketDataSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    security: SecuritySettings = Field(
        default_factory=lambda: SecuritySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    prices: PriceSettings = Field(
        default_factory=lambda: PriceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    poll: PollSettings = Field(
        default_factory=lambda: PollSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run without sending actual alerts",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def store_chat_id(self, partition: str, chain_id: int) -> str | None:
        """Resolve the record store channel for a partition on a chain."""
        default = self.store.chat_id or self.telegram.chat_id
        if partition == "index":
            return self.store.index_chat_ids.get(chain_id, default)
        override = getattr(self.store, f"{partition}_chat_id", None)
        return override or default

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "telegram": {
                "bot_token": "(set)" if self.telegram.bot_token else "(not set)",
                "chat_id": self.telegram.chat_id or "(not set)",
                "public_chat_id": self.telegram.public_chat_id or "(not set)",
            },
            "store": {
                "enabled": str(self.store.enabled),
                "chat_id": self.store.chat_id or "(primary chat)",
                "index_chains": ",".join(str(c) for c in sorted(self.store.index_chat_ids)) or "(none)",
                "max_record_chars": str(self.store.max_record_chars),
            },
            "market_data": {
                "base_url": self.market_data.base_url,
                "requests_per_second": str(self.market_data.requests_per_second),
            },
            "security": {
                "enabled": str(self.security.enabled),
            },
            "poll": {
                "page_size": str(self.poll.page_size),
                "min_wallets": str(self.poll.min_wallets),
                "min_score": str(self.poll.min_score),
                "time_budget_seconds": str(self.poll.time_budget_seconds),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["poll", "sweep", "refresh-prices", "leaderboard"]) -> None:
        """Validate command-specific requirements.

        Every command talks to Telegram: ``poll`` to deliver alerts, all of
        them to reach the record store.
        """
        if self.telegram.bot_token is None:
            raise ValueError("TELEGRAM_BOT_TOKEN is required")
        if command == "poll" and not self.telegram.chat_id:
            raise ValueError("TELEGRAM_CHAT_ID is required for polling")
        if command == "leaderboard" and not self.telegram.chat_id:
            raise ValueError("TELEGRAM_CHAT_ID is required to publish the leaderboard")
        if command in ("sweep", "refresh-prices") and not (self.store.chat_id or self.telegram.chat_id):
            raise ValueError("STORE_CHAT_ID or TELEGRAM_CHAT_ID is required for store maintenance")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
