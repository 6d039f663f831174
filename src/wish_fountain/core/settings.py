"""Application settings and configuration.

This module defines all configuration options for the Wish Fountain service.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Solana's system program id doubles as the canonical "nowhere" address.
NULL_ADDRESS = "11111111111111111111111111111111"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Wish Fountain", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Key-value store holding sessions, events and aggregates
    store_backend: Literal["redis", "memory"] = Field(default="redis", alias="STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")

    # Chain collaborator
    solana_rpc_url: str = Field(default="https://api.devnet.solana.com", alias="SOLANA_RPC_URL")
    solana_rpc_timeout_seconds: float = Field(default=10.0, alias="SOLANA_RPC_TIMEOUT_SECONDS")
    wish_token_mint: str | None = Field(default=None, alias="WISH_TOKEN_MINT")
    pool_wallet_private_key: str | None = Field(default=None, alias="POOL_WALLET_PRIVATE_KEY")
    burn_address: str = Field(default=NULL_ADDRESS, alias="BURN_ADDRESS")

    # Session rules
    exact_stake: int = Field(default=1000, alias="EXACT_STAKE")
    session_stale_seconds: int = Field(default=300, alias="SESSION_STALE_SECONDS")
    resolve_claim_ttl_seconds: int = Field(default=120, alias="RESOLVE_CLAIM_TTL_SECONDS")
    burn_verify_strict: bool = Field(default=True, alias="BURN_VERIFY_STRICT")

    # Payouts
    payout_mode: Literal["sync", "background"] = Field(default="sync", alias="PAYOUT_MODE")
    payout_confirm_timeout_seconds: float = Field(
        default=20.0,
        alias="PAYOUT_CONFIRM_TIMEOUT_SECONDS",
    )
    payout_confirm_poll_seconds: float = Field(default=1.0, alias="PAYOUT_CONFIRM_POLL_SECONDS")

    # Stats and realtime
    leaderboard_default_limit: int = Field(default=10, alias="LEADERBOARD_DEFAULT_LIMIT")
    presence_outbox_size: int = Field(default=64, alias="PRESENCE_OUTBOX_SIZE")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=False, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["Content-Type"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def session_stale_ms(self) -> int:
        """Return the staleness window in milliseconds, matching session timestamps."""
        return self.session_stale_seconds * 1000

    @property
    def payouts_enabled(self) -> bool:
        """Return True when both the pool key and token mint are configured."""
        return bool(self.pool_wallet_private_key and self.wish_token_mint)


settings = Settings()
