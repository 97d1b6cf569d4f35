"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
KOL wager engine, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

LAMPORTS_PER_SOL = 1_000_000_000


def _split_csv(v: object, *, name: str) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(p.strip() for p in v.split(",") if p.strip())
    if isinstance(v, (list, tuple)):
        return tuple(str(x).strip() for x in v if str(x).strip())
    raise TypeError(f"Invalid {name} type")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or sqlite+aiosqlite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (optional cross-process cache)",
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


class SolanaSettings(BaseSettings):
    """Solana RPC settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
        description="Primary Solana RPC endpoint",
    )
    fallback_rpc_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="SOLANA_FALLBACK_RPC_URLS",
        description="Fallback Solana RPC endpoints (comma-separated)",
    )
    max_retries: int = Field(
        default=3,
        alias="SOLANA_MAX_RETRIES",
        ge=1,
        le=20,
        description="Attempts per call; every endpoint is tried on each attempt",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="SOLANA_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff between attempts (doubles per attempt)",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
        description="Commitment level used for reads and confirmations",
    )
    tx_cache_ttl_seconds: int = Field(
        default=3600,
        alias="SOLANA_TX_CACHE_TTL_SECONDS",
        ge=0,
        le=7 * 24 * 3600,
        description="Redis TTL for cached parsed transactions",
    )

    @field_validator("fallback_rpc_urls", mode="before")
    @classmethod
    def _parse_fallbacks(cls, v: object) -> tuple[str, ...]:
        return _split_csv(v, name="SOLANA_FALLBACK_RPC_URLS")

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @property
    def endpoints(self) -> tuple[str, ...]:
        """Primary endpoint followed by the distinct fallbacks."""
        ordered = [self.rpc_url]
        for url in self.fallback_rpc_urls:
            if url not in ordered:
                ordered.append(url)
        return tuple(ordered)


class HistorySettings(BaseSettings):
    """Enhanced transaction history API settings (used by the backfill)."""

    model_config = SettingsConfigDict(env_prefix="HELIUS_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="HELIUS_API_KEY",
        description="API key for the per-address transaction history endpoint",
    )
    base_url: str = Field(
        default="https://api-mainnet.helius-rpc.com",
        alias="HELIUS_RPC_API_BASE_URL",
        description="Base URL of the enhanced transaction API",
    )
    request_timeout_seconds: float = Field(
        default=20.0,
        alias="HELIUS_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
    )
    max_pages_per_wallet: int = Field(
        default=10,
        alias="HELIUS_BACKFILL_MAX_PAGES",
        ge=1,
        le=50,
        description="History pages fetched per wallet in one backfill run",
    )

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the API base URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("HELIUS_RPC_API_BASE_URL must be an HTTP(S) URL")
        return v


class PriceFeedSettings(BaseSettings):
    """SOL/USD reference price feed settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", extra="ignore")

    cache_ttl_seconds: int = Field(
        default=60,
        alias="PRICE_CACHE_TTL_SECONDS",
        ge=1,
        le=3600,
        description="How long a fetched price is considered fresh",
    )
    fallback_usd: float = Field(
        default=124.0,
        alias="PRICE_FALLBACK_USD",
        gt=0.0,
        description="Price used when every provider fails and nothing is cached",
    )
    request_timeout_seconds: float = Field(
        default=7.0,
        alias="PRICE_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=60.0,
        description="Per-provider HTTP timeout",
    )
    coingecko_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd",
        alias="PRICE_COINGECKO_URL",
    )
    jupiter_url: str = Field(
        default="https://price.jup.ag/v4/price?ids=SOL",
        alias="PRICE_JUPITER_URL",
    )


class EligibilitySettings(BaseSettings):
    """Anti-manipulation defaults (overridable at runtime via system_config)."""

    model_config = SettingsConfigDict(env_prefix="ELIGIBILITY_", extra="ignore")

    min_wallet_age_days: int = Field(
        default=7,
        alias="ELIGIBILITY_MIN_WALLET_AGE_DAYS",
        ge=0,
        le=3650,
    )
    min_volume_sol: float = Field(
        default=0.1,
        alias="ELIGIBILITY_MIN_VOLUME_SOL",
        ge=0.0,
    )
    min_unique_counterparties: int = Field(
        default=3,
        alias="ELIGIBILITY_MIN_UNIQUE_COUNTERPARTIES",
        ge=0,
        le=10_000,
    )
    max_self_transfer_ratio: float = Field(
        default=0.1,
        alias="ELIGIBILITY_MAX_SELF_TRANSFER_RATIO",
        ge=0.0,
        le=1.0,
    )
    max_wash_trade_ratio: float = Field(
        default=0.2,
        alias="ELIGIBILITY_MAX_WASH_TRADE_RATIO",
        ge=0.0,
        le=1.0,
    )
    counterparty_check_min_tx: int = Field(
        default=5,
        alias="ELIGIBILITY_COUNTERPARTY_CHECK_MIN_TX",
        ge=1,
        le=10_000,
        description="Counterparty diversity is only enforced at or above this tx count",
    )
    config_ttl_seconds: int = Field(
        default=60,
        alias="ELIGIBILITY_CONFIG_TTL_SECONDS",
        ge=1,
        le=3600,
        description="Cache TTL for the anti_manipulation system_config record",
    )


class SettlementSettings(BaseSettings):
    """Market settlement and payout settings."""

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_", extra="ignore")

    top_n: int = Field(
        default=3,
        alias="SETTLEMENT_TOP_N",
        ge=1,
        le=500,
        description="A KOL market resolves YES when the KOL ranks at or above this",
    )
    fee_bps: int = Field(
        default=250,
        alias="SETTLEMENT_FEE_BPS",
        ge=0,
        le=10_000,
        description="Protocol fee taken from the gross pot (basis points)",
    )
    min_payout_lamports: int = Field(
        default=1_000_000,
        alias="SETTLEMENT_MIN_PAYOUT_LAMPORTS",
        ge=0,
        description="Winner payouts below this are skipped",
    )
    fee_wallet: str | None = Field(
        default=None,
        alias="SETTLEMENT_FEE_WALLET",
        description="Destination for collected fees (fees stay in escrow when unset)",
    )
    max_markets: int = Field(
        default=500,
        alias="SETTLEMENT_MAX_MARKETS",
        ge=1,
        le=10_000,
    )
    max_payouts: int = Field(
        default=200,
        alias="SETTLEMENT_MAX_PAYOUTS",
        ge=1,
        le=5_000,
    )
    batch_deadline_seconds: float = Field(
        default=50.0,
        alias="SETTLEMENT_BATCH_DEADLINE_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Wall-clock budget after which batch jobs stop starting new work",
    )
    reconcile_after_seconds: int = Field(
        default=600,
        alias="SETTLEMENT_RECONCILE_AFTER_SECONDS",
        ge=60,
        le=7 * 24 * 3600,
        description="Age after which a processing payout is checked on chain",
    )


class EscrowSettings(BaseSettings):
    """Escrow wallet settings.

    Addresses come from ESCROW_WALLET_ADDRESSES (comma-separated) or the
    numbered ESCROW_WALLET_{1,2,3}_ADDRESS variables; secrets always come from
    the numbered ESCROW_WALLET_{n}_SECRET_KEY variables, matched by position.
    """

    model_config = SettingsConfigDict(env_prefix="ESCROW_", extra="ignore")

    wallet_addresses: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="ESCROW_WALLET_ADDRESSES",
    )
    wallet_1_address: str | None = Field(default=None, alias="ESCROW_WALLET_1_ADDRESS")
    wallet_2_address: str | None = Field(default=None, alias="ESCROW_WALLET_2_ADDRESS")
    wallet_3_address: str | None = Field(default=None, alias="ESCROW_WALLET_3_ADDRESS")
    wallet_1_secret_key: SecretStr | None = Field(default=None, alias="ESCROW_WALLET_1_SECRET_KEY")
    wallet_2_secret_key: SecretStr | None = Field(default=None, alias="ESCROW_WALLET_2_SECRET_KEY")
    wallet_3_secret_key: SecretStr | None = Field(default=None, alias="ESCROW_WALLET_3_SECRET_KEY")
    pm_wallet_address: str | None = Field(
        default=None,
        alias="PM_ESCROW_WALLET_ADDRESS",
        description="Restrict withdrawal funding to this escrow wallet",
    )

    @field_validator("wallet_addresses", mode="before")
    @classmethod
    def _parse_addresses(cls, v: object) -> tuple[str, ...]:
        return _split_csv(v, name="ESCROW_WALLET_ADDRESSES")

    def configured_wallets(self) -> list[tuple[str, SecretStr | None]]:
        """Return (address, secret) pairs, at most three, in configuration order."""
        numbered = [self.wallet_1_address, self.wallet_2_address, self.wallet_3_address]
        addresses = list(self.wallet_addresses) or [a.strip() for a in numbered if a and a.strip()]
        secrets = [self.wallet_1_secret_key, self.wallet_2_secret_key, self.wallet_3_secret_key]
        return [(address, secrets[idx]) for idx, address in enumerate(addresses[:3])]


class ExchangeSettings(BaseSettings):
    """Signed user action settings."""

    model_config = SettingsConfigDict(env_prefix="PM_", extra="ignore")

    require_nonce: bool = Field(
        default=False,
        alias="PM_REQUIRE_NONCE",
        description="Require a single-use nonce on every signed action",
    )
    signature_max_skew_seconds: int = Field(
        default=300,
        alias="PM_SIGNATURE_MAX_SKEW_SECONDS",
        ge=1,
        le=3600,
        description="Maximum distance between issued_at and now",
    )


class Settings(BaseSettings):
    """Root application settings.

    Aggregates every configuration group and adds application-level options.

    Example:
        ```python
        from kol_wager_engine.config import get_settings

        settings = get_settings()
        print(settings.solana.endpoints)
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
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
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
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    history: HistorySettings = Field(
        default_factory=lambda: HistorySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price: PriceFeedSettings = Field(
        default_factory=lambda: PriceFeedSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    eligibility: EligibilitySettings = Field(
        default_factory=lambda: EligibilitySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    settlement: SettlementSettings = Field(
        default_factory=lambda: SettlementSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    escrow: EscrowSettings = Field(
        default_factory=lambda: EscrowSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    exchange: ExchangeSettings = Field(
        default_factory=lambda: ExchangeSettings(
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
        description="Compute results without persisting or sending funds",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        wallets = self.escrow.configured_wallets()
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "solana": {
                "endpoints": ", ".join(self.solana.endpoints),
                "max_retries": str(self.solana.max_retries),
                "commitment": self.solana.commitment,
            },
            "history": {
                "base_url": self.history.base_url,
                "api_key": "(set)" if self.history.api_key else "(not set)",
            },
            "price": {
                "cache_ttl_seconds": str(self.price.cache_ttl_seconds),
                "fallback_usd": str(self.price.fallback_usd),
            },
            "eligibility": {
                "min_wallet_age_days": str(self.eligibility.min_wallet_age_days),
                "max_self_transfer_ratio": str(self.eligibility.max_self_transfer_ratio),
                "min_unique_counterparties": str(self.eligibility.min_unique_counterparties),
            },
            "settlement": {
                "top_n": str(self.settlement.top_n),
                "fee_bps": str(self.settlement.fee_bps),
                "min_payout_lamports": str(self.settlement.min_payout_lamports),
                "fee_wallet": self.settlement.fee_wallet or "(not set)",
            },
            "escrow": {
                address: "(secret set)" if secret else "(secret missing)"
                for address, secret in wallets
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(
        self,
        *,
        command: Literal["snapshot", "settle", "payout", "withdrawals", "ingest", "backfill"],
    ) -> None:
        """Validate command-specific requirements.

        Commands that move funds refuse to run without a usable escrow
        configuration.
        """
        if command == "backfill" and self.history.api_key is None:
            raise ValueError("HELIUS_API_KEY is required to backfill transaction history")
        if command in ("payout", "withdrawals"):
            wallets = self.escrow.configured_wallets()
            if not wallets:
                raise ValueError(
                    "ESCROW_WALLET_ADDRESSES or ESCROW_WALLET_1_ADDRESS is required to send payouts"
                )
            if not any(secret for _, secret in wallets):
                raise ValueError("At least one ESCROW_WALLET_{n}_SECRET_KEY is required to send payouts")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
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

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
