"""Anti-manipulation eligibility rules for ranked wallets.

Thresholds have defaults from settings and can be changed at runtime through
the ``anti_manipulation`` row of ``system_config``; the row is merged over the
defaults and cached briefly.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from kol_wager_engine.cache import Clock, TtlCache
from kol_wager_engine.storage.repos import SystemConfigRepository

if TYPE_CHECKING:
    from kol_wager_engine.config import EligibilitySettings
    from kol_wager_engine.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ANTI_MANIPULATION_CONFIG_KEY = "anti_manipulation"

SECONDS_PER_DAY = 86_400


class EligibilityConfig(BaseModel):
    """Thresholds used by :func:`evaluate_eligibility`."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    min_wallet_age_days: int = Field(default=7, ge=0)
    min_volume_sol: float = Field(default=0.1, ge=0.0)
    min_unique_counterparties: int = Field(default=3, ge=0)
    max_self_transfer_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    max_wash_trade_ratio: float = Field(default=0.2, ge=0.0, le=1.0)
    counterparty_check_min_tx: int = Field(default=5, ge=1)

    @classmethod
    def from_settings(cls, settings: EligibilitySettings) -> EligibilityConfig:
        return cls(
            min_wallet_age_days=settings.min_wallet_age_days,
            min_volume_sol=settings.min_volume_sol,
            min_unique_counterparties=settings.min_unique_counterparties,
            max_self_transfer_ratio=settings.max_self_transfer_ratio,
            max_wash_trade_ratio=settings.max_wash_trade_ratio,
            counterparty_check_min_tx=settings.counterparty_check_min_tx,
        )

    def merged(self, overrides: Mapping[str, Any]) -> EligibilityConfig:
        """Overlay ``overrides``; unknown keys are ignored, invalid ones keep defaults."""
        try:
            return type(self).model_validate({**self.model_dump(), **overrides})
        except ValidationError as e:
            logger.warning("Ignoring invalid %s config: %s", ANTI_MANIPULATION_CONFIG_KEY, e)
            return self


@dataclass(frozen=True)
class WalletWindowStats:
    """What eligibility needs to know about one wallet in one window."""

    wallet: str
    tx_count: int
    self_transfer_count: int
    unique_counterparties: int
    volume_lamports: int = 0
    wallet_created_at: datetime | None = None
    tracked_from: datetime | None = None

    @property
    def known_since(self) -> datetime | None:
        return self.wallet_created_at or self.tracked_from


def wallet_age_days(since: datetime, as_of: datetime) -> int:
    return math.floor((as_of - since).total_seconds() / SECONDS_PER_DAY)


def evaluate_eligibility(
    stats: WalletWindowStats,
    config: EligibilityConfig,
    *,
    window_end: datetime,
) -> list[str]:
    """Return disqualification reasons; an empty list means eligible."""
    reasons: list[str] = []

    since = stats.known_since
    if since is not None:
        age = wallet_age_days(since, window_end)
        if age < config.min_wallet_age_days:
            reasons.append(f"Wallet age ({age}d) below minimum ({config.min_wallet_age_days}d)")

    if stats.tx_count > 0:
        ratio = stats.self_transfer_count / stats.tx_count
        if ratio > config.max_self_transfer_ratio:
            reasons.append(
                f"Self-transfer ratio ({ratio * 100:.1f}%) exceeds maximum "
                f"({config.max_self_transfer_ratio * 100:.1f}%)"
            )

    if (
        stats.tx_count >= config.counterparty_check_min_tx
        and stats.unique_counterparties < config.min_unique_counterparties
    ):
        reasons.append(
            f"Unique counterparties ({stats.unique_counterparties}) below minimum "
            f"({config.min_unique_counterparties})"
        )

    return reasons


ConfigLoader = Callable[[], Awaitable[Mapping[str, Any] | None]]


def system_config_loader(db: DatabaseManager, key: str = ANTI_MANIPULATION_CONFIG_KEY) -> ConfigLoader:
    """Loader reading ``key`` from system_config in its own session."""

    async def load() -> Mapping[str, Any] | None:
        async with db.get_async_session() as session:
            return await SystemConfigRepository(session).get(key)

    return load


class EligibilityConfigProvider:
    """Hot-reloadable eligibility config behind a short TTL cache.

    A failing or empty store yields the defaults, which are cached as well so
    a broken database is not hammered on every lookup.
    """

    def __init__(
        self,
        loader: ConfigLoader,
        *,
        defaults: EligibilityConfig | None = None,
        ttl_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._loader = loader
        self._defaults = defaults or EligibilityConfig()
        self._cache: TtlCache[EligibilityConfig] = TtlCache(ttl_seconds, clock=clock)

    async def get(self) -> EligibilityConfig:
        cached = self._cache.get()
        if cached is not None:
            return cached

        config = self._defaults
        try:
            overrides = await self._loader()
        except SQLAlchemyError as e:
            logger.warning("Failed to load %s config, using defaults: %s", ANTI_MANIPULATION_CONFIG_KEY, e)
            overrides = None
        if overrides:
            config = self._defaults.merged(overrides)

        self._cache.set(config)
        return config

    def invalidate(self) -> None:
        self._cache.invalidate()
