"""SOL/USD reference price with provider fallback.

Providers are tried in order (CoinGecko, then Jupiter). A fresh in-process
value is served from a TTL cache; when every provider fails the last good
value (in-process, then Redis) is used, and finally a fixed fallback price.
The price only feeds display values and stablecoin conversion, so it must
never raise.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from redis.asyncio import Redis

from kol_wager_engine.cache import Clock, TtlCache

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_USD = Decimal("124")
DEFAULT_TIMEOUT_SECONDS = 7.0
DEFAULT_CACHE_TTL_SECONDS = 60
LAST_GOOD_PRICE_KEY = "price:sol_usd:last_good"
PRICE_QUANT = Decimal("0.000001")

USER_AGENT = "kol-wager-engine/0.1"


def _positive_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price.quantize(PRICE_QUANT)


def coingecko_price(payload: Any) -> Decimal | None:
    """Extract ``solana.usd`` from a CoinGecko simple-price response."""
    if not isinstance(payload, dict):
        return None
    solana = payload.get("solana")
    return _positive_decimal(solana.get("usd")) if isinstance(solana, dict) else None


def jupiter_price(payload: Any) -> Decimal | None:
    """Extract ``data.SOL.price`` from a Jupiter price response."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    sol = data.get("SOL") if isinstance(data, dict) else None
    return _positive_decimal(sol.get("price")) if isinstance(sol, dict) else None


@dataclass(frozen=True)
class PriceProvider:
    name: str
    url: str
    extract: Callable[[Any], Decimal | None]


def default_providers(coingecko_url: str, jupiter_url: str) -> list[PriceProvider]:
    return [
        PriceProvider("coingecko", coingecko_url, coingecko_price),
        PriceProvider("jupiter", jupiter_url, jupiter_price),
    ]


class ReferencePriceFeed:
    """Cached SOL/USD price that degrades to a stale or fixed value.

    Example:
        ```python
        async with httpx.AsyncClient() as http:
            feed = ReferencePriceFeed(http, providers=default_providers(cg_url, jup_url))
            price = await feed.get_sol_price_usd()
        ```
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        providers: Sequence[PriceProvider],
        redis: Redis | None = None,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        fallback_usd: Decimal = DEFAULT_FALLBACK_USD,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self._http = http
        self._providers = list(providers)
        self._redis = redis
        self._cache: TtlCache[Decimal] = TtlCache(cache_ttl_seconds, clock=clock)
        self._fallback = Decimal(str(fallback_usd))
        self._timeout = timeout_seconds

    async def _fetch(self, provider: PriceProvider) -> Decimal | None:
        try:
            response = await self._http.get(
                provider.url,
                headers={"accept": "application/json", "user-agent": USER_AGENT},
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Price provider %s failed: %s", provider.name, e)
            return None
        price = provider.extract(payload)
        if price is None:
            logger.warning("Price provider %s returned no usable price", provider.name)
        return price

    async def _last_good_from_redis(self) -> Decimal | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(LAST_GOOD_PRICE_KEY)
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if isinstance(value, bytes):
            value = value.decode()
        return _positive_decimal(value)

    async def _store_last_good(self, price: Decimal) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(LAST_GOOD_PRICE_KEY, str(price))
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def get_sol_price_usd(self) -> Decimal:
        """Return the current SOL/USD price. Never raises."""
        cached = self._cache.get()
        if cached is not None:
            return cached

        for provider in self._providers:
            price = await self._fetch(provider)
            if price is not None:
                self._cache.set(price)
                await self._store_last_good(price)
                return price

        stale = self._cache.peek()
        if stale is not None:
            logger.warning("All price providers failed; using stale price %s", stale.value)
            return stale.value

        last_good = await self._last_good_from_redis()
        if last_good is not None:
            logger.warning("All price providers failed; using last good price %s", last_good)
            return last_good

        logger.warning("All price providers failed; using fallback price %s", self._fallback)
        return self._fallback
