"""Reference prices for display values and stablecoin conversion."""

from kol_wager_engine.pricing.reference_price import (
    PriceProvider,
    ReferencePriceFeed,
    coingecko_price,
    default_providers,
    jupiter_price,
)

__all__ = [
    "PriceProvider",
    "ReferencePriceFeed",
    "coingecko_price",
    "default_providers",
    "jupiter_price",
]
