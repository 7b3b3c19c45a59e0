"""
USD pricing for non-pegged assets: providers over httpx and a cached feed.
"""

from stellar_insights.pricing.feed import (
    DEFAULT_ASSET_IDS,
    PROVIDERS,
    CoinGeckoProvider,
    CoinMarketCapProvider,
    PriceFeed,
    PriceProvider,
    build_provider,
    parse_asset_ids,
)

__all__ = [
    "DEFAULT_ASSET_IDS",
    "PROVIDERS",
    "CoinGeckoProvider",
    "CoinMarketCapProvider",
    "PriceFeed",
    "PriceProvider",
    "build_provider",
    "parse_asset_ids",
]
