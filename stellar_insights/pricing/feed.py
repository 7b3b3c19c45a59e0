"""
USD price feed for Stellar assets.

- Providers answer spot USD prices for provider asset ids: CoinGecko coin ids
  ("stellar", "euro-coin") or CoinMarketCap slugs, which use the same names for
  the assets mapped here.
- PriceFeed maps a Stellar asset to a provider id (full 'CODE:ISSUER' key first,
  then the bare code), keeps fetched prices for cache_ttl_sec and serves the last
  cached price when the provider cannot be reached.

Prices are parsed from the JSON text as Decimal so the recorded value is exactly
what the provider sent.
"""

from __future__ import annotations

import threading
import time
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Protocol

import httpx

from stellar_insights.core.exceptions import UpstreamRequestError, UpstreamUnavailableError
from stellar_insights.core.retry import RetryPolicy, call_with_retry
from stellar_insights.database.models import AssetRef
from stellar_insights.horizon.client import USER_AGENT
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

COINGECKO_API_URL = "https://api.coingecko.com/api/v3"
COINGECKO_PRO_API_URL = "https://pro-api.coingecko.com/api/v3"
COINMARKETCAP_API_URL = "https://pro-api.coinmarketcap.com"
PROVIDERS = ("coingecko", "coinmarketcap")

DEFAULT_CACHE_TTL_SEC = 900.0
DEFAULT_TIMEOUT_SEC = 10.0

# Stellar asset key (or bare code) -> provider asset id
DEFAULT_ASSET_IDS: dict[str, str] = {
    "XLM:native": "stellar",
    "USDC:GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN": "usd-coin",
    "EURC:GDHU6WRG4IEQXM5NZ4BMPKOXHW76MZM4Y2IEMFDVXBSDP6SJY4ITNPP2": "euro-coin",
    "USDT:GCQTGZQQ5G4PTM2GL7CDIFKUBIPEC52BROAQIAPW53XBRJVN6ZJVTG6V": "tether",
    "BTC:GDXTJEK4JZNSTNQAWA53RZNS2GIKTDRPEUWDXELFMKU52XNECNVDVXDI": "bitcoin",
    "ETH:GDXTJEK4JZNSTNQAWA53RZNS2GIKTDRPEUWDXELFMKU52XNECNVDVXDI": "ethereum",
    "yXLM:GARDNV3Q7YGT4AKSDF25LT32YSCCW4EV22Y2TV3I2PU2MMXJTEDL5T55": "stellar",
    "EURC": "euro-coin",
}


def parse_asset_ids(entries: Iterable[str]) -> dict[str, str]:
    """Parse 'KEY=provider-id' entries (KEY is 'CODE:ISSUER', 'XLM:native' or a bare code)."""
    ids: dict[str, str] = {}
    for entry in entries:
        key, sep, provider_id = entry.partition("=")
        if not sep or not key.strip() or not provider_id.strip():
            raise ValueError(f"Price feed asset id must look like KEY=id, got {entry!r}")
        ids[key.strip()] = provider_id.strip()
    return ids


class PriceProvider(Protocol):
    name: str

    def fetch_prices(self, ids: list[str]) -> dict[str, Decimal]: ...

    def close(self) -> None: ...


class _HttpPriceProvider:
    """Shared GET with retry on transient failures; subclasses parse the body."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._retry = retry_policy or RetryPolicy(attempts=2)
        self._stop_event = stop_event
        self._http = httpx.Client(
            timeout=timeout_sec,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json", **(headers or {})},
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _get_json(self, path: str, params: dict[str, str]) -> Any:
        url = f"{self._base_url}{path}"

        def once() -> Any:
            try:
                resp = self._http.get(url, params=params)
            except httpx.TransportError as e:
                raise UpstreamUnavailableError(f"{self.name} request failed: {e}") from e
            if resp.status_code == 429 or resp.status_code >= 500:
                raise UpstreamUnavailableError(f"{self.name} returned {resp.status_code}", status_code=resp.status_code)
            if resp.status_code >= 400:
                raise UpstreamRequestError(
                    f"{self.name} returned {resp.status_code}: {resp.text[:200]}", status_code=resp.status_code
                )
            try:
                return resp.json(parse_float=Decimal)
            except ValueError as e:
                raise UpstreamRequestError(f"{self.name} sent invalid JSON: {e}") from e

        return call_with_retry(once, self._retry, operation=f"GET {url}", stop_event=self._stop_event)


def _price(value: Any) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
        return None
    price = Decimal(value)
    return price if price.is_finite() and price >= 0 else None


class CoinGeckoProvider(_HttpPriceProvider):
    """GET /simple/price?ids=...&vs_currencies=usd. A key switches to the pro API."""

    name = "coingecko"

    def __init__(self, *, api_key: str | None = None, base_url: str | None = None, **kwargs: Any) -> None:
        headers = {"x-cg-pro-api-key": api_key} if api_key else None
        default_url = COINGECKO_PRO_API_URL if api_key else COINGECKO_API_URL
        super().__init__(base_url or default_url, headers=headers, **kwargs)

    def fetch_prices(self, ids: list[str]) -> dict[str, Decimal]:
        if not ids:
            return {}
        data = self._get_json("/simple/price", {"ids": ",".join(ids), "vs_currencies": "usd"})
        prices: dict[str, Decimal] = {}
        if not isinstance(data, dict):
            return prices
        for provider_id in ids:
            entry = data.get(provider_id)
            price = _price(entry.get("usd")) if isinstance(entry, dict) else None
            if price is not None:
                prices[provider_id] = price
        return prices


class CoinMarketCapProvider(_HttpPriceProvider):
    """GET /v2/cryptocurrency/quotes/latest?slug=...&convert=USD (API key required)."""

    name = "coinmarketcap"

    def __init__(self, *, api_key: str | None = None, base_url: str | None = None, **kwargs: Any) -> None:
        if not api_key:
            raise ValueError("CoinMarketCap requires an API key")
        super().__init__(base_url or COINMARKETCAP_API_URL, headers={"X-CMC_PRO_API_KEY": api_key}, **kwargs)

    def fetch_prices(self, ids: list[str]) -> dict[str, Decimal]:
        if not ids:
            return {}
        body = self._get_json("/v2/cryptocurrency/quotes/latest", {"slug": ",".join(ids), "convert": "USD"})
        data = body.get("data") if isinstance(body, dict) else None
        prices: dict[str, Decimal] = {}
        if not isinstance(data, dict):
            return prices
        for entries in data.values():
            # v2 answers a list per key, v1 a single object
            for entry in entries if isinstance(entries, list) else [entries]:
                if not isinstance(entry, dict) or entry.get("slug") not in ids:
                    continue
                quote = (entry.get("quote") or {}).get("USD") or {}
                price = _price(quote.get("price"))
                if price is not None and entry["slug"] not in prices:
                    prices[entry["slug"]] = price
        return prices


def build_provider(name: str, **kwargs: Any) -> PriceProvider:
    if name == "coingecko":
        return CoinGeckoProvider(**kwargs)
    if name == "coinmarketcap":
        return CoinMarketCapProvider(**kwargs)
    raise ValueError(f"Unknown price feed provider {name!r}; expected one of {PROVIDERS}")


class PriceFeed:
    """Cached asset -> USD price lookups over one provider. Thread-safe; share one instance."""

    def __init__(
        self,
        provider: PriceProvider,
        *,
        asset_ids: Mapping[str, str] | None = None,
        cache_ttl_sec: float = DEFAULT_CACHE_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ids = dict(DEFAULT_ASSET_IDS if asset_ids is None else asset_ids)
        self._ttl = max(0.0, cache_ttl_sec)
        self._clock = clock
        self._cache: dict[str, tuple[Decimal, float]] = {}
        self._lock = threading.Lock()
        logger.info("price_feed_initialized", provider=provider.name, assets=len(self._ids))

    @property
    def source(self) -> str:
        return self._provider.name

    def provider_id(self, asset: AssetRef) -> str | None:
        return self._ids.get(asset.key) or self._ids.get(asset.code)

    def get_prices(self, assets: Iterable[AssetRef]) -> dict[str, Decimal]:
        """USD prices keyed by asset key. Unmapped or unavailable assets are left out."""
        wanted: dict[str, str] = {}
        for asset in assets:
            provider_id = self.provider_id(asset)
            if provider_id is not None:
                wanted[asset.key] = provider_id

        now = self._clock()
        with self._lock:
            fresh = {pid: price for pid, (price, at) in self._cache.items() if now - at < self._ttl}
        to_fetch = sorted({pid for pid in wanted.values() if pid not in fresh})

        fetched: dict[str, Decimal] = {}
        if to_fetch:
            try:
                fetched = self._provider.fetch_prices(to_fetch)
            except (UpstreamUnavailableError, UpstreamRequestError) as e:
                logger.error("price_feed_fetch_failed", provider=self.source, ids=to_fetch, error=str(e))
            with self._lock:
                for pid, price in fetched.items():
                    self._cache[pid] = (price, now)
                stale = {pid: self._cache[pid][0] for pid in to_fetch if pid not in fetched and pid in self._cache}
            if stale:
                logger.warning("price_feed_stale_cache_used", provider=self.source, ids=sorted(stale))
                fetched.update(stale)
            missing = [pid for pid in to_fetch if pid not in fetched]
            if missing:
                logger.warning("price_feed_prices_missing", provider=self.source, ids=missing)

        prices: dict[str, Decimal] = {}
        for key, pid in wanted.items():
            price = fresh.get(pid, fetched.get(pid))
            if price is not None:
                prices[key] = price
        return prices

    def get_price(self, asset: AssetRef) -> Decimal | None:
        return self.get_prices([asset]).get(asset.key)

    def cache_stats(self) -> tuple[int, int]:
        """(entries, fresh entries)."""
        now = self._clock()
        with self._lock:
            return len(self._cache), sum(1 for _, at in self._cache.values() if now - at < self._ttl)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def close(self) -> None:
        self._provider.close()
