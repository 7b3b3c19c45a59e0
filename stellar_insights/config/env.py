"""
Environment variable loading and parsing helpers.

- Loads .env from the project root when available (python-dotenv).
- HORIZON_URL: Horizon endpoint (default: public network).
- CONTRACT_MODE: memory | rpc (default: memory).
- PRICE_FEED_PROVIDER: coingecko | coinmarketcap (default: coingecko).
- Typed getters with defaults for the numeric and boolean knobs used by Settings.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is stellar_insights/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

PUBLIC_HORIZON_URL = "https://horizon.stellar.org"
TESTNET_HORIZON_URL = "https://horizon-testnet.stellar.org"
STELLAR_EXPERT_API_URL = "https://api.stellar.expert/explorer/public"

CONTRACT_MODES = ("memory", "rpc")
PRICE_FEED_PROVIDERS = ("coingecko", "coinmarketcap")


def load_insights_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides the process env."""
    if _ENV_PATH.is_file():
        load_dotenv(_ENV_PATH, override=False)


def get_str(name: str, default: str = "") -> str:
    load_insights_env()
    return (os.getenv(name) or default).strip()


def get_int(name: str, default: int) -> int:
    raw = get_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def get_float(name: str, default: float) -> float:
    raw = get_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def get_bool(name: str, default: bool = False) -> bool:
    raw = get_str(name).lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def get_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Comma-separated list; empty entries dropped, order kept."""
    raw = get_str(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def get_horizon_url() -> str:
    """
    Resolve Horizon URL from env.
    Order: HORIZON_URL > STELLAR_NETWORK=testnet > public network.
    """
    url = get_str("HORIZON_URL")
    if url:
        return url.rstrip("/")
    if get_str("STELLAR_NETWORK").lower() == "testnet":
        return TESTNET_HORIZON_URL
    return PUBLIC_HORIZON_URL


def get_contract_mode() -> str:
    mode = get_str("CONTRACT_MODE", "memory").lower()
    if mode not in CONTRACT_MODES:
        raise ValueError(f"CONTRACT_MODE must be one of {CONTRACT_MODES}, got {mode!r}")
    return mode


def get_price_feed_provider() -> str:
    provider = get_str("PRICE_FEED_PROVIDER", "coingecko").lower()
    if provider not in PRICE_FEED_PROVIDERS:
        raise ValueError(f"PRICE_FEED_PROVIDER must be one of {PRICE_FEED_PROVIDERS}, got {provider!r}")
    return provider
