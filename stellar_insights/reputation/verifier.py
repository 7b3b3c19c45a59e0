"""
External verification sources for issued assets.

- stellar.expert: the asset is listed and carries a domain.
- stellar.toml: the issuer's home_domain serves /.well-known/stellar.toml and its
  [[CURRENCIES]] lists the asset code (issuer must match when given).

Each check answers True, False, or None when the source could not be reached after
retries. None means "unknown" and never revokes a previously verified flag.
"""

from __future__ import annotations

import threading
import tomllib
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from stellar_insights.core.exceptions import InsightsError, UpstreamRequestError, UpstreamUnavailableError
from stellar_insights.core.retry import RetryPolicy, call_with_retry
from stellar_insights.horizon.client import USER_AGENT
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 10.0
TOML_PATH = "/.well-known/stellar.toml"
MAX_TOML_BYTES = 100_000


class AccountSource(Protocol):
    """What the verifier needs from the ledger (HorizonClient satisfies it)."""

    def fetch_account(self, account_id: str) -> dict[str, Any] | None: ...

    def fetch_asset(self, asset_code: str, asset_issuer: str) -> dict[str, Any] | None: ...


@dataclass
class TomlInfo:
    home_domain: str
    listed: bool
    org_name: str | None = None
    org_url: str | None = None


@dataclass
class VerificationOutcome:
    """Fresh source results for one asset; None fields mean the source was unreachable."""

    stellar_expert_verified: bool | None = None
    stellar_toml_verified: bool | None = None
    toml: TomlInfo | None = None
    trustline_count: int | None = None


def parse_stellar_toml(content: str, home_domain: str, asset_code: str, asset_issuer: str) -> TomlInfo:
    """Parse a stellar.toml document; listed when [[CURRENCIES]] carries the asset."""
    try:
        doc = tomllib.loads(content)
    except tomllib.TOMLDecodeError:
        logger.info("reputation_toml_invalid", home_domain=home_domain)
        return TomlInfo(home_domain=home_domain, listed=False)
    listed = False
    for currency in doc.get("CURRENCIES") or []:
        if not isinstance(currency, dict) or currency.get("code") != asset_code:
            continue
        issuer = currency.get("issuer")
        if issuer is None or issuer == asset_issuer:
            listed = True
            break
    documentation = doc.get("DOCUMENTATION") if isinstance(doc.get("DOCUMENTATION"), dict) else {}
    return TomlInfo(
        home_domain=home_domain,
        listed=listed,
        org_name=documentation.get("ORG_NAME"),
        org_url=documentation.get("ORG_URL"),
    )


class AssetVerifier:
    """Runs the network verification sources. Thread-safe; share one instance."""

    def __init__(
        self,
        ledger: AccountSource,
        *,
        stellar_expert_url: str,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._ledger = ledger
        self._expert_url = stellar_expert_url.rstrip("/")
        self._retry = retry_policy or RetryPolicy(attempts=3)
        self._stop_event = stop_event
        self._http = httpx.Client(
            timeout=timeout_sec,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _get(self, url: str) -> httpx.Response | None:
        """GET with retry on transient failures. None on 404."""

        def once() -> httpx.Response | None:
            try:
                resp = self._http.get(url)
            except httpx.TransportError as e:
                raise UpstreamUnavailableError(f"request to {url} failed: {e}") from e
            if resp.status_code == 404:
                return None
            if resp.status_code == 429 or resp.status_code >= 500:
                raise UpstreamUnavailableError(f"{url} returned {resp.status_code}", status_code=resp.status_code)
            if resp.status_code >= 400:
                raise UpstreamRequestError(f"{url} returned {resp.status_code}", status_code=resp.status_code)
            return resp

        return call_with_retry(once, self._retry, operation=f"GET {url}", stop_event=self._stop_event)

    # --- Sources ---

    def check_stellar_expert(self, asset_code: str, asset_issuer: str) -> bool | None:
        url = f"{self._expert_url}/asset/{asset_code}-{asset_issuer}"
        try:
            resp = self._get(url)
        except (UpstreamUnavailableError, UpstreamRequestError) as e:
            logger.warning("reputation_source_unavailable", source="stellar_expert", asset_code=asset_code, error=str(e))
            return None
        if resp is None:
            return False
        try:
            data = resp.json()
        except ValueError:
            return False
        return isinstance(data, dict) and bool(data.get("domain"))

    def check_stellar_toml(self, asset_code: str, asset_issuer: str) -> tuple[bool | None, TomlInfo | None]:
        try:
            account = self._ledger.fetch_account(asset_issuer)
        except InsightsError as e:
            logger.warning("reputation_source_unavailable", source="horizon_account", asset_issuer=asset_issuer, error=str(e))
            return None, None
        home_domain = (account or {}).get("home_domain")
        if not home_domain:
            return False, None
        url = f"https://{home_domain}{TOML_PATH}"
        try:
            resp = self._get(url)
        except (UpstreamUnavailableError, UpstreamRequestError) as e:
            logger.warning("reputation_source_unavailable", source="stellar_toml", home_domain=home_domain, error=str(e))
            return None, None
        if resp is None or len(resp.content) > MAX_TOML_BYTES:
            return False, None
        info = parse_stellar_toml(resp.text, home_domain, asset_code, asset_issuer)
        return info.listed, info

    def fetch_trustline_count(self, asset_code: str, asset_issuer: str) -> int | None:
        try:
            record = self._ledger.fetch_asset(asset_code, asset_issuer)
        except InsightsError as e:
            logger.warning("reputation_source_unavailable", source="horizon_asset", asset_code=asset_code, error=str(e))
            return None
        if record is None:
            return None
        try:
            return int(record.get("num_accounts") or (record.get("accounts") or {}).get("authorized") or 0)
        except (TypeError, ValueError):
            return None

    def verify(self, asset_code: str, asset_issuer: str) -> VerificationOutcome:
        """Query every source; unreachable sources are reported as None."""
        expert = self.check_stellar_expert(asset_code, asset_issuer)
        toml_ok, toml = self.check_stellar_toml(asset_code, asset_issuer)
        trustlines = self.fetch_trustline_count(asset_code, asset_issuer)
        outcome = VerificationOutcome(
            stellar_expert_verified=expert,
            stellar_toml_verified=toml_ok,
            toml=toml,
            trustline_count=trustlines,
        )
        logger.debug(
            "reputation_sources_checked",
            asset_code=asset_code,
            asset_issuer=asset_issuer,
            stellar_expert=expert,
            stellar_toml=toml_ok,
            trustlines=trustlines,
        )
        return outcome
