"""
Horizon HTTP client: cursor-paged collections, effects, accounts and assets.

Responsibilities:
- Fetch pages strictly after a paging-token cursor (order=asc) for an ingestion task.
- Classify failures: network/timeout/429/5xx are transient (retried with exponential
  backoff behind a circuit breaker); other 4xx and unparseable bodies are not.
- Bound every request with a timeout so shutdown never blocks on a hung call.
"""

from __future__ import annotations

import threading
from typing import Any

import httpx

from stellar_insights.core.exceptions import UpstreamRequestError, UpstreamUnavailableError
from stellar_insights.core.retry import RetryPolicy, call_with_retry
from stellar_insights.horizon.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 15.0
MAX_PAGE_LIMIT = 200
USER_AGENT = "stellar-insights/0.1"

# Extra query parameters per collection endpoint
ENDPOINT_PARAMS: dict[str, dict[str, str]] = {
    "payments": {"include_failed": "true", "join": "transactions"},
    "transactions": {"include_failed": "true"},
    "operations": {"include_failed": "false"},
}


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class HorizonClient:
    """
    Synchronous Horizon client; one instance is safe to share across worker threads.

    Pass transport (e.g. httpx.MockTransport) to run without network in tests.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        transport: httpx.BaseTransport | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must be non-empty")
        self._base_url = base_url.rstrip("/")
        self._retry = retry_policy or RetryPolicy()
        self._breaker = breaker or CircuitBreaker("horizon", CircuitBreakerConfig())
        self._stop_event = stop_event
        self._http = httpx.Client(
            base_url=self._base_url,
            timeout=timeout_sec,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> HorizonClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # --- Low level ---

    def _request_once(self, path: str, params: dict[str, Any], allow_404: bool) -> dict[str, Any] | None:
        try:
            resp = self._http.get(path, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(f"horizon timeout on {path}: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamUnavailableError(f"horizon network error on {path}: {e}") from e
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise UpstreamUnavailableError(
                f"horizon returned {resp.status_code} for {path}",
                status_code=resp.status_code,
                retry_after=_retry_after(resp),
            )
        if resp.status_code >= 400:
            raise UpstreamRequestError(
                f"horizon rejected {path} with {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamRequestError(f"horizon returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise UpstreamRequestError(f"horizon returned a non-object body for {path}")
        return data

    def get_json(self, path: str, params: dict[str, Any] | None = None, *, allow_404: bool = False) -> dict[str, Any] | None:
        """GET path with retry/backoff and circuit breaker. None only when allow_404 and not found."""
        query = dict(params or {})
        return call_with_retry(
            lambda: self._breaker.call(lambda: self._request_once(path, query, allow_404)),
            self._retry,
            operation=f"horizon GET {path}",
            stop_event=self._stop_event,
        )

    # --- Collections ---

    def fetch_page(self, endpoint: str, cursor: str | None, limit: int) -> list[dict[str, Any]]:
        """
        Return records strictly after cursor on a collection endpoint, oldest first.

        endpoint: 'payments' | 'operations' | 'transactions' (or any Horizon collection).
        cursor: paging token, 'now', or None for the start of history.
        """
        params: dict[str, Any] = {"order": "asc", "limit": max(1, min(MAX_PAGE_LIMIT, int(limit)))}
        if cursor:
            params["cursor"] = cursor
        params.update(ENDPOINT_PARAMS.get(endpoint, {}))
        data = self.get_json(f"/{endpoint}", params)
        records = ((data or {}).get("_embedded") or {}).get("records")
        if records is None:
            raise UpstreamRequestError(f"horizon page for {endpoint} has no _embedded.records")
        if not isinstance(records, list):
            raise UpstreamRequestError(f"horizon page for {endpoint} has malformed records")
        logger.debug("horizon_page_fetched", endpoint=endpoint, cursor=cursor, count=len(records))
        return records

    def fetch_operation_effects(self, operation_id: str) -> list[dict[str, Any]]:
        data = self.get_json(f"/operations/{operation_id}/effects", {"limit": MAX_PAGE_LIMIT}, allow_404=True)
        if data is None:
            return []
        return list(((data.get("_embedded") or {}).get("records")) or [])

    # --- Single resources ---

    def fetch_account(self, account_id: str) -> dict[str, Any] | None:
        return self.get_json(f"/accounts/{account_id}", allow_404=True)

    def fetch_asset(self, asset_code: str, asset_issuer: str) -> dict[str, Any] | None:
        """Horizon asset stats record (num_accounts, amount, flags) or None if unknown."""
        data = self.get_json("/assets", {"asset_code": asset_code, "asset_issuer": asset_issuer})
        records = ((data or {}).get("_embedded") or {}).get("records") or []
        return records[0] if records else None
