"""
Tests for the Horizon client and circuit breaker.

HTTP is served by httpx.MockTransport; retry backoff is zero so tests do not sleep.
"""

from __future__ import annotations

import httpx
import pytest

from stellar_insights.core.exceptions import CircuitOpenError, UpstreamRequestError, UpstreamUnavailableError
from stellar_insights.core.retry import RetryPolicy
from stellar_insights.horizon import CircuitBreaker, CircuitBreakerConfig, CircuitState, HorizonClient

BASE_URL = "https://horizon.test"


def _page(*records):
    return {"_embedded": {"records": list(records)}}


def _client(handler, *, attempts=3, breaker=None):
    return HorizonClient(
        BASE_URL,
        retry_policy=RetryPolicy(attempts=attempts, backoff_sec=0.0),
        breaker=breaker,
        transport=httpx.MockTransport(handler),
    )


def test_fetch_page_sends_cursor_order_and_joins():
    """Payments are requested ascending after the cursor, with failed txs and transactions joined."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_page({"id": "1", "paging_token": "1"}))

    with _client(handler) as client:
        records = client.fetch_page("payments", "12345", 50)

    assert records == [{"id": "1", "paging_token": "1"}]
    params = seen[0].url.params
    assert seen[0].url.path == "/payments"
    assert params["order"] == "asc"
    assert params["cursor"] == "12345"
    assert params["limit"] == "50"
    assert params["include_failed"] == "true"
    assert params["join"] == "transactions"


def test_fetch_page_clamps_limit_to_horizon_max():
    """Horizon pages are capped at 200 records."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_page())

    with _client(handler) as client:
        assert client.fetch_page("operations", None, 1000) == []
    assert seen[0].url.params["limit"] == "200"
    assert "cursor" not in seen[0].url.params


def test_transient_errors_are_retried_then_succeed():
    """503 and 429 are retried with backoff until a success."""
    responses = [httpx.Response(503), httpx.Response(429, headers={"Retry-After": "0"}), httpx.Response(200, json=_page())]

    def handler(request):
        return responses.pop(0)

    with _client(handler) as client:
        assert client.fetch_page("payments", "1", 10) == []
    assert responses == []


def test_transient_errors_exhaust_retries():
    """After the last attempt the transient error propagates."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    with _client(handler, attempts=2) as client:
        with pytest.raises(UpstreamUnavailableError) as exc:
            client.fetch_page("payments", "1", 10)
    assert exc.value.status_code == 500
    assert len(calls) == 2


def test_network_error_is_transient():
    """Transport failures surface as UpstreamUnavailableError."""

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler, attempts=1) as client:
        with pytest.raises(UpstreamUnavailableError):
            client.fetch_page("payments", "1", 10)


def test_client_errors_are_not_retried():
    """A 400 is a request error and is raised after a single call."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"title": "Bad Request"})

    with _client(handler) as client:
        with pytest.raises(UpstreamRequestError):
            client.fetch_page("payments", "not-a-cursor", 10)
    assert len(calls) == 1


def test_page_without_records_is_a_request_error():
    """A body without _embedded.records cannot be paged."""

    def handler(request):
        return httpx.Response(200, json={"status": 200})

    with _client(handler) as client:
        with pytest.raises(UpstreamRequestError):
            client.fetch_page("payments", "1", 10)


def test_fetch_account_missing_returns_none():
    """Unknown accounts come back as None rather than an error."""

    def handler(request):
        if request.url.path == "/accounts/GKNOWN":
            return httpx.Response(200, json={"id": "GKNOWN", "home_domain": "anchor.example"})
        return httpx.Response(404, json={"status": 404})

    with _client(handler) as client:
        assert client.fetch_account("GKNOWN")["home_domain"] == "anchor.example"
        assert client.fetch_account("GMISSING") is None


def test_fetch_asset_and_effects():
    """fetch_asset returns the first asset record; effects of unknown operations are empty."""

    def handler(request):
        if request.url.path == "/assets":
            assert request.url.params["asset_code"] == "USDC"
            return httpx.Response(200, json=_page({"asset_code": "USDC", "num_accounts": 1200}))
        if request.url.path == "/operations/9/effects":
            return httpx.Response(200, json=_page({"type": "account_credited"}))
        return httpx.Response(404)

    with _client(handler) as client:
        assert client.fetch_asset("USDC", "GISSUER")["num_accounts"] == 1200
        assert client.fetch_operation_effects("9") == [{"type": "account_credited"}]
        assert client.fetch_operation_effects("10") == []


def test_breaker_opens_after_consecutive_failures():
    """Once open, calls fail fast without reaching Horizon."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    breaker = CircuitBreaker("horizon", CircuitBreakerConfig(failure_threshold=2, timeout_sec=60.0))
    with _client(handler, attempts=1, breaker=breaker) as client:
        for _ in range(2):
            with pytest.raises(UpstreamUnavailableError):
                client.fetch_page("payments", "1", 10)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            client.fetch_page("payments", "1", 10)
    assert len(calls) == 2


def test_breaker_half_open_success_closes_circuit():
    """After the timeout a successful trial call closes the breaker again."""
    now = [0.0]
    breaker = CircuitBreaker(
        "horizon-test",
        CircuitBreakerConfig(failure_threshold=1, success_threshold=1, timeout_sec=10.0),
        clock=lambda: now[0],
    )

    def fail():
        raise UpstreamUnavailableError("down")

    with pytest.raises(UpstreamUnavailableError):
        breaker.call(fail)
    assert breaker.state == CircuitState.OPEN

    now[0] = 11.0
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.CLOSED


def test_breaker_ignores_non_transient_errors():
    """Request errors do not count towards opening the breaker."""
    breaker = CircuitBreaker("strict", CircuitBreakerConfig(failure_threshold=1))

    def reject():
        raise UpstreamRequestError("bad request", status_code=400)

    with pytest.raises(UpstreamRequestError):
        breaker.call(reject)
    assert breaker.state == CircuitState.CLOSED
