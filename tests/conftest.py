"""
Pytest fixtures for Stellar Insights tests.

Every test gets a fresh SQLite store under tmp_path. Horizon is replaced by an
in-memory ledger source that serves canned JSON records by endpoint and cursor.
"""

from __future__ import annotations

from typing import Any

import pytest

ISSUER_A = "GANCHORAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
ISSUER_B = "GANCHORBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"
SENDER = "GSENDER00000000000000000000000000000000000000000000000000"
RECEIVER = "GRECEIVER000000000000000000000000000000000000000000000000"
SUBMITTER = "GSUBMITTER00000000000000000000000000000000000000000000000"


def _token_key(token: str) -> tuple[int, ...]:
    return tuple(int(part) for part in str(token).split("-"))


def make_payment_record(
    op_id: str,
    *,
    token: str | None = None,
    code: str = "USDC",
    issuer: str = ISSUER_A,
    successful: bool = True,
    created_at: str = "2024-01-01T10:00:00Z",
    amount: str = "10.0000000",
    source: str = SENDER,
    destination: str = RECEIVER,
    min_time: int | None = None,
) -> dict[str, Any]:
    """Horizon /payments record for a credit 'payment' operation."""
    raw: dict[str, Any] = {
        "id": op_id,
        "paging_token": token or op_id,
        "type": "payment",
        "created_at": created_at,
        "transaction_hash": f"tx{op_id}",
        "transaction_successful": successful,
        "from": source,
        "to": destination,
        "asset_type": "credit_alphanum4",
        "asset_code": code,
        "asset_issuer": issuer,
        "amount": amount,
    }
    if min_time is not None:
        raw["transaction"] = {
            "ledger": 1000,
            "successful": successful,
            "preconditions": {"timebounds": {"min_time": str(min_time)}},
        }
    return raw


def make_trustline_record(
    op_id: str,
    *,
    trustor: str,
    limit: str = "1000.0000000",
    code: str = "USDC",
    issuer: str = ISSUER_A,
    op_type: str = "change_trust",
    authorize: bool | None = None,
    created_at: str = "2024-01-01T09:00:00Z",
) -> dict[str, Any]:
    """Horizon /operations record for a trustline operation."""
    raw: dict[str, Any] = {
        "id": op_id,
        "paging_token": op_id,
        "type": op_type,
        "created_at": created_at,
        "transaction_hash": f"tx{op_id}",
        "transaction_successful": True,
        "trustor": trustor,
        "asset_type": "credit_alphanum4",
        "asset_code": code,
        "asset_issuer": issuer,
    }
    if op_type == "change_trust":
        raw["limit"] = limit
    if authorize is not None:
        raw["authorize"] = authorize
    return raw


class FakeLedgerSource:
    """
    In-memory LedgerSource.

    fetch_page returns records with a paging token above the cursor, in token order.
    Queue exceptions in `errors` to fail the next fetches; set replay=True to ignore
    the cursor and serve the same page again (upstream redelivery).
    """

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.records: dict[str, list[dict[str, Any]]] = {k: list(v) for k, v in (records or {}).items()}
        self.effects: dict[str, list[dict[str, Any]]] = {}
        self.errors: list[Exception] = []
        self.calls: list[tuple[str, str | None, int]] = []
        self.replay = False
        self.before_return: Any = None

    def add(self, endpoint: str, *raws: dict[str, Any]) -> None:
        self.records.setdefault(endpoint, []).extend(raws)

    def fetch_page(self, endpoint: str, cursor: str | None, limit: int) -> list[dict[str, Any]]:
        self.calls.append((endpoint, cursor, limit))
        if self.errors:
            raise self.errors.pop(0)
        rows = sorted(self.records.get(endpoint, []), key=lambda r: _token_key(r["paging_token"]))
        if not self.replay and cursor not in (None, "now"):
            floor = _token_key(cursor)
            rows = [r for r in rows if _token_key(r["paging_token"]) > floor]
        if self.before_return is not None:
            self.before_return()
        return rows[:limit]

    def fetch_operation_effects(self, operation_id: str) -> list[dict[str, Any]]:
        return list(self.effects.get(operation_id, []))


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite store with schema ensured."""
    from stellar_insights.database import get_database

    return get_database(tmp_path / "insights.db")


@pytest.fixture
def ledger_source():
    return FakeLedgerSource()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove service env vars so Settings sees defaults only."""
    for name in (
        "DB_PATH",
        "HORIZON_URL",
        "STELLAR_NETWORK",
        "CONTRACT_MODE",
        "CONTRACT_RPC_URL",
        "CONTRACT_ID",
        "SNAPSHOT_SUBMITTER",
        "INGEST_TASKS",
        "INGEST_BATCH_SIZE",
        "INGEST_START_CURSOR",
        "RELIABILITY_GREEN_MIN",
        "RELIABILITY_YELLOW_MIN",
        "REPUTATION_REPORT_THRESHOLD",
        "REVALIDATION_ENABLED",
        "PRICE_FEED_ENABLED",
        "PRICE_FEED_PROVIDER",
        "PRICE_FEED_URL",
        "PRICE_FEED_API_KEY",
        "PRICE_FEED_TIMEOUT_SEC",
        "PRICE_FEED_CACHE_TTL_SEC",
        "PRICE_FEED_ASSET_IDS",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
