"""
Tests for env-driven Settings and the service runtime wiring.
"""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from conftest import ISSUER_A, FakeLedgerSource, make_payment_record
from stellar_insights.agent_worker.runtime import build_contract, build_price_feed, build_runtime, main
from stellar_insights.anchoring import InMemorySnapshotContract, RpcSnapshotContract
from stellar_insights.config import Settings
from stellar_insights.database.models import AssetRef
from stellar_insights.reputation.verifier import AssetVerifier


def test_defaults(clean_env):
    s = Settings()
    assert s.db_path == Path("stellar_insights.db")
    assert s.horizon_url == "https://horizon.stellar.org"
    assert s.ingest_tasks == ("payments", "trustlines", "account_merges", "fee_bumps")
    assert s.ingest_batch_size == 200
    assert s.contract_mode == "memory"
    assert s.snapshot_submitter == "insights-anchor"
    assert s.report_threshold == 3
    assert (s.reliability_green_min, s.reliability_yellow_min) == (90.0, 70.0)
    assert s.revalidation_enabled is True


def test_env_overrides(clean_env):
    clean_env.setenv("DB_PATH", "/tmp/insights-test.db")
    clean_env.setenv("STELLAR_NETWORK", "testnet")
    clean_env.setenv("INGEST_TASKS", "payments, trustlines")
    clean_env.setenv("INGEST_BATCH_SIZE", "1000")
    clean_env.setenv("REPUTATION_REPORT_THRESHOLD", "5")
    clean_env.setenv("REVALIDATION_ENABLED", "off")

    s = Settings()

    assert s.db_path == Path("/tmp/insights-test.db")
    assert s.horizon_url == "https://horizon-testnet.stellar.org"
    assert s.ingest_tasks == ("payments", "trustlines")
    assert s.ingest_batch_size == 200
    assert s.report_threshold == 5
    assert s.revalidation_enabled is False


def test_horizon_url_env_wins_over_network(clean_env):
    clean_env.setenv("HORIZON_URL", "https://horizon.internal/")
    clean_env.setenv("STELLAR_NETWORK", "testnet")
    assert Settings().horizon_url == "https://horizon.internal"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("INGEST_TASKS", "payments,ledgers"),
        ("CONTRACT_MODE", "chain"),
        ("INGEST_BATCH_SIZE", "many"),
        ("RELIABILITY_YELLOW_MIN", "95"),
        ("PRICE_FEED_PROVIDER", "binance"),
        ("PRICE_FEED_ASSET_IDS", "AQUA"),
    ],
)
def test_invalid_env_is_rejected(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError):
        Settings()


def test_rpc_mode_requires_url(clean_env):
    clean_env.setenv("CONTRACT_MODE", "rpc")
    with pytest.raises(ValueError):
        Settings()

    clean_env.setenv("CONTRACT_RPC_URL", "https://rpc.test")
    clean_env.setenv("CONTRACT_ID", "CCONTRACT")
    contract = build_contract(Settings())
    assert isinstance(contract, RpcSnapshotContract)
    contract.close()


def test_memory_contract_admin_is_submitter(clean_env):
    clean_env.setenv("SNAPSHOT_SUBMITTER", "GADMIN")
    contract = build_contract(Settings())
    assert isinstance(contract, InMemorySnapshotContract)
    assert contract.admin == "GADMIN"


def test_price_feed_settings(clean_env):
    s = Settings()
    assert (s.price_feed_enabled, s.price_feed_provider) == (True, "coingecko")
    assert (s.price_feed_timeout_sec, s.price_cache_ttl_sec) == (10.0, 900.0)

    clean_env.setenv("PRICE_FEED_PROVIDER", "coinmarketcap")
    with pytest.raises(ValueError, match="PRICE_FEED_API_KEY"):
        Settings()
    clean_env.setenv("PRICE_FEED_ENABLED", "false")
    assert build_price_feed(Settings()) is None


def test_build_price_feed_adds_configured_asset_ids(clean_env):
    clean_env.setenv("PRICE_FEED_ASSET_IDS", "AQUA:GAQUA=aquarius")
    clean_env.setenv("PRICE_FEED_CACHE_TTL_SEC", "60")

    feed = build_price_feed(Settings())
    try:
        assert feed.source == "coingecko"
        assert feed.provider_id(AssetRef("credit_alphanum4", "AQUA", "GAQUA")) == "aquarius"
        assert feed.provider_id(AssetRef.native()) == "stellar"
    finally:
        feed.close()


def test_main_returns_2_on_config_error(clean_env):
    clean_env.setenv("CONTRACT_MODE", "chain")
    assert main() == 2


class _NoopVerifier:
    def verify(self, asset_code, asset_issuer):
        return None


def test_runtime_ingests_and_aggregates_until_stopped(clean_env, tmp_path):
    """Worker threads pull payments and the post-commit hook aggregates them."""
    source = FakeLedgerSource()
    source.add("payments", make_payment_record("1"), make_payment_record("2", successful=False))
    settings = Settings(
        db_path=tmp_path / "runtime.db",
        ingest_tasks=("payments",),
        ingest_start_cursor="0",
        ingest_poll_interval_sec=0.1,
        revalidation_enabled=False,
        snapshot_interval_sec=3600.0,
    )
    runtime = build_runtime(settings, source=source, contract=InMemorySnapshotContract("insights-anchor"), verifier=_NoopVerifier())

    runtime.start()
    try:
        deadline = time.monotonic() + 5.0
        metrics = None
        while time.monotonic() < deadline:
            metrics = runtime.db.get_anchor_metrics(ISSUER_A)
            if metrics is not None and metrics.total_transactions == 2:
                break
            time.sleep(0.05)
    finally:
        runtime.stop(timeout_sec=5.0)

    assert metrics is not None
    assert (metrics.total_transactions, metrics.successful_transactions) == (2, 1)
    assert runtime.threads == []
    assert runtime.stop_event.is_set()


def test_runtime_builds_verifier_over_horizon_when_only_source_is_injected(clean_env, tmp_path):
    """An injected ledger source is kept; the verifier gets its own Horizon client and the price feed is wired."""
    source = FakeLedgerSource()
    settings = Settings(db_path=tmp_path / "runtime.db", revalidation_enabled=False)

    runtime = build_runtime(settings, source=source, contract=InMemorySnapshotContract("insights-anchor"))
    try:
        assert runtime.coordinator._source is source
        assert isinstance(runtime.scorer._verifier, AssetVerifier)
        assert runtime.engine._price_feed is not None
        assert len(runtime.closers) == 3
    finally:
        runtime.stop(timeout_sec=1.0)
