"""
Tests for the ingestion coordinator: idempotent upserts, atomic record+cursor commits,
cursor monotonicity, malformed-record isolation and shutdown behaviour.

Uses FakeLedgerSource from conftest in place of Horizon.
"""

from __future__ import annotations

import pytest

from conftest import RECEIVER, SENDER, make_payment_record, make_trustline_record
from stellar_insights.core.exceptions import CursorRegressionError, UpstreamUnavailableError
from stellar_insights.ingestion import IngestionCoordinator
from stellar_insights.ingestion.coordinator import _enrich_account_merge
from stellar_insights.ingestion.normalizer import normalize_payment


def _coordinator(db, source, **kwargs):
    kwargs.setdefault("tasks", ["payments"])
    kwargs.setdefault("start_cursor", "0")
    return IngestionCoordinator(db, source, **kwargs)


def _payment_rows(db):
    with db.session() as s:
        s._cur.execute("SELECT id, successful, amount FROM payments ORDER BY id")
        return [tuple(r) for r in s._cur.fetchall()]


def test_batch_commits_records_and_cursor(db, ledger_source):
    """One batch stores every record and moves the cursor to the highest paging token."""
    ledger_source.add("payments", make_payment_record("100"), make_payment_record("101", successful=False))
    coord = _coordinator(db, ledger_source)

    result = coord.run_batch("payments")

    assert result.committed is True
    assert result.fetched == 2
    assert result.inserted == 2
    assert result.duplicates == 0
    assert result.cursor_before is None
    assert result.cursor_after == "101"
    assert db.get_cursor("payments").last_cursor == "101"
    assert db.count_payments() == 2
    assert ledger_source.calls[0] == ("payments", "0", 200)


def test_next_batch_resumes_from_stored_cursor(db, ledger_source):
    """A later batch asks upstream for records after the stored cursor only."""
    ledger_source.add("payments", make_payment_record("100"))
    coord = _coordinator(db, ledger_source)
    coord.run_batch("payments")
    ledger_source.add("payments", make_payment_record("102"))

    result = coord.run_batch("payments")

    assert ledger_source.calls[-1][1] == "100"
    assert result.inserted == 1
    assert db.get_cursor("payments").last_cursor == "102"


def test_replayed_batch_is_idempotent(db, ledger_source):
    """Redelivering the same page inserts nothing and leaves the cursor where it was."""
    ledger_source.add("payments", make_payment_record("100"), make_payment_record("101"))
    coord = _coordinator(db, ledger_source)
    coord.run_batch("payments")
    before = _payment_rows(db)

    ledger_source.replay = True
    result = coord.run_batch("payments")

    assert result.inserted == 0
    assert result.duplicates == 2
    assert result.cursor_after == "101"
    assert _payment_rows(db) == before
    assert db.get_cursor("payments").last_cursor == "101"


def test_commit_batch_twice_yields_identical_state(db):
    """Applying the same records twice through the store is a no-op the second time."""
    records = [normalize_payment(make_payment_record(str(i))) for i in (5, 6, 7)]

    assert db.commit_batch("payments", records, "7") == (3, 0)
    first = _payment_rows(db)
    assert db.commit_batch("payments", records, "7") == (0, 3)

    assert _payment_rows(db) == first
    assert db.get_cursor("payments").last_cursor == "7"


def test_cursor_never_regresses(db, ledger_source):
    """Upstream records below the cursor do not move it backwards."""
    ledger_source.add("payments", make_payment_record("500"))
    coord = _coordinator(db, ledger_source)
    coord.run_batch("payments")

    ledger_source.records["payments"] = [make_payment_record("400")]
    ledger_source.replay = True
    result = coord.run_batch("payments")

    assert result.inserted == 1
    assert result.cursor_after == "500"
    assert db.get_cursor("payments").last_cursor == "500"


def test_store_rejects_cursor_regression(db):
    """advance_cursor refuses to move a cursor backwards and rolls back the batch."""
    db.commit_batch("payments", [], "900")
    late = [normalize_payment(make_payment_record("10"))]

    with pytest.raises(CursorRegressionError):
        db.commit_batch("payments", late, "10")

    assert db.get_cursor("payments").last_cursor == "900"
    assert db.count_payments() == 0


def test_cursor_compares_numerically(db):
    """Paging tokens order as integers, not strings."""
    db.commit_batch("payments", [], "99")
    db.commit_batch("payments", [], "100")
    assert db.get_cursor("payments").last_cursor == "100"


def test_malformed_record_is_skipped_and_cursor_advances(db, ledger_source):
    """A malformed record is counted and skipped; its neighbours commit and the cursor moves past it."""
    bad = make_payment_record("201")
    del bad["amount"]
    ledger_source.add("payments", make_payment_record("200"), bad, make_payment_record("202"))
    coord = _coordinator(db, ledger_source)

    result = coord.run_batch("payments")

    assert result.malformed == 1
    assert result.inserted == 2
    assert result.cursor_after == "202"
    assert coord.state("payments").malformed == 1


def test_skipped_records_still_advance_cursor(db, ledger_source):
    """Irrelevant operations are skipped but the cursor moves past them."""
    merge = {
        "id": "301",
        "paging_token": "301",
        "type": "account_merge",
        "created_at": "2024-01-01T10:00:00Z",
        "transaction_hash": "tx301",
        "account": SENDER,
        "into": RECEIVER,
    }
    ledger_source.add("operations", make_trustline_record("300", trustor=SENDER), merge)
    coord = _coordinator(db, ledger_source, tasks=["trustlines"])

    result = coord.run_batch("trustlines")

    assert result.inserted == 1
    assert result.skipped == 1
    assert db.get_cursor("trustlines").last_cursor == "301"


def test_transient_error_writes_nothing(db, ledger_source):
    """A failed fetch propagates and leaves records and cursor unchanged."""
    ledger_source.add("payments", make_payment_record("100"))
    ledger_source.errors.append(UpstreamUnavailableError("horizon down", status_code=503))
    coord = _coordinator(db, ledger_source)

    with pytest.raises(UpstreamUnavailableError):
        coord.run_batch("payments")

    assert db.get_cursor("payments") is None
    assert db.count_payments() == 0
    assert coord.run_batch("payments").inserted == 1


def test_stop_before_commit_abandons_batch(db, ledger_source):
    """A stop requested mid-batch abandons it whole: no records, no cursor move."""
    import threading

    stop = threading.Event()
    ledger_source.add("payments", make_payment_record("100"))
    ledger_source.before_return = stop.set
    coord = _coordinator(db, ledger_source, stop_event=stop)

    result = coord.run_batch("payments")

    assert result.committed is False
    assert result.fetched == 1
    assert db.count_payments() == 0
    assert db.get_cursor("payments") is None


def test_tasks_keep_independent_cursors(db, ledger_source):
    """Each task owns its own cursor."""
    ledger_source.add("payments", make_payment_record("100"))
    ledger_source.add("operations", make_trustline_record("700", trustor=SENDER))
    coord = _coordinator(db, ledger_source, tasks=["payments", "trustlines"])

    coord.run_batch("payments")
    coord.run_batch("trustlines")

    assert db.get_cursor("payments").last_cursor == "100"
    assert db.get_cursor("trustlines").last_cursor == "700"


def test_account_merge_enriched_from_effects(db, ledger_source):
    """account_merges fills merged_balance from the operation's credited effects."""
    merge = {
        "id": "800",
        "paging_token": "800",
        "type": "account_merge",
        "created_at": "2024-01-01T10:00:00Z",
        "transaction_hash": "tx800",
        "account": SENDER,
        "into": RECEIVER,
    }
    ledger_source.add("operations", merge)
    ledger_source.effects["800"] = [
        {"type": "account_credited", "account": RECEIVER, "asset_type": "native", "amount": "42.5"}
    ]
    coord = _coordinator(db, ledger_source, tasks=["account_merges"])

    coord.run_batch("account_merges")

    stats = db.account_merge_stats()
    assert stats["total_merges"] == 1
    assert stats["total_merged_balance"] == 42.5


def test_account_merge_enrichment_rejects_other_records(ledger_source):
    """Only account merges can be enriched from effects."""
    payment = normalize_payment(make_payment_record("810"))

    with pytest.raises(TypeError, match="Payment"):
        _enrich_account_merge(payment, ledger_source)


def _fee_bump_tx(tx_hash, token, fee_account, fee_charged, created_at="2024-01-01T10:00:00Z", bump=True):
    raw = {
        "hash": tx_hash,
        "paging_token": token,
        "ledger": 77,
        "created_at": created_at,
        "successful": True,
        "fee_account": fee_account,
        "fee_charged": str(fee_charged),
        "max_fee": "1000",
        "inner_transaction": {"hash": f"inner-{tx_hash}", "max_fee": "100", "signatures": ["a"]},
    }
    if bump:
        raw["fee_bump_transaction"] = {"hash": tx_hash, "signatures": ["sig"]}
    return raw


def test_fee_bumps_task_stores_only_fee_bump_envelopes(db, ledger_source):
    """Ordinary transactions are skipped but still advance the cursor; stats cover what was stored."""
    ledger_source.add(
        "transactions",
        _fee_bump_tx("a", "901", SENDER, 200),
        _fee_bump_tx("b", "902", RECEIVER, 400, created_at="2024-01-02T10:00:00Z"),
        _fee_bump_tx("c", "903", SENDER, 50, bump=False),
    )
    coord = _coordinator(db, ledger_source, tasks=["fee_bumps"])

    result = coord.run_batch("fee_bumps")

    assert (result.inserted, result.skipped) == (2, 1)
    assert db.get_cursor("fee_bumps").last_cursor == "903"
    stats = db.fee_bump_stats()
    assert stats["total_fee_bumps"] == 2
    assert stats["avg_fee_charged"] == 300.0
    assert (stats["max_fee_charged"], stats["min_fee_charged"]) == (400, 200)
    assert stats["unique_fee_sources"] == 2
    assert db.fee_bump_stats(since=1704153600)["total_fee_bumps"] == 1


def test_post_commit_hook_receives_batch_and_errors_are_contained(db, ledger_source):
    """The hook sees the committed batch; a failing hook does not undo the commit."""
    seen = []

    def hook(batch):
        seen.append(batch)
        raise RuntimeError("downstream exploded")

    ledger_source.add("payments", make_payment_record("100"))
    coord = _coordinator(db, ledger_source, on_batch_committed=hook)

    result = coord.run_batch("payments")

    assert seen == [result]
    assert db.count_payments() == 1


def test_unknown_task_rejected(db, ledger_source):
    """Unknown task names are a configuration error."""
    with pytest.raises(ValueError, match="Unknown ingestion task"):
        IngestionCoordinator(db, ledger_source, tasks=["payments", "ledgers"])


def test_worker_threads_start_and_stop(db, ledger_source):
    """start() spawns one worker per task; stop() joins them."""
    import time

    ledger_source.add("payments", make_payment_record("100"))
    coord = _coordinator(db, ledger_source, poll_interval_sec=0.01, heartbeat_interval_sec=0.0)

    threads = coord.start()
    deadline = time.monotonic() + 5
    while db.count_payments() == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    coord.stop(timeout_sec=5)

    assert [t.name for t in threads] == ["ingest-payments"]
    assert all(not t.is_alive() for t in threads)
    assert db.count_payments() == 1
