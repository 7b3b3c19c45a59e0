"""
Tests for the Horizon record normalizer (raw JSON to canonical ledger records).
"""

from __future__ import annotations

import pytest

from conftest import ISSUER_A, ISSUER_B, RECEIVER, SENDER, make_payment_record, make_trustline_record
from stellar_insights.core.exceptions import MalformedRecordError
from stellar_insights.ingestion.normalizer import (
    merged_balance_from_effects,
    normalize_account_merge,
    normalize_amount,
    normalize_fee_bump,
    normalize_payment,
    normalize_trustline,
    parse_timestamp,
    utc_day,
)

JAN_1_10AM = 1704103200


def test_parse_timestamp_and_utc_day():
    """Horizon ISO timestamps map to Unix seconds and a UTC day."""
    assert parse_timestamp("2024-01-01T10:00:00Z") == JAN_1_10AM
    assert utc_day(JAN_1_10AM) == "2024-01-01"
    assert utc_day(JAN_1_10AM + 14 * 3600) == "2024-01-02"


def test_normalize_amount_canonical_seven_decimals():
    """Amounts are rendered with exactly seven decimals; negatives are rejected."""
    assert normalize_amount("10") == "10.0000000"
    assert normalize_amount("0.12345678") == "0.1234567"
    with pytest.raises(MalformedRecordError):
        normalize_amount("-1")
    with pytest.raises(MalformedRecordError):
        normalize_amount("abc")


def test_normalize_payment_credit_asset():
    """A credit payment keeps its asset on both sides and is attributed to the issuer."""
    p = normalize_payment(make_payment_record("101", successful=False))
    assert p is not None
    assert p.id == "101"
    assert p.paging_token == "101"
    assert p.source_account == SENDER
    assert p.destination == RECEIVER
    assert p.asset.code == "USDC"
    assert p.asset.issuer == ISSUER_A
    assert p.source_asset == p.asset
    assert p.amount == "10.0000000"
    assert p.successful is False
    assert p.created_at == JAN_1_10AM
    assert p.day == "2024-01-01"
    assert p.anchor_id == ISSUER_A
    assert p.corridor_key == f"USDC:{ISSUER_A}->USDC:{ISSUER_A}"
    assert p.settlement_time_ms is None


def test_payment_amount_value_is_float_of_canonical_amount():
    p = normalize_payment(make_payment_record("102", amount="1234.5"))
    assert p.amount == "1234.5000000"
    assert p.amount_value == 1234.5
    assert isinstance(p.amount_value, float)


def test_normalize_payment_settlement_time_from_timebounds():
    """Settlement time is close time minus the transaction's min_time, in ms."""
    p = normalize_payment(make_payment_record("102", min_time=JAN_1_10AM - 5))
    assert p.settlement_time_ms == 5000
    assert p.ledger == 1000


def test_normalize_path_payment_uses_source_asset():
    """Path payments carry distinct source and destination assets."""
    raw = make_payment_record("103", code="EURC", issuer=ISSUER_B)
    raw.update(
        {
            "type": "path_payment_strict_send",
            "source_asset_type": "credit_alphanum4",
            "source_asset_code": "USDC",
            "source_asset_issuer": ISSUER_A,
        }
    )
    p = normalize_payment(raw)
    assert p.source_asset.key == f"USDC:{ISSUER_A}"
    assert p.asset.key == f"EURC:{ISSUER_B}"
    assert p.anchor_id == ISSUER_B
    assert p.corridor_key == f"USDC:{ISSUER_A}->EURC:{ISSUER_B}"


def test_normalize_create_account_is_native():
    """create_account is a native XLM transfer with no anchor."""
    raw = {
        "id": "104",
        "paging_token": "104",
        "type": "create_account",
        "created_at": "2024-01-01T10:00:00Z",
        "transaction_hash": "tx104",
        "transaction_successful": True,
        "funder": SENDER,
        "account": RECEIVER,
        "starting_balance": "5.0",
    }
    p = normalize_payment(raw)
    assert p.asset.is_native
    assert p.corridor_key == "XLM:native->XLM:native"
    assert p.anchor_id is None
    assert p.amount == "5.0000000"


def test_normalize_payment_skips_other_operation_types():
    """account_merge records on the payments stream are not payments."""
    raw = make_payment_record("105")
    raw["type"] = "account_merge"
    assert normalize_payment(raw) is None


@pytest.mark.parametrize("missing", ["amount", "from", "created_at", "transaction_successful", "asset_issuer"])
def test_normalize_payment_missing_field_is_malformed(missing):
    """Missing required fields raise MalformedRecordError naming the record."""
    raw = make_payment_record("106")
    del raw[missing]
    with pytest.raises(MalformedRecordError) as exc:
        normalize_payment(raw)
    assert exc.value.record_id == "106"


def test_normalize_trustline_change_and_remove():
    """change_trust is 'changed', or 'removed' when the limit drops to zero."""
    changed = normalize_trustline(make_trustline_record("201", trustor=SENDER))
    assert changed.event_type == "changed"
    assert changed.trust_limit == "1000.0000000"
    assert changed.asset.issuer == ISSUER_A
    removed = normalize_trustline(make_trustline_record("202", trustor=SENDER, limit="0"))
    assert removed.event_type == "removed"


def test_normalize_trustline_authorization():
    """allow_trust and set_trust_line_flags map onto authorized / deauthorized."""
    allow = normalize_trustline(make_trustline_record("203", trustor=SENDER, op_type="allow_trust", authorize=True))
    assert allow.event_type == "authorized"
    deny = normalize_trustline(make_trustline_record("204", trustor=SENDER, op_type="allow_trust", authorize=False))
    assert deny.event_type == "deauthorized"
    flags = make_trustline_record("205", trustor=SENDER, op_type="set_trust_line_flags")
    flags["clear_flags"] = [1]
    assert normalize_trustline(flags).event_type == "deauthorized"
    unrelated = make_trustline_record("206", trustor=SENDER, op_type="set_trust_line_flags")
    unrelated["set_flags"] = [2]
    assert normalize_trustline(unrelated) is None


def test_normalize_trustline_ignores_payments():
    """Non-trustline operations on the operations stream are skipped."""
    assert normalize_trustline(make_payment_record("207")) is None


def test_normalize_account_merge_and_effects():
    """account_merge keeps source and destination; balance comes from credited effects."""
    raw = {
        "id": "301",
        "paging_token": "301",
        "type": "account_merge",
        "created_at": "2024-01-01T10:00:00Z",
        "transaction_hash": "tx301",
        "account": SENDER,
        "into": RECEIVER,
    }
    m = normalize_account_merge(raw)
    assert m.source_account == SENDER
    assert m.destination_account == RECEIVER
    assert m.merged_balance == 0.0
    effects = [
        {"type": "account_credited", "account": RECEIVER, "asset_type": "native", "amount": "12.5"},
        {"type": "account_debited", "account": SENDER, "asset_type": "native", "amount": "12.5"},
        {"type": "account_credited", "account": "GOTHER", "asset_type": "native", "amount": "1"},
    ]
    assert merged_balance_from_effects(effects, RECEIVER) == 12.5


def test_normalize_fee_bump():
    """Fee-bump envelopes are captured; ordinary transactions are skipped."""
    raw = {
        "hash": "outer",
        "paging_token": "401",
        "ledger": 77,
        "created_at": "2024-01-01T10:00:00Z",
        "successful": True,
        "fee_account": SENDER,
        "fee_charged": "200",
        "max_fee": "1000",
        "fee_bump_transaction": {"hash": "outer", "signatures": ["sig1"]},
        "inner_transaction": {"hash": "inner", "max_fee": "100", "signatures": ["a", "b"]},
    }
    f = normalize_fee_bump(raw)
    assert f.transaction_hash == "outer"
    assert f.inner_transaction_hash == "inner"
    assert f.fee_charged == 200
    assert f.max_fee == 1000
    assert f.inner_max_fee == 100
    assert f.signatures_count == 1
    assert f.ledger == 77
    plain = dict(raw)
    del plain["fee_bump_transaction"]
    assert normalize_fee_bump(plain) is None
    broken = dict(raw)
    del broken["inner_transaction"]
    with pytest.raises(MalformedRecordError):
        normalize_fee_bump(broken)
