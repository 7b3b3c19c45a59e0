"""
Horizon record normalizer: raw JSON records to canonical ledger records.

Each normalize_* function returns a record, or None when the raw record is valid
but irrelevant to that task (explicitly skipped). Missing or invalid required
fields raise MalformedRecordError so the caller can log and skip just that record.
Purely structural; no aggregation or scoring logic.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from stellar_insights.core.exceptions import MalformedRecordError
from stellar_insights.database.database import paging_token_key
from stellar_insights.database.models import (
    NATIVE_ASSET_TYPE,
    AccountMerge,
    AssetRef,
    FeeBumpTransaction,
    Payment,
    TrustlineEvent,
)

# Stellar amounts carry 7 decimal places
AMOUNT_QUANTUM = Decimal("0.0000001")

PAYMENT_OPERATION_TYPES = frozenset(
    {"payment", "path_payment_strict_send", "path_payment_strict_receive", "create_account"}
)
TRUSTLINE_OPERATION_TYPES = frozenset({"change_trust", "allow_trust", "set_trust_line_flags"})
ACCOUNT_MERGE_OPERATION_TYPE = "account_merge"

# Trustline flag bit for "authorized" (set_trust_line_flags)
AUTHORIZED_FLAG = 1


def _record_id(raw: dict[str, Any]) -> str | None:
    value = raw.get("id") or raw.get("hash")
    return str(value) if value is not None else None


def _require(raw: dict[str, Any], key: str) -> Any:
    value = raw.get(key)
    if value is None or value == "":
        raise MalformedRecordError(_record_id(raw), f"missing {key}")
    return value


def parse_timestamp(value: Any, record_id: str | None = None) -> int:
    """Horizon ISO-8601 (e.g. 2024-01-01T12:00:00Z) to Unix seconds (UTC)."""
    if not isinstance(value, str) or not value:
        raise MalformedRecordError(record_id, "missing created_at")
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedRecordError(record_id, f"invalid timestamp {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def utc_day(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def normalize_amount(value: Any, record_id: str | None = None) -> str:
    """Canonical 7-decimal amount string; rejects negative and non-numeric amounts."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedRecordError(record_id, f"invalid amount {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise MalformedRecordError(record_id, f"invalid amount {value!r}")
    return str(amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN))


def parse_asset(raw: dict[str, Any], prefix: str = "") -> AssetRef:
    """Read <prefix>asset_type / asset_code / asset_issuer into an AssetRef."""
    record_id = _record_id(raw)
    asset_type = raw.get(f"{prefix}asset_type")
    if not asset_type:
        raise MalformedRecordError(record_id, f"missing {prefix}asset_type")
    if asset_type == NATIVE_ASSET_TYPE:
        return AssetRef.native()
    code = raw.get(f"{prefix}asset_code")
    issuer = raw.get(f"{prefix}asset_issuer")
    if not code or not issuer:
        raise MalformedRecordError(record_id, f"{prefix}asset_code/issuer required for {asset_type}")
    return AssetRef(str(asset_type), str(code), str(issuer))


def _paging_token(raw: dict[str, Any]) -> str:
    token = str(_require(raw, "paging_token"))
    try:
        paging_token_key(token)
    except ValueError:
        raise MalformedRecordError(_record_id(raw), f"invalid paging_token {token!r}") from None
    return token


def _int_field(raw: dict[str, Any], key: str, default: int | None = None) -> int:
    value = raw.get(key)
    if value is None:
        if default is not None:
            return default
        raise MalformedRecordError(_record_id(raw), f"missing {key}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRecordError(_record_id(raw), f"invalid {key} {value!r}") from None


def _optional_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _settlement_time_ms(raw: dict[str, Any], created_at: int) -> int | None:
    """
    Ledger close time minus the joined transaction's lower time bound.

    Only available for payments fetched with join=transactions whose transaction
    set a non-zero min_time; otherwise None.
    """
    tx = raw.get("transaction")
    if not isinstance(tx, dict):
        return None
    bounds = ((tx.get("preconditions") or {}).get("timebounds")) or {}
    min_time = _optional_int(bounds.get("min_time"))
    if not min_time or min_time > created_at:
        return None
    return (created_at - min_time) * 1000


def _successful(raw: dict[str, Any]) -> bool:
    value = raw.get("transaction_successful")
    if value is None and isinstance(raw.get("transaction"), dict):
        value = raw["transaction"].get("successful")
    if not isinstance(value, bool):
        raise MalformedRecordError(_record_id(raw), "missing transaction_successful")
    return value


# -----------------------------------------------------------------------------
# Per-task normalizers
# -----------------------------------------------------------------------------


def normalize_payment(raw: dict[str, Any]) -> Payment | None:
    """Payment-like operation from the /payments stream; None for account_merge and other types."""
    op_type = raw.get("type")
    if op_type not in PAYMENT_OPERATION_TYPES:
        return None
    op_id = str(_require(raw, "id"))
    created_at = parse_timestamp(raw.get("created_at"), op_id)

    if op_type == "create_account":
        source_account = str(_require(raw, "funder"))
        destination = str(_require(raw, "account"))
        asset = AssetRef.native()
        source_asset = asset
        amount = normalize_amount(_require(raw, "starting_balance"), op_id)
    else:
        source_account = str(_require(raw, "from"))
        destination = str(_require(raw, "to"))
        asset = parse_asset(raw)
        if op_type == "payment":
            source_asset = asset
        else:
            source_asset = parse_asset(raw, "source_")
        amount = normalize_amount(_require(raw, "amount"), op_id)

    tx = raw.get("transaction") if isinstance(raw.get("transaction"), dict) else {}
    return Payment(
        id=op_id,
        paging_token=_paging_token(raw),
        transaction_hash=str(_require(raw, "transaction_hash")),
        ledger=_optional_int(tx.get("ledger")),
        operation_type=str(op_type),
        source_account=source_account,
        destination=destination,
        source_asset=source_asset,
        asset=asset,
        amount=amount,
        successful=_successful(raw),
        created_at=created_at,
        day=utc_day(created_at),
        settlement_time_ms=_settlement_time_ms(raw, created_at),
    )


def normalize_trustline(raw: dict[str, Any]) -> TrustlineEvent | None:
    """Trustline change from the /operations stream; None for unrelated operations."""
    op_type = raw.get("type")
    if op_type not in TRUSTLINE_OPERATION_TYPES:
        return None
    op_id = str(_require(raw, "id"))
    # Liquidity pool share trustlines are not issued assets
    if raw.get("asset_type") == "liquidity_pool_shares":
        return None
    created_at = parse_timestamp(raw.get("created_at"), op_id)
    asset = parse_asset(raw)
    if asset.is_native:
        raise MalformedRecordError(op_id, "trustline on native asset")

    trust_limit: str | None = None
    if op_type == "change_trust":
        trustor = str(_require(raw, "trustor"))
        trust_limit = normalize_amount(_require(raw, "limit"), op_id)
        event_type = "removed" if Decimal(trust_limit) == 0 else "changed"
    elif op_type == "allow_trust":
        trustor = str(_require(raw, "trustor"))
        authorize = raw.get("authorize")
        if not isinstance(authorize, bool):
            raise MalformedRecordError(op_id, "allow_trust without authorize flag")
        event_type = "authorized" if authorize else "deauthorized"
    else:
        trustor = str(_require(raw, "trustor"))
        set_flags = [_optional_int(f) for f in raw.get("set_flags") or []]
        clear_flags = [_optional_int(f) for f in raw.get("clear_flags") or []]
        if AUTHORIZED_FLAG in set_flags:
            event_type = "authorized"
        elif AUTHORIZED_FLAG in clear_flags:
            event_type = "deauthorized"
        else:
            return None

    return TrustlineEvent(
        id=op_id,
        paging_token=_paging_token(raw),
        transaction_hash=str(_require(raw, "transaction_hash")),
        trustor=trustor,
        asset=asset,
        event_type=event_type,
        trust_limit=trust_limit,
        created_at=created_at,
    )


def normalize_account_merge(raw: dict[str, Any]) -> AccountMerge | None:
    """account_merge operation; merged_balance is filled in from effects by the ingestion task."""
    if raw.get("type") != ACCOUNT_MERGE_OPERATION_TYPE:
        return None
    op_id = str(_require(raw, "id"))
    source = raw.get("account") or raw.get("source_account")
    if not source:
        raise MalformedRecordError(op_id, "missing account")
    return AccountMerge(
        operation_id=op_id,
        paging_token=_paging_token(raw),
        transaction_hash=str(_require(raw, "transaction_hash")),
        ledger=None,
        source_account=str(source),
        destination_account=str(_require(raw, "into")),
        merged_balance=0.0,
        created_at=parse_timestamp(raw.get("created_at"), op_id),
    )


def normalize_fee_bump(raw: dict[str, Any]) -> FeeBumpTransaction | None:
    """Fee-bump envelope from the /transactions stream; None for ordinary transactions."""
    fee_bump = raw.get("fee_bump_transaction")
    if not isinstance(fee_bump, dict):
        return None
    tx_hash = str(_require(raw, "hash"))
    inner = raw.get("inner_transaction")
    if not isinstance(inner, dict) or not inner.get("hash"):
        raise MalformedRecordError(tx_hash, "fee bump without inner_transaction")
    successful = raw.get("successful")
    if not isinstance(successful, bool):
        raise MalformedRecordError(tx_hash, "missing successful")
    return FeeBumpTransaction(
        transaction_hash=tx_hash,
        paging_token=_paging_token(raw),
        ledger=_optional_int(raw.get("ledger")),
        fee_source=str(_require(raw, "fee_account")),
        fee_charged=_int_field(raw, "fee_charged"),
        max_fee=_int_field(raw, "max_fee"),
        inner_transaction_hash=str(inner["hash"]),
        inner_max_fee=_int_field(inner, "max_fee", default=0),
        signatures_count=len(fee_bump.get("signatures") or []),
        successful=successful,
        created_at=parse_timestamp(raw.get("created_at"), tx_hash),
    )


def merged_balance_from_effects(effects: list[dict[str, Any]], destination: str) -> float:
    """Native amount credited to the merge destination (account_credited effects)."""
    total = Decimal(0)
    for effect in effects:
        if effect.get("type") != "account_credited" or effect.get("account") != destination:
            continue
        if effect.get("asset_type", NATIVE_ASSET_TYPE) != NATIVE_ASSET_TYPE:
            continue
        try:
            total += Decimal(str(effect.get("amount", "0")))
        except InvalidOperation:
            continue
    return float(total)
