"""
Domain models for store entities.

Normalized ledger records, ingestion cursors, anchor/corridor aggregates and their
history, trustline statistics, verified assets with reports and audit history, and
the local snapshot ledger. Plain dataclasses; no ORM coupling so backends stay swappable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

NATIVE_ASSET_TYPE = "native"
NATIVE_ASSET_CODE = "XLM"

# Volumes are stored as integers in units of 1e-7 USD (Stellar amount precision)
VOLUME_SCALE = 10_000_000


@dataclass(frozen=True)
class AssetRef:
    """A Stellar asset: native XLM or (code, issuer)."""

    asset_type: str
    code: str
    issuer: str | None = None

    @classmethod
    def native(cls) -> AssetRef:
        return cls(NATIVE_ASSET_TYPE, NATIVE_ASSET_CODE, None)

    @property
    def is_native(self) -> bool:
        return self.asset_type == NATIVE_ASSET_TYPE

    @property
    def key(self) -> str:
        """Stable textual key: 'XLM:native' or 'CODE:ISSUER'."""
        if self.is_native:
            return f"{NATIVE_ASSET_CODE}:native"
        return f"{self.code}:{self.issuer}"


def corridor_key_for(source: AssetRef, destination: AssetRef) -> str:
    """Ordered asset pair: '<source key>-><destination key>'."""
    return f"{source.key}->{destination.key}"


# -----------------------------------------------------------------------------
# Ingestion
# -----------------------------------------------------------------------------


@dataclass
class IngestionCursor:
    task_name: str
    last_cursor: str
    """Horizon paging token of the last persisted or skipped record."""
    updated_at: int


@dataclass
class Payment:
    """Normalized payment-like operation (payment, path payments, create_account)."""

    id: str
    """Horizon operation id; natural key."""
    paging_token: str
    transaction_hash: str
    ledger: int | None
    operation_type: str
    source_account: str
    destination: str
    source_asset: AssetRef
    asset: AssetRef
    """Asset received by the destination."""
    amount: str
    """Amount received, 7-decimal string as reported by Horizon."""
    successful: bool
    created_at: int
    """Unix timestamp (seconds) of the ledger close."""
    day: str
    """UTC calendar day (YYYY-MM-DD) of created_at; the corridor bucket."""
    settlement_time_ms: int | None = None

    @property
    def amount_value(self) -> float:
        """amount as a float, for display and rough statistics; volume uses the string."""
        return float(self.amount)

    @property
    def corridor_key(self) -> str:
        return corridor_key_for(self.source_asset, self.asset)

    @property
    def anchor_id(self) -> str | None:
        """Issuer of the received asset, else issuer of the sent asset; None for XLM to XLM."""
        if not self.asset.is_native:
            return self.asset.issuer
        if not self.source_asset.is_native:
            return self.source_asset.issuer
        return None


@dataclass
class TrustlineEvent:
    id: str
    paging_token: str
    transaction_hash: str
    trustor: str
    asset: AssetRef
    event_type: str
    """changed | removed | authorized | deauthorized"""
    trust_limit: str | None
    created_at: int


@dataclass
class AccountMerge:
    operation_id: str
    paging_token: str
    transaction_hash: str
    ledger: int | None
    source_account: str
    destination_account: str
    merged_balance: float
    created_at: int


@dataclass
class FeeBumpTransaction:
    transaction_hash: str
    paging_token: str
    ledger: int | None
    fee_source: str
    fee_charged: int
    """Stroops actually charged to the fee source."""
    max_fee: int
    inner_transaction_hash: str
    inner_max_fee: int
    signatures_count: int
    successful: bool
    created_at: int


LedgerRecord = Union[Payment, TrustlineEvent, AccountMerge, FeeBumpTransaction]


# -----------------------------------------------------------------------------
# Anchors (tagged variant) and aggregates
# -----------------------------------------------------------------------------


@dataclass
class RegisteredAnchor:
    stellar_account: str
    name: str
    home_domain: str | None
    first_seen_at: int
    registered_at: int
    kind: str = field(default="registered", init=False)


@dataclass
class ProvisionalAnchor:
    """Anchor referenced by activity before any registration arrived."""

    stellar_account: str
    first_seen_at: int
    kind: str = field(default="provisional", init=False)


Anchor = Union[RegisteredAnchor, ProvisionalAnchor]


@dataclass
class AnchorMetrics:
    anchor_id: str
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    settlement_samples: int = 0
    settlement_total_ms: int = 0
    volume_usd_e7: int = 0
    reliability_score: float = 0.0
    status: str = "red"
    score_version: int = 0
    last_activity_day: str | None = None
    updated_at: int | None = None

    @property
    def success_rate(self) -> float:
        """Percent of successful transactions, 0 when there is no activity."""
        if self.total_transactions == 0:
            return 0.0
        return self.successful_transactions * 100.0 / self.total_transactions

    @property
    def failure_rate(self) -> float:
        if self.total_transactions == 0:
            return 0.0
        return self.failed_transactions * 100.0 / self.total_transactions

    @property
    def avg_settlement_time_ms(self) -> float | None:
        if self.settlement_samples == 0:
            return None
        return self.settlement_total_ms / self.settlement_samples

    @property
    def volume_usd(self) -> float:
        return self.volume_usd_e7 / VOLUME_SCALE


@dataclass
class AnchorMetricsPoint:
    """Append-only history point; a copy of AnchorMetrics at recorded_at."""

    id: int | None
    anchor_id: str
    recorded_at: int
    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    avg_settlement_time_ms: float | None
    volume_usd_e7: int
    reliability_score: float
    status: str
    score_version: int


@dataclass
class CorridorMetrics:
    corridor_key: str
    date: str
    anchor_id: str | None
    source_asset: AssetRef
    destination_asset: AssetRef
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    volume_usd_e7: int = 0
    settlement_samples: int = 0
    settlement_total_ms: int = 0
    updated_at: int | None = None

    @property
    def success_rate(self) -> float:
        if self.total_transactions == 0:
            return 0.0
        return self.successful_transactions * 100.0 / self.total_transactions

    @property
    def avg_settlement_latency_ms(self) -> float | None:
        if self.settlement_samples == 0:
            return None
        return self.settlement_total_ms / self.settlement_samples

    @property
    def volume_usd(self) -> float:
        return self.volume_usd_e7 / VOLUME_SCALE


@dataclass
class TrustlineStats:
    asset_code: str
    asset_issuer: str
    total_trustlines: int
    authorized_trustlines: int
    unauthorized_trustlines: int
    updated_at: int


@dataclass
class TrustlineSnapshot:
    id: int | None
    asset_code: str
    asset_issuer: str
    total_trustlines: int
    authorized_trustlines: int
    unauthorized_trustlines: int
    snapshot_at: int


@dataclass
class AssetPrice:
    """USD price recorded for an asset on one UTC day; price_usd None means the day stays unpriced."""

    asset_key: str
    day: str
    price_usd: str | None
    source: str
    recorded_at: int


# -----------------------------------------------------------------------------
# Asset verification
# -----------------------------------------------------------------------------

STATUS_UNVERIFIED = "unverified"
STATUS_VERIFIED = "verified"
STATUS_SUSPICIOUS = "suspicious"
VERIFICATION_STATUSES = (STATUS_UNVERIFIED, STATUS_VERIFIED, STATUS_SUSPICIOUS)

REPORT_TYPES = ("suspicious", "scam", "impersonation", "other")
REPORT_PENDING = "pending"
REPORT_REVIEWED = "reviewed"
REPORT_RESOLVED = "resolved"
REPORT_DISMISSED = "dismissed"
REPORT_STATUSES = (REPORT_PENDING, REPORT_REVIEWED, REPORT_RESOLVED, REPORT_DISMISSED)
UNRESOLVED_REPORT_STATUSES = (REPORT_PENDING, REPORT_REVIEWED)


@dataclass
class VerifiedAsset:
    asset_code: str
    asset_issuer: str
    verification_status: str = STATUS_UNVERIFIED
    reputation_score: float = 0.0
    stellar_expert_verified: bool = False
    stellar_toml_verified: bool = False
    anchor_registry_verified: bool = False
    trustline_count: int = 0
    transaction_count: int = 0
    total_volume_usd: float = 0.0
    suspicious_reports_count: int = 0
    """Unresolved (pending or reviewed) reports."""
    toml_home_domain: str | None = None
    toml_org_name: str | None = None
    toml_org_url: str | None = None
    last_verified_at: int | None = None
    created_at: int | None = None
    updated_at: int | None = None


@dataclass
class AssetReport:
    id: int | None
    asset_code: str
    asset_issuer: str
    reporter: str
    report_type: str
    description: str
    status: str = REPORT_PENDING
    reviewed_by: str | None = None
    reviewed_at: int | None = None
    resolution_notes: str | None = None
    created_at: int | None = None


@dataclass
class AssetVerificationHistoryEntry:
    id: int | None
    asset_code: str
    asset_issuer: str
    previous_status: str | None
    new_status: str
    previous_score: float | None
    new_score: float
    reason: str
    actor: str
    created_at: int


# -----------------------------------------------------------------------------
# Snapshot ledger (local side of on-chain anchoring)
# -----------------------------------------------------------------------------

SNAPSHOT_PENDING = "pending"
SNAPSHOT_SUBMITTED = "submitted"
SNAPSHOT_ABANDONED = "abandoned"


@dataclass
class SnapshotRecord:
    epoch: int
    hash_hex: str
    schema_version: int
    score_version: int
    status: str
    chain_timestamp: int | None = None
    reason: str | None = None
    created_at: int | None = None
    updated_at: int | None = None
