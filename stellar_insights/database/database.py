"""
Durable store: ingestion cursors, normalized ledger records, aggregates, history,
asset verification and the local snapshot ledger.

MVP uses SQLite; designed so the backend can be swapped to PostgreSQL via a
different Backend implementation. All access goes through StoreSession, a unit of
work bound to one transaction: everything done inside `with backend.session()`
commits together or not at all. SQL and placeholders are backend-specific
(? for SQLite, %s for PostgreSQL).
"""

from __future__ import annotations

import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from stellar_insights.core.exceptions import (
    AnchorNotFoundError,
    CursorRegressionError,
    ReportNotFoundError,
)
from stellar_insights.database.models import (
    SNAPSHOT_PENDING,
    UNRESOLVED_REPORT_STATUSES,
    AccountMerge,
    Anchor,
    AnchorMetrics,
    AnchorMetricsPoint,
    AssetPrice,
    AssetRef,
    AssetReport,
    AssetVerificationHistoryEntry,
    CorridorMetrics,
    FeeBumpTransaction,
    IngestionCursor,
    LedgerRecord,
    Payment,
    ProvisionalAnchor,
    RegisteredAnchor,
    SnapshotRecord,
    TrustlineEvent,
    TrustlineSnapshot,
    TrustlineStats,
    VerifiedAsset,
)
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Schema (SQLite). For PostgreSQL: use BIGSERIAL, TIMESTAMPTZ, and %s.
# -----------------------------------------------------------------------------

SCHEMA_INGESTION = """
CREATE TABLE IF NOT EXISTS ingestion_cursors (
    task_name TEXT PRIMARY KEY,
    last_cursor TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

SCHEMA_LEDGER_RECORDS = """
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    paging_token TEXT NOT NULL,
    transaction_hash TEXT NOT NULL,
    ledger INTEGER,
    operation_type TEXT NOT NULL,
    source_account TEXT NOT NULL,
    destination TEXT NOT NULL,
    source_asset_type TEXT NOT NULL,
    source_asset_code TEXT NOT NULL,
    source_asset_issuer TEXT,
    asset_type TEXT NOT NULL,
    asset_code TEXT NOT NULL,
    asset_issuer TEXT,
    amount TEXT NOT NULL,
    successful INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    day TEXT NOT NULL,
    settlement_time_ms INTEGER,
    anchor_id TEXT,
    corridor_key TEXT NOT NULL,
    ingested_at INTEGER NOT NULL,
    aggregated_at INTEGER
);
CREATE INDEX IF NOT EXISTS ix_payments_pending ON payments(aggregated_at, id);
CREATE INDEX IF NOT EXISTS ix_payments_anchor ON payments(anchor_id, day);
CREATE INDEX IF NOT EXISTS ix_payments_asset ON payments(asset_code, asset_issuer);

CREATE TABLE IF NOT EXISTS trustline_events (
    id TEXT PRIMARY KEY,
    paging_token TEXT NOT NULL,
    transaction_hash TEXT NOT NULL,
    trustor TEXT NOT NULL,
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    event_type TEXT NOT NULL,
    trust_limit TEXT,
    created_at INTEGER NOT NULL,
    ingested_at INTEGER NOT NULL,
    aggregated_at INTEGER
);
CREATE INDEX IF NOT EXISTS ix_trustline_events_pending ON trustline_events(aggregated_at, id);

CREATE TABLE IF NOT EXISTS account_merges (
    operation_id TEXT PRIMARY KEY,
    paging_token TEXT NOT NULL,
    transaction_hash TEXT NOT NULL,
    ledger INTEGER,
    source_account TEXT NOT NULL,
    destination_account TEXT NOT NULL,
    merged_balance REAL NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    ingested_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_account_merges_source ON account_merges(source_account);
CREATE INDEX IF NOT EXISTS ix_account_merges_destination ON account_merges(destination_account);

CREATE TABLE IF NOT EXISTS fee_bump_transactions (
    transaction_hash TEXT PRIMARY KEY,
    paging_token TEXT NOT NULL,
    ledger INTEGER,
    fee_source TEXT NOT NULL,
    fee_charged INTEGER NOT NULL,
    max_fee INTEGER NOT NULL,
    inner_transaction_hash TEXT NOT NULL,
    inner_max_fee INTEGER NOT NULL,
    signatures_count INTEGER NOT NULL,
    successful INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    ingested_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_fee_bump_created ON fee_bump_transactions(created_at);
"""

SCHEMA_AGGREGATES = """
CREATE TABLE IF NOT EXISTS anchors (
    stellar_account TEXT PRIMARY KEY,
    kind TEXT NOT NULL CHECK (kind IN ('registered', 'provisional')),
    name TEXT,
    home_domain TEXT,
    first_seen_at INTEGER NOT NULL,
    registered_at INTEGER,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS anchor_metrics (
    anchor_id TEXT PRIMARY KEY REFERENCES anchors(stellar_account),
    total_transactions INTEGER NOT NULL DEFAULT 0,
    successful_transactions INTEGER NOT NULL DEFAULT 0,
    failed_transactions INTEGER NOT NULL DEFAULT 0,
    settlement_samples INTEGER NOT NULL DEFAULT 0,
    settlement_total_ms INTEGER NOT NULL DEFAULT 0,
    volume_usd_e7 INTEGER NOT NULL DEFAULT 0,
    reliability_score REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'red' CHECK (status IN ('green', 'yellow', 'red')),
    score_version INTEGER NOT NULL DEFAULT 0,
    last_activity_day TEXT,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS anchor_metrics_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    anchor_id TEXT NOT NULL,
    recorded_at INTEGER NOT NULL,
    total_transactions INTEGER NOT NULL,
    successful_transactions INTEGER NOT NULL,
    failed_transactions INTEGER NOT NULL,
    avg_settlement_time_ms REAL,
    volume_usd_e7 INTEGER NOT NULL,
    reliability_score REAL NOT NULL,
    status TEXT NOT NULL,
    score_version INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_anchor_history_anchor ON anchor_metrics_history(anchor_id, recorded_at);

CREATE TABLE IF NOT EXISTS corridor_metrics (
    corridor_key TEXT NOT NULL,
    date TEXT NOT NULL,
    anchor_id TEXT,
    source_asset_type TEXT NOT NULL,
    source_asset_code TEXT NOT NULL,
    source_asset_issuer TEXT,
    destination_asset_type TEXT NOT NULL,
    destination_asset_code TEXT NOT NULL,
    destination_asset_issuer TEXT,
    total_transactions INTEGER NOT NULL DEFAULT 0,
    successful_transactions INTEGER NOT NULL DEFAULT 0,
    failed_transactions INTEGER NOT NULL DEFAULT 0,
    volume_usd_e7 INTEGER NOT NULL DEFAULT 0,
    settlement_samples INTEGER NOT NULL DEFAULT 0,
    settlement_total_ms INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (corridor_key, date)
);
CREATE INDEX IF NOT EXISTS ix_corridor_metrics_anchor ON corridor_metrics(anchor_id, date);

CREATE TABLE IF NOT EXISTS trustlines (
    trustor TEXT NOT NULL,
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    active INTEGER NOT NULL,
    authorized INTEGER NOT NULL,
    trust_limit TEXT,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (trustor, asset_code, asset_issuer)
);
CREATE INDEX IF NOT EXISTS ix_trustlines_asset ON trustlines(asset_code, asset_issuer);

CREATE TABLE IF NOT EXISTS trustline_stats (
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    total_trustlines INTEGER NOT NULL,
    authorized_trustlines INTEGER NOT NULL,
    unauthorized_trustlines INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (asset_code, asset_issuer)
);

CREATE TABLE IF NOT EXISTS trustline_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    total_trustlines INTEGER NOT NULL,
    authorized_trustlines INTEGER NOT NULL,
    unauthorized_trustlines INTEGER NOT NULL,
    snapshot_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_trustline_snapshots_asset ON trustline_snapshots(asset_code, asset_issuer, snapshot_at);

CREATE TABLE IF NOT EXISTS asset_prices (
    asset_key TEXT NOT NULL,
    day TEXT NOT NULL,
    price_usd TEXT,
    source TEXT NOT NULL,
    recorded_at INTEGER NOT NULL,
    PRIMARY KEY (asset_key, day)
);
"""

SCHEMA_VERIFICATION = """
CREATE TABLE IF NOT EXISTS verified_assets (
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    verification_status TEXT NOT NULL CHECK (verification_status IN ('verified', 'unverified', 'suspicious')),
    reputation_score REAL NOT NULL DEFAULT 0,
    stellar_expert_verified INTEGER NOT NULL DEFAULT 0,
    stellar_toml_verified INTEGER NOT NULL DEFAULT 0,
    anchor_registry_verified INTEGER NOT NULL DEFAULT 0,
    trustline_count INTEGER NOT NULL DEFAULT 0,
    transaction_count INTEGER NOT NULL DEFAULT 0,
    total_volume_usd REAL NOT NULL DEFAULT 0,
    suspicious_reports_count INTEGER NOT NULL DEFAULT 0,
    toml_home_domain TEXT,
    toml_org_name TEXT,
    toml_org_url TEXT,
    last_verified_at INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (asset_code, asset_issuer)
);
CREATE INDEX IF NOT EXISTS ix_verified_assets_status ON verified_assets(verification_status);
CREATE INDEX IF NOT EXISTS ix_verified_assets_last_verified ON verified_assets(last_verified_at);

CREATE TABLE IF NOT EXISTS asset_verification_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    reporter TEXT NOT NULL,
    report_type TEXT NOT NULL CHECK (report_type IN ('suspicious', 'scam', 'impersonation', 'other')),
    description TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'reviewed', 'resolved', 'dismissed')),
    reviewed_by TEXT,
    reviewed_at INTEGER,
    resolution_notes TEXT,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_reports_asset ON asset_verification_reports(asset_code, asset_issuer, status);

CREATE TABLE IF NOT EXISTS asset_verification_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_code TEXT NOT NULL,
    asset_issuer TEXT NOT NULL,
    previous_status TEXT,
    new_status TEXT NOT NULL,
    previous_score REAL,
    new_score REAL NOT NULL,
    reason TEXT NOT NULL,
    actor TEXT NOT NULL,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_verification_history_asset ON asset_verification_history(asset_code, asset_issuer, id);
"""

SCHEMA_SNAPSHOTS = """
CREATE TABLE IF NOT EXISTS snapshots (
    epoch INTEGER PRIMARY KEY CHECK (epoch > 0),
    hash_hex TEXT NOT NULL,
    schema_version INTEGER NOT NULL,
    score_version INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'submitted', 'abandoned')),
    chain_timestamp INTEGER,
    reason TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

# History tables are append-only at the engine level.
APPEND_ONLY_TABLES = ("anchor_metrics_history", "trustline_snapshots", "asset_verification_history")

SCHEMA_APPEND_ONLY_TRIGGERS = "\n".join(
    f"""
CREATE TRIGGER IF NOT EXISTS trg_{table}_no_update BEFORE UPDATE ON {table}
BEGIN SELECT RAISE(ABORT, '{table} is append-only'); END;
CREATE TRIGGER IF NOT EXISTS trg_{table}_no_delete BEFORE DELETE ON {table}
BEGIN SELECT RAISE(ABORT, '{table} is append-only'); END;
"""
    for table in APPEND_ONLY_TABLES
)

ALL_SCHEMAS = (
    SCHEMA_INGESTION,
    SCHEMA_LEDGER_RECORDS,
    SCHEMA_AGGREGATES,
    SCHEMA_VERIFICATION,
    SCHEMA_SNAPSHOTS,
    SCHEMA_APPEND_ONLY_TRIGGERS,
)


def paging_token_key(token: str) -> tuple[int, ...]:
    """
    Order Horizon paging tokens numerically.

    Operation and transaction tokens are decimal integers; effect tokens are
    '<op id>-<index>'. Raises ValueError for anything else.
    """
    return tuple(int(part) for part in str(token).split("-"))


def _bool(value: Any) -> bool:
    return bool(int(value or 0))


def _asset(row: sqlite3.Row, prefix: str) -> AssetRef:
    return AssetRef(row[f"{prefix}_type"], row[f"{prefix}_code"], row[f"{prefix}_issuer"])


def _row_to_payment(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        paging_token=row["paging_token"],
        transaction_hash=row["transaction_hash"],
        ledger=row["ledger"],
        operation_type=row["operation_type"],
        source_account=row["source_account"],
        destination=row["destination"],
        source_asset=_asset(row, "source_asset"),
        asset=_asset(row, "asset"),
        amount=row["amount"],
        successful=_bool(row["successful"]),
        created_at=row["created_at"],
        day=row["day"],
        settlement_time_ms=row["settlement_time_ms"],
    )


def _row_to_trustline_event(row: sqlite3.Row) -> TrustlineEvent:
    return TrustlineEvent(
        id=row["id"],
        paging_token=row["paging_token"],
        transaction_hash=row["transaction_hash"],
        trustor=row["trustor"],
        asset=AssetRef("credit", row["asset_code"], row["asset_issuer"]),
        event_type=row["event_type"],
        trust_limit=row["trust_limit"],
        created_at=row["created_at"],
    )


def _row_to_anchor(row: sqlite3.Row) -> Anchor:
    if row["kind"] == "registered":
        return RegisteredAnchor(
            stellar_account=row["stellar_account"],
            name=row["name"] or "",
            home_domain=row["home_domain"],
            first_seen_at=row["first_seen_at"],
            registered_at=row["registered_at"],
        )
    return ProvisionalAnchor(stellar_account=row["stellar_account"], first_seen_at=row["first_seen_at"])


def _row_to_anchor_metrics(row: sqlite3.Row) -> AnchorMetrics:
    return AnchorMetrics(
        anchor_id=row["anchor_id"],
        total_transactions=row["total_transactions"],
        successful_transactions=row["successful_transactions"],
        failed_transactions=row["failed_transactions"],
        settlement_samples=row["settlement_samples"],
        settlement_total_ms=row["settlement_total_ms"],
        volume_usd_e7=row["volume_usd_e7"],
        reliability_score=row["reliability_score"],
        status=row["status"],
        score_version=row["score_version"],
        last_activity_day=row["last_activity_day"],
        updated_at=row["updated_at"],
    )


def _row_to_corridor(row: sqlite3.Row) -> CorridorMetrics:
    return CorridorMetrics(
        corridor_key=row["corridor_key"],
        date=row["date"],
        anchor_id=row["anchor_id"],
        source_asset=_asset(row, "source_asset"),
        destination_asset=_asset(row, "destination_asset"),
        total_transactions=row["total_transactions"],
        successful_transactions=row["successful_transactions"],
        failed_transactions=row["failed_transactions"],
        volume_usd_e7=row["volume_usd_e7"],
        settlement_samples=row["settlement_samples"],
        settlement_total_ms=row["settlement_total_ms"],
        updated_at=row["updated_at"],
    )


def _row_to_verified_asset(row: sqlite3.Row) -> VerifiedAsset:
    return VerifiedAsset(
        asset_code=row["asset_code"],
        asset_issuer=row["asset_issuer"],
        verification_status=row["verification_status"],
        reputation_score=row["reputation_score"],
        stellar_expert_verified=_bool(row["stellar_expert_verified"]),
        stellar_toml_verified=_bool(row["stellar_toml_verified"]),
        anchor_registry_verified=_bool(row["anchor_registry_verified"]),
        trustline_count=row["trustline_count"],
        transaction_count=row["transaction_count"],
        total_volume_usd=row["total_volume_usd"],
        suspicious_reports_count=row["suspicious_reports_count"],
        toml_home_domain=row["toml_home_domain"],
        toml_org_name=row["toml_org_name"],
        toml_org_url=row["toml_org_url"],
        last_verified_at=row["last_verified_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_report(row: sqlite3.Row) -> AssetReport:
    return AssetReport(
        id=row["id"],
        asset_code=row["asset_code"],
        asset_issuer=row["asset_issuer"],
        reporter=row["reporter"],
        report_type=row["report_type"],
        description=row["description"],
        status=row["status"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        resolution_notes=row["resolution_notes"],
        created_at=row["created_at"],
    )


def _row_to_snapshot(row: sqlite3.Row) -> SnapshotRecord:
    return SnapshotRecord(
        epoch=row["epoch"],
        hash_hex=row["hash_hex"],
        schema_version=row["schema_version"],
        score_version=row["score_version"],
        status=row["status"],
        chain_timestamp=row["chain_timestamp"],
        reason=row["reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# -----------------------------------------------------------------------------
# Unit of work: every statement runs on one connection inside one transaction.
# -----------------------------------------------------------------------------


class StoreSession:
    """Typed store operations bound to a single open transaction."""

    def __init__(self, cur: sqlite3.Cursor) -> None:
        self._cur = cur

    # --- Ingestion cursors ---

    def get_cursor(self, task_name: str) -> IngestionCursor | None:
        self._cur.execute(
            "SELECT task_name, last_cursor, updated_at FROM ingestion_cursors WHERE task_name = ?",
            (task_name,),
        )
        row = self._cur.fetchone()
        if row is None:
            return None
        return IngestionCursor(row["task_name"], row["last_cursor"], row["updated_at"])

    def advance_cursor(self, task_name: str, new_cursor: str, now: int) -> None:
        """Move the task cursor forward; equal is a no-op move, backwards raises."""
        current = self.get_cursor(task_name)
        if current is not None and paging_token_key(new_cursor) < paging_token_key(current.last_cursor):
            raise CursorRegressionError(task_name, current.last_cursor, new_cursor)
        self._cur.execute(
            """
            INSERT INTO ingestion_cursors (task_name, last_cursor, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(task_name) DO UPDATE SET
                last_cursor = excluded.last_cursor,
                updated_at = excluded.updated_at
            """,
            (task_name, new_cursor, now),
        )

    # --- Normalized ledger records (insert-or-ignore by natural key) ---

    def insert_record(self, record: LedgerRecord, now: int) -> bool:
        """Insert one record; False when its natural key already exists."""
        if isinstance(record, Payment):
            return self.insert_payment(record, now)
        if isinstance(record, TrustlineEvent):
            return self.insert_trustline_event(record, now)
        if isinstance(record, AccountMerge):
            return self.insert_account_merge(record, now)
        if isinstance(record, FeeBumpTransaction):
            return self.insert_fee_bump(record, now)
        raise TypeError(f"Unsupported record type: {type(record).__name__}")

    def insert_payment(self, p: Payment, now: int) -> bool:
        self._cur.execute(
            """
            INSERT INTO payments (
                id, paging_token, transaction_hash, ledger, operation_type,
                source_account, destination,
                source_asset_type, source_asset_code, source_asset_issuer,
                asset_type, asset_code, asset_issuer,
                amount, successful, created_at, day, settlement_time_ms,
                anchor_id, corridor_key, ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                p.id, p.paging_token, p.transaction_hash, p.ledger, p.operation_type,
                p.source_account, p.destination,
                p.source_asset.asset_type, p.source_asset.code, p.source_asset.issuer,
                p.asset.asset_type, p.asset.code, p.asset.issuer,
                p.amount, int(p.successful), p.created_at, p.day, p.settlement_time_ms,
                p.anchor_id, p.corridor_key, now,
            ),
        )
        return self._cur.rowcount == 1

    def insert_trustline_event(self, e: TrustlineEvent, now: int) -> bool:
        self._cur.execute(
            """
            INSERT INTO trustline_events (
                id, paging_token, transaction_hash, trustor, asset_code, asset_issuer,
                event_type, trust_limit, created_at, ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                e.id, e.paging_token, e.transaction_hash, e.trustor, e.asset.code, e.asset.issuer,
                e.event_type, e.trust_limit, e.created_at, now,
            ),
        )
        return self._cur.rowcount == 1

    def insert_account_merge(self, m: AccountMerge, now: int) -> bool:
        self._cur.execute(
            """
            INSERT INTO account_merges (
                operation_id, paging_token, transaction_hash, ledger,
                source_account, destination_account, merged_balance, created_at, ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(operation_id) DO NOTHING
            """,
            (
                m.operation_id, m.paging_token, m.transaction_hash, m.ledger,
                m.source_account, m.destination_account, m.merged_balance, m.created_at, now,
            ),
        )
        return self._cur.rowcount == 1

    def insert_fee_bump(self, f: FeeBumpTransaction, now: int) -> bool:
        self._cur.execute(
            """
            INSERT INTO fee_bump_transactions (
                transaction_hash, paging_token, ledger, fee_source, fee_charged, max_fee,
                inner_transaction_hash, inner_max_fee, signatures_count, successful,
                created_at, ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(transaction_hash) DO NOTHING
            """,
            (
                f.transaction_hash, f.paging_token, f.ledger, f.fee_source, f.fee_charged, f.max_fee,
                f.inner_transaction_hash, f.inner_max_fee, f.signatures_count, int(f.successful),
                f.created_at, now,
            ),
        )
        return self._cur.rowcount == 1

    # --- Payments (aggregation input) ---

    def pending_payments(self, limit: int) -> list[Payment]:
        """Payments not yet folded into aggregates, in ledger order."""
        self._cur.execute(
            """
            SELECT * FROM payments WHERE aggregated_at IS NULL
            ORDER BY LENGTH(paging_token), paging_token, id LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_payment(r) for r in self._cur.fetchall()]

    def mark_payments_aggregated(self, ids: list[str], now: int) -> None:
        self._cur.executemany(
            "UPDATE payments SET aggregated_at = ? WHERE id = ? AND aggregated_at IS NULL",
            [(now, pid) for pid in ids],
        )

    def aggregated_payments_for_anchor(self, anchor_id: str) -> list[Payment]:
        self._cur.execute(
            """
            SELECT * FROM payments WHERE anchor_id = ? AND aggregated_at IS NOT NULL
            ORDER BY LENGTH(paging_token), paging_token, id
            """,
            (anchor_id,),
        )
        return [_row_to_payment(r) for r in self._cur.fetchall()]

    def count_payments(self, anchor_id: str | None = None, *, aggregated_only: bool = False) -> int:
        sql = "SELECT COUNT(*) AS n FROM payments WHERE 1 = 1"
        params: list[Any] = []
        if anchor_id is not None:
            sql += " AND anchor_id = ?"
            params.append(anchor_id)
        if aggregated_only:
            sql += " AND aggregated_at IS NOT NULL"
        self._cur.execute(sql, params)
        return int(self._cur.fetchone()["n"])

    # --- Anchors ---

    def get_anchor(self, stellar_account: str) -> Anchor | None:
        self._cur.execute("SELECT * FROM anchors WHERE stellar_account = ?", (stellar_account,))
        row = self._cur.fetchone()
        return _row_to_anchor(row) if row else None

    def list_anchors(self) -> list[Anchor]:
        self._cur.execute("SELECT * FROM anchors ORDER BY stellar_account")
        return [_row_to_anchor(r) for r in self._cur.fetchall()]

    def ensure_provisional_anchor(self, stellar_account: str, first_seen_at: int, now: int) -> bool:
        """Create a provisional anchor if none exists. Returns True when created."""
        self._cur.execute(
            """
            INSERT INTO anchors (stellar_account, kind, first_seen_at, updated_at)
            VALUES (?, 'provisional', ?, ?)
            ON CONFLICT(stellar_account) DO NOTHING
            """,
            (stellar_account, first_seen_at, now),
        )
        return self._cur.rowcount == 1

    def register_anchor(self, stellar_account: str, name: str, home_domain: str | None, now: int) -> RegisteredAnchor:
        """Create a registered anchor or promote a provisional one in place (metrics untouched)."""
        self._cur.execute(
            """
            INSERT INTO anchors (stellar_account, kind, name, home_domain, first_seen_at, registered_at, updated_at)
            VALUES (?, 'registered', ?, ?, ?, ?, ?)
            ON CONFLICT(stellar_account) DO UPDATE SET
                kind = 'registered',
                name = excluded.name,
                home_domain = excluded.home_domain,
                registered_at = COALESCE(anchors.registered_at, excluded.registered_at),
                updated_at = excluded.updated_at
            """,
            (stellar_account, name, home_domain, now, now, now),
        )
        anchor = self.get_anchor(stellar_account)
        if not isinstance(anchor, RegisteredAnchor):
            raise RuntimeError(f"anchor {stellar_account} was not registered")
        return anchor

    def is_registered_anchor(self, stellar_account: str) -> bool:
        self._cur.execute(
            "SELECT 1 FROM anchors WHERE stellar_account = ? AND kind = 'registered'",
            (stellar_account,),
        )
        return self._cur.fetchone() is not None

    # --- Anchor metrics ---

    def get_anchor_metrics(self, anchor_id: str) -> AnchorMetrics | None:
        self._cur.execute("SELECT * FROM anchor_metrics WHERE anchor_id = ?", (anchor_id,))
        row = self._cur.fetchone()
        return _row_to_anchor_metrics(row) if row else None

    def list_anchor_metrics(self) -> list[AnchorMetrics]:
        self._cur.execute("SELECT * FROM anchor_metrics ORDER BY anchor_id")
        return [_row_to_anchor_metrics(r) for r in self._cur.fetchall()]

    def save_anchor_metrics(self, m: AnchorMetrics) -> None:
        self._cur.execute(
            """
            INSERT INTO anchor_metrics (
                anchor_id, total_transactions, successful_transactions, failed_transactions,
                settlement_samples, settlement_total_ms, volume_usd_e7,
                reliability_score, status, score_version, last_activity_day, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(anchor_id) DO UPDATE SET
                total_transactions = excluded.total_transactions,
                successful_transactions = excluded.successful_transactions,
                failed_transactions = excluded.failed_transactions,
                settlement_samples = excluded.settlement_samples,
                settlement_total_ms = excluded.settlement_total_ms,
                volume_usd_e7 = excluded.volume_usd_e7,
                reliability_score = excluded.reliability_score,
                status = excluded.status,
                score_version = excluded.score_version,
                last_activity_day = excluded.last_activity_day,
                updated_at = excluded.updated_at
            """,
            (
                m.anchor_id, m.total_transactions, m.successful_transactions, m.failed_transactions,
                m.settlement_samples, m.settlement_total_ms, m.volume_usd_e7,
                m.reliability_score, m.status, m.score_version, m.last_activity_day, m.updated_at,
            ),
        )

    def append_anchor_history(self, m: AnchorMetrics, recorded_at: int) -> int:
        self._cur.execute(
            """
            INSERT INTO anchor_metrics_history (
                anchor_id, recorded_at, total_transactions, successful_transactions, failed_transactions,
                avg_settlement_time_ms, volume_usd_e7, reliability_score, status, score_version
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                m.anchor_id, recorded_at, m.total_transactions, m.successful_transactions,
                m.failed_transactions, m.avg_settlement_time_ms, m.volume_usd_e7,
                m.reliability_score, m.status, m.score_version,
            ),
        )
        return int(self._cur.lastrowid)

    def anchor_history(self, anchor_id: str, *, limit: int = 500) -> list[AnchorMetricsPoint]:
        """History points for an anchor, oldest first."""
        self._cur.execute(
            """
            SELECT * FROM anchor_metrics_history WHERE anchor_id = ?
            ORDER BY recorded_at ASC, id ASC LIMIT ?
            """,
            (anchor_id, limit),
        )
        return [
            AnchorMetricsPoint(
                id=r["id"],
                anchor_id=r["anchor_id"],
                recorded_at=r["recorded_at"],
                total_transactions=r["total_transactions"],
                successful_transactions=r["successful_transactions"],
                failed_transactions=r["failed_transactions"],
                avg_settlement_time_ms=r["avg_settlement_time_ms"],
                volume_usd_e7=r["volume_usd_e7"],
                reliability_score=r["reliability_score"],
                status=r["status"],
                score_version=r["score_version"],
            )
            for r in self._cur.fetchall()
        ]

    def reset_anchor_aggregates(self, anchor_id: str) -> None:
        """Drop derived rows for an anchor ahead of a recomputation from raw history."""
        self._cur.execute("DELETE FROM corridor_metrics WHERE anchor_id = ?", (anchor_id,))
        self._cur.execute("DELETE FROM anchor_metrics WHERE anchor_id = ?", (anchor_id,))

    # --- Corridor metrics ---

    def add_to_corridor(self, delta: CorridorMetrics, now: int) -> None:
        """Increment the (corridor_key, date) bucket by the counts carried in delta."""
        self._cur.execute(
            """
            INSERT INTO corridor_metrics (
                corridor_key, date, anchor_id,
                source_asset_type, source_asset_code, source_asset_issuer,
                destination_asset_type, destination_asset_code, destination_asset_issuer,
                total_transactions, successful_transactions, failed_transactions,
                volume_usd_e7, settlement_samples, settlement_total_ms, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(corridor_key, date) DO UPDATE SET
                total_transactions = corridor_metrics.total_transactions + excluded.total_transactions,
                successful_transactions = corridor_metrics.successful_transactions + excluded.successful_transactions,
                failed_transactions = corridor_metrics.failed_transactions + excluded.failed_transactions,
                volume_usd_e7 = corridor_metrics.volume_usd_e7 + excluded.volume_usd_e7,
                settlement_samples = corridor_metrics.settlement_samples + excluded.settlement_samples,
                settlement_total_ms = corridor_metrics.settlement_total_ms + excluded.settlement_total_ms,
                updated_at = excluded.updated_at
            """,
            (
                delta.corridor_key, delta.date, delta.anchor_id,
                delta.source_asset.asset_type, delta.source_asset.code, delta.source_asset.issuer,
                delta.destination_asset.asset_type, delta.destination_asset.code, delta.destination_asset.issuer,
                delta.total_transactions, delta.successful_transactions, delta.failed_transactions,
                delta.volume_usd_e7, delta.settlement_samples, delta.settlement_total_ms, now,
            ),
        )

    def get_corridor_metrics(self, corridor_key: str, date: str) -> CorridorMetrics | None:
        self._cur.execute(
            "SELECT * FROM corridor_metrics WHERE corridor_key = ? AND date = ?",
            (corridor_key, date),
        )
        row = self._cur.fetchone()
        return _row_to_corridor(row) if row else None

    def list_corridor_metrics(
        self,
        *,
        corridor_key: str | None = None,
        anchor_id: str | None = None,
        since_date: str | None = None,
        until_date: str | None = None,
    ) -> list[CorridorMetrics]:
        sql = "SELECT * FROM corridor_metrics WHERE 1 = 1"
        params: list[Any] = []
        if corridor_key is not None:
            sql += " AND corridor_key = ?"
            params.append(corridor_key)
        if anchor_id is not None:
            sql += " AND anchor_id = ?"
            params.append(anchor_id)
        if since_date is not None:
            sql += " AND date >= ?"
            params.append(since_date)
        if until_date is not None:
            sql += " AND date <= ?"
            params.append(until_date)
        sql += " ORDER BY corridor_key, date"
        self._cur.execute(sql, params)
        return [_row_to_corridor(r) for r in self._cur.fetchall()]

    def anchor_daily_activity(self, anchor_id: str) -> list[tuple[str, int, int, int, int]]:
        """
        (date, total, successful, settlement_samples, settlement_total_ms) per day
        across the anchor's corridors, oldest first.
        """
        self._cur.execute(
            """
            SELECT date, SUM(total_transactions) AS total, SUM(successful_transactions) AS successful,
                   SUM(settlement_samples) AS samples, SUM(settlement_total_ms) AS total_ms
            FROM corridor_metrics WHERE anchor_id = ?
            GROUP BY date ORDER BY date
            """,
            (anchor_id,),
        )
        return [
            (r["date"], int(r["total"]), int(r["successful"]), int(r["samples"] or 0), int(r["total_ms"] or 0))
            for r in self._cur.fetchall()
        ]

    # --- Trustlines ---

    def pending_trustline_events(self, limit: int) -> list[TrustlineEvent]:
        self._cur.execute(
            """
            SELECT * FROM trustline_events WHERE aggregated_at IS NULL
            ORDER BY LENGTH(paging_token), paging_token, id LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_trustline_event(r) for r in self._cur.fetchall()]

    def mark_trustline_events_aggregated(self, ids: list[str], now: int) -> None:
        self._cur.executemany(
            "UPDATE trustline_events SET aggregated_at = ? WHERE id = ? AND aggregated_at IS NULL",
            [(now, eid) for eid in ids],
        )

    def apply_trustline_state(
        self,
        trustor: str,
        asset: AssetRef,
        *,
        active: bool | None,
        authorized: bool | None,
        trust_limit: str | None,
        now: int,
    ) -> None:
        """Upsert the current trustline; None leaves that attribute as it was (new rows: active, authorized)."""
        self._cur.execute(
            """
            INSERT INTO trustlines (trustor, asset_code, asset_issuer, active, authorized, trust_limit, updated_at)
            VALUES (?, ?, ?, COALESCE(?, 1), COALESCE(?, 1), ?, ?)
            ON CONFLICT(trustor, asset_code, asset_issuer) DO UPDATE SET
                active = COALESCE(?, trustlines.active),
                authorized = COALESCE(?, trustlines.authorized),
                trust_limit = COALESCE(excluded.trust_limit, trustlines.trust_limit),
                updated_at = excluded.updated_at
            """,
            (
                trustor, asset.code, asset.issuer,
                None if active is None else int(active),
                None if authorized is None else int(authorized),
                trust_limit, now,
                None if active is None else int(active),
                None if authorized is None else int(authorized),
            ),
        )

    def refresh_trustline_stats(self, asset_code: str, asset_issuer: str, now: int) -> TrustlineStats:
        """Recount active trustlines for an asset, store stats and append a snapshot."""
        self._cur.execute(
            """
            SELECT COUNT(*) AS total, COALESCE(SUM(authorized), 0) AS authorized
            FROM trustlines WHERE asset_code = ? AND asset_issuer = ? AND active = 1
            """,
            (asset_code, asset_issuer),
        )
        row = self._cur.fetchone()
        total = int(row["total"])
        authorized = int(row["authorized"])
        stats = TrustlineStats(asset_code, asset_issuer, total, authorized, total - authorized, now)
        self._cur.execute(
            """
            INSERT INTO trustline_stats (
                asset_code, asset_issuer, total_trustlines, authorized_trustlines,
                unauthorized_trustlines, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(asset_code, asset_issuer) DO UPDATE SET
                total_trustlines = excluded.total_trustlines,
                authorized_trustlines = excluded.authorized_trustlines,
                unauthorized_trustlines = excluded.unauthorized_trustlines,
                updated_at = excluded.updated_at
            """,
            (asset_code, asset_issuer, total, authorized, total - authorized, now),
        )
        self._cur.execute(
            """
            INSERT INTO trustline_snapshots (
                asset_code, asset_issuer, total_trustlines, authorized_trustlines,
                unauthorized_trustlines, snapshot_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (asset_code, asset_issuer, total, authorized, total - authorized, now),
        )
        return stats

    def get_trustline_stats(self, asset_code: str, asset_issuer: str) -> TrustlineStats | None:
        self._cur.execute(
            "SELECT * FROM trustline_stats WHERE asset_code = ? AND asset_issuer = ?",
            (asset_code, asset_issuer),
        )
        r = self._cur.fetchone()
        if r is None:
            return None
        return TrustlineStats(
            r["asset_code"], r["asset_issuer"], r["total_trustlines"],
            r["authorized_trustlines"], r["unauthorized_trustlines"], r["updated_at"],
        )

    def list_trustline_snapshots(self, asset_code: str, asset_issuer: str, *, limit: int = 500) -> list[TrustlineSnapshot]:
        self._cur.execute(
            """
            SELECT * FROM trustline_snapshots WHERE asset_code = ? AND asset_issuer = ?
            ORDER BY snapshot_at ASC, id ASC LIMIT ?
            """,
            (asset_code, asset_issuer, limit),
        )
        return [
            TrustlineSnapshot(
                r["id"], r["asset_code"], r["asset_issuer"], r["total_trustlines"],
                r["authorized_trustlines"], r["unauthorized_trustlines"], r["snapshot_at"],
            )
            for r in self._cur.fetchall()
        ]

    # --- Asset prices ---

    def get_asset_price(self, asset_key: str, day: str) -> AssetPrice | None:
        self._cur.execute("SELECT * FROM asset_prices WHERE asset_key = ? AND day = ?", (asset_key, day))
        r = self._cur.fetchone()
        if r is None:
            return None
        return AssetPrice(r["asset_key"], r["day"], r["price_usd"], r["source"], r["recorded_at"])

    def record_asset_price(self, asset_key: str, day: str, price_usd: str | None, source: str, now: int) -> bool:
        """Insert-or-ignore: the first price recorded for (asset, day) is kept. True if stored."""
        self._cur.execute(
            """
            INSERT INTO asset_prices (asset_key, day, price_usd, source, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(asset_key, day) DO NOTHING
            """,
            (asset_key, day, price_usd, source, now),
        )
        return self._cur.rowcount == 1

    def list_asset_prices(self, asset_key: str | None = None) -> list[AssetPrice]:
        if asset_key is None:
            self._cur.execute("SELECT * FROM asset_prices ORDER BY asset_key, day")
        else:
            self._cur.execute("SELECT * FROM asset_prices WHERE asset_key = ? ORDER BY day", (asset_key,))
        return [
            AssetPrice(r["asset_key"], r["day"], r["price_usd"], r["source"], r["recorded_at"])
            for r in self._cur.fetchall()
        ]

    # --- Fee bumps / account merges ---

    def fee_bump_stats(self, since: int | None = None) -> dict[str, Any]:
        self._cur.execute(
            """
            SELECT COUNT(*) AS total, AVG(fee_charged) AS avg_fee, MAX(fee_charged) AS max_fee,
                   MIN(fee_charged) AS min_fee, COUNT(DISTINCT fee_source) AS unique_fee_sources
            FROM fee_bump_transactions WHERE created_at >= ?
            """,
            (since or 0,),
        )
        r = self._cur.fetchone()
        return {
            "total_fee_bumps": int(r["total"]),
            "avg_fee_charged": float(r["avg_fee"] or 0.0),
            "max_fee_charged": int(r["max_fee"] or 0),
            "min_fee_charged": int(r["min_fee"] or 0),
            "unique_fee_sources": int(r["unique_fee_sources"]),
        }

    def account_merge_stats(self) -> dict[str, Any]:
        self._cur.execute(
            """
            SELECT COUNT(*) AS total, COALESCE(SUM(merged_balance), 0) AS merged,
                   COUNT(DISTINCT source_account) AS sources,
                   COUNT(DISTINCT destination_account) AS destinations
            FROM account_merges
            """
        )
        r = self._cur.fetchone()
        return {
            "total_merges": int(r["total"]),
            "total_merged_balance": float(r["merged"]),
            "unique_sources": int(r["sources"]),
            "unique_destinations": int(r["destinations"]),
        }

    # --- Verified assets ---

    def get_verified_asset(self, asset_code: str, asset_issuer: str) -> VerifiedAsset | None:
        self._cur.execute(
            "SELECT * FROM verified_assets WHERE asset_code = ? AND asset_issuer = ?",
            (asset_code, asset_issuer),
        )
        row = self._cur.fetchone()
        return _row_to_verified_asset(row) if row else None

    def save_verified_asset(self, a: VerifiedAsset) -> None:
        self._cur.execute(
            """
            INSERT INTO verified_assets (
                asset_code, asset_issuer, verification_status, reputation_score,
                stellar_expert_verified, stellar_toml_verified, anchor_registry_verified,
                trustline_count, transaction_count, total_volume_usd, suspicious_reports_count,
                toml_home_domain, toml_org_name, toml_org_url,
                last_verified_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(asset_code, asset_issuer) DO UPDATE SET
                verification_status = excluded.verification_status,
                reputation_score = excluded.reputation_score,
                stellar_expert_verified = excluded.stellar_expert_verified,
                stellar_toml_verified = excluded.stellar_toml_verified,
                anchor_registry_verified = excluded.anchor_registry_verified,
                trustline_count = excluded.trustline_count,
                transaction_count = excluded.transaction_count,
                total_volume_usd = excluded.total_volume_usd,
                suspicious_reports_count = excluded.suspicious_reports_count,
                toml_home_domain = excluded.toml_home_domain,
                toml_org_name = excluded.toml_org_name,
                toml_org_url = excluded.toml_org_url,
                last_verified_at = excluded.last_verified_at,
                updated_at = excluded.updated_at
            """,
            (
                a.asset_code, a.asset_issuer, a.verification_status, a.reputation_score,
                int(a.stellar_expert_verified), int(a.stellar_toml_verified), int(a.anchor_registry_verified),
                a.trustline_count, a.transaction_count, a.total_volume_usd, a.suspicious_reports_count,
                a.toml_home_domain, a.toml_org_name, a.toml_org_url,
                a.last_verified_at, a.created_at, a.updated_at,
            ),
        )

    def list_verified_assets(self, *, status: str | None = None, limit: int = 1000) -> list[VerifiedAsset]:
        if status is None:
            self._cur.execute(
                "SELECT * FROM verified_assets ORDER BY asset_code, asset_issuer LIMIT ?",
                (limit,),
            )
        else:
            self._cur.execute(
                """
                SELECT * FROM verified_assets WHERE verification_status = ?
                ORDER BY asset_code, asset_issuer LIMIT ?
                """,
                (status, limit),
            )
        return [_row_to_verified_asset(r) for r in self._cur.fetchall()]

    def assets_due_for_revalidation(self, older_than: int, limit: int) -> list[tuple[str, str]]:
        """Assets never verified or verified before older_than, oldest first."""
        self._cur.execute(
            """
            SELECT asset_code, asset_issuer FROM verified_assets
            WHERE last_verified_at IS NULL OR last_verified_at < ?
            ORDER BY COALESCE(last_verified_at, 0), asset_code, asset_issuer LIMIT ?
            """,
            (older_than, limit),
        )
        return [(r["asset_code"], r["asset_issuer"]) for r in self._cur.fetchall()]

    def unseen_assets(self, limit: int) -> list[tuple[str, str]]:
        """Issued assets present in ledger records but without a verified_assets row."""
        self._cur.execute(
            """
            SELECT asset_code, asset_issuer FROM (
                SELECT asset_code, asset_issuer FROM payments WHERE asset_issuer IS NOT NULL
                UNION
                SELECT source_asset_code, source_asset_issuer FROM payments WHERE source_asset_issuer IS NOT NULL
                UNION
                SELECT asset_code, asset_issuer FROM trustline_events
            ) AS seen
            WHERE NOT EXISTS (
                SELECT 1 FROM verified_assets v
                WHERE v.asset_code = seen.asset_code AND v.asset_issuer = seen.asset_issuer
            )
            ORDER BY asset_code, asset_issuer LIMIT ?
            """,
            (limit,),
        )
        return [(r[0], r[1]) for r in self._cur.fetchall()]

    def asset_usage(self, asset_code: str, asset_issuer: str) -> tuple[int, int]:
        """(transaction_count, volume_usd_e7) for payments receiving this asset."""
        self._cur.execute(
            """
            SELECT COUNT(*) AS n FROM payments
            WHERE (asset_code = ? AND asset_issuer = ?)
               OR (source_asset_code = ? AND source_asset_issuer = ?)
            """,
            (asset_code, asset_issuer, asset_code, asset_issuer),
        )
        tx_count = int(self._cur.fetchone()["n"])
        self._cur.execute(
            """
            SELECT COALESCE(SUM(volume_usd_e7), 0) AS v FROM corridor_metrics
            WHERE destination_asset_code = ? AND destination_asset_issuer = ?
            """,
            (asset_code, asset_issuer),
        )
        return tx_count, int(self._cur.fetchone()["v"])

    # --- Reports ---

    def insert_report(self, report: AssetReport) -> int:
        self._cur.execute(
            """
            INSERT INTO asset_verification_reports (
                asset_code, asset_issuer, reporter, report_type, description, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report.asset_code, report.asset_issuer, report.reporter, report.report_type,
                report.description, report.status, report.created_at,
            ),
        )
        return int(self._cur.lastrowid)

    def get_report(self, report_id: int) -> AssetReport:
        self._cur.execute("SELECT * FROM asset_verification_reports WHERE id = ?", (report_id,))
        row = self._cur.fetchone()
        if row is None:
            raise ReportNotFoundError(report_id)
        return _row_to_report(row)

    def update_report_status(
        self,
        report_id: int,
        status: str,
        reviewed_by: str,
        notes: str | None,
        now: int,
    ) -> None:
        self._cur.execute(
            """
            UPDATE asset_verification_reports
            SET status = ?, reviewed_by = ?, reviewed_at = ?, resolution_notes = ?
            WHERE id = ?
            """,
            (status, reviewed_by, now, notes, report_id),
        )
        if self._cur.rowcount == 0:
            raise ReportNotFoundError(report_id)

    def count_unresolved_reports(self, asset_code: str, asset_issuer: str) -> int:
        placeholders = ", ".join("?" for _ in UNRESOLVED_REPORT_STATUSES)
        self._cur.execute(
            f"""
            SELECT COUNT(*) AS n FROM asset_verification_reports
            WHERE asset_code = ? AND asset_issuer = ? AND status IN ({placeholders})
            """,
            (asset_code, asset_issuer, *UNRESOLVED_REPORT_STATUSES),
        )
        return int(self._cur.fetchone()["n"])

    def list_reports(self, asset_code: str, asset_issuer: str) -> list[AssetReport]:
        self._cur.execute(
            """
            SELECT * FROM asset_verification_reports
            WHERE asset_code = ? AND asset_issuer = ? ORDER BY id
            """,
            (asset_code, asset_issuer),
        )
        return [_row_to_report(r) for r in self._cur.fetchall()]

    # --- Verification history ---

    def append_verification_history(self, entry: AssetVerificationHistoryEntry) -> int:
        self._cur.execute(
            """
            INSERT INTO asset_verification_history (
                asset_code, asset_issuer, previous_status, new_status,
                previous_score, new_score, reason, actor, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.asset_code, entry.asset_issuer, entry.previous_status, entry.new_status,
                entry.previous_score, entry.new_score, entry.reason, entry.actor, entry.created_at,
            ),
        )
        return int(self._cur.lastrowid)

    def list_verification_history(self, asset_code: str, asset_issuer: str) -> list[AssetVerificationHistoryEntry]:
        """Audit trail for an asset, oldest first."""
        self._cur.execute(
            """
            SELECT * FROM asset_verification_history
            WHERE asset_code = ? AND asset_issuer = ? ORDER BY id
            """,
            (asset_code, asset_issuer),
        )
        return [
            AssetVerificationHistoryEntry(
                id=r["id"],
                asset_code=r["asset_code"],
                asset_issuer=r["asset_issuer"],
                previous_status=r["previous_status"],
                new_status=r["new_status"],
                previous_score=r["previous_score"],
                new_score=r["new_score"],
                reason=r["reason"],
                actor=r["actor"],
                created_at=r["created_at"],
            )
            for r in self._cur.fetchall()
        ]

    # --- Snapshot ledger ---

    def max_snapshot_epoch(self) -> int:
        """Highest epoch ever reserved locally, in any status; 0 when none."""
        self._cur.execute("SELECT COALESCE(MAX(epoch), 0) AS e FROM snapshots")
        return int(self._cur.fetchone()["e"])

    def reserve_snapshot_epoch(self, record: SnapshotRecord) -> None:
        self._cur.execute(
            """
            INSERT INTO snapshots (
                epoch, hash_hex, schema_version, score_version, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.epoch, record.hash_hex, record.schema_version, record.score_version,
                record.status, record.created_at, record.updated_at,
            ),
        )

    def update_snapshot_status(
        self,
        epoch: int,
        status: str,
        now: int,
        *,
        chain_timestamp: int | None = None,
        reason: str | None = None,
    ) -> None:
        self._cur.execute(
            """
            UPDATE snapshots SET status = ?, chain_timestamp = COALESCE(?, chain_timestamp),
                reason = COALESCE(?, reason), updated_at = ?
            WHERE epoch = ?
            """,
            (status, chain_timestamp, reason, now, epoch),
        )

    def get_snapshot_record(self, epoch: int) -> SnapshotRecord | None:
        self._cur.execute("SELECT * FROM snapshots WHERE epoch = ?", (epoch,))
        row = self._cur.fetchone()
        return _row_to_snapshot(row) if row else None

    def list_snapshot_records(self, *, status: str | None = None) -> list[SnapshotRecord]:
        if status is None:
            self._cur.execute("SELECT * FROM snapshots ORDER BY epoch")
        else:
            self._cur.execute("SELECT * FROM snapshots WHERE status = ? ORDER BY epoch", (status,))
        return [_row_to_snapshot(r) for r in self._cur.fetchall()]


# -----------------------------------------------------------------------------
# Abstract backend: swap implementation for PostgreSQL later.
# -----------------------------------------------------------------------------


class DatabaseBackend(ABC):
    """Abstract interface for persistence; implement for SQLite or PostgreSQL."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables, indexes and triggers if they do not exist."""
        ...

    @abstractmethod
    def session(self, *, immediate: bool = False) -> Any:
        """
        Context manager yielding a StoreSession bound to one transaction.

        immediate=True takes the write lock up front so read-modify-write
        sequences on aggregate rows serialize against other writers.
        """
        ...


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(DatabaseBackend):
    """SQLite implementation; single file, one connection per session."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 30.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit at the driver level; transactions are opened explicitly in session()
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def session(self, *, immediate: bool = False) -> Iterator[StoreSession]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield StoreSession(conn.cursor())
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            for stmt in ALL_SCHEMAS:
                conn.executescript(stmt)
        finally:
            conn.close()


# -----------------------------------------------------------------------------
# Facade: single-shot operations for collaborators (query layer, tests, tools).
# -----------------------------------------------------------------------------


class Database:
    """
    Durable store facade: one short transaction per call.

    Components needing several statements in one transaction use session().
    """

    def __init__(self, backend: DatabaseBackend) -> None:
        self._backend = backend

    def ensure_schema(self) -> None:
        self._backend.ensure_schema()

    def session(self, *, immediate: bool = False) -> Any:
        return self._backend.session(immediate=immediate)

    # --- Ingestion ---

    def get_cursor(self, task_name: str) -> IngestionCursor | None:
        with self.session() as s:
            return s.get_cursor(task_name)

    def commit_batch(
        self,
        task_name: str,
        records: list[LedgerRecord],
        new_cursor: str | None,
    ) -> tuple[int, int]:
        """
        Persist records and advance the task cursor in one transaction.

        Returns (inserted, duplicates). new_cursor None leaves the cursor unchanged.
        Any failure rolls back both the records and the cursor move.
        """
        now = int(time.time())
        inserted = 0
        with self.session(immediate=True) as s:
            for record in records:
                if s.insert_record(record, now):
                    inserted += 1
            if new_cursor is not None:
                s.advance_cursor(task_name, new_cursor, now)
        return inserted, len(records) - inserted

    def count_payments(self, anchor_id: str | None = None, *, aggregated_only: bool = False) -> int:
        with self.session() as s:
            return s.count_payments(anchor_id, aggregated_only=aggregated_only)

    # --- Anchors ---

    def register_anchor(self, stellar_account: str, name: str, home_domain: str | None = None) -> RegisteredAnchor:
        with self.session(immediate=True) as s:
            return s.register_anchor(stellar_account, name, home_domain, int(time.time()))

    def get_anchor(self, stellar_account: str) -> Anchor:
        with self.session() as s:
            anchor = s.get_anchor(stellar_account)
        if anchor is None:
            raise AnchorNotFoundError(stellar_account)
        return anchor

    def list_anchors(self) -> list[Anchor]:
        with self.session() as s:
            return s.list_anchors()

    # --- Aggregates (read-only for collaborators) ---

    def get_anchor_metrics(self, anchor_id: str) -> AnchorMetrics | None:
        with self.session() as s:
            return s.get_anchor_metrics(anchor_id)

    def list_anchor_metrics(self) -> list[AnchorMetrics]:
        with self.session() as s:
            return s.list_anchor_metrics()

    def anchor_history(self, anchor_id: str, *, limit: int = 500) -> list[AnchorMetricsPoint]:
        with self.session() as s:
            return s.anchor_history(anchor_id, limit=limit)

    def get_corridor_metrics(self, corridor_key: str, date: str) -> CorridorMetrics | None:
        with self.session() as s:
            return s.get_corridor_metrics(corridor_key, date)

    def list_corridor_metrics(self, **filters: Any) -> list[CorridorMetrics]:
        with self.session() as s:
            return s.list_corridor_metrics(**filters)

    def get_trustline_stats(self, asset_code: str, asset_issuer: str) -> TrustlineStats | None:
        with self.session() as s:
            return s.get_trustline_stats(asset_code, asset_issuer)

    def list_trustline_snapshots(self, asset_code: str, asset_issuer: str) -> list[TrustlineSnapshot]:
        with self.session() as s:
            return s.list_trustline_snapshots(asset_code, asset_issuer)

    def fee_bump_stats(self, since: int | None = None) -> dict[str, Any]:
        with self.session() as s:
            return s.fee_bump_stats(since)

    def account_merge_stats(self) -> dict[str, Any]:
        with self.session() as s:
            return s.account_merge_stats()

    def get_asset_price(self, asset_key: str, day: str) -> AssetPrice | None:
        with self.session() as s:
            return s.get_asset_price(asset_key, day)

    def list_asset_prices(self, asset_key: str | None = None) -> list[AssetPrice]:
        with self.session() as s:
            return s.list_asset_prices(asset_key)

    # --- Asset verification ---

    def get_verified_asset(self, asset_code: str, asset_issuer: str) -> VerifiedAsset | None:
        with self.session() as s:
            return s.get_verified_asset(asset_code, asset_issuer)

    def list_verified_assets(self, *, status: str | None = None) -> list[VerifiedAsset]:
        with self.session() as s:
            return s.list_verified_assets(status=status)

    def list_reports(self, asset_code: str, asset_issuer: str) -> list[AssetReport]:
        with self.session() as s:
            return s.list_reports(asset_code, asset_issuer)

    def list_verification_history(self, asset_code: str, asset_issuer: str) -> list[AssetVerificationHistoryEntry]:
        with self.session() as s:
            return s.list_verification_history(asset_code, asset_issuer)

    # --- Snapshots ---

    def get_snapshot_record(self, epoch: int) -> SnapshotRecord | None:
        with self.session() as s:
            return s.get_snapshot_record(epoch)

    def list_snapshot_records(self, *, status: str | None = None) -> list[SnapshotRecord]:
        with self.session() as s:
            return s.list_snapshot_records(status=status)

    def list_pending_snapshots(self) -> list[SnapshotRecord]:
        return self.list_snapshot_records(status=SNAPSHOT_PENDING)


def get_database(path: str | Path | None = None) -> Database:
    """
    Return a Database backed by SQLite, with schema ensured.

    path: Path to the SQLite file (e.g. "data/stellar_insights.db"). Default: "stellar_insights.db" in cwd.
    For PostgreSQL later: use a different factory that builds a PostgreSQL backend from URL.
    """
    if path is None:
        path = Path("stellar_insights.db")
    backend = SQLiteBackend(path)
    db = Database(backend)
    db.ensure_schema()
    logger.debug("database_ready", path=str(path))
    return db
