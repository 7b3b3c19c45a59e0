"""
Durable store: cursors, ledger records, aggregates, history, verification, snapshots.

SQLite via Database and get_database(); backend is swappable for PostgreSQL.
"""

from stellar_insights.database.database import (
    Database,
    DatabaseBackend,
    SQLiteBackend,
    StoreSession,
    get_database,
    paging_token_key,
)
from stellar_insights.database.models import (
    AccountMerge,
    Anchor,
    AnchorMetrics,
    AssetRef,
    CorridorMetrics,
    FeeBumpTransaction,
    Payment,
    ProvisionalAnchor,
    RegisteredAnchor,
    TrustlineEvent,
    VerifiedAsset,
)

__all__ = [
    "Database",
    "DatabaseBackend",
    "SQLiteBackend",
    "StoreSession",
    "get_database",
    "paging_token_key",
    "AccountMerge",
    "Anchor",
    "AnchorMetrics",
    "AssetRef",
    "CorridorMetrics",
    "FeeBumpTransaction",
    "Payment",
    "ProvisionalAnchor",
    "RegisteredAnchor",
    "TrustlineEvent",
    "VerifiedAsset",
]
