"""
On-chain anchoring of analytics snapshots: canonical hash, contract clients, epoch pipeline.
"""

from stellar_insights.anchoring.contract import (
    InMemorySnapshotContract,
    OnChainSnapshot,
    RpcSnapshotContract,
    SnapshotContract,
    SnapshotSubmittedEvent,
)
from stellar_insights.anchoring.pipeline import AnchoringResult, SnapshotAnchoringPipeline
from stellar_insights.anchoring.snapshot import (
    SCHEMA_VERSION,
    Snapshot,
    build_document,
    canonical_bytes,
    snapshot_hash,
    take_snapshot,
)

__all__ = [
    "SCHEMA_VERSION",
    "AnchoringResult",
    "InMemorySnapshotContract",
    "OnChainSnapshot",
    "RpcSnapshotContract",
    "Snapshot",
    "SnapshotAnchoringPipeline",
    "SnapshotContract",
    "SnapshotSubmittedEvent",
    "build_document",
    "canonical_bytes",
    "snapshot_hash",
    "take_snapshot",
]
