"""
Canonical analytics snapshot and its SHA-256 fingerprint.

The document is JSON with sorted keys, no insignificant whitespace and ASCII only.
Anchors are ordered by anchor_id and corridors by (corridor_key, date). Every
non-integer number is rendered as a fixed-precision decimal string, so the bytes do
not depend on float formatting. Epoch and wall-clock time are not part of the
document: the same aggregate state always hashes the same.

    schema_version         SCHEMA_VERSION
    score_formula_version  reliability formula version used for the scores
    anchors                [{anchor_id, status, reliability_score, counts, rates, volume_usd, ...}]
    corridors              [{corridor_key, date, anchor_id, counts, rates, volume_usd, ...}]
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Iterable

from stellar_insights.aggregation.reliability import SCORE_FORMULA_VERSION
from stellar_insights.database import Database
from stellar_insights.database.models import VOLUME_SCALE, AnchorMetrics, CorridorMetrics

SCHEMA_VERSION = 1

RATE_QUANTUM = Decimal("0.0001")
SCORE_QUANTUM = Decimal("0.0001")
LATENCY_QUANTUM = Decimal("0.001")


def _rate(part: int, total: int) -> str:
    if total == 0:
        return str(Decimal(0).quantize(RATE_QUANTUM))
    return str((Decimal(part) * 100 / Decimal(total)).quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN))


def _average(total: int, samples: int) -> str | None:
    if samples == 0:
        return None
    return str((Decimal(total) / Decimal(samples)).quantize(LATENCY_QUANTUM, rounding=ROUND_HALF_EVEN))


def _volume(volume_e7: int) -> str:
    sign = "-" if volume_e7 < 0 else ""
    whole, frac = divmod(abs(volume_e7), VOLUME_SCALE)
    return f"{sign}{whole}.{frac:07d}"


def _score(score: float) -> str:
    return str(Decimal(repr(score)).quantize(SCORE_QUANTUM, rounding=ROUND_HALF_EVEN))


def anchor_entry(m: AnchorMetrics) -> dict[str, Any]:
    return {
        "anchor_id": m.anchor_id,
        "total_transactions": m.total_transactions,
        "successful_transactions": m.successful_transactions,
        "failed_transactions": m.failed_transactions,
        "success_rate": _rate(m.successful_transactions, m.total_transactions),
        "failure_rate": _rate(m.failed_transactions, m.total_transactions),
        "avg_settlement_time_ms": _average(m.settlement_total_ms, m.settlement_samples),
        "volume_usd": _volume(m.volume_usd_e7),
        "reliability_score": _score(m.reliability_score),
        "status": m.status,
    }


def corridor_entry(c: CorridorMetrics) -> dict[str, Any]:
    return {
        "corridor_key": c.corridor_key,
        "date": c.date,
        "anchor_id": c.anchor_id,
        "source_asset": c.source_asset.key,
        "destination_asset": c.destination_asset.key,
        "total_transactions": c.total_transactions,
        "successful_transactions": c.successful_transactions,
        "failed_transactions": c.failed_transactions,
        "success_rate": _rate(c.successful_transactions, c.total_transactions),
        "avg_settlement_latency_ms": _average(c.settlement_total_ms, c.settlement_samples),
        "volume_usd": _volume(c.volume_usd_e7),
    }


def build_document(
    anchors: Iterable[AnchorMetrics],
    corridors: Iterable[CorridorMetrics],
    *,
    score_version: int = SCORE_FORMULA_VERSION,
) -> dict[str, Any]:
    """Canonical document for a set of aggregates; input order does not matter."""
    return {
        "schema_version": SCHEMA_VERSION,
        "score_formula_version": score_version,
        "anchors": [anchor_entry(m) for m in sorted(anchors, key=lambda m: m.anchor_id)],
        "corridors": [corridor_entry(c) for c in sorted(corridors, key=lambda c: (c.corridor_key, c.date))],
    }


def canonical_bytes(document: dict[str, Any]) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("ascii")


def snapshot_hash(document: dict[str, Any]) -> bytes:
    """SHA-256 of the canonical bytes: exactly 32 bytes."""
    return hashlib.sha256(canonical_bytes(document)).digest()


@dataclass(frozen=True)
class Snapshot:
    document: dict[str, Any]
    payload: bytes
    hash: bytes

    @property
    def hash_hex(self) -> str:
        return self.hash.hex()

    @property
    def schema_version(self) -> int:
        return int(self.document["schema_version"])

    @property
    def score_version(self) -> int:
        return int(self.document["score_formula_version"])

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> Snapshot:
        payload = canonical_bytes(document)
        return cls(document=document, payload=payload, hash=hashlib.sha256(payload).digest())


def take_snapshot(db: Database) -> Snapshot:
    """Read all current anchor and corridor aggregates in one transaction and fingerprint them."""
    with db.session() as s:
        anchors = s.list_anchor_metrics()
        corridors = s.list_corridor_metrics()
    return Snapshot.from_document(build_document(anchors, corridors))
