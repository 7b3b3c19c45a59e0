"""
Aggregation engine: fold newly ingested records into anchor, corridor and trustline aggregates.

- Payments not yet aggregated are folded in ledger order inside one write transaction:
  corridor buckets for the payment's own UTC day are incremented, the attributed
  anchor's counters are updated, its reliability score and status recomputed, and
  one history point is appended per affected anchor. The payments are then marked
  aggregated in the same transaction, so a pass is all-or-nothing and never double counts.
- A payment whose anchor is not registered yet creates a provisional anchor.
- Volume is valued at USD-pegged or configured prices, else at the price recorded
  for the (asset, day). A price feed fills those records before the fold, outside
  the write transaction; the first price recorded for a day is the one every
  payment of that day uses, so replays and recompute_anchor give the same volume.
- recompute_anchor() rebuilds an anchor from raw history (the only path that may lower counts).
- check_consistency() compares anchor totals against raw payments and corridor sums.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

from stellar_insights.aggregation.reliability import (
    SCORE_FORMULA_VERSION,
    DailyActivity,
    StatusThresholds,
    compute_reliability,
)
from stellar_insights.database import Database, StoreSession
from stellar_insights.database.models import (
    VOLUME_SCALE,
    AnchorMetrics,
    AssetRef,
    CorridorMetrics,
    Payment,
    RegisteredAnchor,
)
from stellar_insights.logging import get_logger
from stellar_insights.pricing import PriceFeed

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_INTERVAL_SEC = 60.0

# USD-pegged asset codes priced at 1.0 unless overridden
USD_PEGGED_CODES = ("USDC", "USDT", "USD", "PYUSD", "USDX")
UNPRICED_SOURCE = "unpriced"


def volume_usd_e7(payment: Payment, price: Decimal | None) -> int:
    """USD value of a payment in 1e-7 units at price; 0 when failed or unpriced."""
    if not payment.successful or price is None:
        return 0
    value = Decimal(payment.amount) * price * VOLUME_SCALE
    return int(value.to_integral_value(rounding=ROUND_HALF_EVEN))


@dataclass
class AggregationResult:
    payments: int = 0
    anchors: list[str] = field(default_factory=list)
    corridors: list[tuple[str, str]] = field(default_factory=list)
    provisional_created: list[str] = field(default_factory=list)
    trustline_events: int = 0
    trustline_assets: int = 0


@dataclass(frozen=True)
class ConsistencyViolation:
    anchor_id: str
    kind: str
    """raw_count | corridor_total | corridor_successful | corridor_failed"""
    expected: int
    actual: int


@dataclass
class _AnchorDelta:
    total: int = 0
    successful: int = 0
    failed: int = 0
    settlement_samples: int = 0
    settlement_total_ms: int = 0
    volume_usd_e7: int = 0
    first_seen_at: int = 0
    last_day: str | None = None


class AggregationEngine:
    """Incremental aggregation over the durable store; safe to run from several threads."""

    def __init__(
        self,
        db: Database,
        *,
        thresholds: StatusThresholds | None = None,
        usd_prices: dict[str, Decimal | str | float] | None = None,
        price_feed: PriceFeed | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._db = db
        self._thresholds = thresholds or StatusThresholds()
        prices = {code: Decimal(1) for code in USD_PEGGED_CODES}
        for code, price in (usd_prices or {}).items():
            prices[code.upper()] = Decimal(str(price))
        self._usd_prices = prices
        self._price_feed = price_feed
        self._batch_size = max(1, batch_size)

    @property
    def thresholds(self) -> StatusThresholds:
        return self._thresholds

    # --- Pricing ---

    def static_price(self, asset: AssetRef) -> Decimal | None:
        """Pegged or configured price by asset code; None when the asset needs a recorded price."""
        return self._usd_prices.get(asset.code.upper())

    def _feed_prices(self, asset: AssetRef) -> bool:
        return self._price_feed is not None and self._price_feed.provider_id(asset) is not None

    def _recorded_price(
        self, s: StoreSession, asset: AssetRef, day: str, now: int, seen: dict[tuple[str, str], Decimal | None]
    ) -> Decimal | None:
        key = (asset.key, day)
        if key in seen:
            return seen[key]
        recorded = s.get_asset_price(asset.key, day)
        if recorded is None and self._feed_prices(asset):
            # the day stays unpriced from here on
            s.record_asset_price(asset.key, day, None, UNPRICED_SOURCE, now)
            logger.warning("aggregation_asset_unpriced", asset=asset.key, day=day)
        price = Decimal(recorded.price_usd) if recorded is not None and recorded.price_usd is not None else None
        seen[key] = price
        return price

    def prefetch_prices(self, limit: int | None = None) -> int:
        """
        Record feed prices the next fold will need. Returns how many (asset, day) prices were stored.

        Reads pending payments in a read transaction, asks the feed with no lock held,
        then records the answers in a short write transaction.
        """
        feed = self._price_feed
        if feed is None:
            return 0
        wanted: dict[tuple[str, str], AssetRef] = {}
        with self._db.session() as s:
            for p in s.pending_payments(limit or self._batch_size):
                key = (p.asset.key, p.day)
                if not p.successful or key in wanted or self.static_price(p.asset) is not None:
                    continue
                if feed.provider_id(p.asset) is None or s.get_asset_price(*key) is not None:
                    continue
                wanted[key] = p.asset
        if not wanted:
            return 0
        prices = feed.get_prices(wanted.values())
        now = int(time.time())
        stored = 0
        with self._db.session(immediate=True) as s:
            for asset_key, day in sorted(wanted):
                price = prices.get(asset_key)
                if price is not None and s.record_asset_price(asset_key, day, str(price), feed.source, now):
                    stored += 1
        logger.info("aggregation_prices_recorded", requested=len(wanted), recorded=stored, source=feed.source)
        return stored

    # --- Folding ---

    def _fold(self, s: StoreSession, payments: list[Payment], now: int, result: AggregationResult) -> None:
        corridors: dict[tuple[str, str], CorridorMetrics] = {}
        anchors: dict[str, _AnchorDelta] = {}
        seen: dict[tuple[str, str], Decimal | None] = {}
        for p in payments:
            volume = 0
            if p.successful:
                price = self.static_price(p.asset)
                if price is None:
                    price = self._recorded_price(s, p.asset, p.day, now, seen)
                volume = volume_usd_e7(p, price)
            settled = p.settlement_time_ms is not None
            key = (p.corridor_key, p.day)
            c = corridors.get(key)
            if c is None:
                c = CorridorMetrics(
                    corridor_key=p.corridor_key,
                    date=p.day,
                    anchor_id=p.anchor_id,
                    source_asset=p.source_asset,
                    destination_asset=p.asset,
                )
                corridors[key] = c
            c.total_transactions += 1
            c.successful_transactions += int(p.successful)
            c.failed_transactions += int(not p.successful)
            c.volume_usd_e7 += volume
            if settled:
                c.settlement_samples += 1
                c.settlement_total_ms += p.settlement_time_ms or 0

            if p.anchor_id is None:
                continue
            d = anchors.get(p.anchor_id)
            if d is None:
                d = _AnchorDelta(first_seen_at=p.created_at)
                anchors[p.anchor_id] = d
            d.total += 1
            d.successful += int(p.successful)
            d.failed += int(not p.successful)
            d.volume_usd_e7 += volume
            d.first_seen_at = min(d.first_seen_at, p.created_at)
            if settled:
                d.settlement_samples += 1
                d.settlement_total_ms += p.settlement_time_ms or 0
            if d.last_day is None or p.day > d.last_day:
                d.last_day = p.day

        for key in sorted(corridors):
            s.add_to_corridor(corridors[key], now)
            result.corridors.append(key)

        for anchor_id in sorted(anchors):
            d = anchors[anchor_id]
            if s.ensure_provisional_anchor(anchor_id, d.first_seen_at, now):
                result.provisional_created.append(anchor_id)
                logger.info("aggregation_provisional_anchor_created", anchor_id=anchor_id)
            m = s.get_anchor_metrics(anchor_id) or AnchorMetrics(anchor_id=anchor_id)
            m.total_transactions += d.total
            m.successful_transactions += d.successful
            m.failed_transactions += d.failed
            m.settlement_samples += d.settlement_samples
            m.settlement_total_ms += d.settlement_total_ms
            m.volume_usd_e7 += d.volume_usd_e7
            if d.last_day and (m.last_activity_day is None or d.last_day > m.last_activity_day):
                m.last_activity_day = d.last_day
            self._rescore(s, m)
            m.updated_at = now
            s.save_anchor_metrics(m)
            s.append_anchor_history(m, now)
            result.anchors.append(anchor_id)

    def _rescore(self, s: StoreSession, m: AnchorMetrics) -> None:
        """Score and status always move together; status is never set on its own."""
        daily = [DailyActivity(*row) for row in s.anchor_daily_activity(m.anchor_id)]
        breakdown = compute_reliability(daily)
        m.reliability_score = breakdown.score
        m.status = self._thresholds.status_for(breakdown.score)
        m.score_version = SCORE_FORMULA_VERSION

    def aggregate_pending(self, limit: int | None = None) -> AggregationResult:
        """Fold up to limit pending payments. Returns what was touched."""
        result = AggregationResult()
        self.prefetch_prices(limit)
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            payments = s.pending_payments(limit or self._batch_size)
            if not payments:
                return result
            self._fold(s, payments, now, result)
            s.mark_payments_aggregated([p.id for p in payments], now)
        result.payments = len(payments)
        logger.info(
            "aggregation_payments_folded",
            payments=result.payments,
            anchors=len(result.anchors),
            corridors=len(result.corridors),
            provisional_created=len(result.provisional_created),
        )
        return result

    def aggregate_trustlines(self, limit: int | None = None) -> AggregationResult:
        """Apply pending trustline events in ledger order and refresh stats per affected asset."""
        result = AggregationResult()
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            events = s.pending_trustline_events(limit or self._batch_size)
            if not events:
                return result
            affected: set[tuple[str, str]] = set()
            for e in events:
                if e.event_type == "changed":
                    s.apply_trustline_state(e.trustor, e.asset, active=True, authorized=None, trust_limit=e.trust_limit, now=now)
                elif e.event_type == "removed":
                    s.apply_trustline_state(e.trustor, e.asset, active=False, authorized=None, trust_limit=e.trust_limit, now=now)
                elif e.event_type == "authorized":
                    s.apply_trustline_state(e.trustor, e.asset, active=None, authorized=True, trust_limit=None, now=now)
                elif e.event_type == "deauthorized":
                    s.apply_trustline_state(e.trustor, e.asset, active=None, authorized=False, trust_limit=None, now=now)
                else:
                    logger.warning("aggregation_trustline_event_unknown", event_id=e.id, event_type=e.event_type)
                    continue
                affected.add((e.asset.code, str(e.asset.issuer)))
            for code, issuer in sorted(affected):
                s.refresh_trustline_stats(code, issuer, now)
            s.mark_trustline_events_aggregated([e.id for e in events], now)
        result.trustline_events = len(events)
        result.trustline_assets = len(affected)
        logger.info("aggregation_trustlines_folded", events=len(events), assets=len(affected))
        return result

    def run_once(self) -> AggregationResult:
        """Drain pending payments and trustline events."""
        total = AggregationResult()
        while True:
            r = self.aggregate_pending()
            if r.payments == 0:
                break
            total.payments += r.payments
            total.anchors.extend(a for a in r.anchors if a not in total.anchors)
            total.corridors.extend(c for c in r.corridors if c not in total.corridors)
            total.provisional_created.extend(r.provisional_created)
        while True:
            r = self.aggregate_trustlines()
            if r.trustline_events == 0:
                break
            total.trustline_events += r.trustline_events
            total.trustline_assets += r.trustline_assets
        return total

    def handle_batch(self, batch: Any) -> None:
        """Post-commit hook for the ingestion coordinator: aggregate what the batch unlocked."""
        if getattr(batch, "inserted", 0) <= 0:
            return
        if batch.task == "payments":
            while self.aggregate_pending().payments:
                pass
        elif batch.task == "trustlines":
            while self.aggregate_trustlines().trustline_events:
                pass

    # --- Explicit recomputation ---

    def recompute_anchor(self, anchor_id: str) -> AnchorMetrics | None:
        """Rebuild an anchor's metrics and corridor rows from its aggregated raw payments."""
        now = int(time.time())
        result = AggregationResult()
        with self._db.session(immediate=True) as s:
            before = s.get_anchor_metrics(anchor_id)
            s.reset_anchor_aggregates(anchor_id)
            payments = s.aggregated_payments_for_anchor(anchor_id)
            if payments:
                self._fold(s, payments, now, result)
            after = s.get_anchor_metrics(anchor_id)
        logger.info(
            "aggregation_anchor_recomputed",
            anchor_id=anchor_id,
            payments=len(payments),
            total_before=before.total_transactions if before else 0,
            total_after=after.total_transactions if after else 0,
        )
        return after

    # --- Anchor registry ---

    def register_anchor(self, stellar_account: str, name: str, home_domain: str | None = None) -> RegisteredAnchor:
        """Register an anchor; a provisional one is promoted in place and keeps its metrics."""
        anchor = self._db.register_anchor(stellar_account, name, home_domain)
        logger.info("aggregation_anchor_registered", anchor_id=stellar_account, name=name)
        return anchor

    # --- Consistency ---

    def check_consistency(self) -> list[ConsistencyViolation]:
        """Anchor totals must equal both the aggregated raw payment count and the corridor sums."""
        violations: list[ConsistencyViolation] = []
        with self._db.session() as s:
            for m in s.list_anchor_metrics():
                raw = s.count_payments(m.anchor_id, aggregated_only=True)
                if raw != m.total_transactions:
                    violations.append(ConsistencyViolation(m.anchor_id, "raw_count", raw, m.total_transactions))
                rows = s.list_corridor_metrics(anchor_id=m.anchor_id)
                for kind, corridor_sum, actual in (
                    ("corridor_total", sum(r.total_transactions for r in rows), m.total_transactions),
                    ("corridor_successful", sum(r.successful_transactions for r in rows), m.successful_transactions),
                    ("corridor_failed", sum(r.failed_transactions for r in rows), m.failed_transactions),
                ):
                    if corridor_sum != actual:
                        violations.append(ConsistencyViolation(m.anchor_id, kind, corridor_sum, actual))
        for v in violations:
            logger.error(
                "aggregation_consistency_violation",
                anchor_id=v.anchor_id,
                kind=v.kind,
                expected=v.expected,
                actual=v.actual,
            )
        return violations

    # --- Timer loop ---

    def run_loop(self, stop_event: threading.Event | None = None, interval_sec: float = DEFAULT_INTERVAL_SEC) -> None:
        """Aggregate and check consistency every interval_sec until stop_event is set."""
        stop = stop_event or threading.Event()
        logger.info("aggregation_loop_started", interval_sec=interval_sec)
        while not stop.is_set():
            try:
                result = self.run_once()
                if result.payments or result.trustline_events:
                    self.check_consistency()
            except Exception as e:
                logger.exception("aggregation_cycle_failed", error=str(e))
            stop.wait(interval_sec)
        logger.info("aggregation_loop_stopped")
