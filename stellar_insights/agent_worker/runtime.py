"""
Long-running service runtime.

Wires the store, Horizon client, USD price feed, ingestion coordinator, aggregation engine,
reputation scorer and anchoring pipeline from Settings, then runs:
- one daemon thread per ingestion task (aggregation is also triggered per committed batch),
- an aggregation timer, a revalidation timer and an anchoring timer.

All threads share one stop event. SIGINT/SIGTERM set it; in-flight batches finish
or are abandoned whole, and a pending snapshot submission is left for reconciliation.

Usage: python -m stellar_insights.agent_worker.runtime
"""

from __future__ import annotations

import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Any

from stellar_insights.aggregation import AggregationEngine, StatusThresholds
from stellar_insights.anchoring import (
    InMemorySnapshotContract,
    RpcSnapshotContract,
    SnapshotAnchoringPipeline,
    SnapshotContract,
)
from stellar_insights.config import Settings, get_settings
from stellar_insights.core.retry import RetryPolicy
from stellar_insights.database import Database, get_database
from stellar_insights.horizon import CircuitBreaker, CircuitBreakerConfig, HorizonClient
from stellar_insights.ingestion import IngestionCoordinator, LedgerSource
from stellar_insights.logging import get_logger
from stellar_insights.pricing import DEFAULT_ASSET_IDS, PriceFeed, build_provider, parse_asset_ids
from stellar_insights.reputation import AssetVerifier, ReputationScorer, RevalidationJob

logger = get_logger(__name__)

JOIN_TIMEOUT_SEC = 30.0


@dataclass
class InsightsRuntime:
    settings: Settings
    db: Database
    coordinator: IngestionCoordinator
    engine: AggregationEngine
    scorer: ReputationScorer
    revalidation: RevalidationJob
    pipeline: SnapshotAnchoringPipeline
    stop_event: threading.Event
    closers: list[Any] = field(default_factory=list)
    threads: list[threading.Thread] = field(default_factory=list)

    def _spawn(self, name: str, target: Any, *args: Any) -> None:
        t = threading.Thread(target=target, args=args, name=name, daemon=True)
        t.start()
        self.threads.append(t)

    def start(self) -> None:
        s = self.settings
        self.threads.extend(self.coordinator.start())
        self._spawn("aggregation", self.engine.run_loop, self.stop_event, s.aggregation_interval_sec)
        if s.revalidation_enabled:
            self._spawn("revalidation", self.revalidation.run_loop, self.stop_event)
        self._spawn("anchoring", self.pipeline.run_loop, s.snapshot_interval_sec)
        logger.info(
            "runtime_started",
            tasks=self.coordinator.task_names,
            threads=[t.name for t in self.threads],
            contract_mode=s.contract_mode,
        )

    def stop(self, timeout_sec: float = JOIN_TIMEOUT_SEC) -> None:
        self.stop_event.set()
        for t in self.threads:
            t.join(timeout=timeout_sec)
            if t.is_alive():
                logger.warning("runtime_thread_still_running", thread=t.name)
        self.threads.clear()
        for close in self.closers:
            close()
        self.closers.clear()
        logger.info("runtime_stopped")

    def wait(self) -> None:
        """Block until the stop event is set (signals interrupt the wait)."""
        while not self.stop_event.wait(1.0):
            pass


def build_contract(settings: Settings) -> SnapshotContract:
    if settings.contract_mode == "rpc":
        return RpcSnapshotContract(
            settings.contract_rpc_url,
            settings.contract_id,
            timeout_sec=settings.contract_timeout_sec,
        )
    return InMemorySnapshotContract(admin=settings.snapshot_submitter)


def build_price_feed(
    settings: Settings,
    *,
    stop_event: threading.Event | None = None,
    transport: Any = None,
) -> PriceFeed | None:
    """USD price feed from settings; None when PRICE_FEED_ENABLED is off."""
    if not settings.price_feed_enabled:
        return None
    provider = build_provider(
        settings.price_feed_provider,
        api_key=settings.price_feed_api_key or None,
        base_url=settings.price_feed_url or None,
        timeout_sec=settings.price_feed_timeout_sec,
        stop_event=stop_event,
        transport=transport,
    )
    asset_ids = {**DEFAULT_ASSET_IDS, **parse_asset_ids(settings.price_feed_asset_ids)}
    return PriceFeed(provider, asset_ids=asset_ids, cache_ttl_sec=settings.price_cache_ttl_sec)


def build_runtime(
    settings: Settings,
    *,
    source: LedgerSource | None = None,
    contract: SnapshotContract | None = None,
    verifier: AssetVerifier | None = None,
) -> InsightsRuntime:
    """Wire components from settings; source/contract/verifier may be injected (tests)."""
    stop = threading.Event()
    db = get_database(settings.db_path)
    retry = RetryPolicy(
        attempts=settings.retry_attempts,
        backoff_sec=settings.retry_backoff_sec,
        max_backoff_sec=settings.retry_max_backoff_sec,
    )
    closers: list[Any] = []
    if source is None or verifier is None:
        horizon = HorizonClient(
            settings.horizon_url,
            timeout_sec=settings.horizon_timeout_sec,
            retry_policy=retry,
            breaker=CircuitBreaker(
                "horizon",
                CircuitBreakerConfig(
                    failure_threshold=settings.circuit_failure_threshold,
                    success_threshold=settings.circuit_success_threshold,
                    timeout_sec=settings.circuit_timeout_sec,
                ),
            ),
            stop_event=stop,
        )
        closers.append(horizon.close)
        if source is None:
            source = horizon
        if verifier is None:
            verifier = AssetVerifier(
                horizon,
                stellar_expert_url=settings.stellar_expert_url,
                timeout_sec=settings.horizon_timeout_sec,
                stop_event=stop,
            )
            closers.append(verifier.close)
    if contract is None:
        contract = build_contract(settings)
        if isinstance(contract, RpcSnapshotContract):
            closers.append(contract.close)
    price_feed = build_price_feed(settings, stop_event=stop)
    if price_feed is not None:
        closers.append(price_feed.close)

    engine = AggregationEngine(
        db,
        thresholds=StatusThresholds(settings.reliability_green_min, settings.reliability_yellow_min),
        price_feed=price_feed,
    )
    coordinator = IngestionCoordinator(
        db,
        source,
        tasks=settings.ingest_tasks,
        batch_size=settings.ingest_batch_size,
        start_cursor=settings.ingest_start_cursor,
        poll_interval_sec=settings.ingest_poll_interval_sec,
        heartbeat_interval_sec=settings.heartbeat_interval_sec,
        on_batch_committed=engine.handle_batch,
        stop_event=stop,
    )
    scorer = ReputationScorer(db, verifier, report_threshold=settings.report_threshold)
    revalidation = RevalidationJob(
        db,
        scorer,
        batch_size=settings.revalidation_batch_size,
        max_age_days=settings.revalidation_max_age_days,
        interval_hours=settings.revalidation_interval_hours,
    )
    pipeline = SnapshotAnchoringPipeline(
        db,
        contract,
        submitter=settings.snapshot_submitter,
        retry_policy=retry,
        stop_event=stop,
    )
    return InsightsRuntime(
        settings=settings,
        db=db,
        coordinator=coordinator,
        engine=engine,
        scorer=scorer,
        revalidation=revalidation,
        pipeline=pipeline,
        stop_event=stop,
        closers=closers,
    )


def main() -> int:
    """CLI entrypoint: build from env, run until SIGINT/SIGTERM. Returns the exit code."""
    try:
        settings = get_settings()
    except ValueError as e:
        logger.error("runtime_config_error", error=str(e))
        return 2
    try:
        runtime = build_runtime(settings)
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1

    def request_shutdown(signum: int, frame: Any) -> None:
        logger.info("runtime_shutdown_signal", signal=signum)
        runtime.stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, request_shutdown)
        except (AttributeError, ValueError):
            # Not on the main thread, or unsupported on this platform
            pass

    runtime.start()
    try:
        runtime.wait()
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal", signal="KeyboardInterrupt")
    finally:
        runtime.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
