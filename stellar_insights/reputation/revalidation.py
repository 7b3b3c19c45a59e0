"""
Periodic asset revalidation.

Each run first registers newly seen issued assets (first sighting, unverified), then
re-verifies up to batch_size assets whose last verification is older than
max_age_days, oldest first. One failing asset is logged and does not stop the run.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from stellar_insights.core.exceptions import InsightsError
from stellar_insights.core.retry import RetryAborted
from stellar_insights.database import Database
from stellar_insights.logging import get_logger
from stellar_insights.reputation.scorer import ReputationScorer

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_AGE_DAYS = 7
DEFAULT_INTERVAL_HOURS = 24.0


@dataclass
class RevalidationResult:
    discovered: int = 0
    checked: int = 0
    status_changes: int = 0
    failed: list[tuple[str, str]] = field(default_factory=list)


class RevalidationJob:
    def __init__(
        self,
        db: Database,
        scorer: ReputationScorer,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
    ) -> None:
        self._db = db
        self._scorer = scorer
        self._batch_size = max(1, batch_size)
        self._max_age_sec = max(0, max_age_days) * 86_400
        self._interval_sec = max(1.0, interval_hours * 3600.0)

    def run_once(self, now: int | None = None) -> RevalidationResult:
        result = RevalidationResult()
        now = int(time.time()) if now is None else now
        result.discovered = len(self._scorer.discover_assets(self._batch_size))
        with self._db.session() as s:
            due = s.assets_due_for_revalidation(now - self._max_age_sec, self._batch_size)
        for code, issuer in due:
            try:
                change = self._scorer.verify_asset(code, issuer)
            except RetryAborted:
                raise
            except InsightsError as e:
                result.failed.append((code, issuer))
                logger.warning("reputation_revalidation_failed", asset_code=code, asset_issuer=issuer, error=str(e))
                continue
            except Exception as e:
                result.failed.append((code, issuer))
                logger.exception("reputation_revalidation_crashed", asset_code=code, asset_issuer=issuer, error=str(e))
                continue
            result.checked += 1
            if change.previous_status != change.new_status:
                result.status_changes += 1
        logger.info(
            "reputation_revalidation_completed",
            discovered=result.discovered,
            checked=result.checked,
            status_changes=result.status_changes,
            failed=len(result.failed),
        )
        return result

    def run_loop(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        logger.info("reputation_revalidation_loop_started", interval_sec=self._interval_sec)
        while not stop.is_set():
            try:
                self.run_once()
            except RetryAborted:
                break
            except Exception as e:
                logger.exception("reputation_revalidation_cycle_failed", error=str(e))
            stop.wait(self._interval_sec)
        logger.info("reputation_revalidation_loop_stopped")
