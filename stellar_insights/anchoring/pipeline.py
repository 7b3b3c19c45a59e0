"""
Snapshot anchoring pipeline: fingerprint current aggregates and commit (hash, epoch) on-chain.

Epoch allocation: next = max(highest epoch ever reserved locally, contract latest) + 1.
The epoch is reserved as a 'pending' row in the snapshots table before submission and
ends 'submitted' or 'abandoned'; a row left 'pending' (unknown outcome) is reconciled
against get_snapshot() at the start of the next run. Reserved epochs are never reused.

Outcomes per attempt:
- success: row -> submitted with the chain timestamp.
- DuplicateEpoch: if the chain holds our hash for that epoch it is ours (submitted);
  if it holds another hash the row is abandoned and the next epoch is tried; if the
  owner cannot be read the row stays pending for reconciliation.
- validation / unauthorized: row -> abandoned, error re-raised to the caller.
- gateway unavailable after retries, or shutdown during a retry wait: row stays pending.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from stellar_insights.anchoring.contract import SnapshotContract
from stellar_insights.anchoring.snapshot import Snapshot, take_snapshot
from stellar_insights.core.exceptions import (
    ContractError,
    ContractUnavailableError,
    DuplicateEpochError,
    NoSnapshotsExistError,
    SnapshotNotFoundError,
    SnapshotValidationError,
    UnauthorizedSubmitterError,
)
from stellar_insights.core.retry import RetryAborted, RetryPolicy, call_with_retry
from stellar_insights.database import Database
from stellar_insights.database.models import (
    SNAPSHOT_ABANDONED,
    SNAPSHOT_PENDING,
    SNAPSHOT_SUBMITTED,
    SnapshotRecord,
)
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_EPOCH_ATTEMPTS = 5
DEFAULT_INTERVAL_SEC = 3600.0

STATUS_DEFERRED = "deferred"


@dataclass
class AnchoringResult:
    status: str
    """submitted | pending | abandoned | deferred"""
    hash_hex: str
    epoch: int | None = None
    chain_timestamp: int | None = None
    abandoned_epochs: list[int] = field(default_factory=list)
    reconciled: list[SnapshotRecord] = field(default_factory=list)


class SnapshotAnchoringPipeline:
    def __init__(
        self,
        db: Database,
        contract: SnapshotContract,
        *,
        submitter: str,
        retry_policy: RetryPolicy | None = None,
        max_epoch_attempts: int = DEFAULT_MAX_EPOCH_ATTEMPTS,
        stop_event: threading.Event | None = None,
    ) -> None:
        if not submitter:
            raise ValueError("submitter must be non-empty")
        self._db = db
        self._contract = contract
        self._submitter = submitter
        self._retry = retry_policy or RetryPolicy()
        self._max_epoch_attempts = max(1, max_epoch_attempts)
        self._stop_event = stop_event or threading.Event()
        self._run_lock = threading.Lock()

    # --- Epochs ---

    def _contract_latest_epoch(self) -> int:
        try:
            return self._contract.latest_snapshot().epoch
        except NoSnapshotsExistError:
            return 0
        except ContractUnavailableError as e:
            logger.warning("anchoring_latest_epoch_unavailable", error=str(e))
            return 0

    def _reserve_epoch(self, snapshot: Snapshot, floor: int) -> int:
        """Reserve max(local, floor) + 1 as a pending row; returns the epoch."""
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            epoch = max(s.max_snapshot_epoch(), floor) + 1
            s.reserve_snapshot_epoch(
                SnapshotRecord(
                    epoch=epoch,
                    hash_hex=snapshot.hash_hex,
                    schema_version=snapshot.schema_version,
                    score_version=snapshot.score_version,
                    status=SNAPSHOT_PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )
        return epoch

    def _mark(self, epoch: int, status: str, *, chain_timestamp: int | None = None, reason: str | None = None) -> None:
        with self._db.session(immediate=True) as s:
            s.update_snapshot_status(epoch, status, int(time.time()), chain_timestamp=chain_timestamp, reason=reason)

    # --- Reconciliation ---

    def reconcile_pending(self) -> list[SnapshotRecord]:
        """Resolve rows whose submission outcome is unknown. Returns the rows that changed."""
        changed: list[SnapshotRecord] = []
        for record in self._db.list_pending_snapshots():
            try:
                on_chain = self._contract.get_snapshot(record.epoch)
            except SnapshotNotFoundError:
                self._mark(record.epoch, SNAPSHOT_ABANDONED, reason="not_on_chain")
            except ContractUnavailableError as e:
                logger.warning("anchoring_reconcile_unavailable", epoch=record.epoch, error=str(e))
                continue
            else:
                if on_chain.hex() == record.hash_hex:
                    self._mark(record.epoch, SNAPSHOT_SUBMITTED)
                else:
                    self._mark(record.epoch, SNAPSHOT_ABANDONED, reason="epoch_taken")
            updated = self._db.get_snapshot_record(record.epoch)
            if updated is not None:
                changed.append(updated)
                logger.info("anchoring_snapshot_reconciled", epoch=record.epoch, status=updated.status)
        return changed

    # --- Submission ---

    def _submit(self, snapshot: Snapshot, epoch: int) -> int:
        return call_with_retry(
            lambda: self._contract.submit_snapshot(snapshot.hash, epoch, self._submitter),
            self._retry,
            operation=f"submit_snapshot epoch={epoch}",
            stop_event=self._stop_event,
            retry_on=(ContractUnavailableError,),
        )

    def _already_ours(self, snapshot: Snapshot, epoch: int) -> bool | None:
        """True if the chain holds our hash at epoch, False if it holds another, None if unknown."""
        try:
            return self._contract.get_snapshot(epoch) == snapshot.hash
        except SnapshotNotFoundError:
            return False
        except ContractUnavailableError as e:
            logger.warning("anchoring_duplicate_owner_unknown", epoch=epoch, error=str(e))
            return None

    def anchor(self, snapshot: Snapshot) -> AnchoringResult:
        """Submit a snapshot under a fresh epoch, moving on past duplicate epochs."""
        result = AnchoringResult(status=STATUS_DEFERRED, hash_hex=snapshot.hash_hex)
        floor = self._contract_latest_epoch()
        for _ in range(self._max_epoch_attempts):
            if self._stop_event.is_set():
                logger.info("anchoring_submission_deferred", reason="shutdown", hash=snapshot.hash_hex)
                return result
            epoch = self._reserve_epoch(snapshot, floor)
            result.epoch = epoch
            log = logger.bind(epoch=epoch, hash=snapshot.hash_hex)
            try:
                ts = self._submit(snapshot, epoch)
            except DuplicateEpochError:
                ours = self._already_ours(snapshot, epoch)
                if ours is None:
                    result.status = SNAPSHOT_PENDING
                    log.warning("anchoring_submission_unresolved", error="duplicate epoch of unknown owner")
                    return result
                if ours:
                    self._mark(epoch, SNAPSHOT_SUBMITTED)
                    result.status = SNAPSHOT_SUBMITTED
                    log.info("anchoring_snapshot_submitted", recovered=True)
                    return result
                self._mark(epoch, SNAPSHOT_ABANDONED, reason="duplicate_epoch")
                result.abandoned_epochs.append(epoch)
                floor = epoch
                log.warning("anchoring_duplicate_epoch", next_epoch=epoch + 1)
                continue
            except (SnapshotValidationError, UnauthorizedSubmitterError) as e:
                self._mark(epoch, SNAPSHOT_ABANDONED, reason=e.code)
                result.status = SNAPSHOT_ABANDONED
                result.abandoned_epochs.append(epoch)
                log.error("anchoring_submission_rejected", code=e.code, error=str(e))
                raise
            except ContractUnavailableError as e:
                result.status = SNAPSHOT_PENDING
                log.warning("anchoring_submission_unresolved", error=str(e))
                return result
            except RetryAborted as e:
                result.status = SNAPSHOT_PENDING
                log.info("anchoring_submission_interrupted", error=str(e.last_error))
                return result
            except ContractError as e:
                self._mark(epoch, SNAPSHOT_ABANDONED, reason=e.code)
                result.status = SNAPSHOT_ABANDONED
                result.abandoned_epochs.append(epoch)
                log.error("anchoring_submission_rejected", code=e.code, error=str(e))
                raise
            self._mark(epoch, SNAPSHOT_SUBMITTED, chain_timestamp=ts)
            result.status = SNAPSHOT_SUBMITTED
            result.chain_timestamp = ts
            log.info("anchoring_snapshot_submitted", chain_timestamp=ts)
            return result
        logger.error(
            "anchoring_epoch_attempts_exhausted",
            attempts=self._max_epoch_attempts,
            abandoned=result.abandoned_epochs,
            hash=snapshot.hash_hex,
        )
        return result

    def run_once(self) -> AnchoringResult:
        """Reconcile pending rows, fingerprint current aggregates, and anchor them."""
        with self._run_lock:
            reconciled = self.reconcile_pending()
            snapshot = take_snapshot(self._db)
            result = self.anchor(snapshot)
            result.reconciled = reconciled
            return result

    def run_loop(self, interval_sec: float = DEFAULT_INTERVAL_SEC) -> None:
        stop = self._stop_event
        logger.info("anchoring_loop_started", interval_sec=interval_sec)
        while not stop.wait(interval_sec):
            try:
                self.run_once()
            except ContractError as e:
                logger.error("anchoring_cycle_rejected", code=e.code, error=str(e))
            except Exception as e:
                logger.exception("anchoring_cycle_failed", error=str(e))
        logger.info("anchoring_loop_stopped")
