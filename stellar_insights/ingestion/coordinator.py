"""
Ingestion coordinator: one worker per ingestion task, cursor-driven and idempotent.

For a task: read the persisted cursor, fetch the next page strictly after it,
normalize each record (malformed ones are logged and skipped), then commit the
records and the advanced cursor in a single transaction. Re-processing a page
after a crash only re-hits existing natural keys. Transient fetch errors are
retried with backoff inside the client and never move the cursor.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from stellar_insights.core.exceptions import InsightsError, MalformedRecordError, UpstreamRequestError
from stellar_insights.core.retry import RetryAborted
from stellar_insights.database import Database, paging_token_key
from stellar_insights.database.models import AccountMerge, LedgerRecord
from stellar_insights.ingestion.normalizer import (
    merged_balance_from_effects,
    normalize_account_merge,
    normalize_fee_bump,
    normalize_payment,
    normalize_trustline,
)
from stellar_insights.logging import bind_task, get_logger

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 200
DEFAULT_POLL_INTERVAL_SEC = 5.0
DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0
DEFAULT_START_CURSOR = "now"


class LedgerSource(Protocol):
    """What the coordinator needs from the upstream ledger (HorizonClient satisfies it)."""

    def fetch_page(self, endpoint: str, cursor: str | None, limit: int) -> list[dict[str, Any]]: ...

    def fetch_operation_effects(self, operation_id: str) -> list[dict[str, Any]]: ...


def _enrich_account_merge(record: LedgerRecord, source: LedgerSource) -> LedgerRecord:
    """Fill merged_balance from the operation's account_credited effects."""
    if not isinstance(record, AccountMerge):
        raise TypeError(f"account merge enrichment got {type(record).__name__}")
    try:
        effects = source.fetch_operation_effects(record.operation_id)
    except UpstreamRequestError as e:
        logger.warning("ingest_merge_effects_unavailable", operation_id=record.operation_id, error=str(e))
        return record
    record.merged_balance = merged_balance_from_effects(effects, record.destination_account)
    return record


@dataclass(frozen=True)
class IngestionTask:
    """A named upstream stream with its own cursor and normalizer."""

    name: str
    endpoint: str
    normalize: Callable[[dict[str, Any]], LedgerRecord | None]
    enrich: Callable[[LedgerRecord, LedgerSource], LedgerRecord] | None = None


TASKS: dict[str, IngestionTask] = {
    "payments": IngestionTask("payments", "payments", normalize_payment),
    "trustlines": IngestionTask("trustlines", "operations", normalize_trustline),
    "account_merges": IngestionTask("account_merges", "operations", normalize_account_merge, _enrich_account_merge),
    "fee_bumps": IngestionTask("fee_bumps", "transactions", normalize_fee_bump),
}


@dataclass
class BatchResult:
    task: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    """Valid upstream records irrelevant to this task."""
    malformed: int = 0
    cursor_before: str | None = None
    cursor_after: str | None = None
    committed: bool = False


@dataclass
class TaskState:
    """Per-task counters for heartbeat and monitoring."""

    batches: int = 0
    inserted: int = 0
    malformed: int = 0
    errors: int = 0
    last_cursor: str | None = None
    last_error: str | None = None
    last_batch_at: float | None = None


class IngestionCoordinator:
    """
    Runs ingestion tasks against a ledger source and the durable store.

    Each task is owned by exactly one worker thread, and run_batch additionally
    holds a per-task lock, so a task's cursor is never advanced concurrently.
    """

    def __init__(
        self,
        db: Database,
        source: LedgerSource,
        *,
        tasks: list[str] | tuple[str, ...] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_cursor: str = DEFAULT_START_CURSOR,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC,
        on_batch_committed: Callable[[BatchResult], None] | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        names = list(tasks) if tasks is not None else list(TASKS)
        unknown = [n for n in names if n not in TASKS]
        if unknown:
            raise ValueError(f"Unknown ingestion task(s): {', '.join(unknown)}")
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._db = db
        self._source = source
        self._tasks = {n: TASKS[n] for n in names}
        self._batch_size = batch_size
        self._start_cursor = start_cursor
        self._poll_interval_sec = poll_interval_sec
        self._heartbeat_interval_sec = heartbeat_interval_sec
        self._on_batch_committed = on_batch_committed
        self._stop_event = stop_event or threading.Event()
        self._locks = {n: threading.Lock() for n in names}
        self._states = {n: TaskState() for n in names}
        self._threads: list[threading.Thread] = []

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    def state(self, task_name: str) -> TaskState:
        return self._states[task_name]

    # --- One batch ---

    def run_batch(self, task_name: str) -> BatchResult:
        """
        Fetch, normalize and commit one page for a task.

        Raises the client's error if the fetch fails; nothing is written then.
        The batch is abandoned without any write if stop is requested before commit.
        """
        task = self._tasks[task_name]
        log = bind_task(task_name)
        with self._locks[task_name]:
            stored = self._db.get_cursor(task_name)
            cursor_before = stored.last_cursor if stored else None
            result = BatchResult(task=task_name, cursor_before=cursor_before, cursor_after=cursor_before)

            raws = self._source.fetch_page(task.endpoint, cursor_before or self._start_cursor, self._batch_size)
            result.fetched = len(raws)
            if not raws:
                return result

            records: list[LedgerRecord] = []
            highest: str | None = None
            for raw in raws:
                token = self._valid_token(raw)
                try:
                    record = task.normalize(raw)
                    if record is not None and task.enrich is not None:
                        record = task.enrich(record, self._source)
                except MalformedRecordError as e:
                    result.malformed += 1
                    log.warning("ingest_record_malformed", record_id=e.record_id, reason=e.reason)
                    record = None
                else:
                    if record is None:
                        result.skipped += 1
                if record is not None:
                    records.append(record)
                if token is not None and (highest is None or paging_token_key(token) > paging_token_key(highest)):
                    highest = token

            new_cursor = highest
            if new_cursor is not None and cursor_before is not None:
                try:
                    if paging_token_key(new_cursor) <= paging_token_key(cursor_before):
                        new_cursor = None
                except ValueError:
                    pass

            if self._stop_event.is_set():
                log.info("ingest_batch_abandoned", fetched=result.fetched, cursor=cursor_before)
                return result

            result.inserted, result.duplicates = self._db.commit_batch(task_name, records, new_cursor)
            result.committed = True
            if new_cursor is not None:
                result.cursor_after = new_cursor

        state = self._states[task_name]
        state.batches += 1
        state.inserted += result.inserted
        state.malformed += result.malformed
        state.last_cursor = result.cursor_after
        state.last_batch_at = time.time()
        log.info(
            "ingest_batch_committed",
            fetched=result.fetched,
            inserted=result.inserted,
            duplicates=result.duplicates,
            skipped=result.skipped,
            malformed=result.malformed,
            cursor_before=result.cursor_before,
            cursor_after=result.cursor_after,
        )
        if self._on_batch_committed is not None:
            try:
                self._on_batch_committed(result)
            except Exception as e:
                log.exception("ingest_post_commit_hook_failed", error=str(e))
        return result

    @staticmethod
    def _valid_token(raw: dict[str, Any]) -> str | None:
        token = raw.get("paging_token")
        if token is None:
            return None
        try:
            paging_token_key(str(token))
        except ValueError:
            return None
        return str(token)

    # --- Worker threads ---

    def _run_task_loop(self, task_name: str) -> None:
        log = bind_task(task_name)
        state = self._states[task_name]
        stop = self._stop_event
        last_heartbeat = time.monotonic()
        log.info("ingest_worker_started", batch_size=self._batch_size)
        while not stop.is_set():
            drained = True
            try:
                result = self.run_batch(task_name)
                drained = result.fetched < self._batch_size
            except RetryAborted:
                break
            except InsightsError as e:
                state.errors += 1
                state.last_error = str(e)
                log.warning("ingest_batch_failed", error=str(e), error_type=type(e).__name__)
            except Exception as e:
                state.errors += 1
                state.last_error = str(e)
                log.exception("ingest_batch_crashed", error=str(e))

            now = time.monotonic()
            if now - last_heartbeat >= self._heartbeat_interval_sec:
                log.info(
                    "ingest_heartbeat",
                    batches=state.batches,
                    inserted=state.inserted,
                    malformed=state.malformed,
                    errors=state.errors,
                    cursor=state.last_cursor,
                    last_error=state.last_error,
                )
                last_heartbeat = now
            if drained:
                stop.wait(self._poll_interval_sec)
        log.info("ingest_worker_stopped", batches=state.batches, inserted=state.inserted)

    def start(self) -> list[threading.Thread]:
        """Start one daemon thread per task. Returns the threads."""
        for name in self._tasks:
            t = threading.Thread(target=self._run_task_loop, args=(name,), name=f"ingest-{name}", daemon=True)
            t.start()
            self._threads.append(t)
        return list(self._threads)

    def stop(self, timeout_sec: float | None = None) -> None:
        """Request shutdown and wait for workers to finish or abandon their batch."""
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=timeout_sec)
        self._threads.clear()
