"""
Error taxonomy shared by ingestion, aggregation, reputation and anchoring.

- Transient: upstream ledger or contract gateway unavailable; retried with backoff.
- Data-quality: a single malformed ledger record; logged and skipped.
- Contract: rejections from the snapshot contract (validation, duplicate epoch, auth, lookups).
- Store: lookups for entities that do not exist, cursor regressions.
"""

from __future__ import annotations


class InsightsError(Exception):
    """Base class for all Stellar Insights errors."""


# --- Transient ---


class TransientError(InsightsError):
    """Recoverable failure; callers retry with bounded exponential backoff."""


class UpstreamUnavailableError(TransientError):
    """Horizon (or another HTTP source) is unreachable, timing out, throttling or failing with 5xx."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class UpstreamRequestError(InsightsError):
    """Upstream rejected the request (4xx other than 429) or returned an unparseable body; not retried."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(UpstreamUnavailableError):
    """Circuit breaker is open; the call was not attempted."""


class ContractUnavailableError(TransientError):
    """Contract gateway unreachable or timed out; the submission outcome is unknown."""


# --- Data quality ---


class MalformedRecordError(InsightsError, ValueError):
    """A single upstream record is missing required fields or carries invalid values."""

    def __init__(self, record_id: str | None, reason: str) -> None:
        super().__init__(f"malformed record {record_id or '?'}: {reason}")
        self.record_id = record_id
        self.reason = reason


# --- Store ---


class CursorRegressionError(InsightsError):
    """Attempt to move an ingestion cursor backwards."""

    def __init__(self, task_name: str, current: str, proposed: str) -> None:
        super().__init__(f"cursor for {task_name} would regress from {current} to {proposed}")
        self.task_name = task_name
        self.current = current
        self.proposed = proposed


class AnchorNotFoundError(InsightsError, KeyError):
    pass


class AssetNotFoundError(InsightsError, KeyError):
    pass


class ReportNotFoundError(InsightsError, KeyError):
    pass


class InvalidTransitionError(InsightsError):
    """Verification status change not allowed by the reputation state machine."""


# --- Snapshot contract ---


class ContractError(InsightsError):
    """Rejection returned by the snapshot contract."""

    code: str = "ContractError"


class SnapshotValidationError(ContractError):
    """Malformed submission; fatal to the attempt, never retried with the same input."""


class InvalidHashSizeError(SnapshotValidationError):
    code = "InvalidHashSize"


class InvalidEpochError(SnapshotValidationError):
    code = "InvalidEpoch"


class DuplicateEpochError(ContractError):
    """A snapshot already exists for this epoch; pick the next epoch and retry."""

    code = "DuplicateEpoch"


class UnauthorizedSubmitterError(ContractError):
    code = "Unauthorized"


class SnapshotNotFoundError(ContractError):
    code = "SnapshotNotFound"


class NoSnapshotsExistError(ContractError):
    code = "NoSnapshotsExist"


CONTRACT_ERRORS_BY_CODE: dict[str, type[ContractError]] = {
    cls.code: cls
    for cls in (
        InvalidHashSizeError,
        InvalidEpochError,
        DuplicateEpochError,
        UnauthorizedSubmitterError,
        SnapshotNotFoundError,
        NoSnapshotsExistError,
    )
}
