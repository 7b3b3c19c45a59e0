"""
Bounded exponential backoff for transient failures.

backoff = base * 2**attempt, capped at max_backoff_sec, raised to the server's
Retry-After when one was given. Waits go through stop_event.wait() so shutdown
interrupts a sleeping retry instead of blocking on it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, TypeVar

from stellar_insights.core.exceptions import TransientError
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF_SEC = 1.0
DEFAULT_MAX_BACKOFF_SEC = 60.0


class RetryAborted(Exception):
    """Stop was requested while waiting between attempts; carries the last transient error."""

    def __init__(self, last_error: BaseException) -> None:
        super().__init__(f"retry aborted by shutdown: {last_error}")
        self.last_error = last_error


@dataclass
class RetryPolicy:
    attempts: int = DEFAULT_RETRY_ATTEMPTS
    """Total attempts including the first call."""
    backoff_sec: float = DEFAULT_RETRY_BACKOFF_SEC
    max_backoff_sec: float = DEFAULT_MAX_BACKOFF_SEC

    def __post_init__(self) -> None:
        self.attempts = max(1, int(self.attempts))
        self.backoff_sec = max(0.0, float(self.backoff_sec))
        self.max_backoff_sec = max(self.backoff_sec, float(self.max_backoff_sec))

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number attempt+1 (attempt is 0-based)."""
        backoff = min(self.max_backoff_sec, self.backoff_sec * (2 ** attempt))
        if retry_after is not None and retry_after > backoff:
            backoff = min(self.max_backoff_sec, retry_after)
        return backoff


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation: str,
    stop_event: threading.Event | None = None,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
) -> T:
    """
    Call fn until it succeeds or attempts run out.

    Only exceptions in retry_on are retried; anything else propagates at once.
    After the last attempt the final transient error is re-raised. If stop_event
    is set during a wait, RetryAborted is raised.
    """
    stop = stop_event or threading.Event()
    for attempt in range(policy.attempts):
        try:
            return fn()
        except retry_on as e:
            if attempt + 1 >= policy.attempts:
                logger.error(
                    "retry_exhausted",
                    operation=operation,
                    attempts=policy.attempts,
                    error=str(e),
                )
                raise
            backoff = policy.delay_for(attempt, getattr(e, "retry_after", None))
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt + 1,
                backoff_sec=round(backoff, 2),
                error=str(e),
            )
            if stop.wait(backoff):
                raise RetryAborted(e) from e
    raise AssertionError("unreachable")
