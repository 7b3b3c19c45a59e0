"""
Circuit breaker for upstream calls.

closed -> open after failure_threshold consecutive failures; open -> half_open
once timeout_sec has elapsed; half_open admits up to half_open_max_calls trial calls
and closes after success_threshold successes, reopening on any failure.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

from stellar_insights.core.exceptions import CircuitOpenError, TransientError
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_sec: float = 30.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """Thread-safe breaker; only TransientError counts as a failure."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.config.timeout_sec
        ):
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        self._state = new_state
        self._successes = 0
        self._half_open_calls = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._failures = 0
            self._opened_at = None
        logger.info("circuit_state_changed", circuit=self.name, old=old.value, new=new_state.value)

    def _before_call(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(f"circuit {self.name} is open")
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitOpenError(f"circuit {self.name} is half-open and saturated")
                self._half_open_calls += 1

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self._failures = 0

    def _on_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                return
            self._failures += 1
            if self._state == CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    def call(self, fn: Callable[[], T]) -> T:
        self._before_call()
        try:
            result = fn()
        except TransientError:
            self._on_failure()
            raise
        self._on_success()
        return result
