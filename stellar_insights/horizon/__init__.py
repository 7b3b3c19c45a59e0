"""
Horizon ledger source: paged HTTP client with retry/backoff and a circuit breaker.
"""

from stellar_insights.horizon.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from stellar_insights.horizon.client import HorizonClient

__all__ = ["CircuitBreaker", "CircuitBreakerConfig", "CircuitState", "HorizonClient"]
