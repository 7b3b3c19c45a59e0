"""
Agent worker package: 24/7 background orchestration.

Starts the ingestion workers and the aggregation, revalidation and anchoring
timers, and coordinates shutdown.
"""

from stellar_insights.agent_worker.runtime import InsightsRuntime, build_runtime, main

__all__ = ["InsightsRuntime", "build_runtime", "main"]
