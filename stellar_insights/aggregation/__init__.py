"""
Anchor and corridor aggregation: reliability scoring, daily corridor buckets, trustline stats.
"""

from stellar_insights.aggregation.engine import AggregationEngine, AggregationResult, ConsistencyViolation
from stellar_insights.aggregation.reliability import (
    SCORE_FORMULA_VERSION,
    DailyActivity,
    StatusThresholds,
    compute_reliability,
)

__all__ = [
    "AggregationEngine",
    "AggregationResult",
    "ConsistencyViolation",
    "SCORE_FORMULA_VERSION",
    "DailyActivity",
    "StatusThresholds",
    "compute_reliability",
]
