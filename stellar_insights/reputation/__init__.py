"""
Asset reputation: verification sources, score, status state machine, reports, revalidation.
"""

from stellar_insights.reputation.revalidation import RevalidationJob, RevalidationResult
from stellar_insights.reputation.scorer import (
    REPUTATION_FORMULA_VERSION,
    ReputationScorer,
    ScoreChange,
    base_score,
    next_status,
    reputation_score,
)
from stellar_insights.reputation.verifier import AssetVerifier, TomlInfo, VerificationOutcome, parse_stellar_toml

__all__ = [
    "REPUTATION_FORMULA_VERSION",
    "AssetVerifier",
    "ReputationScorer",
    "RevalidationJob",
    "RevalidationResult",
    "ScoreChange",
    "TomlInfo",
    "VerificationOutcome",
    "base_score",
    "next_status",
    "parse_stellar_toml",
    "reputation_score",
]
