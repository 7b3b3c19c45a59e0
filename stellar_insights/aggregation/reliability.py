"""
Anchor reliability score, formula version 2.

Deterministic given the anchor's daily activity: only +, -, *, / and sqrt are
used (all correctly rounded under IEEE 754), and recency is measured against the
anchor's own latest active day, never the wall clock. Snapshots carry
SCORE_FORMULA_VERSION so a later formula change never invalidates historical hashes.

    weight(day)        = HALF_LIFE / (HALF_LIFE + age_days)
    weighted_success   = sum(weight * successful) / sum(weight * total)
    weighted_latency   = sum(weight * settlement_total_ms) / sum(weight * settlement_samples)
    latency_penalty    = min(20, max(0, (weighted_latency - 5000) / 1000))
    volatility_penalty = min(10, 20 * pstdev(success rate of the last 7 active days))
    score              = clamp(100 * weighted_success - latency_penalty - volatility_penalty, 0, 100)

Version 1 applied the latency penalty to the lifetime average settlement time.

Status: green >= 90, yellow >= 70, red otherwise (thresholds configurable).
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from datetime import date
from fractions import Fraction

SCORE_FORMULA_VERSION = 2

RECENCY_HALF_LIFE_DAYS = 7
LATENCY_TARGET_MS = 5000.0
LATENCY_PENALTY_PER_SEC = 1.0
MAX_LATENCY_PENALTY = 20.0
VOLATILITY_WINDOW_DAYS = 7
VOLATILITY_WEIGHT = 20.0
MAX_VOLATILITY_PENALTY = 10.0
SCORE_DECIMALS = 4

STATUS_GREEN = "green"
STATUS_YELLOW = "yellow"
STATUS_RED = "red"

DEFAULT_GREEN_MIN = 90.0
DEFAULT_YELLOW_MIN = 70.0


@dataclass(frozen=True)
class StatusThresholds:
    green_min: float = DEFAULT_GREEN_MIN
    yellow_min: float = DEFAULT_YELLOW_MIN

    def __post_init__(self) -> None:
        if not (0 <= self.yellow_min <= self.green_min <= 100):
            raise ValueError("thresholds must satisfy 0 <= yellow_min <= green_min <= 100")

    def status_for(self, score: float) -> str:
        if score >= self.green_min:
            return STATUS_GREEN
        if score >= self.yellow_min:
            return STATUS_YELLOW
        return STATUS_RED


@dataclass(frozen=True)
class DailyActivity:
    day: str
    """YYYY-MM-DD"""
    total: int
    successful: int
    settlement_samples: int = 0
    settlement_total_ms: int = 0


@dataclass(frozen=True)
class ReliabilityBreakdown:
    weighted_success_rate: float
    latency_penalty: float
    volatility_penalty: float
    score: float
    version: int = SCORE_FORMULA_VERSION


def _recency_weight(age_days: int) -> Fraction:
    return Fraction(RECENCY_HALF_LIFE_DAYS, RECENCY_HALF_LIFE_DAYS + max(0, age_days))


def _latest_active_day(daily: list[DailyActivity]) -> date | None:
    active = [date.fromisoformat(d.day) for d in daily if d.total > 0]
    return max(active) if active else None


def weighted_success_rate(daily: list[DailyActivity]) -> float:
    """Recency-weighted success fraction in [0, 1]; 0 with no activity."""
    latest = _latest_active_day(daily)
    if latest is None:
        return 0.0
    active = [d for d in daily if d.total > 0]
    num = Fraction(0)
    den = Fraction(0)
    for d in active:
        w = _recency_weight((latest - date.fromisoformat(d.day)).days)
        num += w * d.successful
        den += w * d.total
    return float(num / den)


def weighted_settlement_ms(daily: list[DailyActivity]) -> float | None:
    """Recency-weighted average settlement time; None when no day has samples."""
    latest = _latest_active_day(daily)
    sampled = [d for d in daily if d.settlement_samples > 0]
    if latest is None or not sampled:
        return None
    num = Fraction(0)
    den = Fraction(0)
    for d in sampled:
        w = _recency_weight((latest - date.fromisoformat(d.day)).days)
        num += w * d.settlement_total_ms
        den += w * d.settlement_samples
    return float(num / den)


def latency_penalty(avg_settlement_ms: float | None) -> float:
    if avg_settlement_ms is None:
        return 0.0
    over_sec = (avg_settlement_ms - LATENCY_TARGET_MS) / 1000.0
    return min(MAX_LATENCY_PENALTY, max(0.0, over_sec * LATENCY_PENALTY_PER_SEC))


def volatility_penalty(daily: list[DailyActivity]) -> float:
    """Spread of daily success rates over the most recent active days."""
    active = sorted((d for d in daily if d.total > 0), key=lambda d: d.day)[-VOLATILITY_WINDOW_DAYS:]
    if len(active) < 2:
        return 0.0
    rates = [Fraction(d.successful, d.total) for d in active]
    spread = float(statistics.pstdev(rates))
    return min(MAX_VOLATILITY_PENALTY, VOLATILITY_WEIGHT * spread)


def compute_reliability(daily: list[DailyActivity]) -> ReliabilityBreakdown:
    success = weighted_success_rate(daily)
    lat = latency_penalty(weighted_settlement_ms(daily))
    vol = volatility_penalty(daily)
    raw = 100.0 * success - lat - vol
    score = round(min(100.0, max(0.0, raw)), SCORE_DECIMALS)
    return ReliabilityBreakdown(
        weighted_success_rate=success,
        latency_penalty=lat,
        volatility_penalty=vol,
        score=score,
    )
