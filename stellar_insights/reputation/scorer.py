"""
Reputation scorer: verification status state machine, reputation score, reports, audit trail.

States: unverified (first sighting), verified, suspicious.
- unverified -> verified: at least one verification source and a base score >= 60.
- any -> suspicious: unresolved reports reach the threshold, or a source flag that
  was verified is revoked by a fresh check.
- suspicious -> unverified | verified: only through an explicit reviewed resolution.

Every recomputation writes exactly one history row with previous and new values,
in the same transaction as the asset row, so the trail replays to current state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from stellar_insights.core.exceptions import AssetNotFoundError, InvalidTransitionError
from stellar_insights.database import Database, StoreSession
from stellar_insights.database.models import (
    REPORT_DISMISSED,
    REPORT_PENDING,
    REPORT_RESOLVED,
    REPORT_REVIEWED,
    REPORT_TYPES,
    STATUS_SUSPICIOUS,
    STATUS_UNVERIFIED,
    STATUS_VERIFIED,
    UNRESOLVED_REPORT_STATUSES,
    VOLUME_SCALE,
    AssetReport,
    AssetVerificationHistoryEntry,
    VerifiedAsset,
)
from stellar_insights.logging import get_logger
from stellar_insights.reputation.verifier import AssetVerifier, VerificationOutcome

logger = get_logger(__name__)

REPUTATION_FORMULA_VERSION = 1

STELLAR_EXPERT_WEIGHT = 30.0
STELLAR_TOML_WEIGHT = 30.0
ANCHOR_REGISTRY_WEIGHT = 20.0
TRUSTLINE_TIERS = ((10_000, 10.0), (1_000, 7.0), (100, 5.0), (10, 2.0))
TRANSACTION_TIERS = ((100_000, 10.0), (10_000, 7.0), (1_000, 5.0), (100, 2.0))
REPORT_PENALTY = 15.0
VERIFIED_MIN_SCORE = 60.0
DEFAULT_REPORT_THRESHOLD = 3

SYSTEM_ACTOR = "system"

# Allowed (previous, new) status pairs outside of an explicit resolution
_TRANSITIONS = {
    (STATUS_UNVERIFIED, STATUS_UNVERIFIED),
    (STATUS_UNVERIFIED, STATUS_VERIFIED),
    (STATUS_UNVERIFIED, STATUS_SUSPICIOUS),
    (STATUS_VERIFIED, STATUS_VERIFIED),
    (STATUS_VERIFIED, STATUS_SUSPICIOUS),
    (STATUS_SUSPICIOUS, STATUS_SUSPICIOUS),
}
_RESOLUTION_TRANSITIONS = _TRANSITIONS | {
    (STATUS_SUSPICIOUS, STATUS_UNVERIFIED),
    (STATUS_SUSPICIOUS, STATUS_VERIFIED),
}


def _tier(value: int, tiers: tuple[tuple[int, float], ...]) -> float:
    for floor, points in tiers:
        if value > floor:
            return points
    return 0.0


def base_score(asset: VerifiedAsset) -> float:
    """Source weights plus usage tiers, before the report penalty; at most 100."""
    score = 0.0
    if asset.stellar_expert_verified:
        score += STELLAR_EXPERT_WEIGHT
    if asset.stellar_toml_verified:
        score += STELLAR_TOML_WEIGHT
    if asset.anchor_registry_verified:
        score += ANCHOR_REGISTRY_WEIGHT
    score += _tier(asset.trustline_count, TRUSTLINE_TIERS)
    score += _tier(asset.transaction_count, TRANSACTION_TIERS)
    return min(100.0, score)


def reputation_score(asset: VerifiedAsset, unresolved_reports: int) -> float:
    """Base score minus REPORT_PENALTY per unresolved report, clamped to [0, 100]."""
    raw = base_score(asset) - REPORT_PENALTY * max(0, unresolved_reports)
    return round(min(100.0, max(0.0, raw)), 4)


def has_verification_source(asset: VerifiedAsset) -> bool:
    return asset.stellar_expert_verified or asset.stellar_toml_verified or asset.anchor_registry_verified


def next_status(
    current: str,
    asset: VerifiedAsset,
    unresolved_reports: int,
    *,
    threshold: int,
    source_revoked: bool = False,
    resolution: bool = False,
) -> str:
    """Target status for an asset; pure function of its inputs."""
    if unresolved_reports >= threshold or source_revoked:
        return STATUS_SUSPICIOUS
    if current == STATUS_SUSPICIOUS and not resolution:
        return STATUS_SUSPICIOUS
    if has_verification_source(asset) and base_score(asset) >= VERIFIED_MIN_SCORE:
        return STATUS_VERIFIED
    if current == STATUS_VERIFIED:
        return STATUS_VERIFIED
    return STATUS_UNVERIFIED


def check_transition(previous: str, new: str, *, resolution: bool = False) -> None:
    allowed = _RESOLUTION_TRANSITIONS if resolution else _TRANSITIONS
    if (previous, new) not in allowed:
        raise InvalidTransitionError(f"{previous} -> {new} is not allowed" + ("" if resolution else " without resolution"))


@dataclass
class ScoreChange:
    asset_code: str
    asset_issuer: str
    previous_status: str | None
    new_status: str
    previous_score: float | None
    new_score: float
    reason: str


class ReputationScorer:
    """Owns VerifiedAsset state; every mutation goes through one immediate transaction."""

    def __init__(
        self,
        db: Database,
        verifier: AssetVerifier | None = None,
        *,
        report_threshold: int = DEFAULT_REPORT_THRESHOLD,
    ) -> None:
        if report_threshold < 1:
            raise ValueError("report_threshold must be >= 1")
        self._db = db
        self._verifier = verifier
        self._threshold = report_threshold

    @property
    def report_threshold(self) -> int:
        return self._threshold

    # --- Internals ---

    def _first_sighting(self, s: StoreSession, code: str, issuer: str, actor: str, now: int) -> VerifiedAsset:
        asset = VerifiedAsset(asset_code=code, asset_issuer=issuer, created_at=now, updated_at=now)
        s.save_verified_asset(asset)
        s.append_verification_history(
            AssetVerificationHistoryEntry(
                id=None,
                asset_code=code,
                asset_issuer=issuer,
                previous_status=None,
                new_status=asset.verification_status,
                previous_score=None,
                new_score=asset.reputation_score,
                reason="first_sighting",
                actor=actor,
                created_at=now,
            )
        )
        logger.info("reputation_asset_first_sighting", asset_code=code, asset_issuer=issuer)
        return asset

    def _load_or_create(self, s: StoreSession, code: str, issuer: str, actor: str, now: int) -> VerifiedAsset:
        asset = s.get_verified_asset(code, issuer)
        if asset is None:
            asset = self._first_sighting(s, code, issuer, actor, now)
        return asset

    def _refresh_usage(self, s: StoreSession, asset: VerifiedAsset, trustline_count: int | None) -> None:
        tx_count, volume_e7 = s.asset_usage(asset.asset_code, asset.asset_issuer)
        asset.transaction_count = tx_count
        asset.total_volume_usd = volume_e7 / VOLUME_SCALE
        if trustline_count is not None:
            asset.trustline_count = trustline_count
        else:
            stats = s.get_trustline_stats(asset.asset_code, asset.asset_issuer)
            if stats is not None:
                asset.trustline_count = stats.total_trustlines
        asset.anchor_registry_verified = s.is_registered_anchor(asset.asset_issuer)

    def _apply(
        self,
        s: StoreSession,
        asset: VerifiedAsset,
        *,
        reason: str,
        actor: str,
        now: int,
        source_revoked: bool = False,
        resolution: bool = False,
    ) -> ScoreChange:
        """Recompute score and status, persist the asset and write exactly one history row."""
        previous_status = asset.verification_status
        previous_score = asset.reputation_score
        unresolved = s.count_unresolved_reports(asset.asset_code, asset.asset_issuer)
        new_status = next_status(
            previous_status,
            asset,
            unresolved,
            threshold=self._threshold,
            source_revoked=source_revoked,
            resolution=resolution,
        )
        check_transition(previous_status, new_status, resolution=resolution)
        asset.suspicious_reports_count = unresolved
        asset.reputation_score = reputation_score(asset, unresolved)
        asset.verification_status = new_status
        asset.updated_at = now
        s.save_verified_asset(asset)
        s.append_verification_history(
            AssetVerificationHistoryEntry(
                id=None,
                asset_code=asset.asset_code,
                asset_issuer=asset.asset_issuer,
                previous_status=previous_status,
                new_status=new_status,
                previous_score=previous_score,
                new_score=asset.reputation_score,
                reason=reason,
                actor=actor,
                created_at=now,
            )
        )
        change = ScoreChange(
            asset.asset_code, asset.asset_issuer, previous_status, new_status,
            previous_score, asset.reputation_score, reason,
        )
        if previous_status != new_status:
            logger.info(
                "reputation_status_changed",
                asset_code=asset.asset_code,
                asset_issuer=asset.asset_issuer,
                previous_status=previous_status,
                new_status=new_status,
                score=asset.reputation_score,
                reason=reason,
                actor=actor,
            )
        return change

    # --- Public operations ---

    def get_asset(self, asset_code: str, asset_issuer: str) -> VerifiedAsset:
        asset = self._db.get_verified_asset(asset_code, asset_issuer)
        if asset is None:
            raise AssetNotFoundError((asset_code, asset_issuer))
        return asset

    def discover_assets(self, limit: int = 100) -> list[tuple[str, str]]:
        """Create unverified rows for issued assets seen in ledger records but not tracked yet."""
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            found = s.unseen_assets(limit)
            for code, issuer in found:
                self._first_sighting(s, code, issuer, SYSTEM_ACTOR, now)
        return found

    def verify_asset(
        self,
        asset_code: str,
        asset_issuer: str,
        *,
        actor: str = SYSTEM_ACTOR,
        outcome: VerificationOutcome | None = None,
    ) -> ScoreChange:
        """
        Run the verification sources and rescore.

        outcome: precomputed source results; when None the configured verifier is queried
        outside the write transaction. Sources that answered None keep their stored flag.
        """
        if outcome is None:
            if self._verifier is None:
                raise ValueError("no verifier configured")
            outcome = self._verifier.verify(asset_code, asset_issuer)
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            asset = self._load_or_create(s, asset_code, asset_issuer, actor, now)
            revoked: list[str] = []
            if outcome.stellar_expert_verified is not None:
                if asset.stellar_expert_verified and not outcome.stellar_expert_verified:
                    revoked.append("stellar_expert")
                asset.stellar_expert_verified = outcome.stellar_expert_verified
            if outcome.stellar_toml_verified is not None:
                if asset.stellar_toml_verified and not outcome.stellar_toml_verified:
                    revoked.append("stellar_toml")
                asset.stellar_toml_verified = outcome.stellar_toml_verified
            if outcome.toml is not None:
                asset.toml_home_domain = outcome.toml.home_domain
                asset.toml_org_name = outcome.toml.org_name
                asset.toml_org_url = outcome.toml.org_url
            was_registered = asset.anchor_registry_verified
            self._refresh_usage(s, asset, outcome.trustline_count)
            if was_registered and not asset.anchor_registry_verified:
                revoked.append("anchor_registry")
            asset.last_verified_at = now
            reason = "verification" if not revoked else f"source_revoked:{','.join(revoked)}"
            return self._apply(s, asset, reason=reason, actor=actor, now=now, source_revoked=bool(revoked))

    def rescore(self, asset_code: str, asset_issuer: str, *, reason: str = "rescore", actor: str = SYSTEM_ACTOR) -> ScoreChange:
        """Recompute from stored source flags and current usage; no network calls."""
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            asset = s.get_verified_asset(asset_code, asset_issuer)
            if asset is None:
                raise AssetNotFoundError((asset_code, asset_issuer))
            self._refresh_usage(s, asset, None)
            return self._apply(s, asset, reason=reason, actor=actor, now=now)

    def report_asset(
        self,
        asset_code: str,
        asset_issuer: str,
        *,
        reporter: str,
        report_type: str,
        description: str,
    ) -> tuple[int, ScoreChange]:
        """File a community report; the asset is rescored in the same transaction."""
        if report_type not in REPORT_TYPES:
            raise ValueError(f"report_type must be one of {', '.join(REPORT_TYPES)}")
        if not description.strip():
            raise ValueError("description must be non-empty")
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            asset = self._load_or_create(s, asset_code, asset_issuer, reporter, now)
            report_id = s.insert_report(
                AssetReport(
                    id=None,
                    asset_code=asset_code,
                    asset_issuer=asset_issuer,
                    reporter=reporter,
                    report_type=report_type,
                    description=description.strip(),
                    status=REPORT_PENDING,
                    created_at=now,
                )
            )
            change = self._apply(s, asset, reason=f"report_filed:{report_id}", actor=reporter, now=now)
        logger.info(
            "reputation_report_filed",
            report_id=report_id,
            asset_code=asset_code,
            asset_issuer=asset_issuer,
            report_type=report_type,
            status=change.new_status,
            score=change.new_score,
        )
        return report_id, change

    def review_report(self, report_id: int, *, reviewer: str) -> AssetReport:
        """Mark a report as under review; it still counts as unresolved."""
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            report = s.get_report(report_id)
            if report.status != REPORT_PENDING:
                raise InvalidTransitionError(f"report {report_id} is {report.status}, not pending")
            s.update_report_status(report_id, REPORT_REVIEWED, reviewer, report.resolution_notes, now)
            return s.get_report(report_id)

    def resolve_report(
        self,
        report_id: int,
        *,
        outcome: str,
        reviewer: str,
        notes: str | None = None,
    ) -> ScoreChange:
        """
        Close a report as resolved or dismissed and rescore as an explicit resolution.

        A suspicious asset leaves that state only here (or via clear_suspicion), and only
        once unresolved reports are back under the threshold.
        """
        if outcome not in (REPORT_RESOLVED, REPORT_DISMISSED):
            raise ValueError(f"outcome must be {REPORT_RESOLVED!r} or {REPORT_DISMISSED!r}")
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            report = s.get_report(report_id)
            if report.status not in UNRESOLVED_REPORT_STATUSES:
                raise InvalidTransitionError(f"report {report_id} is already {report.status}")
            s.update_report_status(report_id, outcome, reviewer, notes, now)
            asset = s.get_verified_asset(report.asset_code, report.asset_issuer)
            if asset is None:
                raise AssetNotFoundError((report.asset_code, report.asset_issuer))
            self._refresh_usage(s, asset, None)
            change = self._apply(
                s,
                asset,
                reason=f"report_{outcome}:{report_id}",
                actor=reviewer,
                now=now,
                resolution=True,
            )
        logger.info("reputation_report_closed", report_id=report_id, outcome=outcome, reviewer=reviewer)
        return change

    def clear_suspicion(self, asset_code: str, asset_issuer: str, *, reviewer: str, notes: str | None = None) -> ScoreChange:
        """Reviewed resolution for an asset made suspicious by a revoked source rather than reports."""
        now = int(time.time())
        with self._db.session(immediate=True) as s:
            asset = s.get_verified_asset(asset_code, asset_issuer)
            if asset is None:
                raise AssetNotFoundError((asset_code, asset_issuer))
            if asset.verification_status != STATUS_SUSPICIOUS:
                raise InvalidTransitionError(f"{asset_code}:{asset_issuer} is {asset.verification_status}, not suspicious")
            self._refresh_usage(s, asset, None)
            reason = "suspicion_cleared" if not notes else f"suspicion_cleared:{notes}"
            return self._apply(s, asset, reason=reason, actor=reviewer, now=now, resolution=True)
