"""
Tests for asset reputation: score formula, status state machine, reports,
audit trail, verification sources and periodic revalidation.
"""

from __future__ import annotations

import httpx
import pytest

from conftest import ISSUER_A, ISSUER_B, make_payment_record
from stellar_insights.core.exceptions import AssetNotFoundError, InvalidTransitionError, UpstreamUnavailableError
from stellar_insights.core.retry import RetryPolicy
from stellar_insights.database.models import VerifiedAsset
from stellar_insights.ingestion.normalizer import normalize_payment
from stellar_insights.reputation import (
    AssetVerifier,
    ReputationScorer,
    RevalidationJob,
    VerificationOutcome,
    base_score,
    next_status,
    parse_stellar_toml,
    reputation_score,
)
from stellar_insights.reputation.scorer import check_transition

BOTH_SOURCES = VerificationOutcome(stellar_expert_verified=True, stellar_toml_verified=True)
EXPERT_ONLY = VerificationOutcome(stellar_expert_verified=True, stellar_toml_verified=False)

TOML = """
[DOCUMENTATION]
ORG_NAME = "Anchor A Ltd"
ORG_URL = "https://anchora.example"

[[CURRENCIES]]
code = "USDC"
issuer = "{issuer}"

[[CURRENCIES]]
code = "EURC"
issuer = "GSOMEONEELSE"
"""


def _verified_usdc(db, scorer):
    scorer.verify_asset("USDC", ISSUER_A, outcome=BOTH_SOURCES)
    return scorer.get_asset("USDC", ISSUER_A)


def _report(scorer, n=1):
    return [
        scorer.report_asset("USDC", ISSUER_A, reporter=f"user{i}", report_type="scam", description="fake issuer")
        for i in range(n)
    ]


# --- Score formula and transitions ---


def test_base_score_weights_and_tiers():
    """Sources weigh 30/30/20; trustline and transaction tiers add up to 10 each."""
    asset = VerifiedAsset("USDC", ISSUER_A, stellar_expert_verified=True)
    assert base_score(asset) == 30.0
    asset.stellar_toml_verified = True
    asset.anchor_registry_verified = True
    assert base_score(asset) == 80.0
    asset.trustline_count = 10_001
    asset.transaction_count = 101
    assert base_score(asset) == 92.0
    asset.transaction_count = 100_001
    assert base_score(asset) == 100.0


def test_score_strictly_decreases_with_reports_until_zero():
    """Each unresolved report costs 15 points; the score never goes below 0."""
    asset = VerifiedAsset("USDC", ISSUER_A, stellar_expert_verified=True, stellar_toml_verified=True, trustline_count=20_000)
    scores = [reputation_score(asset, n) for n in range(8)]
    assert scores[:5] == [70.0, 55.0, 40.0, 25.0, 10.0]
    assert scores[5:] == [0.0, 0.0, 0.0]
    assert all(a >= b for a, b in zip(scores, scores[1:]))


def test_next_status_rules():
    """Verified needs a source and base >= 60; reports at threshold force suspicious."""
    strong = VerifiedAsset("USDC", ISSUER_A, stellar_expert_verified=True, stellar_toml_verified=True)
    weak = VerifiedAsset("USDC", ISSUER_A, stellar_expert_verified=True)
    assert next_status("unverified", strong, 0, threshold=3) == "verified"
    assert next_status("unverified", weak, 0, threshold=3) == "unverified"
    assert next_status("verified", strong, 3, threshold=3) == "suspicious"
    assert next_status("verified", strong, 0, threshold=3, source_revoked=True) == "suspicious"
    assert next_status("suspicious", strong, 0, threshold=3) == "suspicious"
    assert next_status("suspicious", strong, 0, threshold=3, resolution=True) == "verified"
    assert next_status("suspicious", weak, 0, threshold=3, resolution=True) == "unverified"


def test_suspicious_exits_only_through_resolution():
    """suspicious -> verified/unverified requires an explicit resolution."""
    with pytest.raises(InvalidTransitionError):
        check_transition("suspicious", "verified")
    with pytest.raises(InvalidTransitionError):
        check_transition("suspicious", "unverified")
    check_transition("suspicious", "verified", resolution=True)
    check_transition("suspicious", "unverified", resolution=True)
    with pytest.raises(InvalidTransitionError):
        check_transition("verified", "unverified", resolution=True)


# --- Scorer ---


def test_discover_assets_records_first_sighting(db):
    """Issued assets seen in payments get an unverified row and one history entry."""
    db.commit_batch("payments", [normalize_payment(make_payment_record("1"))], "1")
    scorer = ReputationScorer(db)

    assert scorer.discover_assets() == [("USDC", ISSUER_A)]
    assert scorer.discover_assets() == []

    asset = scorer.get_asset("USDC", ISSUER_A)
    assert asset.verification_status == "unverified"
    assert asset.reputation_score == 0.0
    history = db.list_verification_history("USDC", ISSUER_A)
    assert len(history) == 1
    assert history[0].previous_status is None
    assert history[0].reason == "first_sighting"


def test_get_asset_unknown_raises(db):
    """Unknown assets are reported as not found."""
    with pytest.raises(AssetNotFoundError):
        ReputationScorer(db).get_asset("NOPE", ISSUER_B)


def test_verify_asset_with_two_sources_is_verified(db):
    """stellar.expert plus stellar.toml reach the verified threshold."""
    scorer = ReputationScorer(db)

    change = scorer.verify_asset("USDC", ISSUER_A, outcome=BOTH_SOURCES)

    assert change.previous_status == "unverified"
    assert change.new_status == "verified"
    asset = scorer.get_asset("USDC", ISSUER_A)
    assert asset.reputation_score == 60.0
    assert asset.last_verified_at is not None


def test_single_source_stays_unverified_until_registry(db):
    """One source is not enough; a registered anchor issuer adds the registry weight."""
    scorer = ReputationScorer(db)
    assert scorer.verify_asset("USDC", ISSUER_A, outcome=EXPERT_ONLY).new_status == "unverified"

    db.register_anchor(ISSUER_A, "Anchor A")
    outcome = VerificationOutcome(stellar_expert_verified=True, stellar_toml_verified=False, trustline_count=20_000)
    change = scorer.verify_asset("USDC", ISSUER_A, outcome=outcome)

    assert change.new_status == "verified"
    assert change.new_score == 60.0
    assert scorer.get_asset("USDC", ISSUER_A).anchor_registry_verified is True


def test_reports_reach_threshold_and_mark_suspicious(db):
    """Three unresolved reports make a verified asset suspicious; the score drops with each."""
    scorer = ReputationScorer(db)
    _verified_usdc(db, scorer)

    changes = [change for _, change in _report(scorer, 3)]

    assert [c.new_score for c in changes] == [45.0, 30.0, 15.0]
    assert [c.new_status for c in changes] == ["verified", "verified", "suspicious"]
    asset = scorer.get_asset("USDC", ISSUER_A)
    assert asset.suspicious_reports_count == 3


def test_suspicious_is_sticky_without_resolution(db):
    """Rescoring or re-verifying a suspicious asset keeps it suspicious."""
    scorer = ReputationScorer(db)
    _verified_usdc(db, scorer)
    _report(scorer, 3)

    assert scorer.rescore("USDC", ISSUER_A).new_status == "suspicious"
    assert scorer.verify_asset("USDC", ISSUER_A, outcome=BOTH_SOURCES).new_status == "suspicious"


def test_resolving_reports_below_threshold_restores_status(db):
    """Dismissing a report under the threshold is the explicit exit from suspicious."""
    scorer = ReputationScorer(db)
    _verified_usdc(db, scorer)
    ids = [report_id for report_id, _ in _report(scorer, 4)]

    still = scorer.resolve_report(ids[0], outcome="dismissed", reviewer="mod")
    assert still.new_status == "suspicious"

    change = scorer.resolve_report(ids[1], outcome="resolved", reviewer="mod", notes="issuer confirmed")

    assert change.previous_status == "suspicious"
    assert change.new_status == "verified"
    assert change.new_score == 30.0
    assert change.reason == f"report_resolved:{ids[1]}"
    statuses = {r.id: r.status for r in db.list_reports("USDC", ISSUER_A)}
    assert statuses[ids[0]] == "dismissed"
    assert statuses[ids[1]] == "resolved"


def test_report_lifecycle_transitions(db):
    """pending -> reviewed -> resolved; closed reports cannot be closed again."""
    scorer = ReputationScorer(db)
    (report_id, _), = _report(scorer, 1)

    reviewed = scorer.review_report(report_id, reviewer="mod")
    assert reviewed.status == "reviewed"
    assert scorer.get_asset("USDC", ISSUER_A).suspicious_reports_count == 1
    with pytest.raises(InvalidTransitionError):
        scorer.review_report(report_id, reviewer="mod")

    scorer.resolve_report(report_id, outcome="resolved", reviewer="mod")
    with pytest.raises(InvalidTransitionError):
        scorer.resolve_report(report_id, outcome="dismissed", reviewer="mod")
    assert scorer.get_asset("USDC", ISSUER_A).suspicious_reports_count == 0


def test_report_validation(db):
    """Report type must be known and the description non-empty."""
    scorer = ReputationScorer(db)
    with pytest.raises(ValueError):
        scorer.report_asset("USDC", ISSUER_A, reporter="u", report_type="spam", description="x")
    with pytest.raises(ValueError):
        scorer.report_asset("USDC", ISSUER_A, reporter="u", report_type="scam", description="   ")
    with pytest.raises(ValueError):
        scorer.resolve_report(1, outcome="ignored", reviewer="mod")


def test_revoked_source_marks_suspicious_until_cleared(db):
    """A verified flag that a fresh check revokes makes the asset suspicious; a reviewer can clear it."""
    scorer = ReputationScorer(db)
    _verified_usdc(db, scorer)

    change = scorer.verify_asset("USDC", ISSUER_A, outcome=VerificationOutcome(False, True))

    assert change.new_status == "suspicious"
    assert change.reason == "source_revoked:stellar_expert"

    cleared = scorer.clear_suspicion("USDC", ISSUER_A, reviewer="mod", notes="expert delisting expected")

    assert cleared.new_status == "unverified"
    assert cleared.new_score == 30.0
    with pytest.raises(InvalidTransitionError):
        scorer.clear_suspicion("USDC", ISSUER_A, reviewer="mod")


def test_unreachable_source_keeps_stored_flags(db):
    """None from a source means unknown and never revokes a verified flag."""
    scorer = ReputationScorer(db)
    _verified_usdc(db, scorer)

    change = scorer.verify_asset("USDC", ISSUER_A, outcome=VerificationOutcome(None, None))

    assert change.new_status == "verified"
    asset = scorer.get_asset("USDC", ISSUER_A)
    assert asset.stellar_expert_verified is True
    assert asset.stellar_toml_verified is True


def test_history_replays_to_current_state(db):
    """One history row per recomputation; consecutive rows chain and the last matches the asset."""
    scorer = ReputationScorer(db)
    _verified_usdc(db, scorer)
    ids = [report_id for report_id, _ in _report(scorer, 3)]
    scorer.rescore("USDC", ISSUER_A)
    scorer.resolve_report(ids[0], outcome="dismissed", reviewer="mod")

    history = db.list_verification_history("USDC", ISSUER_A)

    # first sighting, verification, 3 reports, rescore, resolution
    assert len(history) == 7
    assert history[0].previous_status is None
    for prev, cur in zip(history, history[1:]):
        assert cur.previous_status == prev.new_status
        assert cur.previous_score == prev.new_score
    asset = scorer.get_asset("USDC", ISSUER_A)
    assert history[-1].new_status == asset.verification_status
    assert history[-1].new_score == asset.reputation_score


def test_verify_without_verifier_or_outcome_fails(db):
    """A scorer without a verifier needs an explicit outcome."""
    with pytest.raises(ValueError):
        ReputationScorer(db).verify_asset("USDC", ISSUER_A)


# --- Verification sources ---


class FakeLedger:
    def __init__(self, accounts=None, assets=None):
        self.accounts = accounts or {}
        self.assets = assets or {}

    def fetch_account(self, account_id):
        return self.accounts.get(account_id)

    def fetch_asset(self, asset_code, asset_issuer):
        return self.assets.get((asset_code, asset_issuer))


def test_parse_stellar_toml_matches_code_and_issuer():
    """An asset is listed when CURRENCIES has its code and a matching (or absent) issuer."""
    info = parse_stellar_toml(TOML.format(issuer=ISSUER_A), "anchora.example", "USDC", ISSUER_A)
    assert info.listed is True
    assert info.org_name == "Anchor A Ltd"
    assert info.org_url == "https://anchora.example"
    assert parse_stellar_toml(TOML.format(issuer=ISSUER_A), "anchora.example", "EURC", ISSUER_A).listed is False
    assert parse_stellar_toml('CURRENCIES = "oops" [', "anchora.example", "USDC", ISSUER_A).listed is False


def test_asset_verifier_checks_all_sources():
    """stellar.expert listing, stellar.toml listing and Horizon trustline count feed one outcome."""
    requests = []

    def handler(request):
        requests.append(str(request.url))
        if request.url.host == "expert.test":
            return httpx.Response(200, json={"asset": f"USDC-{ISSUER_A}", "domain": "anchora.example"})
        if request.url.host == "anchora.example" and request.url.path == "/.well-known/stellar.toml":
            return httpx.Response(200, text=TOML.format(issuer=ISSUER_A))
        return httpx.Response(404)

    ledger = FakeLedger(
        accounts={ISSUER_A: {"id": ISSUER_A, "home_domain": "anchora.example"}},
        assets={("USDC", ISSUER_A): {"num_accounts": 1500}},
    )
    verifier = AssetVerifier(
        ledger,
        stellar_expert_url="https://expert.test/explorer/public",
        transport=httpx.MockTransport(handler),
    )

    outcome = verifier.verify("USDC", ISSUER_A)
    verifier.close()

    assert outcome.stellar_expert_verified is True
    assert outcome.stellar_toml_verified is True
    assert outcome.toml.home_domain == "anchora.example"
    assert outcome.trustline_count == 1500
    assert requests[0] == f"https://expert.test/explorer/public/asset/USDC-{ISSUER_A}"


def test_asset_verifier_distinguishes_missing_from_unreachable():
    """404 answers False; a source failing with 5xx answers None."""

    def handler(request):
        if request.url.host == "expert.test":
            return httpx.Response(503)
        return httpx.Response(404)

    verifier = AssetVerifier(
        FakeLedger(accounts={ISSUER_A: {"id": ISSUER_A, "home_domain": "anchora.example"}}),
        stellar_expert_url="https://expert.test",
        retry_policy=RetryPolicy(attempts=1, backoff_sec=0.0),
        transport=httpx.MockTransport(handler),
    )

    assert verifier.check_stellar_expert("USDC", ISSUER_A) is None
    assert verifier.check_stellar_toml("USDC", ISSUER_A) == (False, None)
    assert verifier.fetch_trustline_count("USDC", ISSUER_A) is None
    verifier.close()


def test_asset_verifier_without_home_domain():
    """An issuer without home_domain cannot be toml-verified."""
    verifier = AssetVerifier(
        FakeLedger(accounts={ISSUER_A: {"id": ISSUER_A}}),
        stellar_expert_url="https://expert.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )
    assert verifier.check_stellar_toml("USDC", ISSUER_A) == (False, None)
    assert verifier.check_stellar_expert("USDC", ISSUER_A) is False
    verifier.close()


# --- Revalidation ---


class FakeVerifier:
    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def verify(self, asset_code, asset_issuer):
        self.calls.append((asset_code, asset_issuer))
        result = self.outcomes[(asset_code, asset_issuer)]
        if isinstance(result, Exception):
            raise result
        return result


def test_revalidation_discovers_verifies_and_isolates_failures(db):
    """New assets are discovered and verified; one failing source does not stop the run."""
    db.commit_batch(
        "payments",
        [
            normalize_payment(make_payment_record("1")),
            normalize_payment(make_payment_record("2", code="EURC", issuer=ISSUER_B)),
        ],
        "2",
    )
    verifier = FakeVerifier(
        {
            ("USDC", ISSUER_A): BOTH_SOURCES,
            ("EURC", ISSUER_B): UpstreamUnavailableError("stellar.expert down"),
        }
    )
    job = RevalidationJob(db, ReputationScorer(db, verifier), batch_size=10, max_age_days=7)

    result = job.run_once()

    assert result.discovered == 2
    assert result.checked == 1
    assert result.status_changes == 1
    assert result.failed == [("EURC", ISSUER_B)]
    assert db.get_verified_asset("USDC", ISSUER_A).verification_status == "verified"

    verifier.calls.clear()
    second = job.run_once()

    assert second.discovered == 0
    assert verifier.calls == [("EURC", ISSUER_B)]
