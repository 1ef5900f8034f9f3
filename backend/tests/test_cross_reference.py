from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from app.models.rater import Rater
from reputation.core.cross_reference import CrossReferenceTracker
from reputation.core.errors import NotFoundError, ValidationError
from reputation.core.feedback import apply_verification_feedback, rating_endorsement
from reputation.core.intake import RatingIntake
from reputation.core.trust_ledger import TrustLedger

from conftest import T0


@pytest.mark.parametrize(
    "confidence, expected",
    [(1.7, 1.0), (-0.2, 0.0), (0.35, 0.35), (1, 1.0)],
)
def test_confidence_is_clamped(db_session, config, make_source, confidence, expected):
    source = make_source()
    recorded = CrossReferenceTracker(db_session, config).record(
        source.id, "article-1", True, "matches wire copy", confidence, now=T0
    )
    assert recorded.result.confidence == pytest.approx(expected)


@pytest.mark.parametrize("confidence", ["high", None, float("nan"), True])
def test_non_numeric_confidence_is_rejected(db_session, config, make_source, confidence):
    source = make_source()
    with pytest.raises(ValidationError):
        CrossReferenceTracker(db_session, config).record(source.id, "a", True, None, confidence, now=T0)


def test_unknown_source_is_rejected(db_session, config):
    with pytest.raises(NotFoundError):
        CrossReferenceTracker(db_session, config).record(uuid.uuid4(), "a", False, None, 0.5, now=T0)


def test_record_emits_verification_event(db_session, config, make_source):
    source = make_source()
    recorded = CrossReferenceTracker(db_session, config).record(
        source.id, "article-9", False, "retracted", 0.9, claim_id="claim-3", now=T0
    )

    assert recorded.result.claim_id == "claim-3"
    assert recorded.event.source_id == source.id
    assert recorded.event.cross_reference_id == recorded.result.id
    assert recorded.event.was_accurate is False
    assert recorded.event.verified_at == T0


@pytest.mark.parametrize("value, expected", [(5, True), (4, True), (3, None), (2, False), (1, False)])
def test_rating_endorsement(value, expected):
    assert rating_endorsement(value) is expected


def test_feedback_moves_trust_of_aligned_and_misaligned_raters(db_session, config, make_source, make_rater):
    source = make_source()
    believer, doubter, neutral, late = (make_rater() for _ in range(4))
    intake = RatingIntake(db_session, config)
    intake.submit_rating(source.id, believer.id, 5, now=T0)
    intake.submit_rating(source.id, doubter.id, 1, now=T0 + timedelta(minutes=90))
    intake.submit_rating(source.id, neutral.id, 3, now=T0 + timedelta(minutes=180))

    verified_at = T0 + timedelta(hours=6)
    recorded = CrossReferenceTracker(db_session, config).record(
        source.id, "article-1", True, None, 0.8, now=verified_at
    )
    # Submitted after the verification: not scored.
    intake.submit_rating(source.id, late.id, 5, now=verified_at + timedelta(minutes=1))

    summary = apply_verification_feedback(db_session, recorded.event, config=config)

    ledger = TrustLedger(db_session, config)
    assert summary.aligned == [believer.id]
    assert summary.misaligned == [doubter.id]
    assert summary.neutral == 1
    assert ledger.get_trust(believer.id) == pytest.approx(1.05)
    assert ledger.get_trust(doubter.id) == pytest.approx(0.95)
    assert ledger.get_trust(neutral.id) == pytest.approx(1.0)
    assert ledger.get_trust(late.id) == pytest.approx(1.0)

    db_session.refresh(believer)
    assert believer.accurate_ratings == 1


def test_feedback_skips_flagged_ratings(db_session, config, make_source, make_rater):
    source = make_source()
    rater = make_rater()
    rating = RatingIntake(db_session, config).submit_rating(source.id, rater.id, 5, now=T0).rating
    rating.is_flagged = True
    rating.flag_reason = "spike pattern"
    db_session.flush()

    recorded = CrossReferenceTracker(db_session, config).record(
        source.id, "a", True, None, 0.5, now=T0 + timedelta(hours=1)
    )
    summary = apply_verification_feedback(db_session, recorded.event, config=config)

    assert summary.aligned == []
    assert db_session.get(Rater, rater.id).trust_score == pytest.approx(1.0)
