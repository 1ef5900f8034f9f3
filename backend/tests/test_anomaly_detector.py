from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from app.models.rating_anomaly import AnomalyType
from reputation.core.anomaly import AnomalyDetector, RatingPoint, find_coordinated, find_spike_clusters
from reputation.core.errors import NotFoundError, ValidationError
from reputation.core.intake import RatingIntake

from conftest import T0


def _points(minutes, values=None):
    values = values or [3] * len(minutes)
    out = []
    for m, v in zip(minutes, values):
        ts = T0 + timedelta(minutes=m)
        out.append(RatingPoint(id=uuid.uuid4(), value=v, created_at=ts, submitted_at=ts))
    return out


def _rate(db_session, config, make_rater, source_id, values, *, step_minutes):
    intake = RatingIntake(db_session, config)
    ratings = []
    for i, value in enumerate(values):
        rater = make_rater()
        ratings.append(
            intake.submit_rating(source_id, rater.id, value, now=T0 + timedelta(minutes=i * step_minutes)).rating
        )
    return ratings


# --- pure rules -------------------------------------------------------------


def test_spike_needs_threshold_inside_window():
    window = timedelta(minutes=60)
    assert find_spike_clusters(_points([0, 15, 30, 45]), threshold=5, window=window) == []
    clusters = find_spike_clusters(_points([0, 15, 30, 45, 60]), threshold=5, window=window)
    assert len(clusters) == 1
    assert len(clusters[0]) == 5


def test_overlapping_spike_windows_merge_and_distant_ones_do_not():
    points = _points([0, 10, 20, 30, 40, 50, 70, 95, 300, 305, 310, 315, 320])
    clusters = find_spike_clusters(points, threshold=5, window=timedelta(minutes=60))

    assert [len(c) for c in clusters] == [7, 5]
    assert clusters[0][0].created_at == T0
    assert clusters[0][-1].created_at == T0 + timedelta(minutes=70)


def test_coordination_uses_latest_window_and_threshold():
    values = [5] * 8 + [1, 2]
    points = _points([i * 120 for i in range(10)], values)

    cluster = find_coordinated(points, window_size=10, threshold=0.8, min_ratings=5)

    assert cluster is not None
    assert cluster.value == 5
    assert cluster.share == pytest.approx(0.8)
    assert len(cluster.rating_ids) == 8


def test_coordination_ignores_older_ratings_and_small_windows():
    # 7 of the latest 10 are 4s; the older 5s fall outside the window.
    values = [5, 5, 5] + [4] * 7 + [1, 2, 3]
    points = _points(list(range(0, 13 * 120, 120)), values)
    assert find_coordinated(points, window_size=10, threshold=0.8, min_ratings=5) is None

    few = _points([0, 120, 240, 360], [5, 5, 5, 5])
    assert find_coordinated(few, window_size=10, threshold=0.8, min_ratings=5) is None


# --- persisted scans --------------------------------------------------------


def test_spike_of_five_ratings_in_ten_minutes_flags_all(db_session, config, make_source, make_rater):
    source = make_source()
    ratings = _rate(db_session, config, make_rater, source.id, [5, 4, 5, 3, 4], step_minutes=2)
    detector = AnomalyDetector(db_session, config)

    created = detector.scan_source(source.id, now=T0 + timedelta(minutes=10))

    assert len(created) == 1
    anomaly = next(iter(created))
    assert anomaly.anomaly_type is AnomalyType.SPIKE
    assert anomaly.affected_ids() == {r.id for r in ratings}
    assert all(r.is_flagged for r in ratings)
    assert all(r.flag_reason == "spike pattern" for r in ratings)

    # Same ratings, no new anomaly.
    assert detector.scan_source(source.id, now=T0 + timedelta(minutes=11)) == set()


def test_coordinated_ratings_are_flagged(db_session, config, make_source, make_rater):
    source = make_source()
    ratings = _rate(db_session, config, make_rater, source.id, [5] * 8 + [1, 2], step_minutes=120)

    created = AnomalyDetector(db_session, config).scan_source(source.id, now=T0 + timedelta(days=1))

    assert [a.anomaly_type for a in created] == [AnomalyType.COORDINATED]
    assert {r.id for r in ratings if r.is_flagged} == {r.id for r in ratings if r.value == 5}
    assert created.pop().details["value"] == 5


def test_dismissed_anomaly_is_not_raised_again(db_session, config, make_source, make_rater):
    source = make_source()
    ratings = _rate(db_session, config, make_rater, source.id, [5, 4, 5, 3, 4], step_minutes=2)
    detector = AnomalyDetector(db_session, config)
    anomaly = detector.scan_source(source.id, now=T0).pop()

    outcome = detector.resolve(anomaly.id, "dismiss", now=T0 + timedelta(hours=1))

    assert outcome.unflagged == {r.id for r in ratings}
    assert outcome.still_flagged == frozenset()
    assert anomaly.resolved is True
    assert anomaly.resolution_action == "dismiss"
    assert not any(r.is_flagged for r in ratings)
    assert detector.scan_source(source.id, now=T0 + timedelta(hours=2)) == set()
    assert not any(r.is_flagged for r in ratings)


def test_ratings_held_by_another_open_anomaly_stay_flagged(db_session, config, make_source, make_rater):
    source = make_source()
    ratings = _rate(db_session, config, make_rater, source.id, [5, 5, 5, 5, 5], step_minutes=2)
    detector = AnomalyDetector(db_session, config)
    created = {a.anomaly_type: a for a in detector.scan_source(source.id, now=T0)}
    assert set(created) == {AnomalyType.SPIKE, AnomalyType.COORDINATED}

    outcome = detector.resolve(created[AnomalyType.SPIKE].id, "dismiss", now=T0)

    assert outcome.unflagged == frozenset()
    assert outcome.still_flagged == {r.id for r in ratings}
    assert all(r.is_flagged for r in ratings)


def test_unflag_subset_and_revised_weight(db_session, config, make_source, make_rater):
    source = make_source()
    ratings = _rate(db_session, config, make_rater, source.id, [5, 4, 5, 3, 4], step_minutes=2)
    detector = AnomalyDetector(db_session, config)
    anomaly = detector.scan_source(source.id, now=T0).pop()

    chosen = [ratings[0].id, ratings[3].id]
    outcome = detector.resolve(anomaly.id, "unflag", rating_ids=chosen, revised_weight=0.5, now=T0)

    assert outcome.unflagged == set(chosen)
    assert outcome.reweighted == set(chosen)
    assert [r.is_flagged for r in ratings] == [False, True, True, False, True]
    assert ratings[0].weight == pytest.approx(0.5)
    assert ratings[1].weight == pytest.approx(1.0)


def test_confirm_keeps_ratings_excluded(db_session, config, make_source, make_rater):
    source = make_source()
    ratings = _rate(db_session, config, make_rater, source.id, [5, 4, 5, 3, 4], step_minutes=2)
    detector = AnomalyDetector(db_session, config)
    anomaly = detector.scan_source(source.id, now=T0).pop()

    outcome = detector.resolve(anomaly.id, "confirm", revised_weight=0.1, now=T0)

    assert outcome.unflagged == frozenset()
    assert outcome.reweighted == {r.id for r in ratings}
    assert all(r.is_flagged and r.weight == pytest.approx(0.1) for r in ratings)


def test_resolution_validation(db_session, config, make_source, make_rater):
    source = make_source()
    _rate(db_session, config, make_rater, source.id, [5, 4, 5, 3, 4], step_minutes=2)
    detector = AnomalyDetector(db_session, config)
    anomaly = detector.scan_source(source.id, now=T0).pop()

    with pytest.raises(NotFoundError):
        detector.resolve(uuid.uuid4(), "dismiss", now=T0)
    with pytest.raises(ValidationError):
        detector.resolve(anomaly.id, "ignore", now=T0)
    with pytest.raises(ValidationError):
        detector.resolve(anomaly.id, "unflag", rating_ids=[uuid.uuid4()], now=T0)
    with pytest.raises(ValidationError):
        detector.resolve(anomaly.id, "unflag", now=T0)
    with pytest.raises(ValidationError):
        detector.resolve(anomaly.id, "confirm", revised_weight=5.0, now=T0)
    assert anomaly.resolved is False

    detector.resolve(anomaly.id, "confirm", now=T0)
    with pytest.raises(ValidationError):
        detector.resolve(anomaly.id, "dismiss", now=T0)
