"""Tests for the staleness scorer."""

import logging
from datetime import timedelta

import pytest
from conftest import NOW, make_record

from gmail_janitor.constants import SIZE_LARGE_BYTES, SIZE_MEDIUM_BYTES, SIZE_SMALL_BYTES
from gmail_janitor.models import AccessSummary, EmailRecord
from gmail_janitor.scorer import (
    access_score,
    age_score,
    calculate_confidence,
    importance_score,
    size_score,
    spam_score,
)


def test_low_priority_promo_scores_keep(scorer):
    """30-day-old promotional mail that was never opened sits just under the archive line."""
    email = EmailRecord(
        id="a",
        category="low",
        date=NOW - timedelta(days=30),
        size=52_000,
        spam_score=0.3,
        promotional_score=0.8,
    )
    result = scorer.calculate_staleness(email)

    assert result.factors.age == 0.3
    assert result.factors.importance == 0.8
    assert result.factors.size == 0.1
    assert result.factors.spam == 0.56
    assert result.factors.access == 0.8
    assert result.total_score == 0.534
    assert result.recommendation == "keep"


def test_high_importance_recent_is_always_kept(scorer):
    email = EmailRecord(id="b", category="high", date=NOW - timedelta(days=5), spam_score=0.99)
    assert scorer.calculate_staleness(email).recommendation == "keep"


@pytest.mark.parametrize(
    "total, expected",
    [(0.80, "delete"), (0.95, "delete"), (0.60, "archive"), (0.79, "archive"), (0.59, "keep")],
)
def test_recommendation_boundaries(scorer, total, expected):
    assert scorer.determine_recommendation(total, make_record("x")) == expected


def test_recent_email_kept_regardless_of_score(scorer):
    assert scorer.determine_recommendation(0.99, make_record("x", age_days=3)) == "keep"


def test_high_importance_level_kept(scorer):
    email = make_record("x", category="medium", importance_level="high")
    assert scorer.determine_recommendation(0.99, email) == "keep"


def test_stale_junk_recommends_delete(scorer):
    email = make_record("junk", age_days=800, size=20_971_520, spam_score=0.99)
    result = scorer.calculate_staleness(email)
    assert result.total_score >= 0.8
    assert result.recommendation == "delete"


def test_scores_within_unit_range(scorer):
    emails = [
        make_record("1", age_days=None, size=None, spam_score=None),
        make_record("2", age_days=5000, size=10**10, spam_score=1.0, category=None),
        make_record("3", age_days=0, category="high"),
    ]
    for result in scorer.batch_calculate_staleness(emails):
        assert 0.0 <= result.total_score <= 1.0
        assert 0.0 <= result.confidence <= 1.0
        assert all(0.0 <= f <= 1.0 for f in result.factors.as_list())


def test_age_score_curve():
    assert age_score(None) == 0.5
    assert age_score(0) == 0.0
    assert age_score(30) == pytest.approx(0.3)
    assert age_score(90) == pytest.approx(0.6)
    assert age_score(365) == pytest.approx(0.9)
    assert age_score(730) == pytest.approx(1.0)
    assert age_score(5000) == pytest.approx(1.0)


def test_size_score_curve():
    assert size_score(None) == 0.0
    assert size_score(SIZE_SMALL_BYTES) == pytest.approx(0.1)
    assert size_score(SIZE_MEDIUM_BYTES) == pytest.approx(0.5)
    assert size_score(SIZE_LARGE_BYTES) == pytest.approx(0.8)
    assert size_score(SIZE_LARGE_BYTES * 2) == pytest.approx(1.0)


def test_importance_signals():
    assert importance_score(EmailRecord(id="x")) == 0.5
    assert importance_score(EmailRecord(id="x", category="low")) == 0.8
    assert importance_score(EmailRecord(id="x", category="low", importance_score=12)) == 0.2
    assert importance_score(EmailRecord(id="x", category="medium", importance_level="low")) == 0.7
    assert (
        importance_score(EmailRecord(id="x", category="low", importance_matched_rules=["boss"]))
        == 0.4
    )


def test_spam_signals():
    assert spam_score(EmailRecord(id="x")) == 0.0
    assert spam_score(EmailRecord(id="x", gmail_category="spam")) == 0.9
    assert spam_score(EmailRecord(id="x", gmail_category="promotions")) == 0.6
    assert spam_score(EmailRecord(id="x", spam_indicators=["a", "b"])) == pytest.approx(0.4)
    assert spam_score(EmailRecord(id="x", promotional_score=1.0)) == pytest.approx(0.7)


def test_access_score_decays_with_use():
    assert access_score(None, NOW) == 0.8
    assert access_score(AccessSummary(email_id="x"), NOW) == 0.8

    recent = AccessSummary(email_id="x", total_accesses=1, last_accessed=NOW - timedelta(days=1))
    assert access_score(recent, NOW) == pytest.approx(0.1)

    busy = AccessSummary(email_id="x", total_accesses=12, last_accessed=NOW - timedelta(days=3))
    assert access_score(busy, NOW) == pytest.approx(0.07)

    stale = AccessSummary(email_id="x", total_accesses=1, last_accessed=NOW - timedelta(days=400))
    assert access_score(stale, NOW) == pytest.approx(1.0)


def test_confidence():
    assert calculate_confidence([]) == 0.0
    assert calculate_confidence([0.9] * 5) == 1.0
    assert calculate_confidence([0.0, 1.0, 0.0, 1.0, 0.5]) < 0.5


def test_statistics(scorer):
    emails = [make_record("a"), make_record("b"), make_record("c", category="high")]
    stats = scorer.get_staleness_statistics(emails)

    assert stats["total_emails"] == 3
    assert stats["recommendations"] == {"keep": 1, "archive": 2, "delete": 0}
    assert set(stats["factor_averages"]) == {"age", "importance", "size", "spam", "access"}


def test_statistics_empty(scorer):
    stats = scorer.get_staleness_statistics([])
    assert stats["average_staleness"] == 0.0
    assert stats["recommendations"] == {"keep": 0, "archive": 0, "delete": 0}


def test_update_weights_rejects_unknown_factor(scorer):
    with pytest.raises(ValueError, match="Unknown staleness factors"):
        scorer.update_weights(colour=0.5)


def test_update_weights_warns_on_imbalance(scorer, caplog):
    with caplog.at_level(logging.WARNING, logger="gmail_janitor.scorer"):
        scorer.update_weights(age=0.5)
    assert scorer.get_configuration()["weights"]["age"] == 0.5
    assert "expected 1.0" in caplog.text

    # weights are used as given, not normalised
    email = make_record("a")
    expected = round(
        0.5 * age_score(400)
        + 0.30 * importance_score(email)
        + 0.15 * size_score(email.size)
        + 0.15 * spam_score(email)
        + 0.15 * access_score(None, NOW),
        3,
    )
    score = scorer.calculate_staleness(email)
    assert score.total_score == expected
    assert expected == pytest.approx(0.965, abs=0.001)
    assert score.recommendation == "delete"


def test_overweighted_total_is_clamped(scorer):
    scorer.update_weights(age=1.0, importance=1.0)
    score = scorer.calculate_staleness(make_record("a"))
    assert score.total_score == 1.0
    assert score.recommendation == "delete"


def test_access_summary_lowers_staleness(scorer, tracker):
    from gmail_janitor.models import AccessEvent

    email = make_record("read-often")
    before = scorer.calculate_staleness(email).total_score
    for hours in range(12):
        tracker.log_access(
            AccessEvent(email_id="read-often", access_type="direct_view",
                        timestamp=NOW - timedelta(hours=hours + 1))
        )
    after = scorer.calculate_staleness(email).total_score
    assert after < before
