"""Multi-factor staleness scoring for indexed mail."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable

from .access_tracker import AccessPatternTracker
from .constants import (
    AGE_MODERATE_DAYS,
    AGE_OLD_DAYS,
    AGE_RECENT_DAYS,
    HIGH_CONFIDENCE,
    IMPORTANCE_HIGH_SCORE,
    IMPORTANCE_LOW_SCORE,
    RECENT_EMAIL_DAYS,
    SCORE_ARCHIVE,
    SCORE_DELETE,
    SCORING_CHUNK_SIZE,
    SIZE_LARGE_BYTES,
    SIZE_MEDIUM_BYTES,
    SIZE_SMALL_BYTES,
    WEIGHT_ACCESS,
    WEIGHT_AGE,
    WEIGHT_IMPORTANCE,
    WEIGHT_SIZE,
    WEIGHT_SPAM,
    WEIGHT_TOLERANCE,
)
from .models import AccessSummary, EmailRecord, StalenessFactors, StalenessScore, utcnow

logger = logging.getLogger(__name__)

_FACTORS = ("age", "importance", "size", "spam", "access")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 86400


def age_score(days: float | None) -> float:
    """Piecewise-linear staleness by age in whole days; 0.5 when unknown."""
    if days is None:
        return 0.5
    if days <= AGE_RECENT_DAYS:
        return days / AGE_RECENT_DAYS * 0.3
    if days <= AGE_MODERATE_DAYS:
        return 0.3 + (days - AGE_RECENT_DAYS) / (AGE_MODERATE_DAYS - AGE_RECENT_DAYS) * 0.3
    if days <= AGE_OLD_DAYS:
        return 0.6 + (days - AGE_MODERATE_DAYS) / (AGE_OLD_DAYS - AGE_MODERATE_DAYS) * 0.3
    return 0.9 + min(1.0, (days - AGE_OLD_DAYS) / 365) * 0.1


def importance_score(email: EmailRecord) -> float:
    """Higher means less important."""
    score = {"high": 0.1, "medium": 0.5, "low": 0.8}.get(email.category or "", 0.5)

    if email.importance_score is not None:
        if email.importance_score >= IMPORTANCE_HIGH_SCORE:
            score = min(score, 0.2)
        elif email.importance_score <= IMPORTANCE_LOW_SCORE:
            score = max(score, 0.8)

    if email.importance_level == "high":
        score = min(score, 0.2)
    elif email.importance_level == "low":
        score = max(score, 0.7)

    # Matched importance rules are evidence the message matters.
    if email.importance_matched_rules:
        score = min(score, 0.4)

    return _clamp(score)


def size_score(size: int | None) -> float:
    if size is None:
        return 0.0
    if size <= SIZE_SMALL_BYTES:
        return 0.1
    if size <= SIZE_MEDIUM_BYTES:
        return 0.1 + (size - SIZE_SMALL_BYTES) / (SIZE_MEDIUM_BYTES - SIZE_SMALL_BYTES) * 0.4
    if size <= SIZE_LARGE_BYTES:
        return 0.5 + (size - SIZE_MEDIUM_BYTES) / (SIZE_LARGE_BYTES - SIZE_MEDIUM_BYTES) * 0.3
    return 0.8 + min(1.0, (size - SIZE_LARGE_BYTES) / SIZE_LARGE_BYTES) * 0.2


def spam_score(email: EmailRecord) -> float:
    score = 0.0
    if email.spam_score is not None:
        score = max(score, email.spam_score)
    if email.promotional_score is not None:
        score = max(score, email.promotional_score * 0.7)

    if email.gmail_category == "spam":
        score = max(score, 0.9)
    elif email.gmail_category == "promotions":
        score = max(score, 0.6)

    if email.spam_indicators:
        score = max(score, min(0.8, len(email.spam_indicators) * 0.2))
    if email.promotional_indicators:
        score = max(score, min(0.6, len(email.promotional_indicators) * 0.15))

    return _clamp(score)


def access_score(summary: AccessSummary | None, now: datetime) -> float:
    """Higher means less used; 0.8 for messages never opened."""
    if summary is None or summary.last_accessed is None:
        return 0.8

    days = _days_between(summary.last_accessed, now)
    if days <= 7:
        score = 0.1
    elif days <= 30:
        score = 0.2 + (days - 7) / 23 * 0.3
    elif days <= 90:
        score = 0.5 + (days - 30) / 60 * 0.3
    else:
        score = 0.8 + min(0.2, (days - 90) / 275)

    if summary.total_accesses > 10:
        score *= 0.7
    elif summary.total_accesses > 5:
        score *= 0.8
    elif summary.total_accesses > 2:
        score *= 0.9

    if summary.search_interactions > 5:
        score *= 0.6
    elif summary.search_interactions > 2:
        score *= 0.8

    return _clamp(score)


def calculate_confidence(scores: list[float]) -> float:
    """Agreement between factors: low spread and a clear majority raise confidence."""
    if not scores:
        return 0.0
    mean = sum(scores) / len(scores)
    stddev = math.sqrt(sum((s - mean) ** 2 for s in scores) / len(scores))
    confidence = max(0.0, 1 - stddev * 2)

    high = sum(1 for s in scores if s > 0.7)
    low = sum(1 for s in scores if s < 0.3)
    if high >= 3 or low >= 3:
        confidence += 0.2
    return _clamp(confidence)


class StalenessScorer:
    """Scores how safe a message is to clean up.

    The five factor scores lie in [0, 1] where higher means staler; the total
    is their weighted sum. Weights that do not add up to 1.0 are accepted with
    a warning.
    """

    def __init__(
        self,
        access_tracker: AccessPatternTracker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.access_tracker = access_tracker
        self._clock = clock
        self.weights = {
            "age": WEIGHT_AGE,
            "importance": WEIGHT_IMPORTANCE,
            "size": WEIGHT_SIZE,
            "spam": WEIGHT_SPAM,
            "access": WEIGHT_ACCESS,
        }

    def _age_days(self, email: EmailRecord, now: datetime) -> int | None:
        if email.date is None:
            return None
        return math.floor(_days_between(email.date, now))

    def calculate_staleness(
        self, email: EmailRecord, access_summary: AccessSummary | None = None
    ) -> StalenessScore:
        """Score one message, looking up its access summary when not given."""
        now = self._clock()
        if access_summary is None:
            access_summary = self.access_tracker.get_access_summary(email.id)

        factors = StalenessFactors(
            age=age_score(self._age_days(email, now)),
            importance=importance_score(email),
            size=size_score(email.size),
            spam=spam_score(email),
            access=access_score(access_summary, now),
        )
        total = round(
            _clamp(sum(getattr(factors, name) * self.weights[name] for name in _FACTORS)), 3
        )
        result = StalenessScore(
            email_id=email.id,
            total_score=total,
            factors=StalenessFactors(*(round(v, 3) for v in factors.as_list())),
            recommendation=self.determine_recommendation(total, email),
            confidence=round(calculate_confidence(factors.as_list()), 3),
        )
        logger.debug(
            "Staleness for %s: %.3f -> %s (confidence %.3f)",
            email.id,
            result.total_score,
            result.recommendation,
            result.confidence,
        )
        return result

    def determine_recommendation(self, total_score: float, email: EmailRecord) -> str:
        """Map a total score to keep/archive/delete, always keeping important or recent mail."""
        if email.category == "high" or email.importance_level == "high":
            return "keep"
        if email.date is not None and _days_between(email.date, self._clock()) < RECENT_EMAIL_DAYS:
            return "keep"
        if total_score >= SCORE_DELETE:
            return "delete"
        if total_score >= SCORE_ARCHIVE:
            return "archive"
        return "keep"

    def batch_calculate_staleness(self, emails: list[EmailRecord]) -> list[StalenessScore]:
        results: list[StalenessScore] = []
        for start in range(0, len(emails), SCORING_CHUNK_SIZE):
            chunk = emails[start : start + SCORING_CHUNK_SIZE]
            results.extend(self.calculate_staleness(email) for email in chunk)
            logger.debug(
                "Scored %d/%d emails", start + len(chunk), len(emails)
            )
        return results

    def get_staleness_statistics(self, emails: list[EmailRecord]) -> dict:
        scores = self.batch_calculate_staleness(emails)
        count = len(scores)

        def _avg(values: list[float]) -> float:
            return round(sum(values) / count, 3) if count else 0.0

        return {
            "total_emails": len(emails),
            "average_staleness": _avg([s.total_score for s in scores]),
            "recommendations": {
                rec: sum(1 for s in scores if s.recommendation == rec)
                for rec in ("keep", "archive", "delete")
            },
            "high_confidence_scores": sum(1 for s in scores if s.confidence > HIGH_CONFIDENCE),
            "factor_averages": {
                name: _avg([getattr(s.factors, name) for s in scores]) for name in _FACTORS
            },
        }

    def update_weights(self, **overrides: float) -> None:
        unknown = set(overrides) - set(_FACTORS)
        if unknown:
            raise ValueError(f"Unknown staleness factors: {sorted(unknown)}")
        self.weights.update(overrides)

        total = sum(self.weights.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            logger.warning("Staleness weights sum to %.3f, expected 1.0: %s", total, self.weights)
        logger.info("Updated staleness weights: %s", self.weights)

    def get_configuration(self) -> dict:
        return {
            "weights": dict(self.weights),
            "thresholds": {
                "age": {
                    "recent_days": AGE_RECENT_DAYS,
                    "moderate_days": AGE_MODERATE_DAYS,
                    "old_days": AGE_OLD_DAYS,
                },
                "size": {
                    "small_bytes": SIZE_SMALL_BYTES,
                    "medium_bytes": SIZE_MEDIUM_BYTES,
                    "large_bytes": SIZE_LARGE_BYTES,
                },
                "importance": {
                    "high_score": IMPORTANCE_HIGH_SCORE,
                    "low_score": IMPORTANCE_LOW_SCORE,
                },
                "recommendation": {"delete": SCORE_DELETE, "archive": SCORE_ARCHIVE},
            },
        }
