"""Record how indexed mail is viewed and searched, and summarise it per message."""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable

from .constants import ACCESS_SCORE_DIVISOR, ACCESS_TYPES, SCORING_CHUNK_SIZE
from .database import CleanupDatabase
from .models import AccessEvent, AccessSummary, SearchActivity, utcnow

logger = logging.getLogger(__name__)

# Weights for the detailed access score.
_SCORE_WEIGHTS = {
    "total_accesses": 0.4,
    "recency": 0.3,
    "search_interactions": 0.2,
    "search_appearances": 0.1,
}


class AccessPatternTracker:
    """Append-only access log with derived per-message summaries."""

    def __init__(
        self,
        database: CleanupDatabase,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self._clock = clock

    def log_access(self, event: AccessEvent) -> None:
        if event.access_type not in ACCESS_TYPES:
            raise ValueError(f"Unknown access type: {event.access_type}")
        if self.database.get_record(event.email_id) is None:
            logger.debug("Access to unindexed message %s", event.email_id)
        self.database.insert_access_event(event)
        logger.debug("Access logged: %s (%s)", event.email_id, event.access_type)

    def log_search_activity(self, activity: SearchActivity) -> None:
        self.database.insert_search_activity(activity)
        logger.debug(
            "Search %s logged: %d results, %d interactions",
            activity.search_id,
            len(activity.email_results),
            len(activity.result_interactions),
        )

    def get_access_summary(self, email_id: str) -> AccessSummary | None:
        """Recompute and store the summary for ``email_id``.

        Returns None when the message was never accessed and never showed up
        in a search.
        """
        stats = self.database.get_access_stats(email_id)
        if stats["total_accesses"] == 0 and stats["search_appearances"] == 0:
            return None

        seen = [t for t in (stats["last_access"], stats["last_interaction"]) if t is not None]
        summary = AccessSummary(
            email_id=email_id,
            total_accesses=stats["total_accesses"],
            last_accessed=max(seen) if seen else None,
            search_appearances=stats["search_appearances"],
            search_interactions=stats["search_interactions"],
            access_score=min(1.0, stats["total_accesses"] / ACCESS_SCORE_DIVISOR),
        )
        self.database.upsert_access_summary(summary)
        return summary

    def batch_update_access_summaries(self, email_ids: list[str]) -> int:
        """Refresh summaries in chunks; returns how many messages have one."""
        updated = 0
        for start in range(0, len(email_ids), SCORING_CHUNK_SIZE):
            chunk = email_ids[start : start + SCORING_CHUNK_SIZE]
            updated += sum(1 for email_id in chunk if self.get_access_summary(email_id))
            logger.debug(
                "Updated access summaries %d-%d of %d",
                start + 1,
                start + len(chunk),
                len(email_ids),
            )
        return updated

    def calculate_access_score(self, email_id: str) -> float:
        """Weighted engagement score in [0, 1], log-scaled on raw access count."""
        summary = self.get_access_summary(email_id)
        if summary is None:
            return 0.0

        accesses = min(1.0, math.log10(summary.total_accesses + 1) / math.log10(50))
        if summary.last_accessed is not None:
            days = (self._clock() - summary.last_accessed).total_seconds() / 86400
            recency = max(0.0, 1 - days / 365)
        else:
            recency = 0.0
        interactions = min(1.0, summary.search_interactions / 10)
        appearances = min(1.0, summary.search_appearances / 20)

        score = (
            accesses * _SCORE_WEIGHTS["total_accesses"]
            + recency * _SCORE_WEIGHTS["recency"]
            + interactions * _SCORE_WEIGHTS["search_interactions"]
            + appearances * _SCORE_WEIGHTS["search_appearances"]
        )
        return round(score, 3)

    def get_frequently_accessed_emails(self, limit: int = 100) -> list[str]:
        return self.database.get_frequently_accessed_ids(min_score=0.5, limit=limit)

    def get_unused_emails(self, days: int, limit: int = 1000) -> list[str]:
        """Ids of live messages not accessed within the last ``days`` days."""
        cutoff = self._clock() - timedelta(days=days)
        return self.database.get_unaccessed_email_ids(cutoff, limit)

    def generate_access_analytics(self, days: int = 30) -> dict:
        events = self.database.get_access_events_since(self._clock() - timedelta(days=days))
        per_email = Counter(e.email_id for e in events)
        per_hour = Counter(e.timestamp.hour for e in events)
        unique = len(per_email)

        return {
            "total_access_events": len(events),
            "unique_emails_accessed": unique,
            "average_accesses_per_email": round(len(events) / unique, 2) if unique else 0.0,
            "most_accessed_emails": [
                {"email_id": email_id, "access_count": count}
                for email_id, count in per_email.most_common(10)
            ],
            "access_patterns_by_hour": [
                {"hour": hour, "access_count": per_hour[hour]} for hour in sorted(per_hour)
            ],
        }

    def cleanup_old_access_logs(self, days: int = 90) -> int:
        deleted = self.database.delete_access_events_before(self._clock() - timedelta(days=days))
        logger.info("Removed %d access log entries older than %d days", deleted, days)
        return deleted
