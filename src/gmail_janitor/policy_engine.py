"""Policy management and evaluation of mail against retention policies."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Callable

from .constants import (
    ACTION_METHODS,
    ACTION_TYPES,
    EXPORT_FORMATS,
    IMPORTANCE_LEVELS,
    SCHEDULE_FREQUENCIES,
    SIZE_LARGE_BYTES,
)
from .database import CleanupDatabase
from .errors import PolicyNotFoundError, PolicyValidationError
from .models import (
    AccessSummary,
    CleanupCandidate,
    CleanupPolicy,
    EmailRecord,
    PolicyCriteria,
    PolicyEvaluation,
    ProtectedEmail,
    utcnow,
)
from .safety import SafetyChain, SafetyConfig, SafetyContext
from .scorer import StalenessScorer

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

KEEP_REASON = "staleness recommendation is keep"


def _importance_rank(level: str | None) -> int:
    return IMPORTANCE_LEVELS.index(level) if level in IMPORTANCE_LEVELS else 1


def email_matches_criteria(
    email: EmailRecord,
    criteria: PolicyCriteria,
    summary: AccessSummary | None,
    now: datetime,
) -> bool:
    """In-memory twin of the store's criteria filter.

    A missing date never satisfies a minimum age; missing size or analysis
    scores do not exclude a message.
    """
    if email.archived:
        return False
    if criteria.age_days_min is not None:
        if email.date is None or email.date > now - timedelta(days=criteria.age_days_min):
            return False
    if criteria.importance_level_max is not None:
        if _importance_rank(email.category) > IMPORTANCE_LEVELS.index(criteria.importance_level_max):
            return False
    if criteria.size_threshold_min is not None and email.size is not None:
        if email.size < criteria.size_threshold_min:
            return False
    if criteria.spam_score_min is not None and email.spam_score is not None:
        if email.spam_score < criteria.spam_score_min:
            return False
    if criteria.promotional_score_min is not None and email.promotional_score is not None:
        if email.promotional_score < criteria.promotional_score_min:
            return False
    if criteria.access_score_max is not None:
        score = summary.access_score if summary else 0.0
        if score > criteria.access_score_max:
            return False
    if criteria.no_access_days is not None and summary and summary.last_accessed:
        if summary.last_accessed > now - timedelta(days=criteria.no_access_days):
            return False
    return True


def validate_policy(policy: CleanupPolicy) -> list[str]:
    """Return every problem with ``policy``; empty when valid."""
    errors: list[str] = []

    if not policy.name or not policy.name.strip():
        errors.append("Policy name is required")
    if not 0 <= policy.priority <= 100:
        errors.append("Policy priority must be between 0 and 100")

    c = policy.criteria
    for label, value in (
        ("Age minimum days", c.age_days_min),
        ("Size threshold", c.size_threshold_min),
        ("No access days", c.no_access_days),
    ):
        if value is not None and value < 0:
            errors.append(f"{label} must not be negative")
    for label, value in (
        ("Spam score", c.spam_score_min),
        ("Promotional score", c.promotional_score_min),
        ("Access score", c.access_score_max),
    ):
        if value is not None and not 0 <= value <= 1:
            errors.append(f"{label} must be between 0 and 1")
    if c.importance_level_max is not None and c.importance_level_max not in IMPORTANCE_LEVELS:
        errors.append(f"Importance level must be one of {', '.join(IMPORTANCE_LEVELS)}")

    a = policy.action
    if a.type not in ACTION_TYPES:
        errors.append('Action type must be either "archive" or "delete"')
    if a.method not in ACTION_METHODS:
        errors.append('Action method must be either "gmail" or "export"')
    if a.export_format is not None and a.export_format not in EXPORT_FORMATS:
        errors.append('Export format must be either "mbox" or "json"')

    if policy.safety.max_emails_per_run < 1:
        errors.append("Max emails per run must be at least 1")

    s = policy.schedule
    if s is not None:
        if s.frequency not in SCHEDULE_FREQUENCIES:
            errors.append(f"Schedule frequency must be one of {', '.join(SCHEDULE_FREQUENCIES)}")
        if not _TIME_RE.match(s.time or ""):
            errors.append("Schedule time must be in HH:MM format")

    return errors


class CleanupPolicyEngine:
    """Stores policies and decides which messages each policy may clean up."""

    def __init__(
        self,
        database: CleanupDatabase,
        scorer: StalenessScorer,
        safety_config: SafetyConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.scorer = scorer
        self.safety_config = safety_config or SafetyConfig()
        self.safety_chain = SafetyChain.from_config(self.safety_config)
        self._clock = clock

    # --- CRUD ---

    def create_policy(self, policy: CleanupPolicy) -> str:
        errors = validate_policy(policy)
        if errors:
            raise PolicyValidationError(errors)

        now = self._clock()
        policy = replace(
            policy,
            id=policy.id or f"policy_{uuid.uuid4().hex[:12]}",
            created_at=now,
            updated_at=now,
        )
        self.database.save_policy(policy)
        logger.info("Created policy %s (%s), priority %d", policy.id, policy.name, policy.priority)
        return policy.id

    def update_policy(self, policy_id: str, updates: dict) -> CleanupPolicy:
        """Apply ``updates`` (nested dicts merge into criteria/action/safety/schedule)."""
        current = self.get_policy(policy_id)
        if current is None:
            raise PolicyNotFoundError(policy_id)

        data = asdict(current)
        for key, value in updates.items():
            if key in ("criteria", "action", "safety", "schedule") and isinstance(value, dict):
                data[key] = {**(data.get(key) or {}), **value}
            else:
                data[key] = value
        updated = CleanupPolicy.from_dict(data)

        errors = validate_policy(updated)
        if errors:
            raise PolicyValidationError(errors)

        updated = replace(
            updated,
            id=policy_id,
            created_at=current.created_at,
            updated_at=self._clock(),
            last_run_at=current.last_run_at,
            run_count=current.run_count,
            total_emails_cleaned=current.total_emails_cleaned,
        )
        self.database.save_policy(updated)
        logger.info("Updated policy %s", policy_id)
        return updated

    def delete_policy(self, policy_id: str) -> None:
        if not self.database.delete_policy(policy_id):
            raise PolicyNotFoundError(policy_id)
        logger.info("Deleted policy %s", policy_id)

    def get_policy(self, policy_id: str) -> CleanupPolicy | None:
        return self.database.get_policy(policy_id)

    def get_all_policies(self) -> list[CleanupPolicy]:
        return self.database.list_policies()

    def get_active_policies(self) -> list[CleanupPolicy]:
        """Enabled policies, highest priority first."""
        return self.database.list_policies(enabled_only=True)

    # --- evaluation ---

    def evaluate_emails_for_cleanup(
        self,
        emails: list[EmailRecord],
        policies: list[CleanupPolicy] | None = None,
    ) -> PolicyEvaluation:
        """Assign each message to at most one policy and split candidates from protected mail.

        Policies run in priority order and the first match claims a message.
        A claimed message is scored once and passed through the safety chain;
        a delete policy falls back to archiving when the score only supports
        archiving.
        """
        now = self._clock()
        if policies is None:
            policies = self.get_active_policies()
        else:
            policies = sorted(policies, key=lambda p: p.priority, reverse=True)

        evaluation = PolicyEvaluation()
        summaries: dict[str, AccessSummary] = {}
        claimed: set[str] = set()
        applied: list[str] = []

        for policy in policies:
            matched = 0
            context = SafetyContext(now=now, preserve_important=policy.safety.preserve_important)
            for email in emails:
                if email.id in claimed or email.archived:
                    continue
                if email.id not in summaries:
                    summaries[email.id] = self.access_summary_for(email.id)
                summary = summaries[email.id]
                if not email_matches_criteria(email, policy.criteria, summary, now):
                    continue

                claimed.add(email.id)
                matched += 1
                score = self.scorer.calculate_staleness(email, summary)

                verdict = self.safety_chain.check(email, context)
                if verdict is not None:
                    evaluation.protected_emails.append(
                        ProtectedEmail(email=email, reason=verdict.reason, rule=verdict.rule)
                    )
                    continue
                if score.recommendation == "keep":
                    evaluation.protected_emails.append(
                        ProtectedEmail(email=email, reason=KEEP_REASON, rule="staleness")
                    )
                    continue

                action = policy.action.type
                if action == "delete" and score.recommendation == "archive":
                    action = "archive"
                evaluation.cleanup_candidates.append(
                    CleanupCandidate(
                        email=email,
                        policy=policy,
                        staleness_score=score,
                        recommended_action=action,
                    )
                )
            if matched:
                applied.append(policy.id)

        evaluation.evaluation_summary = {
            "total_emails": len(emails),
            "candidates_count": len(evaluation.cleanup_candidates),
            "protected_count": len(evaluation.protected_emails),
            "unmatched_count": sum(
                1 for e in emails if e.id not in claimed
            ),
            "policies_applied": applied,
        }
        logger.info(
            "Evaluated %d emails: %d candidates, %d protected",
            len(emails),
            len(evaluation.cleanup_candidates),
            len(evaluation.protected_emails),
        )
        return evaluation

    def access_summary_for(self, email_id: str) -> AccessSummary:
        """Tracker summary, or an empty one for messages never accessed."""
        summary = self.scorer.access_tracker.get_access_summary(email_id)
        return summary or AccessSummary(email_id=email_id)

    def get_emails_for_cleanup(
        self, policy: CleanupPolicy, limit: int | None = None
    ) -> list[EmailRecord]:
        """Messages matching the policy criteria, filtered in the store."""
        return self.database.search_eligible_records(policy.criteria, limit=limit, now=self._clock())

    # --- safety ---

    def get_safety_metrics(self) -> dict:
        return {**self.safety_chain.get_metrics(), "config": asdict(self.safety_config)}

    def update_safety_config(self, **changes) -> SafetyConfig:
        protections = self.safety_chain.protections
        self.safety_config = replace(self.safety_config, **changes)
        self.safety_chain = SafetyChain.from_config(self.safety_config)
        self.safety_chain.protections = protections
        logger.info("Updated safety configuration: %s", sorted(changes))
        return self.safety_config

    # --- recommendations ---

    def generate_policy_recommendations(self) -> dict:
        """Suggest policies from the shape of the current mailbox."""
        now = self._clock()
        emails = self.database.search_records(archived=False, limit=10000)

        def _older_than(email: EmailRecord, days: int) -> bool:
            return email.date is not None and (now - email.date).days > days

        analysis = {
            "total_emails": len(emails),
            "spam_emails": sum(1 for e in emails if (e.spam_score or 0) > 0.7),
            "promotional_emails": sum(1 for e in emails if (e.promotional_score or 0) > 0.6),
            "old_emails": sum(1 for e in emails if _older_than(e, 365)),
            "large_emails": sum(1 for e in emails if (e.size or 0) > SIZE_LARGE_BYTES),
        }

        recommended: list[dict] = []
        if analysis["spam_emails"] > 10:
            count = analysis["spam_emails"]
            recommended.append(
                {
                    "name": "Spam Email Cleanup",
                    "description": "Remove emails identified as spam or junk",
                    "criteria": PolicyCriteria(
                        age_days_min=30, importance_level_max="low", spam_score_min=0.7
                    ),
                    "estimated_cleanup_count": count,
                    "estimated_storage_freed": count * 50_000,
                }
            )
        if analysis["promotional_emails"] > 20:
            count = int(analysis["promotional_emails"] * 0.8)
            recommended.append(
                {
                    "name": "Promotional Email Cleanup",
                    "description": "Archive old promotional and marketing emails",
                    "criteria": PolicyCriteria(
                        age_days_min=90, importance_level_max="medium", promotional_score_min=0.6
                    ),
                    "estimated_cleanup_count": count,
                    "estimated_storage_freed": count * 75_000,
                }
            )
        if analysis["old_emails"] > 50:
            count = int(analysis["old_emails"] * 0.6)
            recommended.append(
                {
                    "name": "Old Email Archive",
                    "description": "Archive emails older than 1 year with low importance",
                    "criteria": PolicyCriteria(
                        age_days_min=365, importance_level_max="medium", no_access_days=180
                    ),
                    "estimated_cleanup_count": count,
                    "estimated_storage_freed": count * 100_000,
                }
            )
        if analysis["large_emails"] > 5:
            count = int(analysis["large_emails"] * 0.7)
            recommended.append(
                {
                    "name": "Large Email Cleanup",
                    "description": "Archive large emails that are not frequently accessed",
                    "criteria": PolicyCriteria(
                        age_days_min=180,
                        importance_level_max="medium",
                        size_threshold_min=SIZE_LARGE_BYTES,
                        no_access_days=90,
                    ),
                    "estimated_cleanup_count": count,
                    "estimated_storage_freed": count * 15_000_000,
                }
            )

        return {"recommended_policies": recommended, "analysis_summary": analysis}
