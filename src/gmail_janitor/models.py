"""Data models for Gmail Janitor."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# --- Records ---


@dataclass
class EmailRecord:
    """A message mirrored from Gmail into the local index."""

    id: str
    thread_id: str = ""
    category: str | None = None  # high | medium | low | None (uncategorized)
    subject: str = ""
    sender: str = ""
    recipients: list[str] = field(default_factory=list)
    date: datetime | None = None
    size: int | None = None
    has_attachments: bool = False
    labels: list[str] = field(default_factory=list)
    snippet: str = ""
    archived: bool = False
    archive_date: datetime | None = None
    archive_location: str | None = None
    # Prior analysis results, all optional
    importance_score: float | None = None
    importance_level: str | None = None
    importance_matched_rules: list[str] = field(default_factory=list)
    spam_score: float | None = None
    promotional_score: float | None = None
    social_score: float | None = None
    gmail_category: str | None = None  # e.g. "spam", "promotions", "social"
    spam_indicators: list[str] = field(default_factory=list)
    promotional_indicators: list[str] = field(default_factory=list)


# --- Access tracking ---


@dataclass(frozen=True)
class AccessEvent:
    email_id: str
    access_type: str  # direct_view | search_result | thread_view
    timestamp: datetime = field(default_factory=utcnow)
    search_query: str | None = None


@dataclass
class SearchActivity:
    search_id: str
    query: str
    email_results: list[str] = field(default_factory=list)
    result_interactions: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AccessSummary:
    """Derived view over the access log for one record."""

    email_id: str
    total_accesses: int = 0
    last_accessed: datetime | None = None
    search_appearances: int = 0
    search_interactions: int = 0
    access_score: float = 0.0


# --- Staleness ---


@dataclass
class StalenessFactors:
    age: float
    importance: float
    size: float
    spam: float
    access: float

    def as_list(self) -> list[float]:
        return [self.age, self.importance, self.size, self.spam, self.access]


@dataclass
class StalenessScore:
    email_id: str
    total_score: float
    factors: StalenessFactors
    recommendation: str  # keep | archive | delete
    confidence: float


# --- Policies ---


@dataclass
class PolicyCriteria:
    age_days_min: int | None = None
    importance_level_max: str | None = None
    size_threshold_min: int | None = None
    spam_score_min: float | None = None
    promotional_score_min: float | None = None
    access_score_max: float | None = None
    no_access_days: int | None = None


@dataclass
class PolicyAction:
    type: str = "archive"  # archive | delete
    method: str = "gmail"
    export_format: str | None = None


@dataclass
class PolicySafety:
    max_emails_per_run: int = 100
    preserve_important: bool = True
    require_confirmation: bool = False
    dry_run_first: bool = False


@dataclass
class PolicySchedule:
    frequency: str = "daily"  # continuous | daily | weekly | monthly
    time: str = "02:00"
    enabled: bool = True


@dataclass
class CleanupPolicy:
    name: str
    id: str = ""
    enabled: bool = True
    priority: int = 50
    criteria: PolicyCriteria = field(default_factory=PolicyCriteria)
    action: PolicyAction = field(default_factory=PolicyAction)
    safety: PolicySafety = field(default_factory=PolicySafety)
    schedule: PolicySchedule | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    total_emails_cleaned: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> CleanupPolicy:
        """Build a policy from plain (e.g. JSON-decoded) data."""
        schedule = data.get("schedule")
        return cls(
            name=data.get("name", ""),
            id=data.get("id", ""),
            enabled=data.get("enabled", True),
            priority=data.get("priority", 50),
            criteria=PolicyCriteria(**(data.get("criteria") or {})),
            action=PolicyAction(**(data.get("action") or {})),
            safety=PolicySafety(**(data.get("safety") or {})),
            schedule=PolicySchedule(**schedule) if schedule else None,
        )


# --- Jobs ---


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


JOB_TYPES = ("scheduled_cleanup", "continuous_cleanup", "event_cleanup")


@dataclass
class CleanupMetadata:
    policy_id: str | None = None
    triggered_by: str = "user_request"
    priority: str = "normal"  # low | normal | high | critical
    batch_size: int = 50
    target_emails: int = 100


@dataclass
class ProgressDetails:
    emails_analyzed: int = 0
    emails_cleaned: int = 0
    storage_freed: int = 0
    errors_encountered: int = 0
    current_batch: int = 0
    total_batches: int = 0


@dataclass
class CleanupResults:
    execution_id: str
    started_at: datetime
    completed_at: datetime
    policy_id: str | None = None
    emails_processed: int = 0
    emails_deleted: int = 0
    emails_archived: int = 0
    storage_freed: int = 0
    errors: list[str] = field(default_factory=list)
    success: bool = True
    dry_run: bool = False
    cancelled: bool = False
    candidates: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = _iso(self.started_at)
        data["completed_at"] = _iso(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> CleanupResults:
        data = dict(data)
        data["started_at"] = _dt(data["started_at"])
        data["completed_at"] = _dt(data["completed_at"])
        return cls(**data)


@dataclass
class CleanupJob:
    job_id: str
    job_type: str
    status: JobStatus = JobStatus.PENDING
    request_params: dict = field(default_factory=dict)
    cleanup_metadata: CleanupMetadata = field(default_factory=CleanupMetadata)
    progress_details: ProgressDetails = field(default_factory=ProgressDetails)
    progress: int = 0
    results: CleanupResults | None = None
    error_details: str | None = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def dry_run(self) -> bool:
        return bool(self.request_params.get("dry_run", False))


# --- Evaluation ---


@dataclass
class CleanupCandidate:
    email: EmailRecord
    policy: CleanupPolicy
    staleness_score: StalenessScore
    recommended_action: str  # archive | delete


@dataclass
class ProtectedEmail:
    email: EmailRecord
    reason: str
    rule: str = ""


@dataclass
class PolicyEvaluation:
    cleanup_candidates: list[CleanupCandidate] = field(default_factory=list)
    protected_emails: list[ProtectedEmail] = field(default_factory=list)
    evaluation_summary: dict = field(default_factory=dict)


# --- External collaborators ---


@dataclass
class DeleteResult:
    deleted_count: int = 0
    deleted_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class SystemHealth:
    storage_usage_percent: float
    average_query_time_ms: float
    cache_hit_rate: float
    status: str = "healthy"  # healthy | warning | critical
    storage_used_bytes: int = 0
    storage_total_bytes: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    last_check: datetime = field(default_factory=utcnow)


@dataclass
class ExecutionRecord:
    execution_id: str
    started_at: datetime
    completed_at: datetime
    policy_id: str | None = None
    emails_processed: int = 0
    emails_deleted: int = 0
    emails_archived: int = 0
    storage_freed: int = 0
    errors: list[str] = field(default_factory=list)
    success: bool = True

    @property
    def effectiveness(self) -> float:
        if self.emails_processed == 0:
            return 0.0
        return (self.emails_deleted + self.emails_archived) / self.emails_processed
