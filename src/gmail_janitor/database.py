"""SQLite store for indexed mail, access history, policies and cleanup jobs."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections import deque
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .constants import DATABASE_PATH, IMPORTANCE_LEVELS, QUERY_TIME_WINDOW
from .errors import JobNotFoundError, JobStateError
from .models import (
    AccessEvent,
    AccessSummary,
    CleanupJob,
    CleanupMetadata,
    CleanupPolicy,
    CleanupResults,
    EmailRecord,
    ExecutionRecord,
    JobStatus,
    PolicyAction,
    PolicyCriteria,
    PolicySafety,
    PolicySchedule,
    ProgressDetails,
    SearchActivity,
    utcnow,
)

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS email_index (
    id TEXT PRIMARY KEY,
    thread_id TEXT,
    category TEXT,
    subject TEXT,
    sender TEXT,
    recipients_json TEXT,
    date REAL,
    size INTEGER,
    has_attachments INTEGER DEFAULT 0,
    labels_json TEXT,
    snippet TEXT,
    archived INTEGER DEFAULT 0,
    archive_date REAL,
    archive_location TEXT,
    importance_score REAL,
    importance_level TEXT,
    importance_matched_rules_json TEXT,
    spam_score REAL,
    promotional_score REAL,
    social_score REAL,
    gmail_category TEXT,
    spam_indicators_json TEXT,
    promotional_indicators_json TEXT
);

CREATE TABLE IF NOT EXISTS access_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id TEXT NOT NULL,
    access_type TEXT NOT NULL,
    timestamp REAL NOT NULL,
    search_query TEXT
);

CREATE TABLE IF NOT EXISTS search_activity (
    search_id TEXT PRIMARY KEY,
    query TEXT,
    result_count INTEGER,
    timestamp REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS search_results (
    search_id TEXT NOT NULL,
    email_id TEXT NOT NULL,
    interacted INTEGER DEFAULT 0,
    timestamp REAL NOT NULL,
    FOREIGN KEY (search_id) REFERENCES search_activity(search_id)
);

CREATE TABLE IF NOT EXISTS access_summary (
    email_id TEXT PRIMARY KEY,
    total_accesses INTEGER DEFAULT 0,
    last_accessed REAL,
    search_appearances INTEGER DEFAULT 0,
    search_interactions INTEGER DEFAULT 0,
    access_score REAL DEFAULT 0,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS cleanup_policies (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    enabled INTEGER DEFAULT 1,
    priority INTEGER DEFAULT 50,
    criteria_json TEXT,
    action_json TEXT,
    safety_json TEXT,
    schedule_json TEXT,
    created_at TEXT,
    updated_at TEXT,
    last_run_at TEXT,
    run_count INTEGER DEFAULT 0,
    total_emails_cleaned INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    request_params_json TEXT,
    progress INTEGER DEFAULT 0,
    results_json TEXT,
    error_details TEXT,
    cancel_requested INTEGER DEFAULT 0,
    created_at TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS cleanup_job_metadata (
    job_id TEXT PRIMARY KEY,
    policy_id TEXT,
    triggered_by TEXT,
    priority TEXT,
    batch_size INTEGER,
    target_emails INTEGER,
    progress_details_json TEXT,
    FOREIGN KEY (job_id) REFERENCES jobs(job_id)
);

CREATE TABLE IF NOT EXISTS execution_history (
    execution_id TEXT PRIMARY KEY,
    policy_id TEXT,
    started_at TEXT,
    completed_at TEXT,
    emails_processed INTEGER,
    emails_deleted INTEGER,
    emails_archived INTEGER,
    storage_freed INTEGER,
    errors_json TEXT,
    success INTEGER
);

CREATE TABLE IF NOT EXISTS automation_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    config_json TEXT NOT NULL,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_access_log_email ON access_log(email_id);
CREATE INDEX IF NOT EXISTS idx_search_results_email ON search_results(email_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
"""

# Legal job status moves; terminal states have no outgoing edges.
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

_JOB_FIELDS = (
    "status",
    "progress",
    "progress_details",
    "results",
    "error_details",
    "started_at",
    "completed_at",
)

# Uncategorized records rank as medium.
_IMPORTANCE_ORDINAL_SQL = (
    "CASE COALESCE(e.category, 'medium') "
    "WHEN 'low' THEN 0 WHEN 'medium' THEN 1 WHEN 'high' THEN 2 ELSE 1 END"
)


def _to_epoch(value: datetime | None) -> float | None:
    return value.timestamp() if value else None


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> EmailRecord:
    return EmailRecord(
        id=row["id"],
        thread_id=row["thread_id"] or "",
        category=row["category"],
        subject=row["subject"] or "",
        sender=row["sender"] or "",
        recipients=json.loads(row["recipients_json"] or "[]"),
        date=_from_epoch(row["date"]),
        size=row["size"],
        has_attachments=bool(row["has_attachments"]),
        labels=json.loads(row["labels_json"] or "[]"),
        snippet=row["snippet"] or "",
        archived=bool(row["archived"]),
        archive_date=_from_epoch(row["archive_date"]),
        archive_location=row["archive_location"],
        importance_score=row["importance_score"],
        importance_level=row["importance_level"],
        importance_matched_rules=json.loads(row["importance_matched_rules_json"] or "[]"),
        spam_score=row["spam_score"],
        promotional_score=row["promotional_score"],
        social_score=row["social_score"],
        gmail_category=row["gmail_category"],
        spam_indicators=json.loads(row["spam_indicators_json"] or "[]"),
        promotional_indicators=json.loads(row["promotional_indicators_json"] or "[]"),
    )


def _row_to_policy(row: sqlite3.Row) -> CleanupPolicy:
    schedule = json.loads(row["schedule_json"]) if row["schedule_json"] else None
    return CleanupPolicy(
        id=row["id"],
        name=row["name"],
        enabled=bool(row["enabled"]),
        priority=row["priority"],
        criteria=PolicyCriteria(**json.loads(row["criteria_json"] or "{}")),
        action=PolicyAction(**json.loads(row["action_json"] or "{}")),
        safety=PolicySafety(**json.loads(row["safety_json"] or "{}")),
        schedule=PolicySchedule(**schedule) if schedule else None,
        created_at=_from_iso(row["created_at"]),
        updated_at=_from_iso(row["updated_at"]),
        last_run_at=_from_iso(row["last_run_at"]),
        run_count=row["run_count"] or 0,
        total_emails_cleaned=row["total_emails_cleaned"] or 0,
    )


def _row_to_job(row: sqlite3.Row) -> CleanupJob:
    results = json.loads(row["results_json"]) if row["results_json"] else None
    return CleanupJob(
        job_id=row["job_id"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        request_params=json.loads(row["request_params_json"] or "{}"),
        cleanup_metadata=CleanupMetadata(
            policy_id=row["policy_id"],
            triggered_by=row["triggered_by"] or "user_request",
            priority=row["priority"] or "normal",
            batch_size=row["batch_size"] or 0,
            target_emails=row["target_emails"] or 0,
        ),
        progress_details=ProgressDetails(**json.loads(row["progress_details_json"] or "{}")),
        progress=row["progress"] or 0,
        results=CleanupResults.from_dict(results) if results else None,
        error_details=row["error_details"],
        cancel_requested=bool(row["cancel_requested"]),
        created_at=_from_iso(row["created_at"]),
        started_at=_from_iso(row["started_at"]),
        completed_at=_from_iso(row["completed_at"]),
    )


class CleanupDatabase:
    """Persistent SQLite store shared by the cleanup components.

    Every record search is timed; the rolling window feeds the health
    monitor's average query time.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or DATABASE_PATH
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._query_times: deque[float] = deque(maxlen=QUERY_TIME_WINDOW)
        self._cache_hits = 0
        self._cache_misses = 0
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(_CREATE_TABLES_SQL)

    def _timed_fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        started = time.perf_counter()
        rows = self._conn.execute(sql, params).fetchall()
        self.record_query_time((time.perf_counter() - started) * 1000)
        return rows

    def record_query_time(self, elapsed_ms: float) -> None:
        self._query_times.append(elapsed_ms)

    def get_average_query_time_ms(self) -> float:
        """Mean wall time of the most recent record searches, 0 when none ran."""
        if not self._query_times:
            return 0.0
        return sum(self._query_times) / len(self._query_times)

    def record_cache_hit(self, hit: bool) -> None:
        if hit:
            self._cache_hits += 1
        else:
            self._cache_misses += 1

    def get_cache_hit_rate(self) -> float:
        """Share of record lookups served from the index; 1.0 before any lookup."""
        total = self._cache_hits + self._cache_misses
        return self._cache_hits / total if total else 1.0

    # --- email index ---

    def upsert_record(self, record: EmailRecord) -> None:
        self.upsert_records([record])

    def upsert_records(self, records: list[EmailRecord]) -> None:
        """Insert or replace records in a single transaction."""
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO email_index (id, thread_id, category, subject, sender, "
                "recipients_json, date, size, has_attachments, labels_json, snippet, archived, "
                "archive_date, archive_location, importance_score, importance_level, "
                "importance_matched_rules_json, spam_score, promotional_score, social_score, "
                "gmail_category, spam_indicators_json, promotional_indicators_json) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        r.id,
                        r.thread_id,
                        r.category,
                        r.subject,
                        r.sender,
                        json.dumps(r.recipients),
                        _to_epoch(r.date),
                        r.size,
                        int(r.has_attachments),
                        json.dumps(r.labels),
                        r.snippet,
                        int(r.archived),
                        _to_epoch(r.archive_date),
                        r.archive_location,
                        r.importance_score,
                        r.importance_level,
                        json.dumps(r.importance_matched_rules),
                        r.spam_score,
                        r.promotional_score,
                        r.social_score,
                        r.gmail_category,
                        json.dumps(r.spam_indicators),
                        json.dumps(r.promotional_indicators),
                    )
                    for r in records
                ],
            )

    def get_record(self, email_id: str) -> EmailRecord | None:
        row = self._conn.execute(
            "SELECT * FROM email_index WHERE id = ?", (email_id,)
        ).fetchone()
        self.record_cache_hit(row is not None)
        return _row_to_record(row) if row else None

    def search_records(
        self,
        category: str | None = None,
        archived: bool | None = None,
        limit: int | None = None,
    ) -> list[EmailRecord]:
        """Return records filtered by category and archive flag, newest first."""
        clauses: list[str] = []
        params: list = []
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        if archived is not None:
            clauses.append("archived = ?")
            params.append(int(archived))

        sql = "SELECT * FROM email_index"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY date DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_record(r) for r in self._timed_fetchall(sql, params)]

    def _criteria_where(
        self, criteria: PolicyCriteria, now: datetime
    ) -> tuple[str, list]:
        """Translate policy criteria into a WHERE clause over ``email_index e``.

        Mirrors the in-memory matching rules: a missing date never satisfies a
        minimum age, while missing size or analysis scores do not exclude a
        record.
        """
        clauses = ["e.archived = 0"]
        params: list = []

        if criteria.age_days_min is not None:
            cutoff = now - timedelta(days=criteria.age_days_min)
            clauses.append("e.date IS NOT NULL AND e.date <= ?")
            params.append(cutoff.timestamp())
        if criteria.importance_level_max is not None:
            clauses.append(f"{_IMPORTANCE_ORDINAL_SQL} <= ?")
            params.append(IMPORTANCE_LEVELS.index(criteria.importance_level_max))
        if criteria.size_threshold_min is not None:
            clauses.append("(e.size IS NULL OR e.size >= ?)")
            params.append(criteria.size_threshold_min)
        if criteria.spam_score_min is not None:
            clauses.append("(e.spam_score IS NULL OR e.spam_score >= ?)")
            params.append(criteria.spam_score_min)
        if criteria.promotional_score_min is not None:
            clauses.append("(e.promotional_score IS NULL OR e.promotional_score >= ?)")
            params.append(criteria.promotional_score_min)
        if criteria.access_score_max is not None:
            clauses.append("COALESCE(s.access_score, 0) <= ?")
            params.append(criteria.access_score_max)
        if criteria.no_access_days is not None:
            cutoff = now - timedelta(days=criteria.no_access_days)
            clauses.append("(s.last_accessed IS NULL OR s.last_accessed <= ?)")
            params.append(cutoff.timestamp())

        return " AND ".join(clauses), params

    def search_eligible_records(
        self,
        criteria: PolicyCriteria,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[EmailRecord]:
        """Records matching ``criteria``, least important and oldest first."""
        where, params = self._criteria_where(criteria, now or utcnow())
        sql = (
            "SELECT e.* FROM email_index e "
            "LEFT JOIN access_summary s ON s.email_id = e.id "
            f"WHERE {where} "
            f"ORDER BY {_IMPORTANCE_ORDINAL_SQL} ASC, e.date ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_record(r) for r in self._timed_fetchall(sql, params)]

    def count_records(
        self, criteria: PolicyCriteria | None = None, now: datetime | None = None
    ) -> int:
        """Count non-archived records, optionally restricted by ``criteria``."""
        where, params = self._criteria_where(criteria or PolicyCriteria(), now or utcnow())
        rows = self._timed_fetchall(
            "SELECT COUNT(*) AS c FROM email_index e "
            "LEFT JOIN access_summary s ON s.email_id = e.id "
            f"WHERE {where}",
            params,
        )
        return rows[0]["c"]

    def mark_archived(
        self, email_ids: list[str], location: str = "archive", when: datetime | None = None
    ) -> int:
        """Flag records as archived; returns the number of rows changed."""
        if not email_ids:
            return 0
        archived_at = _to_epoch(when or utcnow())
        with self._conn:
            cursor = self._conn.executemany(
                "UPDATE email_index SET archived = 1, archive_date = ?, archive_location = ? "
                "WHERE id = ?",
                [(archived_at, location, email_id) for email_id in email_ids],
            )
        return cursor.rowcount

    def mark_deleted(self, email_ids: list[str]) -> int:
        """Record that messages were moved to Gmail trash."""
        return self.mark_archived(email_ids, location="trash")

    def get_storage_stats(self) -> dict:
        """Return record counts and byte totals, split by archive state and category."""
        row = self._conn.execute(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(size), 0) AS total_size, "
            "COALESCE(SUM(CASE WHEN archived = 0 THEN size ELSE 0 END), 0) AS active_size, "
            "SUM(CASE WHEN archived = 1 THEN 1 ELSE 0 END) AS archived_count "
            "FROM email_index"
        ).fetchone()
        category_rows = self._conn.execute(
            "SELECT COALESCE(category, 'uncategorized') AS category, COUNT(*) AS c "
            "FROM email_index WHERE archived = 0 GROUP BY category"
        ).fetchall()
        return {
            "total_emails": row["total"],
            "archived_emails": row["archived_count"] or 0,
            "total_size": row["total_size"],
            "active_size": row["active_size"],
            "by_category": {r["category"]: r["c"] for r in category_rows},
        }

    # --- access log ---

    def insert_access_event(self, event: AccessEvent) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO access_log (email_id, access_type, timestamp, search_query) "
                "VALUES (?, ?, ?, ?)",
                (event.email_id, event.access_type, _to_epoch(event.timestamp), event.search_query),
            )

    def insert_search_activity(self, activity: SearchActivity) -> None:
        """Store a search and one result row per returned record."""
        interacted = set(activity.result_interactions)
        ts = _to_epoch(activity.timestamp)
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO search_activity (search_id, query, result_count, timestamp) "
                "VALUES (?, ?, ?, ?)",
                (activity.search_id, activity.query, len(activity.email_results), ts),
            )
            self._conn.executemany(
                "INSERT INTO search_results (search_id, email_id, interacted, timestamp) "
                "VALUES (?, ?, ?, ?)",
                [
                    (activity.search_id, email_id, int(email_id in interacted), ts)
                    for email_id in activity.email_results
                ],
            )

    def get_access_stats(self, email_id: str) -> dict:
        """Raw counts behind an access summary."""
        access = self._conn.execute(
            "SELECT COUNT(*) AS c, MAX(timestamp) AS last FROM access_log WHERE email_id = ?",
            (email_id,),
        ).fetchone()
        search = self._conn.execute(
            "SELECT COUNT(*) AS appearances, "
            "COALESCE(SUM(interacted), 0) AS interactions, "
            "MAX(CASE WHEN interacted = 1 THEN timestamp END) AS last_interaction "
            "FROM search_results WHERE email_id = ?",
            (email_id,),
        ).fetchone()
        return {
            "total_accesses": access["c"],
            "last_access": _from_epoch(access["last"]),
            "search_appearances": search["appearances"],
            "search_interactions": search["interactions"],
            "last_interaction": _from_epoch(search["last_interaction"]),
        }

    def upsert_access_summary(self, summary: AccessSummary) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO access_summary (email_id, total_accesses, last_accessed, "
                "search_appearances, search_interactions, access_score, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    summary.email_id,
                    summary.total_accesses,
                    _to_epoch(summary.last_accessed),
                    summary.search_appearances,
                    summary.search_interactions,
                    summary.access_score,
                    time.time(),
                ),
            )

    def get_frequently_accessed_ids(self, min_score: float, limit: int) -> list[str]:
        rows = self._conn.execute(
            "SELECT email_id FROM access_summary WHERE access_score > ? "
            "ORDER BY access_score DESC, last_accessed DESC LIMIT ?",
            (min_score, limit),
        ).fetchall()
        return [r["email_id"] for r in rows]

    def get_unaccessed_email_ids(self, cutoff: datetime, limit: int) -> list[str]:
        """Non-archived records never accessed, or not accessed since ``cutoff``."""
        rows = self._conn.execute(
            "SELECT e.id FROM email_index e "
            "LEFT JOIN access_summary s ON s.email_id = e.id "
            "WHERE e.archived = 0 AND (s.last_accessed IS NULL OR s.last_accessed < ?) "
            "ORDER BY COALESCE(s.last_accessed, 0) ASC, e.date ASC LIMIT ?",
            (cutoff.timestamp(), limit),
        ).fetchall()
        return [r["id"] for r in rows]

    def get_access_events_since(self, cutoff: datetime) -> list[AccessEvent]:
        rows = self._conn.execute(
            "SELECT * FROM access_log WHERE timestamp >= ? ORDER BY timestamp",
            (cutoff.timestamp(),),
        ).fetchall()
        return [
            AccessEvent(
                email_id=r["email_id"],
                access_type=r["access_type"],
                timestamp=_from_epoch(r["timestamp"]),
                search_query=r["search_query"],
            )
            for r in rows
        ]

    def delete_access_events_before(self, cutoff: datetime) -> int:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM access_log WHERE timestamp < ?", (cutoff.timestamp(),)
            )
        return cursor.rowcount

    # --- policies ---

    def save_policy(self, policy: CleanupPolicy) -> None:
        """Insert or replace a policy row."""
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO cleanup_policies (id, name, enabled, priority, "
                "criteria_json, action_json, safety_json, schedule_json, created_at, updated_at, "
                "last_run_at, run_count, total_emails_cleaned) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    policy.id,
                    policy.name,
                    int(policy.enabled),
                    policy.priority,
                    json.dumps(asdict(policy.criteria)),
                    json.dumps(asdict(policy.action)),
                    json.dumps(asdict(policy.safety)),
                    json.dumps(asdict(policy.schedule)) if policy.schedule else None,
                    _to_iso(policy.created_at),
                    _to_iso(policy.updated_at),
                    _to_iso(policy.last_run_at),
                    policy.run_count,
                    policy.total_emails_cleaned,
                ),
            )

    def get_policy(self, policy_id: str) -> CleanupPolicy | None:
        row = self._conn.execute(
            "SELECT * FROM cleanup_policies WHERE id = ?", (policy_id,)
        ).fetchone()
        return _row_to_policy(row) if row else None

    def list_policies(self, enabled_only: bool = False) -> list[CleanupPolicy]:
        """All policies, highest priority first."""
        sql = "SELECT * FROM cleanup_policies"
        if enabled_only:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY priority DESC, created_at ASC"
        return [_row_to_policy(r) for r in self._conn.execute(sql).fetchall()]

    def delete_policy(self, policy_id: str) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM cleanup_policies WHERE id = ?", (policy_id,)
            )
        return cursor.rowcount > 0

    def update_policy_run_stats(
        self, policy_id: str, emails_cleaned: int, run_at: datetime | None = None
    ) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE cleanup_policies SET last_run_at = ?, run_count = run_count + 1, "
                "total_emails_cleaned = total_emails_cleaned + ? WHERE id = ?",
                (_to_iso(run_at or utcnow()), emails_cleaned, policy_id),
            )

    # --- cleanup jobs ---

    def insert_cleanup_job(self, job: CleanupJob) -> None:
        """Persist a new job and its metadata row together."""
        with self._conn:
            self._conn.execute(
                "INSERT INTO jobs (job_id, job_type, status, request_params_json, progress, "
                "results_json, error_details, created_at, started_at, completed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    job.job_type,
                    job.status.value,
                    json.dumps(job.request_params),
                    job.progress,
                    json.dumps(job.results.to_dict()) if job.results else None,
                    job.error_details,
                    _to_iso(job.created_at),
                    _to_iso(job.started_at),
                    _to_iso(job.completed_at),
                ),
            )
            meta = job.cleanup_metadata
            self._conn.execute(
                "INSERT INTO cleanup_job_metadata (job_id, policy_id, triggered_by, priority, "
                "batch_size, target_emails, progress_details_json) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    meta.policy_id,
                    meta.triggered_by,
                    meta.priority,
                    meta.batch_size,
                    meta.target_emails,
                    json.dumps(asdict(job.progress_details)),
                ),
            )

    _JOB_SELECT = (
        "SELECT j.*, m.policy_id, m.triggered_by, m.priority, m.batch_size, m.target_emails, "
        "m.progress_details_json FROM jobs j "
        "LEFT JOIN cleanup_job_metadata m ON m.job_id = j.job_id"
    )

    def get_cleanup_job(self, job_id: str) -> CleanupJob | None:
        row = self._conn.execute(
            f"{self._JOB_SELECT} WHERE j.job_id = ?", (job_id,)
        ).fetchone()
        return _row_to_job(row) if row else None

    def update_cleanup_job(self, job_id: str, **changes) -> CleanupJob:
        """Apply ``changes`` to a job, enforcing the status state machine.

        Moving to IN_PROGRESS stamps ``started_at`` and moving to a terminal
        state stamps ``completed_at`` unless given. Raises JobStateError for an
        illegal transition or any write to a finished job.
        """
        unknown = set(changes) - set(_JOB_FIELDS)
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        job = self.get_cleanup_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status.is_terminal:
            raise JobStateError(f"Job {job_id} is {job.status.value} and cannot be modified")

        new_status = JobStatus(changes.get("status", job.status))
        if new_status != job.status:
            if new_status not in _TRANSITIONS[job.status]:
                raise JobStateError(
                    f"Illegal transition for job {job_id}: {job.status.value} -> {new_status.value}"
                )
            now = utcnow()
            if new_status == JobStatus.IN_PROGRESS:
                changes.setdefault("started_at", now)
            if new_status.is_terminal:
                changes.setdefault("completed_at", now)
        changes["status"] = new_status

        for key, value in changes.items():
            setattr(job, key, value)
        if job.started_at and job.completed_at and job.completed_at < job.started_at:
            job.completed_at = job.started_at

        with self._conn:
            self._conn.execute(
                "UPDATE jobs SET status = ?, progress = ?, results_json = ?, error_details = ?, "
                "started_at = ?, completed_at = ? WHERE job_id = ?",
                (
                    job.status.value,
                    job.progress,
                    json.dumps(job.results.to_dict()) if job.results else None,
                    job.error_details,
                    _to_iso(job.started_at),
                    _to_iso(job.completed_at),
                    job_id,
                ),
            )
            self._conn.execute(
                "UPDATE cleanup_job_metadata SET progress_details_json = ? WHERE job_id = ?",
                (json.dumps(asdict(job.progress_details)), job_id),
            )
        logger.debug("Job %s updated: %s", job_id, job.status.value)
        return job

    def list_cleanup_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int | None = None,
    ) -> list[CleanupJob]:
        """Jobs newest first, optionally filtered by status and type."""
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("j.status = ?")
            params.append(JobStatus(status).value)
        if job_type is not None:
            clauses.append("j.job_type = ?")
            params.append(job_type)

        sql = self._JOB_SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY j.created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_job(r) for r in self._conn.execute(sql, params).fetchall()]

    def find_jobs_by_status(self, status: JobStatus) -> list[CleanupJob]:
        return self.list_cleanup_jobs(status=status)

    def request_job_cancellation(self, job_id: str) -> bool:
        """Flag an unfinished job for cancellation; False if it is already finished."""
        with self._conn:
            cursor = self._conn.execute(
                "UPDATE jobs SET cancel_requested = 1 WHERE job_id = ? AND status IN (?, ?)",
                (job_id, JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value),
            )
        return cursor.rowcount > 0

    def is_cancellation_requested(self, job_id: str) -> bool:
        row = self._conn.execute(
            "SELECT cancel_requested FROM jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
        return bool(row and row["cancel_requested"])

    # --- execution history ---

    def record_cleanup_execution(self, results: CleanupResults) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO execution_history (execution_id, policy_id, started_at, "
                "completed_at, emails_processed, emails_deleted, emails_archived, storage_freed, "
                "errors_json, success) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    results.execution_id,
                    results.policy_id,
                    _to_iso(results.started_at),
                    _to_iso(results.completed_at),
                    results.emails_processed,
                    results.emails_deleted,
                    results.emails_archived,
                    results.storage_freed,
                    json.dumps(results.errors),
                    int(results.success),
                ),
            )

    def get_execution_history(
        self, policy_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionRecord]:
        sql = "SELECT * FROM execution_history"
        params: list = []
        if policy_id is not None:
            sql += " WHERE policy_id = ?"
            params.append(policy_id)
        sql += " ORDER BY started_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [
            ExecutionRecord(
                execution_id=r["execution_id"],
                policy_id=r["policy_id"],
                started_at=_from_iso(r["started_at"]),
                completed_at=_from_iso(r["completed_at"]),
                emails_processed=r["emails_processed"],
                emails_deleted=r["emails_deleted"],
                emails_archived=r["emails_archived"],
                storage_freed=r["storage_freed"],
                errors=json.loads(r["errors_json"] or "[]"),
                success=bool(r["success"]),
            )
            for r in self._conn.execute(sql, params).fetchall()
        ]

    # --- automation config ---

    def save_automation_config(self, config: dict) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO automation_config (id, config_json, updated_at) "
                "VALUES (1, ?, ?)",
                (json.dumps(config), _to_iso(utcnow())),
            )

    def load_automation_config(self) -> dict | None:
        row = self._conn.execute(
            "SELECT config_json FROM automation_config WHERE id = 1"
        ).fetchone()
        return json.loads(row["config_json"]) if row else None

    def get_info(self) -> dict:
        """Return database statistics."""
        file_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        counts = {}
        for table in ("email_index", "access_log", "cleanup_policies", "jobs", "execution_history"):
            counts[table] = self._conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]
        return {"db_file_size": file_size, **counts}

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # --- context manager ---

    def __enter__(self) -> CleanupDatabase:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
