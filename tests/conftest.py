"""Shared fixtures for tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httplib2
import pytest
from googleapiclient.errors import HttpError

from gmail_janitor.access_tracker import AccessPatternTracker
from gmail_janitor.database import CleanupDatabase
from gmail_janitor.engine import CleanupAutomationEngine
from gmail_janitor.job_queue import JobQueue
from gmail_janitor.models import (
    CleanupPolicy,
    DeleteResult,
    EmailRecord,
    PolicyAction,
    PolicyCriteria,
    PolicySafety,
    SystemHealth,
)
from gmail_janitor.policy_engine import CleanupPolicyEngine
from gmail_janitor.scorer import StalenessScorer

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_record(email_id: str, age_days: float | None = 400, **overrides) -> EmailRecord:
    """A low-importance spammy record that scores 'archive' unless overridden."""
    data = {
        "id": email_id,
        "thread_id": f"t_{email_id}",
        "category": "low",
        "subject": f"Weekly deals {email_id}",
        "sender": "Shop <deals@shop.example>",
        "date": NOW - timedelta(days=age_days) if age_days is not None else None,
        "size": 2048,
        "spam_score": 0.9,
    }
    data.update(overrides)
    return EmailRecord(**data)


def make_junk(email_id: str, **overrides) -> EmailRecord:
    """A record stale enough to score 'delete'."""
    data = {"age_days": 800, "size": 20_971_520, "spam_score": 0.99}
    data.update(overrides)
    return make_record(email_id, **data)


def make_policy(name: str = "Old promos", action: str = "archive", **criteria) -> CleanupPolicy:
    return CleanupPolicy(
        name=name,
        criteria=PolicyCriteria(**(criteria or {"age_days_min": 90})),
        action=PolicyAction(type=action),
        safety=PolicySafety(max_emails_per_run=100),
    )


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"Gmail error")


class Clock:
    """Settable clock for deterministic tests."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRequest:
    def __init__(self, outcome) -> None:
        self._outcome = outcome

    def execute(self):
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


class FakeGmailService:
    """Records batchModify calls; ``failures`` maps call number (1-based) to an error."""

    def __init__(self, failures: dict[int, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[dict] = []

    def users(self):
        return self

    def messages(self):
        return self

    def batchModify(self, userId: str, body: dict):  # noqa: N802
        self.calls.append(body)
        return FakeRequest(self.failures.get(len(self.calls), {}))

    def getProfile(self, userId: str):  # noqa: N802
        return FakeRequest({"emailAddress": "me@example.com", "messagesTotal": 42})


class FakeDeletionExecutor:
    """Marks records deleted in the store; ids in ``failing`` produce an error."""

    def __init__(self, database: CleanupDatabase, failing: set[str] | None = None) -> None:
        self.database = database
        self.failing = failing or set()
        self.calls: list[list[str]] = []

    async def delete_records(self, email_ids: list[str], halt_on_error: bool = True) -> DeleteResult:
        self.calls.append(list(email_ids))
        if self.failing & set(email_ids):
            return DeleteResult(errors=[f"Failed to delete batch 1: {sorted(self.failing)}"])
        self.database.mark_deleted(email_ids)
        return DeleteResult(deleted_count=len(email_ids), deleted_ids=list(email_ids))


class FakeHealthSource:
    def __init__(self, storage: float = 10.0, query_ms: float = 5.0, hit_rate: float = 0.95) -> None:
        self.health = SystemHealth(
            storage_usage_percent=storage, average_query_time_ms=query_ms, cache_hit_rate=hit_rate
        )

    def get_current_health(self) -> SystemHealth:
        return self.health


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def database(tmp_path):
    with CleanupDatabase(db_path=tmp_path / "janitor.db") as db:
        yield db


@pytest.fixture
def tracker(database, clock) -> AccessPatternTracker:
    return AccessPatternTracker(database, clock=clock)


@pytest.fixture
def scorer(tracker, clock) -> StalenessScorer:
    return StalenessScorer(tracker, clock=clock)


@pytest.fixture
def policy_engine(database, scorer, clock) -> CleanupPolicyEngine:
    return CleanupPolicyEngine(database, scorer, clock=clock)


@pytest.fixture
def executor(database) -> FakeDeletionExecutor:
    return FakeDeletionExecutor(database)


@pytest.fixture
def health() -> FakeHealthSource:
    return FakeHealthSource()


@pytest.fixture
def engine(database, policy_engine, executor, health, clock) -> CleanupAutomationEngine:
    return CleanupAutomationEngine(
        database,
        policy_engine,
        JobQueue(),
        executor,
        health,
        clock=clock,
        sleep=no_sleep,
        inter_batch_delay=0,
    )
