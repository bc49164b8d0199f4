"""Tests for the cleanup automation engine."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from conftest import (
    NOW,
    FakeDeletionExecutor,
    FakeHealthSource,
    http_error,
    make_junk,
    make_policy,
    make_record,
)

from gmail_janitor.config import PeakHours, merge_config
from gmail_janitor.engine import CleanupAutomationEngine, is_peak_hours
from gmail_janitor.errors import (
    JobNotFoundError,
    JobPersistenceError,
    JobStateError,
    PolicyDisabledError,
    PolicyNotFoundError,
)
from gmail_janitor.job_queue import JobQueue
from gmail_janitor.models import CleanupJob, CleanupMetadata, JobStatus


def _create_policy(policy_engine, name="Old promos", action="archive", enabled=True,
                   priority=50, max_per_run=100, **criteria) -> str:
    policy = make_policy(name, action, **criteria)
    policy.enabled = enabled
    policy.priority = priority
    policy.safety.max_emails_per_run = max_per_run
    return policy_engine.create_policy(policy)


# --- triggering ---


@pytest.mark.asyncio
async def test_trigger_creates_pending_job(engine, policy_engine, database):
    policy_id = _create_policy(policy_engine, max_per_run=250)

    job_id = await engine.trigger_manual_cleanup(policy_id)

    job = database.get_cleanup_job(job_id)
    assert job_id.startswith("cleanup_manual_")
    assert job.status == JobStatus.PENDING
    assert job.job_type == "scheduled_cleanup"
    assert job.cleanup_metadata.policy_id == policy_id
    assert job.cleanup_metadata.batch_size == 100
    assert job.cleanup_metadata.target_emails == 250
    assert job.request_params == {
        "policy_id": policy_id, "dry_run": False, "max_emails": None, "force": False
    }
    assert engine.job_queue.contains(job_id)


@pytest.mark.asyncio
async def test_trigger_batch_size_follows_max_emails(engine, policy_engine, database):
    policy_id = _create_policy(policy_engine)
    job_id = await engine.trigger_manual_cleanup(policy_id, max_emails=30)
    assert database.get_cleanup_job(job_id).cleanup_metadata.batch_size == 30


@pytest.mark.asyncio
async def test_trigger_unknown_or_disabled_policy(engine, policy_engine):
    with pytest.raises(PolicyNotFoundError):
        await engine.trigger_manual_cleanup("policy_missing")

    disabled = _create_policy(policy_engine, enabled=False)
    with pytest.raises(PolicyDisabledError):
        await engine.trigger_manual_cleanup(disabled)
    assert await engine.trigger_manual_cleanup(disabled, force=True)


@pytest.mark.asyncio
async def test_trigger_persistence_failure_dequeues(engine, policy_engine, database, monkeypatch):
    policy_id = _create_policy(policy_engine)
    monkeypatch.setattr(database, "get_cleanup_job", lambda job_id: None)

    with pytest.raises(JobPersistenceError):
        await engine.trigger_manual_cleanup(policy_id)
    assert engine.job_queue.get_queue_length() == 0


# --- policy-scoped execution ---


@pytest.mark.asyncio
async def test_dry_run_leaves_store_untouched(engine, policy_engine, database, executor):
    database.upsert_records([make_record("a", size=1000), make_record("b", size=3000)])
    policy_id = _create_policy(policy_engine)

    job_id = await engine.trigger_manual_cleanup(policy_id, dry_run=True)
    results = await engine.process_cleanup_job(job_id)

    assert results.dry_run is True
    assert results.emails_archived == 2
    assert results.storage_freed == 4000
    assert {c["email_id"] for c in results.candidates} == {"a", "b"}
    assert all(c["action"] == "archive" and c["policy_id"] == policy_id for c in results.candidates)
    assert not database.get_record("a").archived
    assert not database.get_record("b").archived
    assert executor.calls == []

    job = database.get_cleanup_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.results.candidates == results.candidates
    assert database.get_execution_history() == []
    assert database.get_policy(policy_id).run_count == 0


@pytest.mark.asyncio
async def test_run_archives_and_deletes(engine, policy_engine, database, executor):
    database.upsert_records(
        [make_record("keep-me", category="high"), make_record("arch", size=1000), make_junk("junk")]
    )
    policy_id = _create_policy(policy_engine, action="delete")

    job_id = await engine.trigger_manual_cleanup(policy_id)
    results = await engine.process_cleanup_job(job_id)

    assert results.success is True
    assert results.emails_processed == 3
    assert results.emails_deleted == 1
    assert results.emails_archived == 1
    assert results.storage_freed == 1000 + 20_971_520
    assert executor.calls == [["junk"]]
    assert database.get_record("junk").archive_location == "trash"
    assert database.get_record("arch").archive_location == "archive"
    assert database.get_record("keep-me").archived is False

    job = database.get_cleanup_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.started_at == NOW
    assert job.progress_details.emails_cleaned == 2
    assert job.progress_details.total_batches == 1

    history = database.get_execution_history()
    assert [h.execution_id for h in history] == [results.execution_id]
    policy = database.get_policy(policy_id)
    assert policy.run_count == 1
    assert policy.total_emails_cleaned == 2
    assert policy.last_run_at == NOW


@pytest.fixture
def many_junk(database):
    # j000 is the oldest, so it is processed first
    records = [make_junk(f"j{i:03d}", age_days=900 - i) for i in range(120)]
    database.upsert_records(records)
    return records


@pytest.mark.asyncio
async def test_processes_in_batches(engine, policy_engine, database, executor, many_junk):
    policy_id = _create_policy(policy_engine, action="delete", max_per_run=500)

    job_id = await engine.trigger_manual_cleanup(policy_id, max_emails=120)
    results = await engine.process_cleanup_job(job_id)

    assert [len(call) for call in executor.calls] == [100, 20]
    assert results.emails_deleted == 120
    assert database.get_cleanup_job(job_id).progress_details.current_batch == 2


@pytest.mark.asyncio
async def test_batch_error_halts_job(engine, policy_engine, database, many_junk):
    engine.deletion_executor = FakeDeletionExecutor(database, failing={"j000"})
    policy_id = _create_policy(policy_engine, action="delete", max_per_run=500)

    job_id = await engine.trigger_manual_cleanup(policy_id, max_emails=120)
    results = await engine.process_cleanup_job(job_id)

    assert len(engine.deletion_executor.calls) == 1
    assert results.success is False
    assert results.emails_deleted == 0
    assert len(results.errors) == 1
    job = database.get_cleanup_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress_details.errors_encountered == 1


@pytest.mark.asyncio
async def test_batch_error_continue_policy(engine, policy_engine, database, many_junk):
    engine.config = merge_config(engine.config, {"batch_error_policy": "continue"})
    engine.deletion_executor = FakeDeletionExecutor(database, failing={"j000"})
    policy_id = _create_policy(policy_engine, action="delete", max_per_run=500)

    job_id = await engine.trigger_manual_cleanup(policy_id, max_emails=120)
    results = await engine.process_cleanup_job(job_id)

    assert len(engine.deletion_executor.calls) == 2
    assert results.emails_deleted == 20
    assert results.success is False


class RaisingExecutor:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def delete_records(self, email_ids, halt_on_error=True):
        raise self.exc


@pytest.mark.asyncio
async def test_gmail_error_recorded_as_batch_error(engine, policy_engine, database):
    database.upsert_record(make_junk("junk"))
    engine.deletion_executor = RaisingExecutor(http_error(403))
    policy_id = _create_policy(policy_engine, action="delete")

    job_id = await engine.trigger_manual_cleanup(policy_id)
    results = await engine.process_cleanup_job(job_id)

    assert "Batch 1 failed" in results.errors[0]
    assert database.get_record("junk").archived is False


@pytest.mark.asyncio
async def test_unexpected_error_fails_job(engine, policy_engine, database):
    database.upsert_record(make_junk("junk"))
    engine.deletion_executor = RaisingExecutor(RuntimeError("executor exploded"))
    policy_id = _create_policy(policy_engine, action="delete")

    job_id = await engine.trigger_manual_cleanup(policy_id)
    with pytest.raises(RuntimeError):
        await engine.process_cleanup_job(job_id)

    job = database.get_cleanup_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_details == "executor exploded"
    assert job.started_at <= job.completed_at


@pytest.mark.asyncio
async def test_worker_logs_crashed_job(engine, policy_engine, database, caplog):
    database.upsert_record(make_junk("junk"))
    engine.deletion_executor = RaisingExecutor(RuntimeError("executor exploded"))
    job_id = await engine.trigger_manual_cleanup(_create_policy(policy_engine, action="delete"))

    with caplog.at_level(logging.ERROR, logger="gmail_janitor.engine"):
        await engine._run_job(database.get_cleanup_job(job_id))

    assert f"Job {job_id} crashed" in caplog.text
    assert "executor exploded" in caplog.text
    assert database.get_cleanup_job(job_id).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_policy_removed_after_queueing(engine, policy_engine, database):
    policy_id = _create_policy(policy_engine)
    job_id = await engine.trigger_manual_cleanup(policy_id)
    policy_engine.delete_policy(policy_id)

    with pytest.raises(PolicyNotFoundError):
        await engine.process_cleanup_job(job_id)
    assert database.get_cleanup_job(job_id).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_process_rejects_missing_or_finished_job(engine, policy_engine):
    with pytest.raises(JobNotFoundError):
        await engine.process_cleanup_job("cleanup_manual_missing")

    job_id = await engine.trigger_manual_cleanup(_create_policy(policy_engine))
    await engine.process_cleanup_job(job_id)
    with pytest.raises(JobStateError):
        await engine.process_cleanup_job(job_id)


# --- continuous execution ---


@pytest.mark.asyncio
async def test_continuous_job_runs_every_active_policy(engine, policy_engine, database):
    database.upsert_records([make_record("old1"), make_record("old2"), make_record("mid", age_days=200)])
    first = _create_policy(policy_engine, "first", priority=90, age_days_min=365)
    second = _create_policy(policy_engine, "second", priority=10, age_days_min=30)
    engine.config = merge_config(engine.config, {"continuous_cleanup": {"pause_during_peak_hours": False}})

    job_id = engine._continuous_tick()
    results = await engine.run_pending_jobs()

    assert len(results) == 1
    assert results[0].emails_archived == 3
    job = database.get_cleanup_job(job_id)
    assert job.job_type == "continuous_cleanup"
    assert job.cleanup_metadata.priority == "low"
    assert job.status == JobStatus.COMPLETED
    assert database.get_policy(first).total_emails_cleaned == 2
    assert database.get_policy(second).total_emails_cleaned == 1


@pytest.mark.asyncio
async def test_continuous_job_survives_failing_policy(engine, policy_engine, database, monkeypatch):
    database.upsert_records([make_record("a"), make_record("b")])
    # the broken policy matches nothing, so it never claims the records
    broken = _create_policy(policy_engine, "broken", priority=90, age_days_min=1000)
    _create_policy(policy_engine, "fine", priority=10)
    real = policy_engine.get_emails_for_cleanup

    def flaky(policy, limit=None):
        if policy.id == broken:
            raise OSError("disk on fire")
        return real(policy, limit=limit)

    monkeypatch.setattr(policy_engine, "get_emails_for_cleanup", flaky)
    engine.config = merge_config(engine.config, {"continuous_cleanup": {"pause_during_peak_hours": False}})

    engine._continuous_tick()
    (results,) = await engine.run_pending_jobs()

    assert results.emails_archived == 2
    assert results.errors == [f"Policy {broken} failed: disk on fire"]
    assert results.success is False


@pytest.fixture
def overlapping_policies(database, policy_engine):
    """A careful and an aggressive policy that both match an old record with an attachment."""
    database.upsert_record(make_record("contract", has_attachments=True))
    careful = _create_policy(policy_engine, "careful", priority=90, age_days_min=30)
    aggressive = _create_policy(policy_engine, "aggressive", priority=10, age_days_min=30)
    policy_engine.update_policy(aggressive, {"safety": {"preserve_important": False}})
    return careful, aggressive


@pytest.mark.asyncio
async def test_continuous_job_respects_higher_priority_claims(engine, database, overlapping_policies):
    engine.config = merge_config(engine.config, {"continuous_cleanup": {"pause_during_peak_hours": False}})

    engine._continuous_tick()
    (results,) = await engine.run_pending_jobs()

    assert results.emails_archived == 0
    assert database.get_record("contract").archived is False


@pytest.mark.asyncio
async def test_policy_run_skips_records_claimed_by_higher_priority(engine, database, overlapping_policies):
    _, aggressive = overlapping_policies

    job_id = await engine.trigger_manual_cleanup(aggressive)
    results = await engine.process_cleanup_job(job_id)

    assert results.emails_processed == 1
    assert results.emails_archived == 0
    assert database.get_record("contract").archived is False


@pytest.mark.asyncio
async def test_policy_run_claims_records_when_higher_priority_is_disabled(
    engine, policy_engine, database, overlapping_policies
):
    careful, aggressive = overlapping_policies
    policy_engine.update_policy(careful, {"enabled": False})

    job_id = await engine.trigger_manual_cleanup(aggressive)
    results = await engine.process_cleanup_job(job_id)

    assert results.emails_archived == 1
    assert database.get_record("contract").archived is True


def test_continuous_tick_skipped_in_peak_hours(engine):
    # 12:00 falls inside the default 09:00-17:00 window
    assert engine._continuous_tick() is None
    assert engine.job_queue.get_queue_length() == 0


def test_continuous_tick_respects_capacity(engine):
    engine.config = merge_config(engine.config, {"continuous_cleanup": {"pause_during_peak_hours": False}})
    for _ in range(3):
        assert engine._continuous_tick() is not None
    assert engine._continuous_tick() is None
    assert engine.job_queue.get_queue_length() == 3


def test_continuous_job_shape(engine, database):
    engine.config = merge_config(
        engine.config,
        {"continuous_cleanup": {"pause_during_peak_hours": False, "target_emails_per_minute": 80}},
    )
    job = database.get_cleanup_job(engine._continuous_tick())
    assert job.cleanup_metadata.batch_size == 50
    assert job.cleanup_metadata.target_emails == 80
    assert job.cleanup_metadata.triggered_by == "continuous"


@pytest.mark.parametrize(
    "hour, start, end, expected",
    [
        (12, "09:00", "17:00", True),
        (17, "09:00", "17:00", False),
        (8, "09:00", "17:00", False),
        (23, "22:00", "06:00", True),
        (3, "22:00", "06:00", True),
        (12, "22:00", "06:00", False),
    ],
)
def test_is_peak_hours(hour, start, end, expected):
    now = datetime(2026, 3, 1, hour, 0, tzinfo=timezone.utc)
    assert is_peak_hours(now, PeakHours(start=start, end=end)) is expected


# --- event triggers ---


@pytest.mark.asyncio
async def test_healthy_mailbox_triggers_nothing(engine):
    assert await engine.check_event_triggers() == []


@pytest.mark.asyncio
async def test_storage_warning_queues_event_cleanup(engine, health, database):
    health.health.storage_usage_percent = 85

    (job_id,) = await engine.check_event_triggers()

    job = database.get_cleanup_job(job_id)
    assert job.job_type == "event_cleanup"
    assert job.cleanup_metadata.triggered_by == "storage_warning"
    assert job.cleanup_metadata.priority == "high"
    assert job.cleanup_metadata.batch_size == 100
    assert job.cleanup_metadata.target_emails == 500


@pytest.mark.asyncio
async def test_storage_critical_forces_emergency_policies(engine, health, policy_engine, database):
    health.health.storage_usage_percent = 97
    emergency = _create_policy(policy_engine, enabled=False)
    engine.config = merge_config(
        engine.config,
        {"event_triggers": {"storage_threshold": {"emergency_policies": [emergency, "policy_gone"]}}},
    )

    (job_id,) = await engine.check_event_triggers()

    job = database.get_cleanup_job(job_id)
    assert job.cleanup_metadata.policy_id == emergency
    assert job.cleanup_metadata.priority == "critical"
    assert job.cleanup_metadata.target_emails == 1000
    assert job.request_params["force"] is True

    # forced jobs run even though the policy is disabled
    results = await engine.process_cleanup_job(job_id)
    assert results.success is True


@pytest.mark.asyncio
@pytest.mark.parametrize("query_ms, hit_rate", [(1500, 0.95), (5, 0.5)])
async def test_performance_degradation(engine, health, database, query_ms, hit_rate):
    health.health.average_query_time_ms = query_ms
    health.health.cache_hit_rate = hit_rate

    (job_id,) = await engine.check_event_triggers()

    assert database.get_cleanup_job(job_id).cleanup_metadata.triggered_by == "performance_degradation"


@pytest.mark.asyncio
async def test_disabled_triggers(engine, health):
    health.health.storage_usage_percent = 99
    engine.config = merge_config(engine.config, {"event_triggers": {"storage_threshold": {"enabled": False}}})
    assert await engine.check_event_triggers() == []


# --- cancellation and recovery ---


@pytest.mark.asyncio
async def test_cancel_pending_job(engine, policy_engine, database):
    job_id = await engine.trigger_manual_cleanup(_create_policy(policy_engine))

    assert engine.cancel_job(job_id) == JobStatus.CANCELLED
    assert not engine.job_queue.contains(job_id)
    assert database.get_cleanup_job(job_id).status == JobStatus.CANCELLED
    with pytest.raises(JobStateError):
        engine.cancel_job(job_id)
    with pytest.raises(JobNotFoundError):
        engine.cancel_job("cleanup_manual_missing")


class CancellingExecutor(FakeDeletionExecutor):
    """Requests cancellation of the running job while its first batch executes."""

    engine: CleanupAutomationEngine
    job_id: str

    async def delete_records(self, email_ids, halt_on_error=True):
        if not self.calls:
            assert self.engine.cancel_job(self.job_id) == JobStatus.IN_PROGRESS
        return await super().delete_records(email_ids, halt_on_error)


@pytest.mark.asyncio
async def test_cancel_running_job_stops_at_batch_boundary(engine, policy_engine, database, many_junk):
    executor = CancellingExecutor(database)
    executor.engine = engine
    engine.deletion_executor = executor
    policy_id = _create_policy(policy_engine, action="delete", max_per_run=500)

    job_id = await engine.trigger_manual_cleanup(policy_id, max_emails=120)
    executor.job_id = job_id
    results = await engine.process_cleanup_job(job_id)

    assert results.cancelled is True
    assert results.emails_deleted == 100
    assert len(executor.calls) == 1
    job = database.get_cleanup_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.results.emails_deleted == 100


def _insert(database, job_id: str, status: JobStatus, started_at=None) -> None:
    database.insert_cleanup_job(
        CleanupJob(
            job_id=job_id,
            job_type="event_cleanup",
            cleanup_metadata=CleanupMetadata(triggered_by="storage_warning"),
            created_at=NOW - timedelta(hours=3),
        )
    )
    if status == JobStatus.IN_PROGRESS:
        database.update_cleanup_job(job_id, status=status, started_at=started_at)


def test_reconcile_orphaned_jobs(engine, database):
    _insert(database, "stale", JobStatus.IN_PROGRESS, started_at=NOW - timedelta(hours=2))
    _insert(database, "fresh", JobStatus.IN_PROGRESS, started_at=NOW - timedelta(minutes=5))
    _insert(database, "waiting", JobStatus.PENDING)

    outcome = engine.reconcile_orphaned_jobs()

    assert outcome == {"failed": ["stale"], "requeued": ["waiting"]}
    stale = database.get_cleanup_job("stale")
    assert stale.status == JobStatus.FAILED
    assert "not retried" in stale.error_details
    assert database.get_cleanup_job("fresh").status == JobStatus.IN_PROGRESS
    assert engine.job_queue.contains("waiting")
    # a second pass finds nothing new
    assert engine.reconcile_orphaned_jobs() == {"failed": [], "requeued": []}


# --- configuration, status and services ---


@pytest.mark.asyncio
async def test_update_configuration_persists(engine, database):
    config = await engine.update_configuration({"batch_error_policy": "continue"})

    assert config.halt_on_error is False
    assert database.load_automation_config()["batch_error_policy"] == "continue"
    with pytest.raises(ValueError):
        await engine.update_configuration({"batch_error_policy": "explode"})


@pytest.mark.asyncio
async def test_initialize_loads_persisted_config(database, policy_engine, executor, health, clock):
    database.save_automation_config({"scheduler_enabled": False})
    engine = CleanupAutomationEngine(database, policy_engine, JobQueue(), executor, health, clock=clock)

    await engine.initialize(start_services=False)

    assert engine.get_configuration().scheduler_enabled is False


@pytest.mark.asyncio
async def test_automation_status(engine, policy_engine):
    await engine.trigger_manual_cleanup(_create_policy(policy_engine))

    status = engine.get_automation_status()

    assert status["running"] is False
    assert status["queue_length"] == 1
    assert status["jobs_by_status"]["PENDING"] == 1
    assert status["active_schedules"] == 0
    assert status["last_execution"] is None


@pytest.mark.asyncio
async def test_background_services_process_jobs(database, policy_engine, executor):
    database.upsert_record(make_record("a"))
    _create_policy(policy_engine)
    database.save_automation_config(
        {
            "continuous_cleanup": {
                "enabled": True,
                "target_emails_per_minute": 600,
                "pause_during_peak_hours": False,
            }
        }
    )
    engine = CleanupAutomationEngine(
        database,
        policy_engine,
        JobQueue(),
        executor,
        FakeHealthSource(),
        monitor_interval=0.05,
        worker_poll_seconds=0.01,
    )

    await engine.initialize()
    assert engine.get_automation_status()["running"] is True
    assert engine.scheduler.running
    for _ in range(200):
        if database.find_jobs_by_status(JobStatus.COMPLETED):
            break
        await asyncio.sleep(0.01)
    await engine.shutdown()

    assert database.find_jobs_by_status(JobStatus.COMPLETED)
    assert database.get_record("a").archived is True
    assert not engine.scheduler.running
    assert engine.get_automation_status()["running"] is False
