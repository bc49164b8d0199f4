"""Cleanup automation: job creation, execution and the background services."""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import sqlite3
import uuid
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Protocol

from googleapiclient.errors import HttpError

from .config import AutomationConfig, PeakHours, merge_config
from .constants import (
    CONTINUOUS_BATCH_CAP,
    EMERGENCY_MAX_EMAILS,
    EVENT_BATCH_SIZE,
    EVENT_TARGET_EMAILS,
    INTER_BATCH_DELAY,
    MANUAL_BATCH_CAP,
    MONITOR_INTERVAL_SECONDS,
    ORPHANED_JOB_TIMEOUT_MINUTES,
    WORKER_POLL_SECONDS,
)
from .database import CleanupDatabase
from .errors import (
    CleanupError,
    JobNotFoundError,
    JobPersistenceError,
    JobStateError,
    PolicyDisabledError,
    PolicyNotFoundError,
)
from .job_queue import JobQueue
from .models import (
    JOB_TYPES,
    CleanupCandidate,
    CleanupJob,
    CleanupMetadata,
    CleanupPolicy,
    CleanupResults,
    DeleteResult,
    JobStatus,
    SystemHealth,
    utcnow,
)
from .policy_engine import CleanupPolicyEngine
from .scheduler import CleanupScheduler

logger = logging.getLogger(__name__)

# Failures a single job may end with; anything else is a bug and propagates.
_JOB_ERRORS = (CleanupError, sqlite3.Error, HttpError, OSError)


class DeletionExecutor(Protocol):
    async def delete_records(
        self, email_ids: list[str], halt_on_error: bool = True
    ) -> DeleteResult: ...


class HealthSource(Protocol):
    def get_current_health(self) -> SystemHealth: ...


def _parse_hhmm(value: str) -> time:
    hour, minute = (int(part) for part in value.split(":"))
    return time(hour, minute)


def is_peak_hours(now: datetime, peak_hours: PeakHours) -> bool:
    """True when ``now`` falls in [start, end); windows may wrap past midnight."""
    start = _parse_hhmm(peak_hours.start)
    end = _parse_hhmm(peak_hours.end)
    current = now.time().replace(second=0, microsecond=0)
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def _new_job_id(kind: str) -> str:
    return f"cleanup_{kind}_{uuid.uuid4().hex[:12]}"


def _candidate_summary(candidate: CleanupCandidate) -> dict:
    return {
        "email_id": candidate.email.id,
        "action": candidate.recommended_action,
        "policy_id": candidate.policy.id,
        "score": candidate.staleness_score.total_score,
        "size": candidate.email.size or 0,
    }


class CleanupAutomationEngine:
    """Creates cleanup jobs, runs them in batches, and drives background triggers.

    All collaborators are injected. ``sleep`` and ``clock`` are injectable so
    the background loops can be driven deterministically.
    """

    def __init__(
        self,
        database: CleanupDatabase,
        policy_engine: CleanupPolicyEngine,
        job_queue: JobQueue,
        deletion_executor: DeletionExecutor,
        health_source: HealthSource,
        config: AutomationConfig | None = None,
        scheduler: CleanupScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        inter_batch_delay: float = INTER_BATCH_DELAY,
        monitor_interval: float = MONITOR_INTERVAL_SECONDS,
        worker_poll_seconds: float = WORKER_POLL_SECONDS,
    ) -> None:
        self.database = database
        self.policy_engine = policy_engine
        self.job_queue = job_queue
        self.deletion_executor = deletion_executor
        self.health_source = health_source
        self.config = config or AutomationConfig()
        self._clock = clock
        self._sleep = sleep
        self.inter_batch_delay = inter_batch_delay
        self.monitor_interval = monitor_interval
        self.worker_poll_seconds = worker_poll_seconds
        self.scheduler = scheduler or CleanupScheduler(
            policy_engine,
            functools.partial(self.trigger_manual_cleanup, triggered_by="schedule"),
            clock=clock,
            sleep=sleep,
        )

        self._services: list[asyncio.Task] = []
        self._inflight: dict[str, asyncio.Task] = {}
        self._running = False

        for job_type in JOB_TYPES:
            self.job_queue.register_job_handler(job_type, self.process_cleanup_job)

    # --- lifecycle ---

    async def initialize(self, start_services: bool = True) -> dict:
        """Load persisted settings, reconcile leftover jobs, start background services."""
        stored = self.database.load_automation_config()
        if stored:
            self.config = merge_config(self.config, stored)
        reconciled = self.reconcile_orphaned_jobs()
        if start_services:
            self._start_services()
        logger.info("Cleanup automation initialized")
        return reconciled

    async def shutdown(self) -> None:
        """Stop the background loops, then wait for in-flight jobs to finish."""
        await self._stop_services()
        if self._inflight:
            logger.info("Waiting for %d running jobs", len(self._inflight))
            await asyncio.wait(list(self._inflight.values()))
        logger.info("Cleanup automation stopped")

    def _start_services(self) -> None:
        self._running = True
        self._services.append(asyncio.create_task(self._worker_loop()))
        if self.config.continuous_cleanup.enabled:
            self._services.append(asyncio.create_task(self._continuous_loop()))
        triggers = self.config.event_triggers
        if triggers.storage_threshold.enabled or triggers.performance_threshold.enabled:
            self._services.append(asyncio.create_task(self._event_loop()))
        if self.config.scheduler_enabled:
            self.scheduler.start()

    async def _stop_services(self) -> None:
        self._running = False
        for task in self._services:
            task.cancel()
        for task in self._services:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._services.clear()
        await self.scheduler.shutdown()

    # --- background loops ---

    async def _worker_loop(self) -> None:
        while True:
            limit = max(1, self.config.continuous_cleanup.max_concurrent_operations)
            while len(self._inflight) < limit:
                job_id = self.job_queue.retrieve_job()
                if job_id is None:
                    break
                self._start_job(job_id)
            await self._sleep(self.worker_poll_seconds)

    def _start_job(self, job_id: str) -> None:
        job = self.database.get_cleanup_job(job_id)
        if job is None or job.status != JobStatus.PENDING:
            logger.debug("Skipping queued job %s (not pending)", job_id)
            return
        task = asyncio.create_task(self._run_job(job))
        self._inflight[job_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(job_id, None))

    async def _run_job(self, job: CleanupJob) -> None:
        try:
            await self.job_queue.dispatch(job.job_id, job.job_type)
        except _JOB_ERRORS as exc:
            logger.error("Job %s failed: %s", job.job_id, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Job %s crashed", job.job_id)

    async def _continuous_loop(self) -> None:
        interval = 60 / self.config.continuous_cleanup.target_emails_per_minute
        while True:
            try:
                self._continuous_tick()
            except sqlite3.Error:
                logger.exception("Continuous cleanup tick failed")
            await self._sleep(interval)

    async def _event_loop(self) -> None:
        while True:
            try:
                await self.check_event_triggers()
            except _JOB_ERRORS:
                logger.exception("Event trigger check failed")
            await self._sleep(self.monitor_interval)

    def _continuous_tick(self) -> str | None:
        """Queue one continuous job unless paused or already at capacity."""
        cfg = self.config.continuous_cleanup
        if cfg.pause_during_peak_hours and is_peak_hours(self._clock(), cfg.peak_hours):
            logger.debug("Continuous cleanup paused during peak hours")
            return None
        load = self.job_queue.get_queue_length() + len(self._inflight)
        if load >= cfg.max_concurrent_operations:
            logger.debug("Continuous cleanup skipped, %d jobs queued or running", load)
            return None

        job = CleanupJob(
            job_id=_new_job_id("continuous"),
            job_type="continuous_cleanup",
            request_params={"triggered_by": "continuous", "target_emails": cfg.target_emails_per_minute},
            cleanup_metadata=CleanupMetadata(
                triggered_by="continuous",
                priority="low",
                batch_size=min(cfg.target_emails_per_minute, CONTINUOUS_BATCH_CAP),
                target_emails=cfg.target_emails_per_minute,
            ),
            created_at=self._clock(),
        )
        return self._submit_job(job)

    # --- job creation ---

    def _submit_job(self, job: CleanupJob) -> str:
        self.job_queue.add_job(job.job_id)
        try:
            self.database.insert_cleanup_job(job)
        except sqlite3.Error:
            self.job_queue.remove_job(job.job_id)
            raise
        if self.database.get_cleanup_job(job.job_id) is None:
            self.job_queue.remove_job(job.job_id)
            raise JobPersistenceError(job.job_id)
        logger.info("Queued %s job %s", job.job_type, job.job_id)
        return job.job_id

    async def trigger_manual_cleanup(
        self,
        policy_id: str,
        dry_run: bool = False,
        max_emails: int | None = None,
        force: bool = False,
        triggered_by: str = "user_request",
        priority: str = "normal",
    ) -> str:
        """Queue a cleanup run of one policy and return the new job id.

        Raises PolicyNotFoundError, or PolicyDisabledError for a disabled
        policy unless ``force`` is set.
        """
        policy = self.policy_engine.get_policy(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        if not policy.enabled and not force:
            raise PolicyDisabledError(policy_id)

        target = max_emails or policy.safety.max_emails_per_run
        kind = {"user_request": "manual", "schedule": "scheduled"}.get(triggered_by, "event")
        job = CleanupJob(
            job_id=_new_job_id(kind),
            job_type="scheduled_cleanup",
            request_params={
                "policy_id": policy_id,
                "dry_run": dry_run,
                "max_emails": max_emails,
                "force": force,
            },
            cleanup_metadata=CleanupMetadata(
                policy_id=policy_id,
                triggered_by=triggered_by,
                priority=priority,
                batch_size=min(target, MANUAL_BATCH_CAP),
                target_emails=target,
            ),
            created_at=self._clock(),
        )
        return self._submit_job(job)

    def _trigger_event_cleanup(self, trigger: str) -> str:
        job = CleanupJob(
            job_id=_new_job_id("event"),
            job_type="event_cleanup",
            request_params={"triggered_by": trigger, "priority": "high"},
            cleanup_metadata=CleanupMetadata(
                triggered_by=trigger,
                priority="high",
                batch_size=EVENT_BATCH_SIZE,
                target_emails=EVENT_TARGET_EMAILS,
            ),
            created_at=self._clock(),
        )
        logger.warning("Event cleanup triggered: %s", trigger)
        return self._submit_job(job)

    async def _trigger_emergency_cleanup(self, trigger: str) -> list[str]:
        policies = self.config.event_triggers.storage_threshold.emergency_policies
        logger.warning("Emergency cleanup triggered (%s) for %d policies", trigger, len(policies))
        job_ids: list[str] = []
        for policy_id in policies:
            try:
                job_ids.append(
                    await self.trigger_manual_cleanup(
                        policy_id,
                        max_emails=EMERGENCY_MAX_EMAILS,
                        force=True,
                        triggered_by=trigger,
                        priority="critical",
                    )
                )
            except PolicyNotFoundError:
                logger.error("Emergency policy %s no longer exists", policy_id)
        return job_ids

    async def check_event_triggers(self) -> list[str]:
        """Poll the health source and queue cleanups for breached thresholds."""
        health = self.health_source.get_current_health()
        triggers = self.config.event_triggers
        job_ids: list[str] = []

        storage = triggers.storage_threshold
        if storage.enabled:
            if health.storage_usage_percent >= storage.critical_threshold_percent:
                job_ids.extend(await self._trigger_emergency_cleanup("storage_critical"))
            elif health.storage_usage_percent >= storage.warning_threshold_percent:
                job_ids.append(self._trigger_event_cleanup("storage_warning"))

        perf = triggers.performance_threshold
        if perf.enabled and (
            health.average_query_time_ms > perf.query_time_threshold_ms
            or health.cache_hit_rate < perf.cache_hit_rate_threshold
        ):
            job_ids.append(self._trigger_event_cleanup("performance_degradation"))

        return job_ids

    # --- execution ---

    async def run_pending_jobs(self) -> list[CleanupResults]:
        """Drain the queue in-line, one job after another."""
        results: list[CleanupResults] = []
        while True:
            job_id = self.job_queue.retrieve_job()
            if job_id is None:
                break
            job = self.database.get_cleanup_job(job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue
            try:
                results.append(await self.process_cleanup_job(job_id))
            except _JOB_ERRORS as exc:
                logger.error("Job %s failed: %s", job_id, exc)
        return results

    def _fail_job(self, job_id: str, message: str) -> None:
        job = self.database.get_cleanup_job(job_id)
        if job is None or job.status.is_terminal:
            return
        self.database.update_cleanup_job(
            job_id, status=JobStatus.FAILED, error_details=message, completed_at=self._clock()
        )

    async def process_cleanup_job(self, job_id: str) -> CleanupResults:
        """Run a pending job to completion and persist its results.

        Any error marks the job FAILED with ``error_details`` and is re-raised.
        """
        job = self.database.get_cleanup_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PENDING:
            raise JobStateError(f"Job {job_id} is {job.status.value}, expected PENDING")

        policy: CleanupPolicy | None = None
        policy_id = job.cleanup_metadata.policy_id
        if policy_id:
            policy = self.policy_engine.get_policy(policy_id)
            error: CleanupError | None = None
            if policy is None:
                error = PolicyNotFoundError(policy_id)
            elif not policy.enabled and not job.request_params.get("force"):
                error = PolicyDisabledError(policy_id)
            if error is not None:
                self._fail_job(job_id, str(error))
                raise error

        started = self._clock()
        self.database.update_cleanup_job(job_id, status=JobStatus.IN_PROGRESS, started_at=started)
        logger.info("Started job %s (%s)", job_id, job.job_type)

        try:
            if policy is not None:
                results = await self._execute_policy_cleanup(job, policy)
            else:
                results = await self._execute_continuous_cleanup(job)
            results.started_at = started
            results.completed_at = max(self._clock(), started)

            if results.cancelled:
                status = JobStatus.CANCELLED
                progress = job.progress
            else:
                status = JobStatus.COMPLETED
                progress = 100
            self.database.update_cleanup_job(
                job_id,
                status=status,
                progress=progress,
                progress_details=job.progress_details,
                results=results,
                completed_at=results.completed_at,
            )
            if not results.dry_run:
                self.database.record_cleanup_execution(results)
                if policy is not None:
                    self.database.update_policy_run_stats(
                        policy.id,
                        results.emails_deleted + results.emails_archived,
                        run_at=results.completed_at,
                    )
        except Exception as exc:
            self._fail_job(job_id, str(exc))
            raise

        logger.info(
            "Job %s %s: %d deleted, %d archived, %d errors",
            job_id,
            status.value.lower(),
            results.emails_deleted,
            results.emails_archived,
            len(results.errors),
        )
        return results

    def _new_results(self, job: CleanupJob, policy_id: str | None) -> CleanupResults:
        now = self._clock()
        return CleanupResults(
            execution_id=f"exec_{uuid.uuid4().hex[:12]}",
            policy_id=policy_id,
            started_at=now,
            completed_at=now,
            dry_run=job.dry_run,
        )

    def _evaluation_policies(self, policy: CleanupPolicy) -> list[CleanupPolicy]:
        """Active policies plus ``policy`` itself when it runs forced while disabled."""
        policies = self.policy_engine.get_active_policies()
        if all(p.id != policy.id for p in policies):
            policies.append(policy)
        return policies

    async def _execute_policy_cleanup(
        self, job: CleanupJob, policy: CleanupPolicy, limit: int | None = None
    ) -> CleanupResults:
        results = self._new_results(job, policy.id)
        emails = self.policy_engine.get_emails_for_cleanup(
            policy, limit=limit or job.cleanup_metadata.target_emails
        )
        evaluation = self.policy_engine.evaluate_emails_for_cleanup(
            emails, self._evaluation_policies(policy)
        )
        # records claimed by a higher-priority policy stay with that policy
        candidates = [c for c in evaluation.cleanup_candidates if c.policy.id == policy.id]

        results.emails_processed = len(emails)
        job.progress_details.emails_analyzed += len(emails)

        if job.dry_run:
            results.candidates = [_candidate_summary(c) for c in candidates]
            results.emails_deleted = sum(1 for c in candidates if c.recommended_action == "delete")
            results.emails_archived = sum(1 for c in candidates if c.recommended_action == "archive")
            results.storage_freed = sum(c.email.size or 0 for c in candidates)
            logger.info("Dry run of policy %s: %d candidates", policy.id, len(candidates))
            return results

        await self._process_batches(job, candidates, results)
        results.success = not results.errors
        return results

    async def _process_batches(
        self, job: CleanupJob, candidates: list[CleanupCandidate], results: CleanupResults
    ) -> None:
        batch_size = max(1, job.cleanup_metadata.batch_size)
        total_batches = math.ceil(len(candidates) / batch_size)
        progress = job.progress_details
        progress.total_batches += total_batches
        halt = self.config.halt_on_error

        for index in range(total_batches):
            if self.database.is_cancellation_requested(job.job_id):
                results.cancelled = True
                logger.info("Job %s cancelled after %d batches", job.job_id, index)
                break

            batch = candidates[index * batch_size : (index + 1) * batch_size]
            progress.current_batch += 1
            job.progress = int(index / total_batches * 100)
            self.database.update_cleanup_job(
                job.job_id, progress=job.progress, progress_details=progress
            )

            to_delete = [c for c in batch if c.recommended_action == "delete"]
            to_archive = [c for c in batch if c.recommended_action == "archive"]
            batch_failed = False

            if to_delete:
                try:
                    outcome = await self.deletion_executor.delete_records(
                        [c.email.id for c in to_delete], halt_on_error=halt
                    )
                except (HttpError, OSError) as exc:
                    outcome = DeleteResult(errors=[f"Batch {index + 1} failed: {exc}"])
                deleted = set(outcome.deleted_ids)
                results.emails_deleted += outcome.deleted_count
                results.storage_freed += sum(
                    c.email.size or 0 for c in to_delete if c.email.id in deleted
                )
                if outcome.errors:
                    batch_failed = True
                    results.errors.extend(outcome.errors)
                    progress.errors_encountered += len(outcome.errors)

            if to_archive and not (batch_failed and halt):
                self.database.mark_archived([c.email.id for c in to_archive])
                results.emails_archived += len(to_archive)
                results.storage_freed += sum(c.email.size or 0 for c in to_archive)

            progress.emails_cleaned = results.emails_deleted + results.emails_archived
            progress.storage_freed = results.storage_freed

            if batch_failed and halt:
                logger.error("Job %s halted at batch %d", job.job_id, index + 1)
                break
            if index < total_batches - 1:
                await self._sleep(self.inter_batch_delay)

    async def _execute_continuous_cleanup(self, job: CleanupJob) -> CleanupResults:
        """Apply every active policy, each capped at the job's target."""
        results = self._new_results(job, None)
        for policy in self.policy_engine.get_active_policies():
            if self.database.is_cancellation_requested(job.job_id):
                results.cancelled = True
                break
            cap = min(policy.safety.max_emails_per_run, job.cleanup_metadata.target_emails)
            try:
                outcome = await self._execute_policy_cleanup(job, policy, limit=cap)
            except (CleanupError, HttpError, OSError) as exc:
                logger.error("Policy %s failed during %s: %s", policy.id, job.job_id, exc)
                results.errors.append(f"Policy {policy.id} failed: {exc}")
                continue

            results.emails_processed += outcome.emails_processed
            results.emails_deleted += outcome.emails_deleted
            results.emails_archived += outcome.emails_archived
            results.storage_freed += outcome.storage_freed
            results.errors.extend(outcome.errors)
            results.candidates.extend(outcome.candidates)
            if not job.dry_run:
                self.database.update_policy_run_stats(
                    policy.id, outcome.emails_deleted + outcome.emails_archived
                )
            if outcome.cancelled:
                results.cancelled = True
                break

        results.success = not results.errors
        return results

    # --- job control ---

    def cancel_job(self, job_id: str) -> JobStatus:
        """Cancel a job.

        Pending jobs leave the queue and end CANCELLED at once; running jobs
        stop at their next batch boundary. Returns the status after the call.
        """
        job = self.database.get_cleanup_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status.is_terminal:
            raise JobStateError(f"Job {job_id} is already {job.status.value}")

        self.database.request_job_cancellation(job_id)
        if job.status == JobStatus.PENDING:
            self.job_queue.remove_job(job_id)
            self.database.update_cleanup_job(
                job_id,
                status=JobStatus.CANCELLED,
                error_details="Cancelled before start",
                completed_at=self._clock(),
            )
            logger.info("Cancelled pending job %s", job_id)
            return JobStatus.CANCELLED

        logger.info("Cancellation requested for running job %s", job_id)
        return JobStatus.IN_PROGRESS

    def reconcile_orphaned_jobs(
        self, stale_after: timedelta = timedelta(minutes=ORPHANED_JOB_TIMEOUT_MINUTES)
    ) -> dict:
        """Fail long-running leftovers and re-queue pending rows missing from the queue.

        Stale IN_PROGRESS jobs are never retried: their destructive work may
        be half done.
        """
        now = self._clock()
        failed: list[str] = []
        requeued: list[str] = []

        for job in self.database.find_jobs_by_status(JobStatus.IN_PROGRESS):
            if job.job_id in self._inflight:
                continue
            started = job.started_at or job.created_at
            if started is not None and now - started < stale_after:
                continue
            minutes = int(stale_after.total_seconds() // 60)
            self.database.update_cleanup_job(
                job.job_id,
                status=JobStatus.FAILED,
                error_details=f"Orphaned: still in progress after {minutes} minutes, not retried",
                completed_at=now,
            )
            failed.append(job.job_id)

        for job in reversed(self.database.find_jobs_by_status(JobStatus.PENDING)):
            if not self.job_queue.contains(job.job_id):
                self.job_queue.add_job(job.job_id)
                requeued.append(job.job_id)

        if failed or requeued:
            logger.warning(
                "Reconciled jobs: %d marked failed, %d re-queued", len(failed), len(requeued)
            )
        return {"failed": failed, "requeued": requeued}

    # --- configuration and status ---

    def get_configuration(self) -> AutomationConfig:
        return merge_config(self.config, {})

    async def update_configuration(self, changes: dict) -> AutomationConfig:
        """Merge ``changes`` into the settings, persist them and restart services."""
        self.config = merge_config(self.config, changes)
        self.database.save_automation_config(self.config.to_dict())
        logger.info("Automation configuration updated")
        if self._running:
            await self._stop_services()
            self._start_services()
        return self.get_configuration()

    def get_automation_status(self) -> dict:
        history = self.database.get_execution_history(limit=1)
        return {
            "running": self._running,
            "continuous_cleanup_enabled": self.config.continuous_cleanup.enabled,
            "scheduler_running": self.scheduler.running,
            "active_schedules": self.scheduler.get_active_schedule_count(),
            "next_scheduled_cleanup": self.scheduler.get_next_scheduled_time(),
            "queue_length": self.job_queue.get_queue_length(),
            "active_jobs": sorted(self._inflight),
            "jobs_by_status": {
                status.value: len(self.database.find_jobs_by_status(status))
                for status in JobStatus
            },
            "last_execution": history[0] if history else None,
        }
