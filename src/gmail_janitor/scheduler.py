"""Time-of-day scheduling of policy runs."""

from __future__ import annotations

import asyncio
import calendar
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from .constants import SCHEDULER_POLL_SECONDS
from .errors import CleanupError
from .models import CleanupPolicy, PolicySchedule, utcnow
from .policy_engine import CleanupPolicyEngine

logger = logging.getLogger(__name__)

SCHEDULED_FREQUENCIES = ("daily", "weekly", "monthly")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_next_run(
    schedule: PolicySchedule | None,
    last_run: datetime | None,
    now: datetime,
) -> datetime | None:
    """Next time a policy with ``schedule`` is due, in ``now``'s timezone.

    Never-run policies are due at the next occurrence of the schedule time
    (today if it has not passed yet). Otherwise the period is added to the
    day of the last run. Continuous or disabled schedules return None.
    """
    if schedule is None or not schedule.enabled or schedule.frequency not in SCHEDULED_FREQUENCIES:
        return None

    hour, minute = (int(part) for part in schedule.time.split(":"))

    if last_run is None:
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate < now:
            candidate += timedelta(days=1)
        return candidate

    base = last_run.astimezone(now.tzinfo) if now.tzinfo else last_run
    base = base.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if schedule.frequency == "daily":
        return base + timedelta(days=1)
    if schedule.frequency == "weekly":
        return base + timedelta(weeks=1)
    return _add_months(base, 1)


class CleanupScheduler:
    """Polls active policies and fires ``trigger(policy_id)`` when one is due."""

    def __init__(
        self,
        policy_engine: CleanupPolicyEngine,
        trigger: Callable[[str], Awaitable[str]],
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        poll_seconds: float = SCHEDULER_POLL_SECONDS,
    ) -> None:
        self.policy_engine = policy_engine
        self._trigger = trigger
        self._clock = clock
        self._sleep = sleep
        self.poll_seconds = poll_seconds
        self._next_runs: dict[str, datetime] = {}
        self._task: asyncio.Task | None = None

    def _scheduled_policies(self) -> list[CleanupPolicy]:
        return [
            p
            for p in self.policy_engine.get_active_policies()
            if p.schedule and p.schedule.enabled and p.schedule.frequency in SCHEDULED_FREQUENCIES
        ]

    async def tick(self) -> list[str]:
        """Fire every due policy once; returns the job ids created."""
        now = self._clock()
        policies = self._scheduled_policies()
        known = {p.id for p in policies}
        for policy_id in list(self._next_runs):
            if policy_id not in known:
                del self._next_runs[policy_id]

        job_ids: list[str] = []
        for policy in policies:
            due = self._next_runs.get(policy.id)
            if due is None:
                due = compute_next_run(policy.schedule, policy.last_run_at, now)
                self._next_runs[policy.id] = due
            if now < due:
                continue

            try:
                job_ids.append(await self._trigger(policy.id))
                logger.info("Scheduled run of policy %s started", policy.id)
            except CleanupError as exc:
                logger.error("Scheduled run of policy %s failed: %s", policy.id, exc)
            self._next_runs[policy.id] = compute_next_run(policy.schedule, now, now)
        return job_ids

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except sqlite3.Error:
                logger.exception("Scheduler tick failed")
            await self._sleep(self.poll_seconds)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Scheduler already running")
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduler started with %d active schedules", self.get_active_schedule_count())

    async def shutdown(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_next_scheduled_time(self) -> datetime | None:
        now = self._clock()
        times = [
            self._next_runs.get(p.id) or compute_next_run(p.schedule, p.last_run_at, now)
            for p in self._scheduled_policies()
        ]
        times = [t for t in times if t is not None]
        return min(times) if times else None

    def get_active_schedule_count(self) -> int:
        return len(self._scheduled_policies())
