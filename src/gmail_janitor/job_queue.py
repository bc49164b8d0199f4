"""In-memory FIFO of pending job ids, with per-owner lanes."""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable[object]]


class JobQueue:
    """Ordered job ids plus a registry of handlers keyed by job type.

    Ids without an owner go to the system lane. ``retrieve_job()`` drains the
    system lane first, then takes one id from each owner lane in turn.
    Nothing here survives a restart; the job table is the durable record.
    """

    def __init__(self) -> None:
        self._system: deque[str] = deque()
        self._owners: OrderedDict[str, deque[str]] = OrderedDict()
        self._handlers: dict[str, JobHandler] = {}

    def add_job(self, job_id: str, owner_id: str | None = None) -> None:
        if owner_id is None:
            self._system.append(job_id)
        else:
            self._owners.setdefault(owner_id, deque()).append(job_id)
        logger.debug("Queued job %s (queue length %d)", job_id, self.get_queue_length())

    def retrieve_job(self, owner_id: str | None = None) -> str | None:
        """Pop the next job id, or None when nothing is queued."""
        if owner_id is not None:
            lane = self._owners.get(owner_id)
            if not lane:
                return None
            job_id = lane.popleft()
            if not lane:
                del self._owners[owner_id]
            return job_id

        if self._system:
            return self._system.popleft()

        while self._owners:
            owner, lane = self._owners.popitem(last=False)
            if not lane:
                continue
            job_id = lane.popleft()
            if lane:
                # Rotate this owner to the back for round-robin fairness.
                self._owners[owner] = lane
            return job_id
        return None

    def remove_job(self, job_id: str) -> bool:
        """Drop a queued id wherever it sits; True when it was found."""
        if job_id in self._system:
            self._system.remove(job_id)
            return True
        for owner, lane in list(self._owners.items()):
            if job_id in lane:
                lane.remove(job_id)
                if not lane:
                    del self._owners[owner]
                return True
        return False

    def contains(self, job_id: str) -> bool:
        return job_id in self._system or any(job_id in lane for lane in self._owners.values())

    def register_job_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler
        logger.debug("Registered handler for job type %s", job_type)

    def get_handler(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    async def dispatch(self, job_id: str, job_type: str) -> object:
        handler = self.get_handler(job_type)
        if handler is None:
            raise KeyError(f"No handler registered for job type {job_type!r}")
        return await handler(job_id)

    def get_queue_length(self, owner_id: str | None = None) -> int:
        if owner_id is not None:
            return len(self._owners.get(owner_id, ()))
        return len(self._system) + sum(len(lane) for lane in self._owners.values())

    def clear_queue(self) -> None:
        count = self.get_queue_length()
        self._system.clear()
        self._owners.clear()
        logger.debug("Cleared %d jobs from queue", count)
