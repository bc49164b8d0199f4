"""Gmail API calls that move cleaned-up messages to trash."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from googleapiclient.errors import HttpError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .constants import (
    DELETE_BATCH_DELAY,
    DELETE_BATCH_SIZE,
    TRASH_LABELS_ADD,
    TRASH_LABELS_REMOVE,
)
from .database import CleanupDatabase
from .models import DeleteResult

logger = logging.getLogger(__name__)


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in (429, 500, 503)


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=60),
    stop=stop_after_attempt(5),
    reraise=True,
)
def _execute_batch_modify(service, msg_ids: list[str]) -> None:
    service.users().messages().batchModify(
        userId="me",
        body={
            "ids": msg_ids,
            "addLabelIds": TRASH_LABELS_ADD,
            "removeLabelIds": TRASH_LABELS_REMOVE,
        },
    ).execute()


def get_mailbox_profile(service) -> dict:
    """Return the authenticated user's Gmail profile (address and message totals)."""
    return service.users().getProfile(userId="me").execute()


class GmailDeletionExecutor:
    """Trashes messages in Gmail in sub-batches and mirrors the result locally.

    The Gmail call and the local ``mark_deleted`` are not atomic: ids that
    Gmail accepted are marked even if a later sub-batch fails.
    """

    def __init__(
        self,
        service,
        database: CleanupDatabase,
        batch_size: int = DELETE_BATCH_SIZE,
        batch_delay: float = DELETE_BATCH_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service = service
        self.database = database
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def delete_records(
        self, email_ids: list[str], halt_on_error: bool = True
    ) -> DeleteResult:
        """Move ``email_ids`` to trash.

        With ``halt_on_error`` the first failing sub-batch stops the run;
        otherwise its error is recorded and the remaining sub-batches proceed.
        """
        result = DeleteResult()
        total_batches = (len(email_ids) + self.batch_size - 1) // self.batch_size

        for batch_num in range(1, total_batches + 1):
            start = (batch_num - 1) * self.batch_size
            chunk = email_ids[start : start + self.batch_size]
            try:
                await asyncio.to_thread(_execute_batch_modify, self.service, chunk)
            except (HttpError, OSError) as exc:
                message = f"Failed to delete batch {batch_num}: {exc}"
                logger.error(message)
                result.errors.append(message)
                if halt_on_error:
                    break
                continue

            result.deleted_ids.extend(chunk)
            logger.debug("Trashed batch %d/%d (%d messages)", batch_num, total_batches, len(chunk))
            if batch_num < total_batches:
                await self._sleep(self.batch_delay)

        if result.deleted_ids:
            self.database.mark_deleted(result.deleted_ids)
        result.deleted_count = len(result.deleted_ids)
        return result
