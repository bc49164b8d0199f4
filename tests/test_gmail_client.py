"""Tests for the Gmail deletion executor."""

import pytest
from conftest import FakeGmailService, http_error, make_record, no_sleep

from gmail_janitor.gmail_client import (
    GmailDeletionExecutor,
    _execute_batch_modify,
    _is_retryable_http_error,
    get_mailbox_profile,
)


@pytest.fixture
def records(database):
    records = [make_record(f"m{i:03d}") for i in range(150)]
    database.upsert_records(records)
    return records


def _executor(service, database) -> GmailDeletionExecutor:
    return GmailDeletionExecutor(service, database, sleep=no_sleep)


@pytest.mark.asyncio
async def test_deletes_in_sub_batches(database, records):
    service = FakeGmailService()
    ids = [r.id for r in records[:120]]

    result = await _executor(service, database).delete_records(ids)

    assert result.deleted_count == 120
    assert result.errors == []
    assert [len(call["ids"]) for call in service.calls] == [50, 50, 20]
    assert service.calls[0]["addLabelIds"] == ["TRASH"]
    assert database.get_record("m119").archive_location == "trash"
    assert database.get_record("m120").archived is False


@pytest.mark.asyncio
async def test_second_batch_failure_halts(database, records):
    service = FakeGmailService(failures={2: http_error(400)})
    ids = [r.id for r in records[:100]]

    result = await _executor(service, database).delete_records(ids, halt_on_error=True)

    assert result.deleted_count == 50
    assert result.deleted_ids == ids[:50]
    assert len(result.errors) == 1
    assert "batch 2" in result.errors[0]
    assert database.get_record("m049").archived is True
    assert database.get_record("m050").archived is False


@pytest.mark.asyncio
async def test_continue_past_failed_batch(database, records):
    service = FakeGmailService(failures={2: http_error(400)})
    ids = [r.id for r in records]

    result = await _executor(service, database).delete_records(ids, halt_on_error=False)

    assert result.deleted_count == 100
    assert len(service.calls) == 3
    assert "batch 2" in result.errors[0]
    assert database.get_record("m149").archived is True


@pytest.mark.asyncio
async def test_retries_transient_errors(database, records, monkeypatch):
    monkeypatch.setattr(_execute_batch_modify.retry, "sleep", lambda seconds: None)
    service = FakeGmailService(failures={1: http_error(503)})

    result = await _executor(service, database).delete_records(["m000"])

    assert result.deleted_count == 1
    assert len(service.calls) == 2


@pytest.mark.asyncio
async def test_empty_request(database):
    service = FakeGmailService()
    result = await _executor(service, database).delete_records([])
    assert result.deleted_count == 0
    assert service.calls == []


def test_retryable_statuses():
    assert _is_retryable_http_error(http_error(429))
    assert _is_retryable_http_error(http_error(503))
    assert not _is_retryable_http_error(http_error(404))
    assert not _is_retryable_http_error(ValueError("nope"))


def test_mailbox_profile():
    assert get_mailbox_profile(FakeGmailService())["emailAddress"] == "me@example.com"
