# tests/test_retry_service.py
import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from clinic_interop import crud, models
from clinic_interop.database import SessionLocal
from clinic_interop.exceptions import LedgerWriteError
from clinic_interop.services.config_resolver import build_resolved_config
from clinic_interop.services.delivery_client import DeliveryResult
from clinic_interop.services.retry_service import RetryService, backoff_delay

SENT_AT = datetime(2026, 10, 5, 11, 0, tzinfo=timezone.utc)


@pytest.fixture
def record(db, student, visit, school):
    return crud.create_hl7_message(
        db,
        message_type=models.HL7MessageType.ADMIT_UPDATE,
        message_control_id="MSG-RETRY-1",
        student_id=student.id,
        visit_id=visit.id,
        school_id=school.id,
        message_content="MSH|^~\\&|SCH001",
    )


@pytest.fixture
def config(school):
    return build_resolved_config(school, None)


@pytest.fixture
def retry(fake_client, no_sleep):
    return RetryService(
        client=fake_client,
        session_factory=SessionLocal,
        sleep=no_sleep,
        clock=lambda: SENT_AT,
        backoff_unit=1.0,
    )


def reload(db, record_id):
    db.expire_all()
    return crud.get_hl7_message(db, record_id)


def test_backoff_doubles_per_attempt():
    assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]
    assert backoff_delay(3, unit=0.5) == 2.0


def test_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        backoff_delay(0)


async def test_first_attempt_success_marks_sent(db, record, config, retry, fake_client, no_sleep):
    status = await retry.deliver(record.id, record.message_content, record.message_control_id, config)

    assert status == models.HL7MessageStatus.SENT
    assert len(fake_client.calls) == 1
    assert fake_client.calls[0]["control_id"] == "MSG-RETRY-1"
    assert fake_client.calls[0]["environment"] == "test"
    assert no_sleep.delays == []
    stored = reload(db, record.id)
    assert stored.status == models.HL7MessageStatus.SENT
    assert stored.sent_at is not None
    assert stored.retry_count == 0
    assert stored.error_message is None


async def test_success_on_second_attempt(db, record, config, retry, fake_client, no_sleep):
    fake_client.results = [DeliveryResult.failed("HTTP 503: unavailable"), DeliveryResult.ok()]

    status = await retry.deliver(record.id, record.message_content, record.message_control_id, config)

    assert status == models.HL7MessageStatus.SENT
    assert len(fake_client.calls) == 2
    assert no_sleep.delays == [1.0]
    assert reload(db, record.id).status == models.HL7MessageStatus.SENT


async def test_exhausted_budget_marks_failed(db, record, config, retry, fake_client, no_sleep):
    fake_client.results = [
        DeliveryResult.failed("HTTP 500: one"),
        DeliveryResult.failed("HTTP 500: two"),
        DeliveryResult.failed("HTTP 500: three"),
    ]

    status = await retry.deliver(record.id, record.message_content, record.message_control_id, config)

    assert status == models.HL7MessageStatus.FAILED
    assert len(fake_client.calls) == 3
    assert no_sleep.delays == [1.0, 2.0]
    stored = reload(db, record.id)
    assert stored.status == models.HL7MessageStatus.FAILED
    assert stored.retry_count == 3
    assert stored.error_message == "HTTP 500: three"
    assert stored.sent_at is None


async def test_single_attempt_budget_never_sleeps(db, record, config, retry, fake_client, no_sleep):
    fake_client.results = [DeliveryResult.failed("Request timeout after 30 seconds")]

    await retry.deliver(
        record.id, record.message_content, record.message_control_id,
        config.model_copy(update={"retry_attempts": 1}),
    )

    assert len(fake_client.calls) == 1
    assert no_sleep.delays == []
    stored = reload(db, record.id)
    assert stored.retry_count == 1
    assert stored.error_message == "Request timeout after 30 seconds"


async def test_client_exceptions_count_as_failed_attempts(db, record, config, retry, fake_client, no_sleep):
    fake_client.results = [httpx.ConnectError("refused"), RuntimeError("boom"), DeliveryResult.ok()]

    status = await retry.deliver(record.id, record.message_content, record.message_control_id, config)

    assert status == models.HL7MessageStatus.SENT
    assert len(fake_client.calls) == 3
    assert no_sleep.delays == [1.0, 2.0]


async def test_zero_budget_is_rejected(record, config, retry, fake_client):
    with pytest.raises(ValueError):
        await retry.deliver(
            record.id, record.message_content, record.message_control_id,
            config.model_copy(update={"retry_attempts": 0}),
        )
    assert fake_client.calls == []


async def test_terminal_record_is_not_rewritten(db, record, config, retry, fake_client):
    crud.mark_hl7_message_sent(db, record.id, sent_at=SENT_AT)

    with pytest.raises(LedgerWriteError):
        await retry.deliver(record.id, record.message_content, record.message_control_id, config)

    assert reload(db, record.id).status == models.HL7MessageStatus.SENT


async def test_cancellation_leaves_record_pending(db, record, config, fake_client):
    async def cancelled_sleep(seconds):
        raise asyncio.CancelledError()

    fake_client.results = [DeliveryResult.failed("HTTP 502: bad gateway")]
    retry = RetryService(client=fake_client, session_factory=SessionLocal, sleep=cancelled_sleep)

    with pytest.raises(asyncio.CancelledError):
        await retry.deliver(record.id, record.message_content, record.message_control_id, config)

    assert reload(db, record.id).status == models.HL7MessageStatus.PENDING
