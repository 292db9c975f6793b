# tests/test_messaging_service.py
from datetime import datetime, timezone

import pytest
from fastapi import BackgroundTasks

from clinic_interop import crud, models
from clinic_interop.database import SessionLocal
from clinic_interop.exceptions import LedgerWriteError
from clinic_interop.services.control_ids import ControlIdGenerator
from clinic_interop.services.delivery_client import DeliveryResult
from clinic_interop.services.messaging_service import MessagingService
from clinic_interop.services.retry_service import RetryService

GENERATED_AT = datetime(2026, 10, 5, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def messaging(fake_client, no_sleep):
    retry = RetryService(client=fake_client, session_factory=SessionLocal, sleep=no_sleep, backoff_unit=1.0)
    return MessagingService(
        session_factory=SessionLocal,
        retry_service=retry,
        clock=lambda: GENERATED_AT,
    )


def ledger(db):
    db.expire_all()
    return db.query(models.HL7Message).order_by(models.HL7Message.id).all()


async def test_default_config_records_and_sends(db, student, visit, school, messaging, fake_client):
    record = await messaging.dispatch(student, visit, school)

    assert record is not None
    assert record.message_type == models.HL7MessageType.ADMIT_UPDATE
    assert len(fake_client.calls) == 1
    assert fake_client.calls[0]["control_id"] == record.message_control_id
    assert fake_client.calls[0]["message"] == record.message_content
    (stored,) = ledger(db)
    assert stored.status == models.HL7MessageStatus.SENT
    assert stored.visit_id == visit.id
    assert "|ADT^A08|" in stored.message_content


async def test_assessment_produces_observation_result(db, student, visit, school, assessment, messaging):
    record = await messaging.dispatch(student, visit, school, assessment)

    assert record.message_type == models.HL7MessageType.OBSERVATION_RESULT
    assert "|ORU^R01|" in record.message_content
    assert record.message_content.count("\rOBX|") == 4


async def test_disabled_school_records_nothing(db, student, visit, school, hl7_config, messaging, fake_client):
    hl7_config(enabled=False)

    result = await messaging.dispatch(student, visit, school)

    assert result is None
    assert ledger(db) == []
    assert fake_client.calls == []


async def test_auto_send_off_leaves_record_pending(db, student, visit, school, hl7_config, messaging, fake_client):
    hl7_config(auto_send=False)

    record = await messaging.dispatch(student, visit, school)

    assert record.status == models.HL7MessageStatus.PENDING
    assert fake_client.calls == []
    (stored,) = ledger(db)
    assert stored.status == models.HL7MessageStatus.PENDING
    assert stored.retry_count == 0


async def test_type_outside_allow_list_stays_pending(db, student, visit, school, assessment, hl7_config, messaging, fake_client):
    hl7_config(auto_send_message_types=["ADT_A08"])

    record = await messaging.dispatch(student, visit, school, assessment)

    assert record.message_type == models.HL7MessageType.OBSERVATION_RESULT
    assert record.status == models.HL7MessageStatus.PENDING
    assert fake_client.calls == []


async def test_zero_retry_budget_stays_pending(db, student, visit, school, hl7_config, messaging, fake_client):
    hl7_config(retry_attempts=0)

    record = await messaging.dispatch(student, visit, school)

    assert record.status == models.HL7MessageStatus.PENDING
    assert fake_client.calls == []


async def test_two_dispatches_for_one_visit(db, student, visit, school, assessment, messaging):
    first = await messaging.dispatch(student, visit, school)
    second = await messaging.dispatch(student, visit, school, assessment)

    assert first.message_type == models.HL7MessageType.ADMIT_UPDATE
    assert second.message_type == models.HL7MessageType.OBSERVATION_RESULT
    assert first.message_control_id != second.message_control_id
    assert len(ledger(db)) == 2


async def test_delivery_failure_is_recorded_not_raised(db, student, visit, school, messaging, fake_client, no_sleep):
    fake_client.results = [DeliveryResult.failed("HTTP 500: down")] * 3

    record = await messaging.dispatch(student, visit, school)

    assert record is not None
    (stored,) = ledger(db)
    assert stored.status == models.HL7MessageStatus.FAILED
    assert stored.retry_count == 3
    assert stored.error_message == "HTTP 500: down"
    assert no_sleep.delays == [1.0, 2.0]


async def test_encoding_failure_records_failed_entry(db, student, visit, school, messaging, fake_client):
    visit.notes = "tab ok\tbut bell \x07 is not"

    record = await messaging.dispatch(student, visit, school)

    assert record.status == models.HL7MessageStatus.FAILED
    assert record.retry_count == 0
    assert "notes" in record.error_message
    assert fake_client.calls == []


async def test_background_tasks_defer_delivery(db, student, visit, school, messaging, fake_client):
    tasks = BackgroundTasks()

    record = await messaging.dispatch(student, visit, school, background_tasks=tasks)

    assert record.status == models.HL7MessageStatus.PENDING
    assert fake_client.calls == []
    assert len(tasks.tasks) == 1

    await tasks()

    assert len(fake_client.calls) == 1
    (stored,) = ledger(db)
    assert stored.status == models.HL7MessageStatus.SENT


async def test_ledger_failure_propagates(db, student, visit, school, messaging, monkeypatch):
    def broken_create(*args, **kwargs):
        raise crud.CRUDError("database is read-only")

    monkeypatch.setattr(crud, "create_hl7_message", broken_create)

    with pytest.raises(LedgerWriteError):
        await messaging.dispatch(student, visit, school)


async def test_unexpected_errors_are_swallowed(db, student, visit, school, messaging, monkeypatch):
    def broken_resolve(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(
        "clinic_interop.services.messaging_service.resolve_hl7_config", broken_resolve
    )

    assert await messaging.dispatch(student, visit, school) is None
    assert ledger(db) == []


async def test_injected_generator_supplies_control_ids(db, student, visit, school, fake_client, no_sleep):
    generator = ControlIdGenerator(clock=lambda: 1_000_000)
    service = MessagingService(
        session_factory=SessionLocal,
        generator=generator,
        retry_service=RetryService(client=fake_client, session_factory=SessionLocal, sleep=no_sleep),
    )

    record = await service.dispatch(student, visit, school)

    assert record.message_control_id.startswith("MSG10000000")


async def test_inline_delivery_returns_final_state(db, student, visit, school, messaging, fake_client):
    record = await messaging.dispatch(student, visit, school)

    assert record.status == models.HL7MessageStatus.SENT
    assert record.sent_at is not None
    assert record.retry_count == 0


async def test_inline_failure_returns_failed_entry(db, student, visit, school, messaging, fake_client):
    fake_client.results = [DeliveryResult.failed("HTTP 502: bad gateway")] * 3

    record = await messaging.dispatch(student, visit, school)

    assert record.status == models.HL7MessageStatus.FAILED
    assert record.retry_count == 3
    assert record.error_message == "HTTP 502: bad gateway"


async def test_stored_visit_timestamps_carry_utc_offset(db, student, visit, school, messaging):
    record = await messaging.dispatch(student, visit, school)

    assert "\rEVN|A08|20261005093000+0000\r" in record.message_content
    assert "|20261005100000+0000||ADT^A08|" in record.message_content
