# clinic_interop/services/messaging_service.py
"""Turns a recorded clinic visit into an HL7 ledger entry and, when the
school's policy allows it, a delivery to the exchange.

``dispatch`` runs once per visit. It never raises into the visit-recording
workflow except for ``LedgerWriteError``.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from .. import crud, models
from ..database import SessionLocal
from ..exceptions import HL7EncodingError, LedgerWriteError
from .config_resolver import ResolvedHL7Config, resolve_hl7_config
from .control_ids import ControlIdGenerator, generate_message_control_id
from .delivery_client import DeliveryClient
from .hl7_builder import message_type_for, render_visit_message
from .retry_service import RetryService

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessagingService:
    def __init__(
        self,
        client: Optional[DeliveryClient] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        generator: Optional[ControlIdGenerator] = None,
        retry_service: Optional[RetryService] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.generate_control_id = generator.generate if generator else generate_message_control_id
        self.retry_service = retry_service or RetryService(client=client, session_factory=session_factory)
        self.clock = clock

    async def dispatch(
        self,
        student: models.Student,
        visit: models.ClinicalVisit,
        school: models.School,
        assessment: Optional[models.ClinicalAssessment] = None,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> Optional[models.HL7Message]:
        """Record (and possibly deliver) the HL7 message for a visit.

        Returns the ledger entry, or None when messaging is disabled for the
        school or the pipeline failed before anything could be recorded.
        Inline delivery returns the entry in its final state; with
        ``background_tasks`` it is returned PENDING, as queued.
        """
        log = logger.bind(visit_id=visit.id, student_id=student.id, school_id=school.id)
        try:
            return await self._dispatch(student, visit, school, assessment, background_tasks, log)
        except LedgerWriteError:
            raise
        except Exception as e:
            log.error("hl7_dispatch.unexpected_error", error=str(e), exc_info=True)
            return None

    async def _dispatch(self, student, visit, school, assessment, background_tasks, log):
        config = self._resolve(school)
        if not config.enabled:
            log.info("hl7_dispatch.disabled")
            return None

        message_type = message_type_for(assessment)
        should_send = config.should_auto_send(message_type)
        control_id = self.generate_control_id()
        log = log.bind(control_id=control_id, message_type=message_type.value)

        try:
            rendered = render_visit_message(
                student, visit, school, assessment, config, control_id, self.clock()
            )
        except HL7EncodingError as e:
            log.warning("hl7_dispatch.encoding_failed", error=str(e))
            return self._record(
                message_type=message_type,
                message_control_id=control_id,
                student_id=student.id,
                visit_id=visit.id,
                school_id=school.id,
                message_content="",
                status=models.HL7MessageStatus.FAILED,
                error_message=f"HL7 encoding failed: {e}",
            )

        record = self._record(
            message_type=message_type,
            message_control_id=control_id,
            student_id=student.id,
            visit_id=visit.id,
            school_id=school.id,
            message_content=rendered.content,
        )

        if not should_send:
            log.info("hl7_dispatch.held", record_id=record.id, auto_send=config.auto_send)
            return record

        if background_tasks is not None:
            background_tasks.add_task(
                self.retry_service.deliver, record.id, rendered.content, control_id, config
            )
            log.info("hl7_dispatch.queued", record_id=record.id)
        else:
            await self.retry_service.deliver(record.id, rendered.content, control_id, config)
            record = self._reload(record.id) or record
        return record

    def _resolve(self, school: models.School) -> ResolvedHL7Config:
        db = self.session_factory()
        try:
            return resolve_hl7_config(db, school)
        finally:
            db.close()

    def _reload(self, record_id: int) -> Optional[models.HL7Message]:
        db = self.session_factory()
        try:
            return crud.get_hl7_message(db, record_id)
        except crud.CRUDError as e:
            logger.warning("hl7_ledger.reload_failed", record_id=record_id, error=str(e))
            return None
        finally:
            db.close()

    def _record(self, **values) -> models.HL7Message:
        db = self.session_factory()
        try:
            return crud.create_hl7_message(db, **values)
        except crud.CRUDError as e:
            logger.error("hl7_ledger.write_failed", control_id=values.get("message_control_id"), error=str(e))
            raise LedgerWriteError(str(e)) from e
        finally:
            db.close()
