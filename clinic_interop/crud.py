# clinic_interop/crud.py
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, timedelta, date
from typing import Optional, List, Dict, Any
import logging

from . import models, schemas

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


# ==================== SCHOOLS / STUDENTS / VISITS (READ-ONLY) ====================

def get_school(db: Session, school_id: int) -> Optional[models.School]:
    try:
        return db.query(models.School).filter(models.School.id == school_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching school {school_id}: {e}")
        raise CRUDError("A database error occurred while fetching the school.")

def get_schools(db: Session) -> List[models.School]:
    try:
        return db.query(models.School).options(
            joinedload(models.School.hl7_config)
        ).order_by(models.School.name).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching schools: {e}")
        raise CRUDError("A database error occurred while fetching schools.")

def get_student(db: Session, student_id: int) -> Optional[models.Student]:
    try:
        return db.query(models.Student).options(
            joinedload(models.Student.school)
        ).filter(models.Student.id == student_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching student {student_id}: {e}")
        raise CRUDError("A database error occurred while fetching the student.")

def get_visit(db: Session, visit_id: int) -> Optional[models.ClinicalVisit]:
    """Get a visit with its student, school and assessment loaded."""
    try:
        return db.query(models.ClinicalVisit).options(
            joinedload(models.ClinicalVisit.student),
            joinedload(models.ClinicalVisit.school),
            joinedload(models.ClinicalVisit.assessment),
        ).filter(models.ClinicalVisit.id == visit_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visit {visit_id}: {e}")
        raise CRUDError("A database error occurred while fetching the visit.")


# ==================== HL7 CONFIGURATION ====================

def get_hl7_config(db: Session, school_id: int) -> Optional[models.SchoolHL7Config]:
    try:
        return db.query(models.SchoolHL7Config).filter(models.SchoolHL7Config.school_id == school_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching HL7 config for school {school_id}: {e}")
        raise CRUDError("A database error occurred while fetching the HL7 configuration.")

def upsert_hl7_config(db: Session, school_id: int, config: schemas.HL7ConfigUpdate) -> models.SchoolHL7Config:
    """Create or replace a school's HL7 configuration."""
    try:
        values = config.model_dump()
        if values["auto_send_message_types"] is not None:
            values["auto_send_message_types"] = [t.value for t in config.auto_send_message_types]

        db_config = get_hl7_config(db, school_id)
        if db_config is None:
            db_config = models.SchoolHL7Config(school_id=school_id, **values)
            db.add(db_config)
        else:
            for key, value in values.items():
                setattr(db_config, key, value)
        db.commit()
        db.refresh(db_config)
        logger.info(f"Saved HL7 configuration for school {school_id}")
        return db_config
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error saving HL7 config for school {school_id}: {e}")
        raise CRUDError("Could not save HL7 configuration due to a database integrity issue.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error saving HL7 config for school {school_id}: {e}")
        raise CRUDError("A database error occurred while saving the HL7 configuration.")


# ==================== HL7 MESSAGE LEDGER ====================

def create_hl7_message(
    db: Session,
    *,
    message_type: models.HL7MessageType,
    message_control_id: str,
    student_id: int,
    school_id: int,
    message_content: str,
    visit_id: Optional[int] = None,
    status: models.HL7MessageStatus = models.HL7MessageStatus.PENDING,
    error_message: Optional[str] = None,
) -> models.HL7Message:
    """Append a ledger entry. A duplicate control ID is rejected by the unique constraint."""
    try:
        db_message = models.HL7Message(
            message_type=message_type,
            message_control_id=message_control_id,
            student_id=student_id,
            visit_id=visit_id,
            school_id=school_id,
            message_content=message_content,
            status=status,
            error_message=error_message,
            retry_count=0,
        )
        db.add(db_message)
        db.commit()
        db.refresh(db_message)
        return db_message
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error creating HL7 message {message_control_id}: {e}")
        raise CRUDError(f"Could not record HL7 message {message_control_id}: integrity violation.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error creating HL7 message {message_control_id}: {e}")
        raise CRUDError(f"A database error occurred while recording HL7 message {message_control_id}.")

def get_hl7_message(db: Session, message_id: int) -> Optional[models.HL7Message]:
    try:
        return db.query(models.HL7Message).filter(models.HL7Message.id == message_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching HL7 message {message_id}: {e}")
        raise CRUDError("A database error occurred while fetching the HL7 message.")

def _finish_hl7_message(db: Session, message_id: int, **values) -> models.HL7Message:
    """Move a PENDING ledger entry to a terminal state. Terminal entries are never rewritten."""
    try:
        db_message = db.query(models.HL7Message).filter(models.HL7Message.id == message_id).first()
        if db_message is None:
            raise CRUDError(f"HL7 message {message_id} not found")
        if db_message.status != models.HL7MessageStatus.PENDING:
            raise CRUDError(
                f"HL7 message {message_id} is already {db_message.status.value}; refusing to change it"
            )
        for key, value in values.items():
            setattr(db_message, key, value)
        db.commit()
        db.refresh(db_message)
        return db_message
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error updating HL7 message {message_id}: {e}")
        raise CRUDError("A database error occurred while updating the HL7 message.")

def mark_hl7_message_sent(db: Session, message_id: int, sent_at: datetime) -> models.HL7Message:
    return _finish_hl7_message(
        db, message_id,
        status=models.HL7MessageStatus.SENT,
        sent_at=sent_at,
    )

def mark_hl7_message_failed(db: Session, message_id: int, error_message: str, retry_count: int = 0) -> models.HL7Message:
    return _finish_hl7_message(
        db, message_id,
        status=models.HL7MessageStatus.FAILED,
        error_message=error_message,
        retry_count=retry_count,
    )

def _filtered_hl7_messages(
    db: Session,
    school_id: Optional[int] = None,
    student_id: Optional[int] = None,
    visit_id: Optional[int] = None,
    status: Optional[models.HL7MessageStatus] = None,
    message_type: Optional[models.HL7MessageType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
):
    query = db.query(models.HL7Message)
    if school_id:
        query = query.filter(models.HL7Message.school_id == school_id)
    if student_id:
        query = query.filter(models.HL7Message.student_id == student_id)
    if visit_id:
        query = query.filter(models.HL7Message.visit_id == visit_id)
    if status:
        query = query.filter(models.HL7Message.status == status)
    if message_type:
        query = query.filter(models.HL7Message.message_type == message_type)
    if start_date:
        query = query.filter(models.HL7Message.created_at >= start_date)
    if end_date:
        # Add one day to end_date to include the entire day
        query = query.filter(models.HL7Message.created_at < (end_date + timedelta(days=1)))
    return query

def get_hl7_messages(db: Session, skip: int = 0, limit: int = 100, **filters) -> List[models.HL7Message]:
    """Query the ledger by school, student, visit, status, type or creation date range."""
    try:
        query = _filtered_hl7_messages(db, **filters)
        return query.order_by(models.HL7Message.created_at.desc(), models.HL7Message.id.desc()).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching HL7 messages: {e}")
        raise CRUDError("A database error occurred while fetching HL7 messages.")

def get_hl7_message_report(db: Session, **filters) -> Dict[str, Any]:
    """Delivery statistics over the filtered ledger."""
    try:
        base = _filtered_hl7_messages(db, **filters).subquery()

        by_status = {
            status.value if hasattr(status, "value") else str(status): count
            for status, count in db.query(base.c.status, func.count()).group_by(base.c.status).all()
        }
        by_type = {
            message_type.value if hasattr(message_type, "value") else str(message_type): count
            for message_type, count in db.query(base.c.message_type, func.count()).group_by(base.c.message_type).all()
        }
        by_school = (
            db.query(models.School.id, models.School.name, models.School.code, func.count())
            .join(base, base.c.school_id == models.School.id)
            .group_by(models.School.id, models.School.name, models.School.code)
            .all()
        )
        day = func.date(base.c.created_at)
        by_date = {
            str(created_on): count
            for created_on, count in db.query(day, func.count()).group_by(day).order_by(day).all()
            if created_on is not None
        }
        avg_retry = db.query(func.avg(base.c.retry_count)).scalar()

        total = sum(by_status.values())
        sent = by_status.get(models.HL7MessageStatus.SENT.value, 0)
        return {
            "total_messages": total,
            "sent_messages": sent,
            "failed_messages": by_status.get(models.HL7MessageStatus.FAILED.value, 0),
            "pending_messages": by_status.get(models.HL7MessageStatus.PENDING.value, 0),
            "success_rate": round(sent / total * 100, 2) if total else 0.0,
            "average_retry_count": round(float(avg_retry or 0), 2),
            "messages_by_status": by_status,
            "messages_by_type": by_type,
            "messages_by_school": [
                {"school_id": sid, "school_name": name, "school_code": code, "count": count}
                for sid, name, code, count in by_school
            ],
            "messages_by_date": by_date,
        }
    except SQLAlchemyError as e:
        logger.error(f"Error building HL7 report: {e}")
        raise CRUDError("A database error occurred while building the HL7 report.")
