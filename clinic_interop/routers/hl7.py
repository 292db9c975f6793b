# clinic_interop/routers/hl7.py
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas, models
from ..database import get_db
from ..exceptions import HL7EncodingError, LedgerWriteError
from ..services.config_resolver import resolve_hl7_config
from ..services.control_ids import generate_message_control_id
from ..services.hl7_builder import HL7MessageBuilder, HL7MessageOptions, default_discharge_time
from ..services.messaging_service import MessagingService

router = APIRouter(
    prefix="/hl7",
    tags=["HL7"],
    responses={404: {"description": "Not found"}},
)


def get_messaging_service() -> MessagingService:
    return MessagingService()


@router.get("/messages", response_model=List[schemas.HL7MessageResponse])
def read_hl7_messages(
    skip: int = 0,
    limit: int = 100,
    school_id: Optional[int] = None,
    student_id: Optional[int] = None,
    visit_id: Optional[int] = None,
    status: Optional[models.HL7MessageStatus] = None,
    message_type: Optional[models.HL7MessageType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db)
):
    """
    List ledger entries, newest first, with optional filtering.
    """
    try:
        return crud.get_hl7_messages(
            db, skip=skip, limit=limit, school_id=school_id, student_id=student_id,
            visit_id=visit_id, status=status, message_type=message_type,
            start_date=start_date, end_date=end_date,
        )
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/messages/{message_id}", response_model=schemas.HL7MessageDetail)
def read_hl7_message(message_id: int, db: Session = Depends(get_db)):
    try:
        db_message = crud.get_hl7_message(db, message_id)
    except crud.CRUDError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if db_message is None:
        raise HTTPException(status_code=404, detail="HL7 message not found")
    return db_message


@router.get("/reports/summary", response_model=schemas.HL7ReportResponse)
def read_hl7_report(
    school_id: Optional[int] = None,
    message_type: Optional[models.HL7MessageType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db)
):
    """
    Delivery statistics: totals per status, type, school and creation day,
    success rate and average retry count.
    """
    try:
        return crud.get_hl7_message_report(
            db,
            school_id=school_id,
            message_type=message_type,
            start_date=start_date,
            end_date=end_date,
        )
    except crud.CRUDError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/generate", response_model=schemas.HL7GenerateResponse)
def generate_hl7_message(request: schemas.HL7GenerateRequest, db: Session = Depends(get_db)):
    """
    Render a message for preview. Nothing is recorded or sent.
    """
    try:
        if request.type == "ADT_A04":
            if request.student_id is None:
                raise HTTPException(status_code=400, detail="student_id is required for ADT_A04")
            student = crud.get_student(db, request.student_id)
            if student is None:
                raise HTTPException(status_code=404, detail="Student not found")
            school, visit = student.school, None
        else:
            if request.visit_id is None:
                raise HTTPException(status_code=400, detail=f"visit_id is required for {request.type}")
            visit = crud.get_visit(db, request.visit_id)
            if visit is None:
                raise HTTPException(status_code=404, detail="Visit not found")
            student, school = visit.student, visit.school
            if request.type == "ORU_R01" and visit.assessment is None:
                raise HTTPException(status_code=400, detail="Visit has no assessment to report")

        config = resolve_hl7_config(db, school)
    except crud.CRUDError as e:
        raise HTTPException(status_code=500, detail=str(e))

    control_id = generate_message_control_id()
    now = datetime.now(timezone.utc)
    builder = HL7MessageBuilder(HL7MessageOptions.from_config(config, control_id))
    try:
        if request.type == "ADT_A01":
            builder.build_adt_a01(student, visit, school, now)
        elif request.type == "ADT_A03":
            builder.build_adt_a03(student, visit, school, default_discharge_time(visit), now)
        elif request.type == "ADT_A04":
            builder.build_adt_a04(student, school, now)
        elif request.type == "ADT_A08":
            builder.build_adt_a08(student, visit, school, now)
        else:
            builder.build_oru_r01(student, visit, school, visit.assessment, now)
    except HL7EncodingError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return schemas.HL7GenerateResponse(type=request.type, message_control_id=control_id, message=builder.build())


@router.post("/visits/{visit_id}/dispatch", response_model=Optional[schemas.HL7MessageResponse], status_code=status.HTTP_202_ACCEPTED)
async def dispatch_visit_message(
    visit_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    messaging: MessagingService = Depends(get_messaging_service),
):
    """
    Record the HL7 message for a visit and queue its delivery when the
    school's policy allows it. Returns null when messaging is disabled.
    """
    try:
        visit = crud.get_visit(db, visit_id)
    except crud.CRUDError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if visit is None:
        raise HTTPException(status_code=404, detail="Visit not found")

    try:
        return await messaging.dispatch(
            visit.student, visit, visit.school, visit.assessment, background_tasks=background_tasks
        )
    except LedgerWriteError as e:
        raise HTTPException(status_code=500, detail=str(e))
