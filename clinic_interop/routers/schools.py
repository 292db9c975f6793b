# clinic_interop/routers/schools.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import crud, schemas, models
from ..database import get_db
from ..services.config_resolver import build_resolved_config

router = APIRouter(
    prefix="/schools",
    tags=["Schools"],
    responses={404: {"description": "Not found"}},
)


def _config_response(school: models.School, stored: models.SchoolHL7Config = None) -> schemas.HL7ConfigResponse:
    resolved = build_resolved_config(school, stored)
    values = resolved.model_dump()
    values["auto_send_message_types"] = sorted(resolved.auto_send_message_types, key=lambda t: t.value)
    return schemas.HL7ConfigResponse(
        school_code=school.code,
        processing_id=resolved.processing_id,
        is_default=stored is None,
        **values,
    )


def _get_school_or_404(db: Session, school_id: int) -> models.School:
    school = crud.get_school(db, school_id)
    if school is None:
        raise HTTPException(status_code=404, detail="School not found")
    return school


@router.get("/hl7-config", response_model=List[schemas.HL7ConfigResponse])
def read_all_hl7_configs(db: Session = Depends(get_db)):
    """
    Effective HL7 configuration for every school, defaults included.
    """
    try:
        return [_config_response(school, school.hl7_config) for school in crud.get_schools(db)]
    except crud.CRUDError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{school_id}/hl7-config", response_model=schemas.HL7ConfigResponse)
def read_hl7_config(school_id: int, db: Session = Depends(get_db)):
    try:
        school = _get_school_or_404(db, school_id)
        return _config_response(school, crud.get_hl7_config(db, school_id))
    except crud.CRUDError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/{school_id}/hl7-config", response_model=schemas.HL7ConfigResponse)
def update_hl7_config(school_id: int, config: schemas.HL7ConfigUpdate, db: Session = Depends(get_db)):
    """
    Create or replace a school's HL7 configuration.
    """
    try:
        school = _get_school_or_404(db, school_id)
        stored = crud.upsert_hl7_config(db, school_id, config)
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _config_response(school, stored)
