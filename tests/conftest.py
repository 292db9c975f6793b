# tests/conftest.py
import os

# The engine is created at import time, so this must precede any package import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("MALAFFI_API_URL", None)

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from clinic_interop import models
from clinic_interop.database import Base, SessionLocal, engine
from clinic_interop.services.delivery_client import DeliveryResult


class FakeDeliveryClient:
    """Delivery client returning scripted results and recording every call."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    async def deliver(self, message, control_id, environment="test"):
        self.calls.append({"message": message, "control_id": control_id, "environment": environment})
        if self.results:
            result = self.results.pop(0)
        else:
            result = DeliveryResult.ok()
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def school(db):
    school = models.School(code="SCH001", name="Al Noor Primary School")
    db.add(school)
    db.commit()
    db.refresh(school)
    return school


@pytest.fixture
def student(db, school):
    student = models.Student(
        student_number="STU-1001",
        first_name="Layla",
        last_name="Haddad",
        date_of_birth=date(2014, 3, 9),
        gender=models.Gender.FEMALE,
        school_id=school.id,
    )
    db.add(student)
    db.commit()
    db.refresh(student)
    return student


@pytest.fixture
def visit(db, student, school):
    visit = models.ClinicalVisit(
        student_id=student.id,
        school_id=school.id,
        visit_type=models.VisitType.ILLNESS,
        visit_date=datetime(2026, 10, 5, 9, 30, tzinfo=timezone.utc),
        chief_complaint="Headache",
        diagnosis="Tension headache",
        treatment="Rest and fluids",
    )
    db.add(visit)
    db.commit()
    db.refresh(visit)
    return visit


@pytest.fixture
def assessment(db, visit, student):
    assessment = models.ClinicalAssessment(
        visit_id=visit.id,
        student_id=student.id,
        temperature=Decimal("37.2"),
        blood_pressure_systolic=110,
        blood_pressure_diastolic=70,
        heart_rate=88,
    )
    db.add(assessment)
    db.commit()
    db.refresh(assessment)
    return assessment


@pytest.fixture
def hl7_config(db, school):
    """Stores a configuration row for the school; tests adjust it as needed."""
    def _store(**values):
        config = models.SchoolHL7Config(school_id=school.id, **values)
        db.add(config)
        db.commit()
        db.refresh(config)
        return config
    return _store


@pytest.fixture
def fake_client():
    return FakeDeliveryClient()


@pytest.fixture
def no_sleep():
    return RecordingSleep()
