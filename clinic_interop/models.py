# clinic_interop/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class VisitType(str, enum.Enum):
    ROUTINE_CHECKUP = "ROUTINE_CHECKUP"
    ILLNESS = "ILLNESS"
    INJURY = "INJURY"
    EMERGENCY = "EMERGENCY"
    FOLLOW_UP = "FOLLOW_UP"
    SCREENING = "SCREENING"


class HL7MessageType(str, enum.Enum):
    ADMIT_UPDATE = "ADMIT_UPDATE"
    OBSERVATION_RESULT = "OBSERVATION_RESULT"


class HL7MessageStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not HL7MessageStatus.PENDING


class HL7Environment(str, enum.Enum):
    test = "test"
    production = "production"

    @property
    def processing_id(self) -> str:
        # MSH-11: T = training/test traffic, P = production
        return "P" if self is HL7Environment.production else "T"


class School(Base):
    __tablename__ = "schools"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    students = relationship("Student", back_populates="school")
    hl7_config = relationship("SchoolHL7Config", back_populates="school", uselist=False, cascade="all, delete-orphan")


class SchoolHL7Config(Base):
    """Per-school messaging settings. Unset columns resolve to defaults."""
    __tablename__ = "school_hl7_configs"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, unique=True)

    sending_application = Column(String(100), nullable=True)
    sending_facility = Column(String(100), nullable=True)
    receiving_application = Column(String(100), nullable=True)
    receiving_facility = Column(String(100), nullable=True)
    hl7_version = Column(String(10), nullable=True)
    environment = Column(SQLAlchemyEnum(HL7Environment, name='hl7_environment'), nullable=True)

    enabled = Column(Boolean, nullable=True)
    auto_send = Column(Boolean, nullable=True)
    auto_send_message_types = Column(JSON, nullable=True)  # list of message type names, NULL = all
    retry_attempts = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    school = relationship("School", back_populates="hl7_config")


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (
        Index('idx_students_school', 'school_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    student_number = Column(String(50), nullable=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    date_of_birth = Column(Date, nullable=False)
    gender = Column(SQLAlchemyEnum(Gender, name='gender'), nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    school = relationship("School", back_populates="students")
    visits = relationship("ClinicalVisit", back_populates="student")


class ClinicalVisit(Base):
    """A single clinic encounter."""
    __tablename__ = "clinical_visits"
    __table_args__ = (
        Index('idx_visits_student_date', 'student_id', 'visit_date'),
        Index('idx_visits_school_date', 'school_id', 'visit_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False)
    visit_type = Column(SQLAlchemyEnum(VisitType, name='visit_type'), default=VisitType.ROUTINE_CHECKUP, nullable=False)
    visit_date = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    chief_complaint = Column(Text, nullable=True)
    diagnosis = Column(Text, nullable=True)
    treatment = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    student = relationship("Student", back_populates="visits")
    school = relationship("School")
    assessment = relationship("ClinicalAssessment", back_populates="visit", uselist=False, cascade="all, delete-orphan")


class ClinicalAssessment(Base):
    """Vital signs and measurements recorded during a visit."""
    __tablename__ = "clinical_assessments"

    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer, ForeignKey("clinical_visits.id"), nullable=False, unique=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)

    temperature = Column(Numeric(4, 1), nullable=True)  # Celsius
    blood_pressure_systolic = Column(Integer, nullable=True)
    blood_pressure_diastolic = Column(Integer, nullable=True)
    heart_rate = Column(Integer, nullable=True)
    respiratory_rate = Column(Integer, nullable=True)
    oxygen_saturation = Column(Integer, nullable=True)
    height = Column(Numeric(5, 2), nullable=True)  # cm
    weight = Column(Numeric(5, 2), nullable=True)  # kg
    bmi = Column(Numeric(4, 2), nullable=True)

    # Vision screening
    right_eye = Column(String(20), nullable=True)
    left_eye = Column(String(20), nullable=True)
    right_eye_with_correction = Column(String(20), nullable=True)
    left_eye_with_correction = Column(String(20), nullable=True)
    vision_screening_result = Column(String(100), nullable=True)
    color_blindness = Column(String(100), nullable=True)

    recorded_at = Column(DateTime(timezone=True), server_default=func.now())

    visit = relationship("ClinicalVisit", back_populates="assessment")


class HL7Message(Base):
    """Ledger entry for every HL7 message built, with its delivery outcome."""
    __tablename__ = "hl7_messages"
    __table_args__ = (
        Index('idx_hl7_messages_school_created', 'school_id', 'created_at'),
        Index('idx_hl7_messages_status_created', 'status', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    message_type = Column(SQLAlchemyEnum(HL7MessageType, name='hl7_message_type'), nullable=False)
    message_control_id = Column(String(64), unique=True, index=True, nullable=False)

    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    visit_id = Column(Integer, ForeignKey("clinical_visits.id"), nullable=True, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False)

    message_content = Column(Text, nullable=False)
    status = Column(SQLAlchemyEnum(HL7MessageStatus, name='hl7_message_status'), default=HL7MessageStatus.PENDING, nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    student = relationship("Student")
    visit = relationship("ClinicalVisit")
    school = relationship("School")
