# clinic_interop/services/hl7_builder.py
"""HL7v2 message rendering for clinic visits.

Messages produced here:

- ``ADT^A08`` (ADMIT_UPDATE) for a visit without an assessment:
  MSH | EVN | PID | PV1 [| PV2] [| DG1] [| NTE...]
- ``ORU^R01`` (OBSERVATION_RESULT) for a visit with an assessment: the same
  visit-context segments followed by one OBX per recorded measurement.

``ADT^A01``, ``ADT^A03`` and ``ADT^A04`` are available for message previews.
Segments are joined with ``\\r``. Rendering is pure: the control ID and the
generation timestamp are supplied by the caller.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from .. import models
from ..exceptions import HL7EncodingError
from .config_resolver import ResolvedHL7Config

FIELD_SEPARATOR = "|"
ENCODING_CHARACTERS = "^~\\&"
SEGMENT_TERMINATOR = "\r"

_ESCAPES = (
    ("\\", "\\E\\"),  # must run first
    ("|", "\\F\\"),
    ("^", "\\S\\"),
    ("&", "\\T\\"),
    ("~", "\\R\\"),
    ("\r", "\\X0D\\"),
    ("\n", "\\X0A\\"),
)

# (assessment attribute, value type, identifier, text, coding system, units)
OBSERVATION_FIELDS: Tuple[Tuple[str, str, str, str, str, str], ...] = (
    ("temperature", "NM", "8310-5", "Body temperature", "LN", "Cel"),
    ("blood_pressure_systolic", "NM", "8480-6", "Systolic blood pressure", "LN", "mm[Hg]"),
    ("blood_pressure_diastolic", "NM", "8462-4", "Diastolic blood pressure", "LN", "mm[Hg]"),
    ("heart_rate", "NM", "8867-4", "Heart rate", "LN", "/min"),
    ("respiratory_rate", "NM", "9279-1", "Respiratory rate", "LN", "/min"),
    ("oxygen_saturation", "NM", "59408-5", "Oxygen saturation by pulse oximetry", "LN", "%"),
    ("height", "NM", "8302-2", "Body height", "LN", "cm"),
    ("weight", "NM", "29463-7", "Body weight", "LN", "kg"),
    ("bmi", "NM", "39156-5", "Body mass index", "LN", "kg/m2"),
    ("right_eye", "ST", "VA_OD", "Visual acuity right eye", "L", ""),
    ("left_eye", "ST", "VA_OS", "Visual acuity left eye", "L", ""),
    ("right_eye_with_correction", "ST", "VA_OD_CC", "Visual acuity right eye with correction", "L", ""),
    ("left_eye_with_correction", "ST", "VA_OS_CC", "Visual acuity left eye with correction", "L", ""),
    ("vision_screening_result", "ST", "VISION_RESULT", "Vision screening result", "L", ""),
    ("color_blindness", "ST", "COLOR_VISION", "Color vision screening", "L", ""),
)

MESSAGE_EVENTS = {
    models.HL7MessageType.ADMIT_UPDATE: ("ADT^A08", "A08"),
    models.HL7MessageType.OBSERVATION_RESULT: ("ORU^R01", "R01"),
}


def escape_text(value: Optional[Any], field: str = "") -> str:
    """Escape HL7 delimiter characters in a free-text value."""
    if value is None:
        return ""
    text = str(value)
    for ch in text:
        if (ord(ch) < 0x20 and ch not in "\r\n\t") or ord(ch) == 0x7F:
            raise HL7EncodingError(
                f"Unescapable control character U+{ord(ch):04X} in HL7 text",
                field=field,
            )
    for raw, escaped in _ESCAPES:
        text = text.replace(raw, escaped)
    return text


def format_timestamp(value: datetime) -> str:
    """HL7 TS: YYYYMMDDHHMMSS+ZZZZ. Naive datetimes are taken as UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.strftime("%Y%m%d%H%M%S%z")


def format_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def format_number(value: Any) -> str:
    if isinstance(value, Decimal):
        value = value.normalize()
        text = format(value, "f")
    elif isinstance(value, float):
        text = repr(value)
        if text.endswith(".0"):
            text = text[:-2]
    else:
        text = str(value)
    return text


def _segment(name: str, fields: List[str]) -> str:
    while fields and fields[-1] == "":
        fields = fields[:-1]
    return FIELD_SEPARATOR.join([name] + fields)


@dataclass(frozen=True)
class HL7MessageOptions:
    message_control_id: str
    sending_application: str
    sending_facility: str
    receiving_application: str
    receiving_facility: str
    processing_id: str = "T"
    hl7_version: str = "2.5.1"

    @classmethod
    def from_config(cls, config: ResolvedHL7Config, message_control_id: str) -> "HL7MessageOptions":
        return cls(
            message_control_id=message_control_id,
            sending_application=config.sending_application,
            sending_facility=config.sending_facility,
            receiving_application=config.receiving_application,
            receiving_facility=config.receiving_facility,
            processing_id=config.processing_id,
            hl7_version=config.hl7_version,
        )


@dataclass(frozen=True)
class RenderedMessage:
    message_type: models.HL7MessageType
    event: str
    content: str


class HL7MessageBuilder:
    """Accumulates HL7v2 segments. Each ``build_*`` segment method returns self."""

    def __init__(self, options: HL7MessageOptions):
        self.options = options
        self.segments: List[str] = []

    def _add(self, segment: str) -> "HL7MessageBuilder":
        self.segments.append(segment)
        return self

    # MSH - Message Header
    def build_msh(self, message_type: str, generated_at: datetime) -> "HL7MessageBuilder":
        o = self.options
        # MSH-1 is the field separator itself, so MSH-2 follows directly
        return self._add(_segment("MSH", [
            ENCODING_CHARACTERS,
            o.sending_application,
            o.sending_facility,
            o.receiving_application,
            o.receiving_facility,
            format_timestamp(generated_at),
            "",
            message_type,
            o.message_control_id,
            o.processing_id,
            o.hl7_version,
        ]))

    # EVN - Event Type
    def build_evn(self, event_type: str, recorded_at: datetime) -> "HL7MessageBuilder":
        return self._add(_segment("EVN", [event_type, format_timestamp(recorded_at)]))

    # PID - Patient Identification
    def build_pid(self, student: models.Student, school: models.School) -> "HL7MessageBuilder":
        identifier = escape_text(student.student_number or student.id, "student_number")
        authority = escape_text(school.code, "school.code")
        name = "^".join([
            escape_text(student.last_name, "last_name"),
            escape_text(student.first_name, "first_name"),
            "", "", "", "",
            "L",
        ])
        return self._add(_segment("PID", [
            "1",
            "",
            f"{identifier}^^^{authority}^PI",
            "",
            name,
            "",
            format_date(student.date_of_birth),
            self._administrative_sex(student.gender),
        ]))

    @staticmethod
    def _administrative_sex(gender: Optional[models.Gender]) -> str:
        if gender == models.Gender.MALE:
            return "M"
        if gender == models.Gender.FEMALE:
            return "F"
        return "U"

    @staticmethod
    def _patient_class(visit_type: Optional[models.VisitType]) -> str:
        if visit_type == models.VisitType.EMERGENCY:
            return "E"
        if visit_type == models.VisitType.ROUTINE_CHECKUP:
            return "I"
        return "O"

    # PV1 - Patient Visit
    def build_pv1(
        self,
        visit: models.ClinicalVisit,
        school: models.School,
        discharged_at: Optional[datetime] = None,
    ) -> "HL7MessageBuilder":
        code = escape_text(school.code, "school.code")
        fields = [""] * 45
        fields[0] = "1"                                  # PV1-1 Set ID
        fields[1] = self._patient_class(visit.visit_type)  # PV1-2 Patient Class
        fields[2] = f"CLINIC^^^{code}"                  # PV1-3 Assigned Location
        fields[17] = visit.visit_type.value if visit.visit_type else ""  # PV1-18 Patient Type
        fields[18] = str(visit.id) if visit.id is not None else ""       # PV1-19 Visit Number
        fields[43] = format_timestamp(visit.visit_date)  # PV1-44 Admit Date/Time
        if discharged_at is not None:
            fields[44] = format_timestamp(discharged_at)  # PV1-45 Discharge Date/Time
        return self._add(_segment("PV1", fields))

    # PV2 - Patient Visit, additional info (admit reason = chief complaint)
    def build_pv2(self, chief_complaint: str) -> "HL7MessageBuilder":
        return self._add(_segment("PV2", ["", "", f"^{escape_text(chief_complaint, 'chief_complaint')}"]))

    # DG1 - Diagnosis
    def build_dg1(self, set_id: int, diagnosis: str) -> "HL7MessageBuilder":
        return self._add(_segment("DG1", [str(set_id), "", "", escape_text(diagnosis, "diagnosis"), "", "W"]))

    # NTE - Notes and comments
    def build_nte(self, set_id: int, comment: str, field: str = "notes") -> "HL7MessageBuilder":
        return self._add(_segment("NTE", [str(set_id), "L", escape_text(comment, field)]))

    # OBX - Observation/Result
    def build_obx(
        self,
        set_id: int,
        value_type: str,
        observation_id: str,
        observation_value: str,
        units: str = "",
        observed_at: Optional[datetime] = None,
    ) -> "HL7MessageBuilder":
        return self._add(_segment("OBX", [
            str(set_id),
            value_type,
            observation_id,
            "",
            observation_value,
            units,
            "",
            "",
            "",
            "",
            "F",
            "",
            "",
            format_timestamp(observed_at) if observed_at else "",
        ]))

    def build_visit_context(self, visit: models.ClinicalVisit, school: models.School, discharged_at: Optional[datetime] = None) -> "HL7MessageBuilder":
        """PV1 plus the optional free-text segments for the visit."""
        self.build_pv1(visit, school, discharged_at)
        if visit.chief_complaint:
            self.build_pv2(visit.chief_complaint)
        if visit.diagnosis:
            self.build_dg1(1, visit.diagnosis)
        note_id = 1
        for field in ("treatment", "notes"):
            text = getattr(visit, field)
            if text:
                self.build_nte(note_id, text, field)
                note_id += 1
        return self

    def build_observations(self, assessment: models.ClinicalAssessment) -> "HL7MessageBuilder":
        observed_at = assessment.recorded_at
        set_id = 1
        for attr, value_type, code, text, system, units in OBSERVATION_FIELDS:
            value = getattr(assessment, attr)
            if value is None:
                continue
            if value_type == "NM":
                rendered = format_number(value)
            else:
                rendered = escape_text(value, attr)
            self.build_obx(set_id, value_type, f"{code}^{text}^{system}", rendered, units, observed_at)
            set_id += 1
        return self

    # --- Message types ---

    def build_adt_a01(self, student, visit, school, generated_at: datetime) -> "HL7MessageBuilder":
        """Admit/visit notification."""
        self.build_msh("ADT^A01", generated_at)
        self.build_evn("A01", visit.visit_date)
        self.build_pid(student, school)
        return self.build_visit_context(visit, school)

    def build_adt_a03(self, student, visit, school, discharged_at: datetime, generated_at: datetime) -> "HL7MessageBuilder":
        """Discharge/end visit."""
        self.build_msh("ADT^A03", generated_at)
        self.build_evn("A03", discharged_at)
        self.build_pid(student, school)
        return self.build_visit_context(visit, school, discharged_at)

    def build_adt_a04(self, student, school, generated_at: datetime) -> "HL7MessageBuilder":
        """Register a patient without a visit."""
        self.build_msh("ADT^A04", generated_at)
        self.build_evn("A04", generated_at)
        self.build_pid(student, school)
        code = escape_text(school.code, "school.code")
        return self._add(_segment("PV1", ["1", "O", f"CLINIC^^^{code}"]))

    def build_adt_a08(self, student, visit, school, generated_at: datetime) -> "HL7MessageBuilder":
        """Update patient/visit information."""
        self.build_msh("ADT^A08", generated_at)
        self.build_evn("A08", visit.visit_date)
        self.build_pid(student, school)
        return self.build_visit_context(visit, school)

    def build_oru_r01(self, student, visit, school, assessment, generated_at: datetime) -> "HL7MessageBuilder":
        """Unsolicited observation result for a visit's assessment."""
        self.build_msh("ORU^R01", generated_at)
        self.build_evn("R01", visit.visit_date)
        self.build_pid(student, school)
        self.build_visit_context(visit, school)
        return self.build_observations(assessment)

    def build(self) -> str:
        return SEGMENT_TERMINATOR.join(self.segments)


def message_type_for(assessment: Optional[models.ClinicalAssessment]) -> models.HL7MessageType:
    if assessment is None:
        return models.HL7MessageType.ADMIT_UPDATE
    return models.HL7MessageType.OBSERVATION_RESULT


def render_visit_message(
    student: models.Student,
    visit: models.ClinicalVisit,
    school: models.School,
    assessment: Optional[models.ClinicalAssessment],
    config: ResolvedHL7Config,
    control_id: str,
    generated_at: datetime,
) -> RenderedMessage:
    """Render the message a visit produces: ADT^A08 without assessment, ORU^R01 with one.

    Raises HL7EncodingError when a free-text value cannot be escaped.
    """
    message_type = message_type_for(assessment)
    builder = HL7MessageBuilder(HL7MessageOptions.from_config(config, control_id))
    if assessment is None:
        builder.build_adt_a08(student, visit, school, generated_at)
    else:
        builder.build_oru_r01(student, visit, school, assessment, generated_at)
    return RenderedMessage(message_type=message_type, event=MESSAGE_EVENTS[message_type][0], content=builder.build())


def default_discharge_time(visit: models.ClinicalVisit) -> datetime:
    # Clinic visits without a recorded discharge close four hours after admission
    return visit.visit_date + timedelta(hours=4)
