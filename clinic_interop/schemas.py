# clinic_interop/schemas.py
import json
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import HL7Environment, HL7MessageStatus, HL7MessageType

# Legacy HL7 event names accepted in the auto-send allow-list
MESSAGE_TYPE_ALIASES = {
    "ADMIT_UPDATE": HL7MessageType.ADMIT_UPDATE,
    "OBSERVATION_RESULT": HL7MessageType.OBSERVATION_RESULT,
    "ADT": HL7MessageType.ADMIT_UPDATE,
    "ADT_A01": HL7MessageType.ADMIT_UPDATE,
    "ADT_A03": HL7MessageType.ADMIT_UPDATE,
    "ADT_A04": HL7MessageType.ADMIT_UPDATE,
    "ADT_A08": HL7MessageType.ADMIT_UPDATE,
    "ORU": HL7MessageType.OBSERVATION_RESULT,
    "ORU_R01": HL7MessageType.OBSERVATION_RESULT,
}


def parse_allow_list(value: Any) -> FrozenSet[HL7MessageType]:
    """Parse an auto-send allow-list into message types.

    Accepts a list of names or a JSON-encoded list. Raises ValueError for
    anything else, including unknown names.
    """
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"allow-list is not valid JSON: {e.msg}") from e
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValueError("allow-list must be a list of message type names")

    types = set()
    for entry in value:
        key = str(entry).strip().upper().replace("^", "_")
        if key not in MESSAGE_TYPE_ALIASES:
            raise ValueError(f"unknown message type in allow-list: {entry!r}")
        types.add(MESSAGE_TYPE_ALIASES[key])
    return frozenset(types)


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- HL7 Configuration Schemas ---
class HL7ConfigUpdate(BaseModel):
    sending_application: str = Field(..., min_length=1, max_length=100)
    sending_facility: str = Field(..., min_length=1, max_length=100)
    receiving_application: str = Field(..., min_length=1, max_length=100)
    receiving_facility: str = Field(..., min_length=1, max_length=100)
    hl7_version: str = Field("2.5.1", min_length=1, max_length=10)
    environment: HL7Environment = HL7Environment.test
    enabled: bool = True
    auto_send: bool = True
    retry_attempts: int = Field(3, ge=0, le=10)
    auto_send_message_types: Optional[List[HL7MessageType]] = Field(
        None, description="Message types sent automatically. Omit to allow every type."
    )

    @field_validator("auto_send_message_types", mode="before")
    @classmethod
    def normalize_message_types(cls, v):
        if v is None:
            return None
        return sorted(t.value for t in parse_allow_list(v))


class HL7ConfigResponse(BaseSchema):
    school_id: int
    school_code: str
    sending_application: str
    sending_facility: str
    receiving_application: str
    receiving_facility: str
    hl7_version: str
    environment: HL7Environment
    processing_id: str
    enabled: bool
    auto_send: bool
    retry_attempts: int
    auto_send_message_types: List[HL7MessageType]
    allow_list_valid: bool = True
    is_default: bool = Field(False, description="True when the school has no stored configuration")


# --- HL7 Message Ledger Schemas ---
class HL7MessageResponse(BaseSchema):
    id: int
    message_type: HL7MessageType
    message_control_id: str
    student_id: int
    visit_id: Optional[int] = None
    school_id: int
    status: HL7MessageStatus
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None


class HL7MessageDetail(HL7MessageResponse):
    message_content: str


class HL7GenerateRequest(BaseModel):
    type: Literal["ADT_A01", "ADT_A03", "ADT_A04", "ADT_A08", "ORU_R01"]
    student_id: Optional[int] = None
    visit_id: Optional[int] = None


class HL7GenerateResponse(BaseModel):
    type: str
    message_control_id: str
    message: str


# --- HL7 Report Schemas ---
class HL7SchoolCount(BaseModel):
    school_id: int
    school_name: str
    school_code: str
    count: int


class HL7ReportResponse(BaseModel):
    total_messages: int
    sent_messages: int
    failed_messages: int
    pending_messages: int
    success_rate: float
    average_retry_count: float
    messages_by_status: Dict[str, int]
    messages_by_type: Dict[str, int]
    messages_by_school: List[HL7SchoolCount]
    messages_by_date: Dict[str, int]
