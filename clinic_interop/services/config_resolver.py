# clinic_interop/services/config_resolver.py
from typing import Any, FrozenSet, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from .. import crud, models
from ..config import Settings, get_settings
from ..schemas import parse_allow_list

logger = structlog.get_logger(__name__)

ALL_MESSAGE_TYPES: FrozenSet[models.HL7MessageType] = frozenset(models.HL7MessageType)


class ResolvedHL7Config(BaseModel):
    """Fully resolved per-school messaging configuration. No field is optional."""
    model_config = ConfigDict(frozen=True)

    school_id: int
    sending_application: str
    sending_facility: str
    receiving_application: str
    receiving_facility: str
    environment: models.HL7Environment
    hl7_version: str
    enabled: bool
    auto_send: bool
    auto_send_message_types: FrozenSet[models.HL7MessageType]
    allow_list_valid: bool = True
    retry_attempts: int

    @property
    def processing_id(self) -> str:
        return self.environment.processing_id

    def should_auto_send(self, message_type: models.HL7MessageType) -> bool:
        if not self.auto_send:
            return False
        if self.retry_attempts < 1:
            return False
        return message_type in self.auto_send_message_types


def _first_set(*values: Optional[Any]) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def build_resolved_config(
    school: models.School,
    config: Optional[models.SchoolHL7Config],
    settings: Optional[Settings] = None,
) -> ResolvedHL7Config:
    """Merge a stored configuration row (possibly None) with the defaults."""
    settings = settings or get_settings()
    stored = config if config is not None else models.SchoolHL7Config()

    allow_list_valid = True
    if stored.auto_send_message_types is None:
        allowed = ALL_MESSAGE_TYPES
    else:
        try:
            allowed = parse_allow_list(stored.auto_send_message_types)
        except ValueError as e:
            # Fail closed: a broken allow-list auto-sends nothing
            logger.warning(
                "hl7_config.invalid_allow_list",
                school_id=school.id,
                error=str(e),
            )
            allowed = frozenset()
            allow_list_valid = False

    retry_attempts = _first_set(stored.retry_attempts, settings.hl7_default_retry_attempts)

    return ResolvedHL7Config(
        school_id=school.id,
        sending_application=_first_set(stored.sending_application, school.code),
        sending_facility=_first_set(stored.sending_facility, school.code),
        receiving_application=_first_set(stored.receiving_application, settings.hl7_default_receiving_application),
        receiving_facility=_first_set(stored.receiving_facility, settings.hl7_default_receiving_facility),
        environment=_first_set(stored.environment, models.HL7Environment.test),
        hl7_version=_first_set(stored.hl7_version, settings.hl7_default_version),
        enabled=_first_set(stored.enabled, True),
        auto_send=_first_set(stored.auto_send, True),
        auto_send_message_types=allowed,
        allow_list_valid=allow_list_valid,
        retry_attempts=max(int(retry_attempts), 0),
    )


def resolve_hl7_config(db: Session, school: models.School, settings: Optional[Settings] = None) -> ResolvedHL7Config:
    """Load a school's messaging configuration, filling unset fields with defaults.

    A missing configuration row is not an error. Reads only.
    """
    return build_resolved_config(school, crud.get_hl7_config(db, school.id), settings)
