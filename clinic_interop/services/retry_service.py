# clinic_interop/services/retry_service.py
"""Bounded delivery attempts for a single ledger entry.

Attempt n (1-based) that fails waits ``backoff_delay(n)`` before attempt n+1.
The last failure marks the entry FAILED with ``retry_count`` equal to the
budget; the first success marks it SENT. Cancellation is not intercepted, so
a cancelled delivery leaves the entry as the last completed write left it.
"""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud, models
from ..config import get_settings
from ..database import SessionLocal
from ..exceptions import LedgerWriteError
from .config_resolver import ResolvedHL7Config
from .delivery_client import DeliveryClient, DeliveryResult, MalaffiClient

logger = structlog.get_logger(__name__)


def backoff_delay(attempt: int, unit: float = 1.0) -> float:
    """Delay after failed attempt ``attempt``: 1, 2, 4, ... units."""
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    return unit * (2 ** (attempt - 1))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryService:
    def __init__(
        self,
        client: Optional[DeliveryClient] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        backoff_unit: Optional[float] = None,
    ):
        self.client = client or MalaffiClient()
        self.session_factory = session_factory
        self.sleep = sleep
        self.clock = clock
        self.backoff_unit = get_settings().hl7_backoff_unit_seconds if backoff_unit is None else backoff_unit

    async def _attempt(self, content: str, control_id: str, environment: str) -> DeliveryResult:
        try:
            result = await self.client.deliver(content, control_id, environment)
        except Exception as e:
            return DeliveryResult.failed(str(e) or e.__class__.__name__)
        if result is None:
            return DeliveryResult.failed("Delivery client returned no result")
        return result

    async def deliver(
        self,
        record_id: int,
        content: str,
        control_id: str,
        config: ResolvedHL7Config,
    ) -> models.HL7MessageStatus:
        budget = config.retry_attempts
        if budget < 1:
            raise ValueError("delivery requires a retry budget of at least 1")

        log = logger.bind(record_id=record_id, control_id=control_id, school_id=config.school_id)
        environment = config.environment.value
        last_error = "Unknown delivery error"

        for attempt in range(1, budget + 1):
            result = await self._attempt(content, control_id, environment)
            if result.success:
                self._finalize(crud.mark_hl7_message_sent, record_id, sent_at=self.clock())
                log.info("hl7_delivery.sent", attempt=attempt)
                return models.HL7MessageStatus.SENT

            last_error = result.error or last_error
            log.warning("hl7_delivery.attempt_failed", attempt=attempt, budget=budget, error=last_error)
            if attempt < budget:
                await self.sleep(backoff_delay(attempt, self.backoff_unit))

        self._finalize(crud.mark_hl7_message_failed, record_id, error_message=last_error, retry_count=budget)
        log.error("hl7_delivery.failed", attempts=budget, error=last_error)
        return models.HL7MessageStatus.FAILED

    def _finalize(self, write, record_id: int, **values) -> None:
        db = self.session_factory()
        try:
            write(db, record_id, **values)
        except crud.CRUDError as e:
            logger.error("hl7_ledger.write_failed", record_id=record_id, error=str(e))
            raise LedgerWriteError(str(e)) from e
        finally:
            db.close()
