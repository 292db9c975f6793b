# clinic_interop/services/delivery_client.py
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog

from ..config import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(success=False, error=error)


class DeliveryClient(Protocol):
    """Outbound boundary to the health-information exchange."""

    async def deliver(self, message: str, control_id: str, environment: str = "test") -> DeliveryResult:
        ...


class MalaffiClient:
    """Posts HL7v2 messages to the Malaffi exchange endpoint."""

    CONTENT_TYPE = "application/hl7-v2"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.timeout = self.settings.hl7_delivery_timeout_seconds
        self._transport = transport

    async def deliver(self, message: str, control_id: str, environment: str = "test") -> DeliveryResult:
        url = self.settings.malaffi_url_for(environment)
        api_key = self.settings.malaffi_api_key
        if not api_key:
            return DeliveryResult.failed("MALAFFI_API_KEY not configured")

        headers = {
            "Content-Type": self.CONTENT_TYPE,
            "Authorization": f"Bearer {api_key}",
            "X-Message-Control-ID": control_id,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, content=message.encode("utf-8"), headers=headers)
        except httpx.TimeoutException:
            return DeliveryResult.failed(f"Request timeout after {self.timeout:g} seconds")
        except httpx.ConnectError as exc:
            return DeliveryResult.failed(
                f"Connection failed: {exc}. Check MALAFFI_API_URL ({url}) and network connectivity."
            )
        except httpx.HTTPError as exc:
            return DeliveryResult.failed(f"Network error: {exc}")

        if response.is_error:
            body = response.text.strip() or response.reason_phrase
            logger.warning(
                "hl7_delivery.rejected",
                control_id=control_id,
                status_code=response.status_code,
            )
            return DeliveryResult.failed(f"HTTP {response.status_code}: {body}")

        return DeliveryResult.ok()
