# tests/test_delivery_client.py
import httpx
import pytest

from clinic_interop.config import Settings
from clinic_interop.services.delivery_client import MalaffiClient

MESSAGE = "MSH|^~\\&|SCH001|SCH001|Rhapsody|MALAFFI|20261005100000||ADT^A08|MSG1|T|2.5.1"


def make_settings(**overrides):
    values = {"MALAFFI_API_KEY": "secret-key", "HL7_DELIVERY_TIMEOUT_SECONDS": 30}
    values.update(overrides)
    return Settings(**values)


def client_with(handler, **overrides):
    return MalaffiClient(settings=make_settings(**overrides), transport=httpx.MockTransport(handler))


async def test_successful_post_sends_hl7_with_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, text="MSA|AA|MSG1")

    result = await client_with(handler).deliver(MESSAGE, "MSG1")

    assert result.success is True
    assert result.error is None
    request = seen["request"]
    assert request.method == "POST"
    assert str(request.url) == "https://test-hl7.malaffi.ae/receive"
    assert request.headers["Content-Type"] == "application/hl7-v2"
    assert request.headers["Authorization"] == "Bearer secret-key"
    assert request.headers["X-Message-Control-ID"] == "MSG1"
    assert request.content.decode("utf-8") == MESSAGE


async def test_production_environment_uses_production_endpoint():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200)

    await client_with(handler).deliver(MESSAGE, "MSG1", environment="production")

    assert seen["url"] == "https://hl7.malaffi.ae/receive"


async def test_explicit_endpoint_overrides_environment_default():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200)

    await client_with(handler, MALAFFI_API_URL="https://hie.example.test/hl7").deliver(
        MESSAGE, "MSG1", environment="production"
    )

    assert seen["url"] == "https://hie.example.test/hl7"


async def test_missing_api_key_fails_without_network_call():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    client = MalaffiClient(settings=Settings(MALAFFI_API_KEY=""), transport=httpx.MockTransport(handler))
    result = await client.deliver(MESSAGE, "MSG1")

    assert result.success is False
    assert result.error == "MALAFFI_API_KEY not configured"
    assert calls == []


async def test_http_error_status_is_a_failure():
    def handler(request):
        return httpx.Response(503, text="Service Unavailable")

    result = await client_with(handler).deliver(MESSAGE, "MSG1")

    assert result.success is False
    assert result.error == "HTTP 503: Service Unavailable"


async def test_timeout_is_reported_with_duration():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = await client_with(handler).deliver(MESSAGE, "MSG1")

    assert result.success is False
    assert result.error == "Request timeout after 30 seconds"


async def test_connection_error_is_reported():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await client_with(handler).deliver(MESSAGE, "MSG1")

    assert result.success is False
    assert result.error.startswith("Connection failed: connection refused")


@pytest.mark.parametrize("status_code", [400, 401, 500])
async def test_error_codes_never_count_as_success(status_code):
    def handler(request):
        return httpx.Response(status_code)

    result = await client_with(handler).deliver(MESSAGE, "MSG1")

    assert result.success is False
    assert result.error.startswith(f"HTTP {status_code}: ")
