import httpx
import pytest

from sensor_recon.core.infrastructure.telemetry.client import NO_DATA, TelemetryClient, parse_body
from sensor_recon.utils.exceptions import TransientError


def _client(handler, **kw) -> TelemetryClient:
    transport = httpx.MockTransport(handler)
    return TelemetryClient(
        "https://telemetry.test/",
        "secret-key",
        retries=0,
        client=httpx.AsyncClient(transport=transport),
        **kw,
    )


@pytest.mark.asyncio
async def test_fetch_latest_record_with_key_header():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("X-API-KEY")
        return httpx.Response(
            200,
            json={"records": [
                {"dis_cm": 104.2, "timestamp": "2024-05-01T10:00:00Z"},
                {"dis_cm": 99.0, "timestamp": "2024-05-01T09:00:00Z"},
            ]},
        )

    reading = await _client(handler).fetch("abc123")

    assert seen["url"] == "https://telemetry.test/device/ABC123"
    assert seen["key"] == "secret-key"
    assert reading.has_data is True
    assert reading.dis_cm == 104.2
    assert reading.timestamp == "2024-05-01T10:00:00Z"


@pytest.mark.asyncio
async def test_404_means_no_data():
    reading = await _client(lambda r: httpx.Response(404)).fetch("DEV001")
    assert reading == NO_DATA


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"records": []}, {}, {"records": None}])
async def test_empty_records_mean_no_data(body):
    reading = await _client(lambda r: httpx.Response(200, json=body)).fetch("DEV001")
    assert reading.has_data is False


@pytest.mark.asyncio
async def test_zero_reading_is_no_data():
    body = {"records": [{"dis_cm": 0, "timestamp": "2024-05-01T10:00:00Z"}]}
    reading = await _client(lambda r: httpx.Response(200, json=body)).fetch("DEV001")
    assert reading.has_data is False


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 500, 503])
async def test_other_statuses_are_transient(status):
    with pytest.raises(TransientError):
        await _client(lambda r: httpx.Response(status)).fetch("DEV001")


@pytest.mark.asyncio
async def test_invalid_json_is_transient():
    with pytest.raises(TransientError):
        await _client(lambda r: httpx.Response(200, content=b"<html>")).fetch("DEV001")


@pytest.mark.asyncio
async def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError):
        await _client(handler).fetch("DEV001")


def test_device_key_suffix():
    client = TelemetryClient("https://telemetry.test", "k", device_key_length=6)
    assert client.device_key("site-a-0xab12cd") == "AB12CD"
    assert TelemetryClient("https://telemetry.test", "k").device_key(" dev01 ") == "DEV01"


def test_parse_body_rejects_non_object():
    with pytest.raises(TransientError):
        parse_body(["not", "an", "object"])
    with pytest.raises(TransientError):
        parse_body({"records": ["x"]})


@pytest.mark.asyncio
async def test_retries_busy_service_then_reads():
    answers = iter([httpx.Response(503), httpx.Response(200, json={"records": [{"dis_cm": 88.0}]})])
    client = TelemetryClient(
        "https://telemetry.test",
        "k",
        retries=1,
        backoff_sec=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: next(answers))),
    )

    reading = await client.fetch("DEV001")

    assert reading.dis_cm == 88.0


@pytest.mark.asyncio
async def test_owned_http_client_is_created_lazily_and_closed():
    client = TelemetryClient("https://telemetry.test", "k")
    http = client.client
    assert client.client is http

    await client.aclose()

    assert http.is_closed
    assert client.client is not http
    await client.aclose()
