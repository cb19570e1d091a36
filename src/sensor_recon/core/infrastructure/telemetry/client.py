"""
Client for the device telemetry service.

    GET {base}/device/{DEVICE_KEY}     X-API-KEY: <key>
    -> {"records": [{"dis_cm": 123.4, "timestamp": "..."}, ...]}   newest first

404 and an empty / missing `records` list mean "no data yet". Every other
non-2xx status, network failure or undecodable body is a TransientError.
429, 5xx and connection failures are retried with jittered backoff before
giving up. The client owns one httpx.AsyncClient for its lifetime; call
`aclose()` on shutdown.
"""
from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any

import httpx

from sensor_recon.core.domain.variance import has_server_data
from sensor_recon.core.infrastructure.settings import Settings
from sensor_recon.utils.exceptions import TransientError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import atimer, inc

_log = get_logger("telemetry.client")


@dataclass(frozen=True)
class TelemetryReading:
    has_data: bool
    dis_cm: float | None = None
    timestamp: str | None = None


NO_DATA = TelemetryReading(has_data=False)


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_body(body: Any) -> TelemetryReading:
    if not isinstance(body, dict):
        raise TransientError("Telemetry response is not an object.")
    records = body.get("records")
    if not records:
        return NO_DATA
    if not isinstance(records, list) or not isinstance(records[0], dict):
        raise TransientError("Telemetry records are malformed.")
    newest = records[0]
    dis_cm = _to_float(newest.get("dis_cm"))
    ts = newest.get("timestamp")
    return TelemetryReading(
        has_data=has_server_data(dis_cm),
        dis_cm=dis_cm,
        timestamp=str(ts) if ts is not None else None,
    )


_RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def _should_retry(resp: httpx.Response) -> bool:
    return resp.status_code in _RETRY_STATUSES


class TelemetryClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_sec: float = 10.0,
        retries: int = 1,
        backoff_sec: float = 0.5,
        device_key_length: int = 0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout_sec = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff_sec = float(backoff_sec)
        self.device_key_length = int(device_key_length)
        self._client = client

    @classmethod
    def from_settings(cls, s: Settings, *, client: httpx.AsyncClient | None = None) -> TelemetryClient:
        return cls(
            s.TELEMETRY_BASE_URL,
            s.TELEMETRY_API_KEY,
            timeout_sec=s.TELEMETRY_TIMEOUT_SEC,
            retries=s.TELEMETRY_RETRIES,
            device_key_length=s.TELEMETRY_DEVICE_KEY_LENGTH,
            client=client,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        # created on first use so it belongs to the running event loop
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_sec))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def device_key(self, device_id: str) -> str:
        key = str(device_id).strip().upper()
        if self.device_key_length > 0:
            key = key[-self.device_key_length:]
        return key

    def url_for(self, device_id: str) -> str:
        return f"{self.base_url}/device/{self.device_key(device_id)}"

    async def _get(self, url: str) -> httpx.Response:
        headers = {"X-API-KEY": self._api_key, "Accept": "application/json"}
        attempt = 0
        while True:
            delay = self.backoff_sec * (2 ** attempt) * random.uniform(0.75, 1.25)
            try:
                resp = await self.client.get(url, headers=headers)
            except httpx.TransportError:
                if attempt >= self.retries:
                    raise
            else:
                if not _should_retry(resp) or attempt >= self.retries:
                    return resp
                _log.debug("telemetry_retry", extra={"url": url, "status": resp.status_code, "attempt": attempt + 1})
            attempt += 1
            await asyncio.sleep(delay)

    async def fetch(self, device_id: str) -> TelemetryReading:
        url = self.url_for(device_id)
        try:
            async with atimer("telemetry_fetch_ms"):
                resp = await self._get(url)
        except (httpx.HTTPError, TimeoutError, OSError) as exc:
            inc("telemetry_fetch_total", result="error")
            _log.warning("telemetry_network_error", extra={"device_id": device_id, "error": str(exc)})
            raise TransientError(f"Telemetry service unreachable: {exc}") from exc

        if resp.status_code == 404:
            inc("telemetry_fetch_total", result="no_data")
            return NO_DATA

        if not resp.is_success:
            inc("telemetry_fetch_total", result="error")
            _log.warning("telemetry_bad_status", extra={"device_id": device_id, "status": resp.status_code})
            raise TransientError(f"Telemetry service answered HTTP {resp.status_code}.")

        try:
            body = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            inc("telemetry_fetch_total", result="error")
            raise TransientError("Telemetry response is not valid JSON.") from exc

        try:
            reading = parse_body(body)
        except TransientError:
            inc("telemetry_fetch_total", result="error")
            raise
        inc("telemetry_fetch_total", result="data" if reading.has_data else "no_data")
        return reading


__all__ = ["NO_DATA", "TelemetryClient", "TelemetryReading", "parse_body"]
