from __future__ import annotations

from typing import Protocol, runtime_checkable

from sensor_recon.core.infrastructure.telemetry.client import TelemetryReading

# =========================
#  Service ports
# =========================


@runtime_checkable
class TelemetryPort(Protocol):
    """Latest device-reported reading. Raises TransientError on hard failures."""

    async def fetch(self, device_id: str) -> TelemetryReading: ...


@runtime_checkable
class ObjectStorePort(Protocol):
    """Blob upload (returns the public URL of the stored object) and removal."""

    async def put(self, path: str, data: bytes, content_type: str) -> str: ...
    async def delete(self, path: str) -> None: ...


__all__ = ["ObjectStorePort", "TelemetryPort"]
