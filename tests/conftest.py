from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from sensor_recon.core.application.audit import AuditEngine
from sensor_recon.core.application.reconciliation.engine import ReconciliationEngine
from sensor_recon.core.domain.models import Device, DeviceStatus, Installation, InstallationStatus
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.objects import ImageUpload, LocalObjectStore
from sensor_recon.core.infrastructure.settings import BackgroundIntervals, Settings
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.core.infrastructure.storage.sqlite_adapter import connect
from sensor_recon.core.infrastructure.telemetry.client import NO_DATA, TelemetryReading
from sensor_recon.utils import metrics
from sensor_recon.utils.time import utc_now

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeTelemetry:
    """
    In-memory telemetry service:
      - readings[device_id] = TelemetryReading | Exception
      - gate: when set, fetch() waits on it (to hold a call in flight)
    """

    def __init__(self) -> None:
        self.readings: dict[str, TelemetryReading | Exception] = {}
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    def set_reading(self, device_id: str, dis_cm: float | None, timestamp: str = "2024-05-01T10:00:00Z") -> None:
        if dis_cm is None:
            self.readings[device_id] = NO_DATA
        else:
            self.readings[device_id] = TelemetryReading(has_data=dis_cm > 0, dis_cm=dis_cm, timestamp=timestamp)

    def fail(self, device_id: str, exc: Exception) -> None:
        self.readings[device_id] = exc

    async def fetch(self, device_id: str) -> TelemetryReading:
        self.calls.append(device_id)
        if self.gate is not None:
            await self.gate.wait()
        value = self.readings.get(device_id, NO_DATA)
        if isinstance(value, Exception):
            raise value
        return value


@dataclass
class RecordingObjects:
    """Object store double that keeps uploads in memory."""

    puts: list[tuple[str, int, str]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        self.puts.append((path, len(data), content_type))
        return f"https://objects.test/{path}"

    async def delete(self, path: str) -> None:
        self.deleted.append(path)


def png(name: str = "photo.png", size: int | None = None) -> ImageUpload:
    data = PNG_BYTES if size is None else b"\x00" * size
    return ImageUpload(filename=name, content_type="image/png", data=data)


@pytest.fixture(autouse=True)
def _fresh_metrics_registry():
    metrics.reset_registry()
    yield


@pytest.fixture
def bus() -> AsyncEventBus:
    return AsyncEventBus(max_attempts=1, backoff_base_ms=1)


@pytest.fixture
def storage(bus: AsyncEventBus):
    facade = StorageFacade.from_connection(connect(":memory:"), bus)
    yield facade
    facade.close()


@pytest.fixture
def telemetry() -> FakeTelemetry:
    return FakeTelemetry()


@pytest.fixture
def objects() -> RecordingObjects:
    return RecordingObjects()


@pytest.fixture
def local_objects(tmp_path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects", base_url="https://cdn.test")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DB_PATH=":memory:",
        TELEMETRY_BASE_URL="https://telemetry.test",
        TELEMETRY_API_KEY="test-key",
        OBJECT_STORE_ROOT=str(tmp_path / "objects"),
        SCHEDULER_AUTOSTART=False,
        intervals=BackgroundIntervals(
            INSTALLER_POLL=0.05,
            INSTALLER_STALENESS=120.0,
            VERIFIER_POLL=0.05,
            VERIFIER_STALENESS=86400.0,
        ),
    )


@pytest.fixture
def engine(storage: StorageFacade, telemetry: FakeTelemetry, bus: AsyncEventBus) -> ReconciliationEngine:
    return ReconciliationEngine(storage=storage, telemetry=telemetry, bus=bus)


@pytest.fixture
def audit_engine(storage: StorageFacade, objects: RecordingObjects, bus: AsyncEventBus) -> AuditEngine:
    return AuditEngine(storage=storage, objects=objects, bus=bus)


@pytest.fixture
def make_device(storage: StorageFacade):
    async def _make(device_id: str = "DEV001", **fields: Any) -> Device:
        fields.setdefault("team_id", "team-1")
        return await storage.devices.save(Device(id=device_id, **fields))

    return _make


@pytest.fixture
def make_installation(storage: StorageFacade):
    async def _make(
        installation_id: str = "DEV001_1700000000000",
        *,
        device_id: str = "DEV001",
        sensor_reading: float = 100.0,
        status: InstallationStatus = InstallationStatus.PENDING,
        **fields: Any,
    ) -> Installation:
        fields.setdefault("location_id", "12")
        fields.setdefault("team_id", "team-1")
        fields.setdefault("installed_by", "inst-1")
        fields.setdefault("created_at", utc_now())
        inst = Installation(
            id=installation_id,
            device_id=device_id,
            sensor_reading=sensor_reading,
            status=status,
            **fields,
        )
        return await storage.installations.save(inst)

    return _make


@pytest.fixture
def installed_device(make_device, make_installation):
    """Device plus its pending installation (reading 100 cm)."""

    async def _make(device_id: str = "DEV001", sensor_reading: float = 100.0, **fields: Any) -> Installation:
        await make_device(device_id, status=DeviceStatus.INSTALLED)
        return await make_installation(f"{device_id}_1700000000000", device_id=device_id,
                                       sensor_reading=sensor_reading, **fields)

    return _make


@pytest.fixture
def make_image():
    return png
