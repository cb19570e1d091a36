from datetime import UTC, datetime

from sensor_recon.core.domain.models import (
    SYSTEM_AUTO_REJECT_ACTOR,
    Device,
    DeviceStatus,
    Installation,
    InstallationStatus,
)
from sensor_recon.core.domain.units import to_centimeters


def test_installation_document_uses_persisted_field_names():
    inst = Installation(
        id="DEV001_1",
        device_id="DEV001",
        sensor_reading=100.0,
        location_id="12",
        created_at=datetime(2024, 5, 1, tzinfo=UTC),
    )
    doc = inst.to_document()
    for key in (
        "deviceId", "sensorReading", "locationId", "originalLocationId", "latestDisCm",
        "latestDisTimestamp", "systemPreVerified", "systemPreVerifiedAt", "serverRefreshedAt",
        "flaggedReason", "verifiedBy", "verifiedAt", "tags", "imageUrls", "createdAt",
    ):
        assert key in doc
    assert doc["status"] == "pending"
    assert doc["createdAt"].startswith("2024-05-01T00:00:00")


def test_installation_from_document_keeps_unknown_keys():
    doc = {
        "id": "DEV001_1",
        "deviceId": "DEV001",
        "sensorReading": "99.5",
        "locationId": 12,
        "status": "flagged",
        "tags": ["a", "a", "b"],
        "original_sensorReading_2": 90,
        "original_sensorReading_1": 80,
        "installerNotes": "behind the gate",
    }
    inst = Installation.from_document(doc)

    assert inst.sensor_reading == 99.5
    assert inst.location_id == "12"
    assert inst.status is InstallationStatus.FLAGGED
    assert inst.tags == ["a", "b"]
    assert [v.version for v in inst.versions("sensorReading")] == [1, 2]
    assert inst.to_document()["installerNotes"] == "behind the gate"


def test_auto_flagged_detection():
    auto = Installation(
        id="x", device_id="d", sensor_reading=100.0, location_id="1",
        status=InstallationStatus.FLAGGED, verified_by=SYSTEM_AUTO_REJECT_ACTOR,
    )
    human = Installation(
        id="y", device_id="d", sensor_reading=100.0, location_id="1",
        status=InstallationStatus.FLAGGED, verified_by="alice", flagged_reason="photo blurry",
    )
    assert auto.is_auto_flagged and auto.accepts_reconciliation
    assert not human.is_auto_flagged and not human.accepts_reconciliation


def test_device_box_number_normalized_to_text():
    device = Device.from_document({"id": "DEV9", "boxNumber": 42, "status": "installed"})
    assert device.box_number == "42"
    assert device.status is DeviceStatus.INSTALLED
    assert device.to_document()["boxNumber"] == "42"


def test_units_convert_to_centimeters():
    assert to_centimeters("1.5", "m") == 150.0
    assert to_centimeters(250, "MM") == 25.0
    assert to_centimeters(10, "in") == 25.4
    assert to_centimeters(42) == 42.0
