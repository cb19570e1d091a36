import pytest

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.domain.models import EDITED_BY_VERIFIER_TAG
from sensor_recon.core.infrastructure.objects import ImageUpload
from sensor_recon.utils.exceptions import EligibilityError, NotFoundError, ValidationError


@pytest.mark.asyncio
async def test_sensor_reading_history_over_two_rounds(audit_engine, installed_device, storage):
    inst = await installed_device(sensor_reading=100.0)

    await audit_engine.apply_edit(inst.id, {"sensorReading": 110}, editor="vera")
    result = await audit_engine.apply_edit(inst.id, {"sensorReading": 120}, editor="vera")

    doc = await storage.documents.get("installations", inst.id)
    assert doc["original_sensorReading_1"] == 100.0
    assert doc["original_sensorReading_2"] == 110.0
    assert doc["sensorReading"] == 120.0
    assert doc["tags"].count(EDITED_BY_VERIFIER_TAG) == 1
    assert [(c.field, c.version) for c in result.changes] == [("sensorReading", 2)]


@pytest.mark.asyncio
async def test_no_difference_means_no_write(audit_engine, installed_device, storage):
    inst = await installed_device()
    before = await storage.documents.get("installations", inst.id)

    result = await audit_engine.apply_edit(inst.id, {"sensorReading": "100", "locationId": "12"}, editor="vera")

    assert result.changed is False
    assert await storage.documents.get("installations", inst.id) == before
    assert storage.audit.list_for(inst.id) == []


@pytest.mark.asyncio
async def test_image_only_edit_appends_url(audit_engine, installed_device, objects, make_image):
    inst = await installed_device()

    result = await audit_engine.apply_edit(inst.id, {}, editor="vera", image=make_image("closeup.png"))

    assert result.changed is True
    assert result.changes == []
    assert result.image_url in result.installation.image_urls
    assert objects.puts[0][0].startswith(f"installations/{inst.id}/{inst.id}_edit_")
    assert EDITED_BY_VERIFIER_TAG in result.installation.tags


@pytest.mark.asyncio
async def test_invalid_image_rejected_before_any_write(audit_engine, installed_device, objects, storage):
    inst = await installed_device()
    before = await storage.documents.get("installations", inst.id)
    bad = ImageUpload("notes.txt", "text/plain", b"hello")

    with pytest.raises(ValidationError):
        await audit_engine.apply_edit(inst.id, {"sensorReading": 150}, editor="vera", image=bad)

    assert objects.puts == []
    assert await storage.documents.get("installations", inst.id) == before


@pytest.mark.asyncio
async def test_device_id_change_to_installed_device(audit_engine, installed_device):
    first = await installed_device("DEV001")
    await installed_device("DEV002")

    with pytest.raises(EligibilityError) as ei:
        await audit_engine.apply_edit(first.id, {"deviceId": "DEV002"}, editor="vera")
    assert ei.value.code == "already_installed"


@pytest.mark.asyncio
async def test_coordinates_and_location_versioned_independently(audit_engine, installed_device, storage, bus):
    inst = await installed_device()
    edited = []

    async def on_edit(evt):
        edited.append(evt.payload)

    bus.subscribe(topics.INSTALLATION_EDITED, on_edit)

    await audit_engine.apply_edit(inst.id, {"latitude": 41.15, "locationId": "34"}, editor="vera")
    await audit_engine.apply_edit(inst.id, {"locationId": "56"}, editor="vera")

    doc = await storage.documents.get("installations", inst.id)
    assert doc["original_latitude_1"] is None
    assert doc["original_locationId_1"] == "12"
    assert doc["original_locationId_2"] == "34"
    assert "original_latitude_2" not in doc
    assert doc["locationId"] == "56"
    assert [len(p["changes"]) for p in edited] == [2, 1]
    assert [a["event"] for a in storage.audit.list_for(inst.id)] == [topics.INSTALLATION_EDITED] * 2


@pytest.mark.asyncio
async def test_edit_of_missing_installation(audit_engine):
    with pytest.raises(NotFoundError):
        await audit_engine.apply_edit("missing", {"sensorReading": 1}, editor="vera")


@pytest.mark.asyncio
async def test_failed_write_removes_uploaded_image(
    audit_engine, installed_device, objects, storage, monkeypatch, make_image
):
    inst = await installed_device()

    async def vanished(installation_id, fields):
        raise NotFoundError(f"Installation {installation_id} does not exist.")

    monkeypatch.setattr(storage.installations, "update_fields", vanished)

    with pytest.raises(NotFoundError):
        await audit_engine.apply_edit(inst.id, {"sensorReading": 150}, editor="vera", image=make_image("closeup.png"))

    assert [p for p, _, _ in objects.puts] == objects.deleted
    assert len(objects.deleted) == 1
    assert storage.audit.list_for(inst.id) == []
