from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.application.ports import ObjectStorePort
from sensor_recon.core.domain.eligibility import EligibilityDecision, role_requires_assignment, validate
from sensor_recon.core.domain.models import DeviceStatus, Installation, InstallationStatus
from sensor_recon.core.domain.units import to_centimeters
from sensor_recon.core.domain.versioning import normalize_proposal
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.objects import ImageUpload, discard_objects, image_path, validate_image
from sensor_recon.core.infrastructure.settings import Settings
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.utils.exceptions import ConflictError, ValidationError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.time import now_ms, utc_now
from sensor_recon.utils.trace import trace_context

_log = get_logger("usecase.submit_installation")

MAX_IMAGES = 2  # one mandatory, one optional


@dataclass(frozen=True)
class Installer:
    id: str
    name: str
    team_id: str | None = None
    role: str = "installer"


@dataclass
class SubmitInputs:
    device_id: str
    location_id: str
    sensor_reading: float | str
    unit: str = "cm"
    latitude: float | None = None
    longitude: float | None = None
    images: list[ImageUpload] = field(default_factory=list)


async def precheck(
    *,
    storage: StorageFacade,
    settings: Settings,
    installer: Installer,
    device_id: str,
) -> EligibilityDecision:
    """Eligibility at form-validation time. Submission checks again."""
    device_id = (device_id or "").strip()
    if not device_id:
        raise ValidationError("Please enter a Device ID.", title="Device ID Required")
    device = await storage.devices.get(device_id)
    existing = await storage.installations.find_by_device(device_id) if device is not None else None
    decision = validate(
        device,
        installer.id,
        installer.team_id,
        existing,
        requires_assignment=role_requires_assignment(installer.role, settings.ASSIGNMENT_REQUIRED_ROLES),
    )
    inc("eligibility_checks_total", result=decision.code.value if decision.code else "ok")
    return decision


def _normalize(inputs: SubmitInputs) -> dict[str, Any]:
    if not str(inputs.location_id or "").strip():
        raise ValidationError("Please enter a Location ID.", title="Location ID Required")
    proposal: dict[str, Any] = {
        "deviceId": inputs.device_id,
        "locationId": inputs.location_id,
        "sensorReading": to_centimeters(inputs.sensor_reading, inputs.unit),
    }
    if inputs.latitude is not None:
        proposal["latitude"] = inputs.latitude
    if inputs.longitude is not None:
        proposal["longitude"] = inputs.longitude
    return normalize_proposal(proposal)


def _check_images(images: list[ImageUpload], max_bytes: int) -> None:
    if not images:
        raise ValidationError("Please upload at least one image of the installation.", title="Image Required")
    if len(images) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} images can be attached.", title="Too Many Images")
    for img in images:
        validate_image(img, max_bytes=max_bytes)


async def submit(
    *,
    storage: StorageFacade,
    objects: ObjectStorePort,
    settings: Settings,
    installer: Installer,
    inputs: SubmitInputs,
    bus: AsyncEventBus | None = None,
) -> Installation:
    """
    Create a pending installation and mark the device installed.

    Order: input validation -> eligibility (again) -> image upload ->
    existence re-check -> write. Eligibility failures raise EligibilityError; an
    installation that appeared after the eligibility check raises ConflictError.
    """
    fields = _normalize(inputs)
    _check_images(inputs.images, settings.MAX_IMAGE_BYTES)
    device_id = fields["deviceId"]

    with trace_context(prefix="submit_") as tid:
        decision = await precheck(storage=storage, settings=settings, installer=installer, device_id=device_id)
        if not decision.ok:
            _log.info(
                "submission_not_eligible",
                extra={"device_id": device_id, "installer_id": installer.id, "code": decision.code.value},
            )
            decision.raise_for_error()

        urls: list[str] = []
        paths: list[str] = []
        for n, img in enumerate(inputs.images):
            kind = "mandatory" if n == 0 else "optional"
            path = image_path(device_id, kind, img.filename)
            urls.append(await objects.put(path, img.data, img.content_type))
            paths.append(path)

        # the device may have been installed while images were uploading
        if await storage.installations.find_by_device(device_id) is not None:
            inc("submissions_total", result="conflict")
            await discard_objects(objects, paths)
            raise ConflictError("An installation already exists for this device.", title="Device Already Installed")

        device = await storage.devices.get(device_id)
        now = utc_now()
        installation = Installation(
            id=f"{device_id}_{now_ms()}",
            device_id=device_id,
            sensor_reading=fields["sensorReading"],
            location_id=fields["locationId"],
            team_id=installer.team_id or (device.team_id if device else None),
            installed_by=installer.id,
            installed_by_name=installer.name,
            latitude=fields.get("latitude"),
            longitude=fields.get("longitude"),
            status=InstallationStatus.PENDING,
            image_urls=urls,
            created_at=now,
            updated_at=now,
        )
        saved = await storage.installations.save(installation)
        await storage.devices.update_fields(device_id, {"status": DeviceStatus.INSTALLED.value})

        storage.audit.write(
            topics.INSTALLATION_SUBMITTED,
            {"device_id": device_id, "location_id": saved.location_id, "images": len(urls), "trace_id": tid},
            entity_id=saved.id,
            actor=installer.name,
        )
        inc("submissions_total", result="created")
        _log.info(
            "installation_submitted",
            extra={"installation_id": saved.id, "device_id": device_id, "installer_id": installer.id},
        )
        if bus is not None:
            await bus.publish(
                topics.INSTALLATION_SUBMITTED,
                {"installation_id": saved.id, "device_id": device_id, "trace_id": tid},
                key=saved.id,
            )
    return saved


__all__ = ["Installer", "SubmitInputs", "precheck", "submit"]
