from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.domain.models import Device, DeviceStatus
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.storage.document_store import WriteOp
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.core.infrastructure.storage.repositories.devices import COLLECTION as DEVICES
from sensor_recon.core.infrastructure.storage.repositories.devices import DevicesRepo
from sensor_recon.utils.exceptions import NotFoundError, ValidationError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.time import iso_utc

_log = get_logger("usecase.boxes")


async def import_devices(
    *,
    storage: StorageFacade,
    records: Sequence[Mapping[str, Any]],
    actor: str | None = None,
) -> int:
    """Register new devices from an import file. Ids already present are left alone."""
    groups: list[list[WriteOp]] = []
    seen: set[str] = set()
    for rec in records:
        device_id = str(rec.get("id") or "").strip()
        if not device_id:
            raise ValidationError("Every imported device needs an id.", title="Invalid Import")
        if device_id in seen or await storage.devices.get(device_id) is not None:
            continue
        seen.add(device_id)
        device = Device.from_document({**rec, "id": device_id, "status": DeviceStatus.PENDING.value})
        doc = device.to_document()
        doc["createdAt"] = doc["updatedAt"] = iso_utc()
        groups.append([WriteOp.set(DEVICES, device_id, doc)])

    if groups:
        await storage.documents.batch_write(groups)
        storage.audit.write(topics.DEVICES_IMPORTED, {"count": len(groups)}, actor=actor)
        inc("devices_imported_total")
    _log.info("devices_imported", extra={"imported": len(groups), "received": len(records)})
    return len(groups)


async def assign_box(
    *,
    storage: StorageFacade,
    device_ids: Sequence[str],
    box_number: str,
    team_id: str,
    actor: str | None = None,
) -> int:
    """Put devices into a team's box; the box starts closed."""
    box = str(box_number or "").strip()
    if not box or not team_id:
        raise ValidationError("Box identifier and team are required.", title="Box Assignment Incomplete")
    ids = [d.strip() for d in device_ids if d and d.strip()]
    if not ids:
        raise ValidationError("Please select at least one device from this box to assign.",
                              title="No Devices Selected")
    fields = {"boxNumber": box, "teamId": team_id, "boxOpened": False}
    await storage.documents.batch_write([[DevicesRepo.update_op(d, fields)] for d in ids])
    storage.audit.write(topics.BOX_ASSIGNED, {"devices": ids, **fields}, entity_id=box, actor=actor)
    _log.info("box_assigned", extra={"box_number": box, "team_id": team_id, "devices": len(ids)})
    return len(ids)


async def open_box(
    *,
    storage: StorageFacade,
    box_number: str,
    team_id: str | None,
    actor: str | None = None,
    bus: AsyncEventBus | None = None,
) -> int:
    """Mark every unopened device of the box in the team as opened. Returns the count."""
    if not team_id:
        raise ValidationError(
            "Your account must be linked to a team before you can open boxes.", title="No Team Assigned"
        )
    box = str(box_number or "").strip()
    if not box:
        raise ValidationError("Please enter the box identifier you are opening.", title="Box Identifier Required")

    matching = [d for d in await storage.devices.in_box(box, team_id) if d.box_opened is not True]
    if not matching:
        raise NotFoundError(
            "No devices for this box identifier in your team, or it is already opened.", title="No Devices Found"
        )

    groups = [[DevicesRepo.update_op(d.id, {"boxOpened": True})] for d in matching]
    await storage.documents.batch_write(groups)

    storage.audit.write(
        topics.BOX_OPENED,
        {"box_number": box, "team_id": team_id, "devices": [d.id for d in matching]},
        entity_id=box,
        actor=actor,
    )
    inc("boxes_opened_total")
    _log.info("box_opened", extra={"box_number": box, "team_id": team_id, "devices": len(matching)})
    if bus is not None:
        await bus.publish(topics.BOX_OPENED, {"box_number": box, "team_id": team_id, "count": len(matching)})
    return len(matching)


async def assign_installer(
    *,
    storage: StorageFacade,
    device_ids: Sequence[str],
    installer_id: str | None,
    installer_name: str | None = None,
    actor: str | None = None,
    bus: AsyncEventBus | None = None,
) -> int:
    """Lock devices to one installer; `installer_id=None` clears the lock."""
    ids = [d.strip() for d in device_ids if d and d.strip()]
    if not ids:
        raise ValidationError("Select at least one device.", title="No Devices Selected")

    missing = [d for d in ids if await storage.devices.get(d) is None]
    if missing:
        raise NotFoundError(f"Unknown device(s): {', '.join(missing)}.", title="Device Not Found")

    fields = {
        "assignedInstallerId": installer_id or None,
        "assignedInstallerName": (installer_name or None) if installer_id else None,
    }
    await storage.documents.batch_write([[DevicesRepo.update_op(d, fields)] for d in ids])

    storage.audit.write(
        topics.INSTALLER_ASSIGNED,
        {"devices": ids, **fields},
        entity_id=installer_id,
        actor=actor,
    )
    inc("installer_assignments_total", cleared=str(installer_id is None).lower())
    _log.info("installer_assigned", extra={"installer_id": installer_id, "devices": len(ids)})
    if bus is not None:
        await bus.publish(topics.INSTALLER_ASSIGNED, {"installer_id": installer_id, "count": len(ids)})
    return len(ids)


__all__ = ["assign_box", "assign_installer", "import_devices", "open_box"]
