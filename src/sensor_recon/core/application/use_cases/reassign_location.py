"""
Bulk administrative move of installations to another location id.

`originalLocationId` is written once (first reassignment only); `locationId` is
overwritten every time. Each record's preserve + overwrite pair forms one group
that the batch writer never splits across chunks.
"""
from __future__ import annotations

import re
from collections.abc import Sequence

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.domain.models import Installation
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.storage.document_store import WriteOp
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.core.infrastructure.storage.repositories.installations import InstallationsRepo
from sensor_recon.utils.exceptions import ValidationError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import atimer, inc

_log = get_logger("usecase.reassign_location")

_LOCATION_ID_RE = re.compile(r"^\d+$")


def _check_location_id(value: str) -> str:
    loc = str(value or "").strip()
    if not _LOCATION_ID_RE.match(loc):
        raise ValidationError("Location ID must contain digits only.", title="Invalid Location ID")
    return loc


def plan_groups(installations: Sequence[Installation], new_location_id: str) -> list[list[WriteOp]]:
    groups: list[list[WriteOp]] = []
    for inst in installations:
        group: list[WriteOp] = []
        if not inst.original_location_id:
            group.append(InstallationsRepo.update_op(inst.id, {"originalLocationId": inst.location_id}))
        group.append(InstallationsRepo.update_op(inst.id, {"locationId": new_location_id}))
        groups.append(group)
    return groups


async def reassign_location(
    *,
    storage: StorageFacade,
    installations: Sequence[Installation],
    new_location_id: str,
    actor: str | None = None,
    limit: int | None = None,
    bus: AsyncEventBus | None = None,
) -> int:
    """Returns the number of installations updated."""
    new_loc = _check_location_id(new_location_id)
    if not installations:
        return 0

    groups = plan_groups(installations, new_loc)
    async with atimer("location_batch_write_ms"):
        ops = await storage.documents.batch_write(groups, limit=limit)
    count = len(groups)

    storage.audit.write(
        topics.LOCATION_REASSIGNED,
        {"new_location_id": new_loc, "count": count, "operations": ops,
         "installation_ids": [i.id for i in installations]},
        actor=actor,
    )
    inc("location_reassignments_total")
    _log.info("location_reassigned", extra={"new_location_id": new_loc, "count": count, "operations": ops})
    if bus is not None:
        await bus.publish(topics.LOCATION_REASSIGNED, {"new_location_id": new_loc, "count": count})
    return count


async def reassign_from(
    *,
    storage: StorageFacade,
    location_id: str,
    new_location_id: str,
    actor: str | None = None,
    limit: int | None = None,
    bus: AsyncEventBus | None = None,
) -> int:
    """Move every installation currently at `location_id`."""
    current = _check_location_id(location_id)
    matching = await storage.installations.list(locationId=current)
    return await reassign_location(
        storage=storage,
        installations=matching,
        new_location_id=new_location_id,
        actor=actor,
        limit=limit,
        bus=bus,
    )


__all__ = ["plan_groups", "reassign_from", "reassign_location"]
