from __future__ import annotations

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.domain.models import DeviceStatus
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.utils.exceptions import NotFoundError, ValidationError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.trace import trace_context

_log = get_logger("usecase.delete_installation")


async def delete_installation(
    *,
    storage: StorageFacade,
    installation_id: str,
    actor: str,
    bus: AsyncEventBus | None = None,
) -> None:
    """
    Irreversible delete. The device goes back to `pending` so it can be
    installed again; the removed document is kept in the audit payload.
    """
    actor = (actor or "").strip()
    if not actor:
        raise ValidationError("Verifier name is required.", title="Verifier Required")
    installation = await storage.installations.get(installation_id)
    if installation is None:
        raise NotFoundError(f"Installation {installation_id} does not exist.")

    with trace_context(prefix="delete_") as tid:
        await storage.installations.delete(installation_id)
        try:
            await storage.devices.update_fields(installation.device_id, {"status": DeviceStatus.PENDING.value})
        except NotFoundError:
            _log.warning("device_missing_for_status", extra={"device_id": installation.device_id})

        storage.audit.write(
            topics.INSTALLATION_DELETED,
            {"document": installation.to_document(), "trace_id": tid},
            entity_id=installation_id,
            actor=actor,
        )
        inc("verifier_decisions_total", decision="deleted")
        _log.info("installation_deleted", extra={"installation_id": installation_id, "actor": actor})
        if bus is not None:
            await bus.publish(
                topics.INSTALLATION_DELETED,
                dict(topics.build_decision_event(installation_id, installation.device_id, "deleted", actor, None, tid)),
                key=installation_id,
            )


__all__ = ["delete_installation"]
