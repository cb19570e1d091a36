from __future__ import annotations

from sensor_recon.core.domain.models import Installation
from sensor_recon.core.infrastructure.storage.facade import StorageFacade


async def verification_queue(*, storage: StorageFacade, team_id: str | None = None) -> list[Installation]:
    """Pending installations plus those flagged by the system, oldest first."""
    equals = {"teamId": team_id} if team_id else {}
    items = await storage.installations.list(
        lambda d: d.get("status") in ("pending", "flagged"), **equals
    )
    queue = [i for i in items if i.accepts_reconciliation]
    queue.sort(key=lambda i: (i.created_at is None, i.created_at or 0, i.id))
    return queue


__all__ = ["verification_queue"]
