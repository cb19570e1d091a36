"""
Verifier edits with an append-only history of prior values.

apply_edit validates the proposal, diffs it against the stored record, keeps the
previous value of every changed field as the next version in that field's
history, overwrites the live value, tags the record "edited by verifier" and
optionally appends one uploaded image. Nothing differing and no image means no
write at all.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.application.ports import ObjectStorePort
from sensor_recon.core.domain.eligibility import EligibilityCode, EligibilityDecision
from sensor_recon.core.domain.models import Installation
from sensor_recon.core.domain.versioning import FieldChange, apply_changes, compute_changes
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.objects import ImageUpload, discard_objects, image_path, validate_image
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.utils.exceptions import NotFoundError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.trace import trace_context

_log = get_logger("audit.edits")

DEFAULT_MAX_IMAGE_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class EditResult:
    installation: Installation
    changes: list[FieldChange] = field(default_factory=list)
    image_url: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.changes) or self.image_url is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "changes": [
                {"field": c.field, "old": c.old, "new": c.new, "version": c.version} for c in self.changes
            ],
            "image_url": self.image_url,
            "installation": self.installation.to_document(),
        }


@dataclass
class AuditEngine:
    storage: StorageFacade
    objects: ObjectStorePort
    bus: AsyncEventBus | None = None
    max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES

    async def apply_edit(
        self,
        installation_id: str,
        proposed: Mapping[str, Any],
        *,
        editor: str,
        image: ImageUpload | None = None,
    ) -> EditResult:
        installation = await self.storage.installations.get(installation_id)
        if installation is None:
            raise NotFoundError(f"Installation {installation_id} does not exist.")

        # all validation happens before anything is uploaded or written
        changes = compute_changes(installation, proposed)
        if image is not None:
            validate_image(image, max_bytes=self.max_image_bytes)
        if not changes and image is None:
            _log.info("edit_no_changes", extra={"installation_id": installation_id, "editor": editor})
            return EditResult(installation)

        for change in changes:
            if change.field == "deviceId":
                await self._check_device_free(change.new, installation_id)

        with trace_context(prefix="edit_") as tid:
            apply_changes(installation, changes)

            image_url = None
            uploaded: list[str] = []
            if image is not None:
                path = image_path(installation_id, "edit", image.filename)
                image_url = await self.objects.put(path, image.data, image.content_type)
                uploaded.append(path)
                installation.image_urls.append(image_url)

            # field-level write: reconciliation may be updating other fields meanwhile
            fields: dict[str, Any] = {"tags": list(installation.tags), "imageUrls": list(installation.image_urls)}
            for c in changes:
                fields[c.original_key] = c.old
                fields[c.field] = c.new
            try:
                saved = await self.storage.installations.update_fields(installation_id, fields)
            except Exception:
                await discard_objects(self.objects, uploaded)
                raise

            payload = {
                "changes": [
                    {"field": c.field, "old": c.old, "new": c.new, "version": c.version} for c in changes
                ],
                "image_url": image_url,
                "trace_id": tid,
            }
            self.storage.audit.write(topics.INSTALLATION_EDITED, payload, entity_id=installation_id, actor=editor)
            inc("installation_edits_total", fields=str(len(changes)))
            _log.info(
                "installation_edited",
                extra={
                    "installation_id": installation_id,
                    "editor": editor,
                    "fields": [c.field for c in changes],
                    "image": image_url is not None,
                },
            )
            if self.bus is not None:
                await self.bus.publish(topics.INSTALLATION_EDITED, payload, key=installation_id)

        return EditResult(saved, changes, image_url)

    async def _check_device_free(self, device_id: str, installation_id: str) -> None:
        other = await self.storage.installations.find_by_device(device_id)
        if other is not None and other.id != installation_id:
            raise EligibilityDecision(EligibilityCode.ALREADY_INSTALLED).to_error()


__all__ = ["AuditEngine", "EditResult"]
