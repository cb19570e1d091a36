from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sensor_recon.core.domain.models import Device
from sensor_recon.core.infrastructure.storage.document_store import SqliteDocumentStore, WriteOp
from sensor_recon.utils.time import iso_utc

COLLECTION = "devices"


class DevicesRepo:
    def __init__(self, store: SqliteDocumentStore) -> None:
        self._store = store

    async def get(self, device_id: str) -> Device | None:
        doc = await self._store.get(COLLECTION, device_id)
        return Device.from_document(doc) if doc else None

    async def save(self, device: Device) -> Device:
        doc = device.to_document()
        doc["updatedAt"] = iso_utc()
        doc["createdAt"] = doc.get("createdAt") or doc["updatedAt"]
        return Device.from_document(await self._store.set(COLLECTION, device.id, doc))

    async def update_fields(self, device_id: str, fields: Mapping[str, Any]) -> Device:
        doc = await self._store.update(COLLECTION, device_id, {**fields, "updatedAt": iso_utc()})
        return Device.from_document(doc)

    async def list(self, **equals: Any) -> list[Device]:
        return [Device.from_document(d) for d in await self._store.query(COLLECTION, **equals)]

    async def in_box(self, box_number: str, team_id: str | None = None) -> list[Device]:
        # box numbers are imported both as text and as numbers
        box = str(box_number).strip()
        equals = {"teamId": team_id} if team_id else {}
        docs = await self._store.query(
            COLLECTION,
            lambda d: str(d.get("boxNumber") or "").strip() == box,
            **equals,
        )
        return [Device.from_document(d) for d in docs]

    @staticmethod
    def update_op(device_id: str, fields: Mapping[str, Any]) -> WriteOp:
        return WriteOp.update(COLLECTION, device_id, {**fields, "updatedAt": iso_utc()})
