from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sensor_recon.core.domain.models import Installation
from sensor_recon.core.infrastructure.storage.document_store import (
    ChangeStream,
    SqliteDocumentStore,
    Where,
    WriteOp,
)
from sensor_recon.utils.time import iso_utc

COLLECTION = "installations"


class InstallationsRepo:
    def __init__(self, store: SqliteDocumentStore) -> None:
        self._store = store

    async def get(self, installation_id: str) -> Installation | None:
        doc = await self._store.get(COLLECTION, installation_id)
        return Installation.from_document(doc) if doc else None

    async def find_by_device(self, device_id: str) -> Installation | None:
        docs = await self._store.query(COLLECTION, deviceId=device_id, limit=1)
        return Installation.from_document(docs[0]) if docs else None

    async def list(self, where: Where = None, **equals: Any) -> list[Installation]:
        return [Installation.from_document(d) for d in await self._store.query(COLLECTION, where, **equals)]

    async def save(self, installation: Installation) -> Installation:
        """Write the whole document (history keys included)."""
        doc = installation.to_document()
        doc["updatedAt"] = iso_utc()
        doc["createdAt"] = doc.get("createdAt") or doc["updatedAt"]
        return Installation.from_document(await self._store.set(COLLECTION, installation.id, doc))

    async def update_fields(self, installation_id: str, fields: Mapping[str, Any]) -> Installation:
        """Field-level merge; concurrent writers of other fields are not overwritten."""
        doc = await self._store.update(COLLECTION, installation_id, {**fields, "updatedAt": iso_utc()})
        return Installation.from_document(doc)

    async def delete(self, installation_id: str) -> bool:
        return await self._store.delete(COLLECTION, installation_id)

    async def subscribe(self, where: Where = None) -> ChangeStream:
        return await self._store.subscribe(COLLECTION, where)

    @staticmethod
    def update_op(installation_id: str, fields: Mapping[str, Any]) -> WriteOp:
        return WriteOp.update(COLLECTION, installation_id, {**fields, "updatedAt": iso_utc()})
