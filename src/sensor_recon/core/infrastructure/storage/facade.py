from __future__ import annotations

import sqlite3
from contextlib import suppress
from dataclasses import dataclass

from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.storage.document_store import DEFAULT_BATCH_LIMIT, SqliteDocumentStore
from sensor_recon.core.infrastructure.storage.repositories import AuditRepo, DevicesRepo, InstallationsRepo
from sensor_recon.core.infrastructure.storage.schema import ensure_schema
from sensor_recon.core.infrastructure.storage.sqlite_adapter import connect


@dataclass
class StorageFacade:
    """Single access point to the database and its repositories."""

    conn: sqlite3.Connection
    documents: SqliteDocumentStore
    devices: DevicesRepo
    installations: InstallationsRepo
    audit: AuditRepo

    @classmethod
    def from_connection(
        cls,
        conn: sqlite3.Connection,
        bus: AsyncEventBus,
        *,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ) -> StorageFacade:
        ensure_schema(conn)
        documents = SqliteDocumentStore(conn, bus, batch_limit=batch_limit)
        return cls(
            conn=conn,
            documents=documents,
            devices=DevicesRepo(documents),
            installations=InstallationsRepo(documents),
            audit=AuditRepo(conn),
        )

    @classmethod
    def open(cls, db_path: str, bus: AsyncEventBus, *, batch_limit: int = DEFAULT_BATCH_LIMIT) -> StorageFacade:
        return cls.from_connection(connect(db_path), bus, batch_limit=batch_limit)

    # health-ping for /health
    async def ping(self) -> bool:
        try:
            cur = self.conn.cursor()
        except sqlite3.Error:
            return False
        try:
            cur.execute("SELECT 1;")
            cur.fetchone()
            return True
        except sqlite3.Error:
            return False
        finally:
            cur.close()

    def close(self) -> None:
        with suppress(sqlite3.Error):
            self.conn.close()
