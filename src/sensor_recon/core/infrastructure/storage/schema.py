from __future__ import annotations

import sqlite3

from sensor_recon.core.infrastructure.storage.sqlite_adapter import exec_script

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT    NOT NULL,
    id          TEXT    NOT NULL,
    data_json   TEXT    NOT NULL,
    updated_ms  INTEGER NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE TABLE IF NOT EXISTS audit (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    event        TEXT    NOT NULL,
    entity_id    TEXT,
    actor        TEXT,
    payload_json TEXT    NOT NULL,
    ts_ms        INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit (entity_id, ts_ms);
CREATE INDEX IF NOT EXISTS idx_audit_event ON audit (event, ts_ms);
"""


def ensure_schema(conn: sqlite3.Connection) -> None:
    exec_script(conn, SCHEMA_SQL)
    conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")


__all__ = ["SCHEMA_SQL", "SCHEMA_VERSION", "ensure_schema"]
