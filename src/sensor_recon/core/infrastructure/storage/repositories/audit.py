from __future__ import annotations

import json
import sqlite3
from typing import Any


def _json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return "{}"


class AuditRepo:
    """
    Append-only log of human actions, auto-rejects and bulk operations (`audit` table).
    Main method: write(event, payload, entity_id=..., actor=...).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def write(
        self,
        event: str,
        payload: dict[str, Any],
        *,
        entity_id: str | None = None,
        actor: str | None = None,
    ) -> None:
        cur = self._conn.cursor()
        try:
            cur.execute(
                "INSERT INTO audit (event, entity_id, actor, payload_json, ts_ms) "
                "VALUES (?, ?, ?, json(?), CAST(STRFTIME('%s','now') AS INTEGER)*1000)",
                (event, entity_id, actor, _json_dumps_safe(payload)),
            )
        finally:
            cur.close()

    def list_for(self, entity_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT id, event, entity_id, actor, payload_json, ts_ms FROM audit "
            "WHERE entity_id = ? ORDER BY id",
            (entity_id,),
        ).fetchall()
        return [self._row(r) for r in rows]

    def recent(self, limit: int = 100, *, event: str | None = None) -> list[dict[str, Any]]:
        if event:
            rows = self._conn.execute(
                "SELECT id, event, entity_id, actor, payload_json, ts_ms FROM audit "
                "WHERE event = ? ORDER BY id DESC LIMIT ?",
                (event, int(limit)),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT id, event, entity_id, actor, payload_json, ts_ms FROM audit "
                "ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [self._row(r) for r in rows]

    @staticmethod
    def _row(r: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": r["id"],
            "event": r["event"],
            "entity_id": r["entity_id"],
            "actor": r["actor"],
            "payload": json.loads(r["payload_json"]),
            "ts_ms": r["ts_ms"],
        }
