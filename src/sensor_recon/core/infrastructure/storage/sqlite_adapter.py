from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

DEFAULT_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "8000"))

__all__ = [
    "connect",
    "exec_script",
    "read_only",
    "transaction",
]


def connect(db_path: str) -> sqlite3.Connection:
    """
    SQLite connection with sane PRAGMAs:
      - WAL journal for concurrent readers,
      - NORMAL synchronous,
      - busy_timeout (ENV configurable).
    Autocommit (isolation_level=None); transactions are managed explicitly.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        db_path,
        check_same_thread=False,
        isolation_level=None,
        timeout=DEFAULT_BUSY_TIMEOUT_MS / 1000.0,
    )
    conn.row_factory = sqlite3.Row
    # unsupported values are ignored by the environment
    with suppress(sqlite3.Error):
        conn.execute("PRAGMA journal_mode=WAL;")
    with suppress(sqlite3.Error):
        conn.execute("PRAGMA synchronous=NORMAL;")
    with suppress(sqlite3.Error):
        conn.execute("PRAGMA temp_store=MEMORY;")
    with suppress(sqlite3.Error):
        conn.execute(f"PRAGMA busy_timeout={DEFAULT_BUSY_TIMEOUT_MS};")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """
    BEGIN IMMEDIATE (write txn) + COMMIT/ROLLBACK. Yields a cursor.
    Used for atomic batches (bulk reassignment chunks, box opening).
    """
    cur = conn.cursor()
    cur.execute("BEGIN IMMEDIATE;")
    try:
        yield cur
        cur.execute("COMMIT;")
    except BaseException:
        with suppress(sqlite3.Error):
            cur.execute("ROLLBACK;")
        raise
    finally:
        with suppress(sqlite3.Error):
            cur.close()


@contextmanager
def read_only(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """BEGIN DEFERRED (read txn) for a consistent multi-query read."""
    cur = conn.cursor()
    cur.execute("BEGIN;")
    try:
        yield cur
        cur.execute("COMMIT;")
    except BaseException:
        with suppress(sqlite3.Error):
            cur.execute("ROLLBACK;")
        raise
    finally:
        with suppress(sqlite3.Error):
            cur.close()


def exec_script(conn: sqlite3.Connection, sql: str) -> None:
    """Run a multi-statement SQL script."""
    if not sql or not sql.strip():
        return
    conn.executescript(sql)
