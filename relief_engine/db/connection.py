"""
SQLite connection management.

Every job thread and every API request opens its own connection through
``get_connection()``; a ``sqlite3.Connection`` is never shared across
threads.  Each connection gets:

  - ``foreign_keys = ON`` (SQLite leaves it off).
  - WAL journaling on file databases, so dashboard reads never wait on a
    scoring cycle.
  - A busy timeout, so an apply racing a generation cycle waits for the
    write lock instead of failing at once.
  - ``sqlite3.Row`` rows.

``get_connection()`` commits on clean exit and rolls back on exception.
Code that must hold the write lock across a read-then-write (the
recommendation applier) wraps that section in ``write_transaction()``.

Usage::

    from relief_engine.db.connection import get_connection, write_transaction

    with get_connection("data/db/relief_engine.db") as conn:
        with write_transaction(conn):
            ...
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


def _configure(conn: sqlite3.Connection, wal_mode: bool, busy_timeout_ms: int, on_disk: bool) -> None:
    # Pragmas must run before the first DML/DDL statement.
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
    if wal_mode and on_disk:
        conn.execute("PRAGMA journal_mode = WAL;")


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Yield a configured connection; commit on success, roll back on error.

    Parent directories of a file database are created on demand.

    Args:
        db_path:         Database file, or ``":memory:"``.
        wal_mode:        Enable WAL journaling (ignored for ``":memory:"``).
        busy_timeout_ms: How long a writer waits for a held lock.

    Raises:
        sqlite3.OperationalError: The file cannot be opened, or the lock
            was still held after ``busy_timeout_ms``.
    """
    on_disk = db_path != MEMORY_DB
    if on_disk:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row
    try:
        _configure(conn, wal_mode, busy_timeout_ms, on_disk)
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Run the block inside ``BEGIN IMMEDIATE`` on ``conn``.

    The write lock is taken before the first read, so a status check and the
    writes that depend on it see the same database state.  Any open implicit
    transaction is committed first.  The block commits as a unit or is rolled
    back and the exception re-raised.
    """
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_database(db_path: str, wal_mode: bool = True) -> int:
    """Create all tables and apply pending migrations.

    Returns:
        Number of migrations applied.
    """
    from relief_engine.db.migrations import run_migrations
    from relief_engine.db.schema import apply_schema

    with get_connection(db_path, wal_mode=wal_mode) as conn:
        apply_schema(conn)
        applied = run_migrations(conn)
    logger.info("Database ready at %s (%d migration(s) applied)", db_path, applied)
    return applied
