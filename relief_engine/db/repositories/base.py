"""
Base repository providing shared SQLite execution helpers.

All repositories inherit from ``BaseRepository`` and receive a
``sqlite3.Connection`` at construction time. The connection is assumed
to be opened and managed by the caller (typically via ``get_connection()``).

Design:
  - No ORM — all SQL is explicit and lives in repository methods.
  - Repositories speak Pydantic models, not raw dicts.
  - Read-model queries go through ``read_all()``, which turns a
    ``sqlite3.Error`` into ``DataUnavailableError`` naming the source table,
    so the orchestrator can keep its last-good snapshot.
  - A row that fails model validation is logged and skipped rather than
    failing the whole read.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import ValidationError

from relief_engine.errors import DataUnavailableError
from relief_engine.utils.time_utils import parse_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BaseRepository:
    """Shared SQL execution helpers for all repository classes.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def execute(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> sqlite3.Cursor:
        """Execute a single SQL statement."""
        logger.debug("SQL: %s | params: %s", sql.strip(), params)
        return self.conn.execute(sql, params)

    def fetchone(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> Optional[sqlite3.Row]:
        """Execute a query and return the first row, or ``None``."""
        return self.execute(sql, params).fetchone()

    def fetchall(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> list[sqlite3.Row]:
        """Execute a query and return all rows."""
        return self.execute(sql, params).fetchall()

    def read_all(
        self,
        source: str,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any],
        row_mapper: Callable[[sqlite3.Row], T],
    ) -> list[T]:
        """Run a read-model query and map each row, skipping malformed rows.

        Args:
            source: Table/read model name, used in errors and warnings.
            sql: SELECT statement.
            params: Query parameters.
            row_mapper: Converts one row into a model.

        Raises:
            DataUnavailableError: If the query itself fails.
        """
        try:
            rows = self.fetchall(sql, params)
        except sqlite3.Error as exc:
            raise DataUnavailableError(source, str(exc)) from exc

        results: list[T] = []
        for row in rows:
            try:
                results.append(row_mapper(row))
            except (ValidationError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed %s row %s: %s", source, tuple(row)[0], exc)
        return results

    def last_insert_rowid(self) -> int:
        """Return the rowid of the last successful INSERT."""
        row = self.fetchone("SELECT last_insert_rowid() AS rowid;")
        assert row is not None
        return int(row["rowid"])


# ── Shared column converters ──────────────────────────────────────────────────

def opt_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp, returning ``None`` if it is missing or unreadable."""
    if value in (None, ""):
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        logger.warning("Unreadable timestamp %r; treating as missing.", value)
        return None


def opt_coordinate(value: Any) -> Optional[float]:
    """Coerce a stored coordinate to float.

    Unparsable text becomes NaN so geo validation can flag the entity as
    degraded, which is different from the coordinate simply being absent.
    """
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
