"""
Simple sequential schema migration bootstrap.

This is NOT a full migration framework (no Alembic, no down migrations):

  1. A ``schema_versions`` table tracks applied migration IDs.
  2. Each migration is a Python function taking a ``sqlite3.Connection``.
  3. ``run_migrations()`` applies any migrations not yet recorded.

Adding a new migration:
  1. Define a function ``migration_NNNN_description(conn)`` below.
  2. Add it to ``MIGRATIONS`` with a string key like ``"0004_description"``.

Migrations are applied in dictionary insertion order.  The current schema is
applied via ``apply_schema()`` in ``schema.py`` before any migrations run, so
every migration must be a no-op against a freshly created database; they
exist to bring databases created by earlier releases up to date.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

logger = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_versions`` tracking table if it does not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT    NOT NULL PRIMARY KEY,
            applied_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
            description TEXT
        );
    """)
    conn.commit()


def _get_applied_versions(conn: sqlite3.Connection) -> set[str]:
    """Return the set of already-applied migration version IDs."""
    rows = conn.execute("SELECT version_id FROM schema_versions;").fetchall()
    return {row[0] for row in rows}


def _mark_applied(conn: sqlite3.Connection, version_id: str, description: str) -> None:
    """Record a migration as applied."""
    conn.execute(
        "INSERT INTO schema_versions(version_id, description) VALUES (?, ?);",
        (version_id, description),
    )
    conn.commit()


def _add_missing_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> list[str]:
    """``ALTER TABLE ... ADD COLUMN`` for each column ``table`` lacks.

    Args:
        columns: Column name → column definition (type, constraints, default).

    Returns:
        Names of the columns that were added.
    """
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table});").fetchall()}
    added = [name for name in columns if name not in existing]
    for name in added:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {columns[name]};")
    if added:
        logger.info("Added %s to %s", ", ".join(added), table)
    conn.commit()
    return added


# ── Migration functions ────────────────────────────────────────────────────────

def migration_0001_baseline(conn: sqlite3.Connection) -> None:
    """Baseline marker; the initial tables come from ``apply_schema()``."""


def migration_0002_recommendation_validity(conn: sqlite3.Connection) -> None:
    """Add validity window, impact score and cycle link to recommendations."""
    _add_missing_columns(conn, "recommendations", {
        "impact_score": "REAL NOT NULL DEFAULT 0.0",
        "valid_from":   "TEXT",
        "valid_until":  "TEXT",
        "cycle_id":     "TEXT",
    })


def migration_0003_scheduler_counters(conn: sqlite3.Connection) -> None:
    """Add failure-streak and in-flight columns to scheduler_metrics."""
    _add_missing_columns(conn, "scheduler_metrics", {
        "consecutive_failures": "INTEGER NOT NULL DEFAULT 0",
        "running":              "INTEGER NOT NULL DEFAULT 0",
    })


# ── Registry ──────────────────────────────────────────────────────────────────
# Add new migrations here. They will run once, in order.

MIGRATIONS: dict[str, tuple[MigrationFn, str]] = {
    "0001_baseline": (
        migration_0001_baseline,
        "Baseline: schema_versions table created",
    ),
    "0002_recommendation_validity": (
        migration_0002_recommendation_validity,
        "Add impact_score, valid_from, valid_until, cycle_id to recommendations",
    ),
    "0003_scheduler_counters": (
        migration_0003_scheduler_counters,
        "Add consecutive_failures and running to scheduler_metrics",
    ),
}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations.

    Args:
        conn: An open ``sqlite3.Connection`` with FK enforcement enabled.

    Returns:
        Number of migrations applied in this call.
    """
    _ensure_version_table(conn)
    applied = _get_applied_versions(conn)

    count = 0
    for version_id, (fn, description) in MIGRATIONS.items():
        if version_id in applied:
            logger.debug("Migration %s already applied; skipping.", version_id)
            continue

        logger.info("Applying migration %s: %s", version_id, description)
        try:
            fn(conn)
            _mark_applied(conn, version_id, description)
            count += 1
        except Exception as exc:
            conn.rollback()
            logger.error("Migration %s FAILED: %s", version_id, exc)
            raise

    if count:
        logger.info("Applied %d migration(s).", count)
    else:
        logger.debug("No pending migrations.")

    return count
