"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Two groups of tables live here:

Collaborator tables (owned by the surrounding relief application; the engine
ships the DDL so it can run and be tested standalone):
  1. warehouses         (no FKs)
  2. resources          (→ warehouses)
  3. rescue_requests    (no FKs)
  4. distribution_logs  (→ resources, warehouses)

Engine tables:
  5. recommendations          (→ resources, warehouses)
  6. recommendation_feedback  (→ recommendations)
  7. scheduler_metrics        (no FKs)
  8. run_metadata             (no FKs)
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_WAREHOUSES = """
CREATE TABLE IF NOT EXISTS warehouses (
    warehouse_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT    NOT NULL,
    location        TEXT    NOT NULL DEFAULT '',
    latitude        REAL,
    longitude       REAL,
    capacity        INTEGER NOT NULL DEFAULT 0 CHECK (capacity >= 0),
    last_audited_at TEXT,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_RESOURCES = """
CREATE TABLE IF NOT EXISTS resources (
    resource_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    resource_type   TEXT    NOT NULL,
    quantity        INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
    unit            TEXT    NOT NULL DEFAULT 'units',
    reorder_level   INTEGER NOT NULL DEFAULT 0,
    warehouse_id    INTEGER NOT NULL REFERENCES warehouses(warehouse_id),
    updated_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_RESOURCES_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_resources_warehouse
    ON resources(warehouse_id);
CREATE INDEX IF NOT EXISTS idx_resources_type
    ON resources(resource_type);
"""

_DDL_RESCUE_REQUESTS = """
CREATE TABLE IF NOT EXISTS rescue_requests (
    request_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    location        TEXT    NOT NULL DEFAULT '',
    latitude        REAL,
    longitude       REAL,
    status          TEXT    NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'in_progress', 'fulfilled', 'cancelled')),
    priority        TEXT    NOT NULL DEFAULT 'medium'
                    CHECK (priority IN ('low', 'medium', 'high')),
    people_count    INTEGER NOT NULL DEFAULT 1,
    details         TEXT,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at      TEXT
);
"""

_DDL_RESCUE_REQUESTS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_requests_status
    ON rescue_requests(status, created_at);
"""

_DDL_DISTRIBUTION_LOGS = """
CREATE TABLE IF NOT EXISTS distribution_logs (
    log_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    resource_id       INTEGER NOT NULL REFERENCES resources(resource_id),
    warehouse_id      INTEGER NOT NULL REFERENCES warehouses(warehouse_id),
    quantity          INTEGER NOT NULL CHECK (quantity > 0),
    destination       TEXT,
    request_id        INTEGER,
    recommendation_id INTEGER,
    created_at        TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_RECOMMENDATIONS = """
CREATE TABLE IF NOT EXISTS recommendations (
    recommendation_id  INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id         INTEGER,
    region             TEXT    NOT NULL DEFAULT 'unknown',
    resource_type      TEXT    NOT NULL,
    resource_id        INTEGER NOT NULL REFERENCES resources(resource_id),
    warehouse_id       INTEGER NOT NULL REFERENCES warehouses(warehouse_id),
    warehouse_name     TEXT    NOT NULL,
    suggested_quantity INTEGER NOT NULL CHECK (suggested_quantity > 0),
    confidence         REAL    NOT NULL CHECK (confidence BETWEEN 0.0 AND 1.0),
    lead_time_minutes  INTEGER,
    status             TEXT    NOT NULL DEFAULT 'pending'
                       CHECK (status IN ('pending', 'applied', 'dismissed')),
    rationale          TEXT    NOT NULL,
    context            TEXT    NOT NULL DEFAULT '{}',
    impact_score       REAL    NOT NULL DEFAULT 0.0,
    valid_from         TEXT,
    valid_until        TEXT,
    cycle_id           TEXT,
    created_at         TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    resolved_at        TEXT
);
"""

# At most one pending recommendation per request.
_DDL_RECOMMENDATIONS_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_recommendations_pending_request
    ON recommendations(request_id)
    WHERE status = 'pending' AND request_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_recommendations_status
    ON recommendations(status, created_at DESC);
"""

_DDL_RECOMMENDATION_FEEDBACK = """
CREATE TABLE IF NOT EXISTS recommendation_feedback (
    feedback_id       INTEGER PRIMARY KEY AUTOINCREMENT,
    recommendation_id INTEGER NOT NULL REFERENCES recommendations(recommendation_id),
    action            TEXT    NOT NULL CHECK (action IN ('applied', 'dismissed')),
    reason            TEXT,
    actor             TEXT,
    created_at        TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_SCHEDULER_METRICS = """
CREATE TABLE IF NOT EXISTS scheduler_metrics (
    job_name             TEXT    NOT NULL PRIMARY KEY,
    label                TEXT    NOT NULL,
    description          TEXT    NOT NULL DEFAULT '',
    expected_interval_ms INTEGER NOT NULL,
    last_run_at          TEXT,
    last_success_at      TEXT,
    last_error_at        TEXT,
    last_duration_ms     INTEGER,
    success_count        INTEGER NOT NULL DEFAULT 0,
    error_count          INTEGER NOT NULL DEFAULT 0,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_error_message   TEXT,
    running              INTEGER NOT NULL DEFAULT 0,
    updated_at           TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_RUN_METADATA = """
CREATE TABLE IF NOT EXISTS run_metadata (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_slug        TEXT    NOT NULL UNIQUE,
    pipeline_stage  TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'started',
    cycle_id        TEXT,
    triggered_by    TEXT    NOT NULL DEFAULT 'scheduled',
    config_snapshot TEXT    NOT NULL,
    rows_processed  INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    started_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at     TEXT
);
"""

_DDL_RUN_METADATA_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_run_metadata_cycle
    ON run_metadata(cycle_id)
    WHERE cycle_id IS NOT NULL;
"""

# ── Ordered list of all DDL to apply ──────────────────────────────────────────

_ALL_DDL: list[str] = [
    _DDL_WAREHOUSES,
    _DDL_RESOURCES,
    _DDL_RESOURCES_INDEXES,
    _DDL_RESCUE_REQUESTS,
    _DDL_RESCUE_REQUESTS_INDEXES,
    _DDL_DISTRIBUTION_LOGS,
    _DDL_RECOMMENDATIONS,
    _DDL_RECOMMENDATIONS_INDEXES,
    _DDL_RECOMMENDATION_FEEDBACK,
    _DDL_SCHEDULER_METRICS,
    _DDL_RUN_METADATA,
    _DDL_RUN_METADATA_INDEXES,
]

# Table names for introspection / tests
ALL_TABLE_NAMES = [
    "warehouses",
    "resources",
    "rescue_requests",
    "distribution_logs",
    "recommendations",
    "recommendation_feedback",
    "scheduler_metrics",
    "run_metadata",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent — safe to call on an already-initialized database.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        # Each block may contain multiple semicolon-separated statements
        for statement in _split_ddl(ddl):
            conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the sorted list of table names present in the database."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' "
        "ORDER BY name;"
    ).fetchall()
    return [row[0] for row in rows]
