"""Tests for SQLite schema and migrations: idempotency, constraints, upgrades."""

from __future__ import annotations

import sqlite3

import pytest

from relief_engine.db.connection import get_connection, init_database
from relief_engine.db.migrations import MIGRATIONS, run_migrations
from relief_engine.db.schema import ALL_TABLE_NAMES, apply_schema, get_existing_tables


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table});").fetchall()}


class TestApplySchema:
    def test_all_tables_created(self, in_memory_db):
        tables = get_existing_tables(in_memory_db)
        for expected_table in ALL_TABLE_NAMES:
            assert expected_table in tables

    def test_idempotent_double_apply(self, in_memory_db):
        apply_schema(in_memory_db)
        assert set(ALL_TABLE_NAMES) <= set(get_existing_tables(in_memory_db))

    def test_negative_stock_rejected(self, in_memory_db):
        in_memory_db.execute("INSERT INTO warehouses (warehouse_id, name) VALUES (1, 'A');")
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO resources (resource_type, quantity, warehouse_id) "
                "VALUES ('water', -1, 1);"
            )

    def test_resource_requires_existing_warehouse(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO resources (resource_type, quantity, warehouse_id) "
                "VALUES ('water', 5, 999);"
            )

    def test_unknown_recommendation_status_rejected(self, in_memory_db):
        in_memory_db.execute("INSERT INTO warehouses (warehouse_id, name) VALUES (1, 'A');")
        in_memory_db.execute(
            "INSERT INTO resources (resource_id, resource_type, quantity, warehouse_id) "
            "VALUES (1, 'water', 5, 1);"
        )
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                """
                INSERT INTO recommendations (
                    resource_type, resource_id, warehouse_id, warehouse_name,
                    suggested_quantity, confidence, status, rationale
                ) VALUES ('water', 1, 1, 'A', 1, 0.5, 'expired', 'x');
                """
            )


class TestMigrations:
    def test_fresh_database_applies_all_once(self, in_memory_db):
        assert run_migrations(in_memory_db) == len(MIGRATIONS)
        assert run_migrations(in_memory_db) == 0

    def test_versions_recorded(self, in_memory_db):
        run_migrations(in_memory_db)
        rows = in_memory_db.execute("SELECT version_id FROM schema_versions;").fetchall()
        assert {r[0] for r in rows} == set(MIGRATIONS)

    def test_upgrades_legacy_tables(self):
        conn = sqlite3.connect(":memory:")
        try:
            conn.execute(
                "CREATE TABLE recommendations (recommendation_id INTEGER PRIMARY KEY, "
                "status TEXT NOT NULL DEFAULT 'pending');"
            )
            conn.execute(
                "CREATE TABLE scheduler_metrics (job_name TEXT PRIMARY KEY, label TEXT);"
            )
            run_migrations(conn)
            rec_cols = _columns(conn, "recommendations")
            metric_cols = _columns(conn, "scheduler_metrics")
        finally:
            conn.close()

        assert {"impact_score", "valid_from", "valid_until", "cycle_id"} <= rec_cols
        assert {"consecutive_failures", "running"} <= metric_cols


class TestConnection:
    def test_init_database_creates_file(self, tmp_path):
        path = tmp_path / "nested" / "engine.db"
        applied = init_database(str(path))
        assert path.exists()
        assert applied == len(MIGRATIONS)

    def test_rollback_on_exception(self, db_path):
        with pytest.raises(RuntimeError):
            with get_connection(db_path) as conn:
                conn.execute("INSERT INTO warehouses (warehouse_id, name) VALUES (1, 'A');")
                raise RuntimeError("boom")

        with get_connection(db_path) as conn:
            count = conn.execute("SELECT COUNT(*) FROM warehouses;").fetchone()[0]
        assert count == 0

    def test_wal_mode_enabled(self, db_path):
        with get_connection(db_path) as conn:
            mode = conn.execute("PRAGMA journal_mode;").fetchone()[0]
        assert mode.lower() == "wal"
