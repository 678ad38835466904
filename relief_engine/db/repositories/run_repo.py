"""
Repositories for the run audit log and persisted scheduler metrics.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Optional

from relief_engine.db.repositories.base import BaseRepository, iso, opt_timestamp
from relief_engine.models.meta import RunMetadata

logger = logging.getLogger(__name__)


class RunMetadataRepository(BaseRepository):
    """Read/write access to ``run_metadata``."""

    def insert_run(self, run: RunMetadata) -> int:
        """Insert a new run record and return its ``run_id``."""
        self.execute(
            """
            INSERT INTO run_metadata (
                run_slug, pipeline_stage, status, cycle_id, triggered_by,
                config_snapshot, rows_processed, error_message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run.run_slug,
                run.pipeline_stage,
                run.status,
                run.cycle_id,
                run.trigger,
                json.dumps(run.config_snapshot, default=str),
                run.rows_processed,
                run.error_message,
                iso(run.started_at),
                iso(run.finished_at),
            ),
        )
        return self.last_insert_rowid()

    def update_run(self, run: RunMetadata) -> None:
        """Update the mutable fields of an existing run record.

        Raises:
            ValueError: If ``run.run_id`` is ``None``.
        """
        if run.run_id is None:
            raise ValueError("Cannot update RunMetadata without a run_id.")
        self.execute(
            """
            UPDATE run_metadata SET
                status         = ?,
                rows_processed = ?,
                error_message  = ?,
                finished_at    = ?
            WHERE run_id = ?;
            """,
            (
                run.status,
                run.rows_processed,
                run.error_message,
                iso(run.finished_at),
                run.run_id,
            ),
        )

    def get_run_by_slug(self, run_slug: str) -> Optional[RunMetadata]:
        row = self.fetchone("SELECT * FROM run_metadata WHERE run_slug = ?;", (run_slug,))
        return _row_to_run(row) if row else None

    def get_runs_for_cycle(self, cycle_id: str) -> list[RunMetadata]:
        rows = self.fetchall(
            "SELECT * FROM run_metadata WHERE cycle_id = ? ORDER BY run_id;", (cycle_id,)
        )
        return [_row_to_run(r) for r in rows]

    def get_recent_runs(self, pipeline_stage: Optional[str] = None, limit: int = 20) -> list[RunMetadata]:
        """Fetch recent run records, most recent first, optionally filtered by stage."""
        if pipeline_stage:
            rows = self.fetchall(
                """
                SELECT * FROM run_metadata
                WHERE pipeline_stage = ?
                ORDER BY started_at DESC, run_id DESC LIMIT ?;
                """,
                (pipeline_stage, limit),
            )
        else:
            rows = self.fetchall(
                "SELECT * FROM run_metadata ORDER BY started_at DESC, run_id DESC LIMIT ?;",
                (limit,),
            )
        return [_row_to_run(r) for r in rows]


class SchedulerMetricsRepository(BaseRepository):
    """Write-through store for ``scheduler_metrics`` (one row per job)."""

    _COLUMNS = (
        "job_name", "label", "description", "expected_interval_ms",
        "last_run_at", "last_success_at", "last_error_at", "last_duration_ms",
        "success_count", "error_count", "consecutive_failures",
        "last_error_message", "running",
    )

    def upsert(self, values: dict[str, Any]) -> None:
        """Insert or overwrite one job's metrics row.

        Args:
            values: Column → value mapping covering ``_COLUMNS``; datetimes
                are serialized to ISO strings.
        """
        params = tuple(
            iso(values.get(col)) if col.endswith("_at") else values.get(col)
            for col in self._COLUMNS
        )
        placeholders = ", ".join("?" for _ in self._COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in self._COLUMNS[1:])
        self.execute(
            f"""
            INSERT INTO scheduler_metrics ({", ".join(self._COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(job_name) DO UPDATE SET
                {updates},
                updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now');
            """,
            params,
        )

    def get_all(self) -> dict[str, dict[str, Any]]:
        """Return ``{job_name: row_dict}`` with timestamps parsed."""
        rows = self.fetchall("SELECT * FROM scheduler_metrics ORDER BY job_name;")
        result: dict[str, dict[str, Any]] = {}
        for row in rows:
            data = {col: row[col] for col in self._COLUMNS}
            for col in ("last_run_at", "last_success_at", "last_error_at"):
                data[col] = opt_timestamp(data[col])
            data["running"] = bool(data["running"])
            result[row["job_name"]] = data
        return result


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_run(row: sqlite3.Row) -> RunMetadata:
    return RunMetadata(
        run_id=row["run_id"],
        run_slug=row["run_slug"],
        pipeline_stage=row["pipeline_stage"],
        status=row["status"],
        cycle_id=row["cycle_id"],
        trigger=row["triggered_by"],
        config_snapshot=json.loads(row["config_snapshot"]),
        rows_processed=row["rows_processed"],
        error_message=row["error_message"],
        started_at=opt_timestamp(row["started_at"]),
        finished_at=opt_timestamp(row["finished_at"]),
    )
