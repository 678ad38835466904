"""
Scheduler health tracking: last run, duration, outcome and staleness for
every periodic job.

Status classification (``stale = now - last_run_at``)
-----------------------------------------------------
  "never"    — the job has not run since tracking began
  "healthy"  — stale <  warning_multiplier  × expected_interval   (default 1×)
  "warning"  — stale <  critical_multiplier × expected_interval   (default 2×)
  "critical" — otherwise

Status is a pure function of the wall clock at read time.  Nothing ticks in
the background; a job that silently stops simply ages into ``critical``.

A failed attempt still updates ``last_run_at`` (the job *did* run), so a job
that fails every tick stays ``healthy`` by staleness while
``consecutive_failures`` and ``last_error_message`` expose the failure.

When a database path is given, every state change is written through to the
``scheduler_metrics`` table so a separate process (``relief-engine
scheduler-health``) can read it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from relief_engine.db.connection import get_connection
from relief_engine.db.repositories.run_repo import SchedulerMetricsRepository
from relief_engine.models.scheduler import SchedulerHealthRecord
from relief_engine.utils.time_utils import Clock, SystemClock, ms_between

if TYPE_CHECKING:
    from relief_engine.config import JobConfig

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_CHARS = 280


class HealthStatus(str, Enum):
    """Staleness classification of a periodic job."""

    HEALTHY  = "healthy"
    WARNING  = "warning"
    CRITICAL = "critical"
    NEVER    = "never"


def classify_staleness(
    stale_for_ms: Optional[int],
    expected_interval_ms: int,
    warning_multiplier: float = 1.0,
    critical_multiplier: float = 2.0,
) -> HealthStatus:
    """Classify a job by how long ago it last ran.

    Args:
        stale_for_ms:         ``now - last_run_at`` in ms; ``None`` if never run.
        expected_interval_ms: The job's cadence.
        warning_multiplier:   Multiple of the interval at which ``warning`` starts.
        critical_multiplier:  Multiple of the interval at which ``critical`` starts.
    """
    if stale_for_ms is None:
        return HealthStatus.NEVER
    if stale_for_ms < warning_multiplier * expected_interval_ms:
        return HealthStatus.HEALTHY
    if stale_for_ms < critical_multiplier * expected_interval_ms:
        return HealthStatus.WARNING
    return HealthStatus.CRITICAL


def truncate_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    if len(message) <= MAX_ERROR_MESSAGE_CHARS:
        return message
    return message[: MAX_ERROR_MESSAGE_CHARS - 3] + "..."


@dataclass
class _JobState:
    """Mutable per-job counters.  Guarded by the tracker's lock."""

    name:                 str
    label:                str
    description:          str
    expected_interval_ms: int
    last_run_at:          Optional[datetime] = None
    last_success_at:      Optional[datetime] = None
    last_error_at:        Optional[datetime] = None
    last_duration_ms:     Optional[int] = None
    success_count:        int = 0
    error_count:          int = 0
    consecutive_failures: int = 0
    last_error_message:   Optional[str] = None
    running:              bool = False

    def as_row(self) -> dict:
        return {
            "job_name":             self.name,
            "label":                self.label,
            "description":          self.description,
            "expected_interval_ms": self.expected_interval_ms,
            "last_run_at":          self.last_run_at,
            "last_success_at":      self.last_success_at,
            "last_error_at":        self.last_error_at,
            "last_duration_ms":     self.last_duration_ms,
            "success_count":        self.success_count,
            "error_count":          self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error_message":   self.last_error_message,
            "running":              int(self.running),
        }


class SchedulerHealthTracker:
    """Thread-safe registry of job health.

    Args:
        jobs:                Static job definitions keyed by job name.
        clock:               Time source.
        warning_multiplier:  See ``classify_staleness``.
        critical_multiplier: See ``classify_staleness``.
        db_path:             If set, state is written through to ``scheduler_metrics``.
    """

    def __init__(
        self,
        jobs: Mapping[str, "JobConfig"],
        clock: Optional[Clock] = None,
        warning_multiplier: float = 1.0,
        critical_multiplier: float = 2.0,
        db_path: Optional[str] = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.warning_multiplier  = warning_multiplier
        self.critical_multiplier = critical_multiplier
        self.db_path = db_path
        self._lock = threading.Lock()
        self._jobs: dict[str, _JobState] = {}
        for name, job in jobs.items():
            self.register(name, job.label, job.description, job.expected_interval_ms)

    # ── Registration ──────────────────────────────────────────────────────────

    def register(
        self,
        name: str,
        label: str,
        description: str = "",
        expected_interval_ms: int = 300_000,
    ) -> None:
        """Add a job definition, or update the static fields of an existing one."""
        if expected_interval_ms < 1:
            raise ValueError(f"expected_interval_ms must be >= 1, got {expected_interval_ms}.")
        with self._lock:
            state = self._jobs.get(name)
            if state is None:
                self._jobs[name] = _JobState(name, label, description, expected_interval_ms)
            else:
                state.label = label
                state.description = description
                state.expected_interval_ms = expected_interval_ms

    def job_names(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    # ── Recording ─────────────────────────────────────────────────────────────

    @contextmanager
    def track(self, name: str) -> Iterator[None]:
        """Record one attempt of ``name`` around the ``with`` body.

        Exceptions are recorded and re-raised; the caller decides isolation.
        """
        started = self.clock.now()
        self.mark_running(name, started)
        try:
            yield
        except Exception as exc:
            self.record_run(name, started, self.clock.now(), False, str(exc) or type(exc).__name__)
            raise
        else:
            self.record_run(name, started, self.clock.now(), True)

    def record_run(
        self,
        name: str,
        started_at: datetime,
        finished_at: datetime,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Record a finished attempt.

        Raises:
            KeyError: If ``name`` was never registered.
        """
        with self._lock:
            state = self._jobs[name]
            state.last_run_at = started_at
            state.last_duration_ms = ms_between(started_at, finished_at)
            state.running = False
            if success:
                state.last_success_at = started_at
                state.success_count += 1
                state.consecutive_failures = 0
            else:
                state.last_error_at = started_at
                state.error_count += 1
                state.consecutive_failures += 1
                state.last_error_message = truncate_error(error_message or "unknown error")
            row = state.as_row()

        if not success:
            logger.warning("Job [%s] failed: %s", name, row["last_error_message"])
        self._persist(row)

    def mark_running(self, name: str, started_at: datetime) -> None:
        with self._lock:
            state = self._jobs[name]
            state.running = True
            row = state.as_row()
        logger.debug("Job [%s] started at %s", name, started_at.isoformat())
        self._persist(row)

    # ── Reading ───────────────────────────────────────────────────────────────

    def record_for(self, name: str, now: Optional[datetime] = None) -> SchedulerHealthRecord:
        now = now or self.clock.now()
        with self._lock:
            state = self._jobs[name]
            return self._to_record(state, now)

    def health(self, now: Optional[datetime] = None) -> list[SchedulerHealthRecord]:
        """Return one record per job, with status derived at ``now``."""
        now = now or self.clock.now()
        with self._lock:
            return [self._to_record(state, now) for state in self._jobs.values()]

    def _to_record(self, state: _JobState, now: datetime) -> SchedulerHealthRecord:
        stale = ms_between(state.last_run_at, now) if state.last_run_at else None
        status = classify_staleness(
            stale,
            state.expected_interval_ms,
            self.warning_multiplier,
            self.critical_multiplier,
        )
        return SchedulerHealthRecord(
            name=state.name,
            label=state.label,
            description=state.description,
            status=status.value,
            last_run_at=state.last_run_at,
            last_duration_ms=state.last_duration_ms,
            stale_for_ms=stale,
            expected_interval_ms=state.expected_interval_ms,
            last_error_message=state.last_error_message,
            last_success_at=state.last_success_at,
            last_error_at=state.last_error_at,
            success_count=state.success_count,
            error_count=state.error_count,
            consecutive_failures=state.consecutive_failures,
            running=state.running,
        )

    # ── Persistence ───────────────────────────────────────────────────────────

    def load_persisted(self) -> int:
        """Merge counters previously written to ``scheduler_metrics``.

        Jobs found in the table but not configured are registered with their
        stored definition.

        Returns:
            Number of job rows loaded.
        """
        if not self.db_path:
            return 0
        with get_connection(self.db_path) as conn:
            rows = SchedulerMetricsRepository(conn).get_all()

        with self._lock:
            for name, row in rows.items():
                state = self._jobs.get(name)
                if state is None:
                    state = _JobState(
                        name, row["label"], row["description"], row["expected_interval_ms"]
                    )
                    self._jobs[name] = state
                for key in (
                    "last_run_at", "last_success_at", "last_error_at", "last_duration_ms",
                    "success_count", "error_count", "consecutive_failures",
                    "last_error_message", "running",
                ):
                    setattr(state, key, row[key])
        return len(rows)

    def _persist(self, row: dict) -> None:
        if not self.db_path:
            return
        try:
            with get_connection(self.db_path) as conn:
                SchedulerMetricsRepository(conn).upsert(row)
        except sqlite3.Error as exc:
            logger.warning("Could not persist metrics for job [%s]: %s", row["job_name"], exc)
