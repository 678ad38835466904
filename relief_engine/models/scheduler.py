"""
Scheduler health record.

One record per tracked job, overwritten on every run.  ``status`` and
``stale_for_ms`` are derived at read time from the wall clock; they are never
stored as live values.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

HealthStatus = Literal["healthy", "warning", "critical", "never"]


class SchedulerHealthRecord(BaseModel):
    """Health of one periodic job as of ``generated_at``.

    Attributes:
        name:                  Stable job id, e.g. ``"priority-recalc"``.
        label:                 Human-readable name.
        description:           What the job does.
        status:                Staleness classification.
        last_run_at:           Start of the most recent attempt.
        last_duration_ms:      Duration of the most recent attempt.
        stale_for_ms:          ``now - last_run_at``; ``None`` if never run.
        expected_interval_ms:  Cadence the job is expected to keep.
        last_error_message:    Error of the most recent failed attempt.
        last_success_at:       Start of the most recent successful attempt.
        last_error_at:         Start of the most recent failed attempt.
        success_count:         Successful attempts since tracking began.
        error_count:           Failed attempts since tracking began.
        consecutive_failures:  Failed attempts since the last success.
        running:               True while an attempt is in flight.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    label: str
    description: str = ""
    status: HealthStatus = "never"
    last_run_at: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    stale_for_ms: Optional[int] = None
    expected_interval_ms: int
    last_error_message: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    success_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    running: bool = False
