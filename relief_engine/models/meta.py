"""
Run metadata — the engine's execution audit log.

Every orchestrator cycle and every stage run records a ``RunMetadata`` row
with a complete ``config_snapshot`` (full AppConfig as a dict), so a ranking
that looked wrong on the dashboard can be traced back to the weights and
thresholds that produced it.

``RunMetadata`` is the **only** Pydantic model in the system that is NOT
frozen — its ``status``, ``rows_processed``, ``error_message``, and
``finished_at`` fields must be updated as the stage executes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

VALID_PIPELINE_STAGES = frozenset({
    "demand_aggregation", "priority_scoring", "recommendation_generation",
    "orchestrator",
})
VALID_RUN_STATUSES = frozenset({"started", "success", "partial", "failed", "skipped"})
VALID_TRIGGERS = frozenset({"scheduled", "manual", "cli", "startup"})


class RunMetadata(BaseModel):
    """Cycle/stage execution audit record.

    Mutable by design: ``status``, ``rows_processed``, ``error_message``,
    and ``finished_at`` are updated as the stage progresses.

    Attributes:
        run_id: Auto-assigned DB PK; ``None`` before insertion.
        run_slug: UUID4 string uniquely identifying this run.
        pipeline_stage: Which stage produced this run record.
        status: Current execution status.
        cycle_id: Orchestrator cycle this run belongs to.
        trigger: What started the cycle (``scheduled``, ``manual``, ...).
        config_snapshot: Full ``AppConfig.model_dump()`` at run start time.
        rows_processed: Count of records produced (cells, snapshots, ...).
        error_message: Error description if ``status == "failed"``.
        started_at: UTC datetime when the run began.
        finished_at: UTC datetime when the run completed or failed.
    """

    # Not frozen — status, rows_processed, etc. are updated during execution
    model_config = ConfigDict(frozen=False)

    run_id: Optional[int] = None
    run_slug: str
    pipeline_stage: str
    status: str = "started"
    cycle_id: Optional[str] = None
    trigger: str = "scheduled"
    config_snapshot: dict[str, Any]
    rows_processed: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @field_validator("pipeline_stage")
    @classmethod
    def validate_pipeline_stage(cls, v: str) -> str:
        if v not in VALID_PIPELINE_STAGES:
            raise ValueError(
                f"Unknown pipeline_stage '{v}'. Must be one of {sorted(VALID_PIPELINE_STAGES)}."
            )
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_RUN_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_RUN_STATUSES)}."
            )
        return v

    @field_validator("trigger")
    @classmethod
    def validate_trigger(cls, v: str) -> str:
        if v not in VALID_TRIGGERS:
            raise ValueError(
                f"Unknown trigger '{v}'. Must be one of {sorted(VALID_TRIGGERS)}."
            )
        return v
