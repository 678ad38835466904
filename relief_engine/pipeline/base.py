"""
Abstract base class for the engine's pipeline stages.

Every stage follows the same contract:
  1. Receive ``AppConfig`` (and optionally a db path and clock) at construction.
  2. ``run(**kwargs)`` is the sole public API.
  3. ``run()`` creates a ``RunMetadata`` record, calls ``_execute()``,
     and persists the run record with final status.
  4. ``_execute()`` is the stage-specific implementation and returns
     ``(rows_processed, output)``.

This design ensures:
  - Every stage run is auditable (run_metadata written to DB).
  - Status transitions (started → success/failed) are consistent.
  - Error handling is centralized — stages never swallow exceptions; the
    orchestrator decides what a failure means for the cycle.

Usage::

    class MyStage(PipelineStage):
        stage_name = "demand_aggregation"
        job_name   = "demand-aggregation"

        def _execute(self, run: RunMetadata, **kwargs) -> tuple[int, Aggregate]:
            aggregate = ...
            return len(aggregate.cells), aggregate

    outcome = MyStage(config=app_config).run(cycle_id="...", now=now)
    outcome.output
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar
from uuid import uuid4

from relief_engine.config import AppConfig
from relief_engine.models.meta import RunMetadata
from relief_engine.utils.time_utils import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    """A finished stage run and the value it produced."""

    run:    RunMetadata
    output: T


class PipelineStage(ABC, Generic[T]):
    """Abstract base for all pipeline stages.

    Subclasses must:
      1. Set ``stage_name`` (a valid ``RunMetadata.pipeline_stage``) and
         ``job_name`` (the scheduler-health job id).
      2. Implement ``_execute(run, **kwargs) -> (rows, output)``.

    Attributes:
        config: The application configuration for this run.
        db_path: Path to the SQLite database (defaults to ``config.database.db_path``).
        clock: Time source for run timestamps.
    """

    stage_name: str
    job_name: str

    def __init__(
        self,
        config: AppConfig,
        db_path: Optional[str] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self.db_path = db_path or config.database.db_path
        self.clock = clock or SystemClock()

    def run(
        self,
        cycle_id: Optional[str] = None,
        trigger: str = "scheduled",
        **kwargs: Any,
    ) -> StageOutcome[T]:
        """Execute this stage.

        Args:
            cycle_id: Orchestrator cycle this run belongs to.
            trigger:  What started the cycle.
            **kwargs: Stage-specific keyword arguments passed to ``_execute()``.

        Returns:
            ``StageOutcome`` holding the finalized ``RunMetadata`` and the
            stage output.

        Raises:
            Exception: Re-raises any exception from ``_execute()`` after
                recording ``status='failed'`` in the run record.
        """
        run = RunMetadata(
            run_slug=str(uuid4()),
            pipeline_stage=self.stage_name,
            cycle_id=cycle_id,
            trigger=trigger,
            config_snapshot=self.config.model_dump(mode="json"),
            started_at=self.clock.now(),
        )
        logger.info(
            "Stage [%s] starting | run_slug=%s | cycle=%s",
            self.stage_name, run.run_slug, cycle_id,
        )

        try:
            rows, output = self._execute(run=run, **kwargs)
        except Exception as exc:
            run.status = "failed"
            run.error_message = str(exc) or type(exc).__name__
            run.finished_at = self.clock.now()
            logger.error(
                "Stage [%s] FAILED: %s | run_slug=%s",
                self.stage_name, exc, run.run_slug,
            )
            self._persist_run(run)
            raise

        run.status = "success"
        run.rows_processed = rows
        run.finished_at = self.clock.now()
        logger.info(
            "Stage [%s] completed | rows=%d | run_slug=%s",
            self.stage_name, rows, run.run_slug,
        )
        self._persist_run(run)
        return StageOutcome(run=run, output=output)

    @abstractmethod
    def _execute(self, run: RunMetadata, **kwargs: Any) -> tuple[int, T]:
        """Stage-specific implementation.

        Args:
            run: The in-progress ``RunMetadata`` record (mutable).
            **kwargs: Stage-specific parameters.

        Returns:
            ``(rows_processed, output)``.
        """
        ...

    def _connect(self):
        from relief_engine.db.connection import get_connection

        return get_connection(
            self.db_path,
            wal_mode=self.config.database.wal_mode,
            busy_timeout_ms=self.config.database.busy_timeout_ms,
        )

    def _persist_run(self, run: RunMetadata) -> None:
        """Persist the ``RunMetadata`` record to the database.

        Logs errors rather than raising — run persistence failure should not
        mask the original stage outcome.
        """
        try:
            from relief_engine.db.repositories.run_repo import RunMetadataRepository

            with self._connect() as conn:
                repo = RunMetadataRepository(conn)
                if run.run_id is None:
                    run.run_id = repo.insert_run(run)
                else:
                    repo.update_run(run)
        except Exception as exc:
            logger.error(
                "Failed to persist RunMetadata for run_slug=%s: %s",
                run.run_slug, exc,
            )
