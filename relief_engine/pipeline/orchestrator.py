"""
Priority-recalculation orchestration for the Relief Allocation Engine.

The ``Orchestrator`` coordinates one recalculation cycle in a deterministic,
testable sequence:

  Step 1 — Pre-flight:    Ensure the schema is current, write the cycle's
                           run_metadata row.
  Step 2 — Aggregate:     DemandAggregationStage (cells + timeline point).
  Step 3 — Score:         PriorityScoringStage (ranked PrioritySnapshots).
  Step 4 — Generate:      RecommendationGenerationStage (pending dispatches).
  Step 5 — Publish:       Attach recommendation refs, swap the EngineSnapshot.

Failure isolation
-----------------
- Aggregation or scoring failure:  Nothing is published; readers keep the
                                   previous snapshot.
- Generation failure:              Fresh priorities are still published, with
                                   references to already-pending
                                   recommendations.  Cycle status ``partial``.
- All failures:                    Recorded in ``CycleResult.errors``, in
                                   run_metadata.error_message and in the
                                   scheduler-health tracker.

Single flight
-------------
Every job name has one in-flight slot.  A caller that finds the slot taken
waits for the running attempt and receives its result flagged
``coalesced=True``; no second attempt runs.  Different jobs run concurrently.

Readers (the HTTP API, the CLI) only ever call ``snapshot()``, which returns
the last published ``EngineSnapshot`` without taking the cycle's slot.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from relief_engine.config import AppConfig
from relief_engine.demand.aggregator import DemandTimeline
from relief_engine.models.demand import DemandCell, DemandTimelinePoint
from relief_engine.models.meta import VALID_TRIGGERS, RunMetadata
from relief_engine.models.priority import PrioritySnapshot
from relief_engine.monitoring.health import SchedulerHealthTracker
from relief_engine.pipeline.stages import (
    DemandAggregationStage,
    PriorityScoringStage,
    RecommendationGenerationStage,
)
from relief_engine.prioritization.ranker import attach_recommendations
from relief_engine.utils.time_utils import Clock, SystemClock

logger = logging.getLogger(__name__)

RECALC_JOB = "priority-recalc"


# ── Published state ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EngineSnapshot:
    """Everything one successful cycle published.

    Attributes:
        cycle_id:            Cycle that produced this snapshot (None before the first).
        generated_at:        The cycle's ``now``.
        cells:               Demand cells, pressure descending.
        timeline:            Timeline points, oldest first.
        priorities:          Ranked priority queue.
        inventory_by_region: Units held per region at aggregation time.
        open_request_count:  Open requests seen by the cycle.
    """

    cycle_id:            Optional[str]                     = None
    generated_at:        Optional[datetime]                = None
    cells:               tuple[DemandCell, ...]            = ()
    timeline:            tuple[DemandTimelinePoint, ...]   = ()
    priorities:          tuple[PrioritySnapshot, ...]      = ()
    inventory_by_region: dict[str, int]                    = field(default_factory=dict)
    open_request_count:  int                               = 0

    @property
    def is_empty(self) -> bool:
        return self.cycle_id is None

    @property
    def latest_bucket_start(self) -> Optional[datetime]:
        return self.timeline[-1].bucket_start if self.timeline else None


class SnapshotStore:
    """Holds the current ``EngineSnapshot``; publication is a reference swap."""

    def __init__(self, initial: Optional[EngineSnapshot] = None) -> None:
        self._lock = threading.Lock()
        self._current = initial or EngineSnapshot()
        self._version = 0

    def current(self) -> EngineSnapshot:
        with self._lock:
            return self._current

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def publish(self, snapshot: EngineSnapshot) -> None:
        with self._lock:
            self._current = snapshot
            self._version += 1


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class CycleResult:
    """Complete result of one recalculation cycle.

    Attributes:
        cycle_id:                Unique id of the cycle (also the run_slug).
        trigger:                 What started it.
        run_id:                  DB run_id of the orchestrator run_metadata row.
        started_at:              UTC datetime when the cycle started.
        finished_at:             UTC datetime when the cycle finished.
        status:                  "success", "partial", or "failed".
        published:               Whether a new snapshot was swapped in.
        coalesced:               True for callers that joined an in-flight cycle.
        cell_count:              Demand cells produced.
        priority_count:          Requests ranked.
        recommendations_created: New pending recommendations persisted.
        errors:                  Accumulated error messages.
    """

    cycle_id:                str
    trigger:                 str
    run_id:                  Optional[int]      = None
    started_at:              Optional[datetime] = None
    finished_at:             Optional[datetime] = None
    status:                  str                = "started"
    published:               bool               = False
    coalesced:               bool               = False
    cell_count:              int                = 0
    priority_count:          int                = 0
    recommendations_created: int                = 0
    errors:                  list[str]          = field(default_factory=list)


@dataclass(frozen=True)
class JobResult:
    """Outcome of one attempt of a registered job."""

    name:        str
    success:     bool
    started_at:  Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error:       Optional[str]      = None
    value:       Any                = None
    coalesced:   bool               = False


@dataclass(frozen=True)
class _JobEntry:
    fn:                   Callable[[], Any]
    expected_interval_ms: int


class _Flight:
    """One in-flight attempt; followers wait on ``done``."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None


# ── Orchestrator ──────────────────────────────────────────────────────────────

class Orchestrator:
    """Runs recalculation cycles and other periodic jobs, single-flight per job.

    Args:
        config:  AppConfig for all cycles.
        db_path: Override DB path (defaults to config.database.db_path).
        clock:   Time source; injected in tests.
        tracker: Scheduler-health tracker (built from config if omitted).
        store:   Snapshot store (a fresh empty one if omitted).
        alert_levels: Optional callable returning region → weather alert
                 level; read once per cycle for recommendation context.
    """

    def __init__(
        self,
        config: AppConfig,
        db_path: Optional[str] = None,
        clock: Optional[Clock] = None,
        tracker: Optional[SchedulerHealthTracker] = None,
        store: Optional[SnapshotStore] = None,
        alert_levels: Optional[Callable[[], Mapping[str, str]]] = None,
    ) -> None:
        self.config  = config
        self.db_path = db_path or config.database.db_path
        self.clock   = clock or SystemClock()
        self.tracker = tracker or SchedulerHealthTracker(
            jobs=config.scheduler.jobs,
            clock=self.clock,
            warning_multiplier=config.scheduler.warning_multiplier,
            critical_multiplier=config.scheduler.critical_multiplier,
            db_path=self.db_path,
        )
        self.store = store or SnapshotStore()
        self.alert_levels = alert_levels
        self._timeline = DemandTimeline(maxlen=config.demand.timeline_length)
        self._jobs: dict[str, _JobEntry] = {}
        self._flights: dict[str, _Flight] = {}
        self._flights_lock = threading.Lock()
        self._background: Optional[threading.Thread] = None

    # ── Public API ────────────────────────────────────────────────────────────

    def snapshot(self) -> EngineSnapshot:
        """Return the last published snapshot.  Never blocks on a running cycle."""
        return self.store.current()

    def preview(self, now: Optional[datetime] = None) -> EngineSnapshot:
        """Aggregate and score the current data without persisting or publishing.

        Used by one-shot CLI commands, which have no long-lived snapshot.
        Existing pending recommendations are attached; none are generated.

        Raises:
            DataUnavailableError: If a read model cannot be read.
        """
        from relief_engine.db.repositories.recommendation_repo import RecommendationRepository
        from relief_engine.db.repositories.relief_repo import (
            RescueRequestRepository,
            ResourceRepository,
            WarehouseRepository,
        )
        from relief_engine.demand.aggregator import aggregate_demand
        from relief_engine.prioritization.scorer import score_requests

        now = now or self.clock.now()
        with self._connect() as conn:
            requests   = RescueRequestRepository(conn).list_open()
            warehouses = WarehouseRepository(conn).list_all()
            resources  = ResourceRepository(conn).list_all()
            refs       = RecommendationRepository(conn).pending_by_request()

        aggregate = aggregate_demand(
            requests, resources, warehouses, now,
            bucket_minutes=self.config.demand.bucket_minutes,
        )
        ranked = score_requests(
            requests, warehouses, resources, aggregate.cells, self.config.scoring, now,
        )
        return EngineSnapshot(
            cycle_id=None,
            generated_at=now,
            cells=aggregate.cells,
            timeline=(aggregate.timeline_point,),
            priorities=tuple(attach_recommendations(ranked, refs)),
            inventory_by_region=dict(aggregate.inventory_by_region),
            open_request_count=aggregate.open_request_count,
        )

    def is_running(self, name: str = RECALC_JOB) -> bool:
        with self._flights_lock:
            return name in self._flights

    def run_cycle(self, trigger: str = "scheduled") -> CycleResult:
        """Run one recalculation cycle, or join the one already in flight.

        Args:
            trigger: One of ``scheduled``, ``manual``, ``cli``, ``startup``.

        Returns:
            CycleResult; ``coalesced=True`` if this caller joined a running cycle.
        """
        if trigger not in VALID_TRIGGERS:
            raise ValueError(f"Unknown trigger '{trigger}'. Must be one of {sorted(VALID_TRIGGERS)}.")

        flight, leader = self._claim(RECALC_JOB)
        if not leader:
            logger.info("Recalculation already in flight; waiting for its result.")
            return replace(self._follow(flight), coalesced=True)
        return self._lead(RECALC_JOB, flight, lambda: self._execute_cycle(trigger))

    def trigger_recalculate(self) -> str:
        """Start a manual cycle in the background without waiting for it.

        Returns:
            ``"started"`` if a new cycle was launched, ``"coalesced"`` if one
            was already running (its result will be published).
        """
        flight, leader = self._claim(RECALC_JOB)
        if not leader:
            logger.info("Manual recalculation coalesced into the running cycle.")
            return "coalesced"

        thread = threading.Thread(
            target=self._lead_in_background,
            args=(flight,),
            name="relief-recalc-manual",
            daemon=True,
        )
        self._background = thread
        thread.start()
        return "started"

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        """Join the most recent background cycle, if any."""
        thread = self._background
        if thread is not None:
            thread.join(timeout)

    def register_job(
        self,
        name: str,
        fn: Callable[[], Any],
        expected_interval_ms: int,
        label: Optional[str] = None,
        description: str = "",
    ) -> None:
        """Register another periodic job (e.g. an ingestion feed).

        The job is tracked for scheduler health and driven by the daemon at
        ``expected_interval_ms``.
        """
        if name == RECALC_JOB:
            raise ValueError(f"'{RECALC_JOB}' is reserved for the recalculation cycle.")
        self.tracker.register(name, label or name, description, expected_interval_ms)
        self._jobs[name] = _JobEntry(fn=fn, expected_interval_ms=expected_interval_ms)
        logger.info("Registered job [%s] every %d ms", name, expected_interval_ms)

    def run_job(self, name: str) -> JobResult:
        """Run one attempt of ``name``; never raises for job failures.

        Raises:
            KeyError: If ``name`` is not registered.
        """
        if name == RECALC_JOB:
            cycle = self.run_cycle("scheduled")
            return JobResult(
                name=name,
                success=cycle.status == "success",
                started_at=cycle.started_at,
                finished_at=cycle.finished_at,
                error="; ".join(cycle.errors) or None,
                value=cycle,
                coalesced=cycle.coalesced,
            )

        entry = self._jobs.get(name)
        if entry is None:
            raise KeyError(f"Unknown job '{name}'.")

        flight, leader = self._claim(name)
        if not leader:
            return replace(self._follow(flight), coalesced=True)
        return self._lead(name, flight, lambda: self._execute_job(name, entry.fn))

    def scheduled_jobs(self) -> list[tuple[str, float]]:
        """``(job_name, interval_seconds)`` for every job the daemon should drive."""
        jobs = [(RECALC_JOB, float(self.config.scheduler.recalc_interval_seconds))]
        jobs.extend(
            (name, entry.expected_interval_ms / 1000.0) for name, entry in self._jobs.items()
        )
        return jobs

    # ── Single-flight slots ───────────────────────────────────────────────────

    def _claim(self, name: str) -> tuple[_Flight, bool]:
        with self._flights_lock:
            flight = self._flights.get(name)
            if flight is not None:
                return flight, False
            flight = _Flight()
            self._flights[name] = flight
            return flight, True

    def _lead(self, name: str, flight: _Flight, fn: Callable[[], Any]) -> Any:
        try:
            flight.result = fn()
            return flight.result
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            with self._flights_lock:
                self._flights.pop(name, None)
            flight.done.set()

    @staticmethod
    def _follow(flight: _Flight) -> Any:
        flight.done.wait()
        if flight.error is not None:
            raise flight.error
        return flight.result

    def _lead_in_background(self, flight: _Flight) -> None:
        try:
            self._lead(RECALC_JOB, flight, lambda: self._execute_cycle("manual"))
        except Exception as exc:
            logger.error("Background recalculation crashed: %s", exc, exc_info=True)

    # ── Cycle ─────────────────────────────────────────────────────────────────

    def _execute_cycle(self, trigger: str) -> CycleResult:
        started = self.clock.now()
        result  = CycleResult(cycle_id=str(uuid4()), trigger=trigger, started_at=started)
        logger.info("Orchestrator | cycle=%s | trigger=%s", result.cycle_id, trigger)
        self.tracker.mark_running(RECALC_JOB, started)

        # ── Step 1: Pre-flight ────────────────────────────────────────────────
        try:
            self._ensure_schema()
        except Exception as exc:
            result.errors.append(f"Pre-flight schema check failed: {exc}")
            return self._finish(result, None)
        run = self._persist_run_start(result)
        result.run_id = run.run_id if run else None

        # ── Step 2: Aggregate ─────────────────────────────────────────────────
        logger.info("[1/3] DemandAggregationStage ...")
        try:
            aggregated = self._run_stage(
                DemandAggregationStage, result, now=started,
            )
        except Exception as exc:
            result.errors.append(f"DemandAggregationStage: {exc}")
            logger.error("Aggregation failed; keeping previous snapshot.")
            return self._finish(result, run)

        # ── Step 3: Score ─────────────────────────────────────────────────────
        logger.info("[2/3] PriorityScoringStage ...")
        try:
            ranked = self._run_stage(
                PriorityScoringStage, result,
                inputs=aggregated.inputs, aggregate=aggregated.aggregate, now=started,
            )
        except Exception as exc:
            result.errors.append(f"PriorityScoringStage: {exc}")
            logger.error("Scoring failed; keeping previous snapshot.")
            return self._finish(result, run)

        result.cell_count     = len(aggregated.aggregate.cells)
        result.priority_count = len(ranked)

        # ── Step 4: Generate ──────────────────────────────────────────────────
        logger.info("[3/3] RecommendationGenerationStage ...")
        refs: dict[int, int] = {}
        try:
            refs = self._pending_refs()
            created = self._run_stage(
                RecommendationGenerationStage, result,
                inputs=aggregated.inputs, aggregate=aggregated.aggregate,
                ranked=ranked, now=started, alert_levels=self._current_alert_levels(),
            )
            result.recommendations_created = len(created)
            refs.update(
                {r.request_id: r.recommendation_id for r in created if r.request_id is not None}
            )
        except Exception as exc:
            result.errors.append(f"RecommendationGenerationStage: {exc}")
            logger.error("Generation failed; publishing priorities with existing references.")

        # ── Step 5: Publish ───────────────────────────────────────────────────
        self._timeline.append(aggregated.aggregate.timeline_point)
        self.store.publish(
            EngineSnapshot(
                cycle_id=result.cycle_id,
                generated_at=started,
                cells=aggregated.aggregate.cells,
                timeline=self._timeline.points(),
                priorities=tuple(attach_recommendations(ranked, refs)),
                inventory_by_region=dict(aggregated.aggregate.inventory_by_region),
                open_request_count=aggregated.aggregate.open_request_count,
            )
        )
        result.published = True
        return self._finish(result, run)

    def _run_stage(self, stage_cls, result: CycleResult, **kwargs: Any) -> Any:
        stage = stage_cls(config=self.config, db_path=self.db_path, clock=self.clock)
        with self.tracker.track(stage.job_name):
            outcome = stage.run(cycle_id=result.cycle_id, trigger=result.trigger, **kwargs)
        return outcome.output

    def _finish(self, result: CycleResult, run: Optional[RunMetadata]) -> CycleResult:
        if result.published:
            result.status = "partial" if result.errors else "success"
        else:
            result.status = "failed"
        result.finished_at = self.clock.now()

        self.tracker.record_run(
            RECALC_JOB,
            result.started_at,
            result.finished_at,
            result.status == "success",
            "; ".join(result.errors) or None,
        )
        self._persist_run_finish(run, result)

        logger.info(
            "Orchestrator finished | status=%s | cells=%d | priorities=%d | new_recs=%d | errors=%d",
            result.status, result.cell_count, result.priority_count,
            result.recommendations_created, len(result.errors),
            extra={"cycle_id": result.cycle_id, "trigger": result.trigger},
        )
        return result

    def _execute_job(self, name: str, fn: Callable[[], Any]) -> JobResult:
        started = self.clock.now()
        try:
            with self.tracker.track(name):
                value = fn()
        except Exception as exc:
            return JobResult(
                name=name,
                success=False,
                started_at=started,
                finished_at=self.clock.now(),
                error=str(exc) or type(exc).__name__,
            )
        return JobResult(
            name=name, success=True, started_at=started,
            finished_at=self.clock.now(), value=value,
        )

    # ── Private helpers ───────────────────────────────────────────────────────

    def _connect(self):
        from relief_engine.db.connection import get_connection

        return get_connection(
            self.db_path,
            wal_mode=self.config.database.wal_mode,
            busy_timeout_ms=self.config.database.busy_timeout_ms,
        )

    def _ensure_schema(self) -> None:
        """Verify DB is accessible and schema is current (idempotent)."""
        from relief_engine.db.migrations import run_migrations
        from relief_engine.db.schema import apply_schema

        with self._connect() as conn:
            apply_schema(conn)
            run_migrations(conn)

    def _current_alert_levels(self) -> Optional[Mapping[str, str]]:
        """Read the alert provider; a failing feed only drops the alert context."""
        if self.alert_levels is None:
            return None
        try:
            return dict(self.alert_levels())
        except Exception as exc:
            logger.warning("Weather alert levels unavailable: %s", exc)
            return None

    def _pending_refs(self) -> dict[int, int]:
        from relief_engine.db.repositories.recommendation_repo import RecommendationRepository

        with self._connect() as conn:
            return RecommendationRepository(conn).pending_by_request()

    def _persist_run_start(self, result: CycleResult) -> Optional[RunMetadata]:
        """Write the initial orchestrator run_metadata record.

        Returns the run, or None if persistence fails (non-fatal).
        """
        try:
            from relief_engine.db.repositories.run_repo import RunMetadataRepository

            run = RunMetadata(
                run_slug=result.cycle_id,
                pipeline_stage="orchestrator",
                cycle_id=result.cycle_id,
                trigger=result.trigger,
                config_snapshot=self.config.model_dump(mode="json"),
                started_at=result.started_at,
            )
            with self._connect() as conn:
                run.run_id = RunMetadataRepository(conn).insert_run(run)
            return run
        except Exception as exc:
            logger.warning("Could not persist orchestrator run start: %s", exc)
            return None

    def _persist_run_finish(self, run: Optional[RunMetadata], result: CycleResult) -> None:
        """Update the orchestrator run_metadata record with final status."""
        if run is None:
            return
        try:
            from relief_engine.db.repositories.run_repo import RunMetadataRepository

            run.status = result.status
            run.rows_processed = result.priority_count
            run.error_message = "; ".join(result.errors) if result.errors else None
            run.finished_at = result.finished_at
            with self._connect() as conn:
                RunMetadataRepository(conn).update_run(run)
        except Exception as exc:
            logger.warning("Could not persist orchestrator run finish: %s", exc)
