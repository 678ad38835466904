"""
FastAPI application exposing the engine to the relief dashboard.

Routes
------
  GET  /priorities                          current ranked queue
  POST /priorities/recalculate              manual cycle (202, started|coalesced)
  GET  /recommendations                     pending (or ?status=) recommendations
  POST /recommendations/{id}/apply          dispatch stock
  POST /recommendations/{id}/dismiss        reject
  POST /recommendations/{id}/feedback       operator feedback only
  GET  /demand-insights?buckets=N           heatmap + trend timeline
  GET  /scheduler/health                    per-job staleness (merges persisted
                                            metrics when jobs run elsewhere)

Read routes serve the orchestrator's published snapshot and never wait on a
running cycle.  Write routes open their own SQLite connection per request.

Errors
------
  ConflictError                → 409 {"error": "InsufficientStock"|"AlreadyResolved", "message"}
  RecommendationNotFoundError  → 404 {"error": "NotFound", "message"}
  DataUnavailableError         → 503 {"error": "DataUnavailable", "message"}
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from relief_engine.api.schemas import (
    ActionResultOut,
    ApplyIn,
    DemandCellOut,
    DemandInsightsOut,
    DismissIn,
    ErrorOut,
    FeedbackIn,
    FeedbackOut,
    PriorityOut,
    RecalculateOut,
    RecommendationListOut,
    RecommendationOut,
    SchedulerHealthListOut,
    SchedulerHealthOut,
    TimelinePointOut,
)
from relief_engine.config import AppConfig, load_config
from relief_engine.db.connection import get_connection
from relief_engine.db.repositories.recommendation_repo import RecommendationRepository
from relief_engine.errors import (
    ConflictError,
    DataUnavailableError,
    RecommendationNotFoundError,
)
from relief_engine.models.recommendation import VALID_FEEDBACK_ACTIONS
from relief_engine.pipeline.orchestrator import Orchestrator
from relief_engine.recommendations.applier import ApplyResult, RecommendationApplier

logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATION_LIMIT = 10
MAX_RECOMMENDATION_LIMIT = 50
DEFAULT_BUCKET_LOOKBACK = 12
MAX_BUCKET_LOOKBACK = 48


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(low, value), high)


def _action_out(result: ApplyResult) -> ActionResultOut:
    return ActionResultOut(
        recommendation_id=result.recommendation_id,
        status=result.status,
        resource_id=result.resource_id,
        quantity=result.quantity,
        remaining=result.remaining,
        log_id=result.log_id,
        feedback_id=result.feedback_id,
    )


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorOut(error=code, message=message).model_dump(by_alias=True),
    )


def create_app(
    config: Optional[AppConfig] = None,
    orchestrator: Optional[Orchestrator] = None,
    run_scheduler: bool = False,
) -> FastAPI:
    """Build the API around one orchestrator.

    Args:
        config:        Loaded configuration (``load_config()`` if omitted).
        orchestrator:  Shared orchestrator (a new one over ``config`` if omitted).
        run_scheduler: Start the scheduler daemon on startup and stop it on
                       shutdown, so one process serves reads and runs cycles.
    """
    config = config or load_config()
    orchestrator = orchestrator or Orchestrator(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        daemon = None
        if run_scheduler:
            from relief_engine.scheduler import SchedulerDaemon

            daemon = SchedulerDaemon(orchestrator)
            daemon.start_background()
        try:
            yield
        finally:
            if daemon is not None:
                daemon.stop()

    app = FastAPI(
        title="Relief Allocation Engine",
        description="Priority queue, dispatch recommendations and scheduler health",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.orchestrator = orchestrator

    def connect():
        return get_connection(
            orchestrator.db_path,
            wal_mode=config.database.wal_mode,
            busy_timeout_ms=config.database.busy_timeout_ms,
        )

    # ── Error mapping ─────────────────────────────────────────────────────────

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _error(409, exc.code, str(exc))

    @app.exception_handler(RecommendationNotFoundError)
    async def not_found_handler(request: Request, exc: RecommendationNotFoundError):
        return _error(404, "NotFound", str(exc))

    @app.exception_handler(DataUnavailableError)
    async def unavailable_handler(request: Request, exc: DataUnavailableError):
        logger.error("Read model unavailable: %s", exc)
        return _error(503, "DataUnavailable", str(exc))

    # ── Priorities ────────────────────────────────────────────────────────────

    @app.get("/priorities", response_model=list[PriorityOut])
    def list_priorities():
        snapshot = orchestrator.snapshot()
        return [
            PriorityOut(rank=rank, **snap.model_dump())
            for rank, snap in enumerate(snapshot.priorities, start=1)
        ]

    @app.post("/priorities/recalculate", response_model=RecalculateOut, status_code=202)
    def recalculate():
        return RecalculateOut(status=orchestrator.trigger_recalculate())

    # ── Recommendations ───────────────────────────────────────────────────────

    @app.get("/recommendations", response_model=RecommendationListOut)
    def list_recommendations(
        limit: int = DEFAULT_RECOMMENDATION_LIMIT,
        status: str = "pending",
    ):
        wanted = None if status == "all" else status
        try:
            with connect() as conn:
                recs = RecommendationRepository(conn).list_by_status(
                    wanted, limit=_clamp(limit, 1, MAX_RECOMMENDATION_LIMIT)
                )
        except ValueError as exc:
            return _error(400, "InvalidStatus", str(exc))
        return RecommendationListOut(
            recommendations=[RecommendationOut(**rec.model_dump()) for rec in recs]
        )

    @app.post("/recommendations/{recommendation_id}/apply", response_model=ActionResultOut)
    def apply_recommendation(recommendation_id: int, body: Optional[ApplyIn] = None):
        body = body or ApplyIn()
        with connect() as conn:
            result = RecommendationApplier(conn, orchestrator.clock).apply(
                recommendation_id, actor=body.actor, note=body.note
            )
        return _action_out(result)

    @app.post("/recommendations/{recommendation_id}/dismiss", response_model=ActionResultOut)
    def dismiss_recommendation(recommendation_id: int, body: Optional[DismissIn] = None):
        body = body or DismissIn()
        with connect() as conn:
            result = RecommendationApplier(conn, orchestrator.clock).dismiss(
                recommendation_id, reason=body.reason, actor=body.actor
            )
        return _action_out(result)

    @app.post(
        "/recommendations/{recommendation_id}/feedback",
        response_model=FeedbackOut,
        status_code=201,
    )
    def record_feedback(recommendation_id: int, body: FeedbackIn):
        if body.action not in VALID_FEEDBACK_ACTIONS:
            return _error(
                400,
                "InvalidAction",
                f"action must be one of {sorted(VALID_FEEDBACK_ACTIONS)}, got '{body.action}'.",
            )
        with connect() as conn:
            if RecommendationRepository(conn).get_status(recommendation_id) is None:
                raise RecommendationNotFoundError(recommendation_id)
            feedback_id = RecommendationApplier(conn, orchestrator.clock).record_feedback(
                recommendation_id, body.action, note=body.note, actor=body.actor
            )
        return FeedbackOut(
            recommendation_id=recommendation_id,
            action=body.action,
            feedback_id=feedback_id,
            recorded=feedback_id is not None,
        )

    # ── Demand ────────────────────────────────────────────────────────────────

    @app.get("/demand-insights", response_model=DemandInsightsOut)
    def demand_insights(buckets: int = Query(DEFAULT_BUCKET_LOOKBACK)):
        window = _clamp(buckets, 1, MAX_BUCKET_LOOKBACK)
        snapshot = orchestrator.snapshot()
        return DemandInsightsOut(
            latest_bucket_start=snapshot.latest_bucket_start,
            heatmap=[DemandCellOut(**cell.model_dump()) for cell in snapshot.cells],
            timeline=[TimelinePointOut(**p.model_dump()) for p in snapshot.timeline[-window:]],
        )

    # ── Scheduler health ──────────────────────────────────────────────────────

    @app.get("/scheduler/health", response_model=SchedulerHealthListOut)
    def scheduler_health():
        if not run_scheduler:
            # Jobs run in another process; its counters live in scheduler_metrics.
            try:
                orchestrator.tracker.load_persisted()
            except sqlite3.Error as exc:
                raise DataUnavailableError("scheduler_metrics", str(exc)) from exc
        now = orchestrator.clock.now()
        return SchedulerHealthListOut(
            schedulers=[
                SchedulerHealthOut(**record.model_dump())
                for record in orchestrator.tracker.health(now)
            ],
            generated_at=now,
        )

    return app
