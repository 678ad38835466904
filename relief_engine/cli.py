"""
Relief Allocation Engine — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute action (DB init, cycle, apply, export, serve, etc.).
  5. Report result to stdout.

Install and run::

    pip install -e .
    relief-engine --help
    relief-engine init-db
    relief-engine validate-config
    relief-engine recalculate
    relief-engine show-priorities --top 10
    relief-engine apply-recommendation 42 --actor ops-lead
    relief-engine scheduler-health
    relief-engine serve
    relief-engine serve --no-scheduler     # jobs run by start-scheduler
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="relief-engine",
    help="Relief Allocation Engine — priority queue and dispatch recommendations.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from relief_engine.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from relief_engine.utils.logging import configure_logging
    configure_logging(config.logging)


def _orchestrator(config, db_path: Optional[str]):
    from relief_engine.pipeline.orchestrator import Orchestrator

    return Orchestrator(config, db_path=db_path)


def _print_priorities(priorities, top: int) -> None:
    if not priorities:
        typer.echo("  (no open requests)")
        return
    typer.echo(f"  {'#':>3}  {'score':>5}  {'request':>7}  {'region':<16} {'type':<14} rec")
    for rank, snap in enumerate(priorities[:top], start=1):
        rec = str(snap.recommendation_id) if snap.recommendation_id else "-"
        flag = " *" if snap.degraded else ""
        typer.echo(
            f"  {rank:>3}  {snap.score:>5}  {snap.request_id:>7}  "
            f"{snap.region[:16]:<16} {snap.resource_type[:14]:<14} {rec}{flag}"
        )
        typer.echo(f"        {snap.rationale}")
    if any(s.degraded for s in priorities[:top]):
        typer.echo("  * scored with degraded inputs")


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config (e.g. data/db/test.db).",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times — all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from relief_engine.db.connection import get_connection
    from relief_engine.db.migrations import run_migrations
    from relief_engine.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file (default: config/default.toml).",
    ),
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields.",
    ),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)
    s = config.scoring

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(
        f"  Weights:          age={s.age_weight} proximity={s.proximity_weight} "
        f"hub={s.hub_capacity_weight} supply={s.supply_pressure_weight}"
    )
    typer.echo(f"  Top-K:            {config.recommendations.top_k}")
    typer.echo(f"  Recalc interval:  {config.scheduler.recalc_interval_seconds}s")
    typer.echo(f"  Tracked jobs:     {', '.join(config.scheduler.jobs)}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(config.model_dump(mode="json"), indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("recalculate")
def recalculate(
    top: int = typer.Option(10, "--top", help="Rows of the new queue to print."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Run one full cycle: aggregate, score, generate recommendations.

    \b
    Steps:
      1. DemandAggregationStage        — open requests + inventory → pressure cells.
      2. PriorityScoringStage          — score and rank every open request.
      3. RecommendationGenerationStage — pending dispatches for the top-K.

    Exits with code 1 if the cycle published nothing.
    """
    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    orchestrator = _orchestrator(config, db_path)
    typer.echo(f"recalculate | db={orchestrator.db_path}")
    result = orchestrator.run_cycle(trigger="cli")

    typer.echo(
        f"  status={result.status} | cells={result.cell_count} | "
        f"priorities={result.priority_count} | new recommendations={result.recommendations_created}"
    )
    for err in result.errors:
        typer.echo(f"  ! {err}", err=True)

    if result.status == "failed":
        typer.echo("[ERROR] Cycle failed; nothing published.", err=True)
        raise typer.Exit(code=1)

    typer.echo("")
    _print_priorities(list(orchestrator.snapshot().priorities), top)
    typer.echo("")
    typer.echo(f"[OK] Cycle {result.cycle_id} complete.")


@app.command("show-priorities")
def show_priorities(
    top: int = typer.Option(20, "--top", help="Number of requests to print."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Print the current priority queue without writing anything."""
    from relief_engine.errors import ReliefEngineError

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        snapshot = _orchestrator(config, db_path).preview()
    except ReliefEngineError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(
        f"Priority queue | open requests={snapshot.open_request_count} | "
        f"cells={len(snapshot.cells)}"
    )
    _print_priorities(list(snapshot.priorities), top)


@app.command("list-recommendations")
def list_recommendations(
    status: str = typer.Option("pending", "--status", help="pending | applied | dismissed | all"),
    limit: int = typer.Option(20, "--limit", help="Maximum rows to print."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """List stored recommendations, highest impact first."""
    from relief_engine.db.connection import get_connection
    from relief_engine.db.repositories.recommendation_repo import RecommendationRepository

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        with get_connection(db_path or config.database.db_path) as conn:
            recs = RecommendationRepository(conn).list_by_status(
                None if status == "all" else status, limit=limit
            )
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    if not recs:
        typer.echo(f"No {status} recommendations.")
        return
    for rec in recs:
        typer.echo(
            f"  [{rec.recommendation_id}] {rec.status:<9} {rec.suggested_quantity} x "
            f"{rec.resource_type} from {rec.warehouse_name} → request {rec.request_id} "
            f"(confidence {rec.confidence:.2f})"
        )
        typer.echo(f"        {rec.rationale}")


@app.command("apply-recommendation")
def apply_recommendation(
    recommendation_id: int = typer.Argument(..., help="Recommendation id to apply."),
    actor: Optional[str] = typer.Option(None, "--actor", help="Who is applying it."),
    note: Optional[str] = typer.Option(None, "--note", help="Free-text feedback note."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Dispatch a pending recommendation: decrement stock and log the movement."""
    from relief_engine.db.connection import get_connection
    from relief_engine.errors import ReliefEngineError
    from relief_engine.recommendations.applier import RecommendationApplier

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        with get_connection(db_path or config.database.db_path) as conn:
            result = RecommendationApplier(conn).apply(recommendation_id, actor=actor, note=note)
    except ReliefEngineError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(
        f"[OK] Applied recommendation {result.recommendation_id}: "
        f"{result.quantity} unit(s) from resource {result.resource_id}, "
        f"{result.remaining} remaining."
    )


@app.command("dismiss-recommendation")
def dismiss_recommendation(
    recommendation_id: int = typer.Argument(..., help="Recommendation id to dismiss."),
    reason: Optional[str] = typer.Option(None, "--reason", help="Why it was rejected."),
    actor: Optional[str] = typer.Option(None, "--actor", help="Who is dismissing it."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Reject a pending recommendation.  No inventory effect."""
    from relief_engine.db.connection import get_connection
    from relief_engine.errors import ReliefEngineError
    from relief_engine.recommendations.applier import RecommendationApplier

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        with get_connection(db_path or config.database.db_path) as conn:
            RecommendationApplier(conn).dismiss(recommendation_id, reason=reason, actor=actor)
    except ReliefEngineError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"[OK] Dismissed recommendation {recommendation_id}.")


@app.command("scheduler-health")
def scheduler_health(
    as_json: bool = typer.Option(False, "--json", help="Print records as JSON."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Show last run, duration and staleness of every tracked job.

    Reads the metrics the scheduler process writes to ``scheduler_metrics``.
    """
    from relief_engine.monitoring.health import SchedulerHealthTracker

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    tracker = SchedulerHealthTracker(
        jobs=config.scheduler.jobs,
        warning_multiplier=config.scheduler.warning_multiplier,
        critical_multiplier=config.scheduler.critical_multiplier,
        db_path=db_path or config.database.db_path,
    )
    tracker.load_persisted()
    records = tracker.health()

    if as_json:
        typer.echo(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    typer.echo(f"  {'job':<28} {'status':<9} {'last run':<26} {'stale':>9}  errors")
    for r in records:
        last = r.last_run_at.isoformat(timespec="seconds") if r.last_run_at else "-"
        stale = f"{r.stale_for_ms / 1000:.0f}s" if r.stale_for_ms is not None else "-"
        typer.echo(
            f"  {r.name:<28} {r.status:<9} {last:<26} {stale:>9}  "
            f"{r.error_count} ({r.consecutive_failures} in a row)"
        )
        if r.last_error_message and r.consecutive_failures:
            typer.echo(f"        last error: {r.last_error_message}")

    if any(r.status == "critical" for r in records):
        raise typer.Exit(code=2)


@app.command("export-priorities")
def export_priorities(
    output_dir: Optional[str] = typer.Option(
        None, "--output-dir", help="Override reporting.output_dir from config."
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Export the current priority queue (CSV + JSON) and all recommendations (JSON)."""
    from relief_engine.db.connection import get_connection
    from relief_engine.db.repositories.recommendation_repo import RecommendationRepository
    from relief_engine.errors import ReliefEngineError
    from relief_engine.recommendations.reporter import (
        write_priority_csv,
        write_priority_json,
        write_recommendation_json,
    )

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_db = db_path or config.database.db_path
    out = Path(output_dir or config.reporting.output_dir)

    try:
        snapshot = _orchestrator(config, target_db).preview()
        with get_connection(target_db) as conn:
            recs = RecommendationRepository(conn).list_by_status(None, limit=10_000)
    except ReliefEngineError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)

    priorities = list(snapshot.priorities)
    csv_path  = write_priority_csv(priorities, out, snapshot.generated_at)
    json_path = write_priority_json(priorities, out, snapshot.generated_at)
    rec_path  = write_recommendation_json(recs, out, snapshot.generated_at)

    typer.echo(f"  {csv_path}")
    typer.echo(f"  {json_path}")
    typer.echo(f"  {rec_path}")
    typer.echo(f"[OK] Exported {len(priorities)} priorities, {len(recs)} recommendations.")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Override api.host from config."),
    port: Optional[int] = typer.Option(None, "--port", help="Override api.port from config."),
    with_scheduler: bool = typer.Option(
        True,
        "--with-scheduler/--no-scheduler",
        help="Run the periodic jobs in this process (use --no-scheduler when "
             "start-scheduler runs them elsewhere).",
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Serve the HTTP API with uvicorn, running the periodic jobs by default."""
    import uvicorn

    from relief_engine.api.app import create_app
    from relief_engine.db.connection import init_database

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    orchestrator = _orchestrator(config, db_path)
    init_database(orchestrator.db_path, wal_mode=config.database.wal_mode)
    api = create_app(config, orchestrator=orchestrator, run_scheduler=with_scheduler)

    typer.echo(
        f"Serving on http://{host or config.api.host}:{port or config.api.port} "
        f"| scheduler={'on' if with_scheduler else 'off'}"
    )
    uvicorn.run(
        api,
        host=host or config.api.host,
        port=port or config.api.port,
        log_level=config.logging.level.lower(),
    )


@app.command("start-scheduler")
def start_scheduler(
    skip_initial: bool = typer.Option(
        False,
        "--skip-initial",
        help="Wait one full interval before the first run instead of running immediately.",
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Run every periodic job on its interval.  Blocks until Ctrl-C.

    \b
    Jobs:
      priority-recalc — every scheduler.recalc_interval_seconds

    Health is written to scheduler_metrics; read it with ``scheduler-health``.
    """
    from relief_engine.db.connection import init_database
    from relief_engine.scheduler import SchedulerDaemon

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    orchestrator = _orchestrator(config, db_path)
    init_database(orchestrator.db_path, wal_mode=config.database.wal_mode)
    typer.echo(
        f"start-scheduler | db={orchestrator.db_path} | "
        f"every {config.scheduler.recalc_interval_seconds}s"
    )
    SchedulerDaemon(orchestrator, run_on_start=not skip_initial).start()
    typer.echo("[OK] Scheduler stopped.")


if __name__ == "__main__":
    app()
