"""
Tests for relief_engine/pipeline/orchestrator.py.

What we test
------------
run_cycle():
  - A clean cycle publishes cells, ranked priorities and timeline, creates
    recommendations and links them from the priority queue.
  - One run_metadata row per stage plus the orchestrator row.
  - A second cycle creates nothing new but keeps the links.
  - Recommendations carry the cycle id; a dismissed request gets a new
    pending recommendation on the next cycle.
  - Cycle jobs stay healthy for one full recalc_interval_seconds.
  - An alert-level provider fills weather_alert_level; a failing one does
    not fail the cycle.
  - Aggregation / scoring failure publishes nothing; the previous snapshot
    stays visible and the failure is recorded in scheduler health.
  - Generation failure still publishes priorities (status ``partial``).

Single flight:
  - A manual trigger while a cycle runs is coalesced; exactly one cycle runs
    and the follower gets the leader's result.

Other jobs:
  - register_job / run_job track success and failure; unknown jobs raise.
"""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest

from relief_engine.config import AppConfig, DatabaseConfig, LoggingConfig, SchedulerConfig
from relief_engine.db.connection import get_connection
from relief_engine.db.repositories.recommendation_repo import RecommendationRepository
from relief_engine.db.repositories.run_repo import RunMetadataRepository
from relief_engine.errors import DataUnavailableError
from relief_engine.pipeline.orchestrator import RECALC_JOB, Orchestrator
from relief_engine.pipeline.stages import (
    DemandAggregationStage,
    PriorityScoringStage,
    RecommendationGenerationStage,
)
from relief_engine.recommendations.applier import RecommendationApplier


@pytest.fixture
def seeded(seed, make_request, make_warehouse, make_resource):
    seed(
        requests=[make_request(1, hours_ago=3), make_request(2, hours_ago=1)],
        warehouses=[make_warehouse(1)],
        resources=[make_resource(1, 1, quantity=50)],
    )


@pytest.fixture
def orchestrator(app_config, clock) -> Orchestrator:
    return Orchestrator(config=app_config, clock=clock)


class TestCleanCycle:
    def test_publishes_snapshot(self, orchestrator, seeded, clock):
        assert orchestrator.snapshot().is_empty

        result = orchestrator.run_cycle("cli")

        assert result.status == "success"
        assert result.published is True
        assert result.coalesced is False
        assert result.priority_count == 2
        assert result.recommendations_created == 2
        assert result.errors == []

        snap = orchestrator.snapshot()
        assert snap.cycle_id == result.cycle_id
        assert snap.generated_at == clock.now()
        assert [p.request_id for p in snap.priorities] == [1, 2]
        assert all(p.recommendation_id is not None for p in snap.priorities)
        assert [c.key for c in snap.cells] == [("kochi", "water")]
        assert len(snap.timeline) == 1
        assert snap.inventory_by_region == {"kochi": 50}
        assert snap.open_request_count == 2

    def test_run_metadata_written(self, orchestrator, seeded, app_config):
        result = orchestrator.run_cycle("cli")

        with get_connection(app_config.database.db_path) as conn:
            runs = RunMetadataRepository(conn).get_runs_for_cycle(result.cycle_id)

        assert {r.pipeline_stage for r in runs} == {
            "orchestrator", "demand_aggregation", "priority_scoring", "recommendation_generation",
        }
        [orch_run] = [r for r in runs if r.pipeline_stage == "orchestrator"]
        assert orch_run.status == "success"
        assert orch_run.trigger == "cli"
        assert orch_run.rows_processed == 2

    def test_second_cycle_keeps_links(self, orchestrator, seeded, clock):
        first = orchestrator.run_cycle()
        first_links = {p.request_id: p.recommendation_id for p in orchestrator.snapshot().priorities}

        clock.advance(minutes=5)
        second = orchestrator.run_cycle()

        assert second.recommendations_created == 0
        assert second.cycle_id != first.cycle_id
        links = {p.request_id: p.recommendation_id for p in orchestrator.snapshot().priorities}
        assert links == first_links

    def test_recommendations_tagged_with_cycle(self, orchestrator, seeded, app_config):
        result = orchestrator.run_cycle("cli")

        with get_connection(app_config.database.db_path) as conn:
            pending = RecommendationRepository(conn).list_by_status("pending")

        assert len(pending) == 2
        assert {r.cycle_id for r in pending} == {result.cycle_id}

    def test_dismissed_request_is_eligible_next_cycle(self, orchestrator, seeded, app_config, clock):
        orchestrator.run_cycle()
        first_id = orchestrator.snapshot().priorities[0].recommendation_id

        with get_connection(app_config.database.db_path) as conn:
            RecommendationApplier(conn, clock=clock).dismiss(first_id, reason="road closed")

        clock.advance(minutes=5)
        result = orchestrator.run_cycle()

        assert result.recommendations_created == 1
        [top] = [p for p in orchestrator.snapshot().priorities if p.request_id == 1]
        assert top.recommendation_id is not None
        assert top.recommendation_id != first_id
        with get_connection(app_config.database.db_path) as conn:
            repo = RecommendationRepository(conn)
            assert repo.get_status(first_id) == "dismissed"
            assert repo.pending_by_request()[1] == top.recommendation_id

    def test_empty_database(self, orchestrator):
        result = orchestrator.run_cycle()
        assert result.status == "success"
        assert orchestrator.snapshot().priorities == ()

    def test_health_recorded(self, orchestrator, seeded):
        orchestrator.run_cycle()
        health = {r.name: r for r in orchestrator.tracker.health()}

        for name in (RECALC_JOB, "demand-aggregation", "priority-scoring", "recommendation-generation"):
            assert health[name].status == "healthy"
            assert health[name].success_count == 1

    def test_invalid_trigger(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.run_cycle("cron")


class TestFailureIsolation:
    def test_aggregation_failure_keeps_previous_snapshot(self, orchestrator, seeded):
        first = orchestrator.run_cycle()
        version = orchestrator.store.version

        with patch.object(
            DemandAggregationStage, "_execute",
            side_effect=DataUnavailableError("rescue_requests", "database is locked"),
        ):
            result = orchestrator.run_cycle()

        assert result.status == "failed"
        assert result.published is False
        assert "rescue_requests" in result.errors[0]
        assert orchestrator.snapshot().cycle_id == first.cycle_id
        assert orchestrator.store.version == version

        health = orchestrator.tracker.record_for(RECALC_JOB)
        assert health.consecutive_failures == 1
        assert "rescue_requests" in health.last_error_message
        assert orchestrator.tracker.record_for("demand-aggregation").error_count == 1

    def test_scoring_failure_publishes_nothing(self, orchestrator, seeded):
        with patch.object(PriorityScoringStage, "_execute", side_effect=RuntimeError("bad weights")):
            result = orchestrator.run_cycle()

        assert result.status == "failed"
        assert orchestrator.snapshot().is_empty

    def test_generation_failure_is_partial(self, orchestrator, seeded, app_config):
        with patch.object(
            RecommendationGenerationStage, "_execute", side_effect=RuntimeError("disk full"),
        ):
            result = orchestrator.run_cycle()

        assert result.status == "partial"
        assert result.published is True
        assert result.recommendations_created == 0
        assert any("disk full" in e for e in result.errors)

        snap = orchestrator.snapshot()
        assert snap.cycle_id == result.cycle_id
        assert [p.recommendation_id for p in snap.priorities] == [None, None]
        assert orchestrator.tracker.record_for(RECALC_JOB).consecutive_failures == 1

        with get_connection(app_config.database.db_path) as conn:
            assert RecommendationRepository(conn).list_by_status("pending") == []

    def test_recovers_on_next_cycle(self, orchestrator, seeded):
        with patch.object(DemandAggregationStage, "_execute", side_effect=RuntimeError("x")):
            orchestrator.run_cycle()
        result = orchestrator.run_cycle()

        assert result.status == "success"
        assert orchestrator.tracker.record_for(RECALC_JOB).consecutive_failures == 0


class TestSingleFlight:
    def test_manual_trigger_coalesces(self, orchestrator, seeded):
        entered = threading.Event()
        release = threading.Event()
        calls = []
        original = DemandAggregationStage._execute

        def blocking(self, run, **kwargs):
            calls.append(run.cycle_id)
            entered.set()
            release.wait(5)
            return original(self, run, **kwargs)

        with patch.object(DemandAggregationStage, "_execute", blocking):
            assert orchestrator.trigger_recalculate() == "started"
            assert entered.wait(5)
            assert orchestrator.is_running()

            assert orchestrator.trigger_recalculate() == "coalesced"

            timer = threading.Timer(0.1, release.set)
            timer.start()
            joined = orchestrator.run_cycle("manual")
            orchestrator.wait_for_background(5)

        assert len(calls) == 1
        assert joined.coalesced is True
        assert joined.cycle_id == calls[0]
        assert joined.status == "success"
        assert orchestrator.store.version == 1
        assert not orchestrator.is_running()

    def test_sequential_cycles_are_not_coalesced(self, orchestrator, seeded):
        a = orchestrator.run_cycle()
        b = orchestrator.run_cycle()
        assert not a.coalesced and not b.coalesced
        assert a.cycle_id != b.cycle_id


class TestRegisteredJobs:
    def test_run_registered_job(self, orchestrator):
        orchestrator.register_job("weather-ingest", lambda: 3, expected_interval_ms=60_000)

        result = orchestrator.run_job("weather-ingest")

        assert result.success is True
        assert result.value == 3
        assert orchestrator.tracker.record_for("weather-ingest").success_count == 1
        assert ("weather-ingest", 60.0) in orchestrator.scheduled_jobs()

    def test_failing_job_is_recorded(self, orchestrator):
        def broken():
            raise ConnectionError("feed timed out")

        orchestrator.register_job("weather-ingest", broken, expected_interval_ms=60_000)
        result = orchestrator.run_job("weather-ingest")

        assert result.success is False
        assert result.error == "feed timed out"
        record = orchestrator.tracker.record_for("weather-ingest")
        assert record.error_count == 1
        assert record.last_error_message == "feed timed out"

    def test_recalc_via_run_job(self, orchestrator, seeded):
        result = orchestrator.run_job(RECALC_JOB)
        assert result.success is True
        assert result.value.status == "success"

    def test_unknown_job(self, orchestrator):
        with pytest.raises(KeyError):
            orchestrator.run_job("nope")

    def test_reserved_name(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.register_job(RECALC_JOB, lambda: None, expected_interval_ms=1000)

    def test_scheduled_jobs_default(self, orchestrator, app_config):
        assert orchestrator.scheduled_jobs() == [
            (RECALC_JOB, float(app_config.scheduler.recalc_interval_seconds)),
        ]


class TestPreview:
    def test_preview_does_not_persist_or_publish(self, orchestrator, seeded, app_config):
        snap = orchestrator.preview()

        assert snap.cycle_id is None
        assert [p.request_id for p in snap.priorities] == [1, 2]
        assert orchestrator.snapshot().is_empty
        with get_connection(app_config.database.db_path) as conn:
            assert RecommendationRepository(conn).list_by_status(None) == []

    def test_preview_attaches_existing_links(self, orchestrator, seeded):
        orchestrator.run_cycle()
        snap = orchestrator.preview()
        assert all(p.recommendation_id is not None for p in snap.priorities)


class TestCycleCadence:
    def test_slow_schedule_is_healthy_within_its_interval(self, db_path, clock, seeded):
        config = AppConfig(
            database=DatabaseConfig(db_path=db_path),
            logging=LoggingConfig(log_file=""),
            scheduler=SchedulerConfig(recalc_interval_seconds=900),
        )
        orchestrator = Orchestrator(config=config, clock=clock)
        orchestrator.run_cycle()

        clock.advance(seconds=899)
        health = {r.name: r for r in orchestrator.tracker.health()}

        assert health[RECALC_JOB].expected_interval_ms == 900_000
        assert health[RECALC_JOB].status == "healthy"
        assert health["recommendation-generation"].status == "healthy"

        clock.advance(seconds=2)
        assert orchestrator.tracker.record_for(RECALC_JOB).status == "warning"


class TestWeatherAlerts:
    def test_alert_level_lands_in_context(self, app_config, clock, seeded):
        orchestrator = Orchestrator(
            config=app_config, clock=clock, alert_levels=lambda: {"kochi": "watch"},
        )
        orchestrator.run_cycle()

        with get_connection(app_config.database.db_path) as conn:
            pending = RecommendationRepository(conn).list_by_status("pending")

        assert pending
        assert {r.context.weather_alert_level for r in pending} == {"watch"}

    def test_without_provider_level_is_null(self, orchestrator, seeded, app_config):
        orchestrator.run_cycle()
        with get_connection(app_config.database.db_path) as conn:
            pending = RecommendationRepository(conn).list_by_status("pending")
        assert {r.context.weather_alert_level for r in pending} == {None}

    def test_failing_provider_drops_context_only(self, app_config, clock, seeded):
        def feed_down():
            raise ConnectionError("alerts feed timed out")

        orchestrator = Orchestrator(config=app_config, clock=clock, alert_levels=feed_down)
        result = orchestrator.run_cycle()

        assert result.status == "success"
        assert result.recommendations_created == 2
