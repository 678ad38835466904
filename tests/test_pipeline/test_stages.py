"""Tests for the PipelineStage contract and the three cycle stages."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from relief_engine.db.connection import get_connection
from relief_engine.db.repositories.recommendation_repo import RecommendationRepository
from relief_engine.db.repositories.run_repo import RunMetadataRepository
from relief_engine.errors import DataUnavailableError
from relief_engine.pipeline.stages import (
    DemandAggregationStage,
    PriorityScoringStage,
    RecommendationGenerationStage,
)


@pytest.fixture
def seeded(seed, make_request, make_warehouse, make_resource):
    seed(
        requests=[
            make_request(1, hours_ago=3),
            make_request(2, hours_ago=1, details="Injured child"),
            make_request(3, status="fulfilled"),
        ],
        warehouses=[make_warehouse(1)],
        resources=[
            make_resource(1, 1, quantity=20),
            make_resource(2, 1, resource_type="medical kits", quantity=2),
        ],
    )


def _runs(db_path, cycle_id):
    with get_connection(db_path) as conn:
        return RunMetadataRepository(conn).get_runs_for_cycle(cycle_id)


class TestDemandAggregationStage:
    def test_reads_and_aggregates(self, app_config, clock, seeded):
        outcome = DemandAggregationStage(config=app_config, clock=clock).run(
            cycle_id="c-1", trigger="cli", now=clock.now(),
        )

        assert outcome.run.status == "success"
        assert outcome.run.rows_processed == 2
        assert len(outcome.output.inputs.requests) == 2
        assert {c.key for c in outcome.output.aggregate.cells} == {
            ("kochi", "water"), ("kochi", "medical kits"),
        }

    def test_run_is_persisted(self, app_config, clock, seeded):
        DemandAggregationStage(config=app_config, clock=clock).run(cycle_id="c-1", now=clock.now())

        [run] = _runs(app_config.database.db_path, "c-1")
        assert run.pipeline_stage == "demand_aggregation"
        assert run.status == "success"
        assert run.config_snapshot["scoring"]["age_weight"] == 1.0

    def test_failure_recorded_and_reraised(self, app_config, clock):
        stage = DemandAggregationStage(config=app_config, clock=clock)
        with patch(
            "relief_engine.pipeline.stages.RescueRequestRepository.list_open",
            side_effect=DataUnavailableError("rescue_requests", "database is locked"),
        ):
            with pytest.raises(DataUnavailableError):
                stage.run(cycle_id="c-2", now=clock.now())

        [run] = _runs(app_config.database.db_path, "c-2")
        assert run.status == "failed"
        assert "rescue_requests" in run.error_message


class TestScoringAndGeneration:
    def _aggregate(self, app_config, clock):
        return DemandAggregationStage(config=app_config, clock=clock).run(now=clock.now()).output

    def test_scoring_ranks_open_requests(self, app_config, clock, seeded):
        agg = self._aggregate(app_config, clock)
        outcome = PriorityScoringStage(config=app_config, clock=clock).run(
            inputs=agg.inputs, aggregate=agg.aggregate, now=clock.now(),
        )
        assert sorted(s.request_id for s in outcome.output) == [1, 2]
        assert outcome.run.rows_processed == 2

    def test_generation_persists_with_ids(self, app_config, clock, seeded):
        agg = self._aggregate(app_config, clock)
        ranked = PriorityScoringStage(config=app_config, clock=clock).run(
            inputs=agg.inputs, aggregate=agg.aggregate, now=clock.now(),
        ).output

        generation = RecommendationGenerationStage(config=app_config, clock=clock)
        created = generation.run(
            cycle_id="c-3", inputs=agg.inputs, aggregate=agg.aggregate,
            ranked=ranked, now=clock.now(),
        ).output

        assert {r.request_id for r in created} == {1, 2}
        assert all(r.recommendation_id is not None for r in created)
        assert all(r.cycle_id == "c-3" for r in created)

        again = generation.run(
            inputs=agg.inputs, aggregate=agg.aggregate, ranked=ranked, now=clock.now(),
        ).output
        assert again == []

        with get_connection(app_config.database.db_path) as conn:
            assert len(RecommendationRepository(conn).list_by_status("pending")) == 2
