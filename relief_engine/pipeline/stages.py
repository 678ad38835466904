"""
The three stages of a priority-recalculation cycle.

  DemandAggregationStage       reads requests, warehouses and resources,
                               builds the demand cells and timeline point.
  PriorityScoringStage         scores and ranks every open request.
  RecommendationGenerationStage proposes and persists dispatches for the
                               top-ranked requests.

The aggregation stage is the only one that reads the relief application's
tables; the later stages reuse its ``CycleInputs`` so one cycle works on one
consistent view of the data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from relief_engine.db.repositories.recommendation_repo import RecommendationRepository
from relief_engine.db.repositories.relief_repo import (
    RescueRequestRepository,
    ResourceRepository,
    WarehouseRepository,
)
from relief_engine.demand.aggregator import DemandAggregate, aggregate_demand
from relief_engine.models.domain import Resource, RescueRequest, Warehouse
from relief_engine.models.meta import RunMetadata
from relief_engine.models.priority import PrioritySnapshot
from relief_engine.models.recommendation import Recommendation
from relief_engine.pipeline.base import PipelineStage
from relief_engine.prioritization.scorer import score_requests
from relief_engine.recommendations.generator import generate_recommendations

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleInputs:
    """The read-model view one cycle works on."""

    requests:   tuple[RescueRequest, ...]
    warehouses: tuple[Warehouse, ...]
    resources:  tuple[Resource, ...]


@dataclass(frozen=True)
class AggregationOutput:
    inputs:    CycleInputs
    aggregate: DemandAggregate


class DemandAggregationStage(PipelineStage[AggregationOutput]):
    """Read the relief tables and bucket demand into pressure cells.

    Raises ``DataUnavailableError`` if any source cannot be read.
    """

    stage_name = "demand_aggregation"
    job_name   = "demand-aggregation"

    def _execute(self, run: RunMetadata, now: datetime, **kwargs) -> tuple[int, AggregationOutput]:
        with self._connect() as conn:
            requests   = RescueRequestRepository(conn).list_open()
            warehouses = WarehouseRepository(conn).list_all()
            resources  = ResourceRepository(conn).list_all()

        aggregate = aggregate_demand(
            requests, resources, warehouses, now,
            bucket_minutes=self.config.demand.bucket_minutes,
        )
        logger.info(
            "Aggregated %d open request(s) into %d cell(s) | avg_pressure=%.3f",
            aggregate.open_request_count,
            len(aggregate.cells),
            aggregate.timeline_point.avg_demand_pressure,
        )
        inputs = CycleInputs(tuple(requests), tuple(warehouses), tuple(resources))
        return len(aggregate.cells), AggregationOutput(inputs=inputs, aggregate=aggregate)


class PriorityScoringStage(PipelineStage[list[PrioritySnapshot]]):
    """Score every open request against the cycle's demand cells."""

    stage_name = "priority_scoring"
    job_name   = "priority-scoring"

    def _execute(
        self,
        run: RunMetadata,
        inputs: CycleInputs,
        aggregate: DemandAggregate,
        now: datetime,
        **kwargs,
    ) -> tuple[int, list[PrioritySnapshot]]:
        ranked = score_requests(
            inputs.requests,
            inputs.warehouses,
            inputs.resources,
            aggregate.cells,
            self.config.scoring,
            now,
        )
        degraded = sum(1 for s in ranked if s.degraded)
        if degraded:
            logger.warning("%d request(s) scored with degraded inputs.", degraded)
        return len(ranked), ranked


class RecommendationGenerationStage(PipelineStage[list[Recommendation]]):
    """Propose dispatches for the top-K requests and persist them.

    Requests that already carry a pending recommendation are skipped; the
    partial unique index guards against a concurrent writer doing the same.
    ``alert_levels`` (region → weather alert level) only feeds the context.
    """

    stage_name = "recommendation_generation"
    job_name   = "recommendation-generation"

    def _execute(
        self,
        run: RunMetadata,
        inputs: CycleInputs,
        aggregate: DemandAggregate,
        ranked: list[PrioritySnapshot],
        now: datetime,
        cycle_id: Optional[str] = None,
        alert_levels: Optional[Mapping[str, str]] = None,
        **kwargs,
    ) -> tuple[int, list[Recommendation]]:
        with self._connect() as conn:
            repo = RecommendationRepository(conn)
            pending = set(repo.pending_by_request())

            proposals = generate_recommendations(
                ranked,
                inputs.requests,
                inputs.warehouses,
                inputs.resources,
                aggregate.cells,
                pending,
                now,
                self.config.recommendations,
                cycle_id=cycle_id or run.cycle_id,
                alert_levels=alert_levels,
            )

            persisted: list[Recommendation] = []
            for rec in proposals:
                rec_id = repo.insert_if_absent(rec)
                if rec_id is not None:
                    persisted.append(rec.model_copy(update={"recommendation_id": rec_id}))

        skipped = len(proposals) - len(persisted)
        if skipped:
            logger.info("%d proposal(s) superseded by a concurrent pending recommendation.", skipped)
        return len(persisted), persisted
