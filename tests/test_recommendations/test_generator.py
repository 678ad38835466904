"""
Tests for relief_engine/recommendations/generator.py.

What we test
------------
- suggested_quantity never exceeds the stock line, and quantities handed
  out earlier in the same batch are reserved.
- Requests with a pending recommendation are skipped; top_k bounds the batch.
- The nearest warehouse stocking the inferred type is the source; when no
  line of that type exists the most abundant line of the nearest stocked
  warehouse is substituted and the rationale says so.
- No stock anywhere → no recommendation.
- Lead time, validity window, confidence bounds and context snapshot.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from relief_engine.config import RecommendationConfig, ScoringConfig
from relief_engine.models.demand import DemandCell
from relief_engine.prioritization.scorer import score_requests
from relief_engine.recommendations.generator import (
    compute_confidence,
    compute_lead_time,
    generate_recommendations,
)

NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
CFG = RecommendationConfig()


def _generate(requests, warehouses, resources, cells=(), pending=frozenset(), config=CFG, **kwargs):
    ranked = score_requests(requests, warehouses, resources, cells, ScoringConfig(), NOW)
    return generate_recommendations(
        ranked, requests, warehouses, resources, cells, pending, NOW, config, **kwargs,
    )


class TestQuantities:
    def test_quantity_capped_by_stock(self, make_request, make_warehouse, make_resource):
        [rec] = _generate(
            [make_request(1, people_count=12)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=8)],
        )
        assert rec.suggested_quantity == 8

    def test_quantity_matches_people(self, make_request, make_warehouse, make_resource):
        [rec] = _generate(
            [make_request(1, people_count=3)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=8)],
        )
        assert rec.suggested_quantity == 3

    def test_batch_reserves_stock(self, make_request, make_warehouse, make_resource):
        recs = _generate(
            [make_request(1, hours_ago=5, people_count=6), make_request(2, hours_ago=1, people_count=6)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=8)],
        )
        assert [(r.request_id, r.suggested_quantity) for r in recs] == [(1, 6), (2, 2)]
        assert sum(r.suggested_quantity for r in recs) <= 8

    def test_exhausted_line_yields_nothing(self, make_request, make_warehouse, make_resource):
        recs = _generate(
            [make_request(1, hours_ago=5, people_count=4), make_request(2, hours_ago=1)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=4)],
        )
        assert [r.request_id for r in recs] == [1]


class TestSelection:
    def test_pending_requests_skipped(self, make_request, make_warehouse, make_resource):
        recs = _generate(
            [make_request(1, hours_ago=5), make_request(2)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=50)],
            pending={1},
        )
        assert [r.request_id for r in recs] == [2]

    def test_top_k_bounds_batch(self, make_request, make_warehouse, make_resource):
        recs = _generate(
            [make_request(i, hours_ago=i) for i in range(1, 5)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=100)],
            config=RecommendationConfig(top_k=2),
        )
        assert [r.request_id for r in recs] == [4, 3]

    def test_nearest_matching_warehouse(self, make_request, make_warehouse, make_resource):
        [rec] = _generate(
            [make_request(1)],
            [make_warehouse(1, latitude=10.3), make_warehouse(2)],
            [make_resource(1, 1, quantity=50), make_resource(2, 2, quantity=5)],
        )
        assert rec.warehouse_id == 2
        assert rec.resource_id == 2
        assert rec.warehouse_name == "Depot 2"

    def test_fallback_to_most_abundant_line(self, make_request, make_warehouse, make_resource):
        [rec] = _generate(
            [make_request(1, details="Need drinking water")],
            [make_warehouse(1), make_warehouse(2, latitude=10.3)],
            [
                make_resource(1, 1, resource_type="food", quantity=5),
                make_resource(2, 1, resource_type="blankets", quantity=20),
                make_resource(3, 2, resource_type="food", quantity=500),
            ],
        )
        assert rec.warehouse_id == 1
        assert rec.resource_id == 2
        assert rec.resource_type == "blankets"
        assert "no water in stock" in rec.rationale

    def test_no_stock_anywhere(self, make_request, make_warehouse, make_resource):
        recs = _generate(
            [make_request(1)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=0)],
        )
        assert recs == []

    def test_requests_without_coordinates(self, make_request, make_warehouse, make_resource):
        [rec] = _generate(
            [make_request(1, latitude=None, longitude=None)],
            [make_warehouse(1)],
            [make_resource(1, 1)],
        )
        assert rec.lead_time_minutes is None
        assert rec.context.distance_km is None
        assert "distance unknown" in rec.rationale


class TestFields:
    def test_recommendation_fields(self, make_request, make_warehouse, make_resource):
        cell = DemandCell(
            region="kochi", resource_type="water", request_count=1,
            pending_count=1, inventory_available=10, demand_pressure=0.1,
        )
        [rec] = _generate(
            [make_request(1)],
            [make_warehouse(1)],
            [make_resource(1, 1, quantity=10)],
            cells=[cell],
            cycle_id="cycle-1",
            alert_levels={"kochi": "orange"},
        )

        assert rec.status == "pending"
        assert rec.recommendation_id is None
        assert rec.region == "kochi"
        assert rec.cycle_id == "cycle-1"
        assert rec.created_at == NOW
        assert rec.valid_from == NOW
        assert rec.valid_until == NOW + timedelta(minutes=CFG.validity_minutes)
        assert rec.lead_time_minutes == 22
        assert 0.05 <= rec.confidence <= 0.99
        assert rec.context.pending_count == 1
        assert rec.context.inventory_available == 10
        assert rec.context.weather_alert_level == "orange"
        assert rec.context.priority_score > 0
        assert rec.rationale.startswith("Dispatch 4 water from Depot 1")


class TestHeuristics:
    def test_lead_time(self):
        assert compute_lead_time(None, CFG) is None
        assert compute_lead_time(0.0, CFG) == CFG.handling_minutes
        assert compute_lead_time(40.0, CFG) == 60 + CFG.handling_minutes

    def test_confidence_prefers_close_and_stocked(self):
        near_full = compute_confidence(1.0, 100, 1)
        far_full = compute_confidence(200.0, 100, 1)
        near_drained = compute_confidence(1.0, 1, 1)
        assert near_full > far_full
        assert near_full > near_drained

    @pytest.mark.parametrize("distance, stock, qty", [
        (None, 0, 1), (0.0, 1000, 1), (10_000.0, 1, 1),
    ])
    def test_confidence_bounds(self, distance, stock, qty):
        assert 0.05 <= compute_confidence(distance, stock, qty) <= 0.99
