"""
Tests for relief_engine/prioritization/scorer.py.

What we test
------------
Individual terms:
  - age_term saturates towards age_cap and is 0 at age 0.
  - proximity_term: 100 at the door, 50 at proximity_scale_km.
  - hub_capacity_term / supply_pressure_term reference points.

score_requests():
  - Older requests outrank newer ones, all else equal, at every sampled age.
  - Unreadable created_at → age 0 and degraded.
  - Malformed coordinates → neutral proximity and degraded; absent
    coordinates → neutral proximity, not degraded.
  - The nearest hub stocking the inferred type is preferred.
  - Rationale names the dominant factor.
  - Closed requests are not scored; output is deterministic.
"""

from __future__ import annotations

import itertools
import math
from datetime import datetime, timezone

import pytest

from relief_engine.config import ScoringConfig
from relief_engine.models.demand import DemandCell
from relief_engine.prioritization.scorer import (
    age_term,
    hub_capacity_term,
    proximity_term,
    score_requests,
    supply_pressure_term,
)

NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
CFG = ScoringConfig()


def _ids():
    counter = itertools.count(1)
    return lambda: f"snap-{next(counter)}"


def _score_one(request, warehouses=(), resources=(), cells=(), cfg=CFG):
    [snap] = score_requests([request], warehouses, resources, cells, cfg, NOW, id_factory=_ids())
    return snap


# ── Terms ─────────────────────────────────────────────────────────────────────

class TestTerms:
    def test_age_reference_points(self):
        assert age_term(0.0, CFG) == 0.0
        assert age_term(1.0, CFG) == pytest.approx(8.0, abs=0.05)
        assert age_term(12.0, CFG) == pytest.approx(63.2, abs=0.05)
        assert age_term(10_000.0, CFG) == pytest.approx(CFG.age_cap)

    def test_age_never_negative(self):
        assert age_term(-5.0, CFG) == 0.0

    def test_proximity_reference_points(self):
        assert proximity_term(0.0, CFG) == 100.0
        assert proximity_term(25.0, CFG) == pytest.approx(50.0)

    def test_hub_capacity(self):
        assert hub_capacity_term(0.0) == 100.0
        assert hub_capacity_term(0.25) == pytest.approx(75.0)
        assert hub_capacity_term(1.5) == 0.0

    def test_supply_pressure(self):
        assert supply_pressure_term(0.0) == 0.0
        assert supply_pressure_term(1.0) == pytest.approx(50.0)
        assert supply_pressure_term(5.0) == pytest.approx(83.33, abs=0.01)


# ── Batch scoring ─────────────────────────────────────────────────────────────

class TestAgeOrdering:
    def test_older_scores_strictly_higher(self, make_request):
        scores = [
            _score_one(make_request(1, hours_ago=h)).score
            for h in (0, 1, 3, 6, 12, 24)
        ]
        assert scores == sorted(scores)
        assert len(set(scores)) == len(scores)

    def test_older_ranked_first(self, make_request):
        ranked = score_requests(
            [make_request(1, hours_ago=1), make_request(2, hours_ago=6)],
            [], [], [], CFG, NOW,
        )
        assert [s.request_id for s in ranked] == [2, 1]


class TestDegradedInputs:
    def test_unreadable_created_at(self, make_request):
        snap = _score_one(make_request(1, hours_ago=None))
        assert snap.degraded is True
        assert snap.age_weight == 0.0
        assert "creation time unreadable" in snap.rationale

    def test_nan_latitude_neutral_proximity(self, make_request):
        snap = _score_one(make_request(1, latitude=math.nan))
        assert snap.degraded is True
        assert snap.proximity_weight == CFG.neutral_proximity
        assert snap.nearest_warehouse_id is None

    def test_half_present_coordinates(self, make_request):
        snap = _score_one(make_request(1, longitude=None))
        assert snap.degraded is True
        assert snap.proximity_weight == CFG.neutral_proximity

    def test_out_of_range_latitude(self, make_request):
        snap = _score_one(make_request(1, latitude=123.0))
        assert snap.degraded is True

    def test_absent_coordinates_not_degraded(self, make_request):
        snap = _score_one(make_request(1, latitude=None, longitude=None))
        assert snap.degraded is False
        assert snap.proximity_weight == CFG.neutral_proximity
        assert "no coordinates reported" in snap.rationale

    def test_one_bad_request_does_not_sink_batch(self, make_request):
        ranked = score_requests(
            [make_request(1, latitude=math.inf), make_request(2)],
            [], [], [], CFG, NOW,
        )
        assert {s.request_id for s in ranked} == {1, 2}
        assert [s.degraded for s in sorted(ranked, key=lambda s: s.request_id)] == [True, False]


class TestHubTerms:
    def test_nearest_hub_fills_proximity_and_capacity(self, make_request, make_warehouse, make_resource):
        snap = _score_one(
            make_request(1),
            warehouses=[make_warehouse(1, capacity=100)],
            resources=[make_resource(1, 1, quantity=10)],
        )
        assert snap.nearest_warehouse_id == 1
        assert snap.nearest_warehouse_distance_km == pytest.approx(1.112, abs=0.01)
        assert snap.proximity_weight == pytest.approx(95.74, abs=0.05)
        assert snap.hub_capacity_ratio == pytest.approx(0.1)
        assert snap.hub_capacity_weight == pytest.approx(90.0)

    def test_uncapped_hub_is_neutral(self, make_request, make_warehouse, make_resource):
        snap = _score_one(
            make_request(1),
            warehouses=[make_warehouse(1, capacity=0)],
            resources=[make_resource(1, 1)],
        )
        assert snap.hub_capacity_ratio is None
        assert snap.hub_capacity_weight == CFG.neutral_hub_capacity

    def test_prefers_hub_stocking_the_type(self, make_request, make_warehouse, make_resource):
        near = make_warehouse(1)
        far = make_warehouse(2, latitude=10.2)
        snap = _score_one(
            make_request(1, details="Need drinking water"),
            warehouses=[near, far],
            resources=[
                make_resource(1, 1, resource_type="food", quantity=50),
                make_resource(2, 2, resource_type="water", quantity=5),
            ],
        )
        assert snap.nearest_warehouse_id == 2

    def test_falls_back_to_any_stocked_hub(self, make_request, make_warehouse, make_resource):
        snap = _score_one(
            make_request(1, details="Need drinking water"),
            warehouses=[make_warehouse(1), make_warehouse(2, latitude=10.2)],
            resources=[make_resource(1, 2, resource_type="food", quantity=5)],
        )
        assert snap.nearest_warehouse_id == 2


class TestSupplyPressureAndRationale:
    def _cell(self, pending=5, inventory=0):
        return DemandCell(
            region="kochi",
            resource_type="water",
            request_count=pending,
            pending_count=pending,
            inventory_available=inventory,
            demand_pressure=pending / max(1, inventory),
        )

    def test_matching_cell_sets_supply_term(self, make_request):
        snap = _score_one(make_request(1), cells=[self._cell()])
        assert snap.supply_pressure_weight == pytest.approx(83.33, abs=0.01)

    def test_no_cell_is_neutral(self, make_request):
        snap = _score_one(make_request(1), cells=[])
        assert snap.supply_pressure_weight == CFG.neutral_supply_pressure

    def test_rationale_names_dominant_factor(self, make_request):
        snap = _score_one(make_request(1, latitude=None, longitude=None), cells=[self._cell()])
        assert snap.rationale.startswith("Supply pressure dominates")
        assert "5 pending vs 0 in stock" in snap.rationale

    def test_zero_weights(self, make_request):
        cfg = ScoringConfig(
            age_weight=0, proximity_weight=0, hub_capacity_weight=0, supply_pressure_weight=0,
        )
        snap = _score_one(make_request(1), cfg=cfg)
        assert snap.score == 0
        assert snap.rationale.startswith("No urgency signal")

    def test_score_scale(self, make_request):
        base = _score_one(make_request(1, latitude=None, longitude=None))
        doubled = _score_one(
            make_request(1, latitude=None, longitude=None), cfg=ScoringConfig(score_scale=2.0),
        )
        assert abs(doubled.score - 2 * base.score) <= 1


class TestBatch:
    def test_closed_requests_skipped(self, make_request):
        ranked = score_requests(
            [make_request(1, status="fulfilled"), make_request(2, status="in_progress")],
            [], [], [], CFG, NOW,
        )
        assert [s.request_id for s in ranked] == [2]

    def test_snapshot_fields(self, make_request):
        snap = _score_one(make_request(7, location="Aluva, Ernakulam"))
        assert snap.snapshot_id == "snap-1"
        assert snap.region == "aluva"
        assert snap.resource_type == "water"
        assert snap.scored_at == NOW
        assert snap.recommendation_id is None

    def test_deterministic(self, make_request, make_warehouse, make_resource):
        requests = [make_request(i, hours_ago=i % 3) for i in range(1, 8)]
        args = ([make_warehouse(1)], [make_resource(1, 1)], [], CFG, NOW)

        first = score_requests(requests, *args, id_factory=_ids())
        second = score_requests(list(reversed(requests)), *args, id_factory=_ids())

        assert [(s.request_id, s.score) for s in first] == [(s.request_id, s.score) for s in second]
