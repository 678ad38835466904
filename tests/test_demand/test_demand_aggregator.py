"""
Tests for relief_engine/demand/aggregator.py.

What we test
------------
aggregate_demand():
  - Pressure is pending / max(1, inventory): 5 pending with no stock -> 5.0,
    with 10 units in the region -> 0.5.
  - Zero pending (only in-progress) gives zero pressure.
  - Closed requests are ignored; inventory in other regions does not count.
  - Cells are sorted by pressure desc, then region, then type.
  - The timeline point is bucket-aligned and averages cell pressure.
  - Inventory-only pairs appear in inventory_by_cell but not as cells.

DemandTimeline:
  - Same-bucket append replaces the head; ring is bounded.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from relief_engine.demand.aggregator import (
    DemandTimeline,
    aggregate_demand,
    compute_pressure,
)
from relief_engine.models.demand import DemandTimelinePoint

NOW = datetime(2025, 1, 15, 12, 30, 0, tzinfo=timezone.utc)


def _point(hour: int, pressure: float = 1.0) -> DemandTimelinePoint:
    return DemandTimelinePoint(
        bucket_start=datetime(2025, 1, 15, hour, tzinfo=timezone.utc),
        avg_demand_pressure=pressure,
    )


class TestComputePressure:
    def test_no_inventory(self):
        assert compute_pressure(5, 0) == 5.0

    def test_with_inventory(self):
        assert compute_pressure(5, 10) == 0.5

    def test_zero_pending(self):
        assert compute_pressure(0, 10) == 0.0
        assert compute_pressure(0, 0) == 0.0


class TestAggregateDemand:
    def _five_pending(self, make_request):
        return [make_request(i, hours_ago=0) for i in range(1, 6)]

    def test_pressure_without_stock(self, make_request):
        agg = aggregate_demand(self._five_pending(make_request), [], [], NOW)

        [cell] = agg.cells
        assert cell.key == ("kochi", "water")
        assert cell.pending_count == 5
        assert cell.inventory_available == 0
        assert cell.demand_pressure == 5.0

    def test_pressure_with_stock(self, make_request, make_warehouse, make_resource):
        agg = aggregate_demand(
            self._five_pending(make_request),
            [make_resource(1, 1, quantity=10)],
            [make_warehouse(1)],
            NOW,
        )

        cell = agg.cell_for("kochi", "water")
        assert cell.inventory_available == 10
        assert cell.demand_pressure == 0.5

    def test_in_progress_only_has_zero_pressure(self, make_request):
        agg = aggregate_demand([make_request(1, status="in_progress")], [], [], NOW)

        [cell] = agg.cells
        assert cell.request_count == 1
        assert cell.in_progress_count == 1
        assert cell.demand_pressure == 0.0

    def test_closed_requests_ignored(self, make_request):
        agg = aggregate_demand(
            [make_request(1, status="fulfilled"), make_request(2, status="cancelled")],
            [], [], NOW,
        )
        assert agg.cells == ()
        assert agg.open_request_count == 0
        assert agg.timeline_point.avg_demand_pressure == 0.0

    def test_other_region_stock_not_counted(self, make_request, make_warehouse, make_resource):
        agg = aggregate_demand(
            [make_request(1)],
            [make_resource(1, 1, quantity=50)],
            [make_warehouse(1, location="Alappuzha")],
            NOW,
        )
        assert agg.cell_for("kochi", "water").inventory_available == 0
        assert agg.inventory_by_region == {"alappuzha": 50}

    def test_inventory_only_pairs_not_cells(self, make_request, make_warehouse, make_resource):
        agg = aggregate_demand(
            [make_request(1)],
            [make_resource(1, 1, resource_type="food", quantity=7)],
            [make_warehouse(1)],
            NOW,
        )
        assert [c.key for c in agg.cells] == [("kochi", "water")]
        assert agg.inventory_by_cell[("kochi", "food")] == 7

    def test_cells_sorted_by_pressure(self, make_request):
        requests = [
            make_request(1, location="Aluva"),
            make_request(2, location="Thrissur"),
            make_request(3, location="Thrissur"),
            make_request(4, location="Aluva", details="Injuries, need a doctor"),
        ]
        agg = aggregate_demand(requests, [], [], NOW)

        assert [c.key for c in agg.cells] == [
            ("thrissur", "water"),
            ("aluva", "medical kits"),
            ("aluva", "water"),
        ]

    def test_unknown_location_and_details(self, make_request):
        agg = aggregate_demand([make_request(1, location="", details=None)], [], [], NOW)
        assert agg.cells[0].key == ("unknown", "unspecified")

    def test_median_wait(self, make_request):
        agg = aggregate_demand(
            [make_request(1, hours_ago=1), make_request(2, hours_ago=3), make_request(3, hours_ago=None)],
            [], [], NOW,
        )
        assert agg.cells[0].median_wait_mins == pytest.approx(150.0)
        assert agg.timeline_point.median_wait_mins == pytest.approx(150.0)

    def test_timeline_point_bucket_aligned(self, make_request):
        agg = aggregate_demand([make_request(1)], [], [], NOW, bucket_minutes=60)
        assert agg.timeline_point.bucket_start == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        assert agg.timeline_point.cell_count == 1
        assert agg.computed_at == NOW


class TestDemandTimeline:
    def test_same_bucket_replaces_head(self):
        timeline = DemandTimeline(maxlen=5)
        timeline.append(_point(10, 1.0))
        timeline.append(_point(10, 2.0))

        assert len(timeline) == 1
        assert timeline.points()[0].avg_demand_pressure == 2.0

    def test_bounded(self):
        timeline = DemandTimeline(maxlen=3)
        for hour in range(5):
            timeline.append(_point(hour))

        assert [p.bucket_start.hour for p in timeline.points()] == [2, 3, 4]

    def test_out_of_order_point_kept_sorted(self):
        timeline = DemandTimeline(maxlen=5)
        timeline.append(_point(10))
        timeline.append(_point(12))
        timeline.append(_point(11))

        assert [p.bucket_start.hour for p in timeline.points()] == [10, 11, 12]

    def test_points_last(self):
        timeline = DemandTimeline(maxlen=5)
        for hour in range(4):
            timeline.append(_point(hour))

        assert [p.bucket_start.hour for p in timeline.points(last=2)] == [2, 3]
        assert timeline.points(last=0) == ()

    def test_invalid_maxlen(self):
        with pytest.raises(ValueError):
            DemandTimeline(maxlen=0)

    def test_buckets_advance_with_time(self, make_request):
        timeline = DemandTimeline(maxlen=5)
        for offset in (0, 30, 60):
            now = NOW + timedelta(minutes=offset)
            timeline.append(aggregate_demand([make_request(1)], [], [], now).timeline_point)

        assert len(timeline) == 2
