"""
Demand-signal aggregation: open requests + inventory → pressure cells.

Usage flow
----------
1. aggregate_demand(requests, resources, warehouses, now, bucket_minutes)
   -> DemandAggregate  (complete replacement cell set + one timeline point)

2. DemandTimeline.append(aggregate.timeline_point)
   -> bounded trend ring, oldest bucket evicted

Pressure for a (region, resource_type) cell is
``pending_count / max(1, inventory_available)``.  Cells exist only for pairs
with at least one open request; inventory-only pairs still contribute to
``inventory_by_region`` and ``inventory_by_cell``, which the scorer and
generator read.

``aggregate_demand`` is pure.  Repository failures are raised before it is
called, by the pipeline stage that gathers its inputs.
"""

from __future__ import annotations

import statistics
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from relief_engine.demand.regions import infer_resource_type, normalize_region
from relief_engine.models.demand import DemandCell, DemandTimelinePoint
from relief_engine.models.domain import Resource, RescueRequest, Warehouse
from relief_engine.utils.time_utils import align_to_bucket, minutes_between

CellKey = tuple[str, str]


@dataclass(frozen=True)
class DemandAggregate:
    """Output of one aggregation pass.

    Attributes:
        cells:               Cells sorted by pressure desc, then region, then type.
        timeline_point:      System-wide point for the current bucket.
        inventory_by_region: Total units held per region, all types.
        inventory_by_cell:   Units held per (region, resource_type), including
                             pairs with no open requests.
        open_request_count:  Requests that contributed to the cells.
        computed_at:         The ``now`` the pass was computed for.
    """

    cells:               tuple[DemandCell, ...]
    timeline_point:      DemandTimelinePoint
    inventory_by_region: dict[str, int] = field(default_factory=dict)
    inventory_by_cell:   dict[CellKey, int] = field(default_factory=dict)
    open_request_count:  int = 0
    computed_at:         Optional[datetime] = None

    def cell_for(self, region: str, resource_type: str) -> Optional[DemandCell]:
        for cell in self.cells:
            if cell.region == region and cell.resource_type == resource_type:
                return cell
        return None

    def cell_index(self) -> dict[CellKey, DemandCell]:
        return {cell.key: cell for cell in self.cells}


def compute_pressure(pending_count: int, inventory_available: int) -> float:
    """``pending / max(1, inventory)``; never negative."""
    return max(0, pending_count) / max(1, inventory_available)


def aggregate_demand(
    requests:       Iterable[RescueRequest],
    resources:      Iterable[Resource],
    warehouses:     Iterable[Warehouse],
    now:            datetime,
    bucket_minutes: int = 60,
) -> DemandAggregate:
    """Bucket open requests and inventory into demand-pressure cells.

    Args:
        requests:       Requests of any status; only pending/in_progress count.
        resources:      All stock lines.
        warehouses:     All warehouses (for attributing stock to a region).
        now:            Reference time for wait computation and bucket alignment.
        bucket_minutes: Timeline bucket width.

    Returns:
        A ``DemandAggregate`` whose cell set fully replaces the previous one.
    """
    region_of_warehouse = {w.warehouse_id: normalize_region(w.location) for w in warehouses}

    inventory_by_cell: dict[CellKey, int] = defaultdict(int)
    inventory_by_region: dict[str, int] = defaultdict(int)
    for res in resources:
        region = region_of_warehouse.get(res.warehouse_id, normalize_region(None))
        inventory_by_cell[(region, res.resource_type)] += res.quantity
        inventory_by_region[region] += res.quantity

    pending: dict[CellKey, int] = defaultdict(int)
    in_progress: dict[CellKey, int] = defaultdict(int)
    waits: dict[CellKey, list[float]] = defaultdict(list)
    all_waits: list[float] = []
    open_count = 0

    for req in requests:
        if not req.is_open:
            continue
        open_count += 1
        key = (normalize_region(req.location), infer_resource_type(req.details))
        if req.status == "pending":
            pending[key] += 1
        else:
            in_progress[key] += 1
        if req.created_at is not None:
            wait = minutes_between(req.created_at, now)
            waits[key].append(wait)
            all_waits.append(wait)

    cells: list[DemandCell] = []
    for key in set(pending) | set(in_progress):
        region, resource_type = key
        inventory = inventory_by_cell.get(key, 0)
        cell_waits = waits.get(key, [])
        cells.append(
            DemandCell(
                region=region,
                resource_type=resource_type,
                request_count=pending[key] + in_progress[key],
                pending_count=pending[key],
                in_progress_count=in_progress[key],
                inventory_available=inventory,
                demand_pressure=compute_pressure(pending[key], inventory),
                median_wait_mins=statistics.median(cell_waits) if cell_waits else None,
            )
        )
    cells.sort(key=lambda c: (-c.demand_pressure, c.region, c.resource_type))

    point = DemandTimelinePoint(
        bucket_start=align_to_bucket(now, bucket_minutes),
        avg_demand_pressure=(
            statistics.fmean(c.demand_pressure for c in cells) if cells else 0.0
        ),
        median_wait_mins=statistics.median(all_waits) if all_waits else None,
        cell_count=len(cells),
    )

    return DemandAggregate(
        cells=tuple(cells),
        timeline_point=point,
        inventory_by_region=dict(inventory_by_region),
        inventory_by_cell=dict(inventory_by_cell),
        open_request_count=open_count,
        computed_at=now,
    )


class DemandTimeline:
    """Bounded ring of timeline points, one per bucket.

    Appending a point for the bucket already at the head replaces it, so two
    cycles inside the same hour leave one point.  Only the orchestrator's
    single-flight cycle appends; readers get immutable tuples via ``points()``.
    """

    def __init__(self, maxlen: int = 48) -> None:
        if maxlen < 1:
            raise ValueError(f"maxlen must be >= 1, got {maxlen}.")
        self._points: deque[DemandTimelinePoint] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._points)

    @property
    def maxlen(self) -> int:
        return self._points.maxlen or 0

    def append(self, point: DemandTimelinePoint) -> None:
        if self._points and self._points[-1].bucket_start == point.bucket_start:
            self._points[-1] = point
        elif self._points and point.bucket_start < self._points[-1].bucket_start:
            # Clock moved backwards (e.g. a replay); keep the ring ordered.
            kept = [p for p in self._points if p.bucket_start != point.bucket_start]
            kept.append(point)
            kept.sort(key=lambda p: p.bucket_start)
            self._points = deque(kept[-self.maxlen:], maxlen=self.maxlen)
        else:
            self._points.append(point)

    def points(self, last: Optional[int] = None) -> tuple[DemandTimelinePoint, ...]:
        """Return the ring oldest-first, optionally only the newest ``last`` points."""
        pts = tuple(self._points)
        if last is not None:
            return pts[-last:] if last > 0 else ()
        return pts
