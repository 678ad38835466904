"""
Demand-signal output models.

``DemandCell`` is one (region, resource_type) bucket of the current demand
heatmap.  The whole cell set is rebuilt every aggregation cycle and replaces
the previous one.

``DemandTimelinePoint`` is one bucket of the system-wide trend line.  Points
are kept in a bounded ring by ``demand.aggregator.DemandTimeline``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class DemandCell(BaseModel):
    """Demand pressure for one (region, resource_type) pair.

    Attributes:
        region:              Normalized region key.
        resource_type:       Resource type, or ``"unspecified"``.
        request_count:       Open requests in the cell (pending + in_progress).
        pending_count:       Pending requests in the cell.
        in_progress_count:   In-progress requests in the cell.
        inventory_available: Units of this type held in the region's warehouses.
        demand_pressure:     ``pending_count / max(1, inventory_available)``.
        median_wait_mins:    Median age of the cell's open requests, or ``None``.
    """

    model_config = ConfigDict(frozen=True)

    region: str
    resource_type: str
    request_count: int = 0
    pending_count: int = 0
    in_progress_count: int = 0
    inventory_available: int = 0
    demand_pressure: float = 0.0
    median_wait_mins: Optional[float] = None

    @field_validator("demand_pressure")
    @classmethod
    def validate_pressure(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"demand_pressure must be >= 0, got {v}.")
        return v

    @property
    def key(self) -> tuple[str, str]:
        return (self.region, self.resource_type)


class DemandTimelinePoint(BaseModel):
    """System-wide demand trend for one aligned bucket.

    Attributes:
        bucket_start:        Bucket start (UTC, aligned to the bucket width).
        avg_demand_pressure: Mean pressure across all cells at that instant.
        median_wait_mins:    Median age of all open requests, or ``None``.
        cell_count:          Number of cells that contributed to the mean.
    """

    model_config = ConfigDict(frozen=True)

    bucket_start: datetime
    avg_demand_pressure: float = 0.0
    median_wait_mins: Optional[float] = None
    cell_count: int = 0
