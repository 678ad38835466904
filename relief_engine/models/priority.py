"""
Priority queue entry model.

A ``PrioritySnapshot`` is created fresh for every open request on every
scoring cycle.  Snapshots are never mutated in place: the orchestrator builds
a complete new ranking and swaps it in as a whole.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PrioritySnapshot(BaseModel):
    """Explainable priority score for one open rescue request.

    Attributes:
        snapshot_id:                    UUID4 string, unique per cycle entry.
        request_id:                     Request being ranked.
        score:                          Integer composite score; higher = more urgent.
        rationale:                      Templated sentence naming the dominant factor.
        age_weight:                     0–100 waiting-time term.
        proximity_weight:               0–100 distance-to-stock term.
        hub_capacity_weight:            0–100 nearest-hub depletion term.
        supply_pressure_weight:         0–100 regional demand-pressure term.
        nearest_warehouse_id:           Nearest stocked hub, if any has geodata.
        nearest_warehouse_name:         Its display name.
        nearest_warehouse_distance_km:  Great-circle distance to it.
        hub_capacity_ratio:             Hub stock / capacity (``None`` if uncapped).
        recommendation_id:              Pending recommendation for the request, if any.
        region:                         Normalized region of the request.
        resource_type:                  Inferred resource type.
        request_created_at:             Request creation time (tie-break key).
        scored_at:                      Cycle timestamp.
        degraded:                       True if any term fell back to neutral
                                        because of malformed input.
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: str
    request_id: int
    score: int
    rationale: str
    age_weight: float
    proximity_weight: float
    hub_capacity_weight: float
    supply_pressure_weight: float
    nearest_warehouse_id: Optional[int] = None
    nearest_warehouse_name: Optional[str] = None
    nearest_warehouse_distance_km: Optional[float] = None
    hub_capacity_ratio: Optional[float] = None
    recommendation_id: Optional[int] = None
    region: str
    resource_type: str
    request_created_at: Optional[datetime] = None
    scored_at: datetime
    degraded: bool = False
