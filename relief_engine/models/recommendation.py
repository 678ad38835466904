"""
Dispatch recommendation models.

A ``Recommendation`` proposes moving ``suggested_quantity`` units of one
resource line from one warehouse towards one rescue request.  It is created
``pending`` by the generator and only ever transitioned to ``applied`` or
``dismissed`` by the applier.  Rows are never deleted.

``RecommendationContext`` freezes the inputs that produced the suggestion so
its rationale can be reproduced after upstream data has moved on.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

RecommendationStatus = Literal["pending", "applied", "dismissed"]
FeedbackAction       = Literal["applied", "dismissed"]

VALID_RECOMMENDATION_STATUSES = frozenset({"pending", "applied", "dismissed"})
VALID_FEEDBACK_ACTIONS        = frozenset({"applied", "dismissed"})


class RecommendationContext(BaseModel):
    """Inputs snapshotted at generation time.  Stored as JSON."""

    model_config = ConfigDict(frozen=True)

    demand_pressure: float = 0.0
    supply_pressure: float = 0.0
    pending_count: int = 0
    inventory_available: int = 0
    avg_inventory: float = 0.0
    weather_alert_level: Optional[str] = None
    hub_capacity_ratio: Optional[float] = None
    age_weight: float = 0.0
    proximity_weight: float = 0.0
    hub_capacity_weight: float = 0.0
    supply_pressure_weight: float = 0.0
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    priority_score: int = 0


class Recommendation(BaseModel):
    """A proposed dispatch from a warehouse stock line to a request.

    Attributes:
        recommendation_id:  Auto-assigned DB PK; ``None`` before insertion.
        request_id:         Target request, or ``None`` for region-level suggestions.
        region:             Normalized region of the target.
        resource_type:      Type of the resource line being dispatched.
        resource_id:        Source stock line.
        warehouse_id:       Warehouse holding the stock line.
        warehouse_name:     Its display name (denormalized for the audit trail).
        suggested_quantity: Units to dispatch; never above stock at generation.
        confidence:         Heuristic trust in the suggestion, in [0, 1].
        lead_time_minutes:  Estimated dispatch time, ``None`` if distance unknown.
        status:             ``pending`` → ``applied`` | ``dismissed``.
        rationale:          Operator-facing explanation.
        context:            Snapshot of the generation inputs.
        impact_score:       Priority score of the target at generation time.
        valid_from:         Start of the suggestion's validity window.
        valid_until:        End of the validity window.
        created_at:         UTC creation time.
        resolved_at:        When it left ``pending``.
        cycle_id:           Orchestrator cycle that generated it.
    """

    model_config = ConfigDict(frozen=True)

    recommendation_id: Optional[int] = None
    request_id: Optional[int] = None
    region: str = "unknown"
    resource_type: str
    resource_id: int
    warehouse_id: int
    warehouse_name: str
    suggested_quantity: int
    confidence: float
    lead_time_minutes: Optional[int] = None
    status: RecommendationStatus = "pending"
    rationale: str
    context: RecommendationContext = RecommendationContext()
    impact_score: float = 0.0
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    cycle_id: Optional[str] = None

    @field_validator("suggested_quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"suggested_quantity must be > 0, got {v}.")
        return v

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {v}.")
        return v

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


class RecommendationFeedback(BaseModel):
    """Operator feedback on a recommendation, kept for weight tuning."""

    model_config = ConfigDict(frozen=True)

    feedback_id: Optional[int] = None
    recommendation_id: int
    action: FeedbackAction
    reason: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime


class DistributionLogEntry(BaseModel):
    """One stock movement written by the applier.

    Attributes:
        log_id:            Auto-assigned DB PK.
        resource_id:       Stock line that was decremented.
        warehouse_id:      Warehouse it left.
        quantity:          Units moved.
        destination:       Request location text.
        request_id:        Linked request, if any.
        recommendation_id: Recommendation that caused the movement.
        created_at:        UTC time of the movement.
    """

    model_config = ConfigDict(frozen=True)

    log_id: Optional[int] = None
    resource_id: int
    warehouse_id: int
    quantity: int
    destination: Optional[str] = None
    request_id: Optional[int] = None
    recommendation_id: Optional[int] = None
    created_at: datetime
