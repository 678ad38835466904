"""
Wire schemas for the HTTP API.

Response models subclass the domain models and only add a camelCase alias
generator, so a field added to a domain model shows up on the wire without
touching this module.  Request bodies accept both camelCase and snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from relief_engine.models.demand import DemandCell, DemandTimelinePoint
from relief_engine.models.priority import PrioritySnapshot
from relief_engine.models.recommendation import Recommendation, RecommendationContext
from relief_engine.models.scheduler import SchedulerHealthRecord

_CAMEL = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class CamelModel(BaseModel):
    model_config = _CAMEL


# ── Responses ─────────────────────────────────────────────────────────────────

class PriorityOut(PrioritySnapshot):
    model_config = _CAMEL

    rank: int


class RecommendationContextOut(RecommendationContext):
    model_config = _CAMEL


class RecommendationOut(Recommendation):
    model_config = _CAMEL

    context: RecommendationContextOut = RecommendationContextOut()


class RecommendationListOut(CamelModel):
    recommendations: list[RecommendationOut]


class ActionResultOut(CamelModel):
    recommendation_id: int
    status: str
    resource_id: Optional[int] = None
    quantity: Optional[int] = None
    remaining: Optional[int] = None
    log_id: Optional[int] = None
    feedback_id: Optional[int] = None


class FeedbackOut(CamelModel):
    recommendation_id: int
    action: str
    feedback_id: Optional[int] = None
    recorded: bool


class RecalculateOut(CamelModel):
    status: Literal["started", "coalesced"]


class DemandCellOut(DemandCell):
    model_config = _CAMEL


class TimelinePointOut(DemandTimelinePoint):
    model_config = _CAMEL


class DemandInsightsOut(CamelModel):
    latest_bucket_start: Optional[datetime] = None
    heatmap: list[DemandCellOut]
    timeline: list[TimelinePointOut]


class SchedulerHealthOut(SchedulerHealthRecord):
    model_config = _CAMEL


class SchedulerHealthListOut(CamelModel):
    schedulers: list[SchedulerHealthOut]
    generated_at: datetime


class ErrorOut(CamelModel):
    error: str
    message: str


# ── Requests ──────────────────────────────────────────────────────────────────

class ApplyIn(CamelModel):
    actor: Optional[str] = None
    note: Optional[str] = None


class DismissIn(CamelModel):
    reason: Optional[str] = None
    actor: Optional[str] = None


class FeedbackIn(CamelModel):
    # Validated by the route so an unknown action is a 400, not a 422.
    action: str
    note: Optional[str] = None
    actor: Optional[str] = None
