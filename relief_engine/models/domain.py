"""
Read models for the entities the engine consumes but does not own.

``RescueRequest``, ``Warehouse`` and ``Resource`` mirror the rows of the
surrounding relief application.  The engine reads them every cycle and only
ever writes one field back: ``Resource.quantity``, via the guarded decrement
in the recommendation applier.

Coordinates are deliberately *not* range-validated here.  A request with a
garbage latitude still has to be ranked; ``prioritization.geo`` rejects the
coordinates per entity and the scorer degrades that single request to
neutral proximity instead of failing the whole batch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

RequestStatus   = Literal["pending", "in_progress", "fulfilled", "cancelled"]
RequestPriority = Literal["low", "medium", "high"]

OPEN_REQUEST_STATUSES: frozenset[str] = frozenset({"pending", "in_progress"})


class RescueRequest(BaseModel):
    """A request for help from people in an affected area.

    Attributes:
        request_id:   PK in the relief application.
        location:     Free-text location, e.g. ``"Kochi, Ernakulam"``.  The
                      first comma-separated segment is the region.
        latitude:     Optional WGS-84 latitude.
        longitude:    Optional WGS-84 longitude.
        status:       Lifecycle status; only pending/in_progress are scored.
        priority:     Reporter-assigned urgency.
        people_count: People affected (>= 1).
        details:      Free-text description used to infer the resource type.
        created_at:   UTC creation time; ``None`` when the stored value is
                      unreadable (the scorer then degrades the age term).
        updated_at:   UTC last update time.
    """

    model_config = ConfigDict(frozen=True)

    request_id: int
    location: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: RequestStatus = "pending"
    priority: RequestPriority = "medium"
    people_count: int = 1
    details: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("people_count")
    @classmethod
    def validate_people_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"people_count must be >= 1, got {v}.")
        return v

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_REQUEST_STATUSES


class Warehouse(BaseModel):
    """A relief supply hub.

    Attributes:
        warehouse_id:    PK in the relief application.
        name:            Display name.
        location:        Free-text location (region = first segment).
        latitude:        Optional WGS-84 latitude.
        longitude:       Optional WGS-84 longitude.
        capacity:        Rated capacity in stock units; 0 means unknown/uncapped.
        last_audited_at: When stock was last physically audited.
    """

    model_config = ConfigDict(frozen=True)

    warehouse_id: int
    name: str
    location: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    capacity: int = 0
    last_audited_at: Optional[datetime] = None

    @field_validator("capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"capacity must be >= 0, got {v}.")
        return v


class Resource(BaseModel):
    """A stock line held at one warehouse.

    Attributes:
        resource_id:   PK in the relief application.
        resource_type: Lower-cased type, e.g. ``"water"`` or ``"medical kits"``.
        quantity:      Units on hand (>= 0).
        unit:          Unit label, e.g. ``"litres"``.
        reorder_level: Threshold below which the line should be restocked.
        warehouse_id:  FK to the holding warehouse.
    """

    model_config = ConfigDict(frozen=True)

    resource_id: int
    resource_type: str
    quantity: int = 0
    unit: str = "units"
    reorder_level: int = 0
    warehouse_id: int

    @field_validator("resource_type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"quantity must be >= 0, got {v}.")
        return v
