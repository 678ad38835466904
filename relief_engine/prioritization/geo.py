"""
Great-circle distance and nearest-hub selection.

The selection rule is total and deterministic: among candidates, the
nearest wins, then the one with more stock, then the lowest warehouse id.
Iteration order of the inputs never affects the result.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from relief_engine.errors import PartialInputError
from relief_engine.models.domain import Warehouse

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class HubCandidate:
    """A warehouse considered as a source, with the stock that qualifies it."""

    warehouse: Warehouse
    stock:     int


@dataclass(frozen=True)
class NearestHub:
    """Winner of ``nearest_hub()``.

    Attributes:
        warehouse:   The selected warehouse.
        distance_km: Haversine distance from the query point.
        stock:       The qualifying stock (type stock or total, per tier).
    """

    warehouse:   Warehouse
    distance_km: float
    stock:       int


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS-84 points, in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def valid_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    """True if both values are present, finite and inside WGS-84 ranges."""
    if lat is None or lon is None:
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def require_coordinates(
    lat: Optional[float], lon: Optional[float], entity: str
) -> Optional[tuple[float, float]]:
    """Return ``(lat, lon)``, ``None`` if both are absent.

    Raises:
        PartialInputError: If the coordinates are half-present, non-finite or
            out of range.
    """
    if lat is None and lon is None:
        return None
    if not valid_coordinates(lat, lon):
        raise PartialInputError(f"{entity} has malformed coordinates ({lat!r}, {lon!r})")
    assert lat is not None and lon is not None
    return (lat, lon)


def nearest_hub(
    lat: float,
    lon: float,
    candidates: Iterable[HubCandidate],
) -> Optional[NearestHub]:
    """Pick the nearest candidate with usable geodata.

    Candidates whose warehouse lacks valid coordinates are ignored.

    Returns:
        The winning ``NearestHub``, or ``None`` if no candidate has geodata.
    """
    ranked: list[NearestHub] = []
    for cand in candidates:
        wh = cand.warehouse
        if not valid_coordinates(wh.latitude, wh.longitude):
            continue
        assert wh.latitude is not None and wh.longitude is not None
        ranked.append(
            NearestHub(
                warehouse=wh,
                distance_km=haversine_km(lat, lon, wh.latitude, wh.longitude),
                stock=cand.stock,
            )
        )
    if not ranked:
        return None
    return min(ranked, key=lambda h: (h.distance_km, -h.stock, h.warehouse.warehouse_id))
