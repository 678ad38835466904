"""
Recommendation generator: turns the top of the priority queue into concrete
dispatch proposals.

Usage flow
----------
1. generate_recommendations(ranked, requests, warehouses, resources, cells,
                            pending_request_ids, now, config)
   -> list[Recommendation]  (pending, not yet persisted)

2. RecommendationRepository.insert_if_absent(rec) for each
   (done by ``pipeline.stages.RecommendationGenerationStage``)

Source selection (total, deterministic)
---------------------------------------
Candidates are stock lines with positive quantity of the request's inferred
resource type.  If none exist, every stock line with positive quantity is a
candidate instead (the nearest warehouse's most abundant line wins).
Candidates are ordered by:

    1. warehouse distance ascending (warehouses without geodata last)
    2. quantity descending
    3. resource_id ascending

Quantities handed out earlier in the same batch are subtracted from the
working stock, so one batch never proposes more than a line holds.

Confidence
----------
    0.5
    + distance term : 0.25 / (1 + d / 50)     (0.25 at the door; 0.10 if unknown)
    + headroom term : 0.20 * (stock - qty) / stock
    clamped to [0.05, 0.99]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional

from relief_engine.config import RecommendationConfig
from relief_engine.demand.regions import UNSPECIFIED_TYPE, infer_resource_type, normalize_region
from relief_engine.models.demand import DemandCell
from relief_engine.models.domain import Resource, RescueRequest, Warehouse
from relief_engine.models.priority import PrioritySnapshot
from relief_engine.models.recommendation import Recommendation, RecommendationContext
from relief_engine.prioritization.geo import haversine_km, valid_coordinates
from relief_engine.prioritization.ranker import top_n

logger = logging.getLogger(__name__)

_DISTANCE_DECAY_KM = 50.0
_MAX_PRESSURE_BOOST = 5.0


@dataclass(frozen=True)
class SourceChoice:
    """The stock line selected to serve a request."""

    resource:    Resource
    warehouse:   Warehouse
    distance_km: Optional[float]
    fallback:    bool


def select_source(
    request:       RescueRequest,
    resource_type: str,
    resources:     Iterable[Resource],
    warehouses:    Mapping[int, Warehouse],
    available:     Mapping[int, int],
) -> Optional[SourceChoice]:
    """Pick the stock line to dispatch from, or ``None`` if nothing is in stock.

    Args:
        request:       Target request.
        resource_type: Inferred type the request needs.
        resources:     All stock lines.
        warehouses:    Warehouses by id.
        available:     Working quantity per resource id for this batch.
    """
    stocked = [
        r for r in resources
        if available.get(r.resource_id, 0) > 0 and r.warehouse_id in warehouses
    ]
    matching = [r for r in stocked if r.resource_type == resource_type]
    fallback = not matching
    candidates = matching or stocked
    if not candidates:
        return None

    origin = (
        (request.latitude, request.longitude)
        if valid_coordinates(request.latitude, request.longitude) else None
    )

    def distance(res: Resource) -> Optional[float]:
        wh = warehouses[res.warehouse_id]
        if origin is None or not valid_coordinates(wh.latitude, wh.longitude):
            return None
        return haversine_km(origin[0], origin[1], wh.latitude, wh.longitude)  # type: ignore[arg-type]

    def sort_key(res: Resource) -> tuple[int, float, int, int]:
        d = distance(res)
        return (
            0 if d is not None else 1,
            d if d is not None else 0.0,
            -available.get(res.resource_id, 0),
            res.resource_id,
        )

    best = min(candidates, key=sort_key)
    return SourceChoice(
        resource=best,
        warehouse=warehouses[best.warehouse_id],
        distance_km=distance(best),
        fallback=fallback,
    )


def compute_confidence(distance_km: Optional[float], stock: int, quantity: int) -> float:
    """Heuristic trust in a proposal: closer and better-stocked is more certain."""
    if distance_km is None:
        distance_term = 0.10
    else:
        distance_term = 0.25 / (1.0 + max(0.0, distance_km) / _DISTANCE_DECAY_KM)
    headroom_term = 0.20 * max(0, stock - quantity) / stock if stock > 0 else 0.0
    return round(_clamp(0.5 + distance_term + headroom_term, 0.05, 0.99), 4)


def compute_lead_time(distance_km: Optional[float], cfg: RecommendationConfig) -> Optional[int]:
    if distance_km is None:
        return None
    return int(round(distance_km / cfg.travel_speed_kph * 60.0 + cfg.handling_minutes))


def generate_recommendations(
    ranked:              list[PrioritySnapshot],
    requests:            Iterable[RescueRequest],
    warehouses:          Iterable[Warehouse],
    resources:           Iterable[Resource],
    cells:               Iterable[DemandCell],
    pending_request_ids: set[int] | frozenset[int],
    now:                 datetime,
    config:              RecommendationConfig,
    cycle_id:            Optional[str] = None,
    alert_levels:        Optional[Mapping[str, str]] = None,
) -> list[Recommendation]:
    """Propose dispatches for the top-K requests lacking a pending recommendation.

    Args:
        ranked:              Snapshots in rank order.
        requests:            Requests (looked up by id from the snapshots).
        warehouses:          All warehouses.
        resources:           All stock lines.
        cells:               Current demand cells, for context.
        pending_request_ids: Requests that already carry a pending recommendation.
        now:                 Generation time.
        config:              Top-K, travel speed, handling time, validity window.
        cycle_id:            Orchestrator cycle tag stored on each proposal.
        alert_levels:        Optional region → weather alert level, for context.

    Returns:
        Pending ``Recommendation`` objects (no ids yet), in rank order.
    """
    request_by_id = {r.request_id: r for r in requests}
    warehouse_by_id = {w.warehouse_id: w for w in warehouses}
    resource_list = sorted(resources, key=lambda r: r.resource_id)
    available = {r.resource_id: r.quantity for r in resource_list}
    cell_index = {c.key: c for c in cells}
    inventory_values = [r.quantity for r in resource_list]
    avg_inventory = sum(inventory_values) / len(inventory_values) if inventory_values else 0.0

    eligible = [s for s in ranked if s.request_id in request_by_id]
    selected = top_n(eligible, config.top_k, exclude_request_ids=set(pending_request_ids))

    recommendations: list[Recommendation] = []
    for snap in selected:
        request = request_by_id[snap.request_id]
        resource_type = infer_resource_type(request.details)
        choice = select_source(request, resource_type, resource_list, warehouse_by_id, available)
        if choice is None:
            logger.info("No stock anywhere for request %s; no recommendation.", request.request_id)
            continue

        stock = available[choice.resource.resource_id]
        quantity = min(max(1, request.people_count), stock)
        available[choice.resource.resource_id] = stock - quantity

        region = normalize_region(request.location)
        cell = cell_index.get((region, resource_type))
        lead_time = compute_lead_time(choice.distance_km, config)
        pressure = cell.demand_pressure if cell else 0.0

        context = RecommendationContext(
            demand_pressure=round(pressure, 4),
            supply_pressure=snap.supply_pressure_weight,
            pending_count=cell.pending_count if cell else 0,
            inventory_available=cell.inventory_available if cell else 0,
            avg_inventory=round(avg_inventory, 2),
            weather_alert_level=(alert_levels or {}).get(region),
            hub_capacity_ratio=snap.hub_capacity_ratio,
            age_weight=snap.age_weight,
            proximity_weight=snap.proximity_weight,
            hub_capacity_weight=snap.hub_capacity_weight,
            supply_pressure_weight=snap.supply_pressure_weight,
            distance_km=round(choice.distance_km, 3) if choice.distance_km is not None else None,
            eta_minutes=lead_time,
            priority_score=snap.score,
        )

        recommendations.append(
            Recommendation(
                request_id=request.request_id,
                region=region,
                resource_type=choice.resource.resource_type,
                resource_id=choice.resource.resource_id,
                warehouse_id=choice.warehouse.warehouse_id,
                warehouse_name=choice.warehouse.name,
                suggested_quantity=quantity,
                confidence=compute_confidence(choice.distance_km, stock, quantity),
                lead_time_minutes=lead_time,
                rationale=build_rationale(choice, quantity, region, resource_type, cell, lead_time, snap),
                context=context,
                impact_score=round(
                    snap.score * (1.0 + 0.15 * min(pressure, _MAX_PRESSURE_BOOST)), 2
                ),
                valid_from=now,
                valid_until=now + timedelta(minutes=config.validity_minutes),
                created_at=now,
                cycle_id=cycle_id,
            )
        )

    logger.info(
        "Generated %d recommendation(s) from top %d of %d ranked request(s).",
        len(recommendations), len(selected), len(ranked),
    )
    return recommendations


def build_rationale(
    choice:        SourceChoice,
    quantity:      int,
    region:        str,
    resource_type: str,
    cell:          Optional[DemandCell],
    lead_time:     Optional[int],
    snap:          PrioritySnapshot,
) -> str:
    """Operator-facing explanation, e.g.

    "Dispatch 12 water from Central Depot (4.2 km, ETA 26 min) to kochi;
     priority 187; 5 pending vs 0 in stock"
    """
    where = choice.warehouse.name
    if choice.distance_km is not None:
        where += f" ({choice.distance_km:.1f} km, ETA {lead_time} min)"
    else:
        where += " (distance unknown)"
    parts = [
        f"Dispatch {quantity} {choice.resource.resource_type} from {where} to {region}",
        f"priority {snap.score}",
    ]
    if cell is not None:
        parts.append(f"{cell.pending_count} pending vs {cell.inventory_available} in stock")
    if choice.fallback:
        needed = "requested supplies" if resource_type == UNSPECIFIED_TYPE else resource_type
        parts.append(f"no {needed} in stock, substituting most abundant line")
    return "; ".join(parts)


# ── Helper ────────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
