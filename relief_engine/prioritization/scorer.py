"""
Priority scoring: converts an open rescue request plus demand cells and hub
geodata into an explainable composite score.

Score formula (weighted sum of four 0–100 terms)
------------------------------------------------
    score = round(score_scale * (
        age_weight              * w_age
        + proximity_weight      * w_proximity
        + hub_capacity_weight   * w_hub
        + supply_pressure_weight* w_supply
    ))

Component explanations
----------------------
age_weight (0–age_cap):
    age_cap * (1 - exp(-age_hours / age_half_life_hours)).
    Monotonic non-decreasing, saturating at age_cap so week-old requests do
    not dominate arbitrarily.  12h half-life: 1h → 8.0, 12h → 63.2, 48h → 98.2.

proximity_weight (0–100):
    100 / (1 + distance_km / proximity_scale_km).  Stock at the door → 100,
    25 km → 50.  Neutral when the request or every hub lacks geodata.

hub_capacity_weight (0–100):
    100 * max(0, 1 - hub_capacity_ratio).  An emptier nearest hub makes the
    request more urgent.  Neutral when the hub's capacity is unknown (0).

supply_pressure_weight (0–100):
    100 * p / (1 + p) for the matching demand cell's pressure p.
    p = 1 → 50, p = 5 → 83.3.  Neutral when no cell matches.

A term that cannot be computed because an input is malformed (bad
coordinates, unreadable timestamp) falls back to its neutral value and the
snapshot is flagged ``degraded``; the batch always completes.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from relief_engine.config import ScoringConfig
from relief_engine.demand.regions import infer_resource_type, normalize_region
from relief_engine.errors import PartialInputError
from relief_engine.models.demand import DemandCell
from relief_engine.models.domain import Resource, RescueRequest, Warehouse
from relief_engine.models.priority import PrioritySnapshot
from relief_engine.prioritization.geo import HubCandidate, NearestHub, nearest_hub, require_coordinates
from relief_engine.prioritization.ranker import rank_snapshots

logger = logging.getLogger(__name__)

_FACTOR_LABELS: dict[str, str] = {
    "age":       "Waiting time",
    "proximity": "Proximity to stock",
    "hub":       "Hub depletion",
    "supply":    "Supply pressure",
}


@dataclass
class PriorityComponents:
    """All terms of one request's priority score.

    Attributes:
        age_weight:             0–age_cap waiting-time term.
        proximity_weight:       0–100 distance term.
        hub_capacity_weight:    0–100 hub depletion term.
        supply_pressure_weight: 0–100 demand-pressure term.
        age_hours:              Raw age, ``None`` if the timestamp was unreadable.
        distance_km:            Raw distance to the nearest hub, if known.
        hub_capacity_ratio:     Raw hub stock / capacity, if known.
        demand_pressure:        Raw pressure of the matching cell, if any.
        notes:                  Rationale fragments for neutral/degraded terms.
        degraded:               True if any term fell back due to malformed input.
    """

    age_weight:             float
    proximity_weight:       float
    hub_capacity_weight:    float
    supply_pressure_weight: float
    age_hours:              Optional[float] = None
    distance_km:            Optional[float] = None
    hub_capacity_ratio:     Optional[float] = None
    demand_pressure:        Optional[float] = None
    notes:                  list[str] = field(default_factory=list)
    degraded:               bool = False

    def weighted(self, cfg: ScoringConfig) -> dict[str, float]:
        """Per-factor contribution after applying the configured weights."""
        return {
            "age":       self.age_weight * cfg.age_weight,
            "proximity": self.proximity_weight * cfg.proximity_weight,
            "hub":       self.hub_capacity_weight * cfg.hub_capacity_weight,
            "supply":    self.supply_pressure_weight * cfg.supply_pressure_weight,
        }

    def total(self, cfg: ScoringConfig) -> float:
        return cfg.score_scale * sum(self.weighted(cfg).values())

    def score(self, cfg: ScoringConfig) -> int:
        return int(round(self.total(cfg)))


# ── Individual terms ──────────────────────────────────────────────────────────

def age_term(age_hours: float, cfg: ScoringConfig) -> float:
    return cfg.age_cap * (1.0 - math.exp(-max(0.0, age_hours) / cfg.age_half_life_hours))


def proximity_term(distance_km: float, cfg: ScoringConfig) -> float:
    return 100.0 / (1.0 + max(0.0, distance_km) / cfg.proximity_scale_km)


def hub_capacity_term(ratio: float) -> float:
    return _clamp(100.0 * max(0.0, 1.0 - ratio), 0.0, 100.0)


def supply_pressure_term(pressure: float) -> float:
    p = max(0.0, pressure)
    return 100.0 * p / (1.0 + p)


# ── Hub lookup ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StockIndex:
    """Stock totals keyed for nearest-hub lookups."""

    warehouses:   tuple[Warehouse, ...]
    by_type:      dict[tuple[int, str], int]
    by_warehouse: dict[int, int]

    @classmethod
    def build(cls, warehouses: Iterable[Warehouse], resources: Iterable[Resource]) -> "StockIndex":
        by_type: dict[tuple[int, str], int] = defaultdict(int)
        by_warehouse: dict[int, int] = defaultdict(int)
        for res in resources:
            by_type[(res.warehouse_id, res.resource_type)] += res.quantity
            by_warehouse[res.warehouse_id] += res.quantity
        return cls(
            warehouses=tuple(sorted(warehouses, key=lambda w: w.warehouse_id)),
            by_type=dict(by_type),
            by_warehouse=dict(by_warehouse),
        )

    def nearest(self, lat: float, lon: float, resource_type: str) -> Optional[NearestHub]:
        """Nearest hub stocking ``resource_type``; else any stocked hub; else any hub."""
        tiers = (
            [
                HubCandidate(w, self.by_type.get((w.warehouse_id, resource_type), 0))
                for w in self.warehouses
                if self.by_type.get((w.warehouse_id, resource_type), 0) > 0
            ],
            [
                HubCandidate(w, self.by_warehouse.get(w.warehouse_id, 0))
                for w in self.warehouses
                if self.by_warehouse.get(w.warehouse_id, 0) > 0
            ],
            [HubCandidate(w, self.by_warehouse.get(w.warehouse_id, 0)) for w in self.warehouses],
        )
        for tier in tiers:
            hub = nearest_hub(lat, lon, tier)
            if hub is not None:
                return hub
        return None

    def capacity_ratio(self, warehouse: Warehouse) -> Optional[float]:
        if warehouse.capacity <= 0:
            return None
        return self.by_warehouse.get(warehouse.warehouse_id, 0) / warehouse.capacity


# ── Per-request computation ───────────────────────────────────────────────────

def compute_components(
    request:   RescueRequest,
    cell:      Optional[DemandCell],
    stock:     StockIndex,
    cfg:       ScoringConfig,
    now:       datetime,
) -> tuple[PriorityComponents, Optional[NearestHub]]:
    """Compute all four terms for one request.

    Never raises for malformed input; the affected term is neutralized and
    the components are flagged ``degraded``.
    """
    notes: list[str] = []
    degraded = False

    # ── Age ───────────────────────────────────────────────────────────────────
    if request.created_at is not None:
        age_hours: Optional[float] = max(0.0, (now - request.created_at).total_seconds() / 3600.0)
        age = age_term(age_hours, cfg)
    else:
        age_hours = None
        age = 0.0
        degraded = True
        notes.append("creation time unreadable, age not counted")

    # ── Proximity ─────────────────────────────────────────────────────────────
    hub: Optional[NearestHub] = None
    try:
        coords = require_coordinates(
            request.latitude, request.longitude, f"request {request.request_id}"
        )
    except PartialInputError as exc:
        logger.warning("Degrading proximity for request %s: %s", request.request_id, exc)
        coords = None
        degraded = True
        notes.append("location data unavailable, neutral proximity applied")
    else:
        if coords is None:
            notes.append("no coordinates reported, neutral proximity applied")

    if coords is not None:
        hub = stock.nearest(coords[0], coords[1], infer_resource_type(request.details))
        if hub is None:
            notes.append("no hub has geodata, neutral proximity applied")

    proximity = proximity_term(hub.distance_km, cfg) if hub else cfg.neutral_proximity

    # ── Hub capacity ──────────────────────────────────────────────────────────
    ratio = stock.capacity_ratio(hub.warehouse) if hub else None
    hub_weight = hub_capacity_term(ratio) if ratio is not None else cfg.neutral_hub_capacity

    # ── Supply pressure ───────────────────────────────────────────────────────
    if cell is not None:
        supply = supply_pressure_term(cell.demand_pressure)
        pressure: Optional[float] = cell.demand_pressure
    else:
        supply = cfg.neutral_supply_pressure
        pressure = None

    return (
        PriorityComponents(
            age_weight=round(age, 4),
            proximity_weight=round(proximity, 4),
            hub_capacity_weight=round(hub_weight, 4),
            supply_pressure_weight=round(supply, 4),
            age_hours=age_hours,
            distance_km=hub.distance_km if hub else None,
            hub_capacity_ratio=ratio,
            demand_pressure=pressure,
            notes=notes,
            degraded=degraded,
        ),
        hub,
    )


def build_rationale(
    components: PriorityComponents,
    cfg:        ScoringConfig,
    cell:       Optional[DemandCell],
    hub:        Optional[NearestHub],
) -> str:
    """Assemble the operator-facing rationale sentence.

    Example::

        "Supply pressure dominates (62% of score): 5 pending vs 0 in stock;
         nearest hub Central Depot 12.4 km"
    """
    weighted = components.weighted(cfg)
    total = sum(weighted.values())
    parts: list[str] = []

    if total <= 0:
        parts.append("No urgency signal; all weighted terms are zero")
    else:
        factor = max(weighted, key=lambda k: (weighted[k], k))
        share = weighted[factor] / total
        head = f"{_FACTOR_LABELS[factor]} dominates ({share:.0%} of score)"
        detail = _factor_detail(factor, components, cell, hub)
        parts.append(f"{head}: {detail}" if detail else head)
        if factor != "proximity" and hub is not None:
            parts.append(f"nearest hub {hub.warehouse.name} {hub.distance_km:.1f} km")

    parts.extend(components.notes)
    return "; ".join(parts)


def _factor_detail(
    factor:     str,
    components: PriorityComponents,
    cell:       Optional[DemandCell],
    hub:        Optional[NearestHub],
) -> str:
    if factor == "age" and components.age_hours is not None:
        return f"open for {components.age_hours:.1f} h"
    if factor == "proximity" and hub is not None:
        return f"nearest hub {hub.warehouse.name} {hub.distance_km:.1f} km"
    if factor == "hub" and hub is not None and components.hub_capacity_ratio is not None:
        return f"{hub.warehouse.name} at {components.hub_capacity_ratio:.0%} of capacity"
    if factor == "supply" and cell is not None:
        return f"{cell.pending_count} pending vs {cell.inventory_available} in stock"
    return "neutral default"


# ── Batch entry point ─────────────────────────────────────────────────────────

def score_requests(
    requests:   Iterable[RescueRequest],
    warehouses: Iterable[Warehouse],
    resources:  Iterable[Resource],
    cells:      Iterable[DemandCell],
    weights:    ScoringConfig,
    now:        datetime,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> list[PrioritySnapshot]:
    """Score every open request and return the ranked snapshot list.

    Args:
        requests:   Requests of any status; only pending/in_progress are scored.
        warehouses: All warehouses.
        resources:  All stock lines.
        cells:      Current demand cells.
        weights:    Scoring weights and curve parameters.
        now:        Reference time.
        id_factory: Snapshot id generator.

    Returns:
        Snapshots sorted by score desc, created_at asc, request_id asc.
    """
    stock = StockIndex.build(warehouses, resources)
    cell_index = {cell.key: cell for cell in cells}

    snapshots: list[PrioritySnapshot] = []
    for req in requests:
        if not req.is_open:
            continue
        region = normalize_region(req.location)
        resource_type = infer_resource_type(req.details)
        cell = cell_index.get((region, resource_type))
        try:
            components, hub = compute_components(req, cell, stock, weights, now)
        except (PartialInputError, ValueError, TypeError, ArithmeticError) as exc:
            logger.warning("Scoring request %s with neutral terms: %s", req.request_id, exc)
            components, hub = _neutral_components(weights), None

        snapshots.append(
            PrioritySnapshot(
                snapshot_id=id_factory(),
                request_id=req.request_id,
                score=components.score(weights),
                rationale=build_rationale(components, weights, cell, hub),
                age_weight=round(components.age_weight, 2),
                proximity_weight=round(components.proximity_weight, 2),
                hub_capacity_weight=round(components.hub_capacity_weight, 2),
                supply_pressure_weight=round(components.supply_pressure_weight, 2),
                nearest_warehouse_id=hub.warehouse.warehouse_id if hub else None,
                nearest_warehouse_name=hub.warehouse.name if hub else None,
                nearest_warehouse_distance_km=round(hub.distance_km, 3) if hub else None,
                hub_capacity_ratio=(
                    round(components.hub_capacity_ratio, 4)
                    if components.hub_capacity_ratio is not None else None
                ),
                region=region,
                resource_type=resource_type,
                request_created_at=req.created_at,
                scored_at=now,
                degraded=components.degraded,
            )
        )

    return rank_snapshots(snapshots)


def _neutral_components(cfg: ScoringConfig) -> PriorityComponents:
    return PriorityComponents(
        age_weight=0.0,
        proximity_weight=cfg.neutral_proximity,
        hub_capacity_weight=cfg.neutral_hub_capacity,
        supply_pressure_weight=cfg.neutral_supply_pressure,
        notes=["request data malformed, neutral terms applied"],
        degraded=True,
    )


# ── Helper ────────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
