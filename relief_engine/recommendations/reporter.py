"""
Report writer: CSV and JSON exports of the published priority queue and of
recommendations.

All functions are pure I/O — no DB access.  They consume in-memory snapshot
and recommendation lists and write human-readable + machine-readable files.

Output files (written by ``relief-engine export-priorities``)
-------------------------------------------------------------
  data/outputs/
    priorities_{YYYYMMDDTHHMMSSZ}.csv     -- ranked queue, one row per request
    priorities_{YYYYMMDDTHHMMSSZ}.json    -- same data plus cycle metadata
    recommendations_{YYYYMMDDTHHMMSSZ}.json
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from relief_engine.models.priority import PrioritySnapshot
from relief_engine.models.recommendation import Recommendation
from relief_engine.utils.time_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

_PRIORITY_FIELDS = [
    "rank", "request_id", "score", "region", "resource_type",
    "age_weight", "proximity_weight", "hub_capacity_weight", "supply_pressure_weight",
    "nearest_warehouse_name", "nearest_warehouse_distance_km", "hub_capacity_ratio",
    "recommendation_id", "degraded", "rationale",
]


def _stamp(generated_at: Optional[datetime]) -> str:
    return (generated_at or utcnow()).strftime("%Y%m%dT%H%M%SZ")


def write_priority_csv(
    priorities: list[PrioritySnapshot],
    output_dir: Path,
    generated_at: Optional[datetime] = None,
) -> Path:
    """Write the ranked priority queue to a CSV file.

    Args:
        priorities:   Snapshots in rank order.
        output_dir:   Directory to write the file (created if missing).
        generated_at: Timestamp used in the filename. Defaults to now.

    Returns:
        Path to the written CSV file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    csv_path = output_dir / f"priorities_{_stamp(generated_at)}.csv"

    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=_PRIORITY_FIELDS)
        writer.writeheader()
        for rank, snap in enumerate(priorities, start=1):
            row = snap.model_dump(include=set(_PRIORITY_FIELDS) - {"rank"})
            row["rank"] = rank
            writer.writerow(row)

    logger.info("Priority CSV written: %s (%d rows)", csv_path, len(priorities))
    return csv_path


def write_priority_json(
    priorities: list[PrioritySnapshot],
    output_dir: Path,
    generated_at: Optional[datetime] = None,
    cycle_id: Optional[str] = None,
) -> Path:
    """Write the ranked priority queue, with cycle metadata, to JSON."""
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / f"priorities_{_stamp(generated_at)}.json"

    payload = {
        "generated_at": to_iso(generated_at),
        "cycle_id":     cycle_id,
        "count":        len(priorities),
        "priorities":   [
            {"rank": rank, **snap.model_dump(mode="json")}
            for rank, snap in enumerate(priorities, start=1)
        ],
    }
    json_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    logger.info("Priority JSON written: %s", json_path)
    return json_path


def write_recommendation_json(
    recommendations: list[Recommendation],
    output_dir: Path,
    generated_at: Optional[datetime] = None,
) -> Path:
    """Write recommendations (any status) to JSON, grouped by status."""
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / f"recommendations_{_stamp(generated_at)}.json"

    by_status: dict[str, list[dict]] = {"pending": [], "applied": [], "dismissed": []}
    for rec in recommendations:
        by_status.setdefault(rec.status, []).append(rec.model_dump(mode="json"))

    payload = {
        "generated_at": to_iso(generated_at),
        "count":        len(recommendations),
        "by_status":    by_status,
    }
    json_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    logger.info("Recommendation JSON written: %s (%d items)", json_path, len(recommendations))
    return json_path
