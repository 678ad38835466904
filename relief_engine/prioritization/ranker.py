"""
Priority ranker: deterministic ordering and top-N selection over snapshots.

Ordering
--------
1. score descending
2. request created_at ascending (older first; unreadable timestamps last)
3. request_id ascending

The ranking is a pure function of the snapshot contents, so two cycles over
identical inputs publish identical orderings.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from relief_engine.models.priority import PrioritySnapshot

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _sort_key(snap: PrioritySnapshot) -> tuple[int, datetime, int]:
    created = snap.request_created_at if snap.request_created_at is not None else _FAR_FUTURE
    return (-snap.score, created, snap.request_id)


def rank_snapshots(snapshots: Iterable[PrioritySnapshot]) -> list[PrioritySnapshot]:
    """Return a new list sorted by the ranking rules above."""
    return sorted(snapshots, key=_sort_key)


def top_n(
    ranked: Iterable[PrioritySnapshot],
    n: int,
    exclude_request_ids: frozenset[int] | set[int] = frozenset(),
) -> list[PrioritySnapshot]:
    """Return the first ``n`` snapshots whose request is not excluded.

    Args:
        ranked:              Snapshots already in rank order.
        n:                   Maximum number to return.
        exclude_request_ids: Requests to skip (e.g. those with a pending
                             recommendation).
    """
    if n <= 0:
        return []
    picked: list[PrioritySnapshot] = []
    for snap in ranked:
        if snap.request_id in exclude_request_ids:
            continue
        picked.append(snap)
        if len(picked) >= n:
            break
    return picked


def attach_recommendations(
    ranked: Iterable[PrioritySnapshot],
    recommendation_by_request: dict[int, int],
) -> list[PrioritySnapshot]:
    """Return copies of ``ranked`` with ``recommendation_id`` filled in.

    Snapshots are immutable; each one that gains or loses a reference is
    replaced by a copy, order is preserved.
    """
    result: list[PrioritySnapshot] = []
    for snap in ranked:
        rec_id = recommendation_by_request.get(snap.request_id)
        if rec_id != snap.recommendation_id:
            snap = snap.model_copy(update={"recommendation_id": rec_id})
        result.append(snap)
    return result
