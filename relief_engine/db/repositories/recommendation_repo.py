"""
Repositories for recommendations, operator feedback and the distribution log.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from relief_engine.db.repositories.base import BaseRepository, iso, opt_timestamp
from relief_engine.models.recommendation import (
    DistributionLogEntry,
    Recommendation,
    RecommendationContext,
    RecommendationFeedback,
    VALID_RECOMMENDATION_STATUSES,
)

logger = logging.getLogger(__name__)


class RecommendationRepository(BaseRepository):
    """Read/write access to ``recommendations``."""

    def insert_if_absent(self, rec: Recommendation) -> Optional[int]:
        """Insert a pending recommendation unless its request already has one.

        The partial unique index on ``request_id WHERE status = 'pending'``
        makes this safe against a concurrent generator: the losing insert is
        ignored rather than creating a second pending row.

        Returns:
            The new ``recommendation_id``, or ``None`` if the insert was ignored.
        """
        cur = self.execute(
            """
            INSERT OR IGNORE INTO recommendations (
                request_id, region, resource_type, resource_id, warehouse_id,
                warehouse_name, suggested_quantity, confidence, lead_time_minutes,
                status, rationale, context, impact_score, valid_from, valid_until,
                cycle_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                rec.request_id,
                rec.region,
                rec.resource_type,
                rec.resource_id,
                rec.warehouse_id,
                rec.warehouse_name,
                rec.suggested_quantity,
                rec.confidence,
                rec.lead_time_minutes,
                rec.status,
                rec.rationale,
                rec.context.model_dump_json(),
                rec.impact_score,
                iso(rec.valid_from),
                iso(rec.valid_until),
                rec.cycle_id,
                iso(rec.created_at),
            ),
        )
        if cur.rowcount == 0:
            logger.debug(
                "Pending recommendation already exists for request %s; insert ignored.",
                rec.request_id,
            )
            return None
        return self.last_insert_rowid()

    def get(self, recommendation_id: int) -> Optional[Recommendation]:
        row = self.fetchone(
            "SELECT * FROM recommendations WHERE recommendation_id = ?;",
            (recommendation_id,),
        )
        return _row_to_recommendation(row) if row else None

    def get_status(self, recommendation_id: int) -> Optional[str]:
        row = self.fetchone(
            "SELECT status FROM recommendations WHERE recommendation_id = ?;",
            (recommendation_id,),
        )
        return row["status"] if row else None

    def list_by_status(self, status: Optional[str] = "pending", limit: int = 50) -> list[Recommendation]:
        """Fetch recommendations, newest first.

        Args:
            status: Filter to this status; ``None`` for all statuses.
            limit: Maximum rows to return.

        Raises:
            ValueError: If ``status`` is not a known recommendation status.
        """
        if status is None:
            return self.read_all(
                "recommendations",
                """
                SELECT * FROM recommendations
                ORDER BY created_at DESC, recommendation_id DESC LIMIT ?;
                """,
                (limit,),
                _row_to_recommendation,
            )
        if status not in VALID_RECOMMENDATION_STATUSES:
            raise ValueError(
                f"Unknown status '{status}'. Must be one of {sorted(VALID_RECOMMENDATION_STATUSES)}."
            )
        return self.read_all(
            "recommendations",
            """
            SELECT * FROM recommendations
            WHERE status = ?
            ORDER BY created_at DESC, recommendation_id DESC LIMIT ?;
            """,
            (status, limit),
            _row_to_recommendation,
        )

    def pending_by_request(self) -> dict[int, int]:
        """Return ``{request_id: recommendation_id}`` for every pending recommendation."""
        rows = self.read_all(
            "recommendations",
            """
            SELECT request_id, recommendation_id FROM recommendations
            WHERE status = 'pending' AND request_id IS NOT NULL;
            """,
            (),
            lambda r: (int(r["request_id"]), int(r["recommendation_id"])),
        )
        return dict(rows)

    def transition(self, recommendation_id: int, status: str, resolved_at: datetime) -> bool:
        """Move a pending recommendation to a terminal status.

        The ``WHERE status = 'pending'`` guard makes the transition one-shot.

        Returns:
            ``True`` if the row transitioned, ``False`` if it was not pending.
        """
        cur = self.execute(
            """
            UPDATE recommendations
               SET status = ?, resolved_at = ?
             WHERE recommendation_id = ? AND status = 'pending';
            """,
            (status, iso(resolved_at), recommendation_id),
        )
        return cur.rowcount == 1


class FeedbackRepository(BaseRepository):
    """Append-only access to ``recommendation_feedback``."""

    def insert(self, feedback: RecommendationFeedback) -> int:
        self.execute(
            """
            INSERT INTO recommendation_feedback (
                recommendation_id, action, reason, actor, created_at
            ) VALUES (?, ?, ?, ?, ?);
            """,
            (
                feedback.recommendation_id,
                feedback.action,
                feedback.reason,
                feedback.actor,
                iso(feedback.created_at),
            ),
        )
        return self.last_insert_rowid()

    def list_for(self, recommendation_id: int) -> list[RecommendationFeedback]:
        rows = self.fetchall(
            """
            SELECT * FROM recommendation_feedback
            WHERE recommendation_id = ? ORDER BY feedback_id;
            """,
            (recommendation_id,),
        )
        return [
            RecommendationFeedback(
                feedback_id=r["feedback_id"],
                recommendation_id=r["recommendation_id"],
                action=r["action"],
                reason=r["reason"],
                actor=r["actor"],
                created_at=opt_timestamp(r["created_at"]),
            )
            for r in rows
        ]


class DistributionLogRepository(BaseRepository):
    """Append access to the relief application's ``distribution_logs``."""

    def insert(self, entry: DistributionLogEntry) -> int:
        self.execute(
            """
            INSERT INTO distribution_logs (
                resource_id, warehouse_id, quantity, destination,
                request_id, recommendation_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                entry.resource_id,
                entry.warehouse_id,
                entry.quantity,
                entry.destination,
                entry.request_id,
                entry.recommendation_id,
                iso(entry.created_at),
            ),
        )
        return self.last_insert_rowid()

    def list_for_recommendation(self, recommendation_id: int) -> list[DistributionLogEntry]:
        rows = self.fetchall(
            "SELECT * FROM distribution_logs WHERE recommendation_id = ? ORDER BY log_id;",
            (recommendation_id,),
        )
        return [_row_to_log(r) for r in rows]

    def count(self) -> int:
        row = self.fetchone("SELECT COUNT(*) AS n FROM distribution_logs;")
        return int(row["n"]) if row else 0


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_recommendation(row: sqlite3.Row) -> Recommendation:
    return Recommendation(
        recommendation_id=row["recommendation_id"],
        request_id=row["request_id"],
        region=row["region"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        warehouse_id=row["warehouse_id"],
        warehouse_name=row["warehouse_name"],
        suggested_quantity=row["suggested_quantity"],
        confidence=row["confidence"],
        lead_time_minutes=row["lead_time_minutes"],
        status=row["status"],
        rationale=row["rationale"],
        context=RecommendationContext.model_validate_json(row["context"] or "{}"),
        impact_score=row["impact_score"] or 0.0,
        valid_from=opt_timestamp(row["valid_from"]),
        valid_until=opt_timestamp(row["valid_until"]),
        created_at=opt_timestamp(row["created_at"]),
        resolved_at=opt_timestamp(row["resolved_at"]),
        cycle_id=row["cycle_id"],
    )


def _row_to_log(row: sqlite3.Row) -> DistributionLogEntry:
    return DistributionLogEntry(
        log_id=row["log_id"],
        resource_id=row["resource_id"],
        warehouse_id=row["warehouse_id"],
        quantity=row["quantity"],
        destination=row["destination"],
        request_id=row["request_id"],
        recommendation_id=row["recommendation_id"],
        created_at=opt_timestamp(row["created_at"]),
    )
