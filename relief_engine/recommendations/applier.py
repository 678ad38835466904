"""
Recommendation applier: executes operator decisions.

State machine
-------------
    pending ──apply──▶ applied     (terminal)
    pending ──dismiss─▶ dismissed  (terminal)

Anything else raises ``AlreadyResolvedError``.

Apply is one ``BEGIN IMMEDIATE`` transaction on the caller's connection:

    1. re-read the recommendation status          (pending?)
    2. guarded decrement of the resource          (quantity >= suggested?)
    3. append the distribution log entry
    4. set status = applied, resolved_at = now

Any failure rolls all four back together; an ``InsufficientStockError``
leaves the recommendation pending so the operator can retry or the next
cycle can supersede it.

Feedback is written afterwards in its own transaction.  A feedback failure
is logged and never reverses the transition.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from relief_engine.db.connection import write_transaction
from relief_engine.db.repositories.recommendation_repo import (
    DistributionLogRepository,
    FeedbackRepository,
    RecommendationRepository,
)
from relief_engine.db.repositories.relief_repo import RescueRequestRepository, ResourceRepository
from relief_engine.errors import (
    AlreadyResolvedError,
    InsufficientStockError,
    RecommendationNotFoundError,
)
from relief_engine.models.recommendation import (
    DistributionLogEntry,
    RecommendationFeedback,
    VALID_FEEDBACK_ACTIONS,
)
from relief_engine.utils.time_utils import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a successful apply or dismiss.

    Attributes:
        recommendation_id: The transitioned recommendation.
        status:            New status (``applied`` or ``dismissed``).
        resource_id:       Decremented stock line (apply only).
        quantity:          Units moved (apply only).
        remaining:         Stock left on the line after apply.
        log_id:            Distribution log row (apply only).
        feedback_id:       Feedback row, if one was written.
    """

    recommendation_id: int
    status:            str
    resource_id:       Optional[int] = None
    quantity:          Optional[int] = None
    remaining:         Optional[int] = None
    log_id:            Optional[int] = None
    feedback_id:       Optional[int] = None


class RecommendationApplier:
    """Applies and dismisses recommendations against one SQLite connection.

    The connection must not be shared with another thread.  The applier
    commits or rolls back its own transactions.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Optional[Clock] = None) -> None:
        self.conn  = conn
        self.clock = clock or SystemClock()
        self._recs      = RecommendationRepository(conn)
        self._resources = ResourceRepository(conn)
        self._requests  = RescueRequestRepository(conn)
        self._logs      = DistributionLogRepository(conn)
        self._feedback  = FeedbackRepository(conn)

    # ── Public operations ─────────────────────────────────────────────────────

    def apply(
        self,
        recommendation_id: int,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ApplyResult:
        """Dispatch the recommended stock.

        Raises:
            RecommendationNotFoundError: Unknown id.
            AlreadyResolvedError: The recommendation is not pending.
            InsufficientStockError: Stock fell below the suggested quantity.
        """
        now = self.clock.now()
        with write_transaction(self.conn):
            rec = self._recs.get(recommendation_id)
            if rec is None:
                raise RecommendationNotFoundError(recommendation_id)
            if not rec.is_pending:
                raise AlreadyResolvedError(recommendation_id, rec.status)

            if not self._resources.decrement_guarded(rec.resource_id, rec.suggested_quantity):
                raise InsufficientStockError(
                    rec.resource_id,
                    self._resources.get_quantity(rec.resource_id),
                    rec.suggested_quantity,
                )

            destination = None
            if rec.request_id is not None:
                request = self._requests.get(rec.request_id)
                destination = request.location if request else None

            log_id = self._logs.insert(
                DistributionLogEntry(
                    resource_id=rec.resource_id,
                    warehouse_id=rec.warehouse_id,
                    quantity=rec.suggested_quantity,
                    destination=destination,
                    request_id=rec.request_id,
                    recommendation_id=recommendation_id,
                    created_at=now,
                )
            )

            if not self._recs.transition(recommendation_id, "applied", now):
                # Lost a race with another writer between the read and here.
                status = self._recs.get_status(recommendation_id) or "resolved"
                raise AlreadyResolvedError(recommendation_id, status)

            remaining = self._resources.get_quantity(rec.resource_id)

        logger.info(
            "Applied recommendation %d: %d x %s from resource %d (remaining=%s)",
            recommendation_id, rec.suggested_quantity, rec.resource_type,
            rec.resource_id, remaining,
            extra={"recommendation_id": recommendation_id},
        )
        feedback_id = self.record_feedback(recommendation_id, "applied", note, actor)
        return ApplyResult(
            recommendation_id=recommendation_id,
            status="applied",
            resource_id=rec.resource_id,
            quantity=rec.suggested_quantity,
            remaining=remaining,
            log_id=log_id,
            feedback_id=feedback_id,
        )

    def dismiss(
        self,
        recommendation_id: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ApplyResult:
        """Reject a pending recommendation; no inventory effect.

        Raises:
            RecommendationNotFoundError: Unknown id.
            AlreadyResolvedError: The recommendation is not pending.
        """
        now = self.clock.now()
        with write_transaction(self.conn):
            status = self._recs.get_status(recommendation_id)
            if status is None:
                raise RecommendationNotFoundError(recommendation_id)
            if status != "pending" or not self._recs.transition(recommendation_id, "dismissed", now):
                raise AlreadyResolvedError(recommendation_id, status)

        logger.info("Dismissed recommendation %d (reason=%r)", recommendation_id, reason)
        feedback_id = self.record_feedback(recommendation_id, "dismissed", reason, actor)
        return ApplyResult(
            recommendation_id=recommendation_id,
            status="dismissed",
            feedback_id=feedback_id,
        )

    def record_feedback(
        self,
        recommendation_id: int,
        action: str,
        note: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Optional[int]:
        """Store operator feedback.  Best effort: failures are logged, not raised.

        Returns:
            The new ``feedback_id``, or ``None`` if the write failed.

        Raises:
            ValueError: If ``action`` is not ``applied`` or ``dismissed``.
        """
        if action not in VALID_FEEDBACK_ACTIONS:
            raise ValueError(
                f"Unknown feedback action '{action}'. Must be one of {sorted(VALID_FEEDBACK_ACTIONS)}."
            )
        try:
            feedback_id = self._feedback.insert(
                RecommendationFeedback(
                    recommendation_id=recommendation_id,
                    action=action,
                    reason=note,
                    actor=actor,
                    created_at=self.clock.now(),
                )
            )
            self.conn.commit()
            return feedback_id
        except sqlite3.Error as exc:
            self.conn.rollback()
            logger.warning(
                "Feedback for recommendation %d not recorded: %s", recommendation_id, exc
            )
            return None
