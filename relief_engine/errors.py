"""
Engine error taxonomy.

  DataUnavailableError  — an upstream repository read failed.  The orchestrator
                          keeps serving the last-good snapshot and marks the
                          job unhealthy.
  PartialInputError     — one entity is malformed.  Raised per entity and
                          caught by the batch, which scores/skips that entity
                          with neutral defaults and continues.
  ConflictError         — apply/dismiss on a non-pending recommendation, or
                          insufficient stock at apply time.  Surfaced to the
                          caller; the engine never retries on its own.
  ConfigurationError    — missing or invalid weight/threshold config.  Fatal
                          at startup.
"""

from __future__ import annotations


class ReliefEngineError(Exception):
    """Base class for all engine errors."""


class DataUnavailableError(ReliefEngineError):
    """Raised when the request, warehouse or inventory source cannot be read.

    Attributes:
        source: Name of the unavailable read model (e.g. ``"rescue_requests"``).
    """

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        super().__init__(f"Source '{source}' unavailable: {reason}")


class PartialInputError(ReliefEngineError):
    """Raised when a single entity cannot be used as-is."""


class ConflictError(ReliefEngineError):
    """Base class for operator actions rejected by the recommendation state.

    Attributes:
        code: Stable wire identifier (``"InsufficientStock"``, ``"AlreadyResolved"``).
    """

    code = "Conflict"


class InsufficientStockError(ConflictError):
    """Raised when a resource no longer holds the suggested quantity."""

    code = "InsufficientStock"

    def __init__(self, resource_id: int, available: int | None, requested: int) -> None:
        self.resource_id = resource_id
        self.available   = available
        self.requested   = requested
        have = "missing" if available is None else str(available)
        super().__init__(
            f"Resource {resource_id} has {have} units in stock; "
            f"recommendation needs {requested}."
        )


class AlreadyResolvedError(ConflictError):
    """Raised on apply/dismiss of a recommendation that is no longer pending."""

    code = "AlreadyResolved"

    def __init__(self, recommendation_id: int, status: str) -> None:
        self.recommendation_id = recommendation_id
        self.status            = status
        super().__init__(
            f"Recommendation {recommendation_id} is already {status}."
        )


class RecommendationNotFoundError(ReliefEngineError):
    """Raised when a recommendation id does not exist."""

    def __init__(self, recommendation_id: int) -> None:
        self.recommendation_id = recommendation_id
        super().__init__(f"Recommendation {recommendation_id} not found.")


class ConfigurationError(ReliefEngineError):
    """Raised when configuration fails validation."""
