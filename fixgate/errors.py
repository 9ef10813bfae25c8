from __future__ import annotations


class FixgateError(Exception):
    """Base class for errors raised by fixgate components."""


class TrackerError(FixgateError):
    """
    A remote issue-tracker call failed. `status` mirrors the HTTP status when known so
    retry/backoff code can tell rate limits (403/429) from other transient failures.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(TrackerError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)


class ConcurrencyConflict(TrackerError):
    """The optimistic-concurrency token was stale at write time (another writer won)."""

    def __init__(self, message: str = "version token mismatch") -> None:
        super().__init__(message, status=412)


class ReservationNotFound(FixgateError):
    pass


class RefundExceedsReservation(FixgateError):
    pass


class BudgetExceeded(FixgateError):
    """Raised by the cost tracker when usage would exceed the per-fix cap or the attempt's reservation."""
