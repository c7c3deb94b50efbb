"""
Ledger Error Taxonomy

Every failure the availability core can surface to a caller:
- InvalidRange: end <= start, or dates outside the supported horizon
- Conflict: a write collided, or pre-commit re-validation found the range taken
- Infeasible: no covering combination exists (a result label, not raised by the allocator)
- FeedFetchFailed / FeedParseFailed: a calendar sync could not complete
- NotFound: unknown apartment, feed or booking
- InvalidTransition: booking state change not allowed from the current state
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all availability core errors"""

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


class InvalidRange(LedgerError):
    code = "invalid_range"
    status_code = 422


class Conflict(LedgerError):
    """
    Raised when a confirmation or write cannot be applied.

    reason:
    - "unavailable": re-validation found some date already booked/blocked
    - "concurrent_write": another writer changed the apartment while we were writing
    """
    code = "conflict"
    status_code = 409

    UNAVAILABLE = "unavailable"
    CONCURRENT_WRITE = "concurrent_write"

    def __init__(self, message: str, reason: str = UNAVAILABLE, **extra: Any):
        super().__init__(message, reason=reason, **extra)
        self.reason = reason


class VersionConflict(LedgerError):
    """Lost compare-and-swap on an apartment's ledger version (retryable)"""
    code = "version_conflict"
    status_code = 409

    def __init__(self, apartment_id: str, expected: Optional[int] = None):
        super().__init__(
            f"Ledger for apartment {apartment_id} changed concurrently",
            apartment_id=apartment_id,
        )
        self.apartment_id = apartment_id
        self.expected = expected


class Infeasible(LedgerError):
    code = "infeasible"
    status_code = 200


class FeedFetchFailed(LedgerError):
    code = "feed_fetch_failed"
    status_code = 502


class FeedParseFailed(LedgerError):
    code = "feed_parse_failed"
    status_code = 422


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class InvalidTransition(LedgerError):
    code = "invalid_transition"
    status_code = 409
