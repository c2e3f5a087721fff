"""
Domain-specific exception hierarchy for the reservation engine.
"""


class ReservationError(Exception):
    """Base class for all reservation-level errors."""

    def to_payload(self) -> dict:
        return {"error": str(self)}


class ValidationError(ReservationError):
    """Raised for a malformed date, an empty hour set or an unknown hour label."""


class AuthorizationError(ReservationError):
    """Raised when the acting account may not perform the operation."""

    def __init__(self, message: str, requested_hours=None):
        super().__init__(message)
        self.requested_hours = list(requested_hours) if requested_hours is not None else None

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.requested_hours is not None:
            payload["requestedHours"] = self.requested_hours
        return payload


class ConflictError(ReservationError):
    """Raised when requested hours are already booked."""

    def __init__(self, conflicting_hours):
        super().__init__("Some hours are already booked.")
        self.conflicting_hours = list(conflicting_hours)

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["conflictingHours"] = self.conflicting_hours
        return payload


class NotFoundError(ReservationError):
    """Raised when a cancellation targets a day with nothing to remove."""
