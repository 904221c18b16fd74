"""Error taxonomy shared by the capacity, pricing and admission services."""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class NotFoundError(EngineError):
    """Raised when a referenced entity does not exist. Never retried."""


class DestinationNotFoundError(NotFoundError):
    def __init__(self, destination_id: int) -> None:
        super().__init__(f"Destination {destination_id} not found")
        self.destination_id = destination_id


class RuleNotFoundError(NotFoundError):
    def __init__(self, kind: str, rule_id: int) -> None:
        super().__init__(f"{kind} rule {rule_id} not found")
        self.kind = kind
        self.rule_id = rule_id


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id: int) -> None:
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class ZoneNotFoundError(NotFoundError):
    def __init__(self, zone_id: int, destination_id: Optional[int] = None) -> None:
        message = f"Zone {zone_id} not found"
        if destination_id is not None:
            message = f"{message} at destination {destination_id}"
        super().__init__(message)
        self.zone_id = zone_id
        self.destination_id = destination_id


class ValidationError(EngineError, ValueError):
    """Raised at write time for malformed rules, destinations or requests."""


class CapacityExceededError(EngineError):
    """Admission denied; must be shown to the visitor, never auto-retried."""

    def __init__(
        self,
        requested: int,
        available: int,
        rule: Optional[str] = None,
    ) -> None:
        detail = f"Requested {requested} visitor(s) but only {available} slot(s) available"
        if rule:
            detail = f"{detail} ({rule})"
        super().__init__(detail)
        self.requested = requested
        self.available = available
        self.rule = rule

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)

    def to_dict(self) -> dict[str, int | str | None]:
        return {
            "message": str(self),
            "requested": self.requested,
            "available": self.available,
            "shortfall": self.shortfall,
            "rule": self.rule,
        }


class ConcurrencyConflictError(EngineError):
    """Raised when the occupancy row could not be updated under contention."""


class StaleConfigurationError(EngineError):
    """Raised when a rule or weather signal could not be fetched."""


class BookingStateError(EngineError):
    """Raised when a booking transition is not allowed from its current status."""


class DestinationUnavailableError(EngineError):
    """Raised when a destination is not accepting bookings for a date."""
