"""Shared FastAPI dependency providers and error mapping for the controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from capacity_engine.domain.errors import (
    BookingStateError,
    CapacityExceededError,
    DestinationUnavailableError,
    EngineError,
    NotFoundError,
    ValidationError,
)
from capacity_engine.services.admission_service import AdmissionService
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.destination_service import DestinationService
from capacity_engine.services.notification_service import InMemoryNotificationRelay
from capacity_engine.services.pricing_service import PricingService
from capacity_engine.services.rule_service import RuleService


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_destination_service(request: Request) -> DestinationService:
    return _from_state(request, "destination_service", "Destination service")


def get_rule_service(request: Request) -> RuleService:
    return _from_state(request, "rule_service", "Rule service")


def get_capacity_service(request: Request) -> CapacityService:
    return _from_state(request, "capacity_service", "Capacity service")


def get_pricing_service(request: Request) -> PricingService:
    return _from_state(request, "pricing_service", "Pricing service")


def get_admission_service(request: Request) -> AdmissionService:
    return _from_state(request, "admission_service", "Admission service")


def get_notification_feed(request: Request) -> InMemoryNotificationRelay:
    return _from_state(request, "notification_feed", "Notification feed")


def as_http_exception(exc: EngineError) -> HTTPException:
    """Translate a domain error into the HTTP status callers expect."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, CapacityExceededError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict())
    if isinstance(exc, (BookingStateError, DestinationUnavailableError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
