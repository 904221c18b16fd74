"""HTTP controller layer for reservations and the booking lifecycle."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from capacity_engine.controllers.dependencies import as_http_exception, get_admission_service
from capacity_engine.controllers.pricing_controller import QuoteResponse
from capacity_engine.domain.errors import EngineError
from capacity_engine.domain.models import Booking, BookingStatus, VisitorCategory
from capacity_engine.services.admission_service import AdmissionService
from capacity_engine.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


class ReserveRequest(BaseModel):
    destination_id: int = Field(gt=0)
    visit_date: date
    number_of_visitors: int = Field(gt=0)
    category_mix: dict[VisitorCategory, int] = Field(default_factory=dict)
    zone_id: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_category_mix(self) -> "ReserveRequest":
        if self.category_mix and sum(self.category_mix.values()) != self.number_of_visitors:
            raise ValueError("category_mix counts must add up to number_of_visitors")
        return self


class ReservationResponse(BaseModel):
    booking_id: int
    reservation_token: str
    destination_id: int
    visit_date: date
    number_of_visitors: int
    admitted_today: int
    effective_capacity: int
    expires_at: Optional[datetime] = None
    quote: Optional[QuoteResponse] = None
    zone_id: Optional[int] = None


class ConfirmRequest(BaseModel):
    payment_ref: str = Field(min_length=1, max_length=200)


class CancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by visitor", min_length=1, max_length=500)


class BookingResponse(BaseModel):
    booking_id: int
    destination_id: int
    visit_date: date
    number_of_visitors: int
    status: BookingStatus
    reservation_token: str
    total_price: Optional[Decimal] = None
    payment_ref: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    zone_id: Optional[int] = None

    @classmethod
    def from_domain(cls, booking: Booking) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            destination_id=booking.destination_id,
            visit_date=booking.visit_date,
            number_of_visitors=booking.number_of_visitors,
            status=booking.status,
            reservation_token=booking.reservation_token,
            total_price=booking.total_price,
            payment_ref=booking.payment_ref,
            created_at=booking.created_at,
            confirmed_at=booking.confirmed_at,
            entry_time=booking.entry_time,
            exit_time=booking.exit_time,
            cancellation_reason=booking.cancellation_reason,
            zone_id=booking.zone_id,
        )


@router.post("/reserve", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
def reserve(
    payload: ReserveRequest,
    service: AdmissionService = Depends(get_admission_service),
) -> ReservationResponse:
    try:
        reservation = service.reserve(
            payload.destination_id,
            payload.visit_date,
            payload.number_of_visitors,
            payload.category_mix or None,
            zone_id=payload.zone_id,
        )
    except EngineError as exc:
        raise as_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected reservation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reserve capacity",
        ) from exc

    return ReservationResponse(
        booking_id=reservation.booking_id,
        reservation_token=reservation.token,
        destination_id=reservation.destination_id,
        visit_date=reservation.visit_date,
        number_of_visitors=reservation.visitors,
        admitted_today=reservation.admitted_after,
        effective_capacity=reservation.effective_capacity,
        expires_at=reservation.expires_at,
        quote=QuoteResponse.from_domain(reservation.quote) if reservation.quote else None,
        zone_id=reservation.zone_id,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: int,
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.get_booking(booking_id))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
def confirm_booking(
    booking_id: int,
    payload: ConfirmRequest,
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.confirm(booking_id, payload.payment_ref))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: int,
    payload: Optional[CancelRequest] = None,
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    reason = payload.reason if payload is not None else "Cancelled by visitor"
    try:
        return BookingResponse.from_domain(service.release(booking_id, reason=reason))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post("/{booking_id}/check-in", response_model=BookingResponse)
def check_in(
    booking_id: int,
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.check_in(booking_id))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post("/{booking_id}/check-out", response_model=BookingResponse)
def check_out(
    booking_id: int,
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.check_out(booking_id))
    except EngineError as exc:
        raise as_http_exception(exc) from exc
