"""HTTP controller layer for the destination registry."""

from __future__ import annotations

from datetime import datetime, time
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from capacity_engine.controllers.dependencies import as_http_exception, get_destination_service
from capacity_engine.domain.errors import EngineError
from capacity_engine.domain.models import Destination, DestinationStatus, Zone
from capacity_engine.services.destination_service import DestinationService
from capacity_engine.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/destinations", tags=["destinations"])


class DestinationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    base_capacity: int = Field(gt=0)
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    opening_time: time = time(6, 0)
    closing_time: time = time(18, 0)
    operating_days: list[int] = Field(default_factory=list)

    @field_validator("operating_days")
    @classmethod
    def validate_operating_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError("operating_days values must be 0 (Sunday) to 6 (Saturday)")
        return value


class DestinationStatusRequest(BaseModel):
    status: DestinationStatus


class ZoneCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    max_capacity: int = Field(gt=0)


class ZoneResponse(BaseModel):
    zone_id: int
    destination_id: int
    name: str
    max_capacity: int
    created_at: datetime

    @classmethod
    def from_domain(cls, zone: Zone) -> "ZoneResponse":
        return cls(
            zone_id=zone.zone_id,
            destination_id=zone.destination_id,
            name=zone.name,
            max_capacity=zone.max_capacity,
            created_at=zone.created_at,
        )


class DestinationResponse(BaseModel):
    destination_id: int
    name: str
    base_capacity: int
    base_price: Decimal
    status: DestinationStatus
    operating_days: list[int]
    opening_time: time
    closing_time: time
    created_at: datetime

    @classmethod
    def from_domain(cls, destination: Destination) -> "DestinationResponse":
        return cls(
            destination_id=destination.destination_id,
            name=destination.name,
            base_capacity=destination.base_capacity,
            base_price=destination.base_price,
            status=destination.status,
            operating_days=sorted(destination.operating_days),
            opening_time=destination.opening_time,
            closing_time=destination.closing_time,
            created_at=destination.created_at,
        )


@router.post("", response_model=DestinationResponse, status_code=status.HTTP_201_CREATED)
async def create_destination(
    payload: DestinationCreateRequest,
    service: DestinationService = Depends(get_destination_service),
) -> DestinationResponse:
    try:
        destination = service.create(
            name=payload.name,
            base_capacity=payload.base_capacity,
            base_price=payload.base_price,
            opening_time=payload.opening_time,
            closing_time=payload.closing_time,
            operating_days=payload.operating_days,
        )
        return DestinationResponse.from_domain(destination)
    except EngineError as exc:
        raise as_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected destination creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create destination",
        ) from exc


@router.get("", response_model=list[DestinationResponse])
async def list_destinations(
    service: DestinationService = Depends(get_destination_service),
) -> list[DestinationResponse]:
    return [DestinationResponse.from_domain(item) for item in service.list_all()]


@router.get("/{destination_id}", response_model=DestinationResponse)
async def get_destination(
    destination_id: int,
    service: DestinationService = Depends(get_destination_service),
) -> DestinationResponse:
    try:
        return DestinationResponse.from_domain(service.get(destination_id))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.patch("/{destination_id}/status", response_model=DestinationResponse)
async def update_destination_status(
    destination_id: int,
    payload: DestinationStatusRequest,
    service: DestinationService = Depends(get_destination_service),
) -> DestinationResponse:
    try:
        return DestinationResponse.from_domain(service.set_status(destination_id, payload.status))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post(
    "/{destination_id}/zones",
    response_model=ZoneResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_zone(
    destination_id: int,
    payload: ZoneCreateRequest,
    service: DestinationService = Depends(get_destination_service),
) -> ZoneResponse:
    try:
        zone = service.create_zone(
            destination_id,
            name=payload.name,
            max_capacity=payload.max_capacity,
        )
        return ZoneResponse.from_domain(zone)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.get("/{destination_id}/zones", response_model=list[ZoneResponse])
async def list_zones(
    destination_id: int,
    service: DestinationService = Depends(get_destination_service),
) -> list[ZoneResponse]:
    try:
        return [ZoneResponse.from_domain(zone) for zone in service.list_zones(destination_id)]
    except EngineError as exc:
        raise as_http_exception(exc) from exc
