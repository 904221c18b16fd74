"""HTTP controller layer for capacity rules, resolution and admin decisions."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field, field_validator

from capacity_engine.controllers.dependencies import (
    as_http_exception,
    get_capacity_service,
    get_rule_service,
)
from capacity_engine.domain.errors import EngineError
from capacity_engine.domain.models import (
    AlertLevel,
    CapacityResolution,
    CapacityRule,
    CapacityRuleType,
    OperationalDecision,
    OperationalStatus,
    WeatherRecommendation,
    WeatherSnapshot,
)
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.notification_service import InMemoryNotificationRelay
from capacity_engine.services.rule_service import RuleService
from capacity_engine.services.weather_service import classify_condition
from capacity_engine.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["capacity"])


def _check_days(value: list[int]) -> list[int]:
    for day in value:
        if not 0 <= day <= 6:
            raise ValueError("applicable_days values must be 0 (Sunday) to 6 (Saturday)")
    return value


class CapacityRuleFields(BaseModel):
    rule_name: str = Field(min_length=1, max_length=200)
    rule_type: CapacityRuleType = CapacityRuleType.CUSTOM
    capacity_percentage: Optional[float] = Field(default=None, ge=0.0, le=500.0)
    absolute_capacity: Optional[int] = Field(default=None, ge=0)
    applicable_days: list[int] = Field(default_factory=list)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: int = 0
    is_active: bool = True

    @field_validator("applicable_days")
    @classmethod
    def validate_applicable_days(cls, value: list[int]) -> list[int]:
        return _check_days(value)

    def to_domain(self, rule_id: int, destination_id: int) -> CapacityRule:
        return CapacityRule(
            rule_id=rule_id,
            destination_id=destination_id,
            rule_name=self.rule_name.strip(),
            rule_type=self.rule_type,
            capacity_percentage=self.capacity_percentage,
            absolute_capacity=self.absolute_capacity,
            applicable_days=frozenset(self.applicable_days),
            start_time=self.start_time,
            end_time=self.end_time,
            start_date=self.start_date,
            end_date=self.end_date,
            priority=self.priority,
            is_active=self.is_active,
        )


class CapacityRuleCreateRequest(CapacityRuleFields):
    destination_id: int = Field(gt=0)


class CapacityRuleResponse(CapacityRuleFields):
    rule_id: int
    destination_id: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, rule: CapacityRule) -> "CapacityRuleResponse":
        return cls(
            rule_id=rule.rule_id,
            destination_id=rule.destination_id,
            rule_name=rule.rule_name,
            rule_type=rule.rule_type,
            capacity_percentage=rule.capacity_percentage,
            absolute_capacity=rule.absolute_capacity,
            applicable_days=sorted(rule.applicable_days),
            start_time=rule.start_time,
            end_time=rule.end_time,
            start_date=rule.start_date,
            end_date=rule.end_date,
            priority=rule.priority,
            is_active=rule.is_active,
            created_at=rule.created_at,
        )


class CapacityResolutionResponse(BaseModel):
    destination_id: int
    effective_capacity: int = Field(ge=0)
    status: OperationalStatus
    alert_level: AlertLevel
    reason: str
    capacity_percentage: float = Field(ge=0.0)
    admitted_today: int = Field(ge=0)
    available_slots: int = Field(ge=0)
    applied_rule_id: Optional[int] = None
    override_applied: bool
    weather_factors: list[str]

    @classmethod
    def from_domain(cls, resolution: CapacityResolution) -> "CapacityResolutionResponse":
        return cls(
            destination_id=resolution.destination_id,
            effective_capacity=resolution.effective_capacity,
            status=resolution.status,
            alert_level=resolution.alert_level,
            reason=resolution.reason,
            capacity_percentage=resolution.capacity_percentage,
            admitted_today=resolution.occupancy,
            available_slots=resolution.available_slots,
            applied_rule_id=resolution.applied_rule_id,
            override_applied=resolution.override_applied,
            weather_factors=list(resolution.weather_factors),
        )


class AvailabilityResponse(BaseModel):
    is_available: bool
    available_slots: int = Field(ge=0)
    requested: int = Field(gt=0)
    reason: Optional[str] = None


class WeatherPayload(BaseModel):
    condition: str = Field(min_length=1)
    temperature: float
    rainfall_mm: float = Field(ge=0.0)
    wind_speed_kmph: float = Field(ge=0.0)
    visibility_meters: float = Field(ge=0.0)
    timestamp: Optional[datetime] = None

    @classmethod
    def from_domain(cls, snapshot: WeatherSnapshot) -> "WeatherPayload":
        return cls(
            condition=snapshot.condition,
            temperature=snapshot.temperature,
            rainfall_mm=snapshot.rainfall_mm,
            wind_speed_kmph=snapshot.wind_speed_kmph,
            visibility_meters=snapshot.visibility_meters,
            timestamp=snapshot.timestamp,
        )


class WeatherUpdateRequest(WeatherPayload):
    destination_id: int = Field(gt=0)


class RecommendationResponse(BaseModel):
    status: OperationalStatus
    capacity_percentage: int = Field(ge=0, le=100)
    reason: str
    alert_level: AlertLevel

    @classmethod
    def from_domain(cls, item: WeatherRecommendation) -> "RecommendationResponse":
        return cls(
            status=item.status,
            capacity_percentage=item.capacity_percentage,
            reason=item.reason,
            alert_level=item.alert_level,
        )


class DecisionRequest(BaseModel):
    destination_id: int = Field(gt=0)
    status: OperationalStatus
    effective_capacity: int = Field(ge=0)
    notes: str = Field(default="", max_length=1000)
    issued_by: str = Field(min_length=1, max_length=200)
    decision_date: Optional[date] = None


class DecisionResponse(BaseModel):
    decision_id: int
    destination_id: int
    decision_date: date
    status: OperationalStatus
    effective_capacity: int
    notes: str
    issued_by: str
    created_at: datetime

    @classmethod
    def from_domain(cls, decision: OperationalDecision) -> "DecisionResponse":
        return cls(
            decision_id=decision.decision_id,
            destination_id=decision.destination_id,
            decision_date=decision.decision_date,
            status=decision.status,
            effective_capacity=decision.effective_capacity,
            notes=decision.notes,
            issued_by=decision.issued_by,
            created_at=decision.created_at,
        )


class OperationalStatusResponse(BaseModel):
    destination_id: int
    visit_date: date
    weather: Optional[WeatherPayload] = None
    weather_class: Optional[str] = None
    recommendation: Optional[RecommendationResponse] = None
    decision: Optional[DecisionResponse] = None
    base_capacity: int
    effective_capacity: int
    current_load_percent: float
    on_site_now: int
    resolution: CapacityResolutionResponse


class OccupancyAdjustRequest(BaseModel):
    visit_date: date
    delta: int

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must be non-zero")
        return value


class OccupancyResponse(BaseModel):
    destination_id: int
    visit_date: date
    admitted_today: int
    on_site_now: int


# --- capacity rules ---


@router.post(
    "/capacity/rules",
    response_model=CapacityRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_capacity_rule(
    payload: CapacityRuleCreateRequest,
    rules: RuleService = Depends(get_rule_service),
) -> CapacityRuleResponse:
    try:
        created = rules.create_capacity_rule(payload.to_domain(0, payload.destination_id))
        return CapacityRuleResponse.from_domain(created)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.get("/capacity/rules/destination/{destination_id}", response_model=list[CapacityRuleResponse])
async def list_capacity_rules(
    destination_id: int,
    rules: RuleService = Depends(get_rule_service),
) -> list[CapacityRuleResponse]:
    try:
        return [CapacityRuleResponse.from_domain(rule) for rule in rules.capacity_rules(destination_id)]
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.get("/capacity/rules/{rule_id}", response_model=CapacityRuleResponse)
async def get_capacity_rule(
    rule_id: int,
    rules: RuleService = Depends(get_rule_service),
) -> CapacityRuleResponse:
    try:
        return CapacityRuleResponse.from_domain(rules.get_capacity_rule(rule_id))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.put("/capacity/rules/{rule_id}", response_model=CapacityRuleResponse)
async def update_capacity_rule(
    rule_id: int,
    payload: CapacityRuleFields,
    rules: RuleService = Depends(get_rule_service),
) -> CapacityRuleResponse:
    try:
        updated = rules.update_capacity_rule(payload.to_domain(rule_id, 0))
        return CapacityRuleResponse.from_domain(updated)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.delete("/capacity/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_capacity_rule(
    rule_id: int,
    rules: RuleService = Depends(get_rule_service),
) -> None:
    try:
        rules.delete_capacity_rule(rule_id)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


# --- resolution and availability ---


@router.get(
    "/capacity/destinations/{destination_id}",
    response_model=CapacityResolutionResponse,
)
async def resolve_capacity(
    destination_id: int,
    visit_date: Optional[date] = Query(default=None),
    service: CapacityService = Depends(get_capacity_service),
) -> CapacityResolutionResponse:
    try:
        return CapacityResolutionResponse.from_domain(service.resolve(destination_id, visit_date))
    except EngineError as exc:
        raise as_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected capacity resolution failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to resolve capacity",
        ) from exc


@router.get(
    "/capacity/destinations/{destination_id}/availability",
    response_model=AvailabilityResponse,
)
async def check_availability(
    destination_id: int,
    visit_date: date,
    visitors: int = Query(gt=0),
    zone_id: Optional[int] = Query(default=None, gt=0),
    service: CapacityService = Depends(get_capacity_service),
) -> AvailabilityResponse:
    try:
        check = service.check_availability(destination_id, visit_date, visitors, zone_id)
        return AvailabilityResponse(
            is_available=check.is_available,
            available_slots=check.available_slots,
            requested=check.requested,
            reason=check.reason,
        )
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.get(
    "/capacity/destinations/{destination_id}/operational-status",
    response_model=OperationalStatusResponse,
)
async def get_operational_status(
    destination_id: int,
    visit_date: Optional[date] = Query(default=None),
    service: CapacityService = Depends(get_capacity_service),
) -> OperationalStatusResponse:
    try:
        report = service.operational_status(destination_id, visit_date)
    except EngineError as exc:
        raise as_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected operational status failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load operational status",
        ) from exc

    return OperationalStatusResponse(
        destination_id=report.destination_id,
        visit_date=report.visit_date,
        weather=WeatherPayload.from_domain(report.weather) if report.weather else None,
        weather_class=classify_condition(report.weather.condition).value if report.weather else None,
        recommendation=(
            RecommendationResponse.from_domain(report.recommendation)
            if report.recommendation
            else None
        ),
        decision=DecisionResponse.from_domain(report.decision) if report.decision else None,
        base_capacity=report.base_capacity,
        effective_capacity=report.resolution.effective_capacity,
        current_load_percent=report.current_load_percent,
        on_site_now=report.on_site_now,
        resolution=CapacityResolutionResponse.from_domain(report.resolution),
    )


# --- admin actions ---


@router.post("/capacity/decide", response_model=DecisionResponse, status_code=status.HTTP_201_CREATED)
async def record_decision(
    payload: DecisionRequest,
    service: CapacityService = Depends(get_capacity_service),
) -> DecisionResponse:
    try:
        decision = service.record_decision(
            destination_id=payload.destination_id,
            status=payload.status,
            effective_capacity=payload.effective_capacity,
            notes=payload.notes,
            issued_by=payload.issued_by,
            decision_date=payload.decision_date,
        )
        return DecisionResponse.from_domain(decision)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.delete("/capacity/decisions/{destination_id}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_decision(
    destination_id: int,
    decision_date: Optional[date] = Query(default=None),
    service: CapacityService = Depends(get_capacity_service),
) -> None:
    try:
        removed = service.clear_decision(destination_id, decision_date)
    except EngineError as exc:
        raise as_http_exception(exc) from exc
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No operational decision in force for that date",
        )


@router.post("/capacity/weather", response_model=RecommendationResponse)
async def record_weather(
    payload: WeatherUpdateRequest,
    service: CapacityService = Depends(get_capacity_service),
) -> RecommendationResponse:
    """Store an admin weather reading and return the advisory recommendation."""
    snapshot = WeatherSnapshot(
        condition=payload.condition,
        temperature=payload.temperature,
        rainfall_mm=payload.rainfall_mm,
        wind_speed_kmph=payload.wind_speed_kmph,
        visibility_meters=payload.visibility_meters,
        timestamp=payload.timestamp or datetime.now(),
    )
    try:
        return RecommendationResponse.from_domain(
            service.record_weather(payload.destination_id, snapshot)
        )
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post(
    "/capacity/destinations/{destination_id}/adjust",
    response_model=OccupancyResponse,
)
async def adjust_occupancy(
    destination_id: int,
    payload: OccupancyAdjustRequest,
    service: CapacityService = Depends(get_capacity_service),
) -> OccupancyResponse:
    try:
        occupancy = service.adjust_occupancy(destination_id, payload.visit_date, payload.delta)
        return OccupancyResponse(
            destination_id=occupancy.destination_id,
            visit_date=occupancy.visit_date,
            admitted_today=occupancy.admitted_today,
            on_site_now=occupancy.on_site_now,
        )
    except EngineError as exc:
        raise as_http_exception(exc) from exc


# --- live feed ---


@router.websocket("/ws/capacity")
async def capacity_feed(websocket: WebSocket, destination_id: Optional[int] = None) -> None:
    """Push capacity events; optionally filtered to one destination."""
    feed: Optional[InMemoryNotificationRelay] = getattr(
        websocket.app.state, "notification_feed", None
    )
    if feed is None:
        await websocket.close(code=1011)
        return

    # Subscribe first so nothing published during the handshake is lost.
    subscription = feed.subscribe()
    await websocket.accept()

    async def forward() -> None:
        while True:
            payload = await subscription.next_event()
            if destination_id is not None and payload.get("destinationId") != destination_id:
                continue
            await websocket.send_json(payload)

    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        feed.unsubscribe(subscription)
