"""HTTP controller layer for pricing rules and quotes."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator, model_validator

from capacity_engine.controllers.dependencies import (
    as_http_exception,
    get_pricing_service,
    get_rule_service,
)
from capacity_engine.domain.errors import EngineError
from capacity_engine.domain.models import PriceQuote, PricingRule, VisitorCategory
from capacity_engine.services.pricing_service import PricingService
from capacity_engine.services.rule_service import RuleService
from capacity_engine.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/pricing", tags=["pricing"])


class PricingRuleFields(BaseModel):
    rule_name: str = Field(min_length=1, max_length=200)
    base_price: Decimal = Field(ge=0)
    peak_multiplier: Decimal = Field(default=Decimal("1.0"), ge=0)
    off_peak_multiplier: Decimal = Field(default=Decimal("1.0"), ge=0)
    adult_price: Optional[Decimal] = Field(default=None, ge=0)
    child_price: Optional[Decimal] = Field(default=None, ge=0)
    local_price: Optional[Decimal] = Field(default=None, ge=0)
    foreign_price: Optional[Decimal] = Field(default=None, ge=0)
    applicable_days: list[int] = Field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: int = 0
    is_active: bool = True

    @field_validator("applicable_days")
    @classmethod
    def validate_applicable_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError("applicable_days values must be 0 (Sunday) to 6 (Saturday)")
        return value

    def to_domain(self, rule_id: int, destination_id: int) -> PricingRule:
        return PricingRule(
            rule_id=rule_id,
            destination_id=destination_id,
            rule_name=self.rule_name.strip(),
            base_price=self.base_price,
            peak_multiplier=self.peak_multiplier,
            off_peak_multiplier=self.off_peak_multiplier,
            adult_price=self.adult_price,
            child_price=self.child_price,
            local_price=self.local_price,
            foreign_price=self.foreign_price,
            applicable_days=frozenset(self.applicable_days),
            start_date=self.start_date,
            end_date=self.end_date,
            priority=self.priority,
            is_active=self.is_active,
        )


class PricingRuleCreateRequest(PricingRuleFields):
    destination_id: int = Field(gt=0)


class PricingRuleResponse(PricingRuleFields):
    rule_id: int
    destination_id: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, rule: PricingRule) -> "PricingRuleResponse":
        return cls(
            rule_id=rule.rule_id,
            destination_id=rule.destination_id,
            rule_name=rule.rule_name,
            base_price=rule.base_price,
            peak_multiplier=rule.peak_multiplier,
            off_peak_multiplier=rule.off_peak_multiplier,
            adult_price=rule.adult_price,
            child_price=rule.child_price,
            local_price=rule.local_price,
            foreign_price=rule.foreign_price,
            applicable_days=sorted(rule.applicable_days),
            start_date=rule.start_date,
            end_date=rule.end_date,
            priority=rule.priority,
            is_active=rule.is_active,
            created_at=rule.created_at,
        )


class QuoteRequest(BaseModel):
    destination_id: int = Field(gt=0)
    visit_date: date
    number_of_visitors: int = Field(gt=0)
    category_mix: dict[VisitorCategory, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_category_mix(self) -> "QuoteRequest":
        if self.category_mix and sum(self.category_mix.values()) != self.number_of_visitors:
            raise ValueError("category_mix counts must add up to number_of_visitors")
        return self


class BreakdownResponse(BaseModel):
    base: Decimal
    surge: Decimal


class QuoteResponse(BaseModel):
    total_price: Decimal
    price_per_person: Decimal
    surge_multiplier: Decimal
    demand_ratio: float = Field(ge=0.0)
    breakdown: BreakdownResponse
    reasons: list[str]
    applied_rule_id: Optional[int] = None

    @classmethod
    def from_domain(cls, quote: PriceQuote) -> "QuoteResponse":
        return cls(
            total_price=quote.total_price,
            price_per_person=quote.price_per_person,
            surge_multiplier=quote.surge_multiplier,
            demand_ratio=quote.demand_ratio,
            breakdown=BreakdownResponse(base=quote.breakdown.base, surge=quote.breakdown.surge),
            reasons=list(quote.reasons),
            applied_rule_id=quote.applied_rule_id,
        )


@router.post("/rules", response_model=PricingRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_pricing_rule(
    payload: PricingRuleCreateRequest,
    rules: RuleService = Depends(get_rule_service),
) -> PricingRuleResponse:
    try:
        created = rules.create_pricing_rule(payload.to_domain(0, payload.destination_id))
        return PricingRuleResponse.from_domain(created)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.get("/rules/destination/{destination_id}", response_model=list[PricingRuleResponse])
async def list_pricing_rules(
    destination_id: int,
    rules: RuleService = Depends(get_rule_service),
) -> list[PricingRuleResponse]:
    try:
        return [PricingRuleResponse.from_domain(rule) for rule in rules.pricing_rules(destination_id)]
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.get("/rules/{rule_id}", response_model=PricingRuleResponse)
async def get_pricing_rule(
    rule_id: int,
    rules: RuleService = Depends(get_rule_service),
) -> PricingRuleResponse:
    try:
        return PricingRuleResponse.from_domain(rules.get_pricing_rule(rule_id))
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.put("/rules/{rule_id}", response_model=PricingRuleResponse)
async def update_pricing_rule(
    rule_id: int,
    payload: PricingRuleFields,
    rules: RuleService = Depends(get_rule_service),
) -> PricingRuleResponse:
    try:
        return PricingRuleResponse.from_domain(
            rules.update_pricing_rule(payload.to_domain(rule_id, 0))
        )
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pricing_rule(
    rule_id: int,
    rules: RuleService = Depends(get_rule_service),
) -> None:
    try:
        rules.delete_pricing_rule(rule_id)
    except EngineError as exc:
        raise as_http_exception(exc) from exc


@router.post("/quote", response_model=QuoteResponse)
async def quote_price(
    payload: QuoteRequest,
    service: PricingService = Depends(get_pricing_service),
) -> QuoteResponse:
    """Quote only; nothing is reserved."""
    try:
        result = service.quote(
            payload.destination_id,
            payload.visit_date,
            payload.number_of_visitors,
            payload.category_mix or None,
        )
        return QuoteResponse.from_domain(result)
    except EngineError as exc:
        raise as_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected pricing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to quote price",
        ) from exc
