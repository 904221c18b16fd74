"""Demand-aware price quoting."""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Mapping, Optional

from capacity_engine.domain.constraints import PricingPolicy, validate_pricing_policy
from capacity_engine.domain.errors import (
    DestinationNotFoundError,
    StaleConfigurationError,
    ValidationError,
)
from capacity_engine.domain.models import (
    Destination,
    PriceBreakdown,
    PriceQuote,
    PricingRule,
    VisitorCategory,
)
from capacity_engine.domain.temporal import TimeContext, select_rule
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.rule_service import RuleService
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

_UNIT = Decimal("1")
_ONE = Decimal("1")
_WEEKEND = frozenset({0, 6})

CategoryMix = Mapping[VisitorCategory, int]


def to_currency(value: Decimal) -> Decimal:
    return value.quantize(_UNIT, rounding=ROUND_HALF_UP)


def _percent(value: Decimal) -> str:
    return f"{to_currency(value * 100):f}"


def _line_items(
    rule: PricingRule,
    category_mix: Optional[CategoryMix],
    visitor_count: int,
) -> Decimal:
    if not category_mix:
        return rule.base_price * visitor_count
    if any(count < 0 for count in category_mix.values()):
        raise ValidationError("category counts cannot be negative")
    if sum(category_mix.values()) != visitor_count:
        raise ValidationError("category mix must add up to visitor_count")
    return sum(
        (rule.price_for(category) * count for category, count in category_mix.items()),
        Decimal("0"),
    )


def quote(
    destination: Destination,
    rules: Iterable[PricingRule],
    category_mix: Optional[CategoryMix],
    visitor_count: int,
    demand_ratio: float,
    now: TimeContext,
    policy: Optional[PricingPolicy] = None,
) -> PriceQuote:
    """Price a visit. Deterministic for identical inputs.

    The surge multiplier scales the base component only; a multiplier below
    one discounts the total without a separate line item.
    """
    if visitor_count <= 0:
        raise ValidationError("visitor_count must be > 0")
    policy = policy or PricingPolicy.from_settings(get_settings())

    selected = select_rule(rules, now)
    rule = selected or PricingRule(
        rule_id=0,
        destination_id=destination.destination_id,
        rule_name="Destination base price",
        base_price=destination.base_price,
    )

    reasons: list[str] = []
    multiplier = _ONE
    if demand_ratio >= policy.high_demand_threshold:
        multiplier = rule.peak_multiplier
        if multiplier != _ONE:
            reasons.append(f"High demand: {round(demand_ratio * 100)}% capacity")
    elif demand_ratio < policy.low_demand_threshold:
        multiplier = rule.off_peak_multiplier
        if multiplier < _ONE:
            reasons.append(f"Off-peak discount: {_percent(_ONE - multiplier)}%")
        elif multiplier > _ONE:
            reasons.append(f"Low demand rate: +{_percent(multiplier - _ONE)}%")

    if selected is None and multiplier == _ONE and now.weekday in _WEEKEND:
        multiplier = policy.weekend_surcharge_multiplier
        if multiplier != _ONE:
            reasons.append(f"Weekend rate: +{_percent(multiplier - _ONE)}%")

    base_amount = _line_items(rule, category_mix, visitor_count)
    base = to_currency(base_amount)
    if multiplier > _ONE:
        surge = to_currency(base_amount * (multiplier - _ONE))
        total = base + surge
    else:
        surge = Decimal("0")
        total = to_currency(base_amount * multiplier)

    return PriceQuote(
        total_price=total,
        breakdown=PriceBreakdown(base=base, surge=surge),
        surge_multiplier=multiplier,
        price_per_person=to_currency(total / visitor_count),
        demand_ratio=demand_ratio,
        reasons=tuple(reasons),
        applied_rule_id=selected.rule_id if selected is not None else None,
    )


class PricingService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        rule_service: Optional[RuleService] = None,
        capacity_service: Optional[CapacityService] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._rules = rule_service or RuleService(self._repository, self._settings)
        self._capacity = capacity_service or CapacityService(
            self._repository,
            self._settings,
            rule_service=self._rules,
            clock=clock,
        )
        self._policy = PricingPolicy.from_settings(self._settings)
        validate_pricing_policy(self._policy)

    def _pricing_rules(self, destination_id: int) -> tuple[PricingRule, ...]:
        try:
            return self._rules.pricing_rules(destination_id)
        except StaleConfigurationError:
            logger.warning(
                "Pricing rules unavailable; quoting base price | %s",
                fields(destination_id=destination_id),
                exc_info=True,
            )
            return ()

    def quote(
        self,
        destination_id: int,
        visit_date: date,
        visitor_count: int,
        category_mix: Optional[CategoryMix] = None,
    ) -> PriceQuote:
        """Quote using the live admitted/effective ratio as demand."""
        destination = self._repository.get_destination(destination_id)
        if destination is None:
            raise DestinationNotFoundError(destination_id)

        resolution = self._capacity.resolve(destination_id, visit_date, destination=destination)
        result = quote(
            destination,
            self._pricing_rules(destination_id),
            category_mix,
            visitor_count,
            resolution.demand_ratio,
            self._capacity.time_context(destination, visit_date),
            self._policy,
        )
        logger.info(
            "Price quoted | %s",
            fields(
                destination_id=destination_id,
                visit_date=visit_date,
                visitors=visitor_count,
                demand=f"{resolution.demand_ratio:.2f}",
                multiplier=result.surge_multiplier,
                total=result.total_price,
            ),
        )
        return result
