"""Domain-level validation rules and tunable policy constants."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from capacity_engine.domain.errors import ValidationError
from capacity_engine.domain.models import (
    CapacityRule,
    Destination,
    OperationalStatus,
    PricingRule,
    Zone,
)
from capacity_engine.utils.config import Settings


MAX_CAPACITY_PERCENTAGE = 500.0


@dataclass(frozen=True)
class WeatherPenaltyPolicy:
    heavy_rain_threshold_mm: float
    heavy_rain_penalty_percent: float
    low_visibility_threshold_meters: float
    low_visibility_penalty_percent: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "WeatherPenaltyPolicy":
        return cls(
            heavy_rain_threshold_mm=settings.weather_heavy_rain_threshold_mm,
            heavy_rain_penalty_percent=settings.weather_heavy_rain_penalty_percent,
            low_visibility_threshold_meters=settings.weather_low_visibility_threshold_meters,
            low_visibility_penalty_percent=settings.weather_low_visibility_penalty_percent,
        )


@dataclass(frozen=True)
class AlertPolicy:
    high_threshold: float
    critical_threshold: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertPolicy":
        return cls(
            high_threshold=settings.alert_high_threshold,
            critical_threshold=settings.alert_critical_threshold,
        )


@dataclass(frozen=True)
class PricingPolicy:
    high_demand_threshold: float
    low_demand_threshold: float
    weekend_surcharge_multiplier: Decimal

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingPolicy":
        return cls(
            high_demand_threshold=settings.pricing_high_demand_threshold,
            low_demand_threshold=settings.pricing_low_demand_threshold,
            weekend_surcharge_multiplier=Decimal(settings.pricing_weekend_surcharge_multiplier),
        )


def validate_weather_policy(policy: WeatherPenaltyPolicy) -> None:
    if policy.heavy_rain_threshold_mm < 0:
        raise ValidationError("heavy_rain_threshold_mm must be >= 0")
    if policy.low_visibility_threshold_meters < 0:
        raise ValidationError("low_visibility_threshold_meters must be >= 0")
    for name in ("heavy_rain_penalty_percent", "low_visibility_penalty_percent"):
        value = getattr(policy, name)
        if not 0.0 <= value <= 100.0:
            raise ValidationError(f"{name} must be between 0 and 100")


def validate_alert_policy(policy: AlertPolicy) -> None:
    if not 0.0 < policy.high_threshold < policy.critical_threshold <= 1.0:
        raise ValidationError("alert thresholds must satisfy 0 < high < critical <= 1")


def validate_pricing_policy(policy: PricingPolicy) -> None:
    if not 0.0 <= policy.low_demand_threshold < policy.high_demand_threshold <= 1.0:
        raise ValidationError("demand thresholds must satisfy 0 <= low < high <= 1")
    if policy.weekend_surcharge_multiplier < 0:
        raise ValidationError("weekend_surcharge_multiplier must be >= 0")


def _validate_days(days: Iterable[int], field_name: str) -> None:
    for day in days:
        if not 0 <= day <= 6:
            raise ValidationError(f"{field_name} values must be weekday indices 0-6")


def _validate_windows(rule: CapacityRule | PricingRule) -> None:
    if rule.start_date and rule.end_date and rule.start_date > rule.end_date:
        raise ValidationError("start_date must be on or before end_date")
    start_time = getattr(rule, "start_time", None)
    end_time = getattr(rule, "end_time", None)
    if start_time and end_time and start_time >= end_time:
        raise ValidationError("start_time must be before end_time (same-day window)")


def validate_destination(destination: Destination) -> None:
    if not destination.name.strip():
        raise ValidationError("destination name must be non-empty")
    if destination.base_capacity <= 0:
        raise ValidationError("base_capacity must be > 0")
    if destination.base_price < 0:
        raise ValidationError("base_price must be >= 0")
    if destination.opening_time >= destination.closing_time:
        raise ValidationError("opening_time must be before closing_time")
    _validate_days(destination.operating_days, "operating_days")


def validate_zone(zone: Zone) -> None:
    if not zone.name.strip():
        raise ValidationError("zone name must be non-empty")
    if zone.max_capacity <= 0:
        raise ValidationError("zone max_capacity must be > 0")


def validate_capacity_rule(rule: CapacityRule) -> None:
    if not rule.rule_name.strip():
        raise ValidationError("rule_name must be non-empty")
    if rule.capacity_percentage is None and rule.absolute_capacity is None:
        raise ValidationError("one of capacity_percentage or absolute_capacity is required")
    if rule.capacity_percentage is not None and not (
        0.0 <= rule.capacity_percentage <= MAX_CAPACITY_PERCENTAGE
    ):
        raise ValidationError("capacity_percentage must be between 0 and 500")
    if rule.absolute_capacity is not None and rule.absolute_capacity < 0:
        raise ValidationError("absolute_capacity cannot be negative")
    _validate_days(rule.applicable_days, "applicable_days")
    _validate_windows(rule)


def validate_pricing_rule(rule: PricingRule) -> None:
    if not rule.rule_name.strip():
        raise ValidationError("rule_name must be non-empty")
    if rule.base_price < 0:
        raise ValidationError("base_price must be >= 0")
    if rule.peak_multiplier < 0 or rule.off_peak_multiplier < 0:
        raise ValidationError("multipliers must be >= 0")
    for name in ("adult_price", "child_price", "local_price", "foreign_price"):
        value: Optional[Decimal] = getattr(rule, name)
        if value is not None and value < 0:
            raise ValidationError(f"{name} must be >= 0")
    _validate_days(rule.applicable_days, "applicable_days")
    _validate_windows(rule)


def validate_decision(status: OperationalStatus, effective_capacity: int) -> None:
    if effective_capacity < 0:
        raise ValidationError("effective_capacity cannot be negative")
    if status == OperationalStatus.CLOSED and effective_capacity != 0:
        raise ValidationError("a CLOSED decision must set effective_capacity to 0")
