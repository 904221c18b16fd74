from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import date, datetime, time
from decimal import Decimal

import pytest

from capacity_engine.domain.errors import DestinationNotFoundError, ValidationError
from capacity_engine.domain.models import (
    Destination,
    DestinationStatus,
    PricingRule,
    VisitorCategory,
    WeatherSnapshot,
)
from capacity_engine.domain.temporal import TimeContext
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.destination_service import DestinationService
from capacity_engine.services.pricing_service import PricingService, quote, to_currency
from capacity_engine.services.rule_service import RuleService
from capacity_engine.services.weather_service import WeatherService
from capacity_engine.utils.config import get_settings


MONDAY = TimeContext.at(date(2024, 1, 8), time(10, 0))
SATURDAY = TimeContext.at(date(2024, 1, 6), time(10, 0))
NOW = datetime(2024, 1, 8, 10, 0)


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, seed_demo_data=False)


class ClearSkies:
    def get_current_weather(self, destination_id: int) -> WeatherSnapshot:
        return WeatherSnapshot(
            condition="Sunny",
            temperature=22.0,
            rainfall_mm=0.0,
            wind_speed_kmph=8.0,
            visibility_meters=10000.0,
            timestamp=NOW,
        )


def _destination(base_price: str = "50") -> Destination:
    return Destination(
        destination_id=1,
        name="Cloud Forest",
        base_capacity=2000,
        base_price=Decimal(base_price),
        status=DestinationStatus.ACTIVE,
        operating_days=frozenset(),
        opening_time=time(6, 0),
        closing_time=time(18, 0),
        created_at=datetime(2024, 1, 1),
    )


def _rule(**overrides) -> PricingRule:
    values = {
        "rule_id": 1,
        "destination_id": 1,
        "rule_name": "Standard fare",
        "base_price": Decimal("50"),
        "peak_multiplier": Decimal("1.5"),
        "off_peak_multiplier": Decimal("0.8"),
    }
    values.update(overrides)
    return PricingRule(**values)


# --- pure quoting ---

def test_peak_demand_adds_surge_line() -> None:
    result = quote(_destination(), [_rule()], None, 1, 0.92, MONDAY)

    assert result.breakdown.base == Decimal("50")
    assert result.breakdown.surge == Decimal("25")
    assert result.total_price == Decimal("75")
    assert result.surge_multiplier == Decimal("1.5")
    assert result.reasons == ("High demand: 92% capacity",)
    assert result.applied_rule_id == 1


def test_quote_is_deterministic() -> None:
    first = quote(_destination(), [_rule()], None, 4, 0.92, MONDAY)
    second = quote(_destination(), [_rule()], None, 4, 0.92, MONDAY)

    assert first == second
    assert first.total_price == Decimal("300")
    assert first.price_per_person == Decimal("75")


def test_off_peak_discount_has_no_surge_line() -> None:
    result = quote(_destination(), [_rule()], None, 2, 0.1, MONDAY)

    assert result.breakdown.base == Decimal("100")
    assert result.breakdown.surge == Decimal("0")
    assert result.total_price == Decimal("80")
    assert result.reasons == ("Off-peak discount: 20%",)


def test_moderate_demand_uses_flat_rate() -> None:
    result = quote(_destination(), [_rule()], None, 2, 0.5, MONDAY)

    assert result.total_price == Decimal("100")
    assert result.surge_multiplier == Decimal("1")
    assert result.reasons == ()


def test_weekend_surcharge_without_rule() -> None:
    result = quote(_destination(), [], None, 2, 0.5, SATURDAY)

    assert result.surge_multiplier == Decimal("1.15")
    assert result.breakdown.base == Decimal("100")
    assert result.breakdown.surge == Decimal("15")
    assert result.total_price == Decimal("115")
    assert result.reasons == ("Weekend rate: +15%",)
    assert result.applied_rule_id is None


def test_weekend_surcharge_skipped_when_rule_applies() -> None:
    result = quote(_destination(), [_rule()], None, 2, 0.5, SATURDAY)

    assert result.total_price == Decimal("100")
    assert result.reasons == ()


def test_no_rule_uses_destination_base_price_on_weekdays() -> None:
    result = quote(_destination("40"), [], None, 3, 0.5, MONDAY)

    assert result.total_price == Decimal("120")
    assert result.price_per_person == Decimal("40")


def test_category_prices_override_base() -> None:
    rule = _rule(child_price=Decimal("20"), foreign_price=Decimal("80"))
    mix = {VisitorCategory.ADULT: 2, VisitorCategory.CHILD: 1, VisitorCategory.FOREIGN: 1}

    result = quote(_destination(), [rule], mix, 4, 0.5, MONDAY)

    assert result.breakdown.base == Decimal("200")
    assert result.total_price == Decimal("200")


def test_category_mix_must_match_visitor_count() -> None:
    with pytest.raises(ValidationError):
        quote(_destination(), [_rule()], {VisitorCategory.ADULT: 2}, 3, 0.5, MONDAY)


def test_negative_category_count_raises() -> None:
    with pytest.raises(ValidationError):
        quote(
            _destination(),
            [_rule()],
            {VisitorCategory.ADULT: 3, VisitorCategory.CHILD: -1},
            2,
            0.5,
            MONDAY,
        )


def test_zero_visitors_raises() -> None:
    with pytest.raises(ValidationError):
        quote(_destination(), [_rule()], None, 0, 0.5, MONDAY)


def test_amounts_round_half_up() -> None:
    rule = _rule(base_price=Decimal("25"), peak_multiplier=Decimal("1.1"))

    result = quote(_destination(), [rule], None, 1, 0.95, MONDAY)

    assert result.breakdown.surge == Decimal("3")
    assert result.total_price == Decimal("28")
    assert to_currency(Decimal("10.5")) == Decimal("11")
    assert to_currency(Decimal("10.49")) == Decimal("10")


def test_rule_outside_its_dates_falls_back_to_base_price() -> None:
    rule = _rule(start_date=date(2024, 6, 1), end_date=date(2024, 8, 31), base_price=Decimal("90"))

    result = quote(_destination(), [rule], None, 1, 0.5, MONDAY)

    assert result.total_price == Decimal("50")
    assert result.applied_rule_id is None


# --- service wiring ---

def _build_pricing(tmp_path, filename: str):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    rules = RuleService(repository=repository, settings=settings)
    weather = WeatherService(
        repository=repository, settings=settings, provider=ClearSkies(), clock=lambda: NOW
    )
    capacity = CapacityService(
        repository=repository,
        settings=settings,
        rule_service=rules,
        weather_service=weather,
        clock=lambda: NOW,
    )
    pricing = PricingService(
        repository=repository,
        settings=settings,
        rule_service=rules,
        capacity_service=capacity,
    )
    destination = DestinationService(repository=repository, settings=settings).create(
        name="Cloud Forest", base_capacity=2000, base_price=Decimal("50")
    )
    return pricing, repository, rules, destination


def test_service_uses_live_demand_ratio(tmp_path):
    pricing, repository, rules, destination = _build_pricing(tmp_path, "pricing_demand.db")
    rules.create_pricing_rule(_rule(rule_id=0, destination_id=destination.destination_id))

    calm = pricing.quote(destination.destination_id, NOW.date(), 2)
    assert calm.demand_ratio == 0.0
    assert calm.total_price == Decimal("80")

    repository.adjust_admitted(destination.destination_id, NOW.date(), 1900)
    busy = pricing.quote(destination.destination_id, NOW.date(), 2)

    assert busy.demand_ratio == pytest.approx(0.95)
    assert busy.surge_multiplier == Decimal("1.5")
    assert busy.total_price == Decimal("150")


def test_service_falls_back_when_rules_unavailable(tmp_path, monkeypatch):
    pricing, repository, rules, destination = _build_pricing(tmp_path, "pricing_down.db")
    rules.create_pricing_rule(
        _rule(rule_id=0, destination_id=destination.destination_id, base_price=Decimal("90"))
    )
    rules.invalidate()

    def _broken(destination_id: int):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(repository, "list_pricing_rules", _broken)

    result = pricing.quote(destination.destination_id, NOW.date(), 1, {VisitorCategory.ADULT: 1})

    assert result.applied_rule_id is None
    assert result.total_price == Decimal("50")


def test_service_unknown_destination(tmp_path):
    pricing, _, _, _ = _build_pricing(tmp_path, "pricing_missing.db")

    with pytest.raises(DestinationNotFoundError):
        pricing.quote(404, NOW.date(), 1)
