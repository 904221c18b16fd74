from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from capacity_engine.domain.errors import (
    DestinationNotFoundError,
    ValidationError,
    ZoneNotFoundError,
)
from capacity_engine.domain.models import (
    AlertLevel,
    CapacityRule,
    CapacityRuleType,
    Destination,
    DestinationStatus,
    OperationalDecision,
    OperationalStatus,
    WeatherSnapshot,
)
from capacity_engine.domain.temporal import TimeContext
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.capacity_service import CapacityService, resolve_effective_capacity
from capacity_engine.services.destination_service import DestinationService
from capacity_engine.services.notification_service import InMemoryNotificationRelay
from capacity_engine.services.rule_service import RuleService
from capacity_engine.services.weather_service import WeatherService, recommend_capacity
from capacity_engine.utils.config import get_settings


MONDAY = date(2024, 1, 8)
NOW = datetime(2024, 1, 8, 10, 0)


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, seed_demo_data=False)


def _weather(rainfall: float = 0.0, visibility: float = 10000.0, wind: float = 10.0) -> WeatherSnapshot:
    return WeatherSnapshot(
        condition="Sunny",
        temperature=22.0,
        rainfall_mm=rainfall,
        wind_speed_kmph=wind,
        visibility_meters=visibility,
        timestamp=NOW,
    )


class FixedWeatherProvider:
    def __init__(self, snapshot: WeatherSnapshot | None = None, error: Exception | None = None):
        self.snapshot = snapshot or _weather()
        self.error = error
        self.calls = 0

    def get_current_weather(self, destination_id: int) -> WeatherSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.snapshot


def _destination(base_capacity: int = 1000) -> Destination:
    return Destination(
        destination_id=1,
        name="Cloud Forest",
        base_capacity=base_capacity,
        base_price=Decimal("50"),
        status=DestinationStatus.ACTIVE,
        operating_days=frozenset(),
        opening_time=time(6, 0),
        closing_time=time(18, 0),
        created_at=datetime(2024, 1, 1),
    )


def _rule(rule_id: int, **overrides) -> CapacityRule:
    values = {
        "rule_id": rule_id,
        "destination_id": 1,
        "rule_name": f"rule-{rule_id}",
        "rule_type": CapacityRuleType.SEASONAL,
    }
    values.update(overrides)
    return CapacityRule(**values)


def _build_service(tmp_path, filename: str, provider: FixedWeatherProvider | None = None):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    relay = InMemoryNotificationRelay()
    rules = RuleService(repository=repository, settings=settings)
    weather = WeatherService(
        repository=repository,
        settings=settings,
        provider=provider or FixedWeatherProvider(),
        clock=lambda: NOW,
    )
    service = CapacityService(
        repository=repository,
        settings=settings,
        rule_service=rules,
        weather_service=weather,
        relay=relay,
        clock=lambda: NOW,
    )
    destinations = DestinationService(repository=repository, settings=settings, clock=lambda: NOW)
    destination = destinations.create(name="Cloud Forest", base_capacity=2000, base_price=Decimal("50"))
    return service, repository, rules, relay, destination


# --- pure resolution ---

def test_higher_priority_rule_sets_capacity() -> None:
    now = TimeContext.at(MONDAY, time(10, 0))
    rules = [
        _rule(1, capacity_percentage=50.0, priority=5),
        _rule(2, capacity_percentage=80.0, priority=10),
    ]

    for ordering in (rules, list(reversed(rules))):
        resolution = resolve_effective_capacity(_destination(), ordering, now)
        assert resolution.effective_capacity == 800
        assert resolution.applied_rule_id == 2
        assert resolution.status == OperationalStatus.REDUCED


def test_manual_override_outranks_rules() -> None:
    now = TimeContext.at(MONDAY, time(10, 0))
    override = OperationalDecision(
        decision_id=1,
        destination_id=1,
        decision_date=MONDAY,
        status=OperationalStatus.REDUCED,
        effective_capacity=100,
        notes="Trail repairs",
        issued_by="ops-admin",
        created_at=NOW,
    )

    resolution = resolve_effective_capacity(
        _destination(),
        [_rule(1, absolute_capacity=500, priority=99)],
        now,
        manual_override=override,
    )

    assert resolution.effective_capacity == 100
    assert resolution.override_applied is True
    assert resolution.reason == "Trail repairs"
    assert resolution.applied_rule_id is None


def test_override_for_another_day_is_ignored() -> None:
    override = OperationalDecision(
        decision_id=1,
        destination_id=1,
        decision_date=date(2024, 1, 7),
        status=OperationalStatus.CLOSED,
        effective_capacity=0,
        notes="Storm",
        issued_by="ops-admin",
        created_at=NOW,
    )

    resolution = resolve_effective_capacity(
        _destination(),
        [],
        TimeContext.at(MONDAY, time(10, 0)),
        manual_override=override,
    )

    assert resolution.effective_capacity == 1000
    assert resolution.override_applied is False


def test_absolute_capacity_beats_percentage() -> None:
    rule = _rule(1, capacity_percentage=200.0, absolute_capacity=300)
    resolution = resolve_effective_capacity(_destination(), [rule], TimeContext.at(MONDAY, time(10, 0)))

    assert resolution.effective_capacity == 300


def test_percentage_rounds_half_up() -> None:
    rule = _rule(1, capacity_percentage=50.0)
    resolution = resolve_effective_capacity(_destination(5), [rule], TimeContext.at(MONDAY, time(10, 0)))

    assert resolution.effective_capacity == 3


def test_weather_penalties_compose_multiplicatively() -> None:
    resolution = resolve_effective_capacity(
        _destination(2000),
        [],
        TimeContext.at(MONDAY, time(10, 0)),
        weather=_weather(rainfall=30.0, visibility=300.0),
    )

    assert resolution.effective_capacity == 1360
    assert len(resolution.weather_factors) == 2
    assert "Heavy rain" in resolution.reason
    assert "Low visibility" in resolution.reason


def test_light_weather_has_no_effect() -> None:
    resolution = resolve_effective_capacity(
        _destination(2000),
        [],
        TimeContext.at(MONDAY, time(10, 0)),
        weather=_weather(rainfall=25.0, visibility=500.0),
    )

    assert resolution.effective_capacity == 2000
    assert resolution.weather_factors == ()
    assert resolution.status == OperationalStatus.NORMAL


@pytest.mark.parametrize(
    ("occupancy", "expected"),
    [(1399, AlertLevel.NORMAL), (1400, AlertLevel.HIGH), (1799, AlertLevel.HIGH), (1800, AlertLevel.CRITICAL)],
)
def test_alert_level_bands(occupancy: int, expected: AlertLevel) -> None:
    resolution = resolve_effective_capacity(
        _destination(2000),
        [],
        TimeContext.at(MONDAY, time(10, 0)),
        occupancy=occupancy,
    )
    assert resolution.alert_level == expected


def test_ninety_five_percent_is_critical() -> None:
    resolution = resolve_effective_capacity(
        _destination(2000),
        [],
        TimeContext.at(MONDAY, time(10, 0)),
        occupancy=1900,
    )

    assert resolution.alert_level == AlertLevel.CRITICAL
    assert resolution.available_slots == 100


def test_zero_capacity_is_closed_and_critical() -> None:
    resolution = resolve_effective_capacity(
        _destination(),
        [_rule(1, absolute_capacity=0)],
        TimeContext.at(MONDAY, time(10, 0)),
    )

    assert resolution.status == OperationalStatus.CLOSED
    assert resolution.alert_level == AlertLevel.CRITICAL
    assert resolution.demand_ratio == 1.0


# --- service wiring ---

def test_resolve_counts_admitted_visitors(tmp_path):
    service, repository, _, _, destination = _build_service(tmp_path, "admitted.db")
    repository.adjust_admitted(destination.destination_id, MONDAY, 1500)

    resolution = service.resolve(destination.destination_id, MONDAY)

    assert resolution.occupancy == 1500
    assert resolution.alert_level == AlertLevel.HIGH


def test_unknown_destination_raises(tmp_path):
    service, _, _, _, _ = _build_service(tmp_path, "missing.db")

    with pytest.raises(DestinationNotFoundError):
        service.resolve(999, MONDAY)


def test_weather_failure_degrades_to_no_adjustment(tmp_path):
    provider = FixedWeatherProvider(error=TimeoutError("provider timed out"))
    service, _, _, _, destination = _build_service(tmp_path, "weather_down.db", provider)

    resolution = service.resolve(destination.destination_id, MONDAY)

    assert resolution.effective_capacity == 2000
    assert resolution.weather_factors == ()


def test_weather_snapshot_is_cached_and_logged(tmp_path):
    provider = FixedWeatherProvider(_weather(rainfall=40.0))
    service, repository, _, _, destination = _build_service(tmp_path, "weather_cache.db", provider)

    first = service.resolve(destination.destination_id, MONDAY)
    second = service.resolve(destination.destination_id, MONDAY)

    assert first.effective_capacity == second.effective_capacity == 1600
    assert provider.calls == 1
    assert repository.count_weather_logs(destination.destination_id) == 1


def test_live_weather_only_applies_to_today(tmp_path):
    provider = FixedWeatherProvider(_weather(rainfall=40.0))
    service, _, _, _, destination = _build_service(tmp_path, "weather_today.db", provider)

    today = service.resolve(destination.destination_id, MONDAY)
    next_month = service.resolve(destination.destination_id, MONDAY + timedelta(days=30))

    assert today.effective_capacity == 1600
    assert next_month.effective_capacity == 2000
    assert next_month.weather_factors == ()
    assert provider.calls == 1


def test_rule_store_failure_degrades_to_base_capacity(tmp_path, monkeypatch):
    service, repository, rules, _, destination = _build_service(tmp_path, "rules_down.db")
    rules.create_capacity_rule(_rule(0, destination_id=destination.destination_id, capacity_percentage=50.0))
    rules.invalidate()

    def _broken(destination_id: int):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(repository, "list_capacity_rules", _broken)

    resolution = service.resolve(destination.destination_id, MONDAY)

    assert resolution.effective_capacity == 2000
    assert resolution.applied_rule_id is None


def test_rule_changes_invalidate_cache(tmp_path):
    service, _, rules, _, destination = _build_service(tmp_path, "rule_cache.db")
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 2000

    created = rules.create_capacity_rule(
        _rule(0, destination_id=destination.destination_id, capacity_percentage=110.0, priority=5)
    )
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 2200

    rules.update_capacity_rule(replace(created, capacity_percentage=None, absolute_capacity=900))
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 900

    rules.delete_capacity_rule(created.rule_id)
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 2000


def test_rule_written_during_a_load_is_not_hidden_by_the_cache(tmp_path, monkeypatch):
    service, repository, rules, _, destination = _build_service(tmp_path, "rule_race.db")
    original = repository.list_capacity_rules
    loaded = threading.Event()
    resume = threading.Event()

    def _slow(destination_id: int):
        result = original(destination_id)
        loaded.set()
        resume.wait(timeout=5)
        return result

    monkeypatch.setattr(repository, "list_capacity_rules", _slow)
    reader = threading.Thread(target=rules.capacity_rules, args=(destination.destination_id,))
    reader.start()
    assert loaded.wait(timeout=5)

    monkeypatch.setattr(repository, "list_capacity_rules", original)
    rules.create_capacity_rule(
        _rule(0, destination_id=destination.destination_id, capacity_percentage=50.0, priority=5)
    )
    resume.set()
    reader.join(timeout=5)

    assert len(rules.capacity_rules(destination.destination_id)) == 1
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 1000


def test_full_invalidation_during_a_load_is_not_undone(tmp_path, monkeypatch):
    _, repository, rules, _, destination = _build_service(tmp_path, "rule_race_all.db")
    original = repository.list_capacity_rules
    calls: list[int] = []

    def _counting(destination_id: int):
        calls.append(destination_id)
        if len(calls) == 1:
            rules.invalidate()
        return original(destination_id)

    monkeypatch.setattr(repository, "list_capacity_rules", _counting)

    rules.capacity_rules(destination.destination_id)
    rules.capacity_rules(destination.destination_id)
    rules.capacity_rules(destination.destination_id)

    assert len(calls) == 2


def test_future_dates_are_evaluated_at_opening_time(tmp_path):
    service, _, rules, _, destination = _build_service(tmp_path, "opening_time.db")
    rules.create_capacity_rule(
        _rule(
            0,
            destination_id=destination.destination_id,
            capacity_percentage=50.0,
            start_time=time(6, 0),
            end_time=time(8, 0),
        )
    )

    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 2000
    tomorrow = date(2024, 1, 9)
    assert service.resolve(destination.destination_id, tomorrow).effective_capacity == 1000


def test_recorded_decision_overrides_until_cleared(tmp_path):
    service, _, rules, relay, destination = _build_service(tmp_path, "decision.db")
    rules.create_capacity_rule(
        _rule(0, destination_id=destination.destination_id, absolute_capacity=500, priority=10)
    )

    decision = service.record_decision(
        destination_id=destination.destination_id,
        status=OperationalStatus.REDUCED,
        effective_capacity=100,
        notes="Landslide on east trail",
        issued_by="ops-admin",
    )
    assert decision.decision_date == MONDAY
    resolution = service.resolve(destination.destination_id, MONDAY)
    assert resolution.effective_capacity == 100
    assert resolution.override_applied is True

    service.record_decision(
        destination_id=destination.destination_id,
        status=OperationalStatus.REDUCED,
        effective_capacity=250,
        issued_by="ops-admin",
    )
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 250

    assert service.clear_decision(destination.destination_id) is True
    assert service.resolve(destination.destination_id, MONDAY).effective_capacity == 500
    assert [event["eventType"] for event in relay.recent_events()] == [
        "DECISION_RECORDED",
        "DECISION_RECORDED",
        "DECISION_CLEARED",
    ]


def test_decision_rejects_negative_capacity(tmp_path):
    service, _, _, _, destination = _build_service(tmp_path, "bad_decision.db")

    with pytest.raises(ValidationError):
        service.record_decision(
            destination_id=destination.destination_id,
            status=OperationalStatus.REDUCED,
            effective_capacity=-5,
            issued_by="ops-admin",
        )


def test_check_availability(tmp_path):
    service, repository, _, _, destination = _build_service(tmp_path, "availability.db")
    repository.adjust_admitted(destination.destination_id, MONDAY, 1900)

    too_many = service.check_availability(destination.destination_id, MONDAY, 150)
    fits = service.check_availability(destination.destination_id, MONDAY, 50)

    assert too_many.is_available is False
    assert too_many.available_slots == 100
    assert fits.is_available is True


def test_check_availability_reports_the_tighter_zone(tmp_path):
    service, repository, _, _, destination = _build_service(tmp_path, "zone_availability.db")
    zones = DestinationService(repository=repository, clock=lambda: NOW)
    zone = zones.create_zone(destination.destination_id, name="Viewpoint", max_capacity=10)

    fits = service.check_availability(destination.destination_id, MONDAY, 5, zone.zone_id)
    assert fits.is_available is True
    assert fits.available_slots == 10

    repository.reserve_capacity(
        destination_id=destination.destination_id,
        visit_date=MONDAY,
        visitors=8,
        effective_capacity=2000,
        reservation_token="zone-seed",
        total_price=None,
        created_at=NOW,
        zone_id=zone.zone_id,
        zone_capacity=zone.max_capacity,
    )
    crowded = service.check_availability(destination.destination_id, MONDAY, 5, zone.zone_id)
    elsewhere = service.check_availability(destination.destination_id, MONDAY, 5)

    assert crowded.is_available is False
    assert crowded.available_slots == 2
    assert crowded.reason == "Zone 'Viewpoint' capacity exceeded"
    assert elsewhere.is_available is True
    assert elsewhere.available_slots == 1992


def test_check_availability_rejects_zone_of_another_destination(tmp_path):
    service, repository, _, _, destination = _build_service(tmp_path, "zone_foreign.db")
    zones = DestinationService(repository=repository, clock=lambda: NOW)
    other = zones.create(name="Lakeside", base_capacity=500)
    foreign = zones.create_zone(other.destination_id, name="Jetty", max_capacity=40)

    with pytest.raises(ZoneNotFoundError):
        service.check_availability(destination.destination_id, MONDAY, 5, foreign.zone_id)


def test_adjust_occupancy_clamps_at_zero(tmp_path):
    service, _, _, relay, destination = _build_service(tmp_path, "adjust.db")

    service.adjust_occupancy(destination.destination_id, MONDAY, 30)
    occupancy = service.adjust_occupancy(destination.destination_id, MONDAY, -100)

    assert occupancy.admitted_today == 0
    assert relay.recent_events()[-1]["eventType"] == "OCCUPANCY_ADJUSTED"


def test_operational_status_includes_recommendation(tmp_path):
    provider = FixedWeatherProvider(_weather(rainfall=30.0))
    service, _, _, _, destination = _build_service(tmp_path, "ops_status.db", provider)

    report = service.operational_status(destination.destination_id, MONDAY)

    assert report.recommendation is not None
    assert report.recommendation.status == OperationalStatus.REDUCED
    assert report.recommendation.capacity_percentage == 60
    # Advisory only: the resolver applies its own rain band, not the 60% advice.
    assert report.resolution.effective_capacity == 1600


# --- advisory recommendation ---

def test_recommendation_optimal_conditions() -> None:
    result = recommend_capacity(_weather())

    assert result.status == OperationalStatus.NORMAL
    assert result.capacity_percentage == 100
    assert result.reason == "Conditions are optimal."


@pytest.mark.parametrize(
    ("snapshot", "status", "percentage", "alert"),
    [
        (_weather(rainfall=15.0), OperationalStatus.REDUCED, 80, AlertLevel.MODERATE),
        (_weather(rainfall=30.0), OperationalStatus.REDUCED, 60, AlertLevel.HIGH),
        (_weather(rainfall=60.0), OperationalStatus.CLOSED, 0, AlertLevel.CRITICAL),
        (_weather(wind=50.0), OperationalStatus.REDUCED, 50, AlertLevel.HIGH),
        (_weather(wind=75.0), OperationalStatus.CLOSED, 0, AlertLevel.CRITICAL),
        (_weather(visibility=300.0), OperationalStatus.REDUCED, 70, AlertLevel.HIGH),
        (_weather(visibility=40.0), OperationalStatus.CLOSED, 0, AlertLevel.CRITICAL),
        (_weather(rainfall=15.0, visibility=300.0), OperationalStatus.REDUCED, 70, AlertLevel.HIGH),
    ],
)
def test_recommendation_bands(snapshot, status, percentage, alert) -> None:
    result = recommend_capacity(snapshot)

    assert result.status == status
    assert result.capacity_percentage == percentage
    assert result.alert_level == alert


def test_closed_recommendation_is_not_downgraded_by_later_checks() -> None:
    result = recommend_capacity(_weather(rainfall=60.0, wind=50.0))

    assert result.status == OperationalStatus.CLOSED
    assert result.capacity_percentage == 0
    assert result.alert_level == AlertLevel.CRITICAL
