"""Effective capacity resolution and the admin decision workflow."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from capacity_engine.domain.constraints import (
    AlertPolicy,
    WeatherPenaltyPolicy,
    validate_alert_policy,
    validate_decision,
    validate_weather_policy,
)
from capacity_engine.domain.errors import (
    DestinationNotFoundError,
    StaleConfigurationError,
    ValidationError,
    ZoneNotFoundError,
)
from capacity_engine.domain.models import (
    AlertLevel,
    AvailabilityCheck,
    CapacityEvent,
    CapacityResolution,
    CapacityRule,
    DailyOccupancy,
    Destination,
    DestinationStatus,
    OperationalDecision,
    OperationalStatus,
    WeatherRecommendation,
    WeatherSnapshot,
    Zone,
)
from capacity_engine.domain.temporal import TimeContext, select_rule
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.notification_service import NotificationRelay, NullNotificationRelay
from capacity_engine.services.rule_service import RuleService
from capacity_engine.services.weather_service import WeatherService, recommend_capacity
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

_HUNDRED = Decimal(100)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def classify_alert(occupancy: int, effective_capacity: int, policy: AlertPolicy) -> AlertLevel:
    """Alert level from the admitted ratio. A zero capacity is always CRITICAL."""
    if effective_capacity <= 0:
        return AlertLevel.CRITICAL
    ratio = occupancy / effective_capacity
    if ratio >= policy.critical_threshold:
        return AlertLevel.CRITICAL
    if ratio >= policy.high_threshold:
        return AlertLevel.HIGH
    return AlertLevel.NORMAL


def weather_penalties(
    weather: Optional[WeatherSnapshot],
    policy: WeatherPenaltyPolicy,
) -> list[tuple[str, Decimal]]:
    """Return (label, remaining-fraction) pairs for every band the snapshot trips."""
    if weather is None:
        return []
    factors: list[tuple[str, Decimal]] = []
    if weather.rainfall_mm > policy.heavy_rain_threshold_mm:
        factors.append(
            (
                f"Heavy rain ({weather.rainfall_mm}mm): -{policy.heavy_rain_penalty_percent:g}%",
                1 - Decimal(str(policy.heavy_rain_penalty_percent)) / _HUNDRED,
            )
        )
    if weather.visibility_meters < policy.low_visibility_threshold_meters:
        factors.append(
            (
                f"Low visibility ({weather.visibility_meters}m): "
                f"-{policy.low_visibility_penalty_percent:g}%",
                1 - Decimal(str(policy.low_visibility_penalty_percent)) / _HUNDRED,
            )
        )
    return factors


def resolve_effective_capacity(
    destination: Destination,
    rules: Iterable[CapacityRule],
    now: TimeContext,
    occupancy: int = 0,
    weather: Optional[WeatherSnapshot] = None,
    manual_override: Optional[OperationalDecision] = None,
    weather_policy: Optional[WeatherPenaltyPolicy] = None,
    alert_policy: Optional[AlertPolicy] = None,
) -> CapacityResolution:
    """Pure resolution of a destination's capacity for one instant.

    An override dated ``now.date`` short-circuits everything else. Otherwise
    the strongest applicable rule sets the raw capacity (absolute beats
    percentage), weather bands shrink it multiplicatively, and the result is
    rounded half-up once.
    """
    if weather_policy is None:
        weather_policy = WeatherPenaltyPolicy.from_settings(get_settings())
    if alert_policy is None:
        alert_policy = AlertPolicy.from_settings(get_settings())
    base = destination.base_capacity

    if manual_override is not None and manual_override.decision_date == now.date:
        capacity = manual_override.effective_capacity
        return CapacityResolution(
            destination_id=destination.destination_id,
            effective_capacity=capacity,
            status=manual_override.status,
            alert_level=classify_alert(occupancy, capacity, alert_policy),
            reason=manual_override.notes or f"Manual decision by {manual_override.issued_by}",
            capacity_percentage=round(capacity / base * 100, 2),
            occupancy=occupancy,
            override_applied=True,
        )

    rule = select_rule(rules, now)
    reasons: list[str] = []
    if rule is None:
        raw = Decimal(base)
        reasons.append("Base capacity")
    elif rule.absolute_capacity is not None:
        raw = Decimal(rule.absolute_capacity)
        reasons.append(f"Rule '{rule.rule_name}': absolute {rule.absolute_capacity}")
    else:
        percentage = Decimal(str(rule.capacity_percentage))
        raw = Decimal(base) * percentage / _HUNDRED
        reasons.append(f"Rule '{rule.rule_name}': {percentage.normalize():f}% of base")

    factors = weather_penalties(weather, weather_policy)
    for label, fraction in factors:
        raw *= fraction
        reasons.append(label)

    capacity = round_half_up(raw)
    if capacity <= 0:
        status = OperationalStatus.CLOSED
    elif capacity < base:
        status = OperationalStatus.REDUCED
    else:
        status = OperationalStatus.NORMAL

    return CapacityResolution(
        destination_id=destination.destination_id,
        effective_capacity=capacity,
        status=status,
        alert_level=classify_alert(occupancy, capacity, alert_policy),
        reason="; ".join(reasons),
        capacity_percentage=round(capacity / base * 100, 2),
        occupancy=occupancy,
        applied_rule_id=rule.rule_id if rule is not None else None,
        weather_factors=tuple(label for label, _ in factors),
    )


@dataclass(frozen=True)
class OperationalStatusReport:
    destination_id: int
    visit_date: date
    weather: Optional[WeatherSnapshot]
    recommendation: Optional[WeatherRecommendation]
    decision: Optional[OperationalDecision]
    base_capacity: int
    resolution: CapacityResolution
    on_site_now: int

    @property
    def current_load_percent(self) -> float:
        return round(self.resolution.demand_ratio * 100, 2)


class CapacityService:
    """Loads everything a resolution needs and never caches the result."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        rule_service: Optional[RuleService] = None,
        weather_service: Optional[WeatherService] = None,
        relay: Optional[NotificationRelay] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._rules = rule_service or RuleService(self._repository, self._settings)
        self._weather = weather_service or WeatherService(
            self._repository, self._settings, clock=clock
        )
        self._relay = relay or NullNotificationRelay()
        self._clock = clock

        self._weather_policy = WeatherPenaltyPolicy.from_settings(self._settings)
        self._alert_policy = AlertPolicy.from_settings(self._settings)
        validate_weather_policy(self._weather_policy)
        validate_alert_policy(self._alert_policy)

    @property
    def alert_policy(self) -> AlertPolicy:
        return self._alert_policy

    def _load_destination(self, destination_id: int) -> Destination:
        destination = self._repository.get_destination(destination_id)
        if destination is None:
            raise DestinationNotFoundError(destination_id)
        return destination

    def time_context(self, destination: Destination, visit_date: date) -> TimeContext:
        """Today uses the wall clock; other dates are evaluated at opening time."""
        now = self._clock()
        if visit_date == now.date():
            return TimeContext.from_datetime(now)
        return TimeContext.at(visit_date, destination.opening_time)

    def _capacity_rules(self, destination_id: int) -> tuple[CapacityRule, ...]:
        try:
            return self._rules.capacity_rules(destination_id)
        except StaleConfigurationError:
            logger.warning(
                "Capacity rules unavailable; resolving without rules | %s",
                fields(destination_id=destination_id),
                exc_info=True,
            )
            return ()

    def _current_weather(self, destination_id: int) -> Optional[WeatherSnapshot]:
        try:
            return self._weather.get_current_weather(destination_id)
        except StaleConfigurationError:
            logger.warning(
                "Weather unavailable; no weather adjustment | %s",
                fields(destination_id=destination_id),
                exc_info=True,
            )
            return None

    def resolve(
        self,
        destination_id: int,
        visit_date: Optional[date] = None,
        destination: Optional[Destination] = None,
    ) -> CapacityResolution:
        destination = destination or self._load_destination(destination_id)
        visit_date = visit_date or self._clock().date()
        occupancy = self._repository.get_daily_occupancy(destination_id, visit_date)
        # Live weather only describes today; other dates resolve without it.
        weather = (
            self._current_weather(destination_id)
            if visit_date == self._clock().date()
            else None
        )
        resolution = resolve_effective_capacity(
            destination,
            self._capacity_rules(destination_id),
            self.time_context(destination, visit_date),
            occupancy=occupancy.admitted_today,
            weather=weather,
            manual_override=self._repository.get_decision(destination_id, visit_date),
            weather_policy=self._weather_policy,
            alert_policy=self._alert_policy,
        )
        logger.debug(
            "Capacity resolved | %s",
            fields(
                destination_id=destination_id,
                visit_date=visit_date,
                effective=resolution.effective_capacity,
                admitted=resolution.occupancy,
                rule_id=resolution.applied_rule_id,
                override=resolution.override_applied,
            ),
        )
        return resolution

    def load_zone(self, destination_id: int, zone_id: int) -> Zone:
        zone = self._repository.get_zone(zone_id)
        if zone is None or zone.destination_id != destination_id:
            raise ZoneNotFoundError(zone_id, destination_id)
        return zone

    def check_availability(
        self,
        destination_id: int,
        visit_date: date,
        visitors: int,
        zone_id: Optional[int] = None,
    ) -> AvailabilityCheck:
        """Read-only answer; Reserve still re-checks atomically.

        With a zone, the zone's own daily cap is checked after the
        destination's and the tighter of the two slot counts is reported.
        """
        if visitors <= 0:
            raise ValidationError("visitors must be > 0")
        destination = self._load_destination(destination_id)
        zone = self.load_zone(destination_id, zone_id) if zone_id is not None else None
        if destination.status != DestinationStatus.ACTIVE:
            return AvailabilityCheck(
                is_available=False,
                available_slots=0,
                requested=visitors,
                reason=f"Destination is {destination.status.value}",
            )
        if not destination.operates_on(TimeContext.at(visit_date, destination.opening_time).weekday):
            return AvailabilityCheck(
                is_available=False,
                available_slots=0,
                requested=visitors,
                reason="Destination is closed on this day",
            )

        resolution = self.resolve(destination_id, visit_date, destination=destination)
        if resolution.status == OperationalStatus.CLOSED:
            return AvailabilityCheck(
                is_available=False,
                available_slots=0,
                requested=visitors,
                reason=resolution.reason or "Destination is closed",
            )
        available = resolution.available_slots
        if visitors > available:
            return AvailabilityCheck(
                is_available=False,
                available_slots=available,
                requested=visitors,
                reason=f"Only {available} slot(s) available",
            )
        if zone is not None:
            zone_available = max(
                0, zone.max_capacity - self._repository.get_zone_admitted(zone.zone_id, visit_date)
            )
            if visitors > zone_available:
                return AvailabilityCheck(
                    is_available=False,
                    available_slots=zone_available,
                    requested=visitors,
                    reason=f"Zone '{zone.name}' capacity exceeded",
                )
            available = min(available, zone_available)
        return AvailabilityCheck(is_available=True, available_slots=available, requested=visitors)

    def operational_status(
        self,
        destination_id: int,
        visit_date: Optional[date] = None,
    ) -> OperationalStatusReport:
        destination = self._load_destination(destination_id)
        visit_date = visit_date or self._clock().date()
        weather = self._current_weather(destination_id)
        occupancy = self._repository.get_daily_occupancy(destination_id, visit_date)
        return OperationalStatusReport(
            destination_id=destination_id,
            visit_date=visit_date,
            weather=weather,
            recommendation=recommend_capacity(weather) if weather is not None else None,
            decision=self._repository.get_decision(destination_id, visit_date),
            base_capacity=destination.base_capacity,
            resolution=self.resolve(destination_id, visit_date, destination=destination),
            on_site_now=occupancy.on_site_now,
        )

    def record_decision(
        self,
        *,
        destination_id: int,
        status: OperationalStatus,
        effective_capacity: int,
        notes: str = "",
        issued_by: str,
        decision_date: Optional[date] = None,
    ) -> OperationalDecision:
        """Store an admin decision; it outranks rules for its date until replaced."""
        validate_decision(status, effective_capacity)
        if not issued_by.strip():
            raise ValidationError("issued_by must be non-empty")
        self._load_destination(destination_id)
        decision_date = decision_date or self._clock().date()

        decision = self._repository.upsert_decision(
            destination_id=destination_id,
            decision_date=decision_date,
            status=status,
            effective_capacity=effective_capacity,
            notes=notes.strip(),
            issued_by=issued_by.strip(),
        )
        logger.info(
            "Operational decision recorded | %s",
            fields(
                destination_id=destination_id,
                date=decision_date,
                status=status.value,
                effective=effective_capacity,
                issued_by=decision.issued_by,
            ),
        )
        self.publish_capacity_event(destination_id, decision_date, "DECISION_RECORDED")
        return decision

    def clear_decision(self, destination_id: int, decision_date: Optional[date] = None) -> bool:
        self._load_destination(destination_id)
        decision_date = decision_date or self._clock().date()
        removed = self._repository.delete_decision(destination_id, decision_date)
        if removed:
            logger.info(
                "Operational decision cleared | %s",
                fields(destination_id=destination_id, date=decision_date),
            )
            self.publish_capacity_event(destination_id, decision_date, "DECISION_CLEARED")
        return removed

    def record_weather(self, destination_id: int, snapshot: WeatherSnapshot) -> WeatherRecommendation:
        self._load_destination(destination_id)
        self._weather.record_weather(destination_id, snapshot)
        self.publish_capacity_event(destination_id, snapshot.timestamp.date(), "WEATHER_UPDATED")
        return recommend_capacity(snapshot)

    def adjust_occupancy(self, destination_id: int, visit_date: date, delta: int) -> DailyOccupancy:
        """Staff correction of the admitted counter; never drops below zero."""
        self._load_destination(destination_id)
        occupancy = self._repository.adjust_admitted(destination_id, visit_date, delta)
        logger.info(
            "Occupancy adjusted | %s",
            fields(
                destination_id=destination_id,
                visit_date=visit_date,
                delta=delta,
                admitted=occupancy.admitted_today,
            ),
        )
        self.publish_capacity_event(destination_id, visit_date, "OCCUPANCY_ADJUSTED")
        return occupancy

    def publish_capacity_event(
        self,
        destination_id: int,
        visit_date: date,
        event_type: str,
        resolution: Optional[CapacityResolution] = None,
    ) -> None:
        """Best-effort broadcast; failures are logged and swallowed."""
        try:
            resolution = resolution or self.resolve(destination_id, visit_date)
            self._relay.publish(
                CapacityEvent(
                    destination_id=destination_id,
                    visit_date=visit_date,
                    current_capacity=resolution.occupancy,
                    max_daily_capacity=resolution.effective_capacity,
                    alert_level=resolution.alert_level,
                    event_type=event_type,
                )
            )
        except Exception:
            logger.warning(
                "Capacity event not published | %s",
                fields(destination_id=destination_id, event_type=event_type),
                exc_info=True,
            )
