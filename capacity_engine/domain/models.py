"""Domain models for capacity resolution, pricing and admission control."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Optional


class DestinationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MAINTENANCE = "MAINTENANCE"
    DEACTIVATED = "DEACTIVATED"


class CapacityRuleType(str, Enum):
    SEASONAL = "SEASONAL"
    WEATHER_BASED = "WEATHER_BASED"
    EVENT_BASED = "EVENT_BASED"
    TIME_OF_DAY = "TIME_OF_DAY"
    CUSTOM = "CUSTOM"


class OperationalStatus(str, Enum):
    NORMAL = "NORMAL"
    REDUCED = "REDUCED"
    CLOSED = "CLOSED"


class AlertLevel(str, Enum):
    NORMAL = "NORMAL"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class VisitorCategory(str, Enum):
    ADULT = "ADULT"
    CHILD = "CHILD"
    LOCAL = "LOCAL"
    FOREIGN = "FOREIGN"


class WeatherCondition(str, Enum):
    RAIN = "RAIN"
    CLOUD = "CLOUD"
    WIND = "WIND"
    CLEAR = "CLEAR"


@dataclass(frozen=True)
class Destination:
    destination_id: int
    name: str
    base_capacity: int
    base_price: Decimal
    status: DestinationStatus
    operating_days: frozenset[int]
    opening_time: time
    closing_time: time
    created_at: datetime

    def operates_on(self, weekday: int) -> bool:
        return not self.operating_days or weekday in self.operating_days


@dataclass(frozen=True)
class Zone:
    """A bounded area inside a destination with its own daily cap."""

    zone_id: int
    destination_id: int
    name: str
    max_capacity: int
    created_at: datetime


@dataclass(frozen=True)
class DailyOccupancy:
    """Two deliberately separate counters for one destination and day.

    ``admitted_today`` gates Reserve; ``on_site_now`` only follows
    check-in and check-out scans.
    """

    destination_id: int
    visit_date: date
    admitted_today: int = 0
    on_site_now: int = 0


@dataclass(frozen=True)
class CapacityRule:
    rule_id: int
    destination_id: int
    rule_name: str
    rule_type: CapacityRuleType
    capacity_percentage: Optional[float] = None
    absolute_capacity: Optional[int] = None
    applicable_days: frozenset[int] = frozenset()
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PricingRule:
    rule_id: int
    destination_id: int
    rule_name: str
    base_price: Decimal
    peak_multiplier: Decimal = Decimal("1.0")
    off_peak_multiplier: Decimal = Decimal("1.0")
    adult_price: Optional[Decimal] = None
    child_price: Optional[Decimal] = None
    local_price: Optional[Decimal] = None
    foreign_price: Optional[Decimal] = None
    applicable_days: frozenset[int] = frozenset()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None

    def price_for(self, category: VisitorCategory) -> Decimal:
        override = {
            VisitorCategory.ADULT: self.adult_price,
            VisitorCategory.CHILD: self.child_price,
            VisitorCategory.LOCAL: self.local_price,
            VisitorCategory.FOREIGN: self.foreign_price,
        }[category]
        return override if override is not None else self.base_price


@dataclass(frozen=True)
class WeatherSnapshot:
    condition: str
    temperature: float
    rainfall_mm: float
    wind_speed_kmph: float
    visibility_meters: float
    timestamp: datetime


@dataclass(frozen=True)
class WeatherRecommendation:
    """Advisory output; an admin decides whether to act on it."""

    status: OperationalStatus
    capacity_percentage: int
    reason: str
    alert_level: AlertLevel


@dataclass(frozen=True)
class OperationalDecision:
    decision_id: int
    destination_id: int
    decision_date: date
    status: OperationalStatus
    effective_capacity: int
    notes: str
    issued_by: str
    created_at: datetime


@dataclass(frozen=True)
class CapacityResolution:
    destination_id: int
    effective_capacity: int
    status: OperationalStatus
    alert_level: AlertLevel
    reason: str
    capacity_percentage: float
    occupancy: int
    applied_rule_id: Optional[int] = None
    override_applied: bool = False
    weather_factors: tuple[str, ...] = ()

    @property
    def available_slots(self) -> int:
        return max(0, self.effective_capacity - self.occupancy)

    @property
    def demand_ratio(self) -> float:
        if self.effective_capacity <= 0:
            return 1.0
        return self.occupancy / self.effective_capacity


@dataclass(frozen=True)
class AvailabilityCheck:
    is_available: bool
    available_slots: int
    requested: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class PriceBreakdown:
    base: Decimal
    surge: Decimal


@dataclass(frozen=True)
class PriceQuote:
    total_price: Decimal
    breakdown: PriceBreakdown
    surge_multiplier: Decimal
    price_per_person: Decimal
    demand_ratio: float
    reasons: tuple[str, ...] = ()
    applied_rule_id: Optional[int] = None


@dataclass(frozen=True)
class Booking:
    booking_id: int
    destination_id: int
    visit_date: date
    number_of_visitors: int
    status: BookingStatus
    reservation_token: str
    created_at: datetime
    total_price: Optional[Decimal] = None
    payment_ref: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    zone_id: Optional[int] = None


@dataclass(frozen=True)
class Reservation:
    booking_id: int
    token: str
    destination_id: int
    visit_date: date
    visitors: int
    admitted_after: int
    effective_capacity: int
    expires_at: Optional[datetime] = None
    quote: Optional[PriceQuote] = None
    zone_id: Optional[int] = None


@dataclass(frozen=True)
class CapacityEvent:
    destination_id: int
    visit_date: date
    current_capacity: int
    max_daily_capacity: int
    alert_level: AlertLevel
    event_type: str

    def to_payload(self) -> dict[str, object]:
        return {
            "destinationId": self.destination_id,
            "visitDate": self.visit_date.isoformat(),
            "currentCapacity": self.current_capacity,
            "maxDailyCapacity": self.max_daily_capacity,
            "alertLevel": self.alert_level.value,
            "eventType": self.event_type,
        }
