"""Weather signal for capacity resolution plus the advisory recommendation engine.

The recommendation is never applied automatically; an admin turns it into an
operational decision. The capacity resolver only uses the raw snapshot for
its configured penalty bands.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from threading import Lock, RLock
from typing import Callable, Optional, Protocol

from capacity_engine.domain.errors import StaleConfigurationError
from capacity_engine.domain.models import (
    AlertLevel,
    OperationalStatus,
    WeatherCondition,
    WeatherRecommendation,
    WeatherSnapshot,
)
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

_ALERT_SEVERITY = {
    AlertLevel.NORMAL: 0,
    AlertLevel.MODERATE: 1,
    AlertLevel.HIGH: 2,
    AlertLevel.CRITICAL: 3,
}

_CONDITION_KEYWORDS = (
    (WeatherCondition.RAIN, ("rain", "storm", "drizzle", "shower", "thunder")),
    (WeatherCondition.WIND, ("wind", "gust", "gale")),
    (WeatherCondition.CLOUD, ("cloud", "overcast", "fog", "mist", "haze")),
)


class WeatherProvider(Protocol):
    def get_current_weather(self, destination_id: int) -> WeatherSnapshot:
        ...


def classify_condition(condition: str) -> WeatherCondition:
    """Map free-text provider conditions onto the four coarse classes."""
    text = condition.strip().lower()
    for klass, keywords in _CONDITION_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return klass
    return WeatherCondition.CLEAR


class SimulatedWeatherProvider:
    """Seeded stand-in for an external weather API.

    Roughly 20% of readings are rainy and 5% stormy so the capacity bands and
    recommendations get exercised in demos.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._rng = random.Random(seed)
        self._lock = Lock()
        self._clock = clock

    def get_current_weather(self, destination_id: int) -> WeatherSnapshot:
        with self._lock:
            roll = self._rng.random()
            condition = "Sunny"
            rainfall = 0.0
            wind = 10 + self._rng.random() * 10
            visibility = 10000.0
            temperature = 20 + self._rng.random() * 5

            if roll < 0.20:
                condition = "Rainy"
                rainfall = 5 + self._rng.random() * 45
                visibility = 2000 + self._rng.random() * 3000
                temperature -= 5
            elif roll < 0.25:
                condition = "Stormy"
                rainfall = 50 + self._rng.random() * 50
                wind = 50 + self._rng.random() * 30
                visibility = 500 + self._rng.random() * 1000

        return WeatherSnapshot(
            condition=condition,
            temperature=round(temperature, 1),
            rainfall_mm=round(rainfall, 1),
            wind_speed_kmph=round(wind, 1),
            visibility_meters=round(visibility, 1),
            timestamp=self._clock(),
        )


def recommend_capacity(weather: WeatherSnapshot) -> WeatherRecommendation:
    """Advisory capacity recommendation from raw weather readings.

    A CLOSED verdict from any check is final, and the alert level only ever
    escalates across checks.
    """
    status = OperationalStatus.NORMAL
    percentage = 100
    alert = AlertLevel.NORMAL
    reasons: list[str] = []

    def escalate(level: AlertLevel) -> None:
        nonlocal alert
        if _ALERT_SEVERITY[level] > _ALERT_SEVERITY[alert]:
            alert = level

    def close(reason: str) -> None:
        nonlocal status, percentage
        status = OperationalStatus.CLOSED
        percentage = 0
        reasons.append(reason)
        escalate(AlertLevel.CRITICAL)

    def reduce(limit: int, reason: str, level: AlertLevel) -> None:
        nonlocal status, percentage
        if status != OperationalStatus.CLOSED:
            status = OperationalStatus.REDUCED
        percentage = min(percentage, limit)
        reasons.append(reason)
        escalate(level)

    rainfall = weather.rainfall_mm
    if rainfall > 50:
        close(f"Extreme rainfall ({rainfall}mm/hr) detected.")
    elif rainfall > 25:
        reduce(60, f"Heavy rainfall ({rainfall}mm/hr) - Reducing capacity to 60%.", AlertLevel.HIGH)
    elif rainfall > 10:
        reduce(80, f"Moderate rainfall ({rainfall}mm/hr).", AlertLevel.MODERATE)

    wind = weather.wind_speed_kmph
    if wind > 70:
        close(f"Dangerous wind speeds ({wind} km/h).")
    elif wind > 45:
        reduce(50, f"High winds ({wind} km/h) - Limit view points.", AlertLevel.HIGH)

    visibility = weather.visibility_meters
    if visibility < 50:
        close(f"Zero visibility ({visibility}m).")
    elif visibility < 500:
        reduce(70, f"Poor visibility ({visibility}m).", AlertLevel.HIGH)

    if not reasons:
        return WeatherRecommendation(
            status=OperationalStatus.NORMAL,
            capacity_percentage=100,
            reason="Conditions are optimal.",
            alert_level=AlertLevel.NORMAL,
        )
    return WeatherRecommendation(
        status=status,
        capacity_percentage=percentage,
        reason=" ".join(reasons),
        alert_level=alert,
    )


class WeatherService:
    """Caches the latest snapshot per destination and audits every reading."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        provider: Optional[WeatherProvider] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._provider = provider or SimulatedWeatherProvider(
            seed=self._settings.weather_random_seed,
            clock=clock,
        )
        self._snapshots: dict[int, tuple[datetime, WeatherSnapshot]] = {}
        self._lock = RLock()

    def _is_fresh(self, fetched_at: datetime) -> bool:
        max_age = timedelta(seconds=self._settings.weather_cache_seconds)
        return self._clock() - fetched_at <= max_age

    def get_current_weather(self, destination_id: int) -> WeatherSnapshot:
        """Return a cached snapshot while fresh, otherwise ask the provider.

        Raises StaleConfigurationError when the provider fails; callers decide
        whether to degrade.
        """
        with self._lock:
            cached = self._snapshots.get(destination_id)
        if cached is not None and self._is_fresh(cached[0]):
            return cached[1]

        try:
            snapshot = self._provider.get_current_weather(destination_id)
        except Exception as exc:
            raise StaleConfigurationError(
                f"Weather provider failed for destination {destination_id}: {exc}"
            ) from exc

        self._store(destination_id, snapshot)
        return snapshot

    def record_weather(self, destination_id: int, snapshot: WeatherSnapshot) -> WeatherSnapshot:
        """Admin-supplied reading; replaces the cached snapshot immediately."""
        self._store(destination_id, snapshot)
        logger.info(
            "Weather recorded | %s",
            fields(
                destination_id=destination_id,
                condition=classify_condition(snapshot.condition).value,
                rainfall_mm=snapshot.rainfall_mm,
                visibility_m=snapshot.visibility_meters,
            ),
        )
        return snapshot

    def invalidate(self, destination_id: Optional[int] = None) -> None:
        with self._lock:
            if destination_id is None:
                self._snapshots.clear()
            else:
                self._snapshots.pop(destination_id, None)

    def _store(self, destination_id: int, snapshot: WeatherSnapshot) -> None:
        with self._lock:
            self._snapshots[destination_id] = (self._clock(), snapshot)
        try:
            self._repository.save_weather_log(destination_id, snapshot)
        except Exception:
            # The audit log is not on the admission path.
            logger.warning(
                "Weather log write failed | %s",
                fields(destination_id=destination_id),
                exc_info=True,
            )
