"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str

    database_path: Path
    database_busy_timeout_seconds: float
    seed_demo_data: bool

    # Weather penalty bands applied by the capacity resolver.
    weather_heavy_rain_threshold_mm: float
    weather_heavy_rain_penalty_percent: float
    weather_low_visibility_threshold_meters: float
    weather_low_visibility_penalty_percent: float
    weather_cache_seconds: int
    weather_random_seed: int

    # Occupancy ratio boundaries for alert classification.
    alert_high_threshold: float
    alert_critical_threshold: float

    pricing_default_base_price: str
    pricing_high_demand_threshold: float
    pricing_low_demand_threshold: float
    pricing_weekend_surcharge_multiplier: str

    admission_max_retries: int
    admission_retry_backoff_seconds: float
    max_visitors_per_booking: int
    reservation_ttl_minutes: int
    reservation_sweep_interval_seconds: int

    notification_webhook_url: Optional[str]
    notification_webhook_timeout_seconds: float
    notification_webhook_queue_size: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; call ``cache_clear`` to reload."""
    webhook_url = os.getenv("NOTIFICATION_WEBHOOK_URL") or None
    return Settings(
        app_name=_env_str("APP_NAME", "Destination Capacity Engine"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("DATABASE_PATH", "data/capacity_engine.db")),
        database_busy_timeout_seconds=_env_float("DATABASE_BUSY_TIMEOUT_SECONDS", 5.0),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
        weather_heavy_rain_threshold_mm=_env_float("WEATHER_HEAVY_RAIN_THRESHOLD_MM", 25.0),
        weather_heavy_rain_penalty_percent=_env_float("WEATHER_HEAVY_RAIN_PENALTY_PERCENT", 20.0),
        weather_low_visibility_threshold_meters=_env_float(
            "WEATHER_LOW_VISIBILITY_THRESHOLD_METERS", 500.0
        ),
        weather_low_visibility_penalty_percent=_env_float(
            "WEATHER_LOW_VISIBILITY_PENALTY_PERCENT", 15.0
        ),
        weather_cache_seconds=_env_int("WEATHER_CACHE_SECONDS", 300),
        weather_random_seed=_env_int("WEATHER_RANDOM_SEED", 42),
        alert_high_threshold=_env_float("ALERT_HIGH_THRESHOLD", 0.70),
        alert_critical_threshold=_env_float("ALERT_CRITICAL_THRESHOLD", 0.90),
        pricing_default_base_price=_env_str("PRICING_DEFAULT_BASE_PRICE", "100"),
        pricing_high_demand_threshold=_env_float("PRICING_HIGH_DEMAND_THRESHOLD", 0.70),
        pricing_low_demand_threshold=_env_float("PRICING_LOW_DEMAND_THRESHOLD", 0.30),
        pricing_weekend_surcharge_multiplier=_env_str(
            "PRICING_WEEKEND_SURCHARGE_MULTIPLIER", "1.15"
        ),
        admission_max_retries=_env_int("ADMISSION_MAX_RETRIES", 3),
        admission_retry_backoff_seconds=_env_float("ADMISSION_RETRY_BACKOFF_SECONDS", 0.05),
        max_visitors_per_booking=_env_int("MAX_VISITORS_PER_BOOKING", 50),
        reservation_ttl_minutes=_env_int("RESERVATION_TTL_MINUTES", 15),
        reservation_sweep_interval_seconds=_env_int("RESERVATION_SWEEP_INTERVAL_SECONDS", 60),
        notification_webhook_url=webhook_url,
        notification_webhook_timeout_seconds=_env_float(
            "NOTIFICATION_WEBHOOK_TIMEOUT_SECONDS", 2.0
        ),
        notification_webhook_queue_size=_env_int("NOTIFICATION_WEBHOOK_QUEUE_SIZE", 1000),
    )
