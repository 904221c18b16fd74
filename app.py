"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from capacity_engine.controllers.booking_controller import router as booking_router
from capacity_engine.controllers.capacity_controller import router as capacity_router
from capacity_engine.controllers.destination_controller import router as destination_router
from capacity_engine.controllers.pricing_controller import router as pricing_router
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.admission_service import AdmissionService
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.destination_service import DestinationService
from capacity_engine.services.expiry_service import ReservationExpiryWorker
from capacity_engine.services.notification_service import build_notification_relay
from capacity_engine.services.pricing_service import PricingService
from capacity_engine.services.rule_service import RuleService
from capacity_engine.services.weather_service import WeatherProvider, WeatherService
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    weather_provider: Optional[WeatherProvider] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service is constructed here and exposed through app.state so the
    dependency providers in the controller layer can find it.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    notification_feed, relay = build_notification_relay(settings)
    rule_service = RuleService(repository=repository, settings=settings)
    destination_service = DestinationService(repository=repository, settings=settings)
    weather_service = WeatherService(
        repository=repository,
        settings=settings,
        provider=weather_provider,
    )
    capacity_service = CapacityService(
        repository=repository,
        settings=settings,
        rule_service=rule_service,
        weather_service=weather_service,
        relay=relay,
    )
    pricing_service = PricingService(
        repository=repository,
        settings=settings,
        rule_service=rule_service,
        capacity_service=capacity_service,
    )
    admission_service = AdmissionService(
        repository=repository,
        settings=settings,
        capacity_service=capacity_service,
        pricing_service=pricing_service,
        relay=relay,
    )
    expiry_worker = ReservationExpiryWorker(admission_service, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize storage and the expiry sweep before accepting requests."""
        _startup(app, settings)
        try:
            yield
        finally:
            expiry_worker.stop()
            relay.close(settings.notification_webhook_timeout_seconds * 2)
            logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(destination_router)
    app.include_router(capacity_router)
    app.include_router(pricing_router)
    app.include_router(booking_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.notification_feed = notification_feed
    app.state.rule_service = rule_service
    app.state.destination_service = destination_service
    app.state.weather_service = weather_service
    app.state.capacity_service = capacity_service
    app.state.pricing_service = pricing_service
    app.state.admission_service = admission_service
    app.state.expiry_worker = expiry_worker

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before seeding; the expiry sweep starts last because it
    reads the Bookings table.
    """
    repository: DataRepository = app.state.repository
    expiry_worker: ReservationExpiryWorker = app.state.expiry_worker

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo destinations (skipped if any exist)")
        repository.seed_demo_data()

    logger.info("Startup: starting reservation expiry worker")
    expiry_worker.start()

    logger.info("Startup complete, engine ready")


# Module-level app object for uvicorn
app = create_app()
