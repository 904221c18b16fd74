from __future__ import annotations

import inspect
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app import create_app
from capacity_engine.controllers.booking_controller import router as booking_router
from capacity_engine.controllers.capacity_controller import router as capacity_router
from capacity_engine.controllers.destination_controller import router as destination_router
from capacity_engine.controllers.pricing_controller import router as pricing_router
from capacity_engine.domain.models import WeatherSnapshot
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.admission_service import AdmissionService
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.destination_service import DestinationService
from capacity_engine.services.notification_service import InMemoryNotificationRelay
from capacity_engine.services.pricing_service import PricingService
from capacity_engine.services.rule_service import RuleService
from capacity_engine.services.weather_service import WeatherService
from capacity_engine.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    values = {"seed_demo_data": False, "notification_webhook_url": None}
    values.update(overrides)
    return replace(get_settings(), database_path=tmp_path / filename, **values)


class ClearSkies:
    def get_current_weather(self, destination_id: int) -> WeatherSnapshot:
        return WeatherSnapshot(
            condition="Clear sky",
            temperature=24.0,
            rainfall_mm=0.0,
            wind_speed_kmph=6.0,
            visibility_meters=10000.0,
            timestamp=datetime.now(),
        )


def _build_test_app(tmp_path) -> FastAPI:
    settings = _build_test_settings(tmp_path, "api_flow.db")
    repository = DataRepository(settings)
    repository.initialize_database()

    feed = InMemoryNotificationRelay()
    rule_service = RuleService(repository=repository, settings=settings)
    weather_service = WeatherService(repository=repository, settings=settings, provider=ClearSkies())
    capacity_service = CapacityService(
        repository=repository,
        settings=settings,
        rule_service=rule_service,
        weather_service=weather_service,
        relay=feed,
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
        relay=feed,
    )

    app = FastAPI()
    app.include_router(destination_router)
    app.include_router(capacity_router)
    app.include_router(pricing_router)
    app.include_router(booking_router)

    app.state.repository = repository
    app.state.notification_feed = feed
    app.state.rule_service = rule_service
    app.state.destination_service = DestinationService(repository=repository, settings=settings)
    app.state.capacity_service = capacity_service
    app.state.pricing_service = pricing_service
    app.state.admission_service = admission_service
    return app


def _create_destination(client: TestClient, base_capacity: int = 100) -> int:
    response = client.post(
        "/destinations",
        json={"name": "Cloud Forest Reserve", "base_capacity": base_capacity, "base_price": "50"},
    )
    assert response.status_code == 201, response.text
    return response.json()["destination_id"]


def test_reservation_flow_with_rules_and_pricing(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    today = date.today().isoformat()
    destination_id = _create_destination(client)

    rule = client.post(
        "/capacity/rules",
        json={
            "destination_id": destination_id,
            "rule_name": "Trail maintenance",
            "rule_type": "EVENT_BASED",
            "absolute_capacity": 10,
            "priority": 5,
        },
    )
    assert rule.status_code == 201, rule.text
    rule_id = rule.json()["rule_id"]

    resolved = client.get(f"/capacity/destinations/{destination_id}", params={"visit_date": today})
    assert resolved.status_code == 200
    assert resolved.json()["effective_capacity"] == 10
    assert resolved.json()["applied_rule_id"] == rule_id
    assert resolved.json()["status"] == "REDUCED"

    pricing_rule = client.post(
        "/pricing/rules",
        json={"destination_id": destination_id, "rule_name": "Standard fare", "base_price": "40"},
    )
    assert pricing_rule.status_code == 201, pricing_rule.text

    quote = client.post(
        "/pricing/quote",
        json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 2},
    )
    assert quote.status_code == 200, quote.text
    assert Decimal(quote.json()["total_price"]) == Decimal("80")
    assert Decimal(quote.json()["breakdown"]["surge"]) == Decimal("0")

    reserved = client.post(
        "/bookings/reserve",
        json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 8},
    )
    assert reserved.status_code == 201, reserved.text
    booking = reserved.json()
    assert booking["admitted_today"] == 8
    assert booking["effective_capacity"] == 10
    assert booking["quote"] is not None

    rejected = client.post(
        "/bookings/reserve",
        json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 5},
    )
    assert rejected.status_code == 409
    detail = rejected.json()["detail"]
    assert detail["requested"] == 5
    assert detail["available"] == 2
    assert "Trail maintenance" in detail["rule"]

    confirmed = client.post(
        f"/bookings/{booking['booking_id']}/confirm", json={"payment_ref": "PAY-42"}
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "CONFIRMED"

    cancelled = client.post(f"/bookings/{booking['booking_id']}/cancel", json={"reason": "Rain"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert cancelled.json()["cancellation_reason"] == "Rain"

    again = client.post(f"/bookings/{booking['booking_id']}/cancel")
    assert again.status_code == 409

    resolved = client.get(f"/capacity/destinations/{destination_id}", params={"visit_date": today})
    assert resolved.json()["admitted_today"] == 0
    assert resolved.json()["available_slots"] == 10


def test_admin_decision_closes_and_reopens(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    today = date.today().isoformat()
    destination_id = _create_destination(client)

    invalid = client.post(
        "/capacity/decide",
        json={
            "destination_id": destination_id,
            "status": "CLOSED",
            "effective_capacity": 10,
            "issued_by": "ops-admin",
        },
    )
    assert invalid.status_code == 400

    closed = client.post(
        "/capacity/decide",
        json={
            "destination_id": destination_id,
            "status": "CLOSED",
            "effective_capacity": 0,
            "notes": "Flash flood warning",
            "issued_by": "ops-admin",
        },
    )
    assert closed.status_code == 201, closed.text
    assert closed.json()["decision_date"] == today

    rejected = client.post(
        "/bookings/reserve",
        json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 1},
    )
    assert rejected.status_code == 409
    assert rejected.json()["detail"]["available"] == 0

    availability = client.get(
        f"/capacity/destinations/{destination_id}/availability",
        params={"visit_date": today, "visitors": 1},
    )
    assert availability.json()["is_available"] is False

    status = client.get(f"/capacity/destinations/{destination_id}/operational-status")
    assert status.status_code == 200
    assert status.json()["decision"]["status"] == "CLOSED"
    assert status.json()["weather_class"] == "CLEAR"
    assert status.json()["recommendation"]["status"] == "NORMAL"

    assert client.delete(f"/capacity/decisions/{destination_id}").status_code == 204
    assert client.delete(f"/capacity/decisions/{destination_id}").status_code == 404

    reopened = client.post(
        "/bookings/reserve",
        json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 1},
    )
    assert reopened.status_code == 201


def test_visitor_lifecycle_endpoints(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    today = date.today().isoformat()
    destination_id = _create_destination(client)

    booking_id = client.post(
        "/bookings/reserve",
        json={
            "destination_id": destination_id,
            "visit_date": today,
            "number_of_visitors": 3,
            "category_mix": {"ADULT": 2, "CHILD": 1},
        },
    ).json()["booking_id"]

    assert client.post(f"/bookings/{booking_id}/check-in").status_code == 409
    client.post(f"/bookings/{booking_id}/confirm", json={"payment_ref": "PAY-7"})

    checked_in = client.post(f"/bookings/{booking_id}/check-in")
    assert checked_in.status_code == 200
    assert checked_in.json()["entry_time"] is not None

    status = client.get(f"/capacity/destinations/{destination_id}/operational-status")
    assert status.json()["on_site_now"] == 3

    checked_out = client.post(f"/bookings/{booking_id}/check-out")
    assert checked_out.json()["status"] == "COMPLETED"
    assert client.get(f"/bookings/{booking_id}").json()["status"] == "COMPLETED"


def test_weather_and_occupancy_admin_endpoints(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    destination_id = _create_destination(client)

    recommendation = client.post(
        "/capacity/weather",
        json={
            "destination_id": destination_id,
            "condition": "Heavy rain",
            "temperature": 18.0,
            "rainfall_mm": 30.0,
            "wind_speed_kmph": 20.0,
            "visibility_meters": 3000.0,
        },
    )
    assert recommendation.status_code == 200, recommendation.text
    assert recommendation.json()["status"] == "REDUCED"
    assert recommendation.json()["capacity_percentage"] == 60

    resolved = client.get(f"/capacity/destinations/{destination_id}")
    assert resolved.json()["effective_capacity"] == 80
    assert len(resolved.json()["weather_factors"]) == 1

    tomorrow = (date.today() + timedelta(days=1)).isoformat()
    adjusted = client.post(
        f"/capacity/destinations/{destination_id}/adjust",
        json={"visit_date": tomorrow, "delta": 12},
    )
    assert adjusted.status_code == 200
    assert adjusted.json()["admitted_today"] == 12

    zero = client.post(
        f"/capacity/destinations/{destination_id}/adjust",
        json={"visit_date": tomorrow, "delta": 0},
    )
    assert zero.status_code == 422


def test_error_mapping(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    today = date.today().isoformat()
    destination_id = _create_destination(client)

    assert client.get("/destinations/999").status_code == 404
    assert client.get("/bookings/999").status_code == 404
    assert client.get("/capacity/rules/999").status_code == 404
    assert client.delete("/pricing/rules/999").status_code == 404

    past = client.post(
        "/bookings/reserve",
        json={
            "destination_id": destination_id,
            "visit_date": (date.today() - timedelta(days=1)).isoformat(),
            "number_of_visitors": 1,
        },
    )
    assert past.status_code == 400

    mismatched = client.post(
        "/pricing/quote",
        json={
            "destination_id": destination_id,
            "visit_date": today,
            "number_of_visitors": 3,
            "category_mix": {"ADULT": 1},
        },
    )
    assert mismatched.status_code == 422

    paused = client.patch(f"/destinations/{destination_id}/status", json={"status": "MAINTENANCE"})
    assert paused.status_code == 200
    unavailable = client.post(
        "/bookings/reserve",
        json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 1},
    )
    assert unavailable.status_code == 409


def test_capacity_feed_pushes_reservation_events(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    today = date.today().isoformat()
    destination_id = _create_destination(client)

    with client.websocket_connect(f"/ws/capacity?destination_id={destination_id}") as websocket:
        response = client.post(
            "/bookings/reserve",
            json={"destination_id": destination_id, "visit_date": today, "number_of_visitors": 4},
        )
        assert response.status_code == 201
        event = websocket.receive_json()

    assert event["eventType"] == "RESERVED"
    assert event["destinationId"] == destination_id
    assert event["currentCapacity"] == 4
    assert event["maxDailyCapacity"] == 100


def test_create_app_seeds_demo_destinations(tmp_path):
    settings = _build_test_settings(tmp_path, "factory.db", seed_demo_data=True)
    app = create_app(settings, weather_provider=ClearSkies())

    with TestClient(app) as client:
        assert app.state.expiry_worker.running is True
        destinations = client.get("/destinations")
        assert destinations.status_code == 200
        assert len(destinations.json()) == 3
        zones = client.get(f"/destinations/{destinations.json()[0]['destination_id']}/zones")
        assert zones.status_code == 200
        assert [zone["max_capacity"] for zone in zones.json()] == [500]

    assert app.state.expiry_worker.running is False


def test_zone_endpoints_and_zoned_reservations(tmp_path):
    client = TestClient(_build_test_app(tmp_path))
    today = date.today().isoformat()
    destination_id = _create_destination(client)

    created = client.post(
        f"/destinations/{destination_id}/zones",
        json={"name": "Viewpoint", "max_capacity": 6},
    )
    assert created.status_code == 201, created.text
    zone_id = created.json()["zone_id"]

    listed = client.get(f"/destinations/{destination_id}/zones")
    assert [zone["name"] for zone in listed.json()] == ["Viewpoint"]
    assert client.post("/destinations/404/zones", json={"name": "X", "max_capacity": 1}).status_code == 404
    assert client.post(
        f"/destinations/{destination_id}/zones", json={"name": "X", "max_capacity": 0}
    ).status_code == 422

    reserved = client.post(
        "/bookings/reserve",
        json={
            "destination_id": destination_id,
            "visit_date": today,
            "number_of_visitors": 4,
            "zone_id": zone_id,
        },
    )
    assert reserved.status_code == 201, reserved.text
    assert reserved.json()["zone_id"] == zone_id
    booking = client.get(f"/bookings/{reserved.json()['booking_id']}")
    assert booking.json()["zone_id"] == zone_id

    availability = client.get(
        f"/capacity/destinations/{destination_id}/availability",
        params={"visit_date": today, "visitors": 3, "zone_id": zone_id},
    )
    assert availability.json()["is_available"] is False
    assert availability.json()["available_slots"] == 2

    rejected = client.post(
        "/bookings/reserve",
        json={
            "destination_id": destination_id,
            "visit_date": today,
            "number_of_visitors": 3,
            "zone_id": zone_id,
        },
    )
    assert rejected.status_code == 409
    assert rejected.json()["detail"]["available"] == 2
    assert rejected.json()["detail"]["rule"] == "Zone 'Viewpoint' capacity"

    unknown = client.post(
        "/bookings/reserve",
        json={
            "destination_id": destination_id,
            "visit_date": today,
            "number_of_visitors": 1,
            "zone_id": 999,
        },
    )
    assert unknown.status_code == 404


def test_booking_routes_run_in_the_threadpool():
    endpoints = [route.endpoint for route in booking_router.routes]

    assert endpoints
    assert not any(inspect.iscoroutinefunction(endpoint) for endpoint in endpoints)
