"""Admission control: the only code path that moves occupancy counters.

Reserve is a single check-and-increment. The in-process lock serialises
callers that share this service; the conditional UPDATE inside an IMMEDIATE
transaction keeps the cap intact across processes sharing the database.
"""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import date, datetime, timedelta
from threading import Lock
from typing import Callable, Optional
from uuid import uuid4

from capacity_engine.domain.errors import (
    BookingNotFoundError,
    BookingStateError,
    CapacityExceededError,
    ConcurrencyConflictError,
    DestinationNotFoundError,
    DestinationUnavailableError,
    ValidationError,
)
from capacity_engine.domain.models import (
    Booking,
    BookingStatus,
    CapacityEvent,
    DestinationStatus,
    OperationalStatus,
    PriceQuote,
    Reservation,
    Zone,
)
from capacity_engine.domain.temporal import to_rule_weekday
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.capacity_service import CapacityService, classify_alert
from capacity_engine.services.notification_service import NotificationRelay, NullNotificationRelay
from capacity_engine.services.pricing_service import CategoryMix, PricingService
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

_RELEASABLE = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class AdmissionService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        capacity_service: Optional[CapacityService] = None,
        pricing_service: Optional[PricingService] = None,
        relay: Optional[NotificationRelay] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._capacity = capacity_service or CapacityService(
            self._repository, self._settings, clock=clock
        )
        self._pricing = pricing_service or PricingService(
            self._repository,
            self._settings,
            capacity_service=self._capacity,
            clock=clock,
        )
        self._relay = relay or NullNotificationRelay()
        self._clock = clock
        self._sleep = sleep

        self._registry_lock = Lock()
        self._destination_locks: defaultdict[int, Lock] = defaultdict(Lock)

    def _lock_for(self, destination_id: int) -> Lock:
        with self._registry_lock:
            return self._destination_locks[destination_id]

    def _validate_request(self, destination_id: int, visit_date: date, visitors: int) -> None:
        limit = self._settings.max_visitors_per_booking
        if not 1 <= visitors <= limit:
            raise ValidationError(f"visitors must be between 1 and {limit}")

        destination = self._repository.get_destination(destination_id)
        if destination is None:
            raise DestinationNotFoundError(destination_id)
        if destination.status != DestinationStatus.ACTIVE:
            raise DestinationUnavailableError(
                f"Destination {destination_id} is {destination.status.value}"
            )
        if visit_date < self._clock().date():
            raise ValidationError("visit_date cannot be in the past")
        if not destination.operates_on(to_rule_weekday(visit_date)):
            raise DestinationUnavailableError(
                f"Destination {destination_id} does not operate on {visit_date.isoformat()}"
            )

    def reserve(
        self,
        destination_id: int,
        visit_date: date,
        visitors: int,
        category_mix: Optional[CategoryMix] = None,
        zone_id: Optional[int] = None,
    ) -> Reservation:
        """Admit ``visitors`` for the day or raise CapacityExceededError.

        Capacity is resolved afresh for every attempt. Lock contention at the
        storage layer is retried a bounded number of times and then reported
        as a capacity failure. A ``zone_id`` must belong to the destination;
        the zone's daily cap is enforced in the same transaction.
        """
        self._validate_request(destination_id, visit_date, visitors)
        zone = self._capacity.load_zone(destination_id, zone_id) if zone_id is not None else None
        price: Optional[PriceQuote] = self._pricing.quote(
            destination_id, visit_date, visitors, category_mix
        )

        attempts = self._settings.admission_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._lock_for(destination_id):
                    reservation = self._reserve_once(
                        destination_id, visit_date, visitors, price, zone
                    )
                break
            except ConcurrencyConflictError:
                logger.warning(
                    "Occupancy update contended | %s",
                    fields(destination_id=destination_id, attempt=attempt, of=attempts),
                )
                if attempt == attempts:
                    occupancy = self._repository.get_daily_occupancy(destination_id, visit_date)
                    resolution = self._capacity.resolve(destination_id, visit_date)
                    raise CapacityExceededError(
                        requested=visitors,
                        available=max(0, resolution.effective_capacity - occupancy.admitted_today),
                        rule=resolution.reason,
                    ) from None
                self._sleep(self._settings.admission_retry_backoff_seconds * attempt)

        self._publish(
            destination_id,
            visit_date,
            reservation.admitted_after,
            reservation.effective_capacity,
            "RESERVED",
        )
        return reservation

    def _reserve_once(
        self,
        destination_id: int,
        visit_date: date,
        visitors: int,
        price: Optional[PriceQuote],
        zone: Optional[Zone] = None,
    ) -> Reservation:
        resolution = self._capacity.resolve(destination_id, visit_date)
        if resolution.status == OperationalStatus.CLOSED or resolution.effective_capacity <= 0:
            raise CapacityExceededError(requested=visitors, available=0, rule=resolution.reason)

        created_at = self._clock()
        outcome = self._repository.reserve_capacity(
            destination_id=destination_id,
            visit_date=visit_date,
            visitors=visitors,
            effective_capacity=resolution.effective_capacity,
            reservation_token=uuid4().hex,
            total_price=price.total_price if price is not None else None,
            created_at=created_at,
            zone_id=zone.zone_id if zone is not None else None,
            zone_capacity=zone.max_capacity if zone is not None else None,
        )
        if outcome.rejected_by_zone:
            zone_available = max(0, zone.max_capacity - (outcome.zone_admitted_count or 0))
            logger.info(
                "Reservation rejected by zone | %s",
                fields(
                    destination_id=destination_id,
                    zone_id=zone.zone_id,
                    visit_date=visit_date,
                    requested=visitors,
                    available=zone_available,
                ),
            )
            raise CapacityExceededError(
                requested=visitors,
                available=zone_available,
                rule=f"Zone '{zone.name}' capacity",
            )
        if outcome.booking is None:
            available = max(0, resolution.effective_capacity - outcome.admitted_count)
            logger.info(
                "Reservation rejected | %s",
                fields(
                    destination_id=destination_id,
                    visit_date=visit_date,
                    requested=visitors,
                    available=available,
                    effective=resolution.effective_capacity,
                ),
            )
            raise CapacityExceededError(
                requested=visitors,
                available=available,
                rule=resolution.reason,
            )

        booking = outcome.booking
        ttl = self._settings.reservation_ttl_minutes
        logger.info(
            "Reservation admitted | %s",
            fields(
                booking_id=booking.booking_id,
                destination_id=destination_id,
                visit_date=visit_date,
                visitors=visitors,
                admitted=outcome.admitted_count,
                effective=resolution.effective_capacity,
            ),
        )
        return Reservation(
            booking_id=booking.booking_id,
            token=booking.reservation_token,
            destination_id=destination_id,
            visit_date=visit_date,
            visitors=visitors,
            admitted_after=outcome.admitted_count,
            effective_capacity=resolution.effective_capacity,
            expires_at=created_at + timedelta(minutes=ttl) if ttl > 0 else None,
            quote=price,
            zone_id=booking.zone_id,
        )

    def get_booking(self, booking_id: int) -> Booking:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    def release(self, booking_id: int, reason: str = "Cancelled by visitor") -> Booking:
        """Cancel a PENDING or CONFIRMED booking and return its visitors."""
        booking = self.get_booking(booking_id)
        if booking.status not in _RELEASABLE:
            raise BookingStateError(
                f"Booking {booking_id} cannot be cancelled from {booking.status.value}"
            )
        with self._lock_for(booking.destination_id):
            outcome = self._repository.release_booking(
                booking_id=booking_id,
                expected_statuses=_RELEASABLE,
                reason=reason,
            )
        if outcome is None:
            current = self.get_booking(booking_id)
            raise BookingStateError(
                f"Booking {booking_id} cannot be cancelled from {current.status.value}"
            )
        if outcome.clamped:
            logger.warning(
                "Admitted count would go negative; clamped at zero | %s",
                fields(
                    booking_id=booking_id,
                    destination_id=booking.destination_id,
                    visit_date=booking.visit_date,
                    visitors=booking.number_of_visitors,
                ),
            )
        logger.info(
            "Reservation released | %s",
            fields(
                booking_id=booking_id,
                visitors=booking.number_of_visitors,
                admitted=outcome.admitted_count,
                reason=reason,
            ),
        )
        self._publish(
            booking.destination_id,
            booking.visit_date,
            outcome.admitted_count,
            None,
            "RELEASED",
        )
        return outcome.booking

    def confirm(self, booking_id: int, payment_ref: str) -> Booking:
        """PENDING to CONFIRMED. Occupancy was already committed at reserve time."""
        if not payment_ref.strip():
            raise ValidationError("payment_ref must be non-empty")
        result = self._repository.transition_booking(
            booking_id=booking_id,
            from_status=BookingStatus.PENDING,
            to_status=BookingStatus.CONFIRMED,
            payment_ref=payment_ref.strip(),
            at=self._clock(),
        )
        if result is None:
            self._raise_transition_error(booking_id, BookingStatus.CONFIRMED)
        booking, _ = result
        logger.info("Booking confirmed | %s", fields(booking_id=booking_id))
        return booking

    def check_in(self, booking_id: int) -> Booking:
        booking = self.get_booking(booking_id)
        today = self._clock().date()
        if booking.visit_date != today:
            raise BookingStateError(
                f"Booking {booking_id} is for {booking.visit_date.isoformat()}, "
                f"not {today.isoformat()}"
            )
        result = self._repository.transition_booking(
            booking_id=booking_id,
            from_status=BookingStatus.CONFIRMED,
            to_status=BookingStatus.CHECKED_IN,
            on_site_delta=booking.number_of_visitors,
            at=self._clock(),
        )
        if result is None:
            self._raise_transition_error(booking_id, BookingStatus.CHECKED_IN)
        updated, occupancy = result
        logger.info(
            "Visitors checked in | %s",
            fields(booking_id=booking_id, on_site=occupancy.on_site_now),
        )
        self._publish(updated.destination_id, updated.visit_date, None, None, "CHECKED_IN")
        return updated

    def check_out(self, booking_id: int) -> Booking:
        booking = self.get_booking(booking_id)
        result = self._repository.transition_booking(
            booking_id=booking_id,
            from_status=BookingStatus.CHECKED_IN,
            to_status=BookingStatus.COMPLETED,
            on_site_delta=-booking.number_of_visitors,
            at=self._clock(),
        )
        if result is None:
            self._raise_transition_error(booking_id, BookingStatus.COMPLETED)
        updated, occupancy = result
        logger.info(
            "Visitors checked out | %s",
            fields(booking_id=booking_id, on_site=occupancy.on_site_now),
        )
        self._publish(updated.destination_id, updated.visit_date, None, None, "CHECKED_OUT")
        return updated

    def expire_stale_reservations(self, now: Optional[datetime] = None) -> list[int]:
        """Release PENDING bookings older than the reservation TTL."""
        ttl = self._settings.reservation_ttl_minutes
        if ttl <= 0:
            return []
        cutoff = (now or self._clock()) - timedelta(minutes=ttl)
        expired: list[int] = []
        for booking in self._repository.list_stale_pending_bookings(cutoff):
            try:
                self.release(booking.booking_id, reason="Reservation expired")
            except BookingStateError:
                # Confirmed or cancelled between the scan and the release.
                continue
            expired.append(booking.booking_id)
        if expired:
            logger.info("Expired stale reservations | %s", fields(count=len(expired)))
        return expired

    def _raise_transition_error(self, booking_id: int, target: BookingStatus) -> None:
        current = self.get_booking(booking_id)
        raise BookingStateError(
            f"Booking {booking_id} cannot move from {current.status.value} to {target.value}"
        )

    def _publish(
        self,
        destination_id: int,
        visit_date: date,
        admitted: Optional[int],
        effective_capacity: Optional[int],
        event_type: str,
    ) -> None:
        """Broadcast after commit. Never raises; never undoes the admission."""
        try:
            if admitted is None or effective_capacity is None:
                resolution = self._capacity.resolve(destination_id, visit_date)
                admitted = resolution.occupancy if admitted is None else admitted
                effective_capacity = resolution.effective_capacity
            self._relay.publish(
                CapacityEvent(
                    destination_id=destination_id,
                    visit_date=visit_date,
                    current_capacity=admitted,
                    max_daily_capacity=effective_capacity,
                    alert_level=classify_alert(
                        admitted, effective_capacity, self._capacity.alert_policy
                    ),
                    event_type=event_type,
                )
            )
        except Exception:
            logger.warning(
                "Capacity event not published | %s",
                fields(destination_id=destination_id, event_type=event_type),
                exc_info=True,
            )
