"""Background sweep that releases reservations abandoned before payment."""

from __future__ import annotations

from threading import Event, Thread
from typing import Optional

from capacity_engine.services.admission_service import AdmissionService
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)


class ReservationExpiryWorker:
    def __init__(
        self,
        admission_service: AdmissionService,
        settings: Optional[Settings] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._admission = admission_service
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else float(self._settings.reservation_sweep_interval_seconds)
        )
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        if self._settings.reservation_ttl_minutes <= 0 or self._interval <= 0:
            logger.info("Reservation expiry disabled")
            return
        self._stop.clear()
        self._thread = Thread(
            target=self._run,
            name="reservation-expiry",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Reservation expiry worker started | %s",
            fields(
                interval_s=self._interval,
                ttl_min=self._settings.reservation_ttl_minutes,
            ),
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> list[int]:
        return self._admission.expire_stale_reservations()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                # Next tick retries.
                logger.exception("Reservation expiry sweep failed")
