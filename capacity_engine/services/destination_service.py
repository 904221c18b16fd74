"""Destination registry."""

from __future__ import annotations

from datetime import datetime, time
from decimal import Decimal
from typing import Callable, Iterable, Optional

from capacity_engine.domain.constraints import validate_destination, validate_zone
from capacity_engine.domain.errors import DestinationNotFoundError, ZoneNotFoundError
from capacity_engine.domain.models import Destination, DestinationStatus, Zone
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)


class DestinationService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def create(
        self,
        *,
        name: str,
        base_capacity: int,
        base_price: Optional[Decimal] = None,
        opening_time: time = time(6, 0),
        closing_time: time = time(18, 0),
        operating_days: Iterable[int] = (),
        status: DestinationStatus = DestinationStatus.ACTIVE,
    ) -> Destination:
        destination = Destination(
            destination_id=0,
            name=name.strip(),
            base_capacity=base_capacity,
            base_price=(
                base_price
                if base_price is not None
                else Decimal(self._settings.pricing_default_base_price)
            ),
            status=status,
            operating_days=frozenset(operating_days),
            opening_time=opening_time,
            closing_time=closing_time,
            created_at=self._clock().replace(microsecond=0),
        )
        validate_destination(destination)
        created = self._repository.create_destination(destination)
        logger.info(
            "Destination registered | %s",
            fields(destination_id=created.destination_id, base_capacity=created.base_capacity),
        )
        return created

    def get(self, destination_id: int) -> Destination:
        destination = self._repository.get_destination(destination_id)
        if destination is None:
            raise DestinationNotFoundError(destination_id)
        return destination

    def list_all(self) -> list[Destination]:
        return self._repository.list_destinations()

    def set_status(self, destination_id: int, status: DestinationStatus) -> Destination:
        updated = self._repository.update_destination_status(destination_id, status)
        if updated is None:
            raise DestinationNotFoundError(destination_id)
        logger.info(
            "Destination status changed | %s",
            fields(destination_id=destination_id, status=status.value),
        )
        return updated

    def create_zone(self, destination_id: int, *, name: str, max_capacity: int) -> Zone:
        self.get(destination_id)
        zone = Zone(
            zone_id=0,
            destination_id=destination_id,
            name=name.strip(),
            max_capacity=max_capacity,
            created_at=self._clock().replace(microsecond=0),
        )
        validate_zone(zone)
        created = self._repository.create_zone(zone)
        logger.info(
            "Zone registered | %s",
            fields(
                zone_id=created.zone_id,
                destination_id=destination_id,
                max_capacity=created.max_capacity,
            ),
        )
        return created

    def list_zones(self, destination_id: int) -> list[Zone]:
        self.get(destination_id)
        return self._repository.list_zones(destination_id)

    def get_zone(self, destination_id: int, zone_id: int) -> Zone:
        """A zone is only addressable through the destination that owns it."""
        zone = self._repository.get_zone(zone_id)
        if zone is None or zone.destination_id != destination_id:
            raise ZoneNotFoundError(zone_id, destination_id)
        return zone
