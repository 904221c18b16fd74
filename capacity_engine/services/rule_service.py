"""Validated rule CRUD with a read-through in-memory cache."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from threading import RLock
from typing import Optional

from capacity_engine.domain.constraints import validate_capacity_rule, validate_pricing_rule
from capacity_engine.domain.errors import (
    DestinationNotFoundError,
    RuleNotFoundError,
    StaleConfigurationError,
)
from capacity_engine.domain.models import CapacityRule, PricingRule
from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

_CAPACITY = "capacity"
_PRICING = "pricing"


class RuleService:
    """Owns capacity and pricing rules for every destination.

    Reads go through a per-destination cache; any write for a destination
    drops that destination's entries so the next read sees the change.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._cache: dict[tuple[str, int], tuple] = {}
        self._generations: dict[int, int] = {}
        self._epoch = 0
        self._lock = RLock()

    def invalidate(self, destination_id: Optional[int] = None) -> None:
        with self._lock:
            if destination_id is None:
                self._epoch += 1
                self._cache.clear()
                return
            self._generations[destination_id] = self._generations.get(destination_id, 0) + 1
            self._cache.pop((_CAPACITY, destination_id), None)
            self._cache.pop((_PRICING, destination_id), None)

    def _cached(self, kind: str, destination_id: int, loader) -> tuple:
        key = (kind, destination_id)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            generation = self._generation(destination_id)
        try:
            rules = tuple(loader(destination_id))
        except sqlite3.Error as exc:
            raise StaleConfigurationError(
                f"Could not load {kind} rules for destination {destination_id}: {exc}"
            ) from exc
        with self._lock:
            # A write landed mid-load: return what was read, but never cache it.
            if self._generation(destination_id) == generation:
                self._cache[key] = rules
        return rules

    def _generation(self, destination_id: int) -> tuple[int, int]:
        return self._epoch, self._generations.get(destination_id, 0)

    def _require_destination(self, destination_id: int) -> None:
        if self._repository.get_destination(destination_id) is None:
            raise DestinationNotFoundError(destination_id)

    # --- capacity rules ---

    def capacity_rules(self, destination_id: int) -> tuple[CapacityRule, ...]:
        return self._cached(_CAPACITY, destination_id, self._repository.list_capacity_rules)

    def get_capacity_rule(self, rule_id: int) -> CapacityRule:
        rule = self._repository.get_capacity_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(_CAPACITY, rule_id)
        return rule

    def create_capacity_rule(self, rule: CapacityRule) -> CapacityRule:
        validate_capacity_rule(rule)
        self._require_destination(rule.destination_id)
        created = self._repository.create_capacity_rule(rule)
        self.invalidate(created.destination_id)
        logger.info(
            "Capacity rule created | %s",
            fields(
                rule_id=created.rule_id,
                destination_id=created.destination_id,
                priority=created.priority,
            ),
        )
        return created

    def update_capacity_rule(self, rule: CapacityRule) -> CapacityRule:
        existing = self.get_capacity_rule(rule.rule_id)
        candidate = replace(
            rule,
            destination_id=existing.destination_id,
            created_at=existing.created_at,
        )
        validate_capacity_rule(candidate)
        if not self._repository.update_capacity_rule(candidate):
            raise RuleNotFoundError(_CAPACITY, rule.rule_id)
        self.invalidate(existing.destination_id)
        logger.info("Capacity rule updated | %s", fields(rule_id=rule.rule_id))
        return self.get_capacity_rule(rule.rule_id)

    def delete_capacity_rule(self, rule_id: int) -> None:
        existing = self.get_capacity_rule(rule_id)
        self._repository.delete_capacity_rule(rule_id)
        self.invalidate(existing.destination_id)
        logger.info("Capacity rule deleted | %s", fields(rule_id=rule_id))

    # --- pricing rules ---

    def pricing_rules(self, destination_id: int) -> tuple[PricingRule, ...]:
        return self._cached(_PRICING, destination_id, self._repository.list_pricing_rules)

    def get_pricing_rule(self, rule_id: int) -> PricingRule:
        rule = self._repository.get_pricing_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(_PRICING, rule_id)
        return rule

    def create_pricing_rule(self, rule: PricingRule) -> PricingRule:
        validate_pricing_rule(rule)
        self._require_destination(rule.destination_id)
        created = self._repository.create_pricing_rule(rule)
        self.invalidate(created.destination_id)
        logger.info(
            "Pricing rule created | %s",
            fields(
                rule_id=created.rule_id,
                destination_id=created.destination_id,
                priority=created.priority,
            ),
        )
        return created

    def update_pricing_rule(self, rule: PricingRule) -> PricingRule:
        existing = self.get_pricing_rule(rule.rule_id)
        candidate = replace(
            rule,
            destination_id=existing.destination_id,
            created_at=existing.created_at,
        )
        validate_pricing_rule(candidate)
        if not self._repository.update_pricing_rule(candidate):
            raise RuleNotFoundError(_PRICING, rule.rule_id)
        self.invalidate(existing.destination_id)
        logger.info("Pricing rule updated | %s", fields(rule_id=rule.rule_id))
        return self.get_pricing_rule(rule.rule_id)

    def delete_pricing_rule(self, rule_id: int) -> None:
        existing = self.get_pricing_rule(rule_id)
        self._repository.delete_pricing_rule(rule_id)
        self.invalidate(existing.destination_id)
        logger.info("Pricing rule deleted | %s", fields(rule_id=rule_id))
