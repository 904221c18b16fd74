"""Decides whether a capacity or pricing rule applies at a point in time.

Weekdays follow the 0=Sunday .. 6=Saturday convention used by stored rules,
so ``TimeContext.from_datetime`` converts from Python's Monday-based index.
Time windows are same-day only; an end time earlier than the start time
never matches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, Optional, TypeVar, Union

from capacity_engine.domain.models import CapacityRule, PricingRule


Rule = Union[CapacityRule, PricingRule]
R = TypeVar("R", CapacityRule, PricingRule)

_EPOCH = datetime.min


def to_rule_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


@dataclass(frozen=True)
class TimeContext:
    date: date
    time_of_day: time
    weekday: int

    @classmethod
    def from_datetime(cls, value: datetime) -> "TimeContext":
        return cls(
            date=value.date(),
            time_of_day=value.time().replace(tzinfo=None),
            weekday=to_rule_weekday(value.date()),
        )

    @classmethod
    def at(cls, on: date, time_of_day: time) -> "TimeContext":
        return cls(date=on, time_of_day=time_of_day, weekday=to_rule_weekday(on))


def is_applicable(rule: Rule, now: TimeContext) -> bool:
    if not rule.is_active:
        return False
    if rule.applicable_days and now.weekday not in rule.applicable_days:
        return False
    if rule.start_date is not None and now.date < rule.start_date:
        return False
    if rule.end_date is not None and now.date > rule.end_date:
        return False

    start_time: Optional[time] = getattr(rule, "start_time", None)
    end_time: Optional[time] = getattr(rule, "end_time", None)
    if start_time is not None and now.time_of_day < start_time:
        return False
    if end_time is not None and now.time_of_day > end_time:
        return False
    return True


def _precedence(rule: Rule) -> tuple[int, datetime, int]:
    return (rule.priority, rule.created_at or _EPOCH, rule.rule_id)


def rank_applicable(rules: Iterable[R], now: TimeContext) -> list[R]:
    """Applicable rules, strongest first.

    Ties on priority go to the most recently created rule, then the higher id.
    """
    applicable = [rule for rule in rules if is_applicable(rule, now)]
    return sorted(applicable, key=_precedence, reverse=True)


def select_rule(rules: Iterable[R], now: TimeContext) -> Optional[R]:
    ranked = rank_applicable(rules, now)
    return ranked[0] if ranked else None
