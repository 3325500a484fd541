"""Effective schedule resolution.

A doctor's day is described by a weekly rule for its weekday, optionally
layered with a date override. Nothing is cached: the schedule is resolved
again for every request so admin edits take effect immediately.
"""

from typing import Iterable, Protocol

from clinic_booking.core import config
from clinic_booking.scheduling.normalize import weekday_index
from clinic_booking.scheduling.records import DateOverrideRecord, EffectiveSchedule, WeeklyRuleRecord

OPENING_OVERRIDE_TYPES = {'open', 'modify'}


class RuleSource(Protocol):
    def get_weekly_rule(self, doctor_id: str, weekday: int) -> WeeklyRuleRecord | None: ...

    def get_date_overrides(self, doctor_id: str, date: str | None = None) -> list[DateOverrideRecord]: ...


def latest_override(overrides: Iterable[DateOverrideRecord], date: str) -> DateOverrideRecord | None:
    """Last-write-wins over the append-ordered override log for one date."""
    for override in reversed(list(overrides)):
        if override.date == date:
            return override
    return None


def resolve_effective_schedule(rule_store: RuleSource, doctor_id: str | None, date: str) -> EffectiveSchedule:
    doctor_id = doctor_id or config.DEFAULT_DOCTOR_ID

    weekday = weekday_index(date)
    if weekday is None:
        return EffectiveSchedule(is_open=False, reason='weekly_closed')

    weekly = rule_store.get_weekly_rule(doctor_id, weekday)
    override = latest_override(rule_store.get_date_overrides(doctor_id, date), date)

    return combine_rules(weekly, override)


def combine_rules(weekly: WeeklyRuleRecord | None, override: DateOverrideRecord | None) -> EffectiveSchedule:
    override_type = override.type if override else ''

    if override_type == 'closed':
        return EffectiveSchedule(is_open=False, reason='closed')

    weekly_enabled = weekly.enabled if weekly else False
    if not weekly_enabled and override_type not in OPENING_OVERRIDE_TYPES:
        return EffectiveSchedule(is_open=False, reason='weekly_closed')

    base_start = weekly.start_time if weekly else ''
    base_end = weekly.end_time if weekly else ''
    base_slot = (weekly.slot_minutes if weekly else None) or config.DEFAULT_SLOT_MINUTES
    base_capacity = (weekly.capacity if weekly else None) or config.DEFAULT_CAPACITY

    start = (override.start_time if override else '') or base_start
    end = (override.end_time if override else '') or base_end
    slot_minutes = override.slot_minutes if override and override.slot_minutes is not None else base_slot
    capacity = override.capacity if override and override.capacity is not None else base_capacity

    if not start or not end:
        return EffectiveSchedule(
            is_open=False,
            slot_minutes=slot_minutes,
            capacity=capacity,
            reason='missing_hours',
        )

    return EffectiveSchedule(
        is_open=True,
        start=start,
        end=end,
        slot_minutes=slot_minutes,
        capacity=capacity,
    )
