"""Typed records translated once from storage rows.

The ORM rows keep hours as loosely formatted strings because admins and
imports write them in whatever shape they have; these records normalize on
the way in so the resolver and booking code only ever see canonical values.
"""

from typing import Any

from pydantic import BaseModel, field_validator

from clinic_booking.core import config
from clinic_booking.scheduling.normalize import to_hhmm, to_ymd

OVERRIDE_TYPES = {'open', 'modify', 'closed'}


def _optional_int(value: Any) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().upper() == 'TRUE'
    return bool(value)


class WeeklyRuleRecord(BaseModel):
    doctor_id: str
    weekday: int
    enabled: bool = False
    start_time: str = ''
    end_time: str = ''
    slot_minutes: int | None = None
    capacity: int | None = None

    class Config:
        from_attributes = True

    @field_validator('doctor_id', mode='before')
    @classmethod
    def strip_doctor_id(cls, value: Any) -> str:
        return str(value or '').strip()

    @field_validator('enabled', mode='before')
    @classmethod
    def coerce_enabled(cls, value: Any) -> bool:
        return _to_bool(value)

    @field_validator('start_time', 'end_time', mode='before')
    @classmethod
    def normalize_time(cls, value: Any) -> str:
        return to_hhmm(value)

    @field_validator('slot_minutes', 'capacity', mode='before')
    @classmethod
    def blank_to_none(cls, value: Any) -> int | None:
        return _optional_int(value)


class DateOverrideRecord(BaseModel):
    doctor_id: str
    date: str
    type: str = ''
    start_time: str = ''
    end_time: str = ''
    slot_minutes: int | None = None
    capacity: int | None = None
    memo: str = ''

    class Config:
        from_attributes = True

    @field_validator('doctor_id', 'memo', mode='before')
    @classmethod
    def strip_text(cls, value: Any) -> str:
        return str(value or '').strip()

    @field_validator('date', mode='before')
    @classmethod
    def normalize_date(cls, value: Any) -> str:
        return to_ymd(value)

    @field_validator('type', mode='before')
    @classmethod
    def normalize_type(cls, value: Any) -> str:
        return str(value or '').strip().lower()

    @field_validator('start_time', 'end_time', mode='before')
    @classmethod
    def normalize_time(cls, value: Any) -> str:
        return to_hhmm(value)

    @field_validator('slot_minutes', 'capacity', mode='before')
    @classmethod
    def blank_to_none(cls, value: Any) -> int | None:
        return _optional_int(value)


class ReservationRecord(BaseModel):
    reserve_id: str
    patient_id: str
    patient_name: str = ''
    date: str
    time: str
    status: str = ''

    class Config:
        from_attributes = True

    @field_validator('reserve_id', 'patient_id', 'patient_name', 'status', mode='before')
    @classmethod
    def strip_text(cls, value: Any) -> str:
        return str(value or '').strip()

    @field_validator('date', mode='before')
    @classmethod
    def normalize_date(cls, value: Any) -> str:
        return to_ymd(value)

    @field_validator('time', mode='before')
    @classmethod
    def normalize_time(cls, value: Any) -> str:
        return to_hhmm(value)

    @property
    def is_canceled(self) -> bool:
        return self.status == config.CANCELED_STATUS


class EffectiveSchedule(BaseModel):
    is_open: bool
    start: str = ''
    end: str = ''
    slot_minutes: int = config.DEFAULT_SLOT_MINUTES
    capacity: int = config.DEFAULT_CAPACITY
    reason: str | None = None


class SlotOccupancy(BaseModel):
    count: int = 0
    has_active_reservation: bool = False
