from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.auth.dependencies import require_admin
from clinic_booking.core import config
from clinic_booking.core.errors import LockTimeoutError
from clinic_booking.database import SessionLocal, ensure_rule_schema
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.schedule import DateOverride, WeeklyRule
from clinic_booking.scheduling.locks import SCHEDULE_LOCK_KEY, booking_locks
from clinic_booking.scheduling.normalize import to_hhmm, to_ymd, weekday_index
from clinic_booking.scheduling.records import OVERRIDE_TYPES, DateOverrideRecord, WeeklyRuleRecord
from clinic_booking.scheduling.resolver import resolve_effective_schedule
from clinic_booking.scheduling.rule_store import RuleStore

router = APIRouter(tags=['schedule'])


class DoctorPayload(BaseModel):
    doctor_id: str
    doctor_name: str = ''
    is_active: bool = True
    sort_order: int = 0
    color: str = ''

    @field_validator('doctor_id')
    @classmethod
    def validate_doctor_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('doctor_id is required.')
        return normalized


class DoctorResponse(DoctorPayload):
    class Config:
        from_attributes = True


class WeeklyRulePayload(BaseModel):
    weekday: int
    enabled: bool = False
    start_time: str = ''
    end_time: str = ''
    slot_minutes: int = config.DEFAULT_SLOT_MINUTES
    capacity: int = config.DEFAULT_CAPACITY

    @field_validator('weekday')
    @classmethod
    def validate_weekday(cls, value: int) -> int:
        if value < 0 or value > 6:
            raise ValueError('weekday must be 0..6')
        return value

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_time(cls, value: str) -> str:
        return to_hhmm(value)


class WeeklyRulesUpsertRequest(BaseModel):
    doctor_id: str
    rules: list[WeeklyRulePayload]

    @field_validator('doctor_id')
    @classmethod
    def validate_doctor_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('doctor_id is required.')
        return normalized


class OverridePayload(BaseModel):
    doctor_id: str
    date: str
    type: str = 'modify'
    start_time: str = ''
    end_time: str = ''
    slot_minutes: int | None = None
    capacity: int | None = None
    memo: str = ''

    @field_validator('doctor_id')
    @classmethod
    def validate_doctor_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('doctor_id is required.')
        return normalized

    @field_validator('date')
    @classmethod
    def validate_date(cls, value: str) -> str:
        normalized = to_ymd(value)
        if not normalized:
            raise ValueError('date is required.')
        if weekday_index(normalized) is None:
            raise ValueError('date must be a real calendar date.')
        return normalized

    @field_validator('type')
    @classmethod
    def validate_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in OVERRIDE_TYPES:
            raise ValueError('type must be one of open, modify, closed.')
        return normalized

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_time(cls, value: str) -> str:
        return to_hhmm(value)


class OverrideDeleteResponse(BaseModel):
    found: bool
    deleted: int


class EffectiveScheduleResponse(BaseModel):
    doctor_id: str
    date: str
    is_open: bool
    start: str
    end: str
    slot_minutes: int
    capacity: int
    reason: str | None = None


class ScheduleRangeResponse(BaseModel):
    doctors: list[DoctorResponse]
    weekly_rules: list[WeeklyRuleRecord]
    overrides: list[DateOverrideRecord]


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_database_ready(db: Session) -> None:
    ensure_rule_schema(db.get_bind())


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail='Database unavailable. Verify DATABASE_URL and database credentials.',
    )


def schedule_busy() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail='Schedule is being edited. Try again shortly.',
    )


def list_doctors(db: Session) -> list[Doctor]:
    return db.query(Doctor).order_by(Doctor.sort_order.asc(), Doctor.id.asc()).all()


def list_weekly_rules(db: Session, doctor_id: str | None) -> list[WeeklyRuleRecord]:
    query = db.query(WeeklyRule)
    if doctor_id:
        query = query.filter(WeeklyRule.doctor_id == doctor_id)
    rows = query.order_by(WeeklyRule.doctor_id.asc(), WeeklyRule.weekday.asc(), WeeklyRule.id.asc()).all()
    return [WeeklyRuleRecord.model_validate(row) for row in rows]


def list_overrides(db: Session, doctor_id: str | None, start: str | None, end: str | None) -> list[DateOverrideRecord]:
    query = db.query(DateOverride)
    if doctor_id:
        query = query.filter(DateOverride.doctor_id == doctor_id)

    start_key = to_ymd(start)
    end_key = to_ymd(end)
    overrides = []
    for row in query.order_by(DateOverride.id.asc()).all():
        record = DateOverrideRecord.model_validate(row)
        if not record.doctor_id or not record.date:
            continue
        if start_key and record.date < start_key:
            continue
        if end_key and record.date > end_key:
            continue
        overrides.append(record)
    return overrides


def find_override_rows(db: Session, doctor_id: str, date: str) -> list[DateOverride]:
    rows = db.query(DateOverride).filter(
        DateOverride.doctor_id == doctor_id,
    ).order_by(DateOverride.id.asc()).all()
    return [row for row in rows if to_ymd(row.date) == date]


@router.get('/effective', response_model=EffectiveScheduleResponse)
def get_effective_schedule(
    date: str = Query(...),
    doctor_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready(db)

    target_date = to_ymd(date)
    resolved_doctor_id = doctor_id or config.DEFAULT_DOCTOR_ID
    try:
        schedule = resolve_effective_schedule(RuleStore(db), resolved_doctor_id, target_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return EffectiveScheduleResponse(doctor_id=resolved_doctor_id, date=target_date, **schedule.model_dump())


@router.get('/doctors', response_model=list[DoctorResponse])
def get_doctors(db: Session = Depends(get_db), admin: str = Depends(require_admin)):
    try:
        return list_doctors(db)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/doctors', response_model=DoctorResponse)
def upsert_doctor(data: DoctorPayload, db: Session = Depends(get_db), admin: str = Depends(require_admin)):
    try:
        with booking_locks.hold(SCHEDULE_LOCK_KEY, config.ADMIN_LOCK_TIMEOUT_SECONDS):
            doctor = db.query(Doctor).filter(Doctor.doctor_id == data.doctor_id).first()
            if doctor is None:
                doctor = Doctor(doctor_id=data.doctor_id)
                db.add(doctor)

            doctor.doctor_name = data.doctor_name
            doctor.is_active = data.is_active
            doctor.sort_order = data.sort_order
            doctor.color = data.color
            db.commit()
            db.refresh(doctor)
            return doctor
    except LockTimeoutError as exc:
        raise schedule_busy() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/weekly-rules', response_model=list[WeeklyRuleRecord])
def get_weekly_rules(
    doctor_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    admin: str = Depends(require_admin),
):
    ensure_database_ready(db)
    try:
        return list_weekly_rules(db, doctor_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/weekly-rules', response_model=list[WeeklyRuleRecord])
def upsert_weekly_rules(
    data: WeeklyRulesUpsertRequest,
    db: Session = Depends(get_db),
    admin: str = Depends(require_admin),
):
    ensure_database_ready(db)
    try:
        with booking_locks.hold(SCHEDULE_LOCK_KEY, config.ADMIN_LOCK_TIMEOUT_SECONDS):
            # First row per weekday, the one RuleStore.get_weekly_rule reads.
            existing = {}
            for row in db.query(WeeklyRule).filter(
                WeeklyRule.doctor_id == data.doctor_id,
            ).order_by(WeeklyRule.id.asc()).all():
                existing.setdefault(row.weekday, row)
            now = datetime.now()

            for rule in data.rules:
                row = existing.get(rule.weekday)
                if row is None:
                    row = WeeklyRule(doctor_id=data.doctor_id, weekday=rule.weekday)
                    db.add(row)
                    existing[rule.weekday] = row

                row.enabled = rule.enabled
                row.start_time = rule.start_time
                row.end_time = rule.end_time
                row.slot_minutes = rule.slot_minutes
                row.capacity = rule.capacity
                row.updated_at = now

            db.commit()
            return list_weekly_rules(db, data.doctor_id)
    except LockTimeoutError as exc:
        raise schedule_busy() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/overrides', response_model=list[DateOverrideRecord])
def get_overrides(
    doctor_id: str | None = Query(default=None),
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    db: Session = Depends(get_db),
    admin: str = Depends(require_admin),
):
    ensure_database_ready(db)
    try:
        return list_overrides(db, doctor_id, start, end)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/overrides', response_model=DateOverrideRecord)
def upsert_override(data: OverridePayload, db: Session = Depends(get_db), admin: str = Depends(require_admin)):
    ensure_database_ready(db)
    try:
        with booking_locks.hold(SCHEDULE_LOCK_KEY, config.ADMIN_LOCK_TIMEOUT_SECONDS):
            matching = find_override_rows(db, data.doctor_id, data.date)
            if matching:
                row = matching[-1]
            else:
                row = DateOverride(doctor_id=data.doctor_id, date=data.date)
                db.add(row)

            row.date = data.date
            row.type = data.type
            row.start_time = data.start_time
            row.end_time = data.end_time
            row.slot_minutes = data.slot_minutes
            row.capacity = data.capacity
            row.memo = data.memo
            row.updated_at = datetime.now()
            db.commit()
            db.refresh(row)
            return DateOverrideRecord.model_validate(row)
    except LockTimeoutError as exc:
        raise schedule_busy() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/overrides', response_model=OverrideDeleteResponse)
def delete_override(
    doctor_id: str = Query(...),
    date: str = Query(...),
    db: Session = Depends(get_db),
    admin: str = Depends(require_admin),
):
    target_date = to_ymd(date)
    if not doctor_id.strip() or not target_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='doctor_id and date required')

    ensure_database_ready(db)
    try:
        with booking_locks.hold(SCHEDULE_LOCK_KEY, config.ADMIN_LOCK_TIMEOUT_SECONDS):
            matching = find_override_rows(db, doctor_id.strip(), target_date)
            for row in matching:
                db.delete(row)
            db.commit()
    except LockTimeoutError as exc:
        raise schedule_busy() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return OverrideDeleteResponse(found=bool(matching), deleted=len(matching))


@router.get('/range', response_model=ScheduleRangeResponse)
def get_schedule_range(
    doctor_id: str | None = Query(default=None),
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    db: Session = Depends(get_db),
    admin: str = Depends(require_admin),
):
    ensure_database_ready(db)
    try:
        return ScheduleRangeResponse(
            doctors=[DoctorResponse.model_validate(doctor) for doctor in list_doctors(db)],
            weekly_rules=list_weekly_rules(db, doctor_id),
            overrides=list_overrides(db, doctor_id, start, end),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
