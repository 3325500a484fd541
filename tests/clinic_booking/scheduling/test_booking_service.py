from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinic_booking.core.errors import BookingError
from clinic_booking.database import Base
from clinic_booking.models.reservation import Reservation
from clinic_booking.models.schedule import DateOverride, WeeklyRule
from clinic_booking.scheduling.booking import BookingService
from clinic_booking.scheduling.locks import BOOKING_LOCK_KEY, KeyedLock
from clinic_booking.scheduling.repository import ReservationRepository

MONDAY = '2026-01-05'
TUESDAY = '2026-01-06'


class RecordingMirrors:
    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, tuple]] = []

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise RuntimeError(f'{name} unavailable')

    def upsert_by_patient(self, patient_id, fields):
        self._record('upsert_by_patient', patient_id, fields)

    def upsert_reservation(self, fields):
        self._record('upsert_reservation', fields)

    def invalidate(self, patient_id):
        self._record('invalidate', patient_id)

    def named(self, name: str) -> list[tuple]:
        return [args for call_name, args in self.calls if call_name == name]


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f'sqlite:///{tmp_path / "booking.db"}', connect_args={'check_same_thread': False})
    tables = [WeeklyRule.__table__, DateOverride.__table__, Reservation.__table__]
    Base.metadata.create_all(bind=engine, tables=tables)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine, tables=tables)
        engine.dispose()


@pytest.fixture
def mirrors() -> RecordingMirrors:
    return RecordingMirrors()


@pytest.fixture
def service(session_factory, mirrors) -> BookingService:
    return BookingService(
        session_factory=session_factory,
        locks=KeyedLock(),
        mirrors=mirrors,
        lock_timeout=5,
        mirrors_enabled=True,
    )


def add_rows(session_factory, *rows) -> None:
    db = session_factory()
    try:
        db.add_all(rows)
        db.commit()
    finally:
        db.close()


@pytest.fixture
def monday_rule(session_factory) -> None:
    add_rows(
        session_factory,
        WeeklyRule(
            doctor_id='dr_default',
            weekday=1,
            enabled=True,
            start_time='09:00',
            end_time='10:00',
            slot_minutes=30,
            capacity=2,
        ),
        WeeklyRule(
            doctor_id='dr_default',
            weekday=2,
            enabled=False,
            start_time='09:00',
            end_time='10:00',
            slot_minutes=30,
            capacity=2,
        ),
    )


def test_slot_accepts_bookings_up_to_capacity(service, monday_rule) -> None:
    first = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')
    second = service.create_reservation('dr_default', MONDAY, '9:00', 'p2')
    third = service.create_reservation('dr_default', MONDAY, '09:00', 'p3')

    assert first.ok and second.ok
    assert first.reserve_id != second.reserve_id
    assert not third.ok
    assert third.error == 'slot_full'


def test_time_off_the_slot_grid_is_invalid_slot(service, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', MONDAY, '09:15', 'p1')

    assert outcome.error == 'invalid_slot'


def test_closing_time_is_outside_hours(service, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', MONDAY, '10:00', 'p1')

    assert outcome.error == 'outside_hours'
    assert outcome.reason is None


def test_unparseable_time_is_invalid_time(service, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', MONDAY, 'noon', 'p1')

    assert outcome.error == 'invalid_time'


def test_closed_override_rejects_every_booking_that_day(service, session_factory, monday_rule) -> None:
    add_rows(session_factory, DateOverride(doctor_id='dr_default', date=MONDAY, type='closed'))

    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')

    assert not outcome.ok
    assert outcome.error == 'outside_hours'
    assert outcome.reason == 'closed'


def test_disabled_weekday_rejects_with_weekly_closed(service, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', TUESDAY, '09:00', 'p1')

    assert outcome.reason == 'weekly_closed'


def test_open_override_allows_booking_on_disabled_weekday(service, session_factory, monday_rule) -> None:
    add_rows(session_factory, DateOverride(doctor_id='dr_default', date=TUESDAY, type='open', capacity=1))

    first = service.create_reservation('dr_default', TUESDAY, '09:30', 'p1')
    second = service.create_reservation('dr_default', TUESDAY, '09:30', 'p2')

    assert first.ok
    assert second.error == 'slot_full'


@pytest.mark.parametrize(
    ('date', 'time', 'patient_id', 'error'),
    [
        (MONDAY, '09:00', '  ', 'patient_id_required'),
        (MONDAY, '09:00', None, 'patient_id_required'),
        ('', '09:00', 'p1', 'invalid_request'),
        (MONDAY, None, 'p1', 'invalid_request'),
    ],
)
def test_create_preconditions(service, date, time, patient_id, error) -> None:
    outcome = service.create_reservation('dr_default', date, time, patient_id)

    assert not outcome.ok
    assert outcome.error == error


def test_patient_with_active_reservation_cannot_book_another_slot(service, monday_rule) -> None:
    assert service.create_reservation('dr_default', MONDAY, '09:00', 'p1').ok

    outcome = service.create_reservation('dr_default', MONDAY, '09:30', 'p1')

    assert outcome.error == 'already_reserved'


def test_patient_can_book_again_after_cancel(service, monday_rule) -> None:
    booked = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')
    assert service.cancel_reservation(booked.reserve_id).ok

    rebooked = service.create_reservation('dr_default', MONDAY, '09:30', 'p1')

    assert rebooked.ok


def test_caller_supplied_reserve_id_is_kept(service, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1', reserve_id='resv-from-app')

    assert outcome.reserve_id == 'resv-from-app'
    duplicate = service.create_reservation('dr_default', MONDAY, '09:30', 'p2', reserve_id='resv-from-app')
    assert duplicate.error == 'invalid_request'
    assert duplicate.reason == 'duplicate_reserve_id'


def test_concurrent_creates_never_exceed_capacity(service, session_factory, monday_rule) -> None:
    patients = ['p1', 'p2', 'p3', 'p4', 'p5']
    with ThreadPoolExecutor(max_workers=len(patients)) as pool:
        outcomes = list(pool.map(
            lambda patient_id: service.create_reservation('dr_default', MONDAY, '09:00', patient_id),
            patients,
        ))

    assert sum(outcome.ok for outcome in outcomes) == 2
    assert {outcome.error for outcome in outcomes if not outcome.ok} == {'slot_full'}

    db = session_factory()
    try:
        assert ReservationRepository(db).count_active_at(MONDAY, '09:00') == 2
    finally:
        db.close()


def test_booking_fails_when_lock_is_not_acquired(session_factory, mirrors, monday_rule) -> None:
    locks = KeyedLock()
    service = BookingService(session_factory=session_factory, locks=locks, mirrors=mirrors, lock_timeout=0.05)

    with locks.hold(BOOKING_LOCK_KEY, timeout=1):
        outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')

    assert outcome.error == 'lock_timeout'


def test_successful_create_pushes_every_mirror(service, mirrors, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1', patient_name='Hanako')

    assert outcome.mirror_sync == 'attempted'
    assert mirrors.named('upsert_by_patient') == [
        ('p1', {'reserve_id': outcome.reserve_id, 'reserved_date': MONDAY, 'reserved_time': '09:00'}),
    ]
    (reservation_fields,) = mirrors.named('upsert_reservation')[0]
    assert reservation_fields['status'] == 'pending'
    assert reservation_fields['patient_name'] == 'Hanako'
    assert mirrors.named('invalidate') == [('p1',)]


def test_mirror_failure_is_reported_without_failing_the_booking(session_factory, monday_rule) -> None:
    mirrors = RecordingMirrors(fail_on={'upsert_by_patient'})
    service = BookingService(session_factory=session_factory, locks=KeyedLock(), mirrors=mirrors, mirrors_enabled=True)

    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')

    assert outcome.ok
    assert outcome.mirror_sync.startswith('failed: intake')
    assert len(mirrors.named('upsert_reservation')) == 1
    assert len(mirrors.named('invalidate')) == 1
    assert [entry.time for entry in service.list_by_date(MONDAY)] == ['09:00']


def test_skip_mirrors_flag(service, mirrors, monday_rule) -> None:
    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1', skip_mirrors=True)

    assert outcome.mirror_sync == 'skipped'
    assert mirrors.calls == []


def test_update_moves_reservation_without_capacity_check(service, mirrors, monday_rule) -> None:
    service.create_reservation('dr_default', MONDAY, '09:30', 'p1')
    service.create_reservation('dr_default', MONDAY, '09:30', 'p2')
    moving = service.create_reservation('dr_default', MONDAY, '09:00', 'p3')

    outcome = service.update_reservation(moving.reserve_id, MONDAY, '9:30')

    assert outcome.ok
    assert outcome.patient_id == 'p3'
    assert [entry.time for entry in service.list_by_date(MONDAY)] == ['09:30', '09:30', '09:30']
    assert mirrors.named('upsert_by_patient')[-1] == (
        'p3',
        {'reserve_id': moving.reserve_id, 'reserved_date': MONDAY, 'reserved_time': '09:30'},
    )


def test_update_rejects_missing_fields_and_unknown_ids(service) -> None:
    assert service.update_reservation('', MONDAY, '09:00').error == 'invalid_request'
    assert service.update_reservation('resv-missing', MONDAY, '09:00').error == 'reserveId_not_found'


def test_update_of_canceled_reservation_is_rejected(service, monday_rule) -> None:
    booked = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')
    service.cancel_reservation(booked.reserve_id)

    outcome = service.update_reservation(booked.reserve_id, MONDAY, '09:30')

    assert outcome.error == 'invalid_request'
    assert outcome.reason == 'canceled'


def test_cancel_clears_mirrors_and_is_idempotent(service, session_factory, mirrors, monday_rule) -> None:
    booked = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')
    mirrors.calls.clear()

    first = service.cancel_reservation(booked.reserve_id)
    second = service.cancel_reservation(booked.reserve_id)

    assert first.ok and first.mirror_sync == 'attempted'
    assert second.ok and second.mirror_sync == 'skipped'
    assert mirrors.named('upsert_by_patient') == [
        ('p1', {'reserve_id': None, 'reserved_date': None, 'reserved_time': None}),
    ]
    (reservation_fields,) = mirrors.named('upsert_reservation')[0]
    assert reservation_fields['status'] == 'canceled'
    assert reservation_fields['reserved_date'] is None

    db = session_factory()
    try:
        stored = ReservationRepository(db).get_by_key(booked.reserve_id)
    finally:
        db.close()
    assert stored.status == 'canceled'
    assert (stored.date, stored.time) == (MONDAY, '09:00')


def test_cancel_of_unknown_reservation(service) -> None:
    assert service.cancel_reservation('resv-missing').error == 'reserveId_not_found'
    assert service.cancel_reservation(' ').error == 'invalid_request'


def test_list_by_date_returns_every_active_booking(service, monday_rule) -> None:
    service.create_reservation('dr_default', MONDAY, '09:00', 'p1')
    service.create_reservation('dr_default', MONDAY, '09:00', 'p2')
    canceled = service.create_reservation('dr_default', MONDAY, '09:30', 'p3')
    service.create_reservation('dr_default', MONDAY, '09:30', 'p4')
    service.cancel_reservation(canceled.reserve_id)

    entries = service.list_by_date('2026/01/05')

    assert [(entry.date, entry.time) for entry in entries] == [(MONDAY, '09:00'), (MONDAY, '09:00'), (MONDAY, '09:30')]


def test_list_by_date_requires_date(service) -> None:
    with pytest.raises(BookingError) as exception_info:
        service.list_by_date('')

    assert exception_info.value.code == 'invalid_request'


def test_list_range_counts_slots_and_zeroes_closed_days(service, session_factory, monday_rule) -> None:
    service.create_reservation('dr_default', MONDAY, '09:30', 'p1')
    service.create_reservation('dr_default', MONDAY, '09:00', 'p2')
    service.create_reservation('dr_default', MONDAY, '09:00', 'p3')
    add_rows(
        session_factory,
        Reservation(reserve_id='legacy-1', patient_id='p9', date='2026/1/12', time='9:00', status=''),
        Reservation(reserve_id='legacy-2', patient_id='p8', date='2026-01-12', time='09:00', status=''),
        Reservation(reserve_id='legacy-3', patient_id='p7', date='2026-01-20', time='09:00', status=''),
        DateOverride(doctor_id='dr_default', date='2026-01-12', type='closed'),
    )

    slots = service.list_range(MONDAY, '2026-01-12')

    assert [(slot.date, slot.time, slot.count) for slot in slots] == [
        (MONDAY, '09:00', 2),
        (MONDAY, '09:30', 1),
        ('2026-01-12', '09:00', 0),
    ]


def test_list_range_requires_both_bounds(service) -> None:
    with pytest.raises(BookingError):
        service.list_range(MONDAY, None)


@pytest.mark.parametrize('time', ['08:90', '09:60', '24:00'])
def test_out_of_range_clock_time_cannot_alias_a_full_slot(service, monday_rule, time) -> None:
    assert service.create_reservation('dr_default', MONDAY, '09:30', 'p1').ok
    assert service.create_reservation('dr_default', MONDAY, '09:30', 'p2').ok

    outcome = service.create_reservation('dr_default', MONDAY, time, 'p3')

    assert outcome.error == 'invalid_time'
    assert [entry.time for entry in service.list_by_date(MONDAY)] == ['09:30', '09:30']


def test_impossible_date_is_rejected_even_with_an_open_override(service, session_factory, monday_rule) -> None:
    add_rows(
        session_factory,
        DateOverride(doctor_id='dr_default', date='2026-02-30', type='open', start_time='09:00', end_time='10:00'),
    )

    outcome = service.create_reservation('dr_default', '2026-02-30', '09:00', 'p1')

    assert not outcome.ok
    assert (outcome.error, outcome.reason) == ('invalid_request', 'invalid_date')


def test_update_rejects_impossible_date_and_time(service, monday_rule) -> None:
    booked = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')

    bad_date = service.update_reservation(booked.reserve_id, '2026-02-30', '09:00')
    bad_time = service.update_reservation(booked.reserve_id, MONDAY, '09:60')

    assert (bad_date.error, bad_date.reason) == ('invalid_request', 'invalid_date')
    assert bad_time.error == 'invalid_time'
    assert [entry.time for entry in service.list_by_date(MONDAY)] == ['09:00']


def test_clinic_post_states_still_fill_the_slot(service, session_factory, monday_rule) -> None:
    add_rows(
        session_factory,
        Reservation(reserve_id='resv-visited', patient_id='p8', date=MONDAY, time='09:00', status='visited'),
        Reservation(reserve_id='resv-paid', patient_id='p9', date=MONDAY, time='09:00', status='paid'),
    )

    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')

    assert outcome.error == 'slot_full'


def test_clinic_post_state_still_blocks_the_same_patient(service, session_factory, monday_rule) -> None:
    add_rows(
        session_factory,
        Reservation(reserve_id='resv-visited', patient_id='p1', date=MONDAY, time='09:30', status='visited'),
    )

    outcome = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')

    assert outcome.error == 'already_reserved'


def test_capacity_plus_one_concurrent_creates_leave_exactly_one_rejection(service, session_factory, monday_rule) -> None:
    capacity = 2
    patients = [f'p{index}' for index in range(capacity + 1)]
    with ThreadPoolExecutor(max_workers=len(patients)) as pool:
        outcomes = list(pool.map(
            lambda patient_id: service.create_reservation('dr_default', MONDAY, '09:30', patient_id),
            patients,
        ))

    assert sum(outcome.ok for outcome in outcomes) == capacity
    assert [outcome.error for outcome in outcomes if not outcome.ok] == ['slot_full']

    db = session_factory()
    try:
        assert ReservationRepository(db).count_active_at(MONDAY, '09:30') == capacity
    finally:
        db.close()


def test_has_active_for_patient_ignores_canceled_rows(service, session_factory, monday_rule) -> None:
    booked = service.create_reservation('dr_default', MONDAY, '09:00', 'p1')
    add_rows(
        session_factory,
        Reservation(reserve_id='resv-old', patient_id='p2', date=MONDAY, time='09:00', status='canceled'),
        Reservation(reserve_id='resv-visited', patient_id='p3', date=MONDAY, time='09:30', status='visited'),
    )

    db = session_factory()
    try:
        repository = ReservationRepository(db)
        assert repository.has_active_for_patient('p1')
        assert not repository.has_active_for_patient('p2')
        assert repository.has_active_for_patient('p3')
        assert not repository.has_active_for_patient('p4')
    finally:
        db.close()

    service.cancel_reservation(booked.reserve_id)
    db = session_factory()
    try:
        assert not ReservationRepository(db).has_active_for_patient('p1')
    finally:
        db.close()


def test_lock_registry_does_not_grow_with_unknown_reserve_ids(service) -> None:
    for index in range(50):
        assert service.cancel_reservation(f'resv-bogus-{index}').error == 'reserveId_not_found'
        assert service.update_reservation(f'resv-bogus-{index}', MONDAY, '09:00').error == 'reserveId_not_found'

    assert len(service.locks) == 0
