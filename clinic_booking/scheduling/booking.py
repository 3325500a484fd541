"""Reservation booking, rescheduling, cancellation and occupancy listings."""

import logging
import uuid
from collections import Counter
from contextlib import contextmanager
from typing import Callable, Iterator

from pydantic import BaseModel
from sqlalchemy.orm import Session

from clinic_booking.core import config
from clinic_booking.core.errors import BookingError, LockTimeoutError
from clinic_booking.database import SessionLocal
from clinic_booking.scheduling.locks import BOOKING_LOCK_KEY, KeyedLock, booking_locks, reservation_lock_key
from clinic_booking.scheduling.mirrors import MirrorClient, reservation_mirror_fields
from clinic_booking.scheduling.normalize import parse_minutes, to_hhmm, to_ymd, weekday_index
from clinic_booking.scheduling.outbox import SYNC_SKIPPED, PostCommitOutbox
from clinic_booking.scheduling.records import EffectiveSchedule, ReservationRecord
from clinic_booking.scheduling.repository import ReservationRepository
from clinic_booking.scheduling.resolver import resolve_effective_schedule
from clinic_booking.scheduling.rule_store import RuleStore

logger = logging.getLogger(__name__)

MIRROR_STATUS_BOOKED = 'pending'
MIRROR_STATUS_CANCELED = 'canceled'


class BookingOutcome(BaseModel):
    ok: bool
    reserve_id: str | None = None
    patient_id: str | None = None
    error: str | None = None
    reason: str | None = None
    mirror_sync: str | None = None

    @classmethod
    def rejected(cls, exc: BookingError) -> 'BookingOutcome':
        return cls(ok=False, error=exc.code, reason=exc.reason)


class SlotEntry(BaseModel):
    date: str
    time: str


class SlotCount(BaseModel):
    date: str
    time: str
    count: int


def generate_reserve_id() -> str:
    return f'resv-{uuid.uuid4().hex}'


def validate_requested_slot(schedule: EffectiveSchedule, time: str) -> None:
    """Raise unless ``time`` starts a slot inside the schedule's opening hours."""
    if not schedule.is_open:
        raise BookingError('outside_hours', schedule.reason)

    requested = parse_minutes(time)
    opens = parse_minutes(schedule.start)
    closes = parse_minutes(schedule.end)
    if requested is None or opens is None or closes is None:
        raise BookingError('invalid_time')

    if not opens <= requested < closes:
        raise BookingError('outside_hours')

    if schedule.slot_minutes > 0 and (requested - opens) % schedule.slot_minutes != 0:
        raise BookingError('invalid_slot')


class BookingService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        locks: KeyedLock = booking_locks,
        mirrors: MirrorClient | None = None,
        lock_timeout: float = config.BOOKING_LOCK_TIMEOUT_SECONDS,
        mirrors_enabled: bool = config.MIRRORS_ENABLED,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.mirrors = mirrors or MirrorClient()
        self.lock_timeout = lock_timeout
        self.mirrors_enabled = mirrors_enabled

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def resolve_schedule(self, doctor_id: str | None, date) -> EffectiveSchedule:
        with self._session() as db:
            return resolve_effective_schedule(RuleStore(db), doctor_id, to_ymd(date))

    def create_reservation(
        self,
        doctor_id: str | None,
        date,
        time,
        patient_id: str | None,
        reserve_id: str | None = None,
        patient_name: str | None = None,
        skip_mirrors: bool = False,
    ) -> BookingOutcome:
        patient_id = str(patient_id or '').strip()
        if not patient_id:
            return BookingOutcome.rejected(BookingError('patient_id_required'))

        requested_date = to_ymd(date)
        requested_time = to_hhmm(time)
        if not requested_date or not requested_time:
            return BookingOutcome.rejected(BookingError('invalid_request'))
        if weekday_index(requested_date) is None:
            return BookingOutcome.rejected(BookingError('invalid_request', 'invalid_date'))

        try:
            with self.locks.hold(BOOKING_LOCK_KEY, self.lock_timeout):
                record = self._insert_if_available(
                    doctor_id,
                    requested_date,
                    requested_time,
                    patient_id,
                    str(reserve_id or '').strip() or generate_reserve_id(),
                    str(patient_name or '').strip(),
                )
        except BookingError as exc:
            logger.info(
                'Reservation rejected for patient %s at %s %s: %s',
                patient_id, requested_date, requested_time, exc,
            )
            return BookingOutcome.rejected(exc)
        except LockTimeoutError:
            return BookingOutcome(ok=False, error='lock_timeout')

        logger.info('Reservation %s created at %s %s', record.reserve_id, record.date, record.time)

        if skip_mirrors:
            logger.info('Mirror sync skipped for %s on request', record.reserve_id)
            mirror_sync = SYNC_SKIPPED
        else:
            mirror_sync = self._propagate(record, MIRROR_STATUS_BOOKED)

        return BookingOutcome(
            ok=True,
            reserve_id=record.reserve_id,
            patient_id=record.patient_id,
            mirror_sync=mirror_sync,
        )

    def _insert_if_available(
        self,
        doctor_id: str | None,
        date: str,
        time: str,
        patient_id: str,
        reserve_id: str,
        patient_name: str,
    ) -> ReservationRecord:
        with self._session() as db:
            schedule = resolve_effective_schedule(RuleStore(db), doctor_id, date)
            validate_requested_slot(schedule, time)

            repository = ReservationRepository(db)
            occupancy = repository.scan_occupancy(patient_id, date, time)
            if occupancy.has_active_reservation:
                raise BookingError('already_reserved')
            if occupancy.count >= schedule.capacity:
                raise BookingError('slot_full')

            if repository.get_by_key(reserve_id) is not None:
                raise BookingError('invalid_request', 'duplicate_reserve_id')

            record = repository.insert(
                ReservationRecord(
                    reserve_id=reserve_id,
                    patient_id=patient_id,
                    patient_name=patient_name,
                    date=date,
                    time=time,
                    status='',
                )
            )
            db.commit()
            return record

    def update_reservation(self, reserve_id: str | None, date, time) -> BookingOutcome:
        """Move a reservation to a new date and time.

        Capacity and exclusivity are not re-checked and the global booking lock
        is not taken; only concurrent changes to the same reservation are
        serialized.
        """
        reserve_id = str(reserve_id or '').strip()
        new_date = to_ymd(date)
        new_time = to_hhmm(time)
        if not reserve_id or not new_date or not new_time:
            return BookingOutcome.rejected(BookingError('invalid_request'))
        if weekday_index(new_date) is None:
            return BookingOutcome.rejected(BookingError('invalid_request', 'invalid_date'))
        if parse_minutes(new_time) is None:
            return BookingOutcome.rejected(BookingError('invalid_time'))

        logger.info('updateReservation request: reserveId=%s date=%s time=%s', reserve_id, new_date, new_time)

        try:
            with self.locks.hold(reservation_lock_key(reserve_id), self.lock_timeout):
                with self._session() as db:
                    repository = ReservationRepository(db)
                    current = repository.get_by_key(reserve_id)
                    if current is None:
                        raise BookingError('reserveId_not_found')
                    if current.is_canceled:
                        raise BookingError('invalid_request', 'canceled')

                    record = repository.update_by_key(reserve_id, date=new_date, time=new_time)
                    db.commit()
        except BookingError as exc:
            return BookingOutcome.rejected(exc)
        except LockTimeoutError:
            return BookingOutcome(ok=False, error='lock_timeout')

        return BookingOutcome(
            ok=True,
            reserve_id=record.reserve_id,
            patient_id=record.patient_id,
            mirror_sync=self._propagate(record, MIRROR_STATUS_BOOKED),
        )

    def cancel_reservation(self, reserve_id: str | None) -> BookingOutcome:
        reserve_id = str(reserve_id or '').strip()
        if not reserve_id:
            return BookingOutcome.rejected(BookingError('invalid_request'))

        logger.info('cancelReservation request: reserveId=%s', reserve_id)

        try:
            with self.locks.hold(reservation_lock_key(reserve_id), self.lock_timeout):
                with self._session() as db:
                    repository = ReservationRepository(db)
                    current = repository.get_by_key(reserve_id)
                    if current is None:
                        raise BookingError('reserveId_not_found')

                    already_canceled = current.is_canceled
                    record = current
                    if not already_canceled:
                        record = repository.update_by_key(reserve_id, status=config.CANCELED_STATUS)
                        db.commit()
        except BookingError as exc:
            return BookingOutcome.rejected(exc)
        except LockTimeoutError:
            return BookingOutcome(ok=False, error='lock_timeout')

        if already_canceled:
            return BookingOutcome(
                ok=True,
                reserve_id=record.reserve_id,
                patient_id=record.patient_id,
                mirror_sync=SYNC_SKIPPED,
            )

        return BookingOutcome(
            ok=True,
            reserve_id=record.reserve_id,
            patient_id=record.patient_id,
            mirror_sync=self._propagate(record, MIRROR_STATUS_CANCELED),
        )

    def list_by_date(self, date) -> list[SlotEntry]:
        target_date = to_ymd(date)
        if not target_date:
            raise BookingError('invalid_request', 'date required')

        with self._session() as db:
            records = ReservationRepository(db).scan_all()

        return [
            SlotEntry(date=record.date, time=record.time)
            for record in records
            if record.date == target_date and record.time and not record.is_canceled
        ]

    def list_range(self, start, end, doctor_id: str | None = None) -> list[SlotCount]:
        """Occupancy per (date, time) over an inclusive date range.

        Dates that are closed under the current rules report zero for every
        slot, even when stale reservations remain on them.
        """
        start_key = to_ymd(start)
        end_key = to_ymd(end)
        if not start_key or not end_key:
            raise BookingError('invalid_request', 'startDate/endDate required')

        with self._session() as db:
            counts: Counter[tuple[str, str]] = Counter()
            for record in ReservationRepository(db).scan_all():
                if not record.date or not record.time or record.is_canceled:
                    continue
                if record.date < start_key or record.date > end_key:
                    continue
                counts[(record.date, record.time)] += 1

            rule_store = RuleStore(db)
            closed_dates = {
                slot_date
                for slot_date in {slot_date for slot_date, _ in counts}
                if not resolve_effective_schedule(rule_store, doctor_id, slot_date).is_open
            }

        return [
            SlotCount(date=slot_date, time=slot_time, count=0 if slot_date in closed_dates else count)
            for (slot_date, slot_time), count in sorted(counts.items())
        ]

    def _propagate(self, record: ReservationRecord, mirror_status: str) -> str:
        if not self.mirrors_enabled:
            return SYNC_SKIPPED

        canceled = mirror_status == MIRROR_STATUS_CANCELED
        scheduled_date = None if canceled else record.date
        scheduled_time = None if canceled else record.time

        outbox = PostCommitOutbox()
        outbox.add(
            'intake',
            self.mirrors.upsert_by_patient,
            record.patient_id,
            {
                'reserve_id': None if canceled else record.reserve_id,
                'reserved_date': scheduled_date,
                'reserved_time': scheduled_time,
            },
        )
        outbox.add(
            'reservations',
            self.mirrors.upsert_reservation,
            reservation_mirror_fields(
                record.reserve_id,
                record.patient_id,
                record.patient_name,
                scheduled_date,
                scheduled_time,
                mirror_status,
            ),
        )
        outbox.add('cache', self.mirrors.invalidate, record.patient_id)
        return outbox.dispatch()


booking_service = BookingService()


def get_booking_service() -> BookingService:
    return booking_service
