from datetime import datetime

from sqlalchemy.orm import Session

from clinic_booking.models.reservation import Reservation
from clinic_booking.scheduling.records import ReservationRecord, SlotOccupancy


class ReservationRepository:
    """Reservation store access.

    Occupancy and exclusivity are answered by scanning every row. Rows written
    by older tooling may carry dates and times in non-canonical shapes, so the
    scan compares normalized records rather than filtering in SQL. Callers only
    use the named query methods, which leaves room to back them with indexes.
    """

    def __init__(self, db: Session):
        self.db = db

    def scan_all(self) -> list[ReservationRecord]:
        rows = self.db.query(Reservation).order_by(Reservation.id.asc()).all()
        return [ReservationRecord.model_validate(row) for row in rows]

    def scan_occupancy(self, patient_id: str, date: str, time: str) -> SlotOccupancy:
        occupancy = SlotOccupancy()
        for record in self.scan_all():
            if record.is_canceled:
                continue
            if patient_id and record.patient_id == patient_id:
                occupancy.has_active_reservation = True
            if record.date == date and record.time == time:
                occupancy.count += 1
        return occupancy

    def count_active_at(self, date: str, time: str) -> int:
        return self.scan_occupancy('', date, time).count

    def has_active_for_patient(self, patient_id: str) -> bool:
        return self.scan_occupancy(patient_id, '', '').has_active_reservation

    def get_by_key(self, reserve_id: str) -> ReservationRecord | None:
        row = self._find_row(reserve_id)
        if row is None:
            return None
        return ReservationRecord.model_validate(row)

    def insert(self, record: ReservationRecord) -> ReservationRecord:
        row = Reservation(
            reserve_id=record.reserve_id,
            patient_id=record.patient_id,
            patient_name=record.patient_name,
            date=record.date,
            time=record.time,
            status=record.status,
            created_at=datetime.now(),
        )
        self.db.add(row)
        self.db.flush()
        return ReservationRecord.model_validate(row)

    def update_by_key(self, reserve_id: str, **fields: str) -> ReservationRecord | None:
        row = self._find_row(reserve_id)
        if row is None:
            return None

        for field_name, value in fields.items():
            setattr(row, field_name, value)
        row.updated_at = datetime.now()
        self.db.flush()
        return ReservationRecord.model_validate(row)

    def _find_row(self, reserve_id: str) -> Reservation | None:
        return self.db.query(Reservation).filter(
            Reservation.reserve_id == reserve_id,
        ).order_by(Reservation.id.asc()).first()
