import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from clinic_booking.core.errors import BookingError
from clinic_booking.database import ensure_reservation_schema
from clinic_booking.scheduling.booking import BookingOutcome, BookingService, get_booking_service

router = APIRouter(tags=['reservations'])

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    'patient_id_required': status.HTTP_400_BAD_REQUEST,
    'invalid_request': status.HTTP_400_BAD_REQUEST,
    'invalid_time': status.HTTP_400_BAD_REQUEST,
    'invalid_slot': status.HTTP_400_BAD_REQUEST,
    'outside_hours': status.HTTP_400_BAD_REQUEST,
    'unknown_type': status.HTTP_400_BAD_REQUEST,
    'already_reserved': status.HTTP_409_CONFLICT,
    'slot_full': status.HTTP_409_CONFLICT,
    'reserveId_not_found': status.HTTP_404_NOT_FOUND,
    'lock_timeout': status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ReservationRequest(BaseModel):
    type: str = 'createReservation'
    doctor_id: str | None = Field(default=None, validation_alias=AliasChoices('doctor_id', 'doctorId'))
    date: str | None = None
    time: str | None = None
    patient_id: str | None = Field(default=None, validation_alias=AliasChoices('patient_id', 'patientId'))
    patient_name: str | None = Field(default=None, validation_alias=AliasChoices('patient_name', 'patientName'))
    reserve_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices('reserveId', 'reserve_id', 'reservationId', 'id'),
    )
    start_date: str | None = Field(default=None, validation_alias=AliasChoices('startDate', 'start_date'))
    end_date: str | None = Field(default=None, validation_alias=AliasChoices('endDate', 'end_date'))
    skip_mirrors: bool = Field(default=False, validation_alias=AliasChoices('skipMirrors', 'skip_mirrors'))

    @field_validator('type')
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip() or 'createReservation'

    @field_validator(
        'doctor_id', 'date', 'time', 'patient_id', 'patient_name', 'reserve_id', 'start_date', 'end_date',
        mode='before',
    )
    @classmethod
    def coerce_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip()


def outcome_response(outcome: BookingOutcome) -> JSONResponse:
    content: dict[str, Any] = {'ok': outcome.ok}
    if outcome.reserve_id is not None:
        content['reserveId'] = outcome.reserve_id
    if outcome.patient_id is not None:
        content['patientId'] = outcome.patient_id
    if outcome.error is not None:
        content['error'] = outcome.error
    if outcome.reason is not None:
        content['reason'] = outcome.reason
    if outcome.mirror_sync is not None:
        content['mirrorSync'] = outcome.mirror_sync

    status_code = status.HTTP_200_OK
    if not outcome.ok:
        status_code = ERROR_STATUS_CODES.get(outcome.error or '', status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content=content)


def database_unavailable_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={'ok': False, 'error': 'database_unavailable'},
    )


def ensure_database_ready() -> None:
    ensure_reservation_schema()


@router.post('')
def handle_reservation_request(
    data: ReservationRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        ensure_database_ready()

        if data.type == 'createReservation':
            return outcome_response(
                service.create_reservation(
                    doctor_id=data.doctor_id,
                    date=data.date,
                    time=data.time,
                    patient_id=data.patient_id,
                    reserve_id=data.reserve_id,
                    patient_name=data.patient_name,
                    skip_mirrors=data.skip_mirrors,
                )
            )

        if data.type == 'updateReservation':
            return outcome_response(service.update_reservation(data.reserve_id, data.date, data.time))

        if data.type == 'cancelReservation':
            return outcome_response(service.cancel_reservation(data.reserve_id))

        if data.type == 'listByDate':
            entries = service.list_by_date(data.date)
            return {'ok': True, 'reservations': [entry.model_dump() for entry in entries]}

        if data.type == 'listRange':
            slots = service.list_range(data.start_date, data.end_date, data.doctor_id)
            return {'ok': True, 'slots': [slot.model_dump() for slot in slots]}

        logger.info('unknown reservation request type: %s', data.type)
        return outcome_response(BookingOutcome(ok=False, error='unknown_type'))
    except BookingError as exc:
        return outcome_response(BookingOutcome.rejected(exc))
    except SQLAlchemyError:
        logger.exception('Reservation request %s failed against the database', data.type)
        return database_unavailable_response()


@router.get('')
def list_reservations_by_date(
    date: str = Query(...),
    service: BookingService = Depends(get_booking_service),
):
    try:
        ensure_database_ready()
        entries = service.list_by_date(date)
    except BookingError as exc:
        return outcome_response(BookingOutcome.rejected(exc))
    except SQLAlchemyError:
        logger.exception('Listing reservations for %s failed', date)
        return database_unavailable_response()

    return {'ok': True, 'reservations': [entry.model_dump() for entry in entries]}


@router.get('/range')
def list_reservation_range(
    start: str = Query(...),
    end: str = Query(...),
    doctor_id: str | None = Query(default=None),
    service: BookingService = Depends(get_booking_service),
):
    try:
        ensure_database_ready()
        slots = service.list_range(start, end, doctor_id)
    except BookingError as exc:
        return outcome_response(BookingOutcome.rejected(exc))
    except SQLAlchemyError:
        logger.exception('Listing reservation range %s..%s failed', start, end)
        return database_unavailable_response()

    return {'ok': True, 'slots': [slot.model_dump() for slot in slots]}
