import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from clinic_booking.core import config
from clinic_booking.core.errors import ScheduleConfigurationError
from clinic_booking.database import Base, engine, ensure_reservation_schema
from clinic_booking.models import doctor, reservation, schedule  # noqa: F401
from clinic_booking.routes import reservation_routes, schedule_routes

logging.basicConfig(level=config.LOG_LEVEL.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_reservation_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.exception_handler(ScheduleConfigurationError)
def handle_schedule_configuration_error(request: Request, exc: ScheduleConfigurationError) -> JSONResponse:
    logger.error('Schedule configuration error on %s: %s', request.url.path, exc)
    return JSONResponse(status_code=500, content={'ok': False, 'error': 'configuration_error'})


@app.get('/')
def root():
    return {'status': 'Clinic Booking API Running'}


app.include_router(reservation_routes.router, prefix='/reservations')
app.include_router(schedule_routes.router, prefix='/schedule')
