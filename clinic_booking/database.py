import weakref
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_booking.core import config
from clinic_booking.core.errors import ScheduleConfigurationError


def build_engine(database_url: str) -> Engine:
    connect_args = {'check_same_thread': False} if database_url.startswith('sqlite') else {}
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

RULE_TABLE_COLUMNS = {
    'weekly_rules': {'doctor_id', 'weekday', 'enabled', 'start_time', 'end_time', 'slot_minutes', 'capacity'},
    'date_overrides': {'doctor_id', 'date', 'type', 'start_time', 'end_time', 'slot_minutes', 'capacity'},
}

_schema_lock = Lock()
_rule_schema_checked: "weakref.WeakSet[Engine]" = weakref.WeakSet()
_reservation_schema_checked: "weakref.WeakSet[Engine]" = weakref.WeakSet()


def ensure_rule_schema(bind: Engine | None = None) -> None:
    """Fail fast when the rule tables the resolver depends on are missing or malformed."""
    bind = bind or engine
    if bind in _rule_schema_checked:
        return

    with _schema_lock:
        if bind in _rule_schema_checked:
            return

        inspector = inspect(bind)
        table_names = set(inspector.get_table_names())

        for table_name, required_columns in RULE_TABLE_COLUMNS.items():
            if table_name not in table_names:
                raise ScheduleConfigurationError(f'Missing rule table: {table_name}')
            existing_columns = {column['name'] for column in inspector.get_columns(table_name)}
            missing = sorted(required_columns - existing_columns)
            if missing:
                raise ScheduleConfigurationError(
                    f'{table_name} header mismatch, missing columns: {", ".join(missing)}'
                )

        _rule_schema_checked.add(bind)


def ensure_reservation_schema(bind: Engine | None = None) -> None:
    bind = bind or engine
    if bind in _reservation_schema_checked:
        return

    with _schema_lock:
        if bind in _reservation_schema_checked:
            return

        inspector = inspect(bind)

        if 'reservations' not in inspector.get_table_names():
            _reservation_schema_checked.add(bind)
            return

        existing_columns = {column['name'] for column in inspector.get_columns('reservations')}
        migration_steps = [
            ('patient_name', 'ALTER TABLE reservations ADD COLUMN patient_name VARCHAR'),
            ('updated_at', 'ALTER TABLE reservations ADD COLUMN updated_at TIMESTAMP'),
        ]

        with bind.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_reservations_slot ON reservations(date, time, status)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_reservations_patient ON reservations(patient_id, status)')
            )

        _reservation_schema_checked.add(bind)
