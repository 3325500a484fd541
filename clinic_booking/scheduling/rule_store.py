import logging

from sqlalchemy.orm import Session

from clinic_booking.database import ensure_rule_schema
from clinic_booking.models.schedule import DateOverride, WeeklyRule
from clinic_booking.scheduling.records import DateOverrideRecord, WeeklyRuleRecord

logger = logging.getLogger(__name__)


class RuleStore:
    """Read access to weekly rules and date overrides for the resolver."""

    def __init__(self, db: Session):
        ensure_rule_schema(db.get_bind())
        self.db = db

    def get_weekly_rule(self, doctor_id: str, weekday: int) -> WeeklyRuleRecord | None:
        row = self.db.query(WeeklyRule).filter(
            WeeklyRule.doctor_id == doctor_id,
            WeeklyRule.weekday == weekday,
        ).order_by(WeeklyRule.id.asc()).first()

        if row is None:
            return None
        return WeeklyRuleRecord.model_validate(row)

    def get_date_overrides(self, doctor_id: str, date: str | None = None) -> list[DateOverrideRecord]:
        """Overrides for a doctor in append order, optionally narrowed to one date."""
        rows = self.db.query(DateOverride).filter(
            DateOverride.doctor_id == doctor_id,
        ).order_by(DateOverride.id.asc()).all()

        records = [DateOverrideRecord.model_validate(row) for row in rows]
        if date is not None:
            records = [record for record in records if record.date == date]

        if len({record.date for record in records}) < len(records):
            logger.debug('Duplicate override rows for doctor %s; latest row per date wins.', doctor_id)

        return records
