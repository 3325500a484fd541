"""Weekly rule and date override model definitions."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from clinic_booking.database import Base


class WeeklyRule(Base):
    """Recurring opening hours for one doctor on one weekday (0 = Sunday)."""
    __tablename__ = "weekly_rules"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(String, index=True, nullable=False)
    weekday = Column(Integer, nullable=False)
    enabled = Column(Boolean, default=False)
    start_time = Column(String, default="")  # HH:MM
    end_time = Column(String, default="")  # HH:MM
    slot_minutes = Column(Integer, nullable=True)
    capacity = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=True)


class DateOverride(Base):
    """Per-date exception to a weekly rule. Rows are append-ordered by id."""
    __tablename__ = "date_overrides"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(String, index=True, nullable=False)
    date = Column(String, index=True, nullable=False)  # YYYY-MM-DD
    type = Column(String, default="modify")  # open/modify/closed
    start_time = Column(String, default="")
    end_time = Column(String, default="")
    slot_minutes = Column(Integer, nullable=True)
    capacity = Column(Integer, nullable=True)
    memo = Column(String, default="")
    updated_at = Column(DateTime, nullable=True)
