"""Doctor model definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from clinic_booking.database import Base


class Doctor(Base):
    """A doctor whose calendar the booking engine schedules against."""
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(String, unique=True, index=True, nullable=False)
    doctor_name = Column(String, default="")
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)
    color = Column(String, default="")
