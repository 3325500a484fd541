"""Reservation model definitions."""

from sqlalchemy import Column, DateTime, Integer, String
from clinic_booking.database import Base


class Reservation(Base):
    """A patient's booking of one slot. Canceled rows are kept, never deleted."""
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True)
    reserve_id = Column(String, unique=True, index=True, nullable=False)
    patient_id = Column(String, index=True, nullable=False)
    patient_name = Column(String, default="")
    date = Column(String, nullable=False)  # YYYY-MM-DD
    time = Column(String, nullable=False)  # HH:MM
    status = Column(String, default="")  # "" = active
    created_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=True)
