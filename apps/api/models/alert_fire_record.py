"""Per-threshold cooldown bookkeeping."""

from sqlalchemy import Column, DateTime, String

from database import Base


class AlertFireRecord(Base):
    """Last dispatch time for one threshold identity."""

    __tablename__ = "alert_fire_records"

    threshold_key = Column(String, primary_key=True)
    last_fired_at = Column(DateTime(timezone=True), nullable=True)
