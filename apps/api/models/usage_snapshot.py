"""Platform usage sample."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Integer, String

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageSnapshot(Base):
    """Immutable usage reading used for trend analysis."""

    __tablename__ = "usage_snapshots"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    invocations = Column(Integer, nullable=False, default=0)
    compute_hours = Column(Float, nullable=False, default=0.0)
    cron_runs = Column(Integer, nullable=False, default=0)  # executions this billing period
    cron_jobs = Column(Integer, nullable=False, default=0)  # configured cron job count
