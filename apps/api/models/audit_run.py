"""AuditRun model: one completed link-health pass."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Integer, JSON, String

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditRun(Base):
    """Append-only audit history record."""

    __tablename__ = "audit_runs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, nullable=True, index=True)
    kind = Column(String, nullable=False, default="full_audit")
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    total_links = Column(Integer, nullable=False, default=0)
    broken_links = Column(Integer, nullable=False, default=0)
    corrected_links = Column(Integer, nullable=False, default=0)
    seo_score = Column(Float, nullable=False, default=100.0)
    execution_time_ms = Column(Integer, nullable=False, default=0)
    report_json = Column(JSON, nullable=True)  # broken URLs and redirect map
