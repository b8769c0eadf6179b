"""Persisted scheduler queue job."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, text

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_RUNNING = text("state = 'running'")
_ACTIVE = text("state IN ('pending', 'running')")


class QueueJob(Base):
    """Audit scheduler job; state transitions go through conditional updates."""

    __tablename__ = "queue_jobs"
    __table_args__ = (
        # At most one running job system-wide.
        Index("uq_queue_jobs_single_running", "state", unique=True, sqlite_where=_RUNNING, postgresql_where=_RUNNING),
        # At most one active job per kind.
        Index("uq_queue_jobs_active_kind", "kind", unique=True, sqlite_where=_ACTIVE, postgresql_where=_ACTIVE),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False, default="pending", index=True)
    payload_json = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(String, nullable=True)
    enqueued_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
