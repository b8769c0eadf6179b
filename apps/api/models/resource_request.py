"""ResourceRequest model for visitor requests of missing resources."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceRequest(Base):
    """Visitor-initiated request for a resource the site does not serve."""

    __tablename__ = "resource_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    requested_url = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, in_progress, completed
    email = Column(String, nullable=True)
    source_url = Column(String, nullable=True)
    message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)
