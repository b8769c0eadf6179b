"""Closed status vocabularies shared by models, services and routers."""

from enum import Enum


class JobKind(str, Enum):
    FULL_AUDIT = "full_audit"
    QUICK_CHECK = "quick_check"
    ALERT_ANALYSIS = "alert_analysis"
    WEEKLY_REPORT = "weekly_report"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobState.PENDING, JobState.RUNNING)


class ResourceRequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _RESOURCE_STATUS_RANK[self]


_RESOURCE_STATUS_RANK = {
    ResourceRequestStatus.PENDING: 0,
    ResourceRequestStatus.IN_PROGRESS: 1,
    ResourceRequestStatus.COMPLETED: 2,
}


class LinkStatus(str, Enum):
    VALID = "valid"
    BROKEN = "broken"
    REDIRECTED = "redirected"
