"""Models package."""

from .audit_run import AuditRun
from .resource_request import ResourceRequest
from .queue_job import QueueJob
from .alert_fire_record import AlertFireRecord
from .usage_snapshot import UsageSnapshot
