"""Durable storage for audit run history and visitor resource requests."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.audit_run import AuditRun
from models.enums import ResourceRequestStatus
from models.resource_request import ResourceRequest

logger = logging.getLogger(__name__)


class ResourceRequestNotFound(LookupError):
    """Raised when a resource request id does not exist."""


class InvalidStatusTransition(ValueError):
    """Raised when a resource request status would move backward."""

    def __init__(self, request_id: str, current: ResourceRequestStatus, requested: ResourceRequestStatus):
        self.request_id = request_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Resource request {request_id} cannot move from {current.value} to {requested.value}"
        )


@dataclass(frozen=True)
class RequestedResource:
    url: str
    count: int
    status: ResourceRequestStatus


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def group_latest_per_day(runs: List[AuditRun]) -> List[AuditRun]:
    """Keep the chronologically last run of each UTC calendar date, oldest date first."""
    latest: Dict[date, AuditRun] = {}
    for run in runs:
        day = as_utc(run.started_at).date()
        current = latest.get(day)
        if current is None or as_utc(run.started_at) >= as_utc(current.started_at):
            latest[day] = run
    return [latest[day] for day in sorted(latest)]


def resolve_request_status(statuses: List[ResourceRequestStatus]) -> ResourceRequestStatus:
    """Most advanced status among requests for one URL."""
    if ResourceRequestStatus.COMPLETED in statuses:
        return ResourceRequestStatus.COMPLETED
    if ResourceRequestStatus.IN_PROGRESS in statuses:
        return ResourceRequestStatus.IN_PROGRESS
    return ResourceRequestStatus.PENDING


class AuditStore:
    """Sole owner of AuditRun and ResourceRequest durability."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def record_audit_run(self, run: AuditRun) -> AuditRun:
        if not run.id:
            run.id = str(uuid.uuid4())
        async with self.session_maker() as db:
            db.add(run)
            await db.commit()
        logger.info(
            "Recorded audit run %s total=%s broken=%s score=%s",
            run.id,
            run.total_links,
            run.broken_links,
            run.seo_score,
        )
        return run

    async def query_audit_history(self, since: datetime) -> List[AuditRun]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AuditRun)
                .where(AuditRun.started_at >= since)
                .order_by(AuditRun.started_at.asc(), AuditRun.id.asc())
            )
            return list(result.scalars().all())

    async def latest_audit_runs(self, limit: int = 1) -> List[AuditRun]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AuditRun).order_by(AuditRun.started_at.desc()).limit(max(int(limit), 1))
            )
            return list(result.scalars().all())

    async def record_resource_request(self, request: ResourceRequest) -> ResourceRequest:
        if not request.id:
            request.id = str(uuid.uuid4())
        request.status = ResourceRequestStatus(request.status or ResourceRequestStatus.PENDING).value
        async with self.session_maker() as db:
            db.add(request)
            await db.commit()
        return request

    async def get_resource_request(self, request_id: str) -> ResourceRequest:
        async with self.session_maker() as db:
            result = await db.execute(select(ResourceRequest).where(ResourceRequest.id == request_id))
            request = result.scalar_one_or_none()
        if request is None:
            raise ResourceRequestNotFound(request_id)
        return request

    async def update_resource_request_status(
        self,
        request_id: str,
        status: ResourceRequestStatus,
    ) -> ResourceRequest:
        """Move a request forward; backward moves raise and leave the row unchanged.

        The write is conditional on the status read, so a concurrent update
        that advanced the row in between is never overwritten by a regression.
        """
        target = ResourceRequestStatus(status)
        current_request = await self.get_resource_request(request_id)
        current = ResourceRequestStatus(current_request.status)
        if target.rank < current.rank:
            raise InvalidStatusTransition(request_id, current, target)
        if target == current:
            return current_request

        async with self.session_maker() as db:
            result = await db.execute(
                update(ResourceRequest)
                .where(ResourceRequest.id == request_id, ResourceRequest.status == current.value)
                .values(status=target.value, updated_at=datetime.now(timezone.utc))
            )
            await db.commit()
        if result.rowcount != 1:
            # Lost a race; re-evaluate against the newer status.
            return await self.update_resource_request_status(request_id, target)
        logger.info("Resource request %s moved %s -> %s", request_id, current.value, target.value)
        return await self.get_resource_request(request_id)

    async def query_most_requested(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[RequestedResource]:
        async with self.session_maker() as db:
            query = select(
                ResourceRequest.requested_url,
                ResourceRequest.status,
                ResourceRequest.created_at,
            ).order_by(ResourceRequest.created_at.asc(), ResourceRequest.id.asc())
            if since is not None:
                query = query.where(ResourceRequest.created_at >= since)
            rows = (await db.execute(query)).all()

        counts: Dict[str, int] = {}
        statuses: Dict[str, List[ResourceRequestStatus]] = {}
        for url, status, _created_at in rows:
            # dict insertion order doubles as first-requested order
            counts[url] = counts.get(url, 0) + 1
            statuses.setdefault(url, []).append(ResourceRequestStatus(status))

        ranked = sorted(counts.items(), key=lambda item: -item[1])
        resources = [
            RequestedResource(url=url, count=count, status=resolve_request_status(statuses[url]))
            for url, count in ranked
        ]
        if limit is not None:
            resources = resources[: max(int(limit), 0)]
        return resources
