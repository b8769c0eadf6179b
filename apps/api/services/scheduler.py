"""Persisted audit job queue with single-flight processing.

Every trigger (cron call, RQ worker tick, admin action) is a short-lived
invocation, so coordination lives in the database: a job is claimed by a
single conditional UPDATE that only matches when the job is still pending and
no other job is running. Partial unique indexes on ``queue_jobs`` back the
same invariants on PostgreSQL under concurrent writers.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import exists, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from models.audit_run import AuditRun
from models.enums import JobKind, JobState
from models.queue_job import QueueJob
from services.alert_manager import AlertManager
from services.audit_engine import AuditEngine, ValidationReport
from services.audit_store import AuditStore, as_utc

logger = logging.getLogger(__name__)

AUDIT_KINDS = (JobKind.FULL_AUDIT, JobKind.QUICK_CHECK)


class JobNotFound(LookupError):
    """Raised when a queue job id does not exist."""


class JobExecutionError(RuntimeError):
    """Raised by a job body to request a retry."""


@dataclass(frozen=True)
class EnqueueResult:
    job: QueueJob
    created: bool


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    running: int


@dataclass(frozen=True)
class ProcessResult:
    processed: int
    status: QueueStatus
    job_id: Optional[str] = None
    job_state: Optional[JobState] = None
    message: str = ""


@dataclass
class SchedulerConfig:
    enabled: bool = False
    max_attempts: int = 3
    job_timeout_seconds: int = 300
    stalled_after_minutes: int = 30
    pending_max_age_hours: int = 24
    target_urls: tuple = ()


class AuditScheduler:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        engine: AuditEngine,
        store: AuditStore,
        alert_manager: AlertManager,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_maker = session_maker
        self.engine = engine
        self.store = store
        self.alert_manager = alert_manager
        self.config = config or SchedulerConfig()
        self.clock = clock

    def is_enabled(self) -> bool:
        return bool(self.config.enabled)

    # -- queue writes ---------------------------------------------------------

    async def _active_job(self, kind: JobKind) -> Optional[QueueJob]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(QueueJob)
                .where(
                    QueueJob.kind == kind.value,
                    QueueJob.state.in_([JobState.PENDING.value, JobState.RUNNING.value]),
                )
                .order_by(QueueJob.enqueued_at.asc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def enqueue(self, kind: JobKind, payload: Optional[Dict[str, Any]] = None) -> EnqueueResult:
        """Add a pending job unless one of the same kind is already pending or running."""
        kind = JobKind(kind)
        existing = await self._active_job(kind)
        if existing is not None:
            logger.info("Enqueue %s skipped; job %s already %s", kind.value, existing.id, existing.state)
            return EnqueueResult(job=existing, created=False)

        job = QueueJob(
            id=str(uuid.uuid4()),
            kind=kind.value,
            state=JobState.PENDING.value,
            payload_json=payload or None,
            attempts=0,
            max_attempts=max(int(self.config.max_attempts), 1),
            enqueued_at=self.clock(),
        )
        async with self.session_maker() as db:
            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                job = None
        if job is None:
            # Lost the race against a concurrent enqueue of the same kind.
            existing = await self._active_job(kind)
            if existing is None:
                raise RuntimeError(f"Enqueue of {kind.value} conflicted but no active job was found")
            return EnqueueResult(job=existing, created=False)
        logger.info("Enqueued %s job %s", kind.value, job.id)
        return EnqueueResult(job=job, created=True)

    async def cancel_job(self, job_id: str) -> QueueJob:
        async with self.session_maker() as db:
            result = await db.execute(
                update(QueueJob)
                .where(QueueJob.id == job_id, QueueJob.state == JobState.PENDING.value)
                .values(state=JobState.CANCELLED.value, completed_at=self.clock(), error_message="Cancelled by operator")
            )
            await db.commit()
        job = await self.get_job(job_id)
        if result.rowcount == 1:
            logger.info("Cancelled job %s", job_id)
        return job

    async def get_job(self, job_id: str) -> QueueJob:
        async with self.session_maker() as db:
            result = await db.execute(select(QueueJob).where(QueueJob.id == job_id))
            job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, limit: int = 50) -> List[QueueJob]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(QueueJob).order_by(QueueJob.enqueued_at.desc()).limit(max(int(limit), 1))
            )
            return list(result.scalars().all())

    async def get_queue_status(self) -> QueueStatus:
        async with self.session_maker() as db:
            result = await db.execute(
                select(QueueJob.state, func.count(QueueJob.id))
                .where(QueueJob.state.in_([JobState.PENDING.value, JobState.RUNNING.value]))
                .group_by(QueueJob.state)
            )
            counts = {state: int(count) for state, count in result.all()}
        return QueueStatus(
            pending=counts.get(JobState.PENDING.value, 0),
            running=counts.get(JobState.RUNNING.value, 0),
        )

    # -- recovery -------------------------------------------------------------

    async def recover_stalled_jobs(self) -> int:
        """Fail over running jobs past their timeout and expire stale pending ones."""
        now = self.clock()
        stalled_cutoff = now - timedelta(minutes=max(int(self.config.stalled_after_minutes), 1))
        expiry_cutoff = now - timedelta(hours=max(int(self.config.pending_max_age_hours), 1))
        recovered = 0

        async with self.session_maker() as db:
            result = await db.execute(
                select(QueueJob).where(
                    QueueJob.state == JobState.RUNNING.value,
                    QueueJob.started_at < stalled_cutoff,
                )
            )
            stalled = result.scalars().all()
        for job in stalled:
            if await self._finish_failed_attempt(job, "Job exceeded its execution timeout", started_at=job.started_at):
                recovered += 1

        async with self.session_maker() as db:
            result = await db.execute(
                update(QueueJob)
                .where(QueueJob.state == JobState.PENDING.value, QueueJob.enqueued_at < expiry_cutoff)
                .values(state=JobState.CANCELLED.value, completed_at=now, error_message="Job expired while pending")
            )
            await db.commit()
            recovered += int(result.rowcount or 0)
        if recovered:
            logger.warning("Recovered %s stalled or expired queue jobs", recovered)
        return recovered

    # -- processing -----------------------------------------------------------

    async def _claim_next(self) -> Optional[QueueJob]:
        """Atomically move the oldest pending job to running, or return None."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(QueueJob.id)
                .where(QueueJob.state == JobState.PENDING.value)
                .order_by(QueueJob.enqueued_at.asc(), QueueJob.id.asc())
                .limit(1)
            )
            candidate_id = result.scalar_one_or_none()
        if candidate_id is None:
            return None

        running = aliased(QueueJob)
        now = self.clock()
        async with self.session_maker() as db:
            try:
                result = await db.execute(
                    update(QueueJob)
                    .where(
                        QueueJob.id == candidate_id,
                        QueueJob.state == JobState.PENDING.value,
                        ~exists().where(running.state == JobState.RUNNING.value),
                    )
                    .values(state=JobState.RUNNING.value, started_at=now, attempts=QueueJob.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except IntegrityError:
                # Another invocation started a job between our check and write.
                await db.rollback()
                return None
        if result.rowcount != 1:
            return None
        return await self.get_job(candidate_id)

    async def process_queue(self) -> ProcessResult:
        if not self.is_enabled():
            return ProcessResult(processed=0, status=await self.get_queue_status(), message="Scheduler disabled")

        await self.recover_stalled_jobs()

        status = await self.get_queue_status()
        if status.running:
            logger.info("Queue processing skipped; a job is already running")
            return ProcessResult(processed=0, status=status, message="A job is already running")

        job = await self._claim_next()
        if job is None:
            return ProcessResult(processed=0, status=await self.get_queue_status(), message="No job to process")

        logger.info("Running %s job %s (attempt %s/%s)", job.kind, job.id, job.attempts, job.max_attempts)
        try:
            await asyncio.wait_for(self._execute(job), timeout=self.config.job_timeout_seconds)
        except asyncio.TimeoutError:
            state = await self._fail_attempt(job, f"Timed out after {self.config.job_timeout_seconds}s")
        except Exception as exc:
            logger.exception("Job %s failed: %s", job.id, exc)
            state = await self._fail_attempt(job, str(exc) or exc.__class__.__name__)
        else:
            state = await self._complete(job)

        return ProcessResult(
            processed=1,
            status=await self.get_queue_status(),
            job_id=job.id,
            job_state=state,
            message=f"Job {job.id} {state.value}",
        )

    async def _complete(self, job: QueueJob) -> JobState:
        async with self.session_maker() as db:
            result = await db.execute(
                update(QueueJob)
                .where(QueueJob.id == job.id, QueueJob.state == JobState.RUNNING.value)
                .values(state=JobState.COMPLETED.value, completed_at=self.clock(), error_message=None)
            )
            await db.commit()
        if result.rowcount != 1:
            return await self._current_state(job)
        logger.info("Job %s completed", job.id)
        return JobState.COMPLETED

    async def _finish_failed_attempt(self, job: QueueJob, error: str, started_at: Optional[datetime]) -> bool:
        """Return the job to pending or fail it for good; conditional on it still running."""
        attempts = int(job.attempts or 0)
        retry = attempts < int(job.max_attempts or 1)
        values: Dict[str, Any] = {"error_message": error[:1000]}
        if retry:
            values.update(state=JobState.PENDING.value, started_at=None)
        else:
            values.update(state=JobState.FAILED.value, completed_at=self.clock())
        conditions = [QueueJob.id == job.id, QueueJob.state == JobState.RUNNING.value]
        if started_at is not None:
            conditions.append(QueueJob.started_at == started_at)
        async with self.session_maker() as db:
            result = await db.execute(update(QueueJob).where(*conditions).values(**values))
            await db.commit()
        if result.rowcount != 1:
            return False
        if retry:
            logger.warning("Job %s attempt %s/%s failed, requeued: %s", job.id, attempts, job.max_attempts, error)
        else:
            logger.error("Job %s failed permanently after %s attempts: %s", job.id, attempts, error)
        return True

    async def _fail_attempt(self, job: QueueJob, error: str) -> JobState:
        if not await self._finish_failed_attempt(job, error, started_at=None):
            return await self._current_state(job)
        return JobState.PENDING if int(job.attempts or 0) < int(job.max_attempts or 1) else JobState.FAILED

    async def _current_state(self, job: QueueJob) -> JobState:
        """State of a job that left running under someone else's write."""
        current = await self.get_job(job.id)
        logger.warning("Job %s was already %s when its run finished", job.id, current.state)
        return JobState(current.state)

    async def _execute(self, job: QueueJob) -> None:
        kind = JobKind(job.kind)
        payload = job.payload_json or {}
        if kind is JobKind.FULL_AUDIT:
            urls = payload.get("urls") or list(self.config.target_urls)
            if not urls:
                raise JobExecutionError("No audit target URLs configured")
            await self._run_audit(job, kind, urls)
        elif kind is JobKind.QUICK_CHECK:
            latest = await self.store.latest_audit_runs(limit=1)
            report = (latest[0].report_json or {}) if latest else {}
            urls = payload.get("urls") or [item["url"] for item in report.get("broken", []) if item.get("url")]
            await self._run_audit(job, kind, urls)
        elif kind is JobKind.ALERT_ANALYSIS:
            analysis = await self.alert_manager.analyze_audit_results()
            if not analysis.success:
                raise JobExecutionError(analysis.message)
        elif kind is JobKind.WEEKLY_REPORT:
            result = await self.alert_manager.send_weekly_report()
            if not result.success:
                raise JobExecutionError(result.message)
        else:
            raise JobExecutionError(f"Unhandled job kind: {kind}")

    async def _run_audit(self, job: QueueJob, kind: JobKind, urls: List[str]) -> AuditRun:
        started_at = self.clock()
        report: ValidationReport = await self.engine.validate(urls)
        run = AuditRun(
            id=str(uuid.uuid4()),
            job_id=job.id,
            kind=kind.value,
            started_at=as_utc(started_at),
            total_links=report.total_links,
            broken_links=len(report.broken),
            corrected_links=len(report.redirect_map),
            seo_score=report.seo_score,
            execution_time_ms=report.execution_time_ms,
            report_json=report.as_json(),
        )
        return await self.store.record_audit_run(run)
