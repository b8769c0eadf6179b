"""
Admin endpoints: audit history, resource requests, alerts, queue control.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import settings
from models.enums import JobKind, ResourceRequestStatus
from models.queue_job import QueueJob
from routers.auth_scope import require_admin
from routers.errors import failure_response
from services.audit_engine import trigger_remote_audit
from services.audit_queue import enqueue_process_queue_tick
from services.audit_store import InvalidStatusTransition, ResourceRequestNotFound, as_utc, group_latest_per_day
from services.registry import Services, get_services
from services.scheduler import JobNotFound
from services.usage_monitor import USAGE_METRICS

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class AuditHistoryPoint(BaseModel):
    date: str
    totalLinks: int
    brokenLinks: int
    correctedLinks: int
    seoScore: float
    executionTime: int


class RequestedResourceResponse(BaseModel):
    url: str
    count: int
    status: ResourceRequestStatus


class ActionResponse(BaseModel):
    success: bool
    message: str


class AlertActionResponse(ActionResponse):
    outcome: str
    dispatched: List[str] = []
    suppressed: List[str] = []
    failed: List[str] = []


class EnqueueJobRequest(BaseModel):
    kind: JobKind
    payload: Optional[Dict[str, Any]] = None


class QueueJobResponse(BaseModel):
    job_id: str
    kind: str
    state: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    enqueued_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class EnqueueJobResponse(BaseModel):
    success: bool
    created: bool
    job: QueueJobResponse


class UpdateResourceRequestStatus(BaseModel):
    status: ResourceRequestStatus


class ResourceRequestResponse(BaseModel):
    id: str
    requested_url: str
    status: ResourceRequestStatus
    created_at: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_job(job: QueueJob) -> QueueJobResponse:
    return QueueJobResponse(
        job_id=job.id,
        kind=job.kind,
        state=job.state,
        attempts=int(job.attempts or 0),
        max_attempts=int(job.max_attempts or 1),
        error_message=job.error_message,
        enqueued_at=_iso(job.enqueued_at),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
    )


@router.get("/audit-history", response_model=List[AuditHistoryPoint])
async def audit_history(services: Services = Depends(get_services)):
    """Last 30 days of audits, latest run per day."""
    since = datetime.now(timezone.utc) - timedelta(days=settings.AUDIT_HISTORY_DAYS)
    try:
        runs = await services.store.query_audit_history(since)
    except Exception as exc:
        logger.exception("Audit history query failed")
        return failure_response(exc, "Could not load audit history")
    return [
        AuditHistoryPoint(
            date=as_utc(run.started_at).date().isoformat(),
            totalLinks=int(run.total_links or 0),
            brokenLinks=int(run.broken_links or 0),
            correctedLinks=int(run.corrected_links or 0),
            seoScore=float(run.seo_score or 0),
            executionTime=int(run.execution_time_ms or 0),
        )
        for run in group_latest_per_day(runs)
    ]


@router.get("/most-requested-resources", response_model=List[RequestedResourceResponse])
async def most_requested_resources(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    services: Services = Depends(get_services),
):
    try:
        resources = await services.store.query_most_requested(limit=limit)
    except Exception as exc:
        logger.exception("Most requested resources query failed")
        return failure_response(exc, "Could not load resource requests")
    return [RequestedResourceResponse(url=r.url, count=r.count, status=r.status) for r in resources]


@router.patch("/resource-requests/{request_id}", response_model=ResourceRequestResponse)
async def update_resource_request(
    request_id: str,
    body: UpdateResourceRequestStatus,
    services: Services = Depends(get_services),
):
    try:
        request = await services.store.update_resource_request_status(request_id, body.status)
    except ResourceRequestNotFound as exc:
        return failure_response(exc, "Resource request not found", status_code=404)
    except InvalidStatusTransition as exc:
        return failure_response(exc, "Resource request status cannot move backward", status_code=409)
    except Exception as exc:
        logger.exception("Resource request %s status update failed", request_id)
        return failure_response(exc, "Could not update resource request")
    return ResourceRequestResponse(
        id=request.id,
        requested_url=request.requested_url,
        status=ResourceRequestStatus(request.status),
        created_at=_iso(request.created_at),
    )


@router.post("/test-alerts", response_model=ActionResponse)
async def test_alerts(services: Services = Depends(get_services)):
    try:
        success = await services.alert_manager.test_alerts()
    except Exception as exc:
        logger.exception("Test alert failed")
        return failure_response(exc, "Test alert failed")
    if not success:
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": "dispatch_failed", "message": "Test alert could not be dispatched"},
        )
    return ActionResponse(success=True, message="Test alert sent")


@router.post("/trigger-alerts", response_model=AlertActionResponse)
async def trigger_alerts(services: Services = Depends(get_services)):
    try:
        analysis = await services.alert_manager.analyze_audit_results()
    except Exception as exc:
        logger.exception("Alert analysis failed")
        return failure_response(exc, "Alert analysis failed")
    body = AlertActionResponse(
        success=analysis.success,
        message=analysis.message,
        outcome=analysis.outcome.value,
        dispatched=analysis.dispatched,
        suppressed=analysis.suppressed,
        failed=analysis.failed,
    )
    if not analysis.success:
        return JSONResponse(status_code=502, content={**body.model_dump(), "error": "dispatch_failed"})
    return body


@router.post("/trigger-audit")
async def trigger_audit():
    """Proxy to the site's audit-execution endpoint."""
    try:
        result = await trigger_remote_audit(
            settings.AUDIT_ENDPOINT_URL,
            timeout_seconds=settings.AUDIT_JOB_TIMEOUT_SECONDS,
        )
    except httpx.HTTPStatusError as exc:
        logger.error("Audit endpoint answered %s", exc.response.status_code)
        return failure_response(exc, f"Audit endpoint returned {exc.response.status_code}", status_code=502)
    except Exception as exc:
        logger.exception("Audit trigger failed")
        return failure_response(exc, "Audit trigger failed")
    return {"success": True, "message": "Audit triggered", "result": result}


@router.post("/jobs", response_model=EnqueueJobResponse)
async def enqueue_job(body: EnqueueJobRequest, services: Services = Depends(get_services)):
    try:
        result = await services.scheduler.enqueue(body.kind, body.payload)
    except Exception as exc:
        logger.exception("Enqueue of %s failed", body.kind.value)
        return failure_response(exc, "Could not enqueue job")
    if result.created and settings.QUEUE_WORKER_NUDGE_ENABLED and services.scheduler.is_enabled():
        try:
            enqueue_process_queue_tick()
        except Exception as exc:
            # The next cron call drains the queue anyway.
            logger.warning("Worker nudge unavailable: %s", exc)
    return EnqueueJobResponse(success=True, created=result.created, job=serialize_job(result.job))


@router.get("/jobs", response_model=List[QueueJobResponse])
async def list_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    jobs = await services.scheduler.list_jobs(limit)
    return [serialize_job(job) for job in jobs]


@router.post("/jobs/{job_id}/cancel", response_model=QueueJobResponse)
async def cancel_job(job_id: str, services: Services = Depends(get_services)):
    try:
        job = await services.scheduler.cancel_job(job_id)
    except JobNotFound as exc:
        return failure_response(exc, "Job not found", status_code=404)
    return serialize_job(job)


@router.get("/queue-status")
async def queue_status(services: Services = Depends(get_services)):
    status = await services.scheduler.get_queue_status()
    return {
        "enabled": services.scheduler.is_enabled(),
        "pending": status.pending,
        "running": status.running,
    }


@router.get("/usage")
async def usage_overview(services: Services = Depends(get_services)):
    """Trend and plan for the admin dashboard; reads stored snapshots only."""
    monitor = services.usage_monitor
    try:
        trend = await monitor.get_usage_trend()
        history = await monitor.history()
    except Exception as exc:
        logger.exception("Usage overview failed")
        return failure_response(exc, "Could not load usage overview")
    latest = history[-1] if history else None
    prediction = await monitor.predict_monthly_usage(latest) if latest is not None else None
    return {
        "plan": monitor.config.plan.model_dump(),
        "monitoring_interval": monitor.config.monitoring_interval,
        "trend": {
            "trend": trend.trend.value,
            "change_rate": trend.change_rate,
            "confidence": trend.confidence,
            "samples": trend.samples,
        },
        "latest": None if latest is None else {
            "timestamp": _iso(latest.timestamp),
            "invocations": latest.invocations,
            "compute_hours": latest.compute_hours,
            "cron_runs": latest.cron_runs,
            "cron_jobs": latest.cron_jobs,
            "usage_percent": {
                metric: round(monitor.usage_percent(latest, metric), 2)
                for metric in USAGE_METRICS
            },
        },
        "prediction": None if prediction is None else {
            "predicted_invocations": prediction.predicted_invocations,
            "predicted_compute_hours": prediction.predicted_compute_hours,
            "confidence": prediction.confidence,
            "days_remaining": prediction.days_remaining,
            "risk_level": prediction.risk_level,
            "recommendations": prediction.recommendations,
        },
    }
