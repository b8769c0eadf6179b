"""
Endpoints driven by the external periodic trigger (platform cron).
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from routers.errors import failure_response
from routers.auth_scope import require_cron
from services.registry import Services, get_services
from services.usage_monitor import UsageApiError

router = APIRouter(dependencies=[Depends(require_cron)])
logger = logging.getLogger(__name__)


@router.get("/cron/process-queue")
async def process_queue(services: Services = Depends(get_services)):
    """Run at most one queued job; a retried call while a job runs is a no-op."""
    scheduler = services.scheduler
    try:
        if not scheduler.is_enabled():
            status = await scheduler.get_queue_status()
            return {
                "success": True,
                "message": "Scheduler disabled",
                "status": {"pending": status.pending, "running": status.running, "processed": 0},
            }
        result = await scheduler.process_queue()
    except Exception as exc:
        logger.exception("Queue processing failed")
        return failure_response(exc, "Queue processing failed")
    return {
        "success": True,
        "message": result.message,
        "status": {
            "pending": result.status.pending,
            "running": result.status.running,
            "processed": result.processed,
        },
        "job_id": result.job_id,
        "job_state": result.job_state.value if result.job_state else None,
    }


@router.get("/cron/check-usage")
async def check_usage(services: Services = Depends(get_services)):
    """Poll platform usage, fire quota alerts, report trend and projection."""
    try:
        report = await services.usage_monitor.check_usage()
    except UsageApiError as exc:
        logger.error("Usage check failed: %s", exc)
        return failure_response(exc, "Platform usage API unavailable", status_code=502)
    except Exception as exc:
        logger.exception("Usage check failed")
        return failure_response(exc, "Usage check failed")
    failed = [c for c in report["crossings"] if c["outcome"] == "dispatch_failed"]
    body = {
        "success": not failed,
        "message": f"{len(report['crossings'])} threshold crossing(s), {len(failed)} dispatch failure(s)",
        **report,
    }
    if failed:
        return JSONResponse(status_code=502, content={**body, "error": "dispatch_failed"})
    return body


@router.get("/weekly-report")
async def weekly_report(services: Services = Depends(get_services)):
    try:
        result = await services.alert_manager.send_weekly_report()
    except Exception as exc:
        logger.exception("Weekly report failed")
        return failure_response(exc, "Weekly report failed")
    if not result.success:
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": "dispatch_failed", "message": result.message},
        )
    return {"success": True, "message": result.message}
