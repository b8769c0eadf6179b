"""
Liveness, readiness and dependency status.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from services.registry import Services, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


async def _database_state(services: Services) -> str:
    try:
        async with services.store.session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        return f"down: {exc}"
    return "up"


async def _redis_state() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except (redis.RedisError, OSError) as exc:
        return f"down: {exc}"
    finally:
        await client.aclose()
    return "up"


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """
    Dependency status plus queue depth.
    Redis only backs rate limits and worker nudges, so it degrades, never fails.
    """
    database = await _database_state(services)
    body = {
        "status": "healthy",
        "database": database,
        "redis": await _redis_state(),
        "scheduler": "enabled" if services.scheduler.is_enabled() else "disabled",
        "alert_channel": type(services.notifier).__name__,
        "usage_monitoring": "configured" if services.usage_monitor.config.api_token else "missing",
        "queue": None,
    }
    if database == "up":
        status = await services.scheduler.get_queue_status()
        body["queue"] = {"pending": status.pending, "running": status.running}
    if database != "up" or body["redis"] != "up":
        body["status"] = "degraded"
    return body


@router.get("/health/ready")
async def readiness_check(services: Services = Depends(get_services)):
    """Ready once a scheduled audit would have something to check."""
    missing = []
    if services.scheduler.is_enabled() and not services.scheduler.config.target_urls:
        missing.append("AUDIT_TARGET_URLS")
    if settings.USAGE_POLL_IN_PROCESS and not services.usage_monitor.config.api_token:
        missing.append("USAGE_API_TOKEN")

    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
