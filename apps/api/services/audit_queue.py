"""RQ nudge: lets a worker drain the persisted queue between cron calls."""

from __future__ import annotations

import asyncio
import logging

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.registry import build_services

logger = logging.getLogger(__name__)

SCHEDULER_QUEUE_NAME = "site_health_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_scheduler_queue() -> Queue:
    """Return the configured scheduler nudge queue."""
    return Queue(
        name=SCHEDULER_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=max(int(settings.AUDIT_JOB_TIMEOUT_SECONDS), 60) + 60,
    )


def enqueue_process_queue_tick() -> Job:
    """Ask a worker to run one ``process_queue`` pass."""
    queue = get_scheduler_queue()
    return queue.enqueue(
        "services.audit_queue.process_queue_tick",
        retry=Retry(max=2, interval=[15, 60]),
        result_ttl=3600,
        failure_ttl=86400,
    )


async def process_queue_tick_async() -> int:
    services = build_services(async_session_maker, settings)
    processed = 0
    # Drain until a pass does no work; single-flight still applies per pass.
    while True:
        result = await services.scheduler.process_queue()
        if not result.processed:
            break
        processed += result.processed
    logger.info("Queue tick processed %s job(s)", processed)
    return processed


def process_queue_tick() -> int:
    """RQ worker entrypoint."""
    return asyncio.run(process_queue_tick_async())
