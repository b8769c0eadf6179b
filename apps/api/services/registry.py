"""Service wiring: built once at process start and shared by the HTTP handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from services.alert_manager import AlertManager, AlertManagerConfig, AlertThreshold
from services.audit_engine import AuditEngine
from services.audit_store import AuditStore
from services.notifier import Notifier, build_notifier
from services.scheduler import AuditScheduler, SchedulerConfig
from services.usage_monitor import PlanDefinition, UsageMonitor, UsageMonitorConfig


@dataclass
class Services:
    store: AuditStore
    engine: AuditEngine
    notifier: Notifier
    alert_manager: AlertManager
    usage_monitor: UsageMonitor
    scheduler: AuditScheduler


def alert_config_from_settings(settings: Settings) -> AlertManagerConfig:
    return AlertManagerConfig(
        enabled=settings.ALERTS_ENABLED,
        broken_ratio_thresholds=[
            AlertThreshold(percentage=pct, enabled=True, cooldown_minutes=settings.ALERT_COOLDOWN_MINUTES)
            for pct in settings.ALERT_BROKEN_RATIO_THRESHOLDS
        ],
        health_score_threshold=settings.ALERT_HEALTH_SCORE_THRESHOLD,
        broken_increase_threshold=settings.ALERT_BROKEN_INCREASE_THRESHOLD,
        seo_score_drop_threshold=settings.ALERT_SEO_SCORE_DROP_THRESHOLD,
        cooldown_minutes=settings.ALERT_COOLDOWN_MINUTES,
        report_url=f"{settings.PUBLIC_BASE_URL.rstrip('/')}/admin/audit-dashboard",
    )


def usage_config_from_settings(settings: Settings) -> UsageMonitorConfig:
    return UsageMonitorConfig(
        api_token=settings.USAGE_API_TOKEN,
        project_id=settings.USAGE_PROJECT_ID,
        alert_thresholds=[
            AlertThreshold(percentage=pct, enabled=True, cooldown_minutes=settings.USAGE_ALERT_COOLDOWN_MINUTES)
            for pct in settings.USAGE_ALERT_PERCENTAGES
        ],
        plan=PlanDefinition(
            name=settings.PLAN_NAME,
            invocation_limit=settings.PLAN_INVOCATION_LIMIT,
            compute_hours_limit=settings.PLAN_COMPUTE_HOURS_LIMIT,
            cron_jobs_limit=settings.PLAN_CRON_JOBS_LIMIT,
            memory_limit=settings.PLAN_MEMORY_LIMIT_MB,
        ),
        monitoring_interval=settings.USAGE_MONITORING_INTERVAL_MINUTES,
        api_base_url=settings.USAGE_API_BASE_URL,
        timeout_seconds=settings.USAGE_API_TIMEOUT_SECONDS,
        history_limit=settings.USAGE_HISTORY_LIMIT,
        retention_days=settings.USAGE_RETENTION_DAYS,
    )


def scheduler_config_from_settings(settings: Settings) -> SchedulerConfig:
    return SchedulerConfig(
        enabled=settings.AUDIT_SCHEDULE_ENABLED,
        max_attempts=settings.AUDIT_JOB_MAX_ATTEMPTS,
        job_timeout_seconds=settings.AUDIT_JOB_TIMEOUT_SECONDS,
        stalled_after_minutes=settings.AUDIT_JOB_TIMEOUT_MINUTES,
        pending_max_age_hours=settings.QUEUE_PENDING_MAX_AGE_HOURS,
        target_urls=tuple(settings.AUDIT_TARGET_URLS),
    )


def build_services(
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
    *,
    notifier: Optional[Notifier] = None,
    engine: Optional[AuditEngine] = None,
) -> Services:
    store = AuditStore(session_maker)
    notifier = notifier or build_notifier(
        settings.ALERT_WEBHOOK_URL,
        timeout_seconds=settings.ALERT_WEBHOOK_TIMEOUT_SECONDS,
        recipient=settings.ALERT_ADMIN_EMAIL,
    )
    engine = engine or AuditEngine(
        timeout_seconds=settings.AUDIT_REQUEST_TIMEOUT_SECONDS,
        max_concurrency=settings.AUDIT_MAX_CONCURRENCY,
        user_agent=settings.AUDIT_USER_AGENT,
    )
    alert_manager = AlertManager(session_maker, store, notifier, alert_config_from_settings(settings))
    usage_monitor = UsageMonitor(session_maker, alert_manager, usage_config_from_settings(settings))
    scheduler = AuditScheduler(
        session_maker,
        engine,
        store,
        alert_manager,
        scheduler_config_from_settings(settings),
    )
    return Services(
        store=store,
        engine=engine,
        notifier=notifier,
        alert_manager=alert_manager,
        usage_monitor=usage_monitor,
        scheduler=scheduler,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the services wired at startup."""
    return request.app.state.services
