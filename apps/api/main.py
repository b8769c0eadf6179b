"""
Site Health Monitor - FastAPI Backend
Link audits, resource requests, platform usage and operator alerts.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, cron, health, resources
from routers.errors import validation_exception_handler
from services.registry import Services, build_services
from services.usage_monitor import UsageApiError

logger = logging.getLogger(__name__)


async def _periodic_usage_check(services: Services) -> None:
    interval_minutes = max(int(services.usage_monitor.config.monitoring_interval), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            report = await services.usage_monitor.check_usage()
            crossings = len(report.get("crossings", []))
            if crossings:
                print(f"📊 Usage check: {crossings} threshold crossing(s), trend={report['trend']['trend']}")
        except UsageApiError as exc:
            print(f"⚠️ Usage check skipped: {exc}")
        except Exception as exc:
            print(f"⚠️ Usage check tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Site Health Monitor API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    services = build_services(async_session_maker, settings)
    app.state.services = services

    try:
        recovered = await services.scheduler.recover_stalled_jobs()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled queue jobs after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled job recovery skipped: {exc}")

    usage_task = None
    if settings.USAGE_API_TOKEN and settings.USAGE_POLL_IN_PROCESS:
        usage_task = asyncio.create_task(_periodic_usage_check(services))
        print(
            "📅 In-process usage polling enabled "
            f"(every {int(settings.USAGE_MONITORING_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if usage_task is not None:
        usage_task.cancel()
        try:
            await usage_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Site Health Monitor API",
    description="Link audits, resource requests, platform usage monitoring and alerts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RequestValidationError, validation_exception_handler)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": exc.__class__.__name__, "message": "Internal server error"},
    )


app.include_router(health.router, tags=["Health"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
app.include_router(cron.router, tags=["Cron"])
app.include_router(resources.router, prefix="/resource-requests", tags=["Resources"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Site Health Monitor API",
        "version": "0.1.0",
        "status": "running"
    }
