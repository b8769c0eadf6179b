import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./site_health_test.db")

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import Settings
from database import Base
from fakes import FakeAuditEngine, FakeClock, RecordingNotifier
from main import app
from routers import rate_limit
from services.registry import build_services


@pytest.fixture(autouse=True)
def reset_local_rate_limit_windows():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_windows()
    yield
    rate_limit.reset_local_windows()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "site_health.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_engine():
    return FakeAuditEngine()


@pytest.fixture
def test_settings():
    return Settings(
        AUDIT_SCHEDULE_ENABLED=True,
        AUDIT_TARGET_URLS=["https://site.test/", "https://site.test/about", "https://site.test/old"],
        ALERT_WEBHOOK_URL="",
        USAGE_API_TOKEN="usage-token",
        USAGE_PROJECT_ID="prj_123",
    )


@pytest.fixture
def services(session_maker, test_settings, notifier, audit_engine):
    return build_services(session_maker, test_settings, notifier=notifier, engine=audit_engine)


@pytest_asyncio.fixture
async def api_client(services):
    previous = getattr(app.state, "services", None)
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.state.services = previous
