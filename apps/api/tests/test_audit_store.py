from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.audit_run import AuditRun
from models.enums import ResourceRequestStatus
from models.resource_request import ResourceRequest
from services.audit_store import (
    AuditStore,
    InvalidStatusTransition,
    ResourceRequestNotFound,
    group_latest_per_day,
)


BASE = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _run(started_at: datetime, broken: int, total: int = 100) -> AuditRun:
    return AuditRun(
        started_at=started_at,
        total_links=total,
        broken_links=broken,
        corrected_links=1,
        seo_score=round((total - broken) / total * 100, 1),
        execution_time_ms=1500,
    )


def _request(url: str, created_at: datetime, status: ResourceRequestStatus = ResourceRequestStatus.PENDING):
    return ResourceRequest(requested_url=url, status=status.value, created_at=created_at)


@pytest.mark.asyncio
async def test_audit_history_is_ascending_and_bounded_by_since(session_maker):
    store = AuditStore(session_maker)
    for days_ago in (40, 3, 1, 2):
        await store.record_audit_run(_run(BASE - timedelta(days=days_ago), broken=days_ago))

    history = await store.query_audit_history(BASE - timedelta(days=30))

    assert [run.broken_links for run in history] == [3, 2, 1]


@pytest.mark.asyncio
async def test_record_audit_run_appends_instead_of_overwriting(session_maker):
    store = AuditStore(session_maker)
    await store.record_audit_run(_run(BASE, broken=1))
    await store.record_audit_run(_run(BASE, broken=1))

    async with session_maker() as db:
        rows = (await db.execute(select(AuditRun))).scalars().all()
    assert len(rows) == 2
    assert rows[0].id != rows[1].id


@pytest.mark.asyncio
async def test_grouping_keeps_last_run_of_each_day(session_maker):
    store = AuditStore(session_maker)
    for hour, broken in ((1, 3), (9, 5), (22, 7)):
        await store.record_audit_run(_run(BASE.replace(hour=hour), broken=broken))
    await store.record_audit_run(_run(BASE + timedelta(days=1), broken=2))

    grouped = group_latest_per_day(await store.query_audit_history(BASE - timedelta(days=1)))

    assert [run.broken_links for run in grouped] == [7, 2]


def test_grouping_is_order_independent():
    runs = [_run(BASE.replace(hour=h), broken=b) for h, b in ((22, 7), (1, 3), (9, 5))]

    grouped = group_latest_per_day(runs)

    assert len(grouped) == 1
    assert grouped[0].broken_links == 7


@pytest.mark.asyncio
async def test_most_requested_counts_and_resolves_status(session_maker):
    store = AuditStore(session_maker)
    await store.record_resource_request(_request("/guides/a.pdf", BASE))
    await store.record_resource_request(_request("/guides/b.pdf", BASE + timedelta(minutes=1), ResourceRequestStatus.IN_PROGRESS))
    await store.record_resource_request(_request("/guides/a.pdf", BASE + timedelta(minutes=2), ResourceRequestStatus.COMPLETED))

    ranked = await store.query_most_requested()

    assert [(r.url, r.count, r.status) for r in ranked] == [
        ("/guides/a.pdf", 2, ResourceRequestStatus.COMPLETED),
        ("/guides/b.pdf", 1, ResourceRequestStatus.IN_PROGRESS),
    ]


@pytest.mark.asyncio
async def test_most_requested_ties_follow_first_request_order(session_maker):
    store = AuditStore(session_maker)
    await store.record_resource_request(_request("/late-but-first", BASE))
    await store.record_resource_request(_request("/second", BASE + timedelta(minutes=1)))
    await store.record_resource_request(_request("/second", BASE + timedelta(minutes=2)))
    await store.record_resource_request(_request("/late-but-first", BASE + timedelta(minutes=3)))
    await store.record_resource_request(_request("/single", BASE + timedelta(minutes=4)))

    ranked = await store.query_most_requested()

    assert [r.url for r in ranked] == ["/late-but-first", "/second", "/single"]
    assert [r.status for r in ranked] == [ResourceRequestStatus.PENDING] * 3


@pytest.mark.asyncio
async def test_status_moves_forward(session_maker):
    store = AuditStore(session_maker)
    request = await store.record_resource_request(_request("/kit.zip", BASE))

    updated = await store.update_resource_request_status(request.id, ResourceRequestStatus.IN_PROGRESS)
    assert updated.status == "in_progress"

    updated = await store.update_resource_request_status(request.id, ResourceRequestStatus.COMPLETED)
    assert updated.status == "completed"


@pytest.mark.asyncio
@pytest.mark.parametrize("backward", [ResourceRequestStatus.PENDING, ResourceRequestStatus.IN_PROGRESS])
async def test_completed_request_cannot_regress(session_maker, backward):
    store = AuditStore(session_maker)
    request = await store.record_resource_request(_request("/kit.zip", BASE, ResourceRequestStatus.COMPLETED))

    with pytest.raises(InvalidStatusTransition):
        await store.update_resource_request_status(request.id, backward)

    reloaded = await store.get_resource_request(request.id)
    assert reloaded.status == "completed"


@pytest.mark.asyncio
async def test_unknown_request_id_fails_loudly(session_maker):
    store = AuditStore(session_maker)

    with pytest.raises(ResourceRequestNotFound):
        await store.update_resource_request_status("missing", ResourceRequestStatus.COMPLETED)
