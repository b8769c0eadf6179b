from datetime import datetime, timezone

import httpx
import pytest

from config import settings
from models.audit_run import AuditRun
from models.enums import JobKind


ADMIN_TOKEN = "admin-token-for-route-tests-0001"
CRON_SECRET = "cron-secret-for-route-tests-0001"


@pytest.fixture
def nudges(monkeypatch):
    calls = []
    monkeypatch.setattr("routers.admin.enqueue_process_queue_tick", lambda: calls.append("tick"))
    return calls


async def _create_request(api_client, url):
    response = await api_client.post("/resource-requests", json={"requested_url": url})
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_resource_request_is_recorded_and_ranked(api_client):
    first = await _create_request(api_client, "/downloads/guide.pdf")
    await _create_request(api_client, "/downloads/deck.pptx")
    await _create_request(api_client, "/downloads/guide.pdf")

    assert first["success"] is True
    assert first["status"] == "pending"

    response = await api_client.get("/admin/most-requested-resources")
    assert response.status_code == 200
    assert response.json() == [
        {"url": "/downloads/guide.pdf", "count": 2, "status": "pending"},
        {"url": "/downloads/deck.pptx", "count": 1, "status": "pending"},
    ]


@pytest.mark.asyncio
async def test_malformed_resource_request_is_rejected(api_client, services):
    response = await api_client.post("/resource-requests", json={"requested_url": "ftp://files.test/x"})

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "validation_error"
    assert await services.store.query_most_requested() == []


@pytest.mark.asyncio
async def test_resource_request_status_update(api_client):
    created = await _create_request(api_client, "/downloads/guide.pdf")

    response = await api_client.patch(f"/admin/resource-requests/{created['id']}", json={"status": "completed"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await api_client.patch(f"/admin/resource-requests/{created['id']}", json={"status": "pending"})
    assert response.status_code == 409
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_resource_request_status_update_errors(api_client):
    response = await api_client.patch("/admin/resource-requests/missing", json={"status": "completed"})
    assert response.status_code == 404

    response = await api_client.patch("/admin/resource-requests/missing", json={"status": "archived"})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_audit_history_shape(api_client, services):
    now = datetime.now(timezone.utc)
    await services.store.record_audit_run(
        AuditRun(
            started_at=now,
            total_links=120,
            broken_links=6,
            corrected_links=2,
            seo_score=95.0,
            execution_time_ms=4200,
        )
    )

    response = await api_client.get("/admin/audit-history")

    assert response.status_code == 200
    assert response.json() == [
        {
            "date": now.date().isoformat(),
            "totalLinks": 120,
            "brokenLinks": 6,
            "correctedLinks": 2,
            "seoScore": 95.0,
            "executionTime": 4200,
        }
    ]


@pytest.mark.asyncio
async def test_process_queue_runs_one_job(api_client, services, audit_engine):
    await services.scheduler.enqueue(JobKind.FULL_AUDIT)

    response = await api_client.get("/cron/process-queue")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == {"pending": 0, "running": 0, "processed": 1}
    assert body["job_state"] == "completed"
    assert len(audit_engine.calls) == 1

    idle = await api_client.get("/cron/process-queue")
    assert idle.json()["status"]["processed"] == 0


@pytest.mark.asyncio
async def test_process_queue_when_disabled_touches_nothing(api_client, services, audit_engine):
    queued = await services.scheduler.enqueue(JobKind.FULL_AUDIT)
    services.scheduler.config.enabled = False

    response = await api_client.get("/cron/process-queue")

    assert response.status_code == 200
    assert response.json()["status"] == {"pending": 1, "running": 0, "processed": 0}
    assert audit_engine.calls == []
    job = await services.scheduler.get_job(queued.job.id)
    assert job.state == "pending"


@pytest.mark.asyncio
async def test_enqueue_job_endpoint_deduplicates_and_nudges_worker(api_client, nudges):
    first = await api_client.post("/admin/jobs", json={"kind": "full_audit"})
    second = await api_client.post("/admin/jobs", json={"kind": "full_audit"})

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert second.json()["job"]["job_id"] == first.json()["job"]["job_id"]
    assert nudges == ["tick"]

    status = await api_client.get("/admin/queue-status")
    assert status.json() == {"enabled": True, "pending": 1, "running": 0}

    listed = await api_client.get("/admin/jobs")
    assert [job["kind"] for job in listed.json()] == ["full_audit"]


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_kind(api_client, nudges):
    response = await api_client.post("/admin/jobs", json={"kind": "reindex"})

    assert response.status_code == 422
    assert nudges == []


@pytest.mark.asyncio
async def test_cancel_job_endpoint(api_client, nudges):
    created = (await api_client.post("/admin/jobs", json={"kind": "weekly_report"})).json()

    response = await api_client.post(f"/admin/jobs/{created['job']['job_id']}/cancel")
    assert response.status_code == 200
    assert response.json()["state"] == "cancelled"

    missing = await api_client.post("/admin/jobs/missing/cancel")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_test_alerts_endpoint(api_client, notifier):
    response = await api_client.post("/admin/test-alerts")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert [n.kind for n in notifier.sent] == ["test"]

    notifier.fail = True
    response = await api_client.post("/admin/test-alerts")
    assert response.status_code == 502
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_trigger_alerts_without_audit(api_client):
    response = await api_client.post("/admin/trigger-alerts")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["outcome"] == "no_audit"


@pytest.mark.asyncio
async def test_trigger_alerts_reports_dispatch_failure(api_client, services, notifier):
    await services.store.record_audit_run(
        AuditRun(started_at=datetime.now(timezone.utc), total_links=10, broken_links=5, seo_score=50.0)
    )
    notifier.fail = True

    response = await api_client.post("/admin/trigger-alerts")

    assert response.status_code == 502
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "dispatch_failed"
    assert "audit:broken_ratio:25" in body["failed"]


@pytest.mark.asyncio
async def test_weekly_report_endpoint(api_client, notifier):
    response = await api_client.get("/weekly-report")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert [n.kind for n in notifier.sent] == ["weekly_report"]


@pytest.mark.asyncio
async def test_trigger_audit_maps_upstream_error(api_client, monkeypatch):
    async def _failing_trigger(endpoint_url, *, timeout_seconds):
        request = httpx.Request("GET", endpoint_url)
        raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))

    monkeypatch.setattr("routers.admin.trigger_remote_audit", _failing_trigger)

    response = await api_client.post("/admin/trigger-audit")

    assert response.status_code == 502
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_trigger_audit_returns_upstream_body(api_client, monkeypatch):
    async def _trigger(endpoint_url, *, timeout_seconds):
        return {"checked": 40}

    monkeypatch.setattr("routers.admin.trigger_remote_audit", _trigger)

    response = await api_client.post("/admin/trigger-audit")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Audit triggered", "result": {"checked": 40}}


@pytest.mark.asyncio
async def test_check_usage_endpoint(api_client, services, notifier):
    services.usage_monitor._transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"usage": {"invocations": 80000, "computeHours": 5, "cronRuns": 0}})
    )

    response = await api_client.get("/cron/check-usage")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert {c["threshold"] for c in body["crossings"]} == {50.0, 75.0}
    assert notifier.keys() == ["usage:invocations:50", "usage:invocations:75"]


@pytest.mark.asyncio
async def test_check_usage_upstream_failure(api_client, services):
    services.usage_monitor._transport = httpx.MockTransport(lambda request: httpx.Response(500))

    response = await api_client.get("/cron/check-usage")

    assert response.status_code == 502
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_admin_routes_require_token_when_configured(api_client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)

    assert (await api_client.get("/admin/queue-status")).status_code == 401
    wrong = await api_client.get("/admin/queue-status", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    ok = await api_client.get("/admin/queue-status", headers={"Authorization": f"Bearer {ADMIN_TOKEN}"})
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_cron_routes_accept_cron_secret_or_admin_token(api_client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)

    assert (await api_client.get("/cron/process-queue")).status_code == 401
    for token in (CRON_SECRET, ADMIN_TOKEN):
        response = await api_client.get("/cron/process-queue", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
    # The cron secret does not open admin routes.
    admin = await api_client.get("/admin/queue-status", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert admin.status_code == 401


@pytest.mark.asyncio
async def test_liveness_check(api_client):
    response = await api_client.get("/health/live")

    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_health_reports_queue_depth(api_client, services):
    await services.scheduler.enqueue(JobKind.FULL_AUDIT)

    response = await api_client.get("/health")

    body = response.json()
    assert body["database"] == "up"
    assert body["scheduler"] == "enabled"
    assert body["queue"] == {"pending": 1, "running": 0}


@pytest.mark.asyncio
async def test_readiness_requires_audit_targets(api_client, services):
    assert (await api_client.get("/health/ready")).json() == {"ready": True}

    services.scheduler.config.target_urls = ()
    response = await api_client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["missing"] == ["AUDIT_TARGET_URLS"]


@pytest.mark.asyncio
async def test_usage_overview_reads_stored_snapshots(api_client, services):
    empty = (await api_client.get("/admin/usage")).json()
    assert empty["latest"] is None
    assert empty["trend"]["trend"] == "stable"

    await services.usage_monitor.record_snapshot(invocations=25000, compute_hours=10, cron_runs=48, cron_jobs=1)
    body = (await api_client.get("/admin/usage")).json()

    assert body["plan"]["name"] == "hobby"
    assert body["latest"]["usage_percent"] == {"invocations": 25.0, "compute_hours": 10.0, "cron_jobs": 50.0}
    assert body["prediction"]["risk_level"] in {"low", "medium", "high", "critical"}
