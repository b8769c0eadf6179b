import httpx
import pytest

from models.enums import LinkStatus
from services.audit_engine import AuditEngine, trigger_remote_audit


def _site(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/ok":
        return httpx.Response(200)
    if path == "/moved":
        return httpx.Response(301, headers={"location": "/new-home"})
    if path == "/missing":
        return httpx.Response(404)
    if path == "/head-not-allowed":
        if request.method == "HEAD":
            return httpx.Response(405)
        return httpx.Response(200)
    if path == "/down":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(500)


@pytest.mark.asyncio
async def test_validate_classifies_links():
    engine = AuditEngine(transport=httpx.MockTransport(_site))

    report = await engine.validate(
        [
            "https://site.test/ok",
            "https://site.test/moved",
            "https://site.test/missing",
            "https://site.test/head-not-allowed",
            "https://site.test/down",
            "https://site.test/ok",
        ]
    )

    statuses = {item.url: item.status for item in report.results}
    assert statuses == {
        "https://site.test/ok": LinkStatus.VALID,
        "https://site.test/moved": LinkStatus.REDIRECTED,
        "https://site.test/missing": LinkStatus.BROKEN,
        "https://site.test/head-not-allowed": LinkStatus.VALID,
        "https://site.test/down": LinkStatus.BROKEN,
    }
    assert report.total_links == 5
    assert report.redirect_map == {"https://site.test/moved": "https://site.test/new-home"}
    # Broken links and redirects both lower the SEO score.
    assert report.seo_score == 40.0
    assert [item["url"] for item in report.as_json()["broken"]] == [
        "https://site.test/missing",
        "https://site.test/down",
    ]


@pytest.mark.asyncio
async def test_empty_audit_scores_full_marks():
    engine = AuditEngine(transport=httpx.MockTransport(_site))

    report = await engine.validate([])

    assert report.total_links == 0
    assert report.seo_score == 100.0


@pytest.mark.asyncio
async def test_trigger_remote_audit_returns_body():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"success": True, "checked": 12}))

    result = await trigger_remote_audit("https://site.test/api/audit-links", timeout_seconds=5, transport=transport)

    assert result == {"success": True, "checked": 12}


@pytest.mark.asyncio
async def test_trigger_remote_audit_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    with pytest.raises(httpx.HTTPStatusError):
        await trigger_remote_audit("https://site.test/api/audit-links", timeout_seconds=5, transport=transport)
