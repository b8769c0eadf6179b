"""Link validation engine: classifies URLs as valid, broken or redirected."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import httpx

from models.enums import LinkStatus

logger = logging.getLogger(__name__)

REDIRECT_CODES = {301, 302, 303, 307, 308}


@dataclass(frozen=True)
class LinkResult:
    url: str
    status: LinkStatus
    status_code: Optional[int] = None
    redirect_to: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ValidationReport:
    results: List[LinkResult] = field(default_factory=list)
    execution_time_ms: int = 0

    @property
    def total_links(self) -> int:
        return len(self.results)

    @property
    def broken(self) -> List[LinkResult]:
        return [item for item in self.results if item.status is LinkStatus.BROKEN]

    @property
    def redirected(self) -> List[LinkResult]:
        return [item for item in self.results if item.status is LinkStatus.REDIRECTED]

    @property
    def redirect_map(self) -> Dict[str, str]:
        return {item.url: item.redirect_to for item in self.redirected if item.redirect_to}

    @property
    def seo_score(self) -> float:
        """Share of links that resolve directly, as a 0-100 score.

        Redirects count against it even though they still work; the link health
        score only counts broken links.
        """
        if not self.results:
            return 100.0
        valid = sum(1 for item in self.results if item.status is LinkStatus.VALID)
        return round(valid / self.total_links * 100, 1)

    def as_json(self) -> Dict[str, object]:
        return {
            "broken": [
                {"url": item.url, "status_code": item.status_code, "error": item.error}
                for item in self.broken
            ],
            "redirects": self.redirect_map,
        }


class AuditEngine:
    """HTTP link checker used by scheduled audits.

    Unreachable links are reported as ``broken`` results, never raised: a
    partially failing audit is still a successful audit run.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_concurrency: int = 8,
        user_agent: str = "SiteHealthMonitor",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max(int(max_concurrency), 1)
        self.user_agent = user_agent
        self._transport = transport

    async def validate(self, urls: Iterable[str]) -> ValidationReport:
        unique_urls = list(dict.fromkeys(u.strip() for u in urls if u and u.strip()))
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=False,
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        ) as client:

            async def _bounded(url: str) -> LinkResult:
                async with semaphore:
                    return await self._check(client, url)

            results = await asyncio.gather(*(_bounded(url) for url in unique_urls))

        report = ValidationReport(
            results=list(results),
            execution_time_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "Link validation finished total=%s broken=%s redirected=%s in %sms",
            report.total_links,
            len(report.broken),
            len(report.redirected),
            report.execution_time_ms,
        )
        return report

    async def _check(self, client: httpx.AsyncClient, url: str) -> LinkResult:
        try:
            response = await client.head(url)
            if response.status_code in (405, 501):
                response = await client.get(url)
        except httpx.TimeoutException:
            return LinkResult(url=url, status=LinkStatus.BROKEN, error="timeout")
        except httpx.HTTPError as exc:
            return LinkResult(url=url, status=LinkStatus.BROKEN, error=str(exc) or exc.__class__.__name__)

        code = response.status_code
        if code in REDIRECT_CODES:
            location = response.headers.get("location")
            if location:
                location = str(response.url.join(location))
            return LinkResult(url=url, status=LinkStatus.REDIRECTED, status_code=code, redirect_to=location)
        if code >= 400:
            return LinkResult(url=url, status=LinkStatus.BROKEN, status_code=code, error=f"HTTP {code}")
        return LinkResult(url=url, status=LinkStatus.VALID, status_code=code)


async def trigger_remote_audit(endpoint_url: str, *, timeout_seconds: float, transport=None) -> Dict[str, object]:
    """Call the site's own audit-execution endpoint and return its JSON body.

    Raises ``httpx.HTTPStatusError`` when the endpoint does not answer 2xx.
    """
    async with httpx.AsyncClient(timeout=timeout_seconds, transport=transport) as client:
        response = await client.get(endpoint_url, headers={"User-Agent": "SiteHealthMonitor Audit Trigger"})
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text[:1000]}
