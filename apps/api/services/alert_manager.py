"""Threshold evaluation, cooldown-gated dispatch and weekly digest."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.alert_fire_record import AlertFireRecord
from models.audit_run import AuditRun
from services.audit_store import AuditStore, as_utc, group_latest_per_day
from services.notifier import DispatchError, Notification, Notifier

logger = logging.getLogger(__name__)

NEGATIVE_TREND_WINDOW = 5
NEGATIVE_TREND_MIN_RUNS = 3
NEGATIVE_TREND_RATIO = 0.6
WEEKLY_REPORT_DAYS = 7
WEEKLY_TOP_RESOURCES = 5


class AlertThreshold(BaseModel):
    percentage: float = Field(ge=0)
    enabled: bool = True
    cooldown_minutes: int = Field(default=60, ge=0)


class AlertOutcome(str, Enum):
    DISABLED = "disabled"
    NO_AUDIT = "no_audit"
    NO_CROSSING = "no_crossing"
    SUPPRESSED = "suppressed"
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass
class AlertManagerConfig:
    enabled: bool = True
    broken_ratio_thresholds: List[AlertThreshold] = field(
        default_factory=lambda: [AlertThreshold(percentage=p) for p in (5.0, 10.0, 25.0)]
    )
    health_score_threshold: float = 85.0
    broken_increase_threshold: int = 10
    seo_score_drop_threshold: float = 10.0
    cooldown_minutes: int = 60
    report_url: str = ""


@dataclass
class AlertAnalysis:
    outcome: AlertOutcome
    dispatched: List[str] = field(default_factory=list)
    suppressed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    audit_run_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome is not AlertOutcome.DISPATCH_FAILED

    @property
    def message(self) -> str:
        if self.outcome is AlertOutcome.DISABLED:
            return "Alerts are disabled"
        if self.outcome is AlertOutcome.NO_AUDIT:
            return "No audit run available for analysis"
        if self.outcome is AlertOutcome.NO_CROSSING:
            return "No threshold crossed"
        if self.outcome is AlertOutcome.SUPPRESSED:
            return f"{len(self.suppressed)} alert(s) suppressed by cooldown"
        if self.outcome is AlertOutcome.DISPATCHED:
            return f"{len(self.dispatched)} alert(s) dispatched"
        if self.outcome is AlertOutcome.DISPATCH_FAILED:
            return f"{len(self.failed)} alert(s) could not be dispatched"
        raise ValueError(f"Unhandled alert outcome: {self.outcome}")


@dataclass
class WeeklyReportResult:
    success: bool
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Crossing:
    key: str
    cooldown_minutes: int
    notification: Notification


def health_score(run: AuditRun) -> float:
    total = int(run.total_links or 0)
    if total <= 0:
        return 100.0
    return round((total - int(run.broken_links or 0)) / total * 100, 1)


def broken_ratio(run: AuditRun) -> float:
    total = int(run.total_links or 0)
    if total <= 0:
        return 0.0
    return int(run.broken_links or 0) / total * 100


def is_decreasing_trend(values: List[float]) -> bool:
    """True when enough chronological steps go down."""
    if len(values) < NEGATIVE_TREND_MIN_RUNS:
        return False
    decreasing = sum(1 for prev, cur in zip(values, values[1:]) if cur < prev)
    return decreasing / (len(values) - 1) >= NEGATIVE_TREND_RATIO


class AlertManager:
    """Owns AlertFireRecord state; every gated dispatch goes through ``_dispatch_gated``."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: AuditStore,
        notifier: Notifier,
        config: Optional[AlertManagerConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_maker = session_maker
        self.store = store
        self.notifier = notifier
        self.config = config or AlertManagerConfig()
        self.clock = clock

    # -- cooldown bookkeeping -------------------------------------------------

    async def _ensure_record(self, key: str) -> None:
        async with self.session_maker() as db:
            existing = await db.get(AlertFireRecord, key)
            if existing is not None:
                return
            db.add(AlertFireRecord(threshold_key=key, last_fired_at=None))
            try:
                await db.commit()
            except IntegrityError:
                # Another evaluation created it first.
                await db.rollback()

    async def _reserve(self, key: str, cooldown_minutes: int, now: datetime) -> tuple[bool, Optional[datetime]]:
        """Compare-and-set ``last_fired_at`` to ``now`` if the cooldown has elapsed."""
        await self._ensure_record(key)
        cutoff = now - timedelta(minutes=max(int(cooldown_minutes), 0))
        async with self.session_maker() as db:
            previous = (
                await db.execute(
                    select(AlertFireRecord.last_fired_at).where(AlertFireRecord.threshold_key == key)
                )
            ).scalar_one_or_none()
            result = await db.execute(
                update(AlertFireRecord)
                .where(
                    AlertFireRecord.threshold_key == key,
                    or_(AlertFireRecord.last_fired_at.is_(None), AlertFireRecord.last_fired_at <= cutoff),
                )
                .values(last_fired_at=now)
            )
            await db.commit()
        return result.rowcount == 1, previous

    async def _release(self, key: str, reserved_at: datetime, previous: Optional[datetime]) -> None:
        """Undo a reservation whose dispatch failed, unless someone fired since."""
        async with self.session_maker() as db:
            await db.execute(
                update(AlertFireRecord)
                .where(AlertFireRecord.threshold_key == key, AlertFireRecord.last_fired_at == reserved_at)
                .values(last_fired_at=previous)
            )
            await db.commit()

    async def get_last_fired(self, key: str) -> Optional[datetime]:
        async with self.session_maker() as db:
            record = await db.get(AlertFireRecord, key)
            return as_utc(record.last_fired_at) if record else None

    async def _dispatch_gated(self, key: str, cooldown_minutes: int, notification: Notification) -> AlertOutcome:
        now = self.clock()
        reserved, previous = await self._reserve(key, cooldown_minutes, now)
        if not reserved:
            logger.info("Alert %s suppressed by cooldown (%s min)", key, cooldown_minutes)
            return AlertOutcome.SUPPRESSED
        try:
            await self.notifier.send(notification)
        except DispatchError as exc:
            logger.error("Alert %s dispatch failed: %s", key, exc)
            await self._release(key, now, previous)
            return AlertOutcome.DISPATCH_FAILED
        logger.info("Alert %s dispatched", key)
        return AlertOutcome.DISPATCHED

    async def dispatch_usage_alert(
        self,
        key: str,
        cooldown_minutes: int,
        subject: str,
        payload: Dict[str, Any],
    ) -> AlertOutcome:
        notification = Notification(kind="usage_alert", subject=subject, payload=payload, threshold_key=key)
        return await self._dispatch_gated(key, cooldown_minutes, notification)

    # -- operations -----------------------------------------------------------

    async def test_alerts(self) -> bool:
        """Send a fixed sample alert; cooldown records are not touched."""
        notification = Notification(
            kind="test",
            subject="Test alert: link audit notifications",
            payload={
                "broken_links_count": 3,
                "total_links": 100,
                "health_score": 97.0,
                "broken_links": [
                    {"url": "https://example.com/test-link", "error": "Test error", "priority": "critical"}
                ],
                "report_url": self.config.report_url,
            },
        )
        try:
            await self.notifier.send(notification)
        except DispatchError as exc:
            logger.error("Test alert dispatch failed: %s", exc)
            return False
        logger.info("Test alert dispatched")
        return True

    def _audit_payload(self, run: AuditRun, **extra: Any) -> Dict[str, Any]:
        report = run.report_json or {}
        payload = {
            "audit_run_id": run.id,
            "started_at": as_utc(run.started_at).isoformat() if run.started_at else None,
            "total_links": run.total_links,
            "broken_links_count": run.broken_links,
            "health_score": health_score(run),
            "seo_score": run.seo_score,
            "broken_links": list(report.get("broken", []))[:10],
            "report_url": self.config.report_url,
        }
        payload.update(extra)
        return payload

    def _audit_crossings(self, runs: List[AuditRun]) -> List[_Crossing]:
        """``runs`` is newest first."""
        latest = runs[0]
        previous = runs[1] if len(runs) > 1 else None
        cooldown = self.config.cooldown_minutes
        crossings: List[_Crossing] = []

        ratio = broken_ratio(latest)
        for threshold in self.config.broken_ratio_thresholds:
            if not threshold.enabled or ratio < threshold.percentage:
                continue
            key = f"audit:broken_ratio:{threshold.percentage:g}"
            crossings.append(
                _Crossing(
                    key=key,
                    cooldown_minutes=threshold.cooldown_minutes,
                    notification=Notification(
                        kind="audit_alert",
                        subject=f"Broken links at {ratio:.1f}% (threshold {threshold.percentage:g}%)",
                        payload=self._audit_payload(latest, broken_ratio=round(ratio, 2)),
                        threshold_key=key,
                    ),
                )
            )

        score = health_score(latest)
        if score < self.config.health_score_threshold:
            crossings.append(
                _Crossing(
                    key="audit:low_health_score",
                    cooldown_minutes=cooldown,
                    notification=Notification(
                        kind="audit_alert",
                        subject=f"Link health score dropped to {score:g}%",
                        payload=self._audit_payload(latest),
                        threshold_key="audit:low_health_score",
                    ),
                )
            )

        if previous is not None:
            increase = int(latest.broken_links or 0) - int(previous.broken_links or 0)
            if increase >= self.config.broken_increase_threshold:
                crossings.append(
                    _Crossing(
                        key="audit:broken_links_increase",
                        cooldown_minutes=cooldown,
                        notification=Notification(
                            kind="audit_alert",
                            subject=f"{increase} new broken links since the previous audit",
                            payload=self._audit_payload(latest, broken_links_increase=increase),
                            threshold_key="audit:broken_links_increase",
                        ),
                    )
                )
            drop = float(previous.seo_score or 0) - float(latest.seo_score or 0)
            if drop >= self.config.seo_score_drop_threshold:
                crossings.append(
                    _Crossing(
                        key="audit:seo_score_drop",
                        cooldown_minutes=cooldown,
                        notification=Notification(
                            kind="audit_alert",
                            subject=f"SEO score fell by {drop:g} points",
                            payload=self._audit_payload(latest, seo_score_drop=round(drop, 2)),
                            threshold_key="audit:seo_score_drop",
                        ),
                    )
                )

        chronological = [health_score(run) for run in reversed(runs[:NEGATIVE_TREND_WINDOW])]
        if is_decreasing_trend(chronological):
            crossings.append(
                _Crossing(
                    key="audit:negative_trend",
                    cooldown_minutes=cooldown,
                    notification=Notification(
                        kind="audit_alert",
                        subject="Link health is trending down",
                        payload=self._audit_payload(latest, recent_health_scores=chronological),
                        threshold_key="audit:negative_trend",
                    ),
                )
            )
        return crossings

    async def analyze_audit_results(self) -> AlertAnalysis:
        if not self.config.enabled:
            logger.info("Alerts disabled; skipping audit analysis")
            return AlertAnalysis(outcome=AlertOutcome.DISABLED)

        runs = await self.store.latest_audit_runs(limit=NEGATIVE_TREND_WINDOW)
        if not runs:
            logger.info("No audit run found for alert analysis")
            return AlertAnalysis(outcome=AlertOutcome.NO_AUDIT)

        analysis = AlertAnalysis(outcome=AlertOutcome.NO_CROSSING, audit_run_id=runs[0].id)
        for crossing in self._audit_crossings(runs):
            outcome = await self._dispatch_gated(crossing.key, crossing.cooldown_minutes, crossing.notification)
            if outcome is AlertOutcome.DISPATCHED:
                analysis.dispatched.append(crossing.key)
            elif outcome is AlertOutcome.SUPPRESSED:
                analysis.suppressed.append(crossing.key)
            elif outcome is AlertOutcome.DISPATCH_FAILED:
                analysis.failed.append(crossing.key)
            else:
                raise ValueError(f"Unexpected gate outcome: {outcome}")

        if analysis.failed:
            analysis.outcome = AlertOutcome.DISPATCH_FAILED
        elif analysis.dispatched:
            analysis.outcome = AlertOutcome.DISPATCHED
        elif analysis.suppressed:
            analysis.outcome = AlertOutcome.SUPPRESSED
        logger.info(
            "Audit alert analysis: outcome=%s dispatched=%s suppressed=%s failed=%s",
            analysis.outcome.value,
            analysis.dispatched,
            analysis.suppressed,
            analysis.failed,
        )
        return analysis

    async def build_weekly_report(self) -> Dict[str, Any]:
        now = self.clock()
        start = now - timedelta(days=WEEKLY_REPORT_DAYS)
        daily = group_latest_per_day(await self.store.query_audit_history(start))
        resources = await self.store.query_most_requested(since=start, limit=WEEKLY_TOP_RESOURCES)

        payload: Dict[str, Any] = {
            "period": f"{start.date().isoformat()} - {now.date().isoformat()}",
            "total_audits": len(daily),
            "average_health_score": 0.0,
            "average_seo_score": 0.0,
            "total_broken_links": 0,
            "total_corrections": 0,
            "most_requested_resources": [{"url": item.url, "count": item.count} for item in resources],
            "trends": {"health_score_change": 0.0, "seo_score_change": 0.0, "broken_links_change": 0},
            "daily": [
                {
                    "date": as_utc(run.started_at).date().isoformat(),
                    "total_links": run.total_links,
                    "broken_links": run.broken_links,
                    "corrected_links": run.corrected_links,
                    "health_score": health_score(run),
                    "seo_score": run.seo_score,
                }
                for run in daily
            ],
        }
        if daily:
            first, last = daily[0], daily[-1]
            payload["average_health_score"] = round(sum(health_score(r) for r in daily) / len(daily), 1)
            payload["average_seo_score"] = round(sum(float(r.seo_score or 0) for r in daily) / len(daily), 1)
            payload["total_broken_links"] = int(last.broken_links or 0)
            payload["total_corrections"] = sum(int(r.corrected_links or 0) for r in daily)
            payload["trends"] = {
                "health_score_change": round(health_score(last) - health_score(first), 1),
                "seo_score_change": round(float(last.seo_score or 0) - float(first.seo_score or 0), 1),
                "broken_links_change": int(last.broken_links or 0) - int(first.broken_links or 0),
            }
        return payload

    async def send_weekly_report(self) -> WeeklyReportResult:
        """Calendar-triggered digest; never cooldown-gated."""
        payload = await self.build_weekly_report()
        notification = Notification(
            kind="weekly_report",
            subject=f"Weekly site health report ({payload['period']})",
            payload=payload,
        )
        try:
            await self.notifier.send(notification)
        except DispatchError as exc:
            logger.error("Weekly report dispatch failed: %s", exc)
            return WeeklyReportResult(success=False, message=f"Weekly report dispatch failed: {exc}", payload=payload)
        logger.info("Weekly report dispatched (%s audits)", payload["total_audits"])
        return WeeklyReportResult(success=True, message="Weekly report sent", payload=payload)
