"""Hosting platform usage polling, trend analysis and quota alerts."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import numpy as np
from pydantic import BaseModel, Field
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.usage_snapshot import UsageSnapshot
from services.alert_manager import AlertManager, AlertOutcome, AlertThreshold
from services.audit_store import as_utc

logger = logging.getLogger(__name__)

STABLE_CHANGE_RATE_PERCENT = 5.0
CONFIDENCE_SAMPLE_PRIOR = 4
PREDICTION_FULL_CONFIDENCE_SAMPLES = 30
SAFE_USAGE_RATIO = 0.8
USAGE_METRICS = ("invocations", "compute_hours", "cron_jobs")


class UsageApiError(RuntimeError):
    """Raised when the platform usage API cannot be read."""


class UsageTrendDirection(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class PlanDefinition(BaseModel):
    name: str = "hobby"
    invocation_limit: int = Field(default=100000, gt=0)
    compute_hours_limit: float = Field(default=100.0, gt=0)
    cron_jobs_limit: int = Field(default=2, gt=0)
    memory_limit: int = Field(default=1024, gt=0)  # MB

    def limit_for(self, metric: str) -> float:
        if metric == "invocations":
            return float(self.invocation_limit)
        if metric == "compute_hours":
            return float(self.compute_hours_limit)
        if metric == "cron_jobs":
            return float(self.cron_jobs_limit)
        raise ValueError(f"Unknown usage metric: {metric}")


class UsageMonitorConfig(BaseModel):
    api_token: str = ""
    project_id: str = ""
    alert_thresholds: List[AlertThreshold] = Field(default_factory=list)
    plan: PlanDefinition = Field(default_factory=PlanDefinition)
    monitoring_interval: int = Field(default=60, gt=0)  # minutes
    api_base_url: str = "https://api.vercel.com"
    timeout_seconds: float = 15.0
    history_limit: int = Field(default=100, gt=1)
    retention_days: int = Field(default=31, gt=0)


@dataclass(frozen=True)
class UsageTrend:
    trend: UsageTrendDirection
    change_rate: float
    confidence: float
    samples: int


@dataclass(frozen=True)
class ThresholdCrossing:
    metric: str
    percentage: float
    usage_percent: float
    outcome: AlertOutcome


@dataclass
class UsagePrediction:
    predicted_invocations: float
    predicted_compute_hours: float
    confidence: float
    days_remaining: int
    risk_level: str
    recommendations: List[Dict[str, str]] = field(default_factory=list)


def _metric_value(snapshot: UsageSnapshot, metric: str) -> float:
    if metric == "invocations":
        return float(snapshot.invocations or 0)
    if metric == "compute_hours":
        return float(snapshot.compute_hours or 0)
    if metric == "cron_jobs":
        # Plan limit counts configured jobs, not executions.
        return float(snapshot.cron_jobs or 0)
    raise ValueError(f"Unknown usage metric: {metric}")


def compute_trend(values: List[float]) -> UsageTrend:
    """Classify a time-ordered series.

    The change rate is the least-squares slope per sample relative to the
    series mean. Confidence is the share of consecutive deltas that agree with
    the dominant direction, scaled by ``n / (n + 4)`` for n deltas, so longer
    runs in one direction only ever raise it.
    """
    if len(values) < 2:
        return UsageTrend(trend=UsageTrendDirection.STABLE, change_rate=0.0, confidence=0.0, samples=len(values))

    series = np.asarray(values, dtype=float)
    slope = float(np.polyfit(np.arange(series.size, dtype=float), series, 1)[0])
    mean = float(np.mean(np.abs(series)))
    change_rate = (slope / mean * 100.0) if mean > 0 else 0.0

    deltas = np.diff(series)
    scale = max(mean, 1.0)
    tolerance = scale * STABLE_CHANGE_RATE_PERCENT / 100.0 / 10.0
    rising = int(np.sum(deltas > tolerance))
    falling = int(np.sum(deltas < -tolerance))
    flat = int(deltas.size - rising - falling)
    consistency = max(rising, falling, flat) / deltas.size
    confidence = consistency * deltas.size / (deltas.size + CONFIDENCE_SAMPLE_PRIOR)

    if abs(change_rate) < STABLE_CHANGE_RATE_PERCENT:
        direction = UsageTrendDirection.STABLE
    elif change_rate > 0:
        direction = UsageTrendDirection.INCREASING
    else:
        direction = UsageTrendDirection.DECREASING

    return UsageTrend(
        trend=direction,
        change_rate=round(change_rate, 2),
        confidence=round(min(max(confidence, 0.0), 1.0), 4),
        samples=int(series.size),
    )


class UsageMonitor:
    """Owns the UsageSnapshot history."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        alert_manager: AlertManager,
        config: UsageMonitorConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_maker = session_maker
        self.alert_manager = alert_manager
        self.config = config
        self.clock = clock
        self._transport = transport

    async def _fetch_usage_payload(self) -> Dict[str, Any]:
        if not self.config.api_token:
            raise UsageApiError("Usage API token is not configured")
        params = {"projectId": self.config.project_id} if self.config.project_id else {}
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport) as client:
                response = await client.get(
                    f"{self.config.api_base_url.rstrip('/')}/v1/usage",
                    params=params,
                    headers={"Authorization": f"Bearer {self.config.api_token}"},
                )
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UsageApiError(f"Unable to retrieve usage metrics: {exc}") from exc

    async def record_snapshot(
        self,
        invocations: int,
        compute_hours: float,
        cron_runs: int,
        cron_jobs: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> UsageSnapshot:
        snapshot = UsageSnapshot(
            timestamp=timestamp or self.clock(),
            invocations=max(int(invocations), 0),
            compute_hours=max(float(compute_hours), 0.0),
            cron_runs=max(int(cron_runs), 0),
            cron_jobs=max(int(cron_jobs), 0),
        )
        async with self.session_maker() as db:
            db.add(snapshot)
            await db.commit()
        await self._evict()
        return snapshot

    async def _evict(self) -> None:
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        async with self.session_maker() as db:
            await db.execute(delete(UsageSnapshot).where(UsageSnapshot.timestamp < cutoff))
            keep_ids = select(UsageSnapshot.id).order_by(UsageSnapshot.timestamp.desc()).limit(
                self.config.history_limit
            )
            await db.execute(delete(UsageSnapshot).where(UsageSnapshot.id.not_in(keep_ids)))
            await db.commit()

    async def fetch_current_usage(self) -> UsageSnapshot:
        payload = await self._fetch_usage_payload()
        usage = payload.get("usage", payload) or {}
        snapshot = await self.record_snapshot(
            invocations=int(usage.get("invocations") or 0),
            compute_hours=float(usage.get("computeHours") or 0),
            cron_runs=int(usage.get("cronRuns") or 0),
            cron_jobs=int(usage.get("cronJobs") or 0),
        )
        logger.info(
            "Usage snapshot invocations=%s compute_hours=%s cron_runs=%s cron_jobs=%s",
            snapshot.invocations,
            snapshot.compute_hours,
            snapshot.cron_runs,
            snapshot.cron_jobs,
        )
        return snapshot

    async def history(self) -> List[UsageSnapshot]:
        async with self.session_maker() as db:
            result = await db.execute(select(UsageSnapshot).order_by(UsageSnapshot.timestamp.asc()))
            return list(result.scalars().all())

    async def get_usage_trend(self) -> UsageTrend:
        snapshots = await self.history()
        return compute_trend([float(s.invocations or 0) for s in snapshots])

    def usage_percent(self, snapshot: UsageSnapshot, metric: str) -> float:
        return _metric_value(snapshot, metric) / self.config.plan.limit_for(metric) * 100

    async def evaluate_thresholds(self, snapshot: UsageSnapshot) -> List[ThresholdCrossing]:
        crossings: List[ThresholdCrossing] = []
        for threshold in self.config.alert_thresholds:
            if not threshold.enabled:
                continue
            for metric in USAGE_METRICS:
                percent = self.usage_percent(snapshot, metric)
                if percent < threshold.percentage:
                    continue
                key = f"usage:{metric}:{threshold.percentage:g}"
                outcome = await self.alert_manager.dispatch_usage_alert(
                    key,
                    threshold.cooldown_minutes,
                    subject=f"{self.config.plan.name} plan {metric} at {percent:.1f}% (threshold {threshold.percentage:g}%)",
                    payload={
                        "metric": metric,
                        "threshold": threshold.percentage,
                        "usage_percent": round(percent, 2),
                        "value": _metric_value(snapshot, metric),
                        "limit": self.config.plan.limit_for(metric),
                        "timestamp": as_utc(snapshot.timestamp).isoformat(),
                    },
                )
                crossings.append(
                    ThresholdCrossing(
                        metric=metric,
                        percentage=threshold.percentage,
                        usage_percent=round(percent, 2),
                        outcome=outcome,
                    )
                )
        return crossings

    async def predict_monthly_usage(self, snapshot: UsageSnapshot) -> UsagePrediction:
        now = as_utc(self.clock())
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        days_passed = max(now.day, 1)
        predicted_invocations = float(snapshot.invocations or 0) / days_passed * days_in_month
        predicted_compute_hours = float(snapshot.compute_hours or 0) / days_passed * days_in_month

        samples = len(await self.history())
        max_risk = max(
            predicted_invocations / self.config.plan.invocation_limit,
            predicted_compute_hours / self.config.plan.compute_hours_limit,
        )
        if max_risk < 0.7:
            risk_level = "low"
        elif max_risk < 0.8:
            risk_level = "medium"
        elif max_risk < 0.95:
            risk_level = "high"
        else:
            risk_level = "critical"

        return UsagePrediction(
            predicted_invocations=round(predicted_invocations, 1),
            predicted_compute_hours=round(predicted_compute_hours, 2),
            confidence=round(min(samples / PREDICTION_FULL_CONFIDENCE_SAMPLES, 1.0), 4),
            days_remaining=days_in_month - now.day,
            risk_level=risk_level,
            recommendations=self._recommendations(predicted_invocations, predicted_compute_hours, risk_level),
        )

    def _recommendations(self, invocations: float, compute_hours: float, risk_level: str) -> List[Dict[str, str]]:
        plan = self.config.plan
        escalated = "critical" if risk_level == "critical" else "high"
        recommendations: List[Dict[str, str]] = []
        if invocations > plan.invocation_limit * SAFE_USAGE_RATIO:
            recommendations.append({
                "type": "optimize",
                "priority": escalated,
                "message": f"Predicted invocations ({round(invocations)}) exceed the safe target.",
                "action": "Cache responses and cut unnecessary function calls",
            })
        if compute_hours > plan.compute_hours_limit * SAFE_USAGE_RATIO:
            recommendations.append({
                "type": "optimize",
                "priority": escalated,
                "message": f"Predicted compute hours ({compute_hours:.1f}) exceed the safe target.",
                "action": "Reduce function execution time and memory usage",
            })
        if risk_level == "critical":
            recommendations.append({
                "type": "upgrade",
                "priority": "critical",
                "message": f"Consider upgrading from the {plan.name} plan to avoid service interruption.",
                "action": "Evaluate the cost of a higher plan",
            })
        if risk_level in ("high", "critical"):
            recommendations.append({
                "type": "fallback",
                "priority": "high",
                "message": "Prepare an external scheduler fallback for cron-driven jobs.",
                "action": "Test the fallback trigger for /cron/process-queue",
            })
        return recommendations

    async def check_usage(self) -> Dict[str, Any]:
        """Poll, evaluate thresholds and project the month in one pass."""
        snapshot = await self.fetch_current_usage()
        crossings = await self.evaluate_thresholds(snapshot)
        trend = await self.get_usage_trend()
        prediction = await self.predict_monthly_usage(snapshot)
        return {
            "snapshot": {
                "timestamp": as_utc(snapshot.timestamp).isoformat(),
                "invocations": snapshot.invocations,
                "compute_hours": snapshot.compute_hours,
                "cron_runs": snapshot.cron_runs,
                "cron_jobs": snapshot.cron_jobs,
            },
            "crossings": [
                {
                    "metric": c.metric,
                    "threshold": c.percentage,
                    "usage_percent": c.usage_percent,
                    "outcome": c.outcome.value,
                }
                for c in crossings
            ],
            "trend": {
                "trend": trend.trend.value,
                "change_rate": trend.change_rate,
                "confidence": trend.confidence,
                "samples": trend.samples,
            },
            "prediction": {
                "predicted_invocations": prediction.predicted_invocations,
                "predicted_compute_hours": prediction.predicted_compute_hours,
                "confidence": prediction.confidence,
                "days_remaining": prediction.days_remaining,
                "risk_level": prediction.risk_level,
                "recommendations": prediction.recommendations,
            },
        }
