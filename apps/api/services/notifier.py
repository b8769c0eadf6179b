"""Outbound notification transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Raised when the notification channel could not accept a message."""


@dataclass
class Notification:
    kind: str  # test, audit_alert, usage_alert, weekly_report
    subject: str
    payload: Dict[str, Any] = field(default_factory=dict)
    threshold_key: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_json(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "subject": self.subject,
            "threshold_key": self.threshold_key,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload,
        }


class Notifier:
    """Base transport; subclasses deliver or raise ``DispatchError``."""

    async def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Used when no webhook is configured: the log is the channel."""

    async def send(self, notification: Notification) -> None:
        logger.warning(
            "Notification [%s] %s key=%s payload=%s",
            notification.kind,
            notification.subject,
            notification.threshold_key,
            notification.payload,
        )


class WebhookNotifier(Notifier):
    """POST notifications as JSON to an operator webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        recipient: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.recipient = recipient
        self._transport = transport

    async def send(self, notification: Notification) -> None:
        body = notification.as_json()
        if self.recipient:
            body["recipient"] = self.recipient
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DispatchError(f"Webhook dispatch failed: {exc}") from exc
        logger.info("Notification [%s] delivered to webhook", notification.kind)


def build_notifier(webhook_url: str, *, timeout_seconds: float, recipient: Optional[str] = None) -> Notifier:
    if (webhook_url or "").strip():
        return WebhookNotifier(webhook_url.strip(), timeout_seconds=timeout_seconds, recipient=recipient or None)
    return LogNotifier()
