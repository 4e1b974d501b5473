"""
Delivery of administrative notices such as license expiry warnings.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class Notifier:
    async def notify(self, subject: str, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    async def notify(self, subject, message, payload=None):
        logger.warning("%s: %s", subject, message)


class WebhookNotifier(Notifier):
    """POSTs notices as JSON. Delivery failures are logged, never raised."""

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def notify(self, subject, message, payload=None):
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.url,
                    json={"subject": subject, "message": message, "payload": payload or {}},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to deliver notice %r to %s: %s", subject, self.url, e)


def build_notifier(settings) -> Notifier:
    if settings.ADMIN_NOTIFY_URL:
        return WebhookNotifier(settings.ADMIN_NOTIFY_URL, timeout=settings.LICENSE_API_TIMEOUT)
    return LogNotifier()
