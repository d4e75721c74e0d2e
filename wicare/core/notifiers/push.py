"""
Push notification notifier for WiCare.

Supports Pushover and Ntfy for reaching a caregiver's or emergency
contact's phone when a fall alert is escalated.
"""

from __future__ import annotations

import logging
import time

import httpx

from wicare.core.config import PushNotifierConfig
from wicare.core.events import AlertEvent, AlertSeverity
from wicare.core.notifiers.base import BaseNotifier

logger = logging.getLogger(__name__)

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"

# -2: lowest, -1: low, 0: normal, 1: high, 2: emergency
PUSHOVER_PRIORITY = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
}

# 1: min, 2: low, 3: default, 4: high, 5: urgent
NTFY_PRIORITY = {
    AlertSeverity.LOW: 3,
    AlertSeverity.MEDIUM: 4,
    AlertSeverity.HIGH: 5,
}


def format_alert_message(alert: AlertEvent, emergency_number: str | None = None) -> str:
    """Plain-text body describing an escalated alert."""
    when = time.strftime("%H:%M:%S", time.localtime(alert.timestamp))
    parts = [f"{alert.headline} at {when}"]
    if alert.location:
        parts.append(f"Location: {alert.location}")
    parts.append("The caregiver confirmed this fall and requested help.")
    if emergency_number:
        parts.append(f"Emergency number: {emergency_number}")
    return "\n".join(parts)


class PushNotifier(BaseNotifier):
    """
    Push notification notifier supporting Pushover and Ntfy.
    """

    def __init__(
        self,
        config: PushNotifierConfig,
        emergency_number: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._emergency_number = emergency_number
        self._client = client

    @property
    def name(self) -> str:
        return "push"

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def start(self) -> None:
        """Initialize HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        logger.info(f"Push notifier started with provider: {self._config.provider}")

    async def stop(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Push notifier stopped")

    async def notify(self, alert: AlertEvent) -> bool:
        if not self._config.enabled:
            return False

        title = f"WiCare: {alert.headline}"
        message = format_alert_message(alert, self._emergency_number)

        if self._config.provider == "pushover":
            return await self._send_pushover(title, message, alert.severity)
        return await self._send_ntfy(title, message, alert.severity)

    async def test(self) -> bool:
        title = "WiCare: test notification"
        message = "This is a test notification from WiCare"

        if self._config.provider == "pushover":
            return await self._send_pushover(title, message, AlertSeverity.LOW)
        return await self._send_ntfy(title, message, AlertSeverity.LOW)

    async def _send_pushover(self, title: str, message: str, severity: AlertSeverity) -> bool:
        """Send notification via Pushover API."""
        if not self._client:
            logger.error("HTTP client not initialized")
            return False

        if not self._config.pushover_user_key or not self._config.pushover_api_token:
            logger.error("Pushover credentials not configured")
            return False

        priority = PUSHOVER_PRIORITY[severity]
        payload = {
            "token": self._config.pushover_api_token,
            "user": self._config.pushover_user_key,
            "message": message,
            "title": title,
            "priority": priority,
            "sound": "siren" if severity is AlertSeverity.HIGH else "pushover",
        }

        # Emergency priority requires retry/expire params
        if priority == 2:
            payload["retry"] = 60
            payload["expire"] = 3600

        try:
            response = await self._client.post(PUSHOVER_URL, data=payload)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Pushover notification: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"Pushover notification sent: {title}")
            return True

        logger.error(f"Pushover API error: {response.status_code} - {response.text}")
        return False

    async def _send_ntfy(self, title: str, message: str, severity: AlertSeverity) -> bool:
        """Send notification via Ntfy."""
        if not self._client:
            logger.error("HTTP client not initialized")
            return False

        if not self._config.ntfy_topic:
            logger.error("Ntfy topic not configured")
            return False

        server = self._config.ntfy_server.rstrip("/")
        url = f"{server}/{self._config.ntfy_topic}"

        headers = {
            "Title": title,
            "Priority": str(NTFY_PRIORITY[severity]),
            "Tags": "rotating_light" if severity is AlertSeverity.HIGH else "warning",
        }

        try:
            response = await self._client.post(url, content=message, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Ntfy notification: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"Ntfy notification sent: {title}")
            return True

        logger.error(f"Ntfy API error: {response.status_code} - {response.text}")
        return False
