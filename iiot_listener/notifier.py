"""
IIoT Listener — Alarm e-mail notification

Sends one e-mail per notifying alarm through the Postmark HTTP API.
Missing credentials are logged and the alarm is otherwise processed as
usual; a failed send is never retried inside the batch.
"""

import json
import logging
from typing import Optional

import httpx

from .alarm_rules import AlarmEvent

logger = logging.getLogger("iiot.notifier")


class EmailNotifier:
    """Postmark client for alarm e-mails."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        recipient: Optional[str],
        sender: Optional[str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.recipient = recipient
        self.sender = sender
        self._timeout = timeout
        self._client = client
        self._sent = 0
        self._failed = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def build_email(self, alarm: AlarmEvent) -> dict:
        return {
            "From": self.sender,
            "To": self.recipient,
            "Subject": f"[{alarm.plant_name}] {alarm.alarm_code}: {alarm.description}",
            "TextBody": (
                f"Device: {alarm.device_name}\n"
                f"Plant: {alarm.plant_name}\n"
                f"Alarm: {alarm.alarm_code} - {alarm.description}\n"
                f"Value: {alarm.value}\n"
                f"Time: {alarm.created_at.isoformat()}\n\n"
                f"{json.dumps(alarm.device_fields, default=str)}"
            ),
            "MessageStream": "outbound",
        }

    async def notify(self, alarm: AlarmEvent) -> bool:
        if not self.api_key:
            logger.error("Postmark API key is missing — cannot send alert email")
            return False
        if not self.recipient or not self.sender:
            logger.error("Alert sender/recipient email is missing — cannot send alert email")
            return False

        client = await self._get_client()
        try:
            resp = await client.post(
                self.api_url,
                json=self.build_email(alarm),
                headers={
                    "Accept": "application/json",
                    "X-Postmark-Server-Token": self.api_key,
                },
            )
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            self._failed += 1
            logger.warning("Alert email for %s not sent: %s", alarm.alarm_code, e)
            return False

        if resp.status_code != 200:
            self._failed += 1
            logger.warning(
                "Postmark rejected alert email for %s: %d %s",
                alarm.alarm_code, resp.status_code, resp.text,
            )
            return False

        self._sent += 1
        logger.info(
            "Alert email sent for %s (%s) to %s",
            alarm.device_name, alarm.plant_name, self.recipient,
        )
        return True

    @property
    def stats(self) -> dict:
        return {"sent": self._sent, "failed": self._failed}
