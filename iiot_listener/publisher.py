"""
IIoT Listener — Real-time publisher

Pushes telemetry and alarms to Redis pub/sub for the live dashboard.

Channels:
  telemetry   normalized reading fields + plantName
  alarms      dashboard alarm object (see alarm_message)
"""

import json
import logging
import uuid
from typing import Optional

import redis.asyncio as aioredis

from .alarm_rules import AlarmEvent
from .config import PipelineConfig
from .readings import Reading

logger = logging.getLogger("iiot.publisher")


def telemetry_message(reading: Reading, plant_name: str) -> dict:
    message = dict(reading.fields)
    message["plantName"] = plant_name
    return message


def alarm_message(alarm: AlarmEvent) -> dict:
    return {
        "id": str(uuid.uuid4()),
        "deviceId": str(alarm.device_number),
        "deviceName": alarm.device_name,
        "alarmCode": alarm.alarm_code,
        "alarmDescription": alarm.description,
        "alarmValue": alarm.value,
        "plantName": alarm.plant_name,
        "createdTimestamp": alarm.created_at.isoformat(),
        "isActive": True,
        "telemetryKeyId": alarm.telemetry_key_id,
        "alarmRootCauseId": alarm.root_cause_id,
    }


class RedisPublisher:
    """Publishes telemetry and alarm payloads on fixed channels."""

    def __init__(
        self,
        config: PipelineConfig,
        redis_url: str,
        telemetry_channel: str = "telemetry",
        alarm_channel: str = "alarms",
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.config = config
        self._redis_url = redis_url
        self._redis = client
        self.telemetry_channel = telemetry_channel
        self.alarm_channel = alarm_channel
        self._published_telemetry = 0
        self._published_alarms = 0
        self._errors = 0

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
        logger.info("Publisher connected to Redis pub/sub")

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    async def publish_telemetry(self, reading: Reading, plant_name: str) -> bool:
        msg = json.dumps(telemetry_message(reading, plant_name), default=str)
        try:
            await self._redis.publish(self.telemetry_channel, msg)
            self._published_telemetry += 1
            logger.debug("Published telemetry for %s", reading.device_name)
            return True
        except Exception:
            self._errors += 1
            logger.exception("Failed to publish telemetry for %s", reading.device_name)
            return False

    async def publish_alarm(self, alarm: AlarmEvent) -> bool:
        msg = json.dumps(alarm_message(alarm))
        try:
            await self._redis.publish(self.alarm_channel, msg)
            self._published_alarms += 1
            logger.info(
                "ALARM %s: device=%s value=%s plant=%s",
                alarm.alarm_code, alarm.device_name, alarm.value, alarm.plant_name,
            )
            return True
        except Exception:
            self._errors += 1
            logger.exception("Failed to publish alarm %s for %s", alarm.alarm_code, alarm.device_name)
            return False

    @property
    def stats(self) -> dict:
        return {
            "telemetry_published": self._published_telemetry,
            "alarms_published": self._published_alarms,
            "publish_errors": self._errors,
        }
