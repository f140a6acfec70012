"""
IIoT Listener — Durable store

All database operations for the listener:
  - telemetry documents (only when the storage decision says so)
  - alarm documents (always), with the full device JSON for audit
  - per-device tolerance overrides

Writes are fire-and-forget from the pipeline's point of view: errors are
logged and reported as False, never raised.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import text

from .alarm_rules import AlarmEvent
from .config import HUMIDITY, OIL_LEVEL, PipelineConfig, TEMPERATURE
from .readings import Reading

logger = logging.getLogger("iiot.db")


def month_category(ts: datetime) -> str:
    return ts.strftime("%Y-%m")


@dataclass(slots=True)
class TelemetryRecord:
    device_name: str
    temperature: Optional[float]
    humidity: Optional[float]
    oil_level: Optional[float]
    timestamp: datetime
    raw_data: str
    category: str
    open_alerts: int

    @classmethod
    def from_reading(cls, reading: Reading, now: Optional[datetime] = None) -> "TelemetryRecord":
        now = now or datetime.now(timezone.utc)
        return cls(
            device_name=reading.device_name,
            temperature=reading.values.get(TEMPERATURE),
            humidity=reading.values.get(HUMIDITY),
            oil_level=reading.values.get(OIL_LEVEL),
            timestamp=now,
            raw_data=reading.raw_json(),
            category=month_category(now),
            open_alerts=reading.open_alerts,
        )

    def to_params(self) -> dict[str, Any]:
        return {
            "device_name": self.device_name,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "oil_level": self.oil_level,
            "timestamp": self.timestamp,
            "raw_data": self.raw_data,
            "category": self.category,
            "open_alerts": self.open_alerts,
        }


@dataclass(slots=True)
class AlarmRecord:
    alarm_id: int
    device_id: int
    alarm_code: str
    alarm_description: str
    alarm_value: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    telemetry_key_id: Optional[int]
    alarm_root_cause_id: Optional[int]
    device_name: str
    plant_name: str
    device_data: str

    @classmethod
    def from_alarm(cls, alarm: AlarmEvent, config: PipelineConfig) -> "AlarmRecord":
        return cls(
            alarm_id=config.alarm_id_for(alarm.alarm_code),
            device_id=alarm.device_number,
            alarm_code=alarm.alarm_code,
            alarm_description=alarm.description,
            alarm_value=alarm.value or "0",
            is_active=alarm.is_active,
            created_at=alarm.created_at,
            updated_at=alarm.created_at,
            telemetry_key_id=alarm.telemetry_key_id,
            alarm_root_cause_id=alarm.root_cause_id,
            device_name=alarm.device_name,
            plant_name=alarm.plant_name,
            device_data=json.dumps(alarm.device_fields, default=str),
        )

    def to_params(self) -> dict[str, Any]:
        return {
            "alarm_id": self.alarm_id,
            "device_id": self.device_id,
            "alarm_code": self.alarm_code,
            "alarm_description": self.alarm_description,
            "alarm_value": self.alarm_value,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "telemetry_key_id": self.telemetry_key_id,
            "alarm_root_cause_id": self.alarm_root_cause_id,
            "device_name": self.device_name,
            "plant_name": self.plant_name,
            "device_data": self.device_data,
        }


class TelemetryStore:
    """Async database operations backed by an AsyncSession factory."""

    def __init__(self, session_factory, config: PipelineConfig) -> None:
        self._session_factory = session_factory
        self.config = config
        self._telemetry_written = 0
        self._alarms_written = 0
        self._write_errors = 0

    # ── Tolerances ───────────────────────────────────────────────────────

    async def get_tolerance(self, device_id: str, parameter: str) -> Optional[float]:
        """Override for (device, parameter), or None.  Errors propagate."""
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT tolerance
                    FROM   tolerances
                    WHERE  device_id = :device_id
                      AND  type = :parameter
                    LIMIT 1
                """),
                {"device_id": device_id, "parameter": parameter},
            )
            row = result.fetchone()
        if row is None:
            return None
        return row[0]

    # ── Write ────────────────────────────────────────────────────────────

    async def save_telemetry(self, reading: Reading) -> bool:
        record = TelemetryRecord.from_reading(reading)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO telemetry
                            (device_name, temperature, humidity, oil_level,
                             timestamp, raw_data, category, open_alerts)
                        VALUES
                            (:device_name, :temperature, :humidity, :oil_level,
                             :timestamp, :raw_data, :category, :open_alerts)
                    """),
                    record.to_params(),
                )
                await session.commit()
            self._telemetry_written += 1
            logger.debug("Stored telemetry for %s", record.device_name)
            return True
        except Exception:
            self._write_errors += 1
            logger.exception("Failed to store telemetry for %s", record.device_name)
            return False

    async def save_alarm(self, alarm: AlarmEvent) -> bool:
        record = AlarmRecord.from_alarm(alarm, self.config)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO alarms
                            (alarm_id, device_id, alarm_code, alarm_description,
                             alarm_value, is_active, is_read, created_by, updated_by,
                             created_timestamp, updated_timestamp,
                             telemetry_key_id, alarm_root_cause_id,
                             device_name, plant_name, device_data)
                        VALUES
                            (:alarm_id, :device_id, :alarm_code, :alarm_description,
                             :alarm_value, :is_active, FALSE, 1, 1,
                             :created_at, :updated_at,
                             :telemetry_key_id, :alarm_root_cause_id,
                             :device_name, :plant_name, :device_data)
                    """),
                    record.to_params(),
                )
                await session.commit()
            self._alarms_written += 1
            logger.info("Stored alarm %s for %s", record.alarm_code, record.device_name)
            return True
        except Exception:
            self._write_errors += 1
            logger.exception(
                "Failed to store alarm %s for %s", record.alarm_code, record.device_name
            )
            return False

    @property
    def stats(self) -> dict:
        return {
            "telemetry_written": self._telemetry_written,
            "alarms_written": self._alarms_written,
            "write_errors": self._write_errors,
        }
