"""
IIoT Listener — Configuration

Environment-driven settings (pydantic-settings) plus the lookup tables the
pipeline is constructed with.  The tables are plain data so tests can swap in
their own fixtures.
"""

from dataclasses import dataclass, field
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All config sourced from environment / .env file."""

    # ── MQTT (batch transport) ───────────────────────────────────────────
    MQTT_BROKER: str = "mosquitto"
    MQTT_PORT: int = 1883
    MQTT_USERNAME: Optional[str] = None
    MQTT_PASSWORD: Optional[str] = None
    MQTT_CLIENT_ID: str = "iiot-listener-01"
    MQTT_TOPIC: str = "devices/+/telemetry"
    MQTT_QOS: int = 1
    MQTT_KEEPALIVE: int = 60

    # ── Batching ─────────────────────────────────────────────────────────
    BATCH_SIZE: int = 100           # hand a batch to the pipeline after N events
    BATCH_MAX_WAIT: float = 1.0     # ...or after N seconds, whichever first

    # ── Durable store ────────────────────────────────────────────────────
    DB_HOST: str = "postgres"
    DB_PORT: int = 5432
    DB_NAME: str = "oxygen_monitor"
    DB_USER: str = "iiot_listener"
    DB_PASSWORD: str = "changeme"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    # ── Redis (real-time pub/sub) ────────────────────────────────────────
    REDIS_URL: str = "redis://redis:6379/0"
    TELEMETRY_CHANNEL: str = "telemetry"
    ALARM_CHANNEL: str = "alarms"

    # ── Pipeline tuning ──────────────────────────────────────────────────
    EXTERNAL_TIMEOUT: float = 5.0       # seconds, every store/publish/lookup call
    ALARM_MIN_INTERVAL_MS: int = 1000   # dedup window per (device, alarm code)

    # ── Outbound notification (Postmark) ─────────────────────────────────
    POSTMARK_URL: str = "https://api.postmarkapp.com/email"
    POSTMARK_API_KEY: Optional[str] = None
    ALERT_RECIPIENT_EMAIL: Optional[str] = None
    ALERT_SENDER_EMAIL: Optional[str] = None

    # ── Observability ────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    METRICS_PORT: int = 9090

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


# ── Tracked parameters ───────────────────────────────────────────────────
TEMPERATURE = "temperature"
HUMIDITY = "humidity"
OIL_LEVEL = "oilLevel"

TRACKED_PARAMETERS = (TEMPERATURE, HUMIDITY, OIL_LEVEL)

ALERTS_KEY = "alerts"
ALERT_CODE_KEY = "alert_code"


@dataclass(frozen=True)
class DeviceInfo:
    """Registry row for a known device."""
    numeric_id: int
    plant_name: str
    # Neutral values used when a liveness breadcrumb has to be synthesized
    placeholder: dict[str, float] = field(default_factory=lambda: {
        TEMPERATURE: 25.0,
        HUMIDITY: 50.0,
        OIL_LEVEL: 30.0,
    })


def _default_devices() -> dict[str, DeviceInfo]:
    return {
        "esp32_02": DeviceInfo(numeric_id=1, plant_name="Plant C"),
        "esp32_04": DeviceInfo(
            numeric_id=2,
            plant_name="Plant D",
            placeholder={TEMPERATURE: 24.0, HUMIDITY: 48.0, OIL_LEVEL: 25.0},
        ),
    }


@dataclass
class PipelineConfig:
    """Lookup tables and tuning parameters for the decision pipeline."""

    # device name → registry row
    devices: dict[str, DeviceInfo] = field(default_factory=_default_devices)

    # Minimum absolute delta between consecutive readings
    default_tolerances: dict[str, float] = field(default_factory=lambda: {
        TEMPERATURE: 0.5,
        HUMIDITY: 2.0,
        OIL_LEVEL: 1.0,
    })
    fallback_tolerance: float = 1.0

    # Explicit alert codes must carry this prefix to become alarms
    alarm_code_prefix: str = "IO_ALR_"
    refill_alarm_code: str = "IO_ALR_109"

    # alarm code → numeric alarm id in the durable store
    alarm_ids: dict[str, int] = field(default_factory=lambda: {
        "IO_ALR_100": 14,   # temperature
        "IO_ALR_101": 14,
        "IO_ALR_103": 14,   # humidity
        "IO_ALR_104": 14,
        "IO_ALR_105": 15,   # oil level
        "IO_ALR_106": 15,
        "IO_ALR_107": 15,
        "IO_ALR_108": 15,
        "IO_ALR_109": 15,
    })
    default_alarm_id: int = 14

    telemetry_key_ids: dict[str, int] = field(default_factory=lambda: {
        TEMPERATURE: 1,
        HUMIDITY: 2,
        OIL_LEVEL: 3,
        "alert": 4,
    })

    # alarm code → alarm root-cause id
    root_cause_ids: dict[str, int] = field(default_factory=lambda: {
        "IO_ALR_100": 1,
        "IO_ALR_101": 2,
        "IO_ALR_103": 3,
        "IO_ALR_104": 4,
        "IO_ALR_106": 5,
        "IO_ALR_107": 6,
        "IO_ALR_108": 7,
    })

    unknown_plant: str = "Unknown Plant"

    alarm_min_interval_ms: int = 1000
    external_timeout: float = 5.0

    @classmethod
    def from_settings(cls, s: Settings) -> "PipelineConfig":
        return cls(
            alarm_min_interval_ms=s.ALARM_MIN_INTERVAL_MS,
            external_timeout=s.EXTERNAL_TIMEOUT,
        )

    def resolve_device(self, device_name: str, origin: str = "") -> Optional[str]:
        """
        Map a reported device name (or origin) to a registry key.

        Exact match wins; otherwise the first registry key contained in the
        device name, then in the origin.  Returns None for unknown devices.
        """
        if device_name in self.devices:
            return device_name
        for key in self.devices:
            if key in device_name:
                return key
        if origin:
            for key in self.devices:
                if key in origin:
                    return key
        return None

    def plant_for(self, device_name: str) -> str:
        key = self.resolve_device(device_name)
        if key is None:
            return self.unknown_plant
        return self.devices[key].plant_name

    def alarm_id_for(self, alarm_code: str) -> int:
        return self.alarm_ids.get(alarm_code, self.default_alarm_id)
