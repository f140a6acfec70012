import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from iiot_listener.config import PipelineConfig
from iiot_listener.dedup import AlarmDeduplicator
from iiot_listener.delta_detector import DeltaDetector
from iiot_listener.device_state import DeviceStateStore
from iiot_listener.pipeline import TelemetryPipeline
from iiot_listener.readings import RawEvent, normalize
from iiot_listener.tolerance import ToleranceProvider


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def payload():
    """esp32_02 reading in the neutral band, with overrides."""
    def _payload(**values) -> dict:
        data = {
            "device": "esp32_02",
            "temperature": 25.0,
            "humidity": 50.0,
            "oilLevel": 30.0,
            "msgCount": 1,
        }
        data.update(values)
        return data
    return _payload


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def detector(config) -> DeltaDetector:
    return DeltaDetector(DeviceStateStore(), ToleranceProvider(config))


@pytest.fixture
def reading():
    """Build a Reading from keyword fields."""
    def _build(**fields):
        return normalize(fields)
    return _build


@pytest.fixture
def make_event():
    def _make(payload, seq: int = 0) -> RawEvent:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return RawEvent(
            body=body,
            sequence_number=seq,
            enqueued_time=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        )
    return _make


@pytest.fixture
def store() -> AsyncMock:
    mock = AsyncMock()
    mock.save_telemetry.return_value = True
    mock.save_alarm.return_value = True
    return mock


@pytest.fixture
def publisher() -> AsyncMock:
    mock = AsyncMock()
    mock.publish_telemetry.return_value = True
    mock.publish_alarm.return_value = True
    return mock


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify.return_value = True
    return mock


@pytest.fixture
def pipeline(config, store, publisher, notifier, clock) -> TelemetryPipeline:
    return TelemetryPipeline(
        config,
        store=store,
        publisher=publisher,
        notifier=notifier,
        dedup=AlarmDeduplicator(config.alarm_min_interval_ms, clock=clock),
    )
