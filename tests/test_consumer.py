"""MQTT batch consumer and metrics endpoint tests (no broker needed)."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from iiot_listener.config import Settings
from iiot_listener.consumer import MQTTBatchConsumer, to_raw_event
from iiot_listener.metrics import render_metrics


def _message(payload, topic="devices/esp32_02/telemetry"):
    return SimpleNamespace(payload=payload, topic=topic)


@pytest.fixture
def fake_pipeline() -> MagicMock:
    pipeline = MagicMock()
    pipeline.process_batch = AsyncMock()
    return pipeline


class TestRawEvents:

    def test_bytes_payload(self):
        event = to_raw_event(_message(b'{"device": "esp32_02"}'), 7)

        assert event.body == b'{"device": "esp32_02"}'
        assert event.sequence_number == 7
        assert event.properties == {"topic": "devices/esp32_02/telemetry"}

    def test_text_payload(self):
        event = to_raw_event(_message('{"device": "esp32_04"}'), 1)
        assert json.loads(event.body) == {"device": "esp32_04"}


class TestBatching:

    @pytest.mark.asyncio
    async def test_full_buffer_dispatches_batch(self, fake_pipeline):
        consumer = MQTTBatchConsumer(fake_pipeline, Settings(BATCH_SIZE=2))

        await consumer.enqueue(_message(b"{}"))
        fake_pipeline.process_batch.assert_not_called()
        await consumer.enqueue(_message(b"{}"))
        await consumer.stop()

        fake_pipeline.process_batch.assert_awaited_once()
        batch = fake_pipeline.process_batch.await_args.args[0]
        assert [e.sequence_number for e in batch] == [1, 2]

    @pytest.mark.asyncio
    async def test_stop_flushes_partial_batch(self, fake_pipeline):
        consumer = MQTTBatchConsumer(fake_pipeline, Settings(BATCH_SIZE=100))

        await consumer.enqueue(_message(b"{}"))
        await consumer.stop()

        assert len(fake_pipeline.process_batch.await_args.args[0]) == 1
        assert consumer.stats["batches_dispatched"] == 1
        assert consumer.stats["buffered"] == 0

    @pytest.mark.asyncio
    async def test_flush_of_empty_buffer_is_a_no_op(self, fake_pipeline):
        consumer = MQTTBatchConsumer(fake_pipeline, Settings())

        assert await consumer.flush() is None
        fake_pipeline.process_batch.assert_not_called()


class TestMetrics:

    def test_render(self):
        body = render_metrics({"received": 12, "alarms_suppressed": 3, "devices_tracked": 2})

        assert "iiot_events_received_total 12\n" in body
        assert "iiot_alarms_suppressed_total 3\n" in body
        assert "iiot_devices_tracked 2\n" in body
        assert "iiot_telemetry_stored_total 0\n" in body
