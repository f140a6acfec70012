"""
IIoT Listener — MQTT batch consumer

Host side of the pipeline: subscribes to the device telemetry topic, wraps
each message as a RawEvent and hands the pipeline one batch at a time.

Batch triggers:
  1. Buffer reaches BATCH_SIZE events
  2. Timer hits BATCH_MAX_WAIT seconds
  3. Graceful shutdown

Each batch runs as its own task, so a slow store never stalls the MQTT
client.  Events keep their arrival order inside a batch.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import aiomqtt

from .config import Settings
from .pipeline import TelemetryPipeline
from .readings import RawEvent

logger = logging.getLogger("iiot.consumer")


def to_raw_event(message: aiomqtt.Message, sequence_number: int) -> RawEvent:
    payload = message.payload
    if isinstance(payload, str):
        body = payload.encode()
    elif isinstance(payload, (bytes, bytearray)):
        body = bytes(payload)
    else:
        body = str(payload).encode()
    return RawEvent(
        body=body,
        sequence_number=sequence_number,
        enqueued_time=datetime.now(timezone.utc),
        properties={"topic": str(message.topic)},
    )


class MQTTBatchConsumer:
    """Buffers MQTT messages and dispatches them to the pipeline in batches."""

    def __init__(self, pipeline: TelemetryPipeline, settings: Settings) -> None:
        self.pipeline = pipeline
        self.settings = settings
        self._buffer: list[RawEvent] = []
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._running = False
        self._received = 0
        self._batches = 0

    async def start(self) -> None:
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(
            "Batch consumer started — batch_size=%d, max_wait=%.1fs",
            self.settings.BATCH_SIZE,
            self.settings.BATCH_MAX_WAIT,
        )
        await self._consume()

    async def stop(self) -> None:
        """Dispatch whatever is buffered and wait for in-flight batches."""
        self._running = False
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass

        await self.flush()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(
            "Batch consumer stopped — received %d events in %d batches",
            self._received, self._batches,
        )

    async def _consume(self) -> None:
        """MQTT consumer loop with auto-reconnect."""
        while self._running:
            try:
                async with aiomqtt.Client(
                    hostname=self.settings.MQTT_BROKER,
                    port=self.settings.MQTT_PORT,
                    username=self.settings.MQTT_USERNAME,
                    password=self.settings.MQTT_PASSWORD,
                    identifier=self.settings.MQTT_CLIENT_ID,
                    keepalive=self.settings.MQTT_KEEPALIVE,
                ) as client:
                    await client.subscribe(self.settings.MQTT_TOPIC, qos=self.settings.MQTT_QOS)
                    logger.info(
                        "Connected to MQTT broker %s:%d — subscribed to '%s'",
                        self.settings.MQTT_BROKER,
                        self.settings.MQTT_PORT,
                        self.settings.MQTT_TOPIC,
                    )

                    async for message in client.messages:
                        if not self._running:
                            break
                        await self.enqueue(message)

            except aiomqtt.MqttError as e:
                logger.error("MQTT connection lost: %s — reconnecting in 5s", e)
                await asyncio.sleep(5)
            except Exception:
                logger.exception("Unexpected error in MQTT consumer — reconnecting in 10s")
                await asyncio.sleep(10)

    async def enqueue(self, message: aiomqtt.Message) -> None:
        async with self._lock:
            self._received += 1
            self._buffer.append(to_raw_event(message, self._received))
            full = len(self._buffer) >= self.settings.BATCH_SIZE

        if full:
            await self.flush()

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.BATCH_MAX_WAIT)
            if self._buffer:
                await self.flush()

    async def flush(self) -> Optional[asyncio.Task]:
        """Hand the buffered events to the pipeline as one batch."""
        async with self._lock:
            if not self._buffer:
                return None
            batch = self._buffer[:]
            self._buffer.clear()

        self._batches += 1
        task = asyncio.create_task(self.pipeline.process_batch(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Dispatched batch of %d events", len(batch))
        return task

    @property
    def stats(self) -> dict:
        return {
            "mqtt_received": self._received,
            "batches_dispatched": self._batches,
            "buffered": len(self._buffer),
            "in_flight": len(self._tasks),
        }
