"""
IIoT Listener — Service entry point

    python -m iiot_listener

Wires the durable store, the real-time publisher, the e-mail notifier and the
decision pipeline together, then runs the MQTT batch consumer until SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import PipelineConfig, settings
from .consumer import MQTTBatchConsumer
from .metrics import start_metrics_server, update_metrics
from .notifier import EmailNotifier
from .persistence import TelemetryStore
from .pipeline import TelemetryPipeline
from .publisher import RedisPublisher

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger("iiot.listener")


class ListenerService:
    """Owns every long-lived resource of the listener process."""

    def __init__(self) -> None:
        self.config = PipelineConfig.from_settings(settings)
        self._engine: Optional[AsyncEngine] = None
        self._metrics_runner: Optional[web.AppRunner] = None
        self._metrics_task: Optional[asyncio.Task] = None
        self._running = False

        self.store: Optional[TelemetryStore] = None
        self.publisher = RedisPublisher(
            self.config,
            settings.REDIS_URL,
            telemetry_channel=settings.TELEMETRY_CHANNEL,
            alarm_channel=settings.ALARM_CHANNEL,
        )
        self.notifier = EmailNotifier(
            api_url=settings.POSTMARK_URL,
            api_key=settings.POSTMARK_API_KEY,
            recipient=settings.ALERT_RECIPIENT_EMAIL,
            sender=settings.ALERT_SENDER_EMAIL,
            timeout=settings.EXTERNAL_TIMEOUT,
        )
        self.pipeline: Optional[TelemetryPipeline] = None
        self.consumer: Optional[MQTTBatchConsumer] = None

    async def start(self) -> None:
        logger.info("=" * 60)
        logger.info("IIoT Listener starting")
        logger.info("=" * 60)

        self._engine = create_async_engine(
            settings.database_url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
        session_factory = sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self.store = TelemetryStore(session_factory, self.config)

        await self.publisher.connect()

        self.pipeline = TelemetryPipeline(
            self.config,
            store=self.store,
            publisher=self.publisher,
            notifier=self.notifier,
            tolerance_source=self.store,
        )
        self.consumer = MQTTBatchConsumer(self.pipeline, settings)
        logger.info(
            "Ready — %d devices in registry: %s",
            len(self.config.devices), ", ".join(self.config.devices),
        )

        self._metrics_runner = await start_metrics_server(settings.METRICS_PORT)

        self._running = True
        self._metrics_task = asyncio.create_task(self._report_metrics())
        await self.consumer.start()

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down...")
        self._running = False
        if self._metrics_task:
            self._metrics_task.cancel()
        if self.consumer:
            await self.consumer.stop()
        await self.publisher.close()
        await self.notifier.close()
        if self._metrics_runner:
            await self._metrics_runner.cleanup()
        if self._engine:
            await self._engine.dispose()
        logger.info("Shutdown complete")

    async def _report_metrics(self) -> None:
        """Push pipeline stats to the metrics endpoint every 5 seconds."""
        while self._running:
            stats = dict(self.pipeline.stats)
            tolerance = stats.pop("tolerance")
            stats.pop("dedup")
            update_metrics({
                **stats,
                "tolerance_lookup_failures": tolerance["lookup_failures"],
                **self.consumer.stats,
            })
            await asyncio.sleep(5)


async def main() -> None:
    service = ListenerService()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

    try:
        await service.start()
    except asyncio.CancelledError:
        await service.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
