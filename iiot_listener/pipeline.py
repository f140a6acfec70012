"""
IIoT Listener — Telemetry pipeline (main orchestrator)

One call per transport batch.  Batches may overlap in time; events inside a
batch are handled strictly in order so per-device delta comparisons see
readings in submission order.

Per event:

  raw event ── malformed? ──→ skip (logged)
      │
      ▼
  device registry ── unknown? ──→ skip
      │
      ▼
  tolerance refresh (external, bounded)
      │
      ▼  ── in-memory, synchronous, under the device lock ─────────────
  Delta Detector ── not significant? ──→ stop here
      │
  storage decision → alarm rules → deduplicator
      │  ──────────────────────────────────────────────────────────────
      ▼
  publish telemetry (always) · store telemetry (if decided)
  notify · store alarm (always) · publish alarm (if admitted)

After the batch the Liveness Reconciler drops a breadcrumb alarm for every
registry device that sent nothing.

All shared state is mutated before the first external await of an event, so
a slow or failing store never causes the same change to be detected twice.
Nothing raised by a collaborator escapes process_batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Optional, Protocol, Sequence

from .alarm_rules import AlarmEvent, AlarmRuleEngine
from .config import PipelineConfig
from .decision import EmitDecision, decide
from .dedup import AlarmDeduplicator
from .delta_detector import DeltaDetector, DeltaResult
from .device_state import DeviceStateStore
from .liveness import BatchPresence, LivenessReconciler
from .readings import MalformedEventError, RawEvent, Reading, parse_event
from .tolerance import ToleranceProvider, ToleranceSource

logger = logging.getLogger("iiot.pipeline")


class DurableStore(Protocol):
    async def save_telemetry(self, reading: Reading) -> bool: ...
    async def save_alarm(self, alarm: AlarmEvent) -> bool: ...


class Publisher(Protocol):
    async def publish_telemetry(self, reading: Reading, plant_name: str) -> bool: ...
    async def publish_alarm(self, alarm: AlarmEvent) -> bool: ...


class Notifier(Protocol):
    async def notify(self, alarm: AlarmEvent) -> bool: ...


@dataclass
class BatchReport:
    received: int = 0
    malformed: int = 0
    unknown_device: int = 0
    failed: int = 0
    insignificant: int = 0
    significant: int = 0
    telemetry_published: int = 0
    telemetry_stored: int = 0
    alarms_produced: int = 0
    alarms_published: int = 0
    alarms_suppressed: int = 0
    alarms_stored: int = 0
    notifications: int = 0
    placeholders: int = 0

    def add(self, other: "BatchReport") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class EventOutcome:
    """What the pipeline decided for one event (returned for inspection)."""
    reading: Reading
    delta: DeltaResult
    decision: EmitDecision
    alarms: list[AlarmEvent] = field(default_factory=list)
    admitted: list[bool] = field(default_factory=list)


class TelemetryPipeline:
    """Stateful decision pipeline; one instance owns all in-memory state."""

    def __init__(
        self,
        config: PipelineConfig,
        store: DurableStore,
        publisher: Publisher,
        notifier: Optional[Notifier] = None,
        tolerance_source: Optional[ToleranceSource] = None,
        dedup: Optional[AlarmDeduplicator] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.publisher = publisher
        self.notifier = notifier

        self.state = DeviceStateStore()
        self.tolerances = ToleranceProvider(config, tolerance_source)
        self.detector = DeltaDetector(self.state, self.tolerances)
        self.rules = AlarmRuleEngine(config)
        self.dedup = dedup or AlarmDeduplicator(config.alarm_min_interval_ms)
        self.liveness = LivenessReconciler(config, self.rules)

        self.totals = BatchReport()
        self._batches = 0

    # ── Batch ────────────────────────────────────────────────────────────

    async def process_batch(self, events: Sequence[RawEvent]) -> BatchReport:
        report = BatchReport(received=len(events))
        if not events:
            logger.warning("No events received in this batch")
            return report

        logger.info("Received %d events", len(events))
        presence = self.liveness.start_batch()

        for event in events:
            try:
                await self.process_event(event, presence, report)
            except Exception:
                report.failed += 1
                logger.exception("Exception processing event seq=%s", event.sequence_number)

        try:
            await self._reconcile(presence, report)
        except Exception:
            logger.exception("Liveness reconciliation failed")

        self._batches += 1
        self.totals.add(report)
        logger.info(
            "Batch done: received=%d significant=%d stored=%d alarms=%d (published %d, suppressed %d) placeholders=%d",
            report.received, report.significant, report.telemetry_stored,
            report.alarms_produced, report.alarms_published,
            report.alarms_suppressed, report.placeholders,
        )
        return report

    # ── Event ────────────────────────────────────────────────────────────

    async def process_event(
        self,
        event: RawEvent,
        presence: Optional[BatchPresence] = None,
        report: Optional[BatchReport] = None,
    ) -> Optional[EventOutcome]:
        report = report if report is not None else BatchReport()

        try:
            reading = parse_event(event)
        except MalformedEventError as e:
            report.malformed += 1
            logger.warning("Skipping malformed event seq=%s: %s", event.sequence_number, e)
            return None

        device_key = self.config.resolve_device(reading.device_name, reading.origin)
        if device_key is None:
            report.unknown_device += 1
            logger.warning("Unknown device: %s — skipping", reading.device_name)
            return None
        if presence is not None:
            presence.mark_seen(device_key)
        device = self.config.devices[device_key]

        thresholds = await self.tolerances.refresh(reading.device_id)

        # ── In-memory decisions: no awaits from here until effects ──────
        delta = self.detector.evaluate(reading.device_id, reading, thresholds)
        if not delta.significant:
            report.insignificant += 1
            logger.info("No significant changes for %s — skipping", reading.device_id)
            return EventOutcome(
                reading=reading,
                delta=delta,
                decision=EmitDecision(publish=False, store=False),
            )

        report.significant += 1
        decision = decide(delta, self.detector.has_stored(reading.device_id))
        if decision.store:
            self.detector.record_stored(reading.device_id, reading)

        alarms = self.rules.evaluate(reading, delta, device)
        admitted = [self.dedup.admit(alarm.key) for alarm in alarms]

        logger.info(
            "Processing %s: changed=%s store=%s alarms=%s",
            reading.device_id, sorted(delta.changed_params), decision.store,
            [a.alarm_code for a in alarms],
        )

        # ── External effects ────────────────────────────────────────────
        if await self._call(
            self.publisher.publish_telemetry(reading, device.plant_name),
            "publish telemetry",
        ):
            report.telemetry_published += 1

        if decision.store:
            if await self._call(self.store.save_telemetry(reading), "store telemetry"):
                report.telemetry_stored += 1
        else:
            logger.debug("Skipped telemetry storage for %s — no relevant change", reading.device_id)

        for alarm, ok in zip(alarms, admitted):
            await self._emit_alarm(alarm, ok, report)

        return EventOutcome(
            reading=reading,
            delta=delta,
            decision=decision,
            alarms=alarms,
            admitted=admitted,
        )

    # ── Alarms ───────────────────────────────────────────────────────────

    async def _emit_alarm(self, alarm: AlarmEvent, admitted: bool, report: BatchReport) -> None:
        report.alarms_produced += 1

        if alarm.notify and self.notifier is not None:
            if await self._call(self.notifier.notify(alarm), "notify"):
                report.notifications += 1

        if await self._call(self.store.save_alarm(alarm), "store alarm"):
            report.alarms_stored += 1

        if not admitted:
            report.alarms_suppressed += 1
            logger.info(
                "Alarm %s for %s suppressed from publish (repeated within %dms)",
                alarm.alarm_code, alarm.device_id, self.config.alarm_min_interval_ms,
            )
            return

        if await self._call(self.publisher.publish_alarm(alarm), "publish alarm"):
            report.alarms_published += 1

    async def _reconcile(self, presence: BatchPresence, report: BatchReport) -> None:
        for alarm in self.liveness.reconcile(presence):
            report.placeholders += 1
            await self._emit_alarm(alarm, self.dedup.admit(alarm.key), report)

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _call(self, aw: Awaitable[Any], what: str) -> bool:
        """Await an external call with a bounded timeout; never raises."""
        try:
            result = await asyncio.wait_for(aw, timeout=self.config.external_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs", what, self.config.external_timeout)
            return False
        except Exception:
            logger.exception("%s failed", what)
            return False
        return result is not False

    @property
    def stats(self) -> dict:
        return {
            "batches": self._batches,
            "devices_tracked": len(self.state),
            **self.totals.as_dict(),
            "dedup": self.dedup.stats,
            "tolerance": self.tolerances.stats,
        }
