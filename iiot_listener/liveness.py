"""
IIoT Listener — Liveness Reconciler

After each batch, every registry device that did not report gets a single
placeholder alarm so the dashboard alarm history never looks empty just
because no data arrived.  Only an alarm-style breadcrumb is produced; no
placeholder telemetry is ever written.
"""

import logging
from datetime import datetime, timezone

from .alarm_rules import AlarmEvent, AlarmRuleEngine, SOURCE_PLACEHOLDER
from .config import OIL_LEVEL, PipelineConfig
from .readings import normalize

logger = logging.getLogger("iiot.liveness")


class BatchPresence:
    """seen / not seen for every registry device, for one batch."""

    def __init__(self, device_keys) -> None:
        self._seen: dict[str, bool] = {key: False for key in device_keys}

    def mark_seen(self, device_key: str) -> None:
        if device_key in self._seen:
            self._seen[device_key] = True

    def is_seen(self, device_key: str) -> bool:
        return self._seen.get(device_key, False)

    @property
    def missing(self) -> list[str]:
        return [key for key, seen in self._seen.items() if not seen]

    @property
    def any_seen(self) -> bool:
        return any(self._seen.values())


class LivenessReconciler:
    def __init__(self, config: PipelineConfig, rules: AlarmRuleEngine) -> None:
        self.config = config
        self.rules = rules

    def start_batch(self) -> BatchPresence:
        return BatchPresence(self.config.devices.keys())

    def reconcile(self, presence: BatchPresence) -> list[AlarmEvent]:
        """One breadcrumb per missing device, from its placeholder oil level."""
        breadcrumbs = []
        for device_key in presence.missing:
            device = self.config.devices[device_key]
            placeholder = {
                "device": device_key,
                "deviceId": device_key,
                **device.placeholder,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            reading = normalize(placeholder)
            oil_level = reading.values.get(OIL_LEVEL)
            if oil_level is None:
                continue

            alarm = self.rules.evaluate_band(
                OIL_LEVEL, oil_level, reading, device, source=SOURCE_PLACEHOLDER,
            )
            if alarm is None:
                logger.debug("Placeholder oil level for %s is in-band — no breadcrumb", device_key)
                continue

            logger.info(
                "Creating placeholder alarm for %s (%s) — no data in this batch",
                device_key, device.plant_name,
            )
            breadcrumbs.append(alarm)
        return breadcrumbs
