"""
IIoT Listener — Delta Detector

Decides whether a reading differs enough from the previous one to be worth
any downstream work.  This is the volume-reduction gate: an event that is
not significant is dropped before alarms, storage and publish.

Per tracked parameter (temperature, humidity, oilLevel):
  1. absent → skip; exactly 0 on the startup message (msgCount 0) → skip,
     except oilLevel (power-on defaults are not real data)
  2. no prior value → significant + relevant
  3. |new - old| > tolerance → significant + relevant
     oilLevel == 0 → always significant (empty tank)
     last_seen is overwritten either way
  4. alerts / alert_code present → significant, but NOT relevant

The first sighting of a device is always significant and relevant.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import ALERT_CODE_KEY, ALERTS_KEY, OIL_LEVEL, TRACKED_PARAMETERS
from .device_state import DeviceStateStore
from .readings import Reading
from .tolerance import ToleranceProvider

logger = logging.getLogger("iiot.delta")


@dataclass(frozen=True)
class DeltaResult:
    device_id: str
    significant: bool
    relevant_changed: bool
    changed_params: frozenset[str]
    first_sighting: bool = False
    # Value of each parameter before this event (None = never seen)
    previous: dict[str, Optional[float]] = field(default_factory=dict)
    thresholds: dict[str, float] = field(default_factory=dict)


class DeltaDetector:
    """Significance decisions backed by a DeviceStateStore."""

    def __init__(self, store: DeviceStateStore, tolerances: ToleranceProvider) -> None:
        self.store = store
        self.tolerances = tolerances

    def evaluate(
        self,
        device_id: str,
        reading: Reading,
        thresholds: Optional[dict[str, float]] = None,
    ) -> DeltaResult:
        """
        Compare a reading against the device's last observations and update
        them.  Read, decide and write happen under the device lock.
        """
        if thresholds is None:
            thresholds = self.tolerances.snapshot(device_id)

        with self.store.locked(device_id) as (state, created):
            state.changed_this_event.clear()
            significant = created
            relevant = created
            previous: dict[str, Optional[float]] = {}

            if created:
                logger.info("First time seeing device %s", device_id)

            for parameter in TRACKED_PARAMETERS:
                if parameter not in reading.values:
                    continue
                new = reading.values[parameter]

                if new == 0 and reading.is_startup_message and parameter != OIL_LEVEL:
                    logger.debug("Skipping startup zero for %s on %s", parameter, device_id)
                    continue

                old = state.last_seen.get(parameter)
                previous[parameter] = old
                threshold = thresholds.get(
                    parameter, self.tolerances.resolve(device_id, parameter)
                )

                if old is None:
                    logger.info("First reading for %s %s: %s", device_id, parameter, new)
                    changed = True
                else:
                    empty_tank = parameter == OIL_LEVEL and new == 0
                    changed = abs(new - old) > threshold or empty_tank
                    if changed:
                        logger.info(
                            "Significant change in %s %s: %s -> %s",
                            device_id, parameter, old, new,
                        )
                    else:
                        logger.debug(
                            "No significant change in %s %s: %s -> %s (threshold %s)",
                            device_id, parameter, old, new, threshold,
                        )

                state.last_seen[parameter] = new
                if changed:
                    significant = True
                    relevant = True
                    state.changed_this_event.add(parameter)

            if reading.has_alerts:
                significant = True
                state.changed_this_event.add(ALERTS_KEY)
            if reading.has_alert_code:
                significant = True
                state.changed_this_event.add(ALERT_CODE_KEY)

            return DeltaResult(
                device_id=device_id,
                significant=significant,
                relevant_changed=relevant,
                changed_params=frozenset(state.changed_this_event),
                first_sighting=created,
                previous=previous,
                thresholds=dict(thresholds),
            )

    def has_stored(self, device_id: str) -> bool:
        state = self.store.get(device_id)
        return state is not None and state.has_stored

    def record_stored(self, device_id: str, reading: Reading) -> None:
        """Remember the values that are about to be persisted."""
        with self.store.locked(device_id) as (state, _):
            for parameter in TRACKED_PARAMETERS:
                if parameter in reading.values:
                    state.last_stored[parameter] = reading.values[parameter]
            state.has_stored = True
