"""
IIoT Listener — Alarm Rule Engine

Fixed threshold bands per parameter plus pass-through of alert codes that the
device firmware embeds in its payload.

Bands (evaluated top to bottom, first match wins, so they never overlap):

    temperature   > 50  IO_ALR_100  high
                  < 10  IO_ALR_101  low
    humidity      > 80  IO_ALR_103  high
                  < 20  IO_ALR_104  low
    oilLevel     <= 0   IO_ALR_108  tank empty
                 <= 10  IO_ALR_107  critical low
                 <= 30  IO_ALR_106  low
                 <= 50  IO_ALR_105  half capacity (recorded, not notified)

oilLevel bands only run when the Delta Detector flagged oilLevel AND a second
check against the previous observation passes (|prev - new| >= tolerance).
That keeps a stuck tank level from re-raising the same alarm every event.

Temperature and humidity zeros on the startup message (msgCount 0) are
power-on defaults and never raise the low bands.

Everything here is a pure function of its inputs.
"""

import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import (
    DeviceInfo,
    HUMIDITY,
    OIL_LEVEL,
    PipelineConfig,
    TEMPERATURE,
)
from .delta_detector import DeltaResult
from .readings import Reading

logger = logging.getLogger("iiot.alarm_rules")

SOURCE_THRESHOLD = "threshold"
SOURCE_EXPLICIT = "explicit"
SOURCE_PLACEHOLDER = "placeholder"


@dataclass(frozen=True, slots=True)
class Band:
    """One threshold band for a parameter."""
    code: str
    compare: Callable[[float, float], bool]
    limit: float
    description: str    # formatted with plant=
    notify: bool = True


BANDS: dict[str, tuple[Band, ...]] = {
    TEMPERATURE: (
        Band("IO_ALR_100", operator.gt, 50, "High temperature detected (> Threshold) - {plant}"),
        Band("IO_ALR_101", operator.lt, 10, "Low temperature detected (< Threshold) - {plant}"),
    ),
    HUMIDITY: (
        Band("IO_ALR_103", operator.gt, 80, "High humidity detected (> Threshold) - {plant}"),
        Band("IO_ALR_104", operator.lt, 20, "Low humidity detected (< Threshold) - {plant}"),
    ),
    OIL_LEVEL: (
        Band("IO_ALR_108", operator.le, 0, "Oil tank empty - {plant}"),
        Band("IO_ALR_107", operator.le, 10, "Oil level at 10% - {plant}"),
        Band("IO_ALR_106", operator.le, 30, "Oil level at 30% - {plant}"),
        Band("IO_ALR_105", operator.le, 50, "Oil level at 50% - {plant}", notify=False),
    ),
}


@dataclass(frozen=True)
class AlarmEvent:
    alarm_code: str
    description: str
    value: str
    parameter: str
    device_name: str
    device_id: str
    plant_name: str
    device_number: int = 0
    telemetry_key_id: Optional[int] = None
    root_cause_id: Optional[int] = None
    notify: bool = True
    source: str = SOURCE_THRESHOLD
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = True
    device_fields: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if not self.alarm_code:
            raise ValueError("AlarmEvent requires an alarm code")
        if not self.device_id or not self.device_name:
            raise ValueError("AlarmEvent requires a device identifier")

    @property
    def key(self) -> tuple[str, str]:
        return (self.device_id, self.alarm_code)


def format_value(value: float) -> str:
    """Render a reading the way it is shown on the dashboard (30.0 → '30')."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class AlarmRuleEngine:
    """Stateless evaluation of threshold bands and explicit alerts."""

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def match_band(self, parameter: str, value: float) -> Optional[Band]:
        for band in BANDS.get(parameter, ()):
            if band.compare(value, band.limit):
                return band
        return None

    def evaluate_band(
        self,
        parameter: str,
        value: float,
        reading: Reading,
        device: DeviceInfo,
        source: str = SOURCE_THRESHOLD,
    ) -> Optional[AlarmEvent]:
        """Evaluate a single parameter value; at most one alarm."""
        band = self.match_band(parameter, value)
        if band is None:
            return None

        return AlarmEvent(
            alarm_code=band.code,
            description=band.description.format(plant=device.plant_name),
            value=format_value(value),
            parameter=parameter,
            device_name=reading.device_name,
            device_id=reading.device_id,
            plant_name=device.plant_name,
            device_number=device.numeric_id,
            telemetry_key_id=self.config.telemetry_key_ids.get(parameter),
            root_cause_id=self.config.root_cause_ids.get(band.code),
            notify=band.notify and source != SOURCE_PLACEHOLDER,
            source=source,
            device_fields=dict(reading.fields),
        )

    def oil_level_rechecked(self, reading: Reading, delta: DeltaResult) -> bool:
        """Independent duplicate guard for oil-level alarms."""
        if OIL_LEVEL not in delta.changed_params or OIL_LEVEL not in reading.values:
            return False
        previous = delta.previous.get(OIL_LEVEL)
        if previous is None:
            return False
        tolerance = delta.thresholds.get(OIL_LEVEL, self.config.default_tolerances[OIL_LEVEL])
        changed = abs(previous - reading.values[OIL_LEVEL]) >= tolerance
        logger.debug(
            "Oil level re-check for %s: previous=%s current=%s tolerance=%s changed=%s",
            reading.device_id, previous, reading.values[OIL_LEVEL], tolerance, changed,
        )
        return changed

    def explicit_alarm(self, reading: Reading, device: DeviceInfo) -> Optional[AlarmEvent]:
        """Pass-through for alerts[0].code, else alert_code."""
        if reading.alerts:
            first = reading.alerts[0]
            code, desc, value = first.code, first.desc, first.value
        elif reading.alert_code is not None:
            code = reading.alert_code
            desc = reading.alert_description
            value = reading.alert_value
        else:
            return None

        if not code or not code.startswith(self.config.alarm_code_prefix):
            return None

        refill = code == self.config.refill_alarm_code
        return AlarmEvent(
            alarm_code=code,
            description=desc or "",
            value=value if value is not None else "0",
            parameter=OIL_LEVEL if refill else "alert",
            device_name=reading.device_name,
            device_id=reading.device_id,
            plant_name=device.plant_name,
            device_number=device.numeric_id,
            telemetry_key_id=self.config.telemetry_key_ids.get(OIL_LEVEL) if refill else None,
            root_cause_id=self.config.root_cause_ids.get(code),
            notify=refill,
            source=SOURCE_EXPLICIT,
            device_fields=dict(reading.fields),
        )

    def evaluate(
        self,
        reading: Reading,
        delta: DeltaResult,
        device: DeviceInfo,
    ) -> list[AlarmEvent]:
        """All alarms for one significant event, in a fixed order."""
        alarms: list[AlarmEvent] = []

        for parameter in (TEMPERATURE, HUMIDITY):
            if parameter not in reading.values:
                continue
            if reading.values[parameter] == 0 and reading.is_startup_message:
                # power-on default, not a measurement
                logger.debug("Ignoring startup zero %s for %s", parameter, reading.device_id)
                continue
            alarm = self.evaluate_band(parameter, reading.values[parameter], reading, device)
            if alarm is not None:
                alarms.append(alarm)

        if self.oil_level_rechecked(reading, delta):
            alarm = self.evaluate_band(OIL_LEVEL, reading.values[OIL_LEVEL], reading, device)
            if alarm is not None:
                alarms.append(alarm)

        explicit = self.explicit_alarm(reading, device)
        if explicit is not None:
            alarms.append(explicit)

        return alarms
