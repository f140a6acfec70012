"""
IIoT Listener — Reading normalization

Turns one raw transport event into a typed, immutable Reading before any
business logic sees it.

Field precedence:
  device name        device → device_id → "unknown"
  canonical id       deviceId → device → device_id
  startup counter    msgCount → sequence
  open alerts        open_alerts → len(alerts)

An optional {"event": {"payload": "<json>"}} envelope is unwrapped first.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .config import ALERT_CODE_KEY, ALERTS_KEY, TRACKED_PARAMETERS

logger = logging.getLogger("iiot.readings")

UNKNOWN_DEVICE = "unknown"


class MalformedEventError(ValueError):
    """Raised when an event body cannot be turned into a Reading."""


@dataclass(frozen=True, slots=True)
class RawEvent:
    """One event as delivered by the batch transport."""
    body: bytes
    sequence_number: int = 0
    enqueued_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    properties: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AlertEntry:
    code: Optional[str]
    desc: Optional[str]
    value: Optional[str]


@dataclass(frozen=True)
class Reading:
    device_name: str
    device_id: str
    origin: str
    values: Mapping[str, float]
    alerts: tuple[AlertEntry, ...]
    alert_code: Optional[str]
    alert_description: Optional[str]
    alert_value: Optional[str]
    msg_count: Optional[int]
    open_alerts: int
    sequence_number: int
    enqueued_time: datetime
    fields: Mapping[str, Any]
    # raw `alerts` array was non-empty, whatever its entries look like
    alerts_present: bool = False

    @property
    def is_startup_message(self) -> bool:
        return self.msg_count == 0

    @property
    def has_alerts(self) -> bool:
        return self.alerts_present or len(self.alerts) > 0

    @property
    def has_alert_code(self) -> bool:
        return self.alert_code is not None

    def raw_json(self) -> str:
        return json.dumps(dict(self.fields), default=str)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value) if isinstance(value, (dict, list)) else str(value)


def parse_number(value: Any) -> Optional[float]:
    """
    Accept numbers and numeric strings.  None means "absent".
    Raises MalformedEventError for anything else (including NaN/Inf).
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedEventError(f"boolean is not a numeric value: {value!r}")
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError as exc:
            raise MalformedEventError(f"numeric value out of range: {value!r}") from exc
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise MalformedEventError(f"unparsable numeric value: {value!r}") from exc
    else:
        raise MalformedEventError(f"unparsable numeric value: {value!r}")

    if math.isnan(number) or math.isinf(number):
        raise MalformedEventError(f"non-finite numeric value: {value!r}")
    return number


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def unwrap_envelope(data: dict) -> dict:
    """
    Replace an {"event": {"payload": ...}} envelope with its inner object.
    An inner payload that is not a JSON object leaves the outer object as-is.
    """
    event = data.get("event")
    if not isinstance(event, dict) or event.get("payload") is None:
        return data

    payload = event["payload"]
    if isinstance(payload, dict):
        return payload
    try:
        inner = json.loads(payload)
    except (TypeError, ValueError):
        logger.debug("Envelope payload is not JSON — using outer object")
        return data
    return inner if isinstance(inner, dict) else data


def decode_body(body: bytes | str) -> dict:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEventError("invalid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedEventError("event body is not a JSON object")
    return data


def _raw_count(raw: Any) -> int:
    return len(raw) if isinstance(raw, list) else 0


def _parse_alerts(raw: Any) -> tuple[AlertEntry, ...]:
    if not isinstance(raw, list):
        return ()
    alerts = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        alerts.append(AlertEntry(
            code=_text(item.get("code")),
            desc=_text(item.get("desc")),
            value=_text(item.get("value")),
        ))
    return tuple(alerts)


def normalize(
    data: dict,
    sequence_number: int = 0,
    enqueued_time: Optional[datetime] = None,
) -> Reading:
    """Build a Reading from an already-decoded JSON object."""
    fields = unwrap_envelope(data)

    device_name = _text(fields.get("device")) or _text(fields.get("device_id")) or UNKNOWN_DEVICE
    device_id = (
        _text(fields.get("deviceId"))
        or _text(fields.get("device"))
        or _text(fields.get("device_id"))
        or UNKNOWN_DEVICE
    )

    values: dict[str, float] = {}
    for parameter in TRACKED_PARAMETERS:
        number = parse_number(fields.get(parameter))
        if number is not None:
            values[parameter] = number

    msg_count = _parse_int(fields.get("msgCount"))
    if msg_count is None:
        msg_count = _parse_int(fields.get("sequence"))

    raw_alerts = fields.get(ALERTS_KEY)
    alerts = _parse_alerts(raw_alerts)
    open_alerts = _parse_int(fields.get("open_alerts"))

    return Reading(
        device_name=device_name,
        device_id=device_id,
        origin=_text(fields.get("origin")) or "",
        values=MappingProxyType(values),
        alerts=alerts,
        alert_code=_text(fields.get(ALERT_CODE_KEY)),
        alert_description=_text(fields.get("alert_description")),
        alert_value=_text(fields.get("alert_value")),
        msg_count=msg_count,
        open_alerts=open_alerts if open_alerts is not None else _raw_count(raw_alerts),
        sequence_number=sequence_number,
        enqueued_time=enqueued_time or datetime.now(timezone.utc),
        fields=MappingProxyType(dict(fields)),
        alerts_present=_raw_count(raw_alerts) > 0,
    )


def parse_event(event: RawEvent) -> Reading:
    """Decode and normalize one transport event.  Raises MalformedEventError."""
    return normalize(
        decode_body(event.body),
        sequence_number=event.sequence_number,
        enqueued_time=event.enqueued_time,
    )
