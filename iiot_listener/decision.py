"""
IIoT Listener — Storage/Publish Decision

Every significant event goes to the live feed.  The full reading is only
persisted when temperature, humidity or oilLevel actually moved (or the
device has never been stored).  Alerts alone make an event visible on the
feed but do not force a telemetry write.
"""

from dataclasses import dataclass

from .delta_detector import DeltaResult


@dataclass(frozen=True, slots=True)
class EmitDecision:
    publish: bool
    store: bool


def decide(delta: DeltaResult, has_stored: bool) -> EmitDecision:
    if not delta.significant:
        return EmitDecision(publish=False, store=False)
    return EmitDecision(
        publish=True,
        store=delta.relevant_changed or not has_stored,
    )
