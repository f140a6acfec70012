"""
IIoT Listener — Tolerance Provider

Resolves the significance threshold for a (device, parameter) pair.
Compiled-in defaults, overridden per device by the durable tolerance table.

Overrides are re-read once per event so operators can retune sensitivity
without a restart.  Any lookup problem falls back to the default; this
module never raises into the pipeline.
"""

import asyncio
import logging
import math
from typing import Optional, Protocol

from .config import PipelineConfig, TRACKED_PARAMETERS

logger = logging.getLogger("iiot.tolerance")


class ToleranceSource(Protocol):
    async def get_tolerance(self, device_id: str, parameter: str) -> Optional[float]:
        ...


class ToleranceProvider:
    """Default table + refreshable per-device overrides."""

    def __init__(
        self,
        config: PipelineConfig,
        source: Optional[ToleranceSource] = None,
    ) -> None:
        self.config = config
        self._source = source
        self._overrides: dict[tuple[str, str], float] = {}
        self._lookup_failures = 0

    def resolve(self, device_id: str, parameter: str) -> float:
        override = self._overrides.get((device_id, parameter))
        if override is not None:
            return override
        return self.config.default_tolerances.get(parameter, self.config.fallback_tolerance)

    def snapshot(self, device_id: str) -> dict[str, float]:
        """Thresholds for every tracked parameter, as of now."""
        return {p: self.resolve(device_id, p) for p in TRACKED_PARAMETERS}

    async def refresh(self, device_id: str) -> dict[str, float]:
        """Re-read overrides for one device and return its current thresholds."""
        if self._source is None:
            return self.snapshot(device_id)

        for parameter in TRACKED_PARAMETERS:
            key = (device_id, parameter)
            try:
                raw = await asyncio.wait_for(
                    self._source.get_tolerance(device_id, parameter),
                    timeout=self.config.external_timeout,
                )
            except Exception as e:
                self._lookup_failures += 1
                logger.warning(
                    "Tolerance lookup failed for %s %s — using default: %r",
                    device_id, parameter, e,
                )
                self._overrides.pop(key, None)
                continue

            value = _positive(raw)
            if value is None:
                if raw is not None:
                    logger.warning(
                        "Ignoring malformed tolerance for %s %s: %r",
                        device_id, parameter, raw,
                    )
                self._overrides.pop(key, None)
                continue

            if self._overrides.get(key) != value:
                logger.info("Tolerance for %s %s: %s", device_id, parameter, value)
            self._overrides[key] = value

        return self.snapshot(device_id)

    @property
    def stats(self) -> dict:
        return {
            "overrides": len(self._overrides),
            "lookup_failures": self._lookup_failures,
        }


def _positive(raw) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value
