"""
IIoT Listener — Device State Store

Per-device memory used for delta detection.  One registry per pipeline
instance (never a module-level singleton), so tests can build as many
isolated pipelines as they like.

Locking: a registry lock guards creation of DeviceState entries; each device
then has its own lock that the Delta Detector holds for the whole
read → decide → write section.  Everything under those locks is synchronous,
so the same store is safe from asyncio tasks and from executor threads.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional


@dataclass
class DeviceState:
    device_id: str
    last_seen: dict[str, float] = field(default_factory=dict)
    last_stored: dict[str, float] = field(default_factory=dict)
    changed_this_event: set[str] = field(default_factory=set)
    has_stored: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class DeviceStateStore:
    """Registry of DeviceState keyed by canonical device id."""

    def __init__(self) -> None:
        self._states: dict[str, DeviceState] = {}
        self._registry_lock = threading.Lock()

    def get(self, device_id: str) -> Optional[DeviceState]:
        return self._states.get(device_id)

    def get_or_create(self, device_id: str) -> tuple[DeviceState, bool]:
        """Return (state, created)."""
        with self._registry_lock:
            state = self._states.get(device_id)
            if state is not None:
                return state, False
            state = DeviceState(device_id=device_id)
            self._states[device_id] = state
            return state, True

    @contextmanager
    def locked(self, device_id: str) -> Iterator[tuple[DeviceState, bool]]:
        state, created = self.get_or_create(device_id)
        with state.lock:
            yield state, created

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._states

    def __len__(self) -> int:
        return len(self._states)
