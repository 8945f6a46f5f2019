"""Latest metric snapshot per vehicle.

Writers build a new mapping and swap the reference under a lock; readers
grab the current reference without locking. A reader therefore sees either
the previous snapshot or the new one, never a mix.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType


class MetricKind(StrEnum):
    GAUGE = "gauge"
    COUNTER = "counter"


@dataclass(frozen=True)
class Gauge:
    value: float
    help: str = ""
    kind: MetricKind = field(default=MetricKind.GAUGE, init=False)


@dataclass(frozen=True)
class Counter:
    """Monotonic total; exported with a ``_total`` suffix."""

    value: float
    help: str = ""
    kind: MetricKind = field(default=MetricKind.COUNTER, init=False)


@dataclass(frozen=True)
class LabeledGauge:
    """Gauge carrying extra labels on top of the vehicle labels."""

    value: float
    labels: tuple[tuple[str, str], ...] = ()
    help: str = ""
    kind: MetricKind = field(default=MetricKind.GAUGE, init=False)


MetricValue = Gauge | Counter | LabeledGauge


@dataclass(frozen=True)
class MetricSnapshot:
    device_id: str
    captured_at: float
    metrics: Mapping[str, MetricValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))


@dataclass(frozen=True)
class CacheEntry:
    """A snapshot as seen by one reader, with staleness computed at read time."""

    snapshot: MetricSnapshot
    stale: bool
    age: float

    @property
    def device_id(self) -> str:
        return self.snapshot.device_id


@dataclass(frozen=True)
class _Slot:
    snapshot: MetricSnapshot
    forced_stale: bool = False


class MetricCache:
    """Holds the most recent successful snapshot of each vehicle.

    Parameters
    ----------
    stale_after : float
        Age in seconds beyond which a snapshot is reported stale.
    """

    def __init__(self, *, stale_after: float) -> None:
        self._stale_after = stale_after
        self._write_lock = threading.Lock()
        self._slots: Mapping[str, _Slot] = MappingProxyType({})

    def publish(self, snapshot: MetricSnapshot) -> None:
        """Replace the vehicle's snapshot and clear any forced staleness."""
        with self._write_lock:
            slots = dict(self._slots)
            slots[snapshot.device_id] = _Slot(snapshot)
            self._slots = MappingProxyType(slots)

    def touch(self, device_id: str, captured_at: float) -> bool:
        """Re-stamp the current snapshot as still valid at *captured_at*.

        Returns ``False`` when the vehicle has no snapshot yet.
        """
        with self._write_lock:
            slot = self._slots.get(device_id)
            if slot is None:
                return False
            slots = dict(self._slots)
            slots[device_id] = _Slot(replace(slot.snapshot, captured_at=captured_at))
            self._slots = MappingProxyType(slots)
            return True

    def mark_stale(self, device_id: str) -> None:
        """Flag the current snapshot stale until the next publish."""
        with self._write_lock:
            slot = self._slots.get(device_id)
            if slot is None or slot.forced_stale:
                return
            slots = dict(self._slots)
            slots[device_id] = _Slot(slot.snapshot, forced_stale=True)
            self._slots = MappingProxyType(slots)

    def get(self, device_id: str, now: float) -> CacheEntry | None:
        slot = self._slots.get(device_id)
        if slot is None:
            return None
        return self._entry(slot, now)

    def read_all(self, now: float) -> list[CacheEntry]:
        slots = self._slots
        return [self._entry(slot, now) for slot in slots.values()]

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._slots

    def _entry(self, slot: _Slot, now: float) -> CacheEntry:
        age = max(now - slot.snapshot.captured_at, 0.0)
        return CacheEntry(snapshot=slot.snapshot, stale=slot.forced_stale or age > self._stale_after, age=age)
