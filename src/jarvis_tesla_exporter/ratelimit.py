"""Per-endpoint-class token buckets.

The limiter never blocks. :meth:`RateLimiter.acquire` either hands out a
:class:`Permit` or tells the caller when to come back with
:class:`WouldBlockUntil`; callers reschedule instead of spinning.

A grant requires all of:

* one whole token in the bucket (lazy, time-based refill),
* ``min_interval`` seconds since the previous grant,
* fewer than ``capacity`` grants in the trailing ``capacity / refill_per_second``
  window, so a burst followed by refill can never exceed the ceiling.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum


class EndpointClass(StrEnum):
    TELEMETRY = "telemetry"
    WAKE = "wake"


@dataclass(frozen=True)
class BucketSpec:
    """Budget for one endpoint class."""

    capacity: int
    refill_per_second: float
    min_interval: float = 0.0

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        if self.refill_per_second <= 0:
            raise ValueError(f"refill_per_second must be > 0, got {self.refill_per_second}")
        if self.min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {self.min_interval}")

    @property
    def window(self) -> float:
        """Length of the rolling window that may hold at most ``capacity`` grants."""
        return self.capacity / self.refill_per_second


@dataclass(frozen=True)
class Permit:
    endpoint_class: EndpointClass
    granted_at: float


@dataclass(frozen=True)
class WouldBlockUntil:
    endpoint_class: EndpointClass
    instant: float


@dataclass
class TokenBucket:
    """Mutable bucket state. Only :class:`RateLimiter` touches it, under its lock."""

    spec: BucketSpec
    tokens: float
    last_refill: float
    grants: deque[float] = field(default_factory=deque)

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.spec.capacity), self.tokens + elapsed * self.spec.refill_per_second)
            self.last_refill = now

    def next_allowed(self, now: float) -> float:
        """Earliest instant a grant could succeed; ``<= now`` means right away."""
        candidates = [now]
        if self.tokens < 1.0:
            candidates.append(now + (1.0 - self.tokens) / self.spec.refill_per_second)
        if self.grants:
            candidates.append(self.grants[-1] + self.spec.min_interval)
            if len(self.grants) >= self.spec.capacity:
                candidates.append(self.grants[0] + self.spec.window)
        return max(candidates)

    def take(self, now: float) -> None:
        self.tokens -= 1.0
        self.grants.append(now)
        while len(self.grants) > self.spec.capacity:
            self.grants.popleft()


class RateLimiter:
    """Shared limiter for all device pollers."""

    def __init__(
        self,
        specs: Mapping[EndpointClass, BucketSpec],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        now = clock()
        self._buckets: dict[EndpointClass, TokenBucket] = {
            endpoint_class: TokenBucket(spec=spec, tokens=float(spec.capacity), last_refill=now)
            for endpoint_class, spec in specs.items()
        }

    def acquire(self, endpoint_class: EndpointClass) -> Permit | WouldBlockUntil:
        """Take one token for *endpoint_class* or report when one will be available."""
        with self._lock:
            bucket = self._buckets.get(endpoint_class)
            if bucket is None:
                raise KeyError(f"no rate limit configured for {endpoint_class!r}")
            now = self._clock()
            bucket.refill(now)
            ready_at = bucket.next_allowed(now)
            if ready_at > now:
                return WouldBlockUntil(endpoint_class=endpoint_class, instant=ready_at)
            bucket.take(now)
            return Permit(endpoint_class=endpoint_class, granted_at=now)

    def available(self, endpoint_class: EndpointClass) -> float:
        """Whole tokens currently available (refilled lazily)."""
        with self._lock:
            bucket = self._buckets[endpoint_class]
            bucket.refill(self._clock())
            return float(math.floor(bucket.tokens))

    @property
    def endpoint_classes(self) -> tuple[EndpointClass, ...]:
        return tuple(self._buckets)
