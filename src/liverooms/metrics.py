"""In-process counters and timings for a liverooms server.

Three families, all exported by ``GET /metrics``:

- ``requests``: HTTP latency per normalized endpoint (``rooms/messages``)
- ``store_calls``: latency of store functions run on the DB worker
- ``counters``: live-channel and sweeper events (``frames_received``,
  ``broadcasts``, ``send_failures``, ``sweeps``, ``rooms_transitioned``...)

Everything lives in one process-wide ``metrics`` object and resets with the
process.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

# Store calls slower than this are logged
SLOW_STORE_CALL_MS = 100

# Samples kept per timing for the p95 estimate
RECENT_SAMPLES = 200


@dataclass
class Timing:
    """Latency of one request endpoint or store function."""

    calls: int = 0
    total_ms: float = 0.0
    worst_ms: float = 0.0
    recent: deque = field(default_factory=lambda: deque(maxlen=RECENT_SAMPLES))

    def add(self, duration_ms: float) -> None:
        self.calls += 1
        self.total_ms += duration_ms
        self.worst_ms = max(self.worst_ms, duration_ms)
        self.recent.append(duration_ms)

    def p95_ms(self) -> float:
        if not self.recent:
            return 0.0
        ordered = sorted(self.recent)
        return ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]

    def summary(self) -> dict:
        mean = self.total_ms / self.calls if self.calls else 0.0
        return {
            "calls": self.calls,
            "mean_ms": round(mean, 2),
            "p95_ms": round(self.p95_ms(), 2),
            "worst_ms": round(self.worst_ms, 2),
        }


@dataclass
class RoomMetrics:
    """Thread-safe collector shared by the event loop and the DB worker."""

    _lock: Lock = field(default_factory=Lock)
    requests: dict[str, Timing] = field(default_factory=lambda: defaultdict(Timing))
    store_calls: dict[str, Timing] = field(default_factory=lambda: defaultdict(Timing))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _started: float = field(default_factory=time.time)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.requests[endpoint].add(duration_ms)

    def record_store_call(self, name: str, duration_ms: float) -> None:
        with self._lock:
            self.store_calls[name].add(duration_ms)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def get_counter(self, counter: str) -> int:
        with self._lock:
            return self.counters.get(counter, 0)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started, 1),
                "requests": {k: v.summary() for k, v in self.requests.items()},
                "store_calls": {k: v.summary() for k, v in self.store_calls.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Forget everything recorded so far (tests)."""
        with self._lock:
            self.requests.clear()
            self.store_calls.clear()
            self.counters.clear()
            self._started = time.time()


metrics = RoomMetrics()


@contextmanager
def timed_store_call(name: str):
    """Time a store function and warn when it is slow.

    Usage:
        with timed_store_call("get_room_messages"):
            messages = db.get_room_messages(room_id)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_store_call(name, duration_ms)
        if duration_ms > SLOW_STORE_CALL_MS:
            logger.warning(f"Slow store call: {name} took {duration_ms:.1f}ms")
