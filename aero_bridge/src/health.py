"""
Process-wide health status for the bridge daemon.

Holds two independent reachability flags and a handful of counters:
- device_reachable: written only by the serial device link.
- sink_reachable: written only by the sink forwarder.
- buffered / dropped: spool occupancy and capacity evictions.
- decode_errors / link_errors: malformed input and transient link failures.

Reachability starts as ``None`` (unknown) and is updated on every liveness
check or write attempt. Readers take an atomic snapshot; the health endpoint
derives overall health from that snapshot alone.

CHANGELOG:
- 2026-10-19: Replace health file writer with in-process status record
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from aero_bridge.src.config import HealthPolicy


@dataclass(frozen=True)
class HealthSnapshot:
    """Consistent point-in-time copy of :class:`HealthStatus`."""

    device_reachable: bool | None
    sink_reachable: bool | None
    buffered: int
    dropped: int
    decode_errors: int
    link_errors: int

    def is_healthy(self, policy: HealthPolicy = HealthPolicy.ALL) -> bool:
        """Combine reachability according to *policy*. Unknown counts as down."""
        device = self.device_reachable is True
        sink = self.sink_reachable is True
        if policy is HealthPolicy.ANY:
            return device or sink
        if policy is HealthPolicy.DEVICE:
            return device
        if policy is HealthPolicy.SINK:
            return sink
        return device and sink


class HealthStatus:
    """Thread-safe status record shared by the device link, forwarder and API.

    Every mutator and :meth:`snapshot` take the same lock, so a reader never
    observes a partially updated record. The lock is never held for longer
    than a few attribute assignments.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._device_reachable: bool | None = None
        self._sink_reachable: bool | None = None
        self._buffered = 0
        self._dropped = 0
        self._decode_errors = 0
        self._link_errors = 0

    def set_device_reachable(self, reachable: bool) -> None:
        with self._lock:
            self._device_reachable = reachable

    def set_sink_reachable(self, reachable: bool) -> None:
        with self._lock:
            self._sink_reachable = reachable

    def set_buffer_counts(self, *, buffered: int, dropped: int) -> None:
        """Publish the spool's current length and cumulative eviction count."""
        with self._lock:
            self._buffered = buffered
            self._dropped = dropped

    def record_decode_error(self) -> None:
        with self._lock:
            self._decode_errors += 1

    def record_link_error(self) -> None:
        with self._lock:
            self._link_errors += 1

    def snapshot(self) -> HealthSnapshot:
        """Return an atomic copy of the current state."""
        with self._lock:
            return HealthSnapshot(
                device_reachable=self._device_reachable,
                sink_reachable=self._sink_reachable,
                buffered=self._buffered,
                dropped=self._dropped,
                decode_errors=self._decode_errors,
                link_errors=self._link_errors,
            )
