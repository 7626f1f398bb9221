"""
Time-window averaging of buffered readings before upload.

Groups a batch of spool entries by ``(kind, window)``, where the window of a
reading is ``timestamp // window_ms``, and replaces each group with a single
Reading carrying the group's mean value. The merged reading is stamped with
the window's closing edge ``(window + 1) * window_ms`` so consecutive
windows of one kind stay strictly ordered. Min, max and sample count travel
along in the Reading's summary fields.

A window of 0 disables aggregation: every reading passes through unchanged.

Only closed windows may be written. A window is closed once its closing edge
is at or before the current time; until then more readings can still land in
it, and writing a partial mean would be overwritten in the store by the next
partial mean with the same series and timestamp. :meth:`Aggregator.ready`
selects the entries of closed windows; entries of open windows stay in the
spool for a later cycle. When a batch is cut short by the batch size, the
newest window of each kind may continue in the next batch and is held back
too, unless nothing else in the batch could be sent.

The forwarder acks exactly the sequence numbers it aggregated, however many
readings come out of here.

CHANGELOG:
- 2026-10-20: Hold back entries of windows that are still open
- 2026-10-19: Let low-confidence readings bypass merging on request
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from aero_bridge.src.models import BufferedEntry, Reading, ReadingKind

logger = logging.getLogger(__name__)


@dataclass
class AggregationWindow:
    """Running accumulator for one kind within one window."""

    kind: ReadingKind
    index: int
    count: int = 0
    total: float = 0.0
    minimum: float = float("inf")
    maximum: float = float("-inf")
    first_ts: int | None = None
    last_ts: int | None = None
    low_confidence: bool = False

    def add(self, reading: Reading) -> None:
        self.count += 1
        self.total += reading.value
        self.minimum = min(self.minimum, reading.value)
        self.maximum = max(self.maximum, reading.value)
        if self.first_ts is None:
            self.first_ts = reading.timestamp
        self.last_ts = reading.timestamp
        self.low_confidence = self.low_confidence or reading.low_confidence

    def close(self, window_ms: int) -> Reading:
        """Summarise the window into one Reading stamped at its closing edge."""
        return Reading(
            kind=self.kind,
            value=self.total / self.count,
            timestamp=(self.index + 1) * window_ms,
            low_confidence=self.low_confidence,
            samples=self.count,
            min_value=self.minimum,
            max_value=self.maximum,
        )


class Aggregator:
    """Merges same-kind readings that fall in the same time window.

    Args:
        window_ms: Window length in milliseconds; 0 disables aggregation.
        include_low_confidence: When False, readings with host-assigned
            timestamps are passed through individually instead of merged.

    Raises:
        ValueError: If *window_ms* is negative.
    """

    def __init__(self, window_ms: int, include_low_confidence: bool = True) -> None:
        if window_ms < 0:
            raise ValueError(f"window_ms must be >= 0 (got {window_ms})")
        self._window_ms = window_ms
        self._include_low_confidence = include_low_confidence

    @property
    def enabled(self) -> bool:
        return self._window_ms > 0

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def _bypasses(self, reading: Reading) -> bool:
        return reading.low_confidence and not self._include_low_confidence

    def _key(self, reading: Reading) -> tuple[ReadingKind, int]:
        return reading.kind, reading.timestamp // self._window_ms

    def ready(
        self,
        batch: Sequence[BufferedEntry],
        *,
        now_ms: int,
        batch_full: bool = False,
    ) -> list[BufferedEntry]:
        """Select the entries that can be aggregated and written now.

        An entry is ready when its window has closed (closing edge
        ``<= now_ms``) or when it bypasses merging. With *batch_full*, the
        newest window of each kind in *batch* is held back as well, since
        its remaining entries may sit just past the end of the batch. That
        extra hold is dropped when it would leave nothing to send, so a
        window larger than the batch size still drains.

        Args:
            batch: Entries in spool order.
            now_ms: Current host time in epoch milliseconds.
            batch_full: Whether *batch* was cut short by the batch size.

        Returns:
            The ready entries, in spool order. All of *batch* when disabled.
        """
        if not self.enabled:
            return list(batch)

        closed = [
            entry
            for entry in batch
            if self._bypasses(entry.reading)
            or (self._key(entry.reading)[1] + 1) * self._window_ms <= now_ms
        ]
        if not batch_full or not closed:
            return closed

        newest: dict[ReadingKind, int] = {}
        for entry in batch:
            if self._bypasses(entry.reading):
                continue
            kind, index = self._key(entry.reading)
            newest[kind] = max(index, newest.get(kind, index))

        trimmed = [
            entry
            for entry in closed
            if self._bypasses(entry.reading)
            or self._key(entry.reading)[1] != newest[entry.reading.kind]
        ]
        return trimmed or closed

    def process(self, batch: Sequence[BufferedEntry]) -> list[Reading]:
        """Aggregate a batch of spool entries.

        Args:
            batch: Entries in spool order.

        Returns:
            One reading per ``(kind, window)`` group, in the order each group
            first appears in *batch*, with pass-through readings kept at their
            own position. Identical to the input readings when disabled.
        """
        return self.process_readings([entry.reading for entry in batch])

    def process_readings(self, readings: Sequence[Reading]) -> list[Reading]:
        """Same as :meth:`process` for bare readings."""
        if not self.enabled:
            return list(readings)

        # Each slot holds either a pass-through Reading or a window key.
        slots: list[Reading | tuple[ReadingKind, int]] = []
        windows: dict[tuple[ReadingKind, int], AggregationWindow] = {}

        for reading in readings:
            if self._bypasses(reading):
                slots.append(reading)
                continue
            key = self._key(reading)
            window = windows.get(key)
            if window is None:
                window = AggregationWindow(kind=key[0], index=key[1])
                windows[key] = window
                slots.append(key)
            window.add(reading)

        out = [
            slot if isinstance(slot, Reading) else windows[slot].close(self._window_ms)
            for slot in slots
        ]
        logger.debug(
            "Aggregated %d readings into %d (window=%dms)",
            len(readings),
            len(out),
            self._window_ms,
        )
        return out
