"""
Sink forwarder that drains the spool into InfluxDB with retry and backoff.

One drain cycle peeks a batch from the spool, keeps the entries whose
aggregation windows have closed, runs them through the aggregator, and
attempts a single write of the result. Entries of still-open windows stay in
the spool until a later cycle, or until the final drain at shutdown flushes
them. Only a successful write acks the sent sequence numbers; a failed write
leaves the spool untouched so the same entries (plus anything that arrived
meanwhile) are retried next cycle.
Retry delays follow an exponential backoff (initial -> x multiplier ->
... -> max) that resets on success.

The forwarder owns ``sink_reachable`` in the shared HealthStatus and
publishes spool occupancy after every cycle.

Operations:
- drain(spool, final): One peek/aggregate/write/ack cycle.
- next_delay(result, interval_s): How long the loop should wait next.

CHANGELOG:
- 2026-10-20: Write only closed aggregation windows until the final drain
- 2026-10-19: Probe the sink while the spool is empty
- 2026-10-19: Replace HTTPS uploader with aggregate-then-write cycle
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from aero_bridge.src.backoff import Backoff
from aero_bridge.src.decoder import now_ms
from aero_bridge.src.errors import SinkError

if TYPE_CHECKING:
    from aero_bridge.src.aggregator import Aggregator
    from aero_bridge.src.health import HealthStatus
    from aero_bridge.src.sink import InfluxSink
    from aero_bridge.src.spool import Spool

logger = logging.getLogger(__name__)


class DrainResult(str, Enum):
    """Outcome of one drain cycle."""

    EMPTY = "empty"
    HELD = "held"
    SENT = "sent"
    FAILED = "failed"


class Forwarder:
    """Drains spool batches through the aggregator into the sink.

    Writes are all-or-nothing: the sink does not report per-point results,
    so the entries sent in one write are either all acked or all retried.

    Args:
        sink: The InfluxDB writer.
        aggregator: Window aggregator (identity when its window is 0).
        health: Shared status record; this class writes ``sink_reachable``.
        batch_size: Maximum number of spool entries per write.
        backoff: Retry delay state machine.
        clock_ms: Host epoch-millisecond clock used to tell closed
            aggregation windows from open ones, injectable for tests.

    Raises:
        ValueError: If *batch_size* is less than 1.
    """

    def __init__(
        self,
        sink: InfluxSink,
        aggregator: Aggregator,
        health: HealthStatus,
        batch_size: int,
        backoff: Backoff | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1 (got {batch_size})")
        self._sink = sink
        self._aggregator = aggregator
        self._health = health
        self._batch_size = batch_size
        self._backoff = backoff if backoff is not None else Backoff()
        self._clock_ms = clock_ms
        self._retry_delay = 0.0
        self._last_batch_full = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    async def drain(self, spool: Spool, *, final: bool = False) -> DrainResult:
        """Run one peek/aggregate/write/ack cycle.

        Args:
            spool: The spool to drain.
            final: Also send entries of aggregation windows that are still
                open. Used for the last drain before shutdown.

        Returns:
            ``EMPTY`` when there was nothing to send, ``HELD`` when every
            peeked entry belongs to a still-open window, ``SENT`` when the
            ready entries were written and acked, ``FAILED`` when the write
            failed and the entries stay buffered.
        """
        entries = await spool.peek_batch(self._batch_size)

        if not entries:
            logger.debug("Spool empty, skipping write.")
            self._last_batch_full = False
            self._health.set_sink_reachable(await self._sink.ping())
            await self._publish_counts(spool)
            return DrainResult.EMPTY

        batch_full = len(entries) == self._batch_size
        if final:
            ready = entries
        else:
            ready = self._aggregator.ready(
                entries,
                now_ms=self._clock_ms(),
                batch_full=batch_full,
            )
        if not ready:
            logger.debug("All %d entries belong to open windows, holding.", len(entries))
            self._last_batch_full = False
            await self._publish_counts(spool)
            return DrainResult.HELD

        seqs = [entry.seq for entry in ready]
        readings = self._aggregator.process(ready)

        try:
            await self._sink.write(readings)
        except SinkError as exc:
            self._retry_delay = self._backoff.failure()
            self._health.set_sink_reachable(False)
            self._health.record_link_error()
            logger.warning(
                "Write of %d entries failed (%s), retrying in %.1fs "
                "(consecutive failures: %d)",
                len(ready),
                exc,
                self._retry_delay,
                self._backoff.failures,
            )
            await self._publish_counts(spool)
            return DrainResult.FAILED

        await spool.ack(seqs)
        self._backoff.reset()
        self._health.set_sink_reachable(True)
        self._last_batch_full = batch_full
        logger.info(
            "Wrote %d points from %d entries (%d held), acked seqs %d..%d.",
            len(readings),
            len(ready),
            len(entries) - len(ready),
            seqs[0],
            seqs[-1],
        )
        await self._publish_counts(spool)
        return DrainResult.SENT

    def next_delay(self, result: DrainResult, interval_s: float) -> float:
        """Seconds to wait before the next cycle.

        After a failure, the backoff delay. After a full batch, zero so a
        backlog drains without waiting a whole interval per batch. Otherwise
        the regular flush interval.
        """
        if result is DrainResult.FAILED:
            return self._retry_delay
        if result is DrainResult.SENT and self._last_batch_full:
            return 0.0
        return interval_s

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _publish_counts(self, spool: Spool) -> None:
        self._health.set_buffer_counts(
            buffered=await spool.count(),
            dropped=spool.dropped,
        )
