"""
Serial device link: read loop, liveness probe, clock sync, and reconnect.

Owns the serial port to the sensor board and feeds decoded readings into the
spool. Designed to be robust:

- Blocking pyserial calls run in a worker thread via asyncio.to_thread and
  are bounded by the port's read timeout, so the loop re-checks for shutdown
  at least once per timeout.
- After every (re)connect the device clock is re-synchronised with
  ``SET_TIME``; until the board acknowledges, readings are low-confidence.
- A ``PING`` probe is sent every probe interval; a ``PONG`` within the probe
  timeout marks the device reachable, a timeout marks it unreachable.
- Read or write failures mark the device unreachable, close the port and
  reconnect with exponential backoff. They never propagate to the caller.
- Only the very first open (at startup) is fatal: it raises
  ConfigurationError so the process stops before entering its loops.

When only a product name is configured, the port is discovered by matching
the normalised USB product string of every available serial port.

CHANGELOG:
- 2026-10-19: Discover port by USB product name
- 2026-10-19: Replace Modbus TCP poller with serial line reader
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import serial
from serial.tools import list_ports

from aero_bridge.src.backoff import Backoff
from aero_bridge.src.decoder import (
    DeviceClock,
    decode_line,
    encode_ping,
    encode_set_time,
    now_ms,
)
from aero_bridge.src.errors import ConfigurationError, DecodeError, DeviceError
from aero_bridge.src.models import ControlKind, ControlReply, Reading

if TYPE_CHECKING:
    from aero_bridge.src.health import HealthStatus
    from aero_bridge.src.spool import Spool

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BAUD_RATE: int = 9600

DEFAULT_TIMEOUT_S: float = 1.0
"""Serial read timeout; upper bound on how long one readline() blocks."""

RECONNECT_INITIAL_S: float = 1.0
RECONNECT_MAX_S: float = 60.0


# ---------------------------------------------------------------------------
# Port discovery and opening
# ---------------------------------------------------------------------------


def normalize_product_name(name: str) -> str:
    """Lowercase and strip spaces, underscores and hyphens."""
    return name.lower().replace(" ", "").replace("_", "").replace("-", "")


def find_port(device_name: str) -> str:
    """Return the device path of the first serial port whose USB product matches.

    Raises:
        DeviceError: If no port matches.
    """
    target = normalize_product_name(device_name)
    ports = list_ports.comports()
    logger.debug("Available serial ports: %s", [p.device for p in ports])
    for port in ports:
        if port.product and normalize_product_name(port.product) == target:
            logger.info("Found '%s' on %s", device_name, port.device)
            return port.device
    raise DeviceError(f"No serial port with USB product name '{device_name}'")


def open_serial(url: str, baud_rate: int, timeout_s: float) -> serial.SerialBase:
    """Open a serial port or pyserial URL (``loop://``, ``socket://``...).

    Raises:
        DeviceError: If the port cannot be opened.
    """
    try:
        return serial.serial_for_url(url, baudrate=baud_rate, timeout=timeout_s)
    except (serial.SerialException, OSError, ValueError) as exc:
        raise DeviceError(f"Cannot open serial port '{url}': {exc}") from exc


# ---------------------------------------------------------------------------
# Device link
# ---------------------------------------------------------------------------


class DeviceLink:
    """Stateful serial link to the sensor board.

    Args:
        health: Shared status record; this class writes ``device_reachable``
            and counts decode and link errors.
        device_path: Serial device path or pyserial URL. Takes precedence
            over *device_name*.
        device_name: USB product name to search for when no path is given.
        baud_rate: Serial baud rate.
        timeout_s: Read timeout per readline() call.
        probe_interval_s: Seconds between PING probes (and sync retries).
        probe_timeout_s: Seconds to wait for PONG.
        backoff: Reconnect delay state machine.
        clock: Device clock; a fresh one by default.
        clock_ms: Host epoch-millisecond clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        health: HealthStatus,
        device_path: str = "",
        device_name: str = "",
        baud_rate: int = DEFAULT_BAUD_RATE,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        probe_interval_s: float = 30.0,
        probe_timeout_s: float = 5.0,
        backoff: Backoff | None = None,
        clock: DeviceClock | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        if not device_path and not device_name:
            raise ValueError("device_path or device_name is required")
        self._health = health
        self._device_path = device_path
        self._device_name = device_name
        self._baud_rate = baud_rate
        self._timeout_s = timeout_s
        self._probe_interval_s = probe_interval_s
        self._probe_timeout_s = probe_timeout_s
        self._backoff = backoff or Backoff(RECONNECT_INITIAL_S, 2.0, RECONNECT_MAX_S)
        self._clock = clock or DeviceClock()
        self._clock_ms = clock_ms

        self._port: serial.SerialBase | None = None
        self._next_probe_at = 0.0
        self._probe_sent_at: float | None = None
        self._pending_sync_ms: int | None = None

    @property
    def clock(self) -> DeviceClock:
        return self._clock

    @property
    def connected(self) -> bool:
        return self._port is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the port at startup.

        Raises:
            ConfigurationError: If the device cannot be found or opened.
        """
        try:
            await asyncio.to_thread(self._connect)
        except DeviceError as exc:
            raise ConfigurationError(str(exc)) from exc

    async def close(self) -> None:
        """Close the port if open."""
        port, self._port = self._port, None
        if port is not None:
            await asyncio.to_thread(port.close)

    async def run(self, spool: Spool, shutdown_event: asyncio.Event) -> None:
        """Read, decode and buffer lines until *shutdown_event* is set.

        Args:
            spool: Destination for decoded readings.
            shutdown_event: Stops the loop after the current readline().
        """
        logger.info("Device read loop started")
        while not shutdown_event.is_set():
            if self._port is None:
                await self._reconnect(shutdown_event)
                continue

            try:
                await self._service_probe()
                line = await asyncio.to_thread(self._port.readline)
            except (serial.SerialException, OSError) as exc:
                await self._on_link_failure(exc)
                continue

            if not line:
                continue

            try:
                await self._handle_line(line, spool)
            except Exception:
                logger.error("Line processing error", exc_info=True)
        logger.info("Device read loop stopped")

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    async def _handle_line(self, line: bytes, spool: Spool) -> None:
        frames = decode_line(
            line,
            clock=self._clock,
            received_at_ms=self._clock_ms(),
            on_error=self._on_decode_error,
        )
        for frame in frames:
            if isinstance(frame, Reading):
                await spool.push(frame)
            else:
                self._handle_control(frame)

    def _handle_control(self, reply: ControlReply) -> None:
        if reply.kind is ControlKind.PONG:
            if self._probe_sent_at is not None:
                rtt_ms = (time.monotonic() - self._probe_sent_at) * 1000
                logger.debug("PONG received after %.0fms", rtt_ms)
            self._probe_sent_at = None
            self._health.set_device_reachable(True)
            return

        if reply.value is not None and reply.value == self._pending_sync_ms:
            self._clock.sync(reply.value)
            self._pending_sync_ms = None
        else:
            logger.warning(
                "Unexpected time acknowledgment %s (expected %s), will retry",
                reply.value,
                self._pending_sync_ms,
            )

    def _on_decode_error(self, error: DecodeError) -> None:
        self._health.record_decode_error()

    # ------------------------------------------------------------------
    # Probe and clock sync
    # ------------------------------------------------------------------

    async def _service_probe(self) -> None:
        """Expire an overdue probe and send the next one when due."""
        now = time.monotonic()

        if (
            self._probe_sent_at is not None
            and now - self._probe_sent_at > self._probe_timeout_s
        ):
            logger.warning(
                "No PONG within %.1fs, device marked unreachable",
                self._probe_timeout_s,
            )
            self._probe_sent_at = None
            self._health.set_device_reachable(False)

        if now < self._next_probe_at:
            return
        self._next_probe_at = now + self._probe_interval_s

        if not self._clock.synced:
            self._pending_sync_ms = self._clock_ms()
            await self._write(encode_set_time(self._pending_sync_ms))
            logger.info("Sent SET_TIME %d", self._pending_sync_ms)

        if self._probe_sent_at is None:
            self._probe_sent_at = now
            await self._write(encode_ping())

    async def _write(self, data: bytes) -> None:
        assert self._port is not None
        port = self._port

        def _write_and_flush() -> None:
            port.write(data)
            port.flush()

        await asyncio.to_thread(_write_and_flush)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _resolve_path(self) -> str:
        if self._device_path:
            return self._device_path
        return find_port(self._device_name)

    def _connect(self) -> None:
        """Open the port and reset per-connection state. Runs in a worker thread."""
        path = self._resolve_path()
        self._port = open_serial(path, self._baud_rate, self._timeout_s)
        # The board may have reset on open, so its clock must be set again.
        self._clock.unsync()
        self._pending_sync_ms = None
        self._probe_sent_at = None
        self._next_probe_at = 0.0
        logger.info("Serial port %s opened (baud=%d)", path, self._baud_rate)

    async def _on_link_failure(self, exc: BaseException) -> None:
        logger.warning("Serial link failed: %s", exc)
        self._health.set_device_reachable(False)
        self._health.record_link_error()
        port, self._port = self._port, None
        if port is not None:
            with contextlib.suppress(serial.SerialException, OSError):
                await asyncio.to_thread(port.close)

    async def _reconnect(self, shutdown_event: asyncio.Event) -> None:
        """Wait the backoff delay, then try to reopen the port once."""
        delay = self._backoff.failure()
        logger.warning(
            "Reconnecting in %.1fs (consecutive failures: %d)",
            delay,
            self._backoff.failures,
        )
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        if shutdown_event.is_set():
            return

        try:
            await asyncio.to_thread(self._connect)
        except DeviceError as exc:
            logger.warning("Reconnect failed: %s", exc)
            self._health.record_link_error()
            return
        self._backoff.reset()
