"""
Unit tests for the serial device link.

Tests verify:
- Port discovery matches normalised USB product names.
- open() turns an unopenable device into ConfigurationError.
- The read loop sends SET_TIME and PING, syncs the clock on a matching
  acknowledgment, and buffers decoded readings.
- PONG marks the device reachable; an overdue probe marks it unreachable.
- Decode errors are counted and never stop the loop.
- A serial failure marks the device unreachable and closes the port.
- Reconnect reopens the port, resets backoff and unsyncs the clock.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import serial
from aero_bridge.src.backoff import Backoff
from aero_bridge.src.device import DeviceLink, find_port, normalize_product_name
from aero_bridge.src.errors import ConfigurationError, DeviceError
from aero_bridge.src.health import HealthStatus
from aero_bridge.src.models import ControlKind, ControlReply, ReadingKind
from aero_bridge.src.spool import Spool

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakePort:
    """Scripted serial port.

    readline() returns the scripted lines in order. Once they are exhausted
    it sets *stop* and returns an empty read, like a port timing out. An
    exception instance in the script is raised instead of returned.
    """

    def __init__(self, lines: list[bytes | Exception], stop: asyncio.Event) -> None:
        self._lines = list(lines)
        self._stop = stop
        self.written: list[bytes] = []
        self.closed = False

    def readline(self) -> bytes:
        if not self._lines:
            self._stop.set()
            return b""
        item = self._lines.pop(0)
        if isinstance(item, Exception):
            self._stop.set()
            raise item
        return item

    def write(self, data: bytes) -> int:
        self.written.append(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def _link(health: HealthStatus, **kwargs: object) -> DeviceLink:
    return DeviceLink(
        health=health,
        device_path="/dev/ttyACM0",
        clock_ms=lambda: 1_000,
        backoff=Backoff(initial_s=0.01, multiplier=2.0, max_s=0.01),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Port discovery
# ---------------------------------------------------------------------------


class TestFindPort:
    """find_port matches USB product names ignoring case and separators."""

    def test_normalize(self) -> None:
        assert normalize_product_name("Arduino_Uno R3") == "arduinounor3"

    def test_matches_normalised_product(self) -> None:
        ports = [
            SimpleNamespace(device="/dev/ttyS0", product=None),
            SimpleNamespace(device="/dev/ttyACM0", product="Arduino Uno"),
        ]
        with patch("aero_bridge.src.device.list_ports.comports", return_value=ports):
            assert find_port("arduino-uno") == "/dev/ttyACM0"

    def test_no_match_raises(self) -> None:
        with patch("aero_bridge.src.device.list_ports.comports", return_value=[]):
            with pytest.raises(DeviceError, match="Arduino Uno"):
                find_port("Arduino Uno")


# ---------------------------------------------------------------------------
# Startup open
# ---------------------------------------------------------------------------


class TestOpen:
    def test_requires_path_or_name(self) -> None:
        with pytest.raises(ValueError):
            DeviceLink(health=HealthStatus())

    @pytest.mark.asyncio
    async def test_unopenable_device_is_configuration_error(self) -> None:
        link = _link(HealthStatus())

        with patch(
            "aero_bridge.src.device.open_serial",
            side_effect=DeviceError("permission denied"),
        ):
            with pytest.raises(ConfigurationError, match="permission denied"):
                await link.open()

        assert link.connected is False

    @pytest.mark.asyncio
    async def test_missing_named_device_is_configuration_error(self) -> None:
        link = DeviceLink(health=HealthStatus(), device_name="Arduino Uno")

        with patch("aero_bridge.src.device.list_ports.comports", return_value=[]):
            with pytest.raises(ConfigurationError):
                await link.open()


# ---------------------------------------------------------------------------
# Read loop
# ---------------------------------------------------------------------------


class TestReadLoop:
    """End-to-end behaviour of run() against a scripted port."""

    @pytest.mark.asyncio
    async def test_sync_probe_and_buffer(self) -> None:
        health = HealthStatus()
        stop = asyncio.Event()
        port = FakePort(
            [
                b"New timestamp received and set: 1000\r\n",
                b"PONG\r\n",
                b"<21.5|40.0|412.3>\r\n",
            ],
            stop,
        )
        link = _link(health)

        async with Spool(path=":memory:", capacity=10) as spool:
            with patch("aero_bridge.src.device.open_serial", return_value=port):
                await link.open()
                await asyncio.wait_for(link.run(spool, stop), timeout=5)

            entries = await spool.peek_batch(10)

        assert port.written == [b"SET_TIME\n1000\n", b"PING\n"]
        assert link.clock.synced is True
        assert [e.reading.kind for e in entries] == [
            ReadingKind.TEMPERATURE,
            ReadingKind.HUMIDITY,
            ReadingKind.AIR_QUALITY,
        ]
        assert all(e.reading.low_confidence is False for e in entries)
        assert health.snapshot().device_reachable is True

    @pytest.mark.asyncio
    async def test_readings_before_sync_are_low_confidence(self) -> None:
        stop = asyncio.Event()
        port = FakePort([b"<21.5|40.0|412.3>\n"], stop)
        link = _link(HealthStatus())

        async with Spool(path=":memory:", capacity=10) as spool:
            with patch("aero_bridge.src.device.open_serial", return_value=port):
                await link.open()
                await asyncio.wait_for(link.run(spool, stop), timeout=5)

            entries = await spool.peek_batch(10)

        assert len(entries) == 3
        assert all(e.reading.low_confidence for e in entries)
        assert all(e.reading.timestamp == 1_000 for e in entries)

    @pytest.mark.asyncio
    async def test_garbage_counted_and_loop_continues(self) -> None:
        health = HealthStatus()
        stop = asyncio.Event()
        port = FakePort([b"#@!garbage\n", b"<4|5\n", b"<1|2|3>\n"], stop)
        link = _link(health)

        async with Spool(path=":memory:", capacity=10) as spool:
            with patch("aero_bridge.src.device.open_serial", return_value=port):
                await link.open()
                await asyncio.wait_for(link.run(spool, stop), timeout=5)

            assert await spool.count() == 3

        assert health.snapshot().decode_errors == 2

    @pytest.mark.asyncio
    async def test_push_failure_does_not_stop_loop(self) -> None:
        stop = asyncio.Event()
        port = FakePort([b"<1|2|3>\n", b"<4|5|6>\n"], stop)
        link = _link(HealthStatus())
        spool = AsyncMock()
        spool.push = AsyncMock(side_effect=[RuntimeError("disk full"), 1, 2, 3, 4, 5])

        with patch("aero_bridge.src.device.open_serial", return_value=port):
            await link.open()
            await asyncio.wait_for(link.run(spool, stop), timeout=5)

        # First line aborts after its first push; the second line is buffered.
        assert spool.push.await_count == 4

    @pytest.mark.asyncio
    async def test_serial_failure_marks_unreachable_and_closes(self) -> None:
        health = HealthStatus()
        stop = asyncio.Event()
        port = FakePort([b"PONG\n", serial.SerialException("device unplugged")], stop)
        link = _link(health)

        async with Spool(path=":memory:", capacity=10) as spool:
            with patch("aero_bridge.src.device.open_serial", return_value=port):
                await link.open()
                await asyncio.wait_for(link.run(spool, stop), timeout=5)

        snapshot = health.snapshot()
        assert snapshot.device_reachable is False
        assert snapshot.link_errors == 1
        assert port.closed is True
        assert link.connected is False


# ---------------------------------------------------------------------------
# Probe and clock sync
# ---------------------------------------------------------------------------


class TestProbe:
    """Liveness probe bookkeeping."""

    @pytest.mark.asyncio
    async def test_overdue_probe_marks_unreachable(self) -> None:
        health = HealthStatus()
        health.set_device_reachable(True)
        link = _link(health, probe_timeout_s=1.0)
        link._port = FakePort([], asyncio.Event())
        link._probe_sent_at = time.monotonic() - 10
        link._next_probe_at = time.monotonic() + 100

        await link._service_probe()

        assert health.snapshot().device_reachable is False
        assert link._port.written == []

    @pytest.mark.asyncio
    async def test_no_second_ping_while_probe_pending(self) -> None:
        link = _link(HealthStatus())
        link._port = FakePort([], asyncio.Event())
        link.clock.sync(1_000)
        link._probe_sent_at = time.monotonic()

        await link._service_probe()

        assert link._port.written == []

    def test_mismatched_time_ack_keeps_clock_unsynced(self) -> None:
        link = _link(HealthStatus())
        link._pending_sync_ms = 1_000

        link._handle_control(ControlReply(kind=ControlKind.TIME_ACK, value=999))

        assert link.clock.synced is False

    def test_matching_time_ack_syncs_clock(self) -> None:
        link = _link(HealthStatus())
        link._pending_sync_ms = 1_000

        link._handle_control(ControlReply(kind=ControlKind.TIME_ACK, value=1_000))

        assert link.clock.synced is True
        assert link.clock.base_ms == 1_000


# ---------------------------------------------------------------------------
# Reconnect
# ---------------------------------------------------------------------------


class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnect_reopens_and_unsyncs(self) -> None:
        link = _link(HealthStatus())
        link.clock.sync(1_000)
        port = FakePort([], asyncio.Event())

        with patch("aero_bridge.src.device.open_serial", return_value=port):
            await link._reconnect(asyncio.Event())

        assert link.connected is True
        assert link.clock.synced is False

    @pytest.mark.asyncio
    async def test_failed_reconnect_counts_link_error(self) -> None:
        health = HealthStatus()
        link = _link(health)

        with patch(
            "aero_bridge.src.device.open_serial",
            side_effect=DeviceError("no such device"),
        ):
            await link._reconnect(asyncio.Event())

        assert link.connected is False
        assert health.snapshot().link_errors == 1

    @pytest.mark.asyncio
    async def test_shutdown_during_backoff_skips_reconnect(self) -> None:
        link = _link(HealthStatus())
        stop = asyncio.Event()
        stop.set()

        with patch("aero_bridge.src.device.open_serial") as mock_open:
            await link._reconnect(stop)

        mock_open.assert_not_called()
