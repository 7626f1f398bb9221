"""
Pure frame decoder that turns device lines into Readings and ControlReplies.

The sensor board speaks a newline-delimited ASCII protocol. Each line is one
of:

- ``<21.50|40.00|412.30>``: bracketed temperature/humidity/air-quality triplet.
- ``[{"type": "temperature", "value": 21.5, "timestamp": 1700000000000}, ...]``:
  JSON array of measurements sharing the channel with the triplet format.
- ``PONG``: answer to our ``PING`` liveness probe.
- ``PING``: echo of our own probe, ignored.
- ``New timestamp received and set: <ms>``: acknowledgment of ``SET_TIME``.

Malformed input is dropped at the smallest granularity possible: a bad field
drops only that measurement, a bad line drops only that line. Nothing here
raises to the caller; every drop is logged and reported through ``on_error``.

Timestamps come from a :class:`DeviceClock`. Until the device clock has been
synchronised with ``SET_TIME`` every reading carries the host receipt time and
is flagged ``low_confidence``. After sync, a device timestamp further than
the allowed skew from receipt time is not trusted either: the reading falls
back to receipt time and is flagged ``low_confidence``.

This module does no I/O. Receipt time is injected so tests stay deterministic.

CHANGELOG:
- 2026-10-20: Bound device timestamps by a maximum skew from receipt time
- 2026-10-19: Keep remaining triplet fields when one is malformed
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Iterable, Iterator

from aero_bridge.src.errors import DecodeError
from aero_bridge.src.models import (
    TRIPLET_KINDS,
    ControlKind,
    ControlReply,
    Frame,
    Reading,
    ReadingKind,
)

logger = logging.getLogger(__name__)

PING_TOKEN = "PING"
PONG_TOKEN = "PONG"
SET_TIME_TOKEN = "SET_TIME"
TIME_ACK_PREFIX = "New timestamp received and set:"

DEFAULT_MAX_SKEW_MS = 300_000
"""Largest accepted distance between a device timestamp and receipt time."""

ErrorCallback = Callable[[DecodeError], None]


def now_ms() -> int:
    """Current host time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------------
# Device clock
# ---------------------------------------------------------------------------


class DeviceClock:
    """Maps device-reported timestamps to absolute time.

    The board keeps a relative clock. After the host sends ``SET_TIME`` with a
    base epoch value and the board acknowledges it, the board reports absolute
    epoch milliseconds. Before that, device timestamps are meaningless and the
    host receipt time is used instead.

    A device timestamp more than *max_skew_ms* away from receipt time is
    replaced by receipt time and flagged low confidence, so one corrupt value
    cannot drag later timestamps with it.

    :meth:`resolve` never goes backwards while the sync lasts, so timestamps
    stay non-decreasing on one connection. :meth:`unsync` starts over.

    Args:
        max_skew_ms: Largest accepted ``|device_ms - received_at_ms|``.

    Raises:
        ValueError: If *max_skew_ms* is not positive.
    """

    def __init__(self, max_skew_ms: int = DEFAULT_MAX_SKEW_MS) -> None:
        if max_skew_ms <= 0:
            raise ValueError(f"max_skew_ms must be > 0 (got {max_skew_ms})")
        self._max_skew_ms = max_skew_ms
        self._synced = False
        self._base_ms: int | None = None
        self._last_ms = 0

    @property
    def synced(self) -> bool:
        return self._synced

    @property
    def base_ms(self) -> int | None:
        return self._base_ms

    def sync(self, base_ms: int) -> None:
        """Mark the clock as synchronised at *base_ms*."""
        self._synced = True
        self._base_ms = base_ms
        logger.info("Device clock synchronised at %d", base_ms)

    def unsync(self) -> None:
        """Forget the sync, e.g. after the device was reconnected (and possibly reset)."""
        self._synced = False
        self._last_ms = 0

    def resolve(self, device_ms: int | None, received_at_ms: int) -> tuple[int, bool]:
        """Choose the timestamp for a reading.

        Args:
            device_ms: Timestamp reported by the device, if any.
            received_at_ms: Host time the line was read.

        Returns:
            ``(timestamp_ms, low_confidence)``.
        """
        if self._synced and device_ms is not None:
            if abs(device_ms - received_at_ms) > self._max_skew_ms:
                logger.warning(
                    "Device timestamp %d is %dms from receipt time, using receipt time",
                    device_ms,
                    device_ms - received_at_ms,
                )
                ts, low = received_at_ms, True
            else:
                ts, low = device_ms, False
        else:
            ts, low = received_at_ms, not self._synced
        ts = max(ts, self._last_ms)
        self._last_ms = ts
        return ts, low


# ---------------------------------------------------------------------------
# Line decoding
# ---------------------------------------------------------------------------


def _report(error: DecodeError, on_error: ErrorCallback | None) -> None:
    logger.warning("Decode error: %s", error)
    if on_error is not None:
        on_error(error)


def _parse_value(raw: object) -> float:
    """Parse a measurement value, rejecting booleans, NaN and infinities."""
    if isinstance(raw, bool):
        raise DecodeError(f"non-numeric value {raw!r}")
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"non-numeric value {raw!r}") from exc
    if not math.isfinite(value):
        raise DecodeError(f"non-finite value {raw!r}")
    return value


def _decode_triplet(
    line: str,
    *,
    clock: DeviceClock,
    received_at_ms: int,
    on_error: ErrorCallback | None,
) -> list[Frame]:
    fields = [part.strip() for part in line[1:-1].split("|")]
    if len(fields) != len(TRIPLET_KINDS):
        _report(
            DecodeError(
                f"expected {len(TRIPLET_KINDS)} fields, got {len(fields)}: {line!r}"
            ),
            on_error,
        )
        return []

    ts, low = clock.resolve(None, received_at_ms)
    readings: list[Frame] = []
    for kind, raw in zip(TRIPLET_KINDS, fields, strict=True):
        try:
            value = _parse_value(raw)
        except DecodeError as exc:
            _report(DecodeError(f"{kind.value}: {exc} in {line!r}"), on_error)
            continue
        readings.append(
            Reading(kind=kind, value=value, timestamp=ts, low_confidence=low)
        )
    return readings


def _decode_measurement(
    item: object,
    *,
    clock: DeviceClock,
    received_at_ms: int,
) -> Reading:
    if not isinstance(item, dict):
        raise DecodeError(f"measurement is not an object: {item!r}")
    if "type" not in item or "value" not in item:
        raise DecodeError(f"measurement missing 'type' or 'value': {item!r}")
    try:
        kind = ReadingKind(item["type"])
    except ValueError as exc:
        raise DecodeError(f"unknown measurement type {item['type']!r}") from exc
    value = _parse_value(item["value"])

    device_ms = item.get("timestamp")
    if device_ms is not None and (
        isinstance(device_ms, bool) or not isinstance(device_ms, int) or device_ms < 0
    ):
        raise DecodeError(f"invalid timestamp {device_ms!r} for {kind.value}")

    ts, low = clock.resolve(device_ms, received_at_ms)
    return Reading(kind=kind, value=value, timestamp=ts, low_confidence=low)


def _decode_json(
    line: str,
    *,
    clock: DeviceClock,
    received_at_ms: int,
    on_error: ErrorCallback | None,
) -> list[Frame]:
    try:
        items = json.loads(line)
    except json.JSONDecodeError as exc:
        _report(DecodeError(f"invalid JSON ({exc.msg}): {line!r}"), on_error)
        return []
    if not isinstance(items, list):
        _report(DecodeError(f"JSON payload is not an array: {line!r}"), on_error)
        return []

    readings: list[Frame] = []
    for item in items:
        try:
            readings.append(
                _decode_measurement(item, clock=clock, received_at_ms=received_at_ms)
            )
        except DecodeError as exc:
            _report(exc, on_error)
    return readings


def decode_line(
    line: bytes | str,
    *,
    clock: DeviceClock,
    received_at_ms: int,
    on_error: ErrorCallback | None = None,
) -> list[Frame]:
    """Decode one line from the device into zero or more frames.

    Args:
        line: Raw line, with or without the trailing newline.
        clock: Device clock used to timestamp readings.
        received_at_ms: Host time the line was read, in epoch milliseconds.
        on_error: Called once per dropped line or measurement.

    Returns:
        Readings and control replies in line order. Empty for blank lines,
        probe echoes, and lines that could not be decoded at all.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("ascii")
        except UnicodeDecodeError:
            _report(DecodeError(f"non-ASCII bytes: {line!r}"), on_error)
            return []

    text = line.strip()
    if not text or text == PING_TOKEN:
        return []
    if text == PONG_TOKEN:
        return [ControlReply(kind=ControlKind.PONG)]
    if text.startswith(TIME_ACK_PREFIX):
        raw_ts = text[len(TIME_ACK_PREFIX) :].strip()
        try:
            return [ControlReply(kind=ControlKind.TIME_ACK, value=int(raw_ts))]
        except ValueError:
            _report(DecodeError(f"invalid time acknowledgment: {text!r}"), on_error)
            return []
    if text.startswith("<") and text.endswith(">"):
        return _decode_triplet(
            text, clock=clock, received_at_ms=received_at_ms, on_error=on_error
        )
    if text.startswith("["):
        return _decode_json(
            text, clock=clock, received_at_ms=received_at_ms, on_error=on_error
        )

    _report(DecodeError(f"unrecognised line: {text!r}"), on_error)
    return []


def decode_lines(
    lines: Iterable[bytes | str],
    *,
    clock: DeviceClock,
    clock_ms: Callable[[], int] = now_ms,
    on_error: ErrorCallback | None = None,
) -> Iterator[Frame]:
    """Lazily decode an iterable of lines.

    No state is carried between lines except *clock*, so after a reconnect
    decoding simply resumes with the next line the new stream yields.
    """
    for line in lines:
        yield from decode_line(
            line, clock=clock, received_at_ms=clock_ms(), on_error=on_error
        )


def encode_ping() -> bytes:
    return f"{PING_TOKEN}\n".encode("ascii")


def encode_set_time(base_ms: int) -> bytes:
    """Encode the two-line clock-set request."""
    return f"{SET_TIME_TOKEN}\n{base_ms}\n".encode("ascii")
