"""
Pydantic models for sensor readings and device control replies.

Defines the immutable Reading value produced by the frame decoder and carried
unchanged through the spool, the aggregator and the sink, plus the transient
ControlReply values answered by the device on the same serial channel.

CHANGELOG:
- 2026-10-19: Add aggregation summary fields to Reading
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ReadingKind(str, Enum):
    """Measurement kinds reported by the sensor board.

    The value doubles as the InfluxDB measurement name and as the ``type``
    field of the board's JSON payload.
    """

    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    AIR_QUALITY = "air_quality"
    PRESSURE = "pressure"


TRIPLET_KINDS: tuple[ReadingKind, ...] = (
    ReadingKind.TEMPERATURE,
    ReadingKind.HUMIDITY,
    ReadingKind.AIR_QUALITY,
)
"""Field order of the bracketed ``<t|h|aq>`` record."""


class ControlKind(str, Enum):
    """Control replies the board sends in answer to host requests."""

    PONG = "pong"
    TIME_ACK = "time_ack"


class Reading(BaseModel):
    """A single typed, timestamped sensor measurement.

    Attributes:
        kind: What was measured.
        value: Measured value in the board's engineering units.
        timestamp: Epoch milliseconds.
        low_confidence: True when the timestamp is the host's receipt time
            because the device clock was not yet synchronised.
        samples: Number of raw readings merged into this one (1 if raw).
        min_value: Smallest merged value, only set on aggregated readings.
        max_value: Largest merged value, only set on aggregated readings.
    """

    model_config = ConfigDict(frozen=True)

    kind: ReadingKind
    value: float
    timestamp: int
    low_confidence: bool = False
    samples: int = 1
    min_value: float | None = None
    max_value: float | None = None


class ControlReply(BaseModel):
    """A control reply from the board. Never persisted.

    Attributes:
        kind: Which request this answers.
        value: Echoed timestamp for ``TIME_ACK``; ``None`` otherwise.
    """

    model_config = ConfigDict(frozen=True)

    kind: ControlKind
    value: int | None = None


class BufferedEntry(BaseModel):
    """A Reading held in the spool together with its sequence number.

    ``seq`` is the spool's ordering key. It is assigned at insertion, strictly
    increasing, and never reused.
    """

    model_config = ConfigDict(frozen=True)

    seq: int
    reading: Reading


Frame = Reading | ControlReply
"""One decoded unit of the device stream."""
