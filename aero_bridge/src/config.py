"""
Bridge daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded device paths, URLs, or credentials.

CHANGELOG:
- 2026-10-20: Add CLOCK_MAX_SKEW_S
- 2026-10-19: Add health policy and probe settings
- 2026-10-19: Initial creation

TODO:
- None
"""

import logging
from enum import Enum

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class HealthPolicy(str, Enum):
    """How device and sink reachability combine into overall health."""

    ALL = "all"
    ANY = "any"
    DEVICE = "device"
    SINK = "sink"


class BridgeSettings(BaseSettings):
    """Bridge daemon configuration for the serial-to-InfluxDB pipeline.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        device_path: Serial device path or pyserial URL (e.g. ``/dev/ttyACM0``).
        device_name: USB product name used to discover the port when
            ``device_path`` is empty (e.g. ``Arduino Uno``).
        baud_rate: Serial baud rate.
        serial_timeout_s: Read timeout per ``readline`` call.
        location: Value of the ``location`` tag on every point written.
        influx_url: InfluxDB base URL (http or https).
        influx_org: InfluxDB organisation.
        influx_bucket: InfluxDB bucket to write into.
        influx_token: InfluxDB API token.
        spool_path: SQLite spool file path; ``:memory:`` disables durability.
        buffer_capacity: Maximum number of readings held in the spool.
        batch_size: Max readings per write.
        flush_interval_s: Seconds between drain cycles when idle.
        aggregation_window_s: Averaging window; 0 disables aggregation.
        aggregate_low_confidence: Merge readings with host-assigned timestamps.
        backoff_initial_s: First retry delay after a failure.
        backoff_multiplier: Growth factor per consecutive failure.
        backoff_max_s: Retry delay cap.
        probe_interval_s: Seconds between ``PING`` probes and sync retries.
        probe_timeout_s: Seconds to wait for ``PONG`` before marking the
            device unreachable.
        clock_max_skew_s: Largest accepted distance between a device
            timestamp and host receipt time before the receipt time is used.
        health_host: Bind address of the health endpoint.
        health_port: Port of the health endpoint.
        health_policy: Reachability combination reported as overall health.
        log_level: Root log level name.
    """

    device_path: str = ""
    device_name: str = ""
    baud_rate: int = 9600
    serial_timeout_s: float = 1.0
    location: str = "Default"
    influx_url: str
    influx_org: str
    influx_bucket: str
    influx_token: str
    spool_path: str = "/data/spool.db"
    buffer_capacity: int = 1000
    batch_size: int = 100
    flush_interval_s: float = 60.0
    aggregation_window_s: float = 60.0
    aggregate_low_confidence: bool = True
    backoff_initial_s: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_s: float = 300.0
    probe_interval_s: float = 30.0
    probe_timeout_s: float = 5.0
    clock_max_skew_s: float = 300.0
    health_host: str = "0.0.0.0"  # noqa: S104
    health_port: int = 3030
    health_policy: HealthPolicy = HealthPolicy.ALL
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _device_must_be_identified(self) -> "BridgeSettings":
        """Require either an explicit device path or a product name to search for."""
        if not self.device_path and not self.device_name:
            raise ValueError("Either DEVICE_PATH or DEVICE_NAME must be set")
        return self

    @model_validator(mode="after")
    def _backoff_cap_not_below_initial(self) -> "BridgeSettings":
        """Validate BACKOFF_MAX_S >= BACKOFF_INITIAL_S."""
        if self.backoff_max_s < self.backoff_initial_s:
            raise ValueError("BACKOFF_MAX_S must be >= BACKOFF_INITIAL_S")
        return self

    @model_validator(mode="after")
    def _probe_timeout_below_interval(self) -> "BridgeSettings":
        """A probe must time out before the next one is sent."""
        if self.probe_timeout_s >= self.probe_interval_s:
            raise ValueError("PROBE_TIMEOUT_S must be < PROBE_INTERVAL_S")
        return self

    @field_validator("influx_url")
    @classmethod
    def influx_url_must_be_http(cls, v: str) -> str:
        """Validate that the InfluxDB URL has an http(s) scheme."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"INFLUX_URL must start with http:// or https:// (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("location")
    @classmethod
    def location_must_not_be_empty(cls, v: str) -> str:
        """Validate the location tag is non-empty."""
        if not v.strip():
            raise ValueError("LOCATION must not be empty")
        return v

    @field_validator("baud_rate", "buffer_capacity")
    @classmethod
    def must_be_positive_int(cls, v: int) -> int:
        """Validate BAUD_RATE and BUFFER_CAPACITY are >= 1."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 5000."""
        if v < 1 or v > 5000:
            raise ValueError("BATCH_SIZE must be >= 1 and <= 5000")
        return v

    @field_validator(
        "serial_timeout_s",
        "flush_interval_s",
        "backoff_initial_s",
        "probe_interval_s",
        "probe_timeout_s",
        "clock_max_skew_s",
    )
    @classmethod
    def must_be_positive_float(cls, v: float) -> float:
        """Validate durations that must be strictly positive."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("aggregation_window_s")
    @classmethod
    def aggregation_window_must_be_non_negative(cls, v: float) -> float:
        """Validate the aggregation window is non-negative (0 disables)."""
        if v < 0:
            raise ValueError("AGGREGATION_WINDOW_S must be >= 0")
        return v

    @field_validator("backoff_multiplier")
    @classmethod
    def backoff_multiplier_must_not_shrink(cls, v: float) -> float:
        """Validate the backoff multiplier is at least 1."""
        if v < 1:
            raise ValueError("BACKOFF_MULTIPLIER must be >= 1")
        return v

    @field_validator("health_port")
    @classmethod
    def health_port_must_be_valid(cls, v: int) -> int:
        """Validate health port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("HEALTH_PORT must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate LOG_LEVEL names a stdlib logging level."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"LOG_LEVEL must be a logging level name (got: '{v}')")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
