"""
Bridge daemon main loop for the serial-sensor-to-InfluxDB pipeline.

Runs three concurrent asyncio tasks:
1. **Device loop**: the DeviceLink reads lines from the sensor board, decodes
   them, and pushes readings into the local SQLite spool.
2. **Forward loop**: the Forwarder drains spool batches through the
   aggregator into InfluxDB, backing off while the store is unreachable.
3. **Health server**: uvicorn serves GET /healthz from the shared
   HealthStatus.

The device and forward loops meet only at the spool. An exception in one
iteration is logged and does not crash the loop or affect the other loop.
Graceful shutdown on SIGTERM/SIGINT sets a shared asyncio.Event, allowing
both loops to finish their current iteration and then attempt one final
flush before exiting. Readings still unacked at exit stay in the spool for
the next start.

Fatal configuration errors (invalid settings, unopenable device, rejected
InfluxDB token) stop the process with exit status 1 before any loop starts.

CHANGELOG:
- 2026-10-20: Flush open aggregation windows in the final drain
- 2026-10-19: Serve health endpoint alongside the loops
- 2026-10-19: Replace poll/upload loops with device/forward loops
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from aero_bridge.src.errors import ConfigurationError
from aero_bridge.src.forwarder import DrainResult

if TYPE_CHECKING:
    import uvicorn

    from aero_bridge.src.device import DeviceLink
    from aero_bridge.src.forwarder import Forwarder
    from aero_bridge.src.spool import Spool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the bridge daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, excluding secrets.

    Logs device, InfluxDB target, spool and timing settings but only a
    masked fingerprint of influx_token.

    Args:
        settings: A BridgeSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Bridge daemon starting with config: "
        "device_path=%s, device_name=%s, baud_rate=%s, location=%s, "
        "influx_url=%s, influx_org=%s, influx_bucket=%s, "
        "spool_path=%s, buffer_capacity=%s, batch_size=%s, "
        "flush_interval_s=%s, aggregation_window_s=%s, "
        "probe_interval_s=%s, health_port=%s, health_policy=%s, "
        "influx_token_masked=%s",
        settings.device_path,  # type: ignore[attr-defined]
        settings.device_name,  # type: ignore[attr-defined]
        settings.baud_rate,  # type: ignore[attr-defined]
        settings.location,  # type: ignore[attr-defined]
        settings.influx_url,  # type: ignore[attr-defined]
        settings.influx_org,  # type: ignore[attr-defined]
        settings.influx_bucket,  # type: ignore[attr-defined]
        settings.spool_path,  # type: ignore[attr-defined]
        settings.buffer_capacity,  # type: ignore[attr-defined]
        settings.batch_size,  # type: ignore[attr-defined]
        settings.flush_interval_s,  # type: ignore[attr-defined]
        settings.aggregation_window_s,  # type: ignore[attr-defined]
        settings.probe_interval_s,  # type: ignore[attr-defined]
        settings.health_port,  # type: ignore[attr-defined]
        settings.health_policy,  # type: ignore[attr-defined]
        _masked_token(settings.influx_token),  # type: ignore[attr-defined]
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _drain_once(
    *, forwarder: Forwarder, spool: Spool, final: bool = False
) -> DrainResult | None:
    """Execute a single drain cycle.

    With *final*, aggregation windows that are still open are flushed too.

    Catches all exceptions so that the caller's loop is never broken.

    Returns:
        The cycle's DrainResult, or None if the cycle raised.
    """
    try:
        return await forwarder.drain(spool, final=final)
    except Exception:
        logger.error("Drain cycle error", exc_info=True)
        return None


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _device_loop(
    *,
    link: DeviceLink,
    spool: Spool,
    shutdown_event: asyncio.Event,
    restart_delay_s: float = 1.0,
) -> None:
    """Run the device read loop, restarting it if it ever raises."""
    while not shutdown_event.is_set():
        try:
            await link.run(spool, shutdown_event)
        except Exception:
            logger.error("Device loop crashed, restarting", exc_info=True)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=restart_delay_s)


async def _forward_loop(
    *,
    forwarder: Forwarder,
    spool: Spool,
    flush_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the forward loop until shutdown_event is set.

    Executes _drain_once, then waits for the forwarder's next delay (flush
    interval when idle, backoff after a failure, none while a backlog is
    draining), checking the shutdown event between iterations.
    """
    logger.info("Forward loop started (interval=%ss)", flush_interval_s)
    while not shutdown_event.is_set():
        result = await _drain_once(forwarder=forwarder, spool=spool)
        if result is None:
            delay = flush_interval_s
        else:
            delay = forwarder.next_delay(result, flush_interval_s)
        if delay <= 0:
            continue
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
    logger.info("Forward loop stopped")


async def _serve_health(server: uvicorn.Server, shutdown_event: asyncio.Event) -> None:
    """Serve the health API until shutdown; a stopped server triggers shutdown."""

    async def _stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    stopper = asyncio.create_task(_stop_on_shutdown())
    try:
        await server.serve()
    finally:
        stopper.cancel()
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    link: DeviceLink,
    spool: Spool,
    forwarder: Forwarder,
    flush_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run device and forward loops concurrently until shutdown.

    Both loops run as independent asyncio tasks via asyncio.gather().
    When the shutdown_event is set, both loops finish their current iteration,
    then a final flush, including still-open aggregation windows, is attempted
    before returning.
    """
    logger.info("Starting concurrent device and forward loops")

    await asyncio.gather(
        _device_loop(link=link, spool=spool, shutdown_event=shutdown_event),
        _forward_loop(
            forwarder=forwarder,
            spool=spool,
            flush_interval_s=flush_interval_s,
            shutdown_event=shutdown_event,
        ),
    )

    logger.info("Attempting final flush before exit")
    await _drain_once(forwarder=forwarder, spool=spool, final=True)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Raises:
        ConfigurationError: Device or InfluxDB credentials unusable.
        ValidationError: Invalid environment configuration.
    """
    configure_logging()

    import uvicorn

    from aero_bridge.src.aggregator import Aggregator
    from aero_bridge.src.api import create_app
    from aero_bridge.src.backoff import Backoff
    from aero_bridge.src.config import BridgeSettings
    from aero_bridge.src.decoder import DeviceClock
    from aero_bridge.src.device import DeviceLink
    from aero_bridge.src.forwarder import Forwarder
    from aero_bridge.src.health import HealthStatus
    from aero_bridge.src.sink import InfluxSink
    from aero_bridge.src.spool import Spool

    settings = BridgeSettings()
    logging.getLogger().setLevel(settings.log_level)
    log_config_summary(settings)

    health = HealthStatus()

    sink = InfluxSink(
        url=settings.influx_url,
        org=settings.influx_org,
        bucket=settings.influx_bucket,
        token=settings.influx_token,
        location=settings.location,
    )
    await sink.verify_credentials()

    link = DeviceLink(
        health=health,
        device_path=settings.device_path,
        device_name=settings.device_name,
        baud_rate=settings.baud_rate,
        timeout_s=settings.serial_timeout_s,
        probe_interval_s=settings.probe_interval_s,
        probe_timeout_s=settings.probe_timeout_s,
        clock=DeviceClock(max_skew_ms=int(settings.clock_max_skew_s * 1000)),
    )
    await link.open()

    forwarder = Forwarder(
        sink=sink,
        aggregator=Aggregator(
            window_ms=int(settings.aggregation_window_s * 1000),
            include_low_confidence=settings.aggregate_low_confidence,
        ),
        health=health,
        batch_size=settings.batch_size,
        backoff=Backoff(
            initial_s=settings.backoff_initial_s,
            multiplier=settings.backoff_multiplier,
            max_s=settings.backoff_max_s,
        ),
    )

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(health, settings.health_policy),
            host=settings.health_host,
            port=settings.health_port,
            log_config=None,
            access_log=False,
        )
    )

    try:
        async with Spool(settings.spool_path, capacity=settings.buffer_capacity) as spool:
            await asyncio.gather(
                run_loops(
                    link=link,
                    spool=spool,
                    forwarder=forwarder,
                    flush_interval_s=settings.flush_interval_s,
                    shutdown_event=shutdown_event,
                ),
                _serve_health(server, shutdown_event),
            )
    finally:
        await link.close()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the bridge daemon."""
    try:
        asyncio.run(async_main())
    except (ConfigurationError, ValidationError) as exc:
        logger.critical("Startup failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
