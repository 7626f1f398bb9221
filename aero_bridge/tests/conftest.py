"""
Shared test fixtures for bridge daemon tests.

Provides environment variable fixtures for BridgeSettings configuration tests.
All bridge env vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import pytest

# All BridgeSettings environment variable names, used for cleanup.
_ALL_BRIDGE_ENV_VARS = (
    "DEVICE_PATH",
    "DEVICE_NAME",
    "BAUD_RATE",
    "SERIAL_TIMEOUT_S",
    "LOCATION",
    "INFLUX_URL",
    "INFLUX_ORG",
    "INFLUX_BUCKET",
    "INFLUX_TOKEN",
    "SPOOL_PATH",
    "BUFFER_CAPACITY",
    "BATCH_SIZE",
    "FLUSH_INTERVAL_S",
    "AGGREGATION_WINDOW_S",
    "AGGREGATE_LOW_CONFIDENCE",
    "BACKOFF_INITIAL_S",
    "BACKOFF_MULTIPLIER",
    "BACKOFF_MAX_S",
    "PROBE_INTERVAL_S",
    "PROBE_TIMEOUT_S",
    "CLOCK_MAX_SKEW_S",
    "HEALTH_HOST",
    "HEALTH_PORT",
    "HEALTH_POLICY",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_bridge_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all bridge env vars and isolate from .env files before each test.

    This runs automatically for every test in the bridge test suite.
    Individual tests or fixtures then set only the vars they need.
    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_BRIDGE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for BridgeSettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "DEVICE_PATH": "/dev/ttyACM0",
        "DEVICE_NAME": "Arduino Uno",
        "BAUD_RATE": "115200",
        "SERIAL_TIMEOUT_S": "0.5",
        "LOCATION": "Lab",
        "INFLUX_URL": "https://influx.example.com",
        "INFLUX_ORG": "home",
        "INFLUX_BUCKET": "sensors",
        "INFLUX_TOKEN": "test-influx-token",
        "SPOOL_PATH": "/tmp/test-spool.db",
        "BUFFER_CAPACITY": "500",
        "BATCH_SIZE": "50",
        "FLUSH_INTERVAL_S": "30",
        "AGGREGATION_WINDOW_S": "10",
        "AGGREGATE_LOW_CONFIDENCE": "false",
        "BACKOFF_INITIAL_S": "2",
        "BACKOFF_MULTIPLIER": "3",
        "BACKOFF_MAX_S": "120",
        "PROBE_INTERVAL_S": "20",
        "PROBE_TIMEOUT_S": "4",
        "CLOCK_MAX_SKEW_S": "60",
        "HEALTH_HOST": "127.0.0.1",
        "HEALTH_PORT": "8080",
        "HEALTH_POLICY": "any",
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {
        "DEVICE_PATH": "/dev/ttyUSB0",
        "INFLUX_URL": "http://localhost:8086",
        "INFLUX_ORG": "org",
        "INFLUX_BUCKET": "bucket",
        "INFLUX_TOKEN": "token-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
