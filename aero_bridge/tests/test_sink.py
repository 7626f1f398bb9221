"""
Unit tests for the InfluxDB v2 sink.

Tests verify:
- Readings encode to line protocol with the location tag and ms timestamps.
- Aggregated readings carry min/max/samples fields.
- Low-confidence readings are tagged.
- write() POSTs to /api/v2/write with org, bucket, precision and token.
- Non-2xx, timeouts and transport errors raise SinkError.
- ping() reflects the /health status.
- verify_credentials() fails fast on rejected tokens and missing buckets.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from aero_bridge.src.errors import ConfigurationError, SinkError
from aero_bridge.src.models import Reading, ReadingKind
from aero_bridge.src.sink import InfluxSink, to_line_protocol

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sink(url: str = "https://influx.example.com") -> InfluxSink:
    return InfluxSink(
        url=url,
        org="home",
        bucket="sensors",
        token="tok-123",
        location="Lab",
    )


def _mock_client(
    *,
    post: httpx.Response | Exception | None = None,
    get: httpx.Response | Exception | None = None,
) -> AsyncMock:
    """Return an AsyncMock usable as ``async with httpx.AsyncClient() as c``."""
    client = AsyncMock()
    if isinstance(post, Exception):
        client.post = AsyncMock(side_effect=post)
    else:
        client.post = AsyncMock(return_value=post)
    if isinstance(get, Exception):
        client.get = AsyncMock(side_effect=get)
    else:
        client.get = AsyncMock(return_value=get)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _readings() -> list[Reading]:
    return [
        Reading(kind=ReadingKind.TEMPERATURE, value=21.5, timestamp=1_000),
        Reading(kind=ReadingKind.HUMIDITY, value=40.0, timestamp=1_000),
    ]


# ---------------------------------------------------------------------------
# Line protocol
# ---------------------------------------------------------------------------


class TestLineProtocol:
    """to_line_protocol output."""

    def test_raw_reading(self) -> None:
        reading = Reading(kind=ReadingKind.TEMPERATURE, value=21.5, timestamp=1_000)

        assert to_line_protocol(reading, "Lab") == "temperature,location=Lab value=21.5 1000"

    def test_integral_value_written_as_float(self) -> None:
        reading = Reading(kind=ReadingKind.HUMIDITY, value=40, timestamp=5)

        assert to_line_protocol(reading, "Lab") == "humidity,location=Lab value=40.0 5"

    def test_location_is_escaped(self) -> None:
        reading = Reading(kind=ReadingKind.PRESSURE, value=1.0, timestamp=1)

        line = to_line_protocol(reading, "Living Room,1=a")

        assert line.startswith(r"pressure,location=Living\ Room\,1\=a ")

    def test_low_confidence_tag(self) -> None:
        reading = Reading(
            kind=ReadingKind.AIR_QUALITY,
            value=412.3,
            timestamp=1,
            low_confidence=True,
        )

        assert ",confidence=low " in to_line_protocol(reading, "Lab")

    def test_aggregated_reading_fields(self) -> None:
        reading = Reading(
            kind=ReadingKind.TEMPERATURE,
            value=22.0,
            timestamp=60_000,
            samples=3,
            min_value=20.0,
            max_value=24.0,
        )

        assert to_line_protocol(reading, "Lab") == (
            "temperature,location=Lab value=22.0,min=20.0,max=24.0,samples=3i 60000"
        )


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_non_http_url_rejected(self) -> None:
        with pytest.raises(ValueError, match="http"):
            _sink(url="ftp://influx.example.com")

    def test_trailing_slash_stripped(self) -> None:
        assert _sink(url="http://localhost:8086/")._url == "http://localhost:8086"


# ---------------------------------------------------------------------------
# write()
# ---------------------------------------------------------------------------


class TestWrite:
    """Batch writes against a mocked HTTP client."""

    @pytest.mark.asyncio
    async def test_posts_line_protocol_batch(self) -> None:
        client = _mock_client(post=httpx.Response(204))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            await _sink().write(_readings())

        client.post.assert_awaited_once()
        args, kwargs = client.post.call_args
        assert args[0] == "https://influx.example.com/api/v2/write"
        assert kwargs["params"] == {"org": "home", "bucket": "sensors", "precision": "ms"}
        assert kwargs["headers"]["Authorization"] == "Token tok-123"
        assert kwargs["content"].decode().splitlines() == [
            "temperature,location=Lab value=21.5 1000",
            "humidity,location=Lab value=40.0 1000",
        ]

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self) -> None:
        with patch("aero_bridge.src.sink.httpx.AsyncClient") as mock_client_cls:
            await _sink().write([])

        mock_client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status(self) -> None:
        client = _mock_client(post=httpx.Response(401, text="unauthorized"))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            with pytest.raises(SinkError) as exc_info:
                await _sink().write(_readings())

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [httpx.ReadTimeout("slow"), httpx.ConnectError("refused")],
    )
    async def test_transport_failures_raise(self, exc: Exception) -> None:
        client = _mock_client(post=exc)

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            with pytest.raises(SinkError) as exc_info:
                await _sink().write(_readings())

        assert exc_info.value.status_code is None


# ---------------------------------------------------------------------------
# ping()
# ---------------------------------------------------------------------------


class TestPing:
    @pytest.mark.asyncio
    async def test_pass_status_is_reachable(self) -> None:
        client = _mock_client(get=httpx.Response(200, json={"status": "pass"}))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            assert await _sink().ping() is True

        assert client.get.call_args.args[0] == "https://influx.example.com/health"

    @pytest.mark.asyncio
    async def test_fail_status_is_unreachable(self) -> None:
        client = _mock_client(get=httpx.Response(503, json={"status": "fail"}))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            assert await _sink().ping() is False

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self) -> None:
        client = _mock_client(get=httpx.ConnectError("refused"))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            assert await _sink().ping() is False


# ---------------------------------------------------------------------------
# verify_credentials()
# ---------------------------------------------------------------------------


class TestVerifyCredentials:
    """Startup check of the token and bucket."""

    @pytest.mark.asyncio
    async def test_bucket_found(self) -> None:
        client = _mock_client(
            get=httpx.Response(200, json={"buckets": [{"name": "sensors"}]})
        )

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            await _sink().verify_credentials()

        assert client.get.call_args.kwargs["params"] == {"org": "home", "name": "sensors"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_token_is_fatal(self, status: int) -> None:
        client = _mock_client(get=httpx.Response(status))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            with pytest.raises(ConfigurationError, match="token"):
                await _sink().verify_credentials()

    @pytest.mark.asyncio
    async def test_missing_bucket_is_fatal(self) -> None:
        client = _mock_client(get=httpx.Response(200, json={"buckets": []}))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            with pytest.raises(ConfigurationError, match="sensors"):
                await _sink().verify_credentials()

    @pytest.mark.asyncio
    async def test_unreachable_server_only_warns(self) -> None:
        client = _mock_client(get=httpx.ConnectError("refused"))

        with patch("aero_bridge.src.sink.httpx.AsyncClient", return_value=client):
            await _sink().verify_credentials()
