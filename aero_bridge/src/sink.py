"""
InfluxDB v2 client for writing reading batches over HTTP.

Encodes readings as InfluxDB line protocol and POSTs them to the
``/api/v2/write`` endpoint with token authentication. Every point is tagged
with the configured location. Any 2xx response counts as an acknowledged
write; any other status, a timeout, or a transport error raises SinkError so
the forwarder can keep the batch for retry. Rewriting identical points is
harmless because InfluxDB overwrites a point with the same series and
timestamp.

Operations:
- write(readings): POST one batch, raise SinkError on failure.
- ping(): GET /health, True when the server reports ``pass``.
- verify_credentials(): startup check that the token can see the bucket.

CHANGELOG:
- 2026-10-19: Write aggregation summary fields for merged readings
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from aero_bridge.src.errors import ConfigurationError, SinkError
from aero_bridge.src.models import Reading

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 10.0


# ---------------------------------------------------------------------------
# Line protocol encoding
# ---------------------------------------------------------------------------


def _escape_measurement(name: str) -> str:
    return name.replace(",", r"\,").replace(" ", r"\ ")


def _escape_tag(value: str) -> str:
    return value.replace(",", r"\,").replace("=", r"\=").replace(" ", r"\ ")


def _format_float(value: float) -> str:
    return repr(float(value))


def to_line_protocol(reading: Reading, location: str) -> str:
    """Encode one reading as a line-protocol point with millisecond precision.

    Raw readings carry a single ``value`` field. Aggregated readings also
    carry ``min``, ``max`` and an integer ``samples`` field. Readings stamped
    before the device clock was synchronised get a ``confidence=low`` tag.
    """
    tags = f"location={_escape_tag(location)}"
    if reading.low_confidence:
        tags += ",confidence=low"

    fields = f"value={_format_float(reading.value)}"
    if reading.samples > 1:
        if reading.min_value is not None:
            fields += f",min={_format_float(reading.min_value)}"
        if reading.max_value is not None:
            fields += f",max={_format_float(reading.max_value)}"
        fields += f",samples={reading.samples}i"

    return f"{_escape_measurement(reading.kind.value)},{tags} {fields} {reading.timestamp}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class InfluxSink:
    """Batch writer for an InfluxDB v2 bucket.

    Args:
        url: InfluxDB base URL, e.g. ``https://influx.example.com``.
        org: Organisation name.
        bucket: Bucket to write into.
        token: API token sent as ``Authorization: Token <token>``.
        location: Value of the ``location`` tag on every point.
        timeout_s: Per-request timeout in seconds.

    Raises:
        ValueError: If *url* has no http(s) scheme.

    Usage::

        sink = InfluxSink(
            url="https://influx.example.com",
            org="home",
            bucket="sensors",
            token="tok-123",
            location="Lab",
        )
        await sink.write(readings)
    """

    def __init__(
        self,
        url: str,
        org: str,
        bucket: str,
        token: str,
        location: str,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
    ) -> None:
        if not url.lower().startswith(("http://", "https://")):
            raise ValueError(f"InfluxDB URL must use http or https (got: '{url}')")
        self._url = url.rstrip("/")
        self._org = org
        self._bucket = bucket
        self._token = token
        self._location = location
        self._timeout_s = timeout_s

    @property
    def location(self) -> str:
        return self._location

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self._token}"}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def write(self, readings: Sequence[Reading]) -> None:
        """Write *readings* as one batch.

        An empty batch is a no-op.

        Raises:
            SinkError: On a non-2xx response, timeout, or transport error.
        """
        if not readings:
            return
        body = "\n".join(to_line_protocol(r, self._location) for r in readings)

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(
                    f"{self._url}/api/v2/write",
                    params={"org": self._org, "bucket": self._bucket, "precision": "ms"},
                    content=body.encode("utf-8"),
                    headers={
                        **self._headers(),
                        "Content-Type": "text/plain; charset=utf-8",
                    },
                )
        except httpx.TimeoutException as exc:
            raise SinkError(f"write timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SinkError(f"write failed (network error): {exc}") from exc

        if not response.is_success:
            raise SinkError(
                f"write rejected (HTTP {response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        logger.debug("Wrote %d points to bucket %s", len(readings), self._bucket)

    async def ping(self) -> bool:
        """Return True when the InfluxDB health endpoint reports ``pass``."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.get(f"{self._url}/health")
        except httpx.HTTPError as exc:
            logger.warning("InfluxDB health check failed: %s", exc)
            return False
        if response.status_code != 200:
            logger.warning("InfluxDB health check failed (HTTP %d)", response.status_code)
            return False
        try:
            return response.json().get("status") == "pass"
        except ValueError:
            return False

    async def verify_credentials(self) -> None:
        """Check at startup that the token is accepted and can see the bucket.

        Unreachable servers are only logged: the store may come up later and
        the forwarder will retry. A rejected token or a missing bucket will
        never fix itself, so those are fatal.

        Raises:
            ConfigurationError: On HTTP 401/403 or when the bucket is not found.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.get(
                    f"{self._url}/api/v2/buckets",
                    params={"org": self._org, "name": self._bucket},
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "InfluxDB unreachable at startup, continuing with buffering: %s", exc
            )
            return

        if response.status_code in (401, 403):
            raise ConfigurationError(
                f"InfluxDB rejected the token (HTTP {response.status_code})"
            )
        if response.status_code == 404:
            raise ConfigurationError(f"InfluxDB org '{self._org}' not found")
        if not response.is_success:
            logger.warning(
                "InfluxDB bucket lookup returned HTTP %d, continuing",
                response.status_code,
            )
            return

        buckets = response.json().get("buckets", [])
        if not any(b.get("name") == self._bucket for b in buckets):
            raise ConfigurationError(f"InfluxDB bucket '{self._bucket}' not found")
        logger.info("InfluxDB credentials verified for bucket %s", self._bucket)
