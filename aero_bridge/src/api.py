"""
Health check endpoint for the bridge daemon.

Provides GET /healthz, which reports overall health derived solely from a
HealthStatus snapshot, together with the reachability flags and counters.
Returns HTTP 200 when healthy and 503 when not, so container and cluster
probes can use the status code directly. No authentication is required.

CHANGELOG:
- 2026-10-19: Report reachability flags and counters, 503 when unhealthy
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from aero_bridge.src.config import HealthPolicy
from aero_bridge.src.health import HealthStatus

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz(request: Request) -> JSONResponse:
    """Return the bridge health.

    Returns:
        JSONResponse: ``{"status": "healthy" | "unhealthy", ...snapshot}``
        with status code 200 or 503.
    """
    status: HealthStatus = request.app.state.health
    policy: HealthPolicy = request.app.state.health_policy
    snapshot = status.snapshot()
    healthy = snapshot.is_healthy(policy)
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", **asdict(snapshot)},
    )


def create_app(
    health: HealthStatus,
    policy: HealthPolicy = HealthPolicy.ALL,
) -> FastAPI:
    """Build the health API around a shared HealthStatus.

    Args:
        health: Status record read on every request.
        policy: How device and sink reachability combine.
    """
    app = FastAPI(
        title="aero-bridge health",
        description="Liveness of the sensor link and the time-series store.",
        version="0.1.0",
    )
    app.state.health = health
    app.state.health_policy = policy
    app.include_router(router)
    return app
