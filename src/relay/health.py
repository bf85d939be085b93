"""Health check endpoints for the relay server.

Provides HTTP health check endpoints for load balancers, monitoring systems,
and orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe).
"""

import logging
import time
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the relay.

    Provides /health endpoint that checks:
    - Upstream credentials are configured
    - Relay capacity (active relays vs. limit)
    - Service uptime
    """

    def __init__(self, server: Any = None, upstream_configured: bool = True) -> None:
        """Initialize health check handler.

        Args:
            server: RelayServer instance (optional, exposes active_relays and
                max_connections)
            upstream_configured: Whether an upstream API key is available
        """
        self.server = server
        self.upstream_configured = upstream_configured
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Service is healthy and ready
            503 Service Unavailable: Service is unhealthy

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "active_relays": int,
            "checks": {
                "upstream": {"ok": bool, "error": str | null},
                "capacity": {"ok": bool, "error": str | null}
            }
        }
        """
        checks: dict[str, Any] = {}

        upstream_error = None if self.upstream_configured else "OPENAI_API_KEY is not configured"
        checks["upstream"] = {"ok": self.upstream_configured, "error": upstream_error}

        active = 0
        capacity_ok = True
        capacity_error = None
        if self.server is not None:
            active = self.server.active_relays
            if active >= self.server.max_connections:
                capacity_ok = False
                capacity_error = f"{active} of {self.server.max_connections} relays in use"

        checks["capacity"] = {"ok": capacity_ok, "error": capacity_error}

        overall_healthy = self.upstream_configured and capacity_ok
        status_code = 200 if overall_healthy else 503

        response_data = {
            "status": "healthy" if overall_healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "active_relays": active,
            "checks": checks,
        }

        logger.debug(
            "Health check performed",
            extra={"status": response_data["status"], "checks": checks},
        )

        return web.json_response(response_data, status=status_code)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if service is running (even if dependencies are down).

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )


def setup_health_routes(
    app: web.Application,
    server: Any = None,
    upstream_configured: bool = True,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        server: RelayServer instance (optional)
        upstream_configured: Whether an upstream API key is available
    """
    handler = HealthCheckHandler(server=server, upstream_configured=upstream_configured)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)

    logger.info("Health check endpoints configured: /health, /liveness")
