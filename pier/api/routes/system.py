"""System endpoints: liveness, version, route cleanup and Prometheus metrics."""

import asyncio
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST

from pier.api.schemas.services import CleanRoutesResponse, HealthResponse
from pier.core.config import get_settings
from pier.core.logging import get_logger
from pier.core.metrics import get_metrics_response

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["system"])


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Liveness check for the dashboard.

    Always answers ``ok`` while the process is up; ``routes`` is the number
    of live proxy routers, or 0 when the proxy is unreachable.
    """
    traefik: Any = getattr(request.app.state, "traefik", None)
    routes = await traefik.route_count() if traefik is not None else 0
    return HealthResponse(
        status="ok",
        version=get_settings().app_version,
        time=datetime.now(UTC).isoformat(),
        routes=routes,
    )


@router.post("/routes/clean", response_model=CleanRoutesResponse)
async def clean_routes(request: Request) -> CleanRoutesResponse:
    """Remove bare-metal route files whose dev server port is closed."""
    routes: Any = getattr(request.app.state, "routes", None)
    if routes is None:
        raise HTTPException(503, "Route store not available")
    removed = await asyncio.to_thread(routes.clean_stale)
    if removed:
        logger.info(f"Cleaned {len(removed)} stale route(s)", extra={"routes": removed})
    return CleanRoutesResponse(removed=removed)


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=get_metrics_response(), media_type=CONTENT_TYPE_LATEST)
