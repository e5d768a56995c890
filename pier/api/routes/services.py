"""REST API endpoints for the aggregated service view.

Lists every service known to the proxy, the route files and the project
registry, and starts or stops bare-metal dev servers by name.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from pier.api.schemas.services import (
    ServiceActionRequest,
    ServicesResponse,
    StartServiceResponse,
    StopServiceResponse,
)
from pier.core.config import get_settings
from pier.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/services", tags=["services"])


async def get_aggregator(request: Request) -> Any:
    """Get the state aggregator from app state.

    Raises:
        HTTPException: 503 if the aggregator is not available
    """
    aggregator = getattr(request.app.state, "aggregator", None)
    if aggregator is None:
        raise HTTPException(503, "State aggregator not available")
    return aggregator


@router.get("", response_model=ServicesResponse, response_model_by_alias=True)
async def list_services(aggregator: Any = Depends(get_aggregator)) -> ServicesResponse:
    """List every service from all sources, merged by name.

    The view is rebuilt on each call; an unreachable proxy only drops the
    label-driven routes from the result.
    """
    services = await aggregator.list_services()
    return ServicesResponse(services=services, tld=get_settings().tld, total=len(services))


@router.post("/start", response_model=StartServiceResponse)
async def start_service(
    body: ServiceActionRequest,
    aggregator: Any = Depends(get_aggregator),
) -> StartServiceResponse:
    """Start a bare-metal project's dev server, unless it already runs."""
    result = await aggregator.start_bare_metal(body.name)
    logger.info(
        f"Start requested for {body.name}: {result.status}",
        extra={"service": body.name, "status": result.status, "pid": result.pid},
    )
    return StartServiceResponse(status=result.status, pid=result.pid, command=result.command)


@router.post("/stop", response_model=StopServiceResponse)
async def stop_service(
    body: ServiceActionRequest,
    aggregator: Any = Depends(get_aggregator),
) -> StopServiceResponse:
    """Stop a bare-metal project's dev server by process group."""
    status = await aggregator.stop_bare_metal(body.name)
    logger.info(
        f"Stop requested for {body.name}: {status}",
        extra={"service": body.name, "status": status},
    )
    return StopServiceResponse(status=status)
