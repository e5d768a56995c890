"""Pier control-plane API.

Serves the dashboard's view of every routed service and the bare-metal
start/stop actions. Run with ``pier-dashboard`` or
``uvicorn pier.main:app``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pier.api.exception_handlers import register_exception_handlers
from pier.api.middleware import RequestIDMiddleware
from pier.api.routes import projects_router, services_router, system_router
from pier.core.config import get_settings
from pier.core.docker_client import DockerClient
from pier.core.logging import get_logger, setup_logging
from pier.services.linker import ProjectLinker
from pier.services.orchestrator import AppOrchestrator
from pier.services.project_registry import ProjectRegistry
from pier.services.route_store import RouteStore
from pier.services.shared_infra import InfraManager
from pier.services.state_aggregator import StateAggregator
from pier.services.traefik_client import TraefikClient

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Wire the control-plane components into app state."""
    setup_logging()
    settings = get_settings()

    docker = DockerClient(docker_host=settings.docker_host)
    routes = RouteStore(settings)
    registry = ProjectRegistry(settings.registry_path)
    traefik = TraefikClient(settings)
    infra = InfraManager(docker, settings)

    app.state.settings = settings
    app.state.docker = docker
    app.state.routes = routes
    app.state.registry = registry
    app.state.traefik = traefik
    app.state.aggregator = StateAggregator(settings, traefik, routes, registry)
    app.state.orchestrator = AppOrchestrator(docker, infra, routes, registry, settings)
    app.state.linker = ProjectLinker(settings, routes, registry)
    logger.info(
        f"Control plane ready on {settings.dashboard_host}:{settings.dashboard_port}",
        extra={"home": str(settings.home), "tld": settings.tld},
    )

    yield

    await docker.close()
    logger.info("Control plane stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Pier",
        description="Local service mesh control plane",
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(services_router)
    app.include_router(projects_router)
    app.include_router(system_router)
    return app


app = create_app()


def run() -> None:
    """Console entry point for the dashboard API."""
    settings = get_settings()
    uvicorn.run(
        "pier.main:app",
        host=settings.dashboard_host,
        port=settings.dashboard_port,
        log_config=None,
    )
