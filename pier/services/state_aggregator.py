"""Aggregated service view and bare-metal start/stop.

The view is merged from independent sources, in this order:

1. the proxy's live routers (label-driven containers and file routes)
2. file-declared routes to host processes, probed over HTTP
3. the project registry (known projects that may be dark)

The service name is the identity. The first source to mention a name fixes
its type and status; later sources may only fill fields that are still
empty. Nothing is cached between calls.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from pier.api.schemas.services import ServiceStatus, ServiceType, ServiceViewEntry
from pier.core.exceptions import (
    DevCommandMissingError,
    DevProcessError,
    ProjectNotFoundError,
    ProxyUnavailableError,
    RegistryError,
)
from pier.core.logging import get_logger
from pier.core.metrics import set_service_counts
from pier.services.dev_process import DevProcessHandle
from pier.services.project_registry import ProjectEntry, ProjectType

if TYPE_CHECKING:
    from pier.core.config import Settings
    from pier.services.project_registry import ProjectRegistry
    from pier.services.route_store import RouteStore
    from pier.services.traefik_client import TraefikClient, TraefikRouter

logger = get_logger(__name__)

INTERNAL_ROUTE_MARKERS = ("api@internal", "dashboard@internal", "acme", "pier-dashboard")
ROUTER_NAME_SUFFIXES = ("-pier", "-router")
ENRICHABLE_FIELDS = ("provider", "port", "dir", "framework", "last_used")


class LinkMeta(BaseModel):
    """Legacy per-project metadata written by older ``pier link`` runs."""

    name: str
    dir: str
    port: int = 0
    command: str | None = None


@dataclass(frozen=True, slots=True)
class DevStartResult:
    status: str
    pid: int
    command: str | None = None


def is_internal_router(name: str) -> bool:
    return any(marker in name for marker in INTERNAL_ROUTE_MARKERS)


def clean_router_name(name: str) -> str:
    """``api-router@docker`` -> ``api``."""
    base = name.split("@", 1)[0]
    for suffix in ROUTER_NAME_SUFFIXES:
        base = base.removesuffix(suffix)
    return base


def router_status(status: str) -> ServiceStatus:
    match status:
        case "enabled":
            return ServiceStatus.RUNNING
        case "disabled":
            return ServiceStatus.STOPPED
    return ServiceStatus.DEGRADED


def enrich(existing: ServiceViewEntry, other: ServiceViewEntry) -> ServiceViewEntry:
    """Fill empty metadata on ``existing`` from ``other``; identity is kept."""
    updates = {
        name: getattr(other, name)
        for name in ENRICHABLE_FIELDS
        if getattr(existing, name) is None and getattr(other, name) is not None
    }
    return existing.model_copy(update=updates) if updates else existing


def merge_service_views(sources: Iterable[Iterable[ServiceViewEntry]]) -> list[ServiceViewEntry]:
    """Merge ordered sources by name: first writer wins, later ones enrich."""
    merged: dict[str, ServiceViewEntry] = {}
    for source in sources:
        for entry in source:
            existing = merged.get(entry.name)
            merged[entry.name] = entry if existing is None else enrich(existing, entry)
    return list(merged.values())


class StateAggregator:
    """Read-only reconciliation of proxy, route files and registry."""

    def __init__(
        self,
        settings: Settings,
        traefik: TraefikClient,
        routes: RouteStore,
        registry: ProjectRegistry,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._traefik = traefik
        self._routes = routes
        self._registry = registry
        self._http_transport = http_transport

    def _entry(self, name: str, domain: str | None = None, **fields: object) -> ServiceViewEntry:
        domain = domain or self._settings.domain_for(name)
        return ServiceViewEntry(name=name, domain=domain, url=f"http://{domain}", **fields)

    # =========================================================================
    # Sources
    # =========================================================================

    def proxy_entries(self, routers: list[TraefikRouter]) -> list[ServiceViewEntry]:
        entries = []
        for router in routers:
            if is_internal_router(router.name):
                continue
            domain = router.domain
            if not domain:
                continue
            entries.append(
                self._entry(
                    clean_router_name(router.name),
                    domain,
                    type=ServiceType.PROXY_ROUTE if "file" in router.provider else ServiceType.CONTAINER,
                    status=router_status(router.status),
                    provider=router.provider or None,
                )
            )
        return entries

    async def _live_proxy_entries(self) -> list[ServiceViewEntry]:
        try:
            routers = await self._traefik.get_routers()
        except ProxyUnavailableError as e:
            logger.debug(f"Skipping live routes: {e}")
            return []
        return self.proxy_entries(routers)

    async def probe_domain(self, domain: str) -> bool:
        """Any HTTP answer from the domain counts as running."""
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.domain_probe_timeout,
                transport=self._http_transport,
            ) as client:
                await client.get(f"http://{domain}")
        except httpx.HTTPError:
            return False
        return True

    async def _bare_metal_entries(self) -> list[ServiceViewEntry]:
        routes = [route for route in self._routes.list() if route.is_bare_metal]
        domains = [route.domain or self._settings.domain_for(route.name) for route in routes]
        alive = await asyncio.gather(*(self.probe_domain(domain) for domain in domains))
        return [
            self._entry(
                route.name,
                domain,
                type=ServiceType.BARE_METAL,
                status=ServiceStatus.RUNNING if up else ServiceStatus.STOPPED,
                provider="file",
                port=route.backend_port or None,
            )
            for route, domain, up in zip(routes, domains, alive, strict=True)
        ]

    def _load_projects(self) -> list[ProjectEntry]:
        try:
            return self._registry.load()
        except RegistryError as e:
            logger.warning(f"Ignoring registry: {e}")
            return []

    def registry_entries(self, projects: list[ProjectEntry]) -> list[ServiceViewEntry]:
        return [
            self._entry(
                project.name,
                type=ServiceType.BARE_METAL if project.type == ProjectType.LINK else ServiceType.CONTAINER,
                status=ServiceStatus.STOPPED,
                port=project.port or None,
                dir=project.dir,
                framework=project.framework,
                last_used=project.last_used,
            )
            for project in projects
        ]

    async def list_services(self) -> list[ServiceViewEntry]:
        """Build the merged view from every source."""
        live, bare_metal = await asyncio.gather(
            self._live_proxy_entries(),
            self._bare_metal_entries(),
        )
        services = merge_service_views(
            [live, bare_metal, self.registry_entries(self._load_projects())]
        )
        counts = Counter({str(status): 0 for status in ServiceStatus})
        counts.update(str(service.status) for service in services)
        set_service_counts(counts)
        return services

    # =========================================================================
    # Bare-metal lifecycle
    # =========================================================================

    def _load_link_meta(self, name: str) -> LinkMeta | None:
        path = self._settings.links_dir / f"{name}.json"
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LinkMeta.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise RegistryError(f"corrupt link metadata for '{name}'") from e

    def resolve_project(self, name: str) -> LinkMeta:
        """Directory and dev command from the registry, else legacy metadata.

        Raises:
            ProjectNotFoundError: If neither source knows the name.
        """
        try:
            entry = self._registry.get(name)
        except RegistryError as e:
            logger.warning(f"Ignoring registry: {e}")
            entry = None

        legacy = self._load_link_meta(name)
        if entry is not None:
            command = entry.command or (legacy.command if legacy else None)
            return LinkMeta(name=entry.name, dir=entry.dir, port=entry.port, command=command)
        if legacy is not None:
            return legacy
        raise ProjectNotFoundError(
            name,
            message=f"unknown service '{name}': register it first with pier link or pier up",
        )

    async def start_bare_metal(self, name: str) -> DevStartResult:
        """Start the project's dev server unless it is already running.

        Raises:
            ProjectNotFoundError: Unknown project.
            DevCommandMissingError: No dev command is known.
            DevProcessError: The command could not be executed.
        """
        meta = self.resolve_project(name)
        if not meta.command:
            raise DevCommandMissingError(name)

        handle = DevProcessHandle.load(Path(meta.dir))
        if handle.is_alive() and handle.pid is not None:
            return DevStartResult(status="already_running", pid=handle.pid, command=meta.command)

        try:
            pid = await handle.start(meta.command)
        except (OSError, ValueError) as e:
            raise DevProcessError(f"failed to start {name}: {e}") from e

        try:
            self._registry.touch(name)
        except (RegistryError, OSError) as e:
            logger.debug(f"Could not touch registry entry {name}: {e}")
        return DevStartResult(status="started", pid=pid, command=meta.command)

    async def stop_bare_metal(self, name: str) -> str:
        """Terminate the dev server's process group.

        Returns:
            ``stopped`` or ``not_running`` (no PID file).
        """
        meta = self.resolve_project(name)
        handle = DevProcessHandle.load(Path(meta.dir))
        if not handle.pid_path.exists():
            return "not_running"
        handle.terminate()
        return "stopped"
