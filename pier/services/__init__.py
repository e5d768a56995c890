"""Control-plane services: infrastructure, routing, environments and pipelines.

The state aggregator is imported from its module directly since it builds
API view models.
"""

from .env_composer import compose_overrides, generate_env_file, merge_env
from .linker import LinkResult, ProjectLinker
from .orchestrator import AppOrchestrator, AppSpec, PipelineStep, RunResult
from .project_registry import ProjectEntry, ProjectRegistry, ProjectType
from .proxy_manager import ProxyManager
from .route_store import RouteDeclaration, RouteStore, container_route_labels
from .shared_infra import InfraManager, SharedService, sanitize_database_name
from .traefik_client import TraefikClient, TraefikRouter

__all__ = [
    "AppOrchestrator",
    "AppSpec",
    "InfraManager",
    "LinkResult",
    "PipelineStep",
    "ProjectEntry",
    "ProjectLinker",
    "ProjectRegistry",
    "ProjectType",
    "ProxyManager",
    "RouteDeclaration",
    "RouteStore",
    "RunResult",
    "SharedService",
    "TraefikClient",
    "TraefikRouter",
    "compose_overrides",
    "container_route_labels",
    "generate_env_file",
    "merge_env",
    "sanitize_database_name",
]
