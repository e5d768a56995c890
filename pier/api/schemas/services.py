"""Pydantic schemas for the control-plane service API.

ServiceViewEntry is the merged view produced by the state aggregator: one
entry per service name, built fresh on every request.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pier.services.project_registry import ProjectEntry


class ServiceType(StrEnum):
    """Where a service's route comes from.

    - CONTAINER: label-driven route of a running container
    - PROXY_ROUTE: file-declared route seen through the proxy
    - BARE_METAL: file-declared route to a host process
    """

    CONTAINER = "container"
    PROXY_ROUTE = "proxyRoute"
    BARE_METAL = "bareMetal"


class ServiceStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    DEGRADED = "degraded"


class ServiceViewEntry(BaseModel):
    """One service in the aggregated view."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Service name, unique within the view")
    domain: str = Field(..., description="Local domain, e.g. 'api.dock'")
    url: str = Field(..., description="URL of the domain")
    type: ServiceType = Field(..., description="container, proxyRoute or bareMetal")
    status: ServiceStatus = Field(..., description="running, stopped or degraded")
    provider: str | None = Field(None, description="Proxy provider that declared the route")
    port: int | None = Field(None, description="Backend port, when known")
    dir: str | None = Field(None, description="Project directory from the registry")
    framework: str | None = Field(None, description="Framework from the registry")
    last_used: str | None = Field(
        None,
        alias="lastUsed",
        description="Last registry update (RFC 3339)",
    )


class ServicesResponse(BaseModel):
    services: list[ServiceViewEntry]
    tld: str
    total: int


class ServiceActionRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Service name")


class StartServiceResponse(BaseModel):
    status: str = Field(..., description="started or already_running")
    pid: int
    command: str | None = None


class StopServiceResponse(BaseModel):
    status: str = Field(..., description="stopped or not_running")


class ProjectsResponse(BaseModel):
    projects: list[ProjectEntry]


class DeleteProjectRequest(BaseModel):
    name: str = Field(..., min_length=1)


class DeleteProjectResponse(BaseModel):
    status: str = "removed"


class LinkProjectRequest(BaseModel):
    dir: str = Field(..., min_length=1, description="Project directory on the host")
    name: str | None = Field(None, description="Route name; defaults to the Pierfile or directory name")
    port: int | None = Field(None, ge=1, le=65535, description="Host port of the dev server")
    command: str | None = Field(None, description="Dev command; defaults to the Pierfile or framework")


class LinkProjectResponse(BaseModel):
    name: str
    domain: str
    port: int
    command: str | None = None
    pid: int | None = None
    log: str | None = Field(None, description="Dev server log file")


class UnlinkProjectRequest(BaseModel):
    dir: str = Field(..., min_length=1)
    name: str | None = None


class UnlinkProjectResponse(BaseModel):
    status: str = Field(..., description="unlinked or not_linked")


class UpProjectRequest(BaseModel):
    dir: str = Field(..., min_length=1, description="Project directory with a Pierfile or compose file")


class UpResultEntry(BaseModel):
    name: str
    domain: str
    image: str
    port: int
    services: list[str] = Field(default_factory=list, description="Shared services as kind:version")
    database_created: bool = False


class UpProjectResponse(BaseModel):
    results: list[UpResultEntry]


class DownProjectRequest(BaseModel):
    name: str | None = Field(None, min_length=1, description="Project to stop")
    all: bool = Field(False, description="Stop every project, shared service and the proxy")

    @model_validator(mode="after")
    def require_target(self) -> "DownProjectRequest":
        if not self.all and not self.name:
            raise ValueError("either name or all is required")
        return self


class DownProjectResponse(BaseModel):
    status: str = Field(..., description="stopped, not_running or partial")
    apps: list[str] = Field(default_factory=list)
    infra: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    routes_removed: int = 0


class CleanRoutesResponse(BaseModel):
    removed: list[str] = Field(..., description="Bare-metal routes whose port was closed")


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    time: str
    routes: int = Field(0, description="Live routers reported by the proxy")
