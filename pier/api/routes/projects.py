"""REST API endpoints for projects.

Lists and forgets registry entries, brings project directories up or down
through the orchestrator, and links bare-metal dev servers.
"""

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from pier.api.schemas.services import (
    DeleteProjectRequest,
    DeleteProjectResponse,
    DownProjectRequest,
    DownProjectResponse,
    LinkProjectRequest,
    LinkProjectResponse,
    ProjectsResponse,
    UnlinkProjectRequest,
    UnlinkProjectResponse,
    UpProjectRequest,
    UpProjectResponse,
    UpResultEntry,
)
from pier.core.exceptions import ProjectNotFoundError
from pier.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


async def get_registry(request: Request) -> Any:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(503, "Project registry not available")
    return registry


async def get_orchestrator(request: Request) -> Any:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(503, "Orchestrator not available")
    return orchestrator


async def get_linker(request: Request) -> Any:
    linker = getattr(request.app.state, "linker", None)
    if linker is None:
        raise HTTPException(503, "Project linker not available")
    return linker


@router.get("", response_model=ProjectsResponse, response_model_by_alias=True)
async def list_projects(registry: Any = Depends(get_registry)) -> ProjectsResponse:
    return ProjectsResponse(projects=registry.load())


@router.delete("", response_model=DeleteProjectResponse)
async def delete_project(
    body: DeleteProjectRequest = Body(...),
    registry: Any = Depends(get_registry),
) -> DeleteProjectResponse:
    """Forget a project. Removing an unknown name still succeeds."""
    try:
        registry.remove(body.name)
    except ProjectNotFoundError:
        logger.debug(f"Project {body.name} was not registered")
    else:
        logger.info(f"Removed project {body.name}", extra={"project": body.name})
    return DeleteProjectResponse()


@router.post("/up", response_model=UpProjectResponse)
async def up_project(
    body: UpProjectRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> UpProjectResponse:
    """Build, run and route every application of a project directory.

    Pipeline failures surface as 502 ``PIPELINE_FAILED`` with the failed
    step and the completed steps in ``details``.
    """
    results = await orchestrator.up_project(Path(body.dir))
    return UpProjectResponse(
        results=[
            UpResultEntry(
                name=result.name,
                domain=result.domain,
                image=result.image,
                port=result.port,
                services=[service.spec for service in result.shared_services],
                database_created=result.database_created,
            )
            for result in results
        ]
    )


@router.post("/down", response_model=DownProjectResponse)
async def down_project(
    body: DownProjectRequest,
    orchestrator: Any = Depends(get_orchestrator),
) -> DownProjectResponse:
    """Stop one project, or everything with ``all``.

    With ``all`` a container that cannot be removed is reported in
    ``failed`` and the status is ``partial``.
    """
    if body.all:
        summary = await orchestrator.down_all()
        return DownProjectResponse(
            status="partial" if summary.failed else "stopped",
            apps=summary.apps,
            infra=summary.infra,
            failed=summary.failed,
            routes_removed=summary.routes_removed,
        )

    removed = await orchestrator.down(body.name)
    return DownProjectResponse(
        status="stopped" if removed else "not_running",
        apps=[body.name] if removed else [],
    )


@router.post("/link", response_model=LinkProjectResponse)
async def link_project(
    body: LinkProjectRequest,
    linker: Any = Depends(get_linker),
) -> LinkProjectResponse:
    """Route a bare-metal dev server and start it when a command is known."""
    result = await linker.link(Path(body.dir), name=body.name, port=body.port, command=body.command)
    return LinkProjectResponse(
        name=result.name,
        domain=result.domain,
        port=result.port,
        command=result.command,
        pid=result.pid,
        log=str(result.log_path) if result.log_path else None,
    )


@router.post("/unlink", response_model=UnlinkProjectResponse)
async def unlink_project(
    body: UnlinkProjectRequest,
    linker: Any = Depends(get_linker),
) -> UnlinkProjectResponse:
    found = linker.unlink(Path(body.dir), name=body.name)
    return UnlinkProjectResponse(status="unlinked" if found else "not_linked")
