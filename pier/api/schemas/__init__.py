"""API schemas for request/response validation."""

from .services import (
    CleanRoutesResponse,
    DeleteProjectRequest,
    DeleteProjectResponse,
    DownProjectRequest,
    DownProjectResponse,
    HealthResponse,
    LinkProjectRequest,
    LinkProjectResponse,
    ProjectsResponse,
    ServiceActionRequest,
    ServicesResponse,
    ServiceStatus,
    ServiceType,
    ServiceViewEntry,
    StartServiceResponse,
    StopServiceResponse,
    UnlinkProjectRequest,
    UnlinkProjectResponse,
    UpProjectRequest,
    UpProjectResponse,
    UpResultEntry,
)

__all__ = [
    "CleanRoutesResponse",
    "DeleteProjectRequest",
    "DeleteProjectResponse",
    "DownProjectRequest",
    "DownProjectResponse",
    "HealthResponse",
    "LinkProjectRequest",
    "LinkProjectResponse",
    "ProjectsResponse",
    "ServiceActionRequest",
    "ServiceStatus",
    "ServiceType",
    "ServiceViewEntry",
    "ServicesResponse",
    "StartServiceResponse",
    "StopServiceResponse",
    "UnlinkProjectRequest",
    "UnlinkProjectResponse",
    "UpProjectRequest",
    "UpProjectResponse",
    "UpResultEntry",
]
