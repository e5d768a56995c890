"""Exception hierarchy for the pier control plane.

Every error carries a machine-readable code and an HTTP status so that the
control-plane API and the CLI can report it the same way. Outcomes that mean
"already in the desired state" (a running container, an existing database,
an absent container on stop) are successes and never raised.
"""

from __future__ import annotations

from typing import Any


class PierError(Exception):
    """Base exception for all pier errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"
    default_status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.status_code = status_code or self.default_status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Validation Errors (400)
class ValidationError(PierError):
    default_message = "Validation failed"
    default_error_code = "VALIDATION_ERROR"
    default_status_code = 400


class InvalidServiceSpecError(ValidationError):
    default_message = "Invalid service specification"
    default_error_code = "INVALID_SERVICE_SPEC"

    def __init__(self, spec: str, message: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = f"invalid service spec '{spec}' (expected name:version, e.g. postgres:16)"
        details = kwargs.pop("details", {}) or {}
        details["spec"] = spec
        super().__init__(message, details=details, **kwargs)


class InvalidDatabaseNameError(ValidationError):
    default_message = "Database name is empty after sanitization"
    default_error_code = "INVALID_DATABASE_NAME"

    def __init__(self, raw_name: str, message: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = f"invalid database name '{raw_name}': nothing left after sanitization"
        details = kwargs.pop("details", {}) or {}
        details["name"] = raw_name
        super().__init__(message, details=details, **kwargs)


class DevCommandMissingError(ValidationError):
    default_message = "No dev command configured"
    default_error_code = "DEV_COMMAND_MISSING"

    def __init__(self, name: str, message: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = f"no dev command configured for '{name}'"
        details = kwargs.pop("details", {}) or {}
        details["name"] = name
        super().__init__(message, details=details, **kwargs)


class ProjectFileError(ValidationError):
    default_message = "Project file could not be parsed"
    default_error_code = "PROJECT_FILE_INVALID"

    def __init__(self, path: str, message: str | None = None, **kwargs: Any) -> None:
        self.path = path
        if message is None:
            message = f"could not parse {path}"
        details = kwargs.pop("details", {}) or {}
        details["path"] = path
        super().__init__(message, details=details, **kwargs)


# Not Found Errors (404)
class NotFoundError(PierError):
    default_message = "Resource not found"
    default_error_code = "NOT_FOUND"
    default_status_code = 404


class RouteNotFoundError(NotFoundError):
    default_error_code = "ROUTE_NOT_FOUND"

    def __init__(self, name: str, message: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = f"proxy '{name}' not found"
        details = kwargs.pop("details", {}) or {}
        details["name"] = name
        super().__init__(message, details=details, **kwargs)


class ProjectNotFoundError(NotFoundError):
    default_error_code = "PROJECT_NOT_FOUND"

    def __init__(self, name: str, message: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = f"project '{name}' not found"
        details = kwargs.pop("details", {}) or {}
        details["name"] = name
        super().__init__(message, details=details, **kwargs)


# Unsupported (422)
class UnsupportedError(PierError):
    default_message = "Unsupported request"
    default_error_code = "UNSUPPORTED"
    default_status_code = 422


class UnsupportedServiceError(UnsupportedError):
    default_error_code = "UNSUPPORTED_SERVICE"

    def __init__(
        self,
        kind: str,
        supported: list[str] | None = None,
        message: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.kind = kind
        self.supported = supported or []
        if message is None:
            message = f"unsupported service: {kind}"
            if self.supported:
                message += f" (supported: {', '.join(self.supported)})"
        details = kwargs.pop("details", {}) or {}
        details["kind"] = kind
        if self.supported:
            details["supported"] = self.supported
        super().__init__(message, details=details, **kwargs)


class UnsupportedComposeError(UnsupportedError):
    default_message = "Compose file shape not recognized"
    default_error_code = "UNSUPPORTED_COMPOSE"


# External service errors (503)
class ExternalServiceError(PierError):
    default_message = "External service temporarily unavailable"
    default_error_code = "SERVICE_UNAVAILABLE"
    default_status_code = 503

    def __init__(
        self,
        message: str | None = None,
        *,
        service_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.service_name = service_name
        details = kwargs.pop("details", {}) or {}
        if service_name:
            details["service"] = service_name
        super().__init__(message, details=details, **kwargs)


class ContainerRuntimeUnavailableError(ExternalServiceError):
    default_message = "Container runtime is not running"
    default_error_code = "RUNTIME_UNAVAILABLE"

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("service_name", "docker")
        super().__init__(message, **kwargs)


class ProxyUnavailableError(ExternalServiceError):
    default_message = "Reverse proxy control API is not reachable"
    default_error_code = "PROXY_UNAVAILABLE"

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("service_name", "traefik")
        super().__init__(message, **kwargs)


# Container runtime operation failures (502)
class ContainerRuntimeError(PierError):
    """A runtime operation failed; ``output`` holds the raw diagnostic text."""

    default_message = "Container runtime operation failed"
    default_error_code = "RUNTIME_ERROR"
    default_status_code = 502

    def __init__(
        self,
        message: str | None = None,
        *,
        output: str = "",
        **kwargs: Any,
    ) -> None:
        self.output = output
        details = kwargs.pop("details", {}) or {}
        if output:
            details["output"] = output
        super().__init__(message, details=details, **kwargs)


class InfraStartError(ContainerRuntimeError):
    default_message = "Failed to start shared service"
    default_error_code = "INFRA_START_FAILED"


class ProxyStartError(ContainerRuntimeError):
    default_message = "Failed to start reverse proxy"
    default_error_code = "PROXY_START_FAILED"


class ImageBuildError(ContainerRuntimeError):
    default_message = "Image build failed"
    default_error_code = "IMAGE_BUILD_FAILED"


class ContainerStartError(ContainerRuntimeError):
    default_message = "Failed to start container"
    default_error_code = "CONTAINER_START_FAILED"


class DatabaseCreateError(ContainerRuntimeError):
    default_message = "Failed to create database"
    default_error_code = "DATABASE_CREATE_FAILED"


# Internal errors (500)
class RegistryError(PierError):
    default_message = "Project registry is unreadable"
    default_error_code = "REGISTRY_ERROR"


class DevProcessError(PierError):
    default_message = "Failed to start dev server"
    default_error_code = "DEV_PROCESS_FAILED"


class PipelineError(PierError):
    """A build-run-route step failed.

    Steps that already completed are listed so the caller knows which side
    effects (built image, started infra, removed container) remain in place.
    """

    default_message = "Pipeline step failed"
    default_error_code = "PIPELINE_FAILED"

    def __init__(
        self,
        step: str,
        cause: BaseException,
        completed_steps: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        self.step = step
        self.cause = cause
        self.completed_steps = completed_steps or []
        details = kwargs.pop("details", {}) or {}
        details["step"] = step
        details["completed_steps"] = self.completed_steps
        if isinstance(cause, PierError):
            details["cause"] = cause.to_dict()
            status_code = kwargs.pop("status_code", None) or cause.status_code
        else:
            status_code = kwargs.pop("status_code", None)
        super().__init__(
            f"{step}: {cause}", details=details, status_code=status_code, **kwargs
        )

    @property
    def output(self) -> str:
        return getattr(self.cause, "output", "")


def get_exception_status_code(exc: Exception) -> int:
    if isinstance(exc, PierError):
        return exc.status_code
    return 500
