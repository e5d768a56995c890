"""docker-compose file parsing.

Compose services are partitioned into shared infrastructure (image-only
services whose image name is in the shared-service catalog) and
applications. Infrastructure is then provided by the shared instances instead
of per-project containers. The classification is by image name only, so a
custom image that happens to be called ``redis`` is treated as infrastructure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from pier.core.exceptions import ProjectFileError, UnsupportedComposeError
from pier.services.shared_infra import SERVICE_DEFINITIONS

COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

DEFAULT_VERSIONS = {
    "postgres": "16",
    "redis": "7",
    "mongo": "7",
    "mysql": "8",
    "minio": "latest",
}


class ComposeService(BaseModel):
    image: str | None = None
    build: Any = None
    ports: list[str] = Field(default_factory=list)
    environment: Any = None
    volumes: list[str] = Field(default_factory=list)
    command: str | list[str] | None = None

    @field_validator("ports", mode="before")
    @classmethod
    def stringify_ports(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    @field_validator("volumes", mode="before")
    @classmethod
    def short_volumes_only(cls, value: Any) -> Any:
        # long-syntax volume mappings are not carried over
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
        return value


class ComposeFile(BaseModel):
    services: dict[str, ComposeService] = Field(default_factory=dict)

    @field_validator("services", mode="before")
    @classmethod
    def allow_empty_services(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {name: svc or {} for name, svc in value.items()}
        return value or {}


@dataclass(frozen=True, slots=True)
class InfraService:
    compose_name: str
    image: str
    kind: str
    version: str

    @property
    def spec(self) -> str:
        return f"{self.kind}:{self.version}"


@dataclass(slots=True)
class AppService:
    compose_name: str
    build: str | None
    image: str | None
    ports: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    command: str | list[str] | None = None

    @property
    def port(self) -> int:
        return parse_first_port(self.ports)


def find_compose_file(project_dir: Path) -> Path | None:
    for name in COMPOSE_FILE_NAMES:
        path = project_dir / name
        if path.is_file():
            return path
    return None


def parse_compose(project_dir: Path) -> ComposeFile | None:
    """Parse the project's compose file; None when there is none.

    Raises:
        ProjectFileError: If the file cannot be parsed.
    """
    path = find_compose_file(project_dir)
    if path is None:
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return ComposeFile.model_validate(data)
    except (yaml.YAMLError, PydanticValidationError) as e:
        raise ProjectFileError(str(path), f"parsing compose file: {e}") from e


def parse_image_tag(image: str) -> tuple[str, str]:
    """Split an image into catalog name and version.

    Registry prefixes and tag suffixes are dropped:
    ``docker.io/library/postgres:16-alpine`` -> ``("postgres", "16")``.
    """
    name_tag = image.rsplit("/", 1)[-1]
    name, _, version = name_tag.partition(":")
    if "-" in version[1:]:
        version = version[: version.index("-", 1)]
    return name, version


def default_version(kind: str) -> str:
    return DEFAULT_VERSIONS.get(kind, "latest")


def is_infra_image(image: str) -> bool:
    return parse_image_tag(image)[0] in SERVICE_DEFINITIONS


def parse_build_context(build: Any) -> str | None:
    """Build context from the short (string) or long (mapping) form.

    Raises:
        UnsupportedComposeError: For any other shape.
    """
    if build is None:
        return None
    if isinstance(build, str):
        return build
    if isinstance(build, dict):
        context = build.get("context", ".")
        if isinstance(context, str):
            return context
    raise UnsupportedComposeError(f"unsupported compose build definition: {build!r}")


def _env_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_environment(environment: Any) -> dict[str, str]:
    """Normalize list (``KEY=VALUE``) or mapping environment blocks."""
    result: dict[str, str] = {}
    if isinstance(environment, list):
        for item in environment:
            key, sep, value = str(item).partition("=")
            if sep and key:
                result[key] = value
    elif isinstance(environment, dict):
        for key, value in environment.items():
            result[str(key)] = _env_value(value)
    return result


def parse_first_port(ports: list[str]) -> int:
    """Container port of the first mapping (``"8080:3000/tcp"`` -> 3000)."""
    if not ports:
        return 0
    container_port = ports[0].rsplit(":", 1)[-1].split("/", 1)[0]
    try:
        return int(container_port)
    except ValueError:
        return 0


def separate_services(compose: ComposeFile) -> tuple[list[InfraService], list[AppService]]:
    """Split compose services into shared infrastructure and applications."""
    infra: list[InfraService] = []
    apps: list[AppService] = []

    for compose_name, service in compose.services.items():
        if service.image and service.build is None and is_infra_image(service.image):
            kind, version = parse_image_tag(service.image)
            infra.append(
                InfraService(
                    compose_name=compose_name,
                    image=service.image,
                    kind=kind,
                    version=version or default_version(kind),
                )
            )
            continue

        apps.append(
            AppService(
                compose_name=compose_name,
                build=parse_build_context(service.build),
                image=service.image,
                ports=service.ports,
                environment=parse_environment(service.environment),
                volumes=service.volumes,
                command=service.command,
            )
        )

    return infra, apps
