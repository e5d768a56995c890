"""Per-project ``Pierfile`` (YAML) loading.

Example:
    name: api
    port: 3000
    services:
      - postgres:16
      - name: redis
        version: "7"
    env:
      LOG_LEVEL: debug
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from pier.core.exceptions import ProjectFileError

FILE_NAME = "Pierfile"


def format_service(name: str, version: str | None) -> str:
    return f"{name}:{version}" if version else name


class ServiceEntry(BaseModel):
    """A service dependency: ``"postgres:16"`` or a mapping."""

    name: str
    version: str | None = None
    port: int = 0
    command: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def parse_short_form(cls, value: Any) -> Any:
        if isinstance(value, str):
            name, _, version = value.partition(":")
            return {"name": name.strip(), "version": version.strip() or None}
        return value

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, value: Any) -> str | None:
        # YAML reads `version: 16` as an int
        return None if value is None else str(value)

    def __str__(self) -> str:
        return format_service(self.name, self.version)


class Pierfile(BaseModel):
    name: str = ""
    services: list[ServiceEntry] = Field(default_factory=list)
    port: int = 0
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    def service_specs(self) -> list[str]:
        """Dependencies as ``name:version`` strings."""
        return [str(service) for service in self.services]

    def dev_command(self) -> str | None:
        """First service-level command, used to start the project bare-metal."""
        return next((s.command for s in self.services if s.command), None)


def load_pierfile(project_dir: Path) -> Pierfile | None:
    """Load ``<project_dir>/Pierfile``; None when the file does not exist.

    Raises:
        ProjectFileError: If the file is not valid YAML or has the wrong shape.
    """
    path = project_dir / FILE_NAME
    if not path.is_file():
        return None

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return Pierfile.model_validate(data)
    except (yaml.YAMLError, PydanticValidationError) as e:
        raise ProjectFileError(str(path), f"invalid {FILE_NAME}: {e}") from e


def resolve_project_name(project_dir: Path, pierfile: Pierfile | None = None) -> str:
    """Project name from the Pierfile, else the directory name."""
    if pierfile is None:
        pierfile = load_pierfile(project_dir)
    if pierfile is not None and pierfile.name:
        return pierfile.name
    return project_dir.resolve().name
