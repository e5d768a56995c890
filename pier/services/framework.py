"""Collaborators the orchestrator consumes for Dockerfile generation.

Framework detection and Dockerfile template bodies live outside pier's core.
The orchestrator only needs a detected framework's name, language and
default port, and a template producer keyed by that descriptor. Linking a
project bare-metal also needs the framework's usual dev server command.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class FrameworkDescriptor:
    name: str
    language: str
    port: int


@runtime_checkable
class FrameworkDetector(Protocol):
    def detect(self, project_dir: Path) -> FrameworkDescriptor | None:
        """Return the project's framework, or None if unrecognized."""
        ...


@runtime_checkable
class DockerfileTemplates(Protocol):
    def render(self, framework: FrameworkDescriptor) -> str | None:
        """Return a Dockerfile body for ``framework``, or None if there is none."""
        ...


# Dev server commands for bare-metal runs; {port} is substituted
DEV_COMMANDS: dict[str, str] = {
    "nextjs": "npx next dev -p {port}",
    "nuxt": "npx nuxi dev --port {port}",
    "nestjs": "npm run start:dev",
    "express": "npm run dev",
    "fastify": "npm run dev",
    "django": "python manage.py runserver 0.0.0.0:{port}",
    "fastapi": "uvicorn main:app --reload --port {port}",
    "flask": "flask run --port {port}",
    "go": "go run .",
    "rails": "rails server -p {port}",
    "phoenix": "mix phx.server",
    "laravel": "php artisan serve --port={port}",
    "spring-boot": "./mvnw spring-boot:run",
}


def default_dev_command(framework: FrameworkDescriptor, port: int) -> str | None:
    """The framework's usual dev server command, or None if unknown."""
    template = DEV_COMMANDS.get(framework.name)
    return template.format(port=port) if template else None
