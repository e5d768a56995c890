"""Centralized fakes and mock factories for testing.

Usage:
    from pier.tests.mock_utils import FakeDockerClient, create_mock_container

    docker = FakeDockerClient()
    docker.add_container("pier-postgres-16", status="running")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

from pier.core.exceptions import (
    ContainerRuntimeError,
    ContainerRuntimeUnavailableError,
    ContainerStartError,
)
from pier.services.framework import FrameworkDescriptor

# =============================================================================
# Container runtime
# =============================================================================


@dataclass
class FakeContainer:
    """Subset of docker-py's Container used by pier."""

    name: str
    status: str = "running"
    image: str = ""
    network: str | None = None
    environment: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    ports: dict[str, int] = field(default_factory=dict)
    entrypoint: str | list[str] | None = None
    command: str | list[str] | None = None


class FakeDockerClient:
    """In-memory DockerClient with the same async surface.

    Attributes:
        containers: Containers by name
        networks: Names of created networks
        builds: ``(context, dockerfile, tag)`` for every build
        runs: Names of containers started, in order
        execs: ``(container, cmd)`` for every exec
        exec_results: Result per container name; ``(0, "")`` otherwise
        fail_run: Container names whose start fails with ContainerStartError
        fail_remove: Container names whose removal fails with ContainerRuntimeError
        build_error: Raised by build_image when set
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.networks: set[str] = set()
        self.builds: list[tuple[Path, Path, str]] = []
        self.runs: list[str] = []
        self.execs: list[tuple[str, list[str]]] = []
        self.exec_results: dict[str, tuple[int, str]] = {}
        self.fail_run: set[str] = set()
        self.fail_remove: set[str] = set()
        self.build_error: Exception | None = None
        self.available = True
        self.closed = False

    def add_container(self, name: str, status: str = "running", **kwargs: Any) -> FakeContainer:
        container = FakeContainer(name=name, status=status, **kwargs)
        self.containers[name] = container
        return container

    def running(self) -> list[str]:
        return [name for name, c in self.containers.items() if c.status == "running"]

    async def connect(self) -> bool:
        return self.available

    async def ensure_available(self, config: Any = None) -> None:
        if not self.available:
            raise ContainerRuntimeUnavailableError("Docker is not running")

    async def get_container(self, name: str) -> FakeContainer | None:
        return self.containers.get(name)

    async def is_container_running(self, name: str) -> bool:
        container = self.containers.get(name)
        return container is not None and container.status == "running"

    async def list_containers(self, network: str | None = None, all: bool = True) -> list[FakeContainer]:
        return [
            c
            for c in self.containers.values()
            if (network is None or c.network == network) and (all or c.status == "running")
        ]

    async def stop_and_remove(self, name: str, timeout: int = 10) -> bool:
        if name in self.fail_remove and name in self.containers:
            raise ContainerRuntimeError(f"Failed to remove container {name}", output="device or resource busy")
        return self.containers.pop(name, None) is not None

    async def run_container(
        self,
        image: str,
        name: str,
        *,
        network: str | None = None,
        environment: list[str] | None = None,
        labels: dict[str, str] | None = None,
        volumes: list[str] | None = None,
        ports: dict[str, int] | None = None,
        entrypoint: str | list[str] | None = None,
        command: str | list[str] | None = None,
    ) -> FakeContainer:
        if name in self.fail_run:
            raise ContainerStartError(f"Failed to start {name}", output="port is already allocated")
        if name in self.containers:
            raise ContainerStartError(
                f"Failed to start {name}", output=f'Conflict. The container name "/{name}" is already in use'
            )
        self.runs.append(name)
        return self.add_container(
            name,
            image=image,
            network=network,
            environment=list(environment or []),
            labels=dict(labels or {}),
            volumes=list(volumes or []),
            ports=dict(ports or {}),
            entrypoint=entrypoint,
            command=command,
        )

    async def exec_run(self, name: str, cmd: list[str]) -> tuple[int, str]:
        if name not in self.containers:
            raise ContainerRuntimeError(f"Container {name} is not running")
        self.execs.append((name, cmd))
        return self.exec_results.get(name, (0, "CREATE DATABASE"))

    async def ensure_network(self, name: str) -> bool:
        if name in self.networks:
            return False
        self.networks.add(name)
        return True

    async def build_image(self, context: Path, dockerfile: Path, tag: str) -> str:
        if self.build_error is not None:
            raise self.build_error
        self.builds.append((context, dockerfile, tag))
        return tag

    async def close(self) -> None:
        self.closed = True


def create_mock_container(name: str, status: str = "running", **attrs: Any) -> MagicMock:
    """Create a MagicMock shaped like a docker-py Container."""
    container = MagicMock()
    container.name = name
    container.status = status
    for key, value in attrs.items():
        setattr(container, key, value)
    return container


# =============================================================================
# Framework collaborators
# =============================================================================


class StaticDetector:
    """FrameworkDetector returning a fixed descriptor."""

    def __init__(self, framework: FrameworkDescriptor | None) -> None:
        self.framework = framework
        self.calls: list[Path] = []

    def detect(self, project_dir: Path) -> FrameworkDescriptor | None:
        self.calls.append(project_dir)
        return self.framework


class StaticTemplates:
    """DockerfileTemplates producing one body for every framework."""

    def __init__(self, body: str | None = "FROM node:20-alpine\nCMD [\"npm\", \"start\"]\n") -> None:
        self.body = body

    def render(self, framework: FrameworkDescriptor) -> str | None:
        return self.body
