"""Shared infrastructure manager.

Idempotently ensures and stops versioned shared-service containers
(postgres, redis, mongo, mysql, minio) on the shared network. Every
``(kind, version)`` pair maps to exactly one container identity
(``pier-<kind>-<version>``) and one data directory
(``<home>/data/<kind>-<version>``), so repeated ``ensure`` calls from any
project converge on the same instance.

Liveness is always re-derived from the container runtime; the manager keeps
no cache between calls.

Usage:
    infra = InfraManager(docker, settings)
    service = await infra.ensure("postgres", "16")
    await infra.create_database("postgres", "16", "my-app")  # -> "my_app"
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from pier.core.exceptions import (
    ContainerRuntimeError,
    ContainerStartError,
    DatabaseCreateError,
    InfraStartError,
    InvalidDatabaseNameError,
    UnsupportedServiceError,
)
from pier.core.logging import get_logger, sanitize_error
from pier.core.metrics import record_infra_start

if TYPE_CHECKING:
    from pier.core.config import Settings
    from pier.core.docker_client import DockerClient

logger = get_logger(__name__)

DB_USER = "pier"
DB_PASSWORD = "pier"


@dataclass(frozen=True, slots=True)
class ServiceDefinition:
    """Static catalog entry for one supported shared-service kind."""

    image: str
    port: int
    mount_target: str
    env: tuple[str, ...] = ()
    command: tuple[str, ...] = ()


# Catalog order is also the order connection variables are emitted in.
SERVICE_DEFINITIONS: dict[str, ServiceDefinition] = {
    "postgres": ServiceDefinition(
        image="postgres:{version}-alpine",
        port=5432,
        mount_target="/var/lib/postgresql/data",
        env=(f"POSTGRES_USER={DB_USER}", f"POSTGRES_PASSWORD={DB_PASSWORD}"),
    ),
    "redis": ServiceDefinition(
        image="redis:{version}-alpine",
        port=6379,
        mount_target="/data",
    ),
    "mongo": ServiceDefinition(
        image="mongo:{version}",
        port=27017,
        mount_target="/data/db",
    ),
    "mysql": ServiceDefinition(
        image="mysql:{version}",
        port=3306,
        mount_target="/var/lib/mysql",
        env=(f"MYSQL_ROOT_PASSWORD={DB_PASSWORD}",),
    ),
    "minio": ServiceDefinition(
        image="minio/minio",
        port=9000,
        mount_target="/data",
        command=("server", "/data", "--console-address", ":9001"),
    ),
}

RELATIONAL_KINDS = frozenset({"postgres", "mysql"})

_DB_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9_]")


def supported_kinds() -> list[str]:
    return list(SERVICE_DEFINITIONS)


@dataclass(frozen=True, slots=True)
class SharedService:
    """Immutable descriptor of one shared-service instance."""

    kind: str
    version: str
    image: str
    container: str
    port: int
    data_dir: Path
    mount_target: str
    env: tuple[str, ...] = field(default=())
    command: tuple[str, ...] = field(default=())

    @property
    def spec(self) -> str:
        return f"{self.kind}:{self.version}"

    @property
    def volume(self) -> str:
        return f"{self.data_dir}:{self.mount_target}"

    @property
    def connection_env(self) -> dict[str, str]:
        return connection_env(self)


def container_name(kind: str, version: str, prefix: str = "pier") -> str:
    """Derive the deterministic container identity for a shared service."""
    return f"{prefix}-{kind}-{version}"


def resolve_service(kind: str, version: str, settings: Settings) -> SharedService:
    """Resolve a catalog kind and version into a descriptor.

    Raises:
        UnsupportedServiceError: If ``kind`` is not in the catalog.
    """
    definition = SERVICE_DEFINITIONS.get(kind)
    if definition is None:
        raise UnsupportedServiceError(kind, supported=supported_kinds())

    return SharedService(
        kind=kind,
        version=version,
        image=definition.image.format(version=version),
        container=container_name(kind, version, settings.container_prefix),
        port=definition.port,
        data_dir=settings.data_dir / f"{kind}-{version}",
        mount_target=definition.mount_target,
        env=definition.env,
        command=definition.command,
    )


def connection_env(service: SharedService) -> dict[str, str]:
    """Connection variables for apps on the shared network.

    The host is always the container identity; containers resolve each other
    by name on the shared network.
    """
    host = service.container
    port = str(service.port)

    match service.kind:
        case "postgres":
            return {
                "DB_HOST": host,
                "DB_PORT": port,
                "DB_USER": DB_USER,
                "DB_USERNAME": DB_USER,
                "DB_PASSWORD": DB_PASSWORD,
                "DB_DATABASE": "",  # replaced by the project database name
                "DB_SYNC": "true",
                "DATABASE_HOST": host,
                "DATABASE_PORT": port,
                "DATABASE_URL": f"postgres://{DB_USER}:{DB_PASSWORD}@{host}:{port}",
                "POSTGRES_HOST": host,
                "POSTGRES_PORT": port,
                "POSTGRES_USER": DB_USER,
                "POSTGRES_PASSWORD": DB_PASSWORD,
            }
        case "redis":
            return {
                "REDIS_HOST": host,
                "REDIS_PORT": port,
                "CACHE_HOST": host,
                "CACHE_PORT": port,
            }
        case "mongo":
            return {"MONGO_HOST": host, "MONGO_PORT": port}
        case "mysql":
            return {
                "DB_HOST": host,
                "DB_PORT": port,
                "DB_USER": "root",
                "DB_PASSWORD": DB_PASSWORD,
                "MYSQL_HOST": host,
                "MYSQL_PORT": port,
            }
        case "minio":
            return {
                "MINIO_ENDPOINT": f"{host}:{port}",
                "S3_ENDPOINT": f"http://{host}:{port}",
            }
    return {}


# =============================================================================
# Database creation
# =============================================================================


class ClientOutcome(StrEnum):
    """Classification of a database client tool's result."""

    CREATED = auto()
    ALREADY_EXISTS = auto()
    FAILED = auto()


def sanitize_database_name(raw_name: str) -> str:
    """Turn a project name into a safe database identifier.

    ``-`` becomes ``_`` and everything outside ``[A-Za-z0-9_]`` is dropped.

    Raises:
        InvalidDatabaseNameError: If nothing is left.
    """
    name = _DB_NAME_DISALLOWED.sub("", raw_name.replace("-", "_"))
    if not name:
        raise InvalidDatabaseNameError(raw_name)
    return name


def quote_identifier(kind: str, name: str) -> str:
    """Quote an identifier with the dialect's rule for ``kind``."""
    if kind == "mysql":
        return "`" + name.replace("`", "``") + "`"
    return '"' + name.replace('"', '""') + '"'


def create_database_command(kind: str, name: str) -> list[str]:
    """Build the in-container client invocation that creates ``name``."""
    identifier = quote_identifier(kind, name)
    if kind == "postgres":
        return ["psql", "-U", DB_USER, "-h", "localhost", "-c", f"CREATE DATABASE {identifier};"]
    if kind == "mysql":
        return [
            "mysql",
            "-uroot",
            f"-p{DB_PASSWORD}",
            "-e",
            f"CREATE DATABASE IF NOT EXISTS {identifier};",
        ]
    raise UnsupportedServiceError(kind, supported=sorted(RELATIONAL_KINDS))


def classify_client_output(exit_code: int, output: str) -> ClientOutcome:
    """Translate a database client's free-text result into an outcome.

    This is the only place that inspects client tool output.
    """
    if "already exists" in output.lower():
        return ClientOutcome.ALREADY_EXISTS
    if exit_code == 0:
        return ClientOutcome.CREATED
    return ClientOutcome.FAILED


# =============================================================================
# Manager
# =============================================================================


class InfraManager:
    """Lifecycle manager for shared infrastructure containers."""

    def __init__(self, docker: DockerClient, settings: Settings) -> None:
        self._docker = docker
        self._settings = settings

    def resolve(self, kind: str, version: str) -> SharedService:
        return resolve_service(kind, version, self._settings)

    async def ensure(self, kind: str, version: str) -> SharedService:
        """Ensure one running instance of ``kind:version`` exists.

        Returns immediately when a running container with the derived identity
        is found.

        Raises:
            UnsupportedServiceError: If ``kind`` is not in the catalog.
            InfraStartError: If the container could not be started.
        """
        identity = container_name(kind, version, self._settings.container_prefix)
        if await self._docker.is_container_running(identity):
            logger.debug(
                f"{identity} already running",
                extra={"kind": kind, "version": version, "container": identity},
            )
            return self.resolve(kind, version)

        service = self.resolve(kind, version)

        await self._docker.ensure_network(self._settings.network)
        service.data_dir.mkdir(parents=True, exist_ok=True)
        await self._docker.stop_and_remove(service.container)

        try:
            await self._docker.run_container(
                service.image,
                service.container,
                network=self._settings.network,
                environment=list(service.env),
                volumes=[service.volume],
                command=list(service.command) or None,
            )
        except ContainerStartError as e:
            raise InfraStartError(
                f"starting {service.spec} ({service.container})",
                output=e.output,
            ) from e

        record_infra_start(kind)
        logger.info(
            f"Started {service.spec} as {service.container}",
            extra={
                "kind": kind,
                "version": version,
                "container": service.container,
                "data_dir": str(service.data_dir),
            },
        )
        return service

    async def stop(self, kind: str, version: str) -> bool:
        """Stop and remove an instance. Returns False if none existed."""
        service = self.resolve(kind, version)
        removed = await self._docker.stop_and_remove(service.container)
        if removed:
            logger.info(f"Stopped {service.spec}", extra={"container": service.container})
        return removed

    async def list_running(self) -> list[SharedService]:
        """List running instances on the shared network that match the catalog."""
        services = []
        for container in await self._docker.list_containers(network=self._settings.network):
            parsed = self.parse_container_name(container.name)
            if parsed is None or container.status != "running":
                continue
            services.append(self.resolve(*parsed))
        return services

    async def stop_all(self) -> tuple[list[str], list[str]]:
        """Stop every running shared instance.

        A container the daemon refuses to remove is skipped, not fatal.

        Returns:
            Specs that were stopped and container names that could not be.
        """
        stopped: list[str] = []
        failed: list[str] = []
        for service in await self.list_running():
            try:
                await self._docker.stop_and_remove(service.container)
            except ContainerRuntimeError as e:
                logger.warning(
                    f"Could not stop {service.container}: {sanitize_error(e)}",
                    extra={"container": service.container, "output": e.output},
                )
                failed.append(service.container)
                continue
            stopped.append(service.spec)
        if stopped:
            logger.info(f"Stopped shared services: {', '.join(stopped)}")
        return stopped, failed

    def parse_container_name(self, name: str) -> tuple[str, str] | None:
        """Split ``pier-<kind>-<version>`` into ``(kind, version)``.

        Returns None for the proxy container, unknown kinds and foreign names.
        """
        prefix = f"{self._settings.container_prefix}-"
        if name == self._settings.traefik.container_name or not name.startswith(prefix):
            return None
        kind, sep, version = name[len(prefix) :].partition("-")
        if not sep or not version or kind not in SERVICE_DEFINITIONS:
            return None
        return kind, version

    def is_infra_container(self, name: str) -> bool:
        return self.parse_container_name(name) is not None

    async def create_database(self, kind: str, version: str, raw_name: str) -> str:
        """Create a database inside a running relational instance.

        Safe to call on every ``up``: an existing database counts as success.

        Returns:
            The sanitized database name.

        Raises:
            UnsupportedServiceError: For non-relational kinds.
            InvalidDatabaseNameError: If the name is empty after sanitization.
            DatabaseCreateError: If the client tool reported a real failure.
        """
        if kind not in RELATIONAL_KINDS:
            raise UnsupportedServiceError(
                kind,
                supported=sorted(RELATIONAL_KINDS),
                message=f"database creation is not supported for {kind}",
            )

        name = sanitize_database_name(raw_name)
        service = self.resolve(kind, version)
        exit_code, output = await self._docker.exec_run(
            service.container, create_database_command(kind, name)
        )

        match classify_client_output(exit_code, output):
            case ClientOutcome.CREATED:
                logger.info(
                    f"Created database {name} in {service.container}",
                    extra={"database": name, "container": service.container},
                )
            case ClientOutcome.ALREADY_EXISTS:
                logger.debug(f"Database {name} already exists in {service.container}")
            case ClientOutcome.FAILED:
                logger.warning(
                    f"Creating database {name} failed: {sanitize_error(output)}",
                    extra={"database": name, "container": service.container},
                )
                raise DatabaseCreateError(
                    f"creating database '{name}' in {service.container}",
                    output=output,
                )
        return name
