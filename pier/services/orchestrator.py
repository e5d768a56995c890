"""Build-run-route orchestration for one application.

Every ``up`` walks the same steps from the beginning; nothing about a
previous run is remembered except what the registry and the runtime hold:

    build_image -> ensure_infra -> compose_env -> stop_previous
        -> run_container -> publish_route -> register_project -> done

The first failing step aborts the run with a :class:`PipelineError` naming
the step and the steps already completed. Completed side effects stay in
place (shared infrastructure in particular may serve other projects).

Usage:
    orchestrator = AppOrchestrator(docker, infra, routes, registry, settings,
                                   detector=detector, templates=templates)
    results = await orchestrator.up_project(Path.cwd())
"""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from docker.errors import DockerException

from pier.core.exceptions import (
    ContainerRuntimeError,
    InvalidServiceSpecError,
    PierError,
    PipelineError,
    RouteNotFoundError,
    UnsupportedError,
)
from pier.core.logging import get_logger, sanitize_error
from pier.core.metrics import observe_pipeline_run
from pier.core.retry import fixed_backoff
from pier.services.compose_parser import ComposeFile, parse_compose, separate_services
from pier.services.env_composer import (
    PROJECT_STATE_DIR,
    compose_overrides,
    generate_env_file,
    merge_env,
    read_env_lines,
    to_env_list,
)
from pier.services.pierfile import Pierfile, load_pierfile, resolve_project_name
from pier.services.project_registry import ProjectEntry, ProjectType
from pier.services.proxy_manager import ProxyManager
from pier.services.route_store import container_route_labels
from pier.services.shared_infra import RELATIONAL_KINDS

if TYPE_CHECKING:
    from pier.core.config import Settings
    from pier.core.docker_client import DockerClient
    from pier.services.framework import DockerfileTemplates, FrameworkDescriptor, FrameworkDetector
    from pier.services.project_registry import ProjectRegistry
    from pier.services.route_store import RouteStore
    from pier.services.shared_infra import InfraManager, SharedService

logger = get_logger(__name__)

GENERATED_DOCKERFILE = "Dockerfile"


class PipelineStep(StrEnum):
    BUILD_IMAGE = "build_image"
    ENSURE_INFRA = "ensure_infra"
    COMPOSE_ENV = "compose_env"
    STOP_PREVIOUS = "stop_previous"
    RUN_CONTAINER = "run_container"
    PUBLISH_ROUTE = "publish_route"
    REGISTER_PROJECT = "register_project"
    DONE = "done"


@dataclass(slots=True)
class AppSpec:
    """What to build and run for one application container.

    Attributes:
        name: Container name and route name
        dir: Project directory; relative paths resolve against it
        image: Pre-built image; skips the build when set
        build_context: Build context relative to ``dir``
        dockerfile: Explicit Dockerfile relative to ``dir``
        port: Container port; 0 means "use the detected framework default"
        env: Project-level overrides (Pierfile ``env``)
        base_env: Lowest-priority values (compose ``environment``)
        volumes: ``host:container[:mode]`` mounts
        entrypoint: Entrypoint override; for a list the rest become arguments
        command: Command override
        services: Shared-service dependencies as ``kind:version``
        database_name: Project name used for database creation; defaults to ``name``
    """

    name: str
    dir: Path
    image: str | None = None
    build_context: str | None = None
    dockerfile: str | None = None
    port: int = 0
    env: dict[str, str] = field(default_factory=dict)
    base_env: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    entrypoint: str | list[str] | None = None
    command: str | list[str] | None = None
    services: list[str] = field(default_factory=list)
    database_name: str | None = None

    @property
    def project_name(self) -> str:
        return self.database_name or self.name


@dataclass(frozen=True, slots=True)
class BuiltImage:
    image: str
    port: int
    framework: str | None = None


@dataclass(slots=True)
class RunResult:
    name: str
    domain: str
    image: str
    port: int
    shared_services: list[SharedService] = field(default_factory=list)
    database_created: bool = False
    env_file: Path | None = None
    completed_steps: list[PipelineStep] = field(default_factory=list)


@dataclass(slots=True)
class DownSummary:
    apps: list[str] = field(default_factory=list)
    infra: list[str] = field(default_factory=list)
    proxy_stopped: bool = False
    routes_removed: int = 0
    failed: list[str] = field(default_factory=list)


def parse_service_spec(spec: str) -> tuple[str, str]:
    """Split ``kind:version``.

    Raises:
        InvalidServiceSpecError: If either part is missing.
    """
    kind, sep, version = spec.partition(":")
    if not sep or not kind.strip() or not version.strip():
        raise InvalidServiceSpecError(spec)
    return kind.strip(), version.strip()


def resolve_volumes(project_dir: Path, volumes: list[str]) -> list[str]:
    """Resolve relative host paths of bind mounts against the project.

    Named volumes (no path separator in the host part) pass through.
    Anonymous volumes (no host part) are skipped: the runtime only takes
    binds here.
    """
    resolved = []
    for volume in volumes:
        host, sep, rest = volume.partition(":")
        if not sep:
            logger.debug(f"Skipping anonymous volume {volume}", extra={"volume": volume})
            continue
        if host.startswith("~"):
            host = str(Path(host).expanduser())
        elif not Path(host).is_absolute() and (host.startswith(".") or "/" in host):
            host = str((project_dir / host).resolve())
        resolved.append(f"{host}:{rest}")
    return resolved


def split_entrypoint(
    entrypoint: str | list[str] | None,
    command: str | list[str] | None,
) -> tuple[str | None, str | list[str] | None]:
    """Normalize entrypoint/command overrides for the runtime.

    A list entrypoint contributes its first element as the entrypoint and
    the remaining elements as leading command arguments.
    """
    if isinstance(entrypoint, list):
        if not entrypoint:
            return None, command
        head, args = str(entrypoint[0]), [str(arg) for arg in entrypoint[1:]]
    else:
        head, args = entrypoint or None, []

    if not args:
        return head, command
    if isinstance(command, str):
        return head, args + shlex.split(command)
    return head, args + [str(arg) for arg in command or []]


class AppOrchestrator:
    """Drives the build-run-route pipeline against the other components."""

    def __init__(
        self,
        docker: DockerClient,
        infra: InfraManager,
        routes: RouteStore,
        registry: ProjectRegistry,
        settings: Settings,
        detector: FrameworkDetector | None = None,
        templates: DockerfileTemplates | None = None,
        proxy: ProxyManager | None = None,
    ) -> None:
        self._docker = docker
        self._infra = infra
        self._routes = routes
        self._registry = registry
        self._settings = settings
        self._detector = detector
        self._templates = templates
        self._proxy = proxy or ProxyManager(docker, settings)

    # =========================================================================
    # Steps
    # =========================================================================

    def _detect(self, project_dir: Path) -> FrameworkDescriptor | None:
        if self._detector is None:
            return None
        return self._detector.detect(project_dir)

    async def build_image(self, spec: AppSpec) -> BuiltImage:
        """Build the app image, generating a Dockerfile when there is none."""
        if spec.image:
            return BuiltImage(image=spec.image, port=spec.port)

        context = (spec.dir / (spec.build_context or ".")).resolve()
        dockerfile = (spec.dir / spec.dockerfile) if spec.dockerfile else context / "Dockerfile"
        framework = self._detect(spec.dir)

        if not dockerfile.is_file():
            if framework is None:
                raise UnsupportedError("no Dockerfile found and could not detect framework")
            body = self._templates.render(framework) if self._templates is not None else None
            if not body:
                raise UnsupportedError(f"no Dockerfile template for framework: {framework.name}")

            state_dir = spec.dir / PROJECT_STATE_DIR
            state_dir.mkdir(parents=True, exist_ok=True)
            dockerfile = state_dir / GENERATED_DOCKERFILE
            dockerfile.write_text(body, encoding="utf-8")
            logger.info(
                f"Generated Dockerfile for {framework.name} -> {PROJECT_STATE_DIR}/{GENERATED_DOCKERFILE}",
                extra={"project": spec.name, "framework": framework.name},
            )

        port = spec.port or (framework.port if framework else 0)
        image = await self._docker.build_image(context, dockerfile, tag=spec.name)
        return BuiltImage(image=image, port=port, framework=framework.name if framework else None)

    async def ensure_infra(
        self, service_specs: list[str], project_name: str
    ) -> tuple[list[SharedService], bool]:
        """Ensure every dependency; relational kinds get a project database.

        Database creation failures are logged and do not abort the run.
        """
        services: list[SharedService] = []
        database_created = False

        for spec in service_specs:
            kind, version = parse_service_spec(spec)
            service = await self._infra.ensure(kind, version)
            services.append(service)

            if kind in RELATIONAL_KINDS:
                try:
                    await self._infra.create_database(kind, version, project_name)
                    database_created = True
                except PierError as e:
                    logger.warning(
                        f"Could not create database for {project_name}: {sanitize_error(e)}",
                        extra={"project": project_name, "service": spec},
                    )

        return services, database_created

    def compose_env(
        self, spec: AppSpec, services: list[SharedService]
    ) -> tuple[list[str], Path | None]:
        """Compose the container environment.

        When the project has a ``.env``, it is merged with the overrides into
        ``.pier/env`` and the merged values are used.
        """
        overrides = compose_overrides(services, spec.env, project_name=spec.project_name)
        base = to_env_list(spec.base_env)

        if (spec.dir / ".env").is_file():
            env_file = generate_env_file(spec.dir, overrides)
            return merge_env(base, read_env_lines(env_file)), env_file
        return merge_env(base, overrides), None

    async def stop_previous(self, name: str) -> None:
        """Remove any container with this name; errors are ignored."""
        try:
            await self._docker.stop_and_remove(name)
        except (PierError, DockerException) as e:
            logger.debug(f"Ignoring failure to remove previous {name}: {e}")

    async def run_container(
        self, spec: AppSpec, image: str, port: int, environment: list[str]
    ) -> None:
        labels = container_route_labels(spec.name, self._settings.tld, port)
        labels["pier.project"] = spec.project_name
        labels["pier.domain"] = self._settings.domain_for(spec.name)
        entrypoint, command = split_entrypoint(spec.entrypoint, spec.command)

        await self._docker.ensure_network(self._settings.network)
        await self._docker.run_container(
            image,
            spec.name,
            network=self._settings.network,
            environment=environment,
            labels=labels,
            volumes=resolve_volumes(spec.dir, spec.volumes),
            entrypoint=entrypoint,
            command=command,
        )

    def publish_route(self, name: str, port: int) -> bool:
        """Publish the file-declared fallback route to the container."""
        if port <= 0:
            return False
        self._routes.publish_container(name, port)
        return True

    def register_project(self, spec: AppSpec, port: int, framework: str | None) -> None:
        """Upsert the registry entry; failures are logged only."""
        entry = ProjectEntry(
            name=spec.name,
            dir=str(spec.dir.resolve()),
            port=port,
            type=ProjectType.DOCKER,
            framework=framework,
        )
        try:
            self._registry.register(entry)
        except (PierError, OSError) as e:
            logger.warning(
                f"Could not register project {spec.name}: {e}",
                extra={"project": spec.name},
            )

    # =========================================================================
    # Pipelines
    # =========================================================================

    async def up(self, spec: AppSpec) -> RunResult:
        """Run every step for one application.

        Raises:
            PipelineError: On the first failing step.
        """
        completed: list[PipelineStep] = []
        step = PipelineStep.BUILD_IMAGE
        started = time.monotonic()
        try:
            built = await self.build_image(spec)
            completed.append(step)

            step = PipelineStep.ENSURE_INFRA
            services, database_created = await self.ensure_infra(spec.services, spec.project_name)
            completed.append(step)

            step = PipelineStep.COMPOSE_ENV
            environment, env_file = self.compose_env(spec, services)
            completed.append(step)

            step = PipelineStep.STOP_PREVIOUS
            await self.stop_previous(spec.name)
            completed.append(step)

            step = PipelineStep.RUN_CONTAINER
            await self.run_container(spec, built.image, built.port, environment)
            completed.append(step)

            step = PipelineStep.PUBLISH_ROUTE
            self.publish_route(spec.name, built.port)
            completed.append(step)

            step = PipelineStep.REGISTER_PROJECT
            self.register_project(spec, built.port, built.framework)
            completed.append(step)
        except (PierError, DockerException, OSError) as e:
            logger.error(
                f"{spec.name}: {step} failed: {sanitize_error(e)}",
                extra={
                    "project": spec.name,
                    "step": str(step),
                    "completed_steps": [str(s) for s in completed],
                },
            )
            observe_pipeline_run("failed", time.monotonic() - started, failed_step=str(step))
            raise PipelineError(str(step), e, completed_steps=[str(s) for s in completed]) from e

        completed.append(PipelineStep.DONE)
        observe_pipeline_run("ok", time.monotonic() - started)
        domain = self._settings.domain_for(spec.name)
        logger.info(
            f"{domain} is up",
            extra={"project": spec.name, "image": built.image, "port": built.port},
        )
        return RunResult(
            name=spec.name,
            domain=domain,
            image=built.image,
            port=built.port,
            shared_services=services,
            database_created=database_created,
            env_file=env_file,
            completed_steps=completed,
        )

    async def up_project(self, project_dir: Path) -> list[RunResult]:
        """Bring a project directory online (Pierfile and/or compose file).

        Raises:
            ContainerRuntimeUnavailableError: If the daemon does not answer.
            ProxyStartError: If the proxy container could not be started.
            PipelineError: On the first failing step of any application.
        """
        await self._docker.ensure_available(
            fixed_backoff(self._settings.docker_ping_retries, self._settings.docker_ping_backoff)
        )
        await self._proxy.ensure()
        project_dir = project_dir.resolve()
        pierfile = load_pierfile(project_dir)
        project_name = resolve_project_name(project_dir, pierfile)

        compose = parse_compose(project_dir)
        if compose is not None:
            return await self.up_compose(project_dir, project_name, compose, pierfile)

        spec = self._pierfile_spec(project_dir, project_name, pierfile)
        return [await self.up(spec)]

    async def up_compose(
        self,
        project_dir: Path,
        project_name: str,
        compose: ComposeFile,
        pierfile: Pierfile | None = None,
    ) -> list[RunResult]:
        """Run compose application services against shared infrastructure.

        Compose infrastructure services are replaced by shared instances.
        Without application services the project is built from its
        Dockerfile like a plain project.
        """
        infra_services, apps = separate_services(compose)
        service_specs = [service.spec for service in infra_services]
        for service in infra_services:
            logger.info(
                f"Using shared {service.spec} instead of compose service '{service.compose_name}'",
                extra={"project": project_name, "compose_service": service.compose_name},
            )

        if not apps:
            spec = self._pierfile_spec(project_dir, project_name, pierfile)
            spec.services = list(dict.fromkeys([*service_specs, *spec.services]))
            return [await self.up(spec)]

        results = []
        for app in apps:
            spec = AppSpec(
                name=project_name if len(apps) == 1 else app.compose_name,
                dir=project_dir,
                image=None if app.build is not None else app.image,
                build_context=app.build,
                port=app.port,
                env=dict(pierfile.env) if pierfile else {},
                base_env=app.environment,
                volumes=app.volumes,
                command=app.command,
                services=service_specs,
                database_name=project_name,
            )
            results.append(await self.up(spec))
        return results

    @staticmethod
    def _pierfile_spec(project_dir: Path, project_name: str, pierfile: Pierfile | None) -> AppSpec:
        if pierfile is None:
            return AppSpec(name=project_name, dir=project_dir)
        return AppSpec(
            name=project_name,
            dir=project_dir,
            port=pierfile.port,
            env=dict(pierfile.env),
            services=pierfile.service_specs(),
        )

    # =========================================================================
    # Teardown
    # =========================================================================

    async def down(self, name: str) -> bool:
        """Stop a project container and drop its route file.

        The route file is removed even when the container removal fails.

        Returns:
            True if a container or route existed.

        Raises:
            ContainerRuntimeError: If the daemon refused the removal.
        """
        error: ContainerRuntimeError | None = None
        try:
            removed = await self._docker.stop_and_remove(name)
        except ContainerRuntimeError as e:
            error, removed = e, False
        try:
            self._routes.remove(name)
            removed = True
        except RouteNotFoundError:
            pass
        if error is not None:
            raise error
        if removed:
            logger.info(f"{name} is down", extra={"project": name})
        return removed

    async def _stop_container(self, name: str, summary: DownSummary) -> bool:
        try:
            return await self._docker.stop_and_remove(name)
        except ContainerRuntimeError as e:
            logger.warning(
                f"Could not stop {name}: {sanitize_error(e)}",
                extra={"container": name, "output": e.output},
            )
            summary.failed.append(name)
            return False

    async def down_all(self) -> DownSummary:
        """Stop project containers, then shared infrastructure, then the proxy.

        A container that cannot be removed is recorded in ``failed`` and the
        teardown carries on; route files are always removed.
        """
        summary = DownSummary()
        proxy_name = self._proxy.container_name

        for container in await self._docker.list_containers(network=self._settings.network):
            if container.name == proxy_name or self._infra.is_infra_container(container.name):
                continue
            if await self._stop_container(container.name, summary):
                summary.apps.append(container.name)

        summary.infra, infra_failed = await self._infra.stop_all()
        summary.failed.extend(infra_failed)

        try:
            summary.proxy_stopped = await self._proxy.stop()
        except ContainerRuntimeError as e:
            logger.warning(f"Could not stop {proxy_name}: {sanitize_error(e)}", extra={"container": proxy_name})
            summary.failed.append(proxy_name)
        summary.routes_removed = self._routes.remove_all()

        if summary.failed:
            logger.warning(
                f"Stopped everything except {', '.join(summary.failed)}",
                extra={"failed": summary.failed},
            )
        else:
            logger.info(
                "Stopped everything",
                extra={
                    "apps": summary.apps,
                    "infra": summary.infra,
                    "routes_removed": summary.routes_removed,
                },
            )
        return summary
