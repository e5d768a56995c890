"""Bare-metal linking: route a local dev server to ``<name>.<tld>``.

``link`` publishes a file route to the host port, remembers the project as a
``link`` entry (with its dev command, so the dashboard can start it later)
and starts the dev server in its own process group. Any dev server still
recorded in the project's PID file is terminated first. ``unlink`` undoes
the route and the process; the registry entry is kept.

Name, port and command resolution, in priority order:

- name: argument, Pierfile ``name``, directory name
- port: argument, Pierfile ``port``, detected framework default
- command: argument, first Pierfile service ``command``, framework default
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pier.core.exceptions import (
    DevProcessError,
    PierError,
    RouteNotFoundError,
    UnsupportedError,
    ValidationError,
)
from pier.core.logging import get_logger
from pier.services.dev_process import DevProcessHandle
from pier.services.framework import default_dev_command
from pier.services.pierfile import load_pierfile, resolve_project_name
from pier.services.project_registry import ProjectEntry, ProjectType

if TYPE_CHECKING:
    from pier.core.config import Settings
    from pier.services.framework import FrameworkDetector
    from pier.services.project_registry import ProjectRegistry
    from pier.services.route_store import RouteStore

logger = get_logger(__name__)


@dataclass(slots=True)
class LinkResult:
    name: str
    domain: str
    port: int
    command: str | None = None
    pid: int | None = None
    log_path: Path | None = None


class ProjectLinker:
    """Links and unlinks bare-metal dev servers."""

    def __init__(
        self,
        settings: Settings,
        routes: RouteStore,
        registry: ProjectRegistry,
        detector: FrameworkDetector | None = None,
    ) -> None:
        self._settings = settings
        self._routes = routes
        self._registry = registry
        self._detector = detector

    async def link(
        self,
        project_dir: Path,
        name: str | None = None,
        port: int | None = None,
        command: str | None = None,
    ) -> LinkResult:
        """Route ``name`` to the host port and start the dev server.

        Without a dev command only the route and registry entry are created;
        the developer starts the server themselves.

        Raises:
            ProjectFileError: If the Pierfile is invalid.
            UnsupportedError: No command, no port and no detectable framework.
            ValidationError: The port could not be determined.
            DevProcessError: The dev command could not be executed.
        """
        project_dir = project_dir.resolve()
        pierfile = load_pierfile(project_dir)
        name = name or resolve_project_name(project_dir, pierfile)
        port = port or (pierfile.port if pierfile else 0)
        command = command or (pierfile.dev_command() if pierfile else None)
        framework_name = None

        if not command:
            framework = self._detector.detect(project_dir) if self._detector is not None else None
            if framework is None and not port:
                raise UnsupportedError(
                    "could not detect framework and no port specified: pass a port or add a Pierfile"
                )
            if framework is not None:
                framework_name = framework.name
                port = port or framework.port
                command = default_dev_command(framework, port)

        if not port:
            raise ValidationError(
                "could not determine port: pass a port or set port in the Pierfile",
                error_code="PORT_UNKNOWN",
            )

        self._routes.publish_bare_metal(name, port)
        self._register(name, project_dir, port, command, framework_name)
        result = LinkResult(name=name, domain=self._settings.domain_for(name), port=port, command=command)
        if not command:
            logger.info(
                f"Linked {result.domain} -> localhost:{port}; start your dev server on port {port}",
                extra={"project": name, "port": port},
            )
            return result

        handle = DevProcessHandle.load(project_dir)
        handle.terminate()
        try:
            result.pid = await handle.start(command)
        except (OSError, ValueError) as e:
            raise DevProcessError(f"failed to start {name}: {e}") from e
        result.log_path = handle.log_path
        logger.info(
            f"Linked {result.domain} -> localhost:{port} (pid {result.pid})",
            extra={"project": name, "port": port, "pid": result.pid, "command": command},
        )
        return result

    def _register(
        self,
        name: str,
        project_dir: Path,
        port: int,
        command: str | None,
        framework: str | None,
    ) -> None:
        entry = ProjectEntry(
            name=name,
            dir=str(project_dir),
            port=port,
            command=command,
            type=ProjectType.LINK,
            framework=framework,
        )
        try:
            self._registry.register(entry)
        except (PierError, OSError) as e:
            logger.warning(f"Could not register project {name}: {e}", extra={"project": name})

    def unlink(self, project_dir: Path, name: str | None = None) -> bool:
        """Stop the dev server and remove the route.

        Returns:
            True if a dev server or a route was found.
        """
        project_dir = project_dir.resolve()
        name = name or resolve_project_name(project_dir)

        handle = DevProcessHandle.load(project_dir)
        found = handle.pid_path.exists()
        handle.terminate()
        try:
            self._routes.remove(name)
            found = True
        except RouteNotFoundError:
            logger.debug(f"No route to remove for {name}")
        if found:
            logger.info(f"Unlinked {name}", extra={"project": name})
        return found
