"""Reverse proxy (Traefik) container and static configuration.

The proxy watches two sources: container labels on the shared network
(``exposedByDefault: false``, so only labelled containers are routed) and
the route store's dynamic directory. Its control API listens on the web
port + 1, which is where the state aggregator reads live routers.

Usage:
    proxy = ProxyManager(docker, settings)
    await proxy.ensure()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import yaml

from pier.core.exceptions import ContainerStartError, ProxyStartError
from pier.core.logging import get_logger

if TYPE_CHECKING:
    from pier.core.config import Settings
    from pier.core.docker_client import DockerClient

logger = get_logger(__name__)

DOCKER_SOCKET = "/var/run/docker.sock"
CONTAINER_CONFIG_PATH = "/etc/traefik/traefik.yaml"
CONTAINER_DYNAMIC_DIR = "/etc/traefik/dynamic"
WEB_PORT = "80/tcp"
API_PORT = "8080/tcp"

HEADER = "# Managed by pier; regenerated on every proxy start.\n"


def static_config(settings: Settings) -> dict[str, Any]:
    """Traefik v3 static configuration for this pier home."""
    return {
        "api": {"dashboard": settings.traefik.dashboard, "insecure": True},
        "entryPoints": {"web": {"address": ":80"}},
        "providers": {
            "docker": {
                "endpoint": f"unix://{DOCKER_SOCKET}",
                "exposedByDefault": False,
                "network": settings.network,
                "defaultRule": f"Host(`{{{{ trimPrefix `/` .Name }}}}.{settings.tld}`)",
            },
            "file": {"directory": CONTAINER_DYNAMIC_DIR, "watch": True},
        },
    }


class ProxyManager:
    """Idempotent lifecycle of the single proxy container."""

    def __init__(self, docker: DockerClient, settings: Settings) -> None:
        self._docker = docker
        self._settings = settings

    @property
    def container_name(self) -> str:
        return self._settings.traefik.container_name

    def write_static_config(self) -> None:
        """Write ``traefik.yaml`` and create the dynamic route directory."""
        self._settings.traefik_dynamic_dir.mkdir(parents=True, exist_ok=True)
        body = yaml.safe_dump(static_config(self._settings), sort_keys=False, default_flow_style=False)
        self._settings.traefik_config_path.write_text(HEADER + body, encoding="utf-8")

    async def is_running(self) -> bool:
        return await self._docker.is_container_running(self.container_name)

    async def ensure(self) -> bool:
        """Start the proxy unless it is already running.

        A stopped container with the proxy's name is replaced.

        Returns:
            True if a container was started, False if one was already running.

        Raises:
            ProxyStartError: If the container could not be started.
        """
        self.write_static_config()
        if await self.is_running():
            logger.debug(f"{self.container_name} already running")
            return False

        traefik = self._settings.traefik
        await self._docker.ensure_network(self._settings.network)
        await self._docker.stop_and_remove(self.container_name)
        try:
            await self._docker.run_container(
                traefik.image,
                self.container_name,
                network=self._settings.network,
                labels={"pier.domain": "traefik"},
                volumes=[
                    f"{DOCKER_SOCKET}:{DOCKER_SOCKET}",
                    f"{self._settings.traefik_config_path}:{CONTAINER_CONFIG_PATH}:ro",
                    f"{self._settings.traefik_dynamic_dir}:{CONTAINER_DYNAMIC_DIR}:ro",
                ],
                ports={WEB_PORT: traefik.port, API_PORT: traefik.api_port},
            )
        except ContainerStartError as e:
            raise ProxyStartError(
                f"starting {self.container_name} ({traefik.image})", output=e.output
            ) from e

        logger.info(
            f"Started {self.container_name} on port {traefik.port}",
            extra={"container": self.container_name, "port": traefik.port, "api_port": traefik.api_port},
        )
        return True

    async def stop(self) -> bool:
        """Stop and remove the proxy container; False if there was none.

        Raises:
            ContainerRuntimeError: If the daemon refused the removal.
        """
        return await self._docker.stop_and_remove(self.container_name)
