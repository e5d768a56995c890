"""Docker API wrapper for container management.

This module provides an async wrapper around docker-py for managing Docker/Podman
containers. Blocking docker-py calls run in a worker thread via
asyncio.to_thread() so the control-plane API stays responsive.

Features:
- Lazy connection; an unreachable daemon surfaces as ContainerRuntimeUnavailableError
- Bounded ping retry (fixed backoff) to ride out a daemon that is still starting
- Typed docker-py errors (NotFound, APIError, BuildError) instead of output parsing
- Idempotent helpers: ensure_network, stop_and_remove
- Context manager support for automatic cleanup

Usage:
    async with DockerClient() as client:
        if not await client.is_container_running("pier-postgres-16"):
            ...
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any

from docker import DockerClient as BaseDockerClient  # type: ignore[attr-defined]
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from pier.core.exceptions import (
    ContainerRuntimeError,
    ContainerRuntimeUnavailableError,
    ContainerStartError,
    ImageBuildError,
)
from pier.core.logging import get_logger
from pier.core.retry import RetryConfig, fixed_backoff, run_with_retry

if TYPE_CHECKING:
    from docker.models.containers import Container

logger = get_logger(__name__)

RESTART_POLICY = {"Name": "unless-stopped"}


def _explain(error: DockerException) -> str:
    """Return the daemon's own explanation for an error when it has one."""
    explanation = getattr(error, "explanation", None)
    if explanation:
        return explanation.decode() if isinstance(explanation, bytes) else str(explanation)
    return str(error)


class DockerClient:
    """Async wrapper around docker-py for container management.

    The client supports both Docker and Podman since they share the same API.

    Attributes:
        _docker_host: The Docker host URL (e.g., unix:///var/run/docker.sock)
        _client: The underlying docker-py client, created on first use
    """

    def __init__(self, docker_host: str | None = None) -> None:
        """Initialize Docker client.

        Args:
            docker_host: Docker host URL. If None, uses DOCKER_HOST or the
                        standard Docker socket.
        """
        self._docker_host = docker_host
        self._client: BaseDockerClient | None = None

    async def __aenter__(self) -> DockerClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _get_client(self) -> BaseDockerClient:
        if self._client is None:
            try:
                if self._docker_host:
                    self._client = BaseDockerClient(base_url=self._docker_host)
                else:
                    self._client = BaseDockerClient.from_env()
            except DockerException as e:
                raise ContainerRuntimeUnavailableError(
                    f"Docker is not running: {_explain(e)}"
                ) from e
        return self._client

    # =========================================================================
    # Daemon
    # =========================================================================

    async def connect(self) -> bool:
        """Ping the daemon once.

        Returns:
            True if the daemon answered, False otherwise.
        """
        try:
            client = self._get_client()
            await asyncio.to_thread(client.ping)
        except (DockerException, ContainerRuntimeUnavailableError) as e:
            logger.warning(
                f"Failed to connect to Docker daemon: {e}",
                extra={"docker_host": self._docker_host or "default", "error": str(e)},
            )
            return False
        logger.debug(
            "Connected to Docker daemon",
            extra={"docker_host": self._docker_host or "default"},
        )
        return True

    async def ensure_available(self, config: RetryConfig | None = None) -> None:
        """Ping the daemon with a bounded retry.

        Args:
            config: Retry policy; three attempts one second apart by default.

        Raises:
            ContainerRuntimeUnavailableError: If every attempt failed.
        """
        config = config or fixed_backoff(max_retries=2, delay=1.0)

        async def _ping() -> None:
            client = self._get_client()
            try:
                await asyncio.to_thread(client.ping)
            except DockerException as e:
                raise ContainerRuntimeUnavailableError(f"Docker is not running: {_explain(e)}") from e

        await run_with_retry(
            _ping,
            config,
            retry_on=(ContainerRuntimeUnavailableError,),
            operation_name="docker_ping",
        )

    # =========================================================================
    # Containers
    # =========================================================================

    async def get_container(self, name: str) -> Container | None:
        """Get a container by exact name or ID.

        Returns:
            Container object if found, None otherwise.
        """
        client = self._get_client()
        try:
            return await asyncio.to_thread(client.containers.get, name)
        except NotFound:
            logger.debug(f"Container not found: {name}", extra={"container": name})
            return None

    async def is_container_running(self, name: str) -> bool:
        """Return True if a container with this identity is running."""
        try:
            container = await self.get_container(name)
        except APIError as e:
            logger.warning(
                f"Error inspecting container {name}: {e}",
                extra={"container": name, "error": str(e)},
            )
            return False
        return container is not None and container.status == "running"

    async def list_containers(
        self,
        network: str | None = None,
        all: bool = True,
    ) -> list[Container]:
        """List containers, optionally only those attached to a network.

        Returns:
            List of Container objects. Returns empty list on error.
        """
        client = self._get_client()
        filters: dict[str, Any] = {"network": network} if network else {}
        try:
            containers: list[Container] = await asyncio.to_thread(
                client.containers.list, all=all, filters=filters
            )
        except (DockerException, RuntimeError) as e:
            logger.warning(
                f"Failed to list containers: {e}",
                extra={"error": str(e), "network": network},
            )
            return []
        logger.debug(
            f"Listed {len(containers)} containers",
            extra={"count": len(containers), "network": network},
        )
        return containers

    async def stop_and_remove(self, name: str, timeout: int = 10) -> bool:
        """Stop and remove a container.

        A container that does not exist or is already stopped is the desired
        state, not an error.

        Returns:
            True if a container was removed, False if none existed.

        Raises:
            ContainerRuntimeError: If the daemon refused the removal.
        """
        container = await self.get_container(name)
        if container is None:
            return False

        try:
            if container.status == "running":
                await asyncio.to_thread(container.stop, timeout=timeout)
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            return False
        except APIError as e:
            raise ContainerRuntimeError(
                f"Failed to remove container {name}", output=_explain(e)
            ) from e

        logger.info(f"Removed container {name}", extra={"container": name})
        return True

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
    ) -> Container:
        """Run a detached container with restart policy ``unless-stopped``.

        Missing images are pulled by docker-py before the container starts.

        Raises:
            ContainerStartError: With the daemon's output when the start fails.
        """
        client = self._get_client()
        kwargs: dict[str, Any] = {
            "name": name,
            "detach": True,
            "restart_policy": RESTART_POLICY,
            "environment": environment or [],
            "labels": labels or {},
            "volumes": volumes or [],
        }
        if network:
            kwargs["network"] = network
        if ports:
            kwargs["ports"] = ports
        if entrypoint is not None:
            kwargs["entrypoint"] = entrypoint
        if command is not None:
            kwargs["command"] = command

        try:
            container: Container = await asyncio.to_thread(client.containers.run, image, **kwargs)
        except (ImageNotFound, APIError) as e:
            output = _explain(e)
            logger.error(
                f"Failed to start container {name}: {output}",
                extra={"container": name, "image": image},
            )
            raise ContainerStartError(f"Failed to start {name}", output=output) from e

        logger.info(
            f"Started container {name}",
            extra={"container": name, "image": image, "network": network},
        )
        return container

    async def exec_run(self, name: str, cmd: list[str]) -> tuple[int, str]:
        """Execute a command inside a running container.

        Returns:
            Tuple of exit code and combined stdout/stderr text.

        Raises:
            ContainerRuntimeError: If the container is missing or the exec failed.
        """
        container = await self.get_container(name)
        if container is None:
            raise ContainerRuntimeError(f"Container {name} is not running")

        try:
            exit_code, output = await asyncio.to_thread(container.exec_run, cmd)
        except APIError as e:
            raise ContainerRuntimeError(f"Failed to exec in {name}", output=_explain(e)) from e

        text = output.decode(errors="replace") if isinstance(output, bytes) else str(output or "")
        logger.debug(
            f"Executed command in container {name}",
            extra={"container": name, "exit_code": exit_code},
        )
        return exit_code, text

    # =========================================================================
    # Networks and images
    # =========================================================================

    async def ensure_network(self, name: str) -> bool:
        """Create a bridge network unless one with this exact name exists.

        Returns:
            True if the network was created, False if it already existed.
        """
        client = self._get_client()
        existing = await asyncio.to_thread(client.networks.list, names=[name])
        if any(network.name == name for network in existing):
            return False

        try:
            await asyncio.to_thread(client.networks.create, name, driver="bridge")
        except APIError as e:
            if e.status_code == 409:
                return False
            raise ContainerRuntimeError(
                f"Failed to create network {name}", output=_explain(e)
            ) from e

        logger.info(f"Created network {name}", extra={"network": name})
        return True

    async def build_image(self, context: Path, dockerfile: Path, tag: str) -> str:
        """Build an image from ``dockerfile`` with ``context`` as build context.

        Returns:
            The image tag.

        Raises:
            ImageBuildError: With the build log when the build fails.
        """
        client = self._get_client()
        logger.info(
            f"Building image {tag}",
            extra={"image": tag, "context": str(context), "dockerfile": str(dockerfile)},
        )
        try:
            await asyncio.to_thread(
                client.images.build,
                path=str(context),
                dockerfile=str(dockerfile),
                tag=tag,
                rm=True,
            )
        except BuildError as e:
            log_lines = [
                str(chunk.get("stream") or chunk.get("error") or "")
                for chunk in e.build_log
                if isinstance(chunk, dict)
            ]
            raise ImageBuildError(f"Build of {tag} failed: {e.msg}", output="".join(log_lines)) from e
        except APIError as e:
            raise ImageBuildError(f"Build of {tag} failed", output=_explain(e)) from e
        return tag

    async def close(self) -> None:
        """Close the Docker client connection. Safe to call multiple times."""
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
            except DockerException as e:
                logger.debug(f"Error closing Docker client: {e}")
            self._client = None
