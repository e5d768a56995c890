"""File-declared routes for the reverse proxy.

Each routable name owns exactly one YAML file in the proxy's watched
dynamic-configuration directory (``<home>/traefik/dynamic/<name>.yaml``).
Writes replace the file atomically so the watcher never sees a partial
document; publishing a name twice overwrites the earlier declaration.

Container-label routes are not stored here. They are expressed as labels on
the container (see :func:`container_route_labels`) and disappear with it.

File format:
    http:
      routers:
        api:
          rule: Host(`api.dock`)
          service: api
          entryPoints: [web]
      services:
        api:
          loadBalancer:
            servers:
              - url: http://host.docker.internal:3000
"""

from __future__ import annotations

import os
import re
import socket
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import yaml

from pier.core.exceptions import RouteNotFoundError
from pier.core.logging import get_logger

if TYPE_CHECKING:
    from pier.core.config import Settings

logger = get_logger(__name__)

ENTRY_POINT = "web"
ROUTE_SUFFIX = ".yaml"

# Backends reached through these hosts run on the developer's machine.
HOST_BRIDGE_HOSTS = frozenset({"host.docker.internal", "host.containers.internal"})
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})

_HOST_RULE = re.compile(r"Host\(`([^`]+)`\)")


def host_rule(domain: str) -> str:
    return f"Host(`{domain}`)"


def extract_domain(rule: str) -> str | None:
    """Return the first hostname of a ``Host(`...`)`` match rule."""
    match = _HOST_RULE.search(rule or "")
    return match.group(1) if match else None


def container_route_labels(name: str, tld: str, port: int) -> dict[str, str]:
    """Labels that let the proxy self-register a route for a container."""
    labels = {
        "traefik.enable": "true",
        f"traefik.http.routers.{name}.rule": host_rule(f"{name}.{tld}"),
    }
    if port > 0:
        labels[f"traefik.http.services.{name}.loadbalancer.server.port"] = str(port)
    return labels


@dataclass(slots=True)
class RouteDeclaration:
    """One file-declared route."""

    name: str
    target_url: str
    match_rule: str
    path: Path | None = None

    @property
    def domain(self) -> str | None:
        return extract_domain(self.match_rule)

    @property
    def backend_host(self) -> str:
        return urlsplit(self.target_url).hostname or ""

    @property
    def backend_port(self) -> int:
        """Declared backend port; 0 when the URL carries none."""
        try:
            return urlsplit(self.target_url).port or 0
        except ValueError:
            return 0

    @property
    def is_bare_metal(self) -> bool:
        """True when the backend is a process on the host, not a container."""
        host = self.backend_host
        return host in HOST_BRIDGE_HOSTS or host in LOOPBACK_HOSTS

    def to_document(self) -> dict[str, Any]:
        return {
            "http": {
                "routers": {
                    self.name: {
                        "rule": self.match_rule,
                        "service": self.name,
                        "entryPoints": [ENTRY_POINT],
                    }
                },
                "services": {
                    self.name: {"loadBalancer": {"servers": [{"url": self.target_url}]}}
                },
            }
        }

    @classmethod
    def from_document(cls, name: str, document: Any, path: Path | None = None) -> RouteDeclaration:
        """Parse a route file body; missing sections yield empty fields."""
        http = document.get("http", {}) if isinstance(document, dict) else {}
        routers = http.get("routers") or {}
        services = http.get("services") or {}

        router = routers.get(name) or next(iter(routers.values()), {}) or {}
        service_name = router.get("service", name)
        service = services.get(service_name) or next(iter(services.values()), {}) or {}
        servers = (service.get("loadBalancer") or {}).get("servers") or []
        target_url = servers[0].get("url", "") if servers else ""

        return cls(name=name, target_url=target_url, match_rule=router.get("rule", ""), path=path)


class RouteStore:
    """Reads and writes route declaration files."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._dir = settings.traefik_dynamic_dir

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path:
        return self._dir / f"{name}{ROUTE_SUFFIX}"

    def publish(self, name: str, target_url: str, match_rule: str | None = None) -> RouteDeclaration:
        """Write (or overwrite) the declaration for ``name``."""
        route = RouteDeclaration(
            name=name,
            target_url=target_url,
            match_rule=match_rule or host_rule(self._settings.domain_for(name)),
            path=self.path_for(name),
        )
        self._dir.mkdir(parents=True, exist_ok=True)
        body = yaml.safe_dump(route.to_document(), sort_keys=False, default_flow_style=False)

        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(body)
            os.replace(tmp_name, route.path)  # type: ignore[arg-type]
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info(
            f"Published route {route.domain} -> {target_url}",
            extra={"route": name, "target": target_url},
        )
        return route

    def publish_bare_metal(self, name: str, port: int) -> RouteDeclaration:
        """Route ``name`` to a host process listening on ``port``."""
        return self.publish(name, f"http://host.docker.internal:{port}")

    def publish_container(self, name: str, port: int) -> RouteDeclaration:
        """Route ``name`` to a container on the shared network."""
        return self.publish(name, f"http://{name}:{port}")

    def remove(self, name: str) -> None:
        """Delete the declaration for ``name``.

        Raises:
            RouteNotFoundError: If no declaration exists.
        """
        try:
            self.path_for(name).unlink()
        except FileNotFoundError:
            raise RouteNotFoundError(name) from None
        logger.info(f"Removed route {name}", extra={"route": name})

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def get(self, name: str) -> RouteDeclaration | None:
        path = self.path_for(name)
        if not path.is_file():
            return None
        return self._read(path)

    def list(self) -> list[RouteDeclaration]:
        """All readable declarations, sorted by name."""
        if not self._dir.is_dir():
            return []
        routes = []
        for path in sorted(self._dir.glob(f"*{ROUTE_SUFFIX}")):
            route = self._read(path)
            if route is not None:
                routes.append(route)
        return routes

    def remove_all(self) -> int:
        """Delete every declaration; returns how many were removed."""
        removed = 0
        if self._dir.is_dir():
            for path in self._dir.glob(f"*{ROUTE_SUFFIX}"):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def _read(self, path: Path) -> RouteDeclaration | None:
        name = path.name.removesuffix(ROUTE_SUFFIX)
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.warning(
                f"Skipping unreadable route file {path.name}: {e}",
                extra={"route": name, "path": str(path)},
            )
            return None
        return RouteDeclaration.from_document(name, document, path=path)

    # =========================================================================
    # Staleness
    # =========================================================================

    def is_target_alive(self, route: RouteDeclaration) -> bool:
        """TCP-probe the route's backend.

        Host-bridge addresses are probed on loopback, since that is where the
        host process listens. A route without a port is assumed alive.
        """
        port = route.backend_port
        if port == 0:
            return True
        host = route.backend_host
        if host in HOST_BRIDGE_HOSTS or host in LOOPBACK_HOSTS or not host:
            host = "127.0.0.1"
        try:
            with socket.create_connection((host, port), timeout=self._settings.backend_probe_timeout):
                return True
        except OSError:
            return False

    def find_stale(self) -> list[RouteDeclaration]:
        """Bare-metal routes whose backend no longer accepts connections."""
        return [
            route
            for route in self.list()
            if route.is_bare_metal and not self.is_target_alive(route)
        ]

    def clean_stale(self) -> list[str]:
        """Remove stale bare-metal routes; returns the removed names."""
        removed = []
        for route in self.find_stale():
            logger.info(
                f"Removing stale route {route.name} (port {route.backend_port} closed)",
                extra={"route": route.name, "port": route.backend_port},
            )
            self.path_for(route.name).unlink(missing_ok=True)
            removed.append(route.name)
        return removed
