"""Client for the reverse proxy's read-only control API.

Traefik publishes its live routers at ``GET /api/http/routers`` on the API
port (the web entrypoint port + 1). Label-driven container routes are only
visible through this API.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from pier.core.exceptions import ProxyUnavailableError
from pier.core.logging import get_logger
from pier.services.route_store import extract_domain

if TYPE_CHECKING:
    from pier.core.config import Settings

logger = get_logger(__name__)


class TraefikRouter(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    rule: str = ""
    service: str = ""
    status: str = ""
    provider: str = ""
    entry_points: list[str] = Field(default_factory=list, alias="entryPoints")

    @property
    def domain(self) -> str | None:
        return extract_domain(self.rule)


_ROUTERS = TypeAdapter(list[TraefikRouter])


class TraefikClient:
    """Fetches live routers from the proxy API."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = f"http://127.0.0.1:{settings.traefik.api_port}"
        self._timeout = settings.proxy_api_timeout
        self._transport = transport

    @property
    def routers_url(self) -> str:
        return f"{self._base_url}/api/http/routers"

    async def get_routers(self) -> list[TraefikRouter]:
        """Return every HTTP router the proxy currently serves.

        Raises:
            ProxyUnavailableError: If the API is unreachable or answers garbage.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self.routers_url)
                response.raise_for_status()
        except httpx.ConnectError as e:
            raise ProxyUnavailableError(f"proxy API not reachable at {self.routers_url}") from e
        except httpx.TimeoutException as e:
            raise ProxyUnavailableError(
                f"proxy API timed out after {self._timeout}s", details={"url": self.routers_url}
            ) from e
        except httpx.HTTPError as e:
            raise ProxyUnavailableError(f"proxy API error: {e}") from e

        try:
            return _ROUTERS.validate_json(response.content)
        except PydanticValidationError as e:
            raise ProxyUnavailableError("proxy API returned an unexpected payload") from e

    async def route_count(self) -> int:
        """Number of live routers; 0 when the proxy is unreachable."""
        try:
            return len(await self.get_routers())
        except ProxyUnavailableError as e:
            logger.debug(f"Route count unavailable: {e}")
            return 0
