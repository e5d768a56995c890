"""Control-plane configuration using Pydantic Settings.

Values are read, highest priority first, from constructor arguments,
``PIER_*`` environment variables (``PIER_TRAEFIK__PORT`` style for nested
groups) and ``<home>/config.yaml``. The project's own ``.env`` file is never
consulted here: it belongs to the application being run, not to pier.

Usage:
    from pier.core.config import get_settings

    settings = get_settings()
    settings.traefik_dynamic_dir  # ~/.pier/traefik/dynamic
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_HOME = Path.home() / ".pier"
CONFIG_FILE_NAME = "config.yaml"


def _config_file() -> Path:
    home = os.environ.get("PIER_HOME")
    base = Path(home).expanduser() if home else DEFAULT_HOME
    return base / CONFIG_FILE_NAME


class TraefikSettings(BaseModel):
    """Reverse proxy container settings (``traefik:`` in config.yaml)."""

    port: int = Field(
        default=8880,
        ge=1,
        le=65534,
        description="Host port of the proxy's web entrypoint; the control API listens on port + 1",
    )
    image: str = Field(
        default="traefik:v3.3",
        description="Proxy container image",
    )
    dashboard: bool = Field(
        default=True,
        description="Expose the proxy's own dashboard on the API port",
    )
    container_name: str = Field(
        default="pier-traefik",
        description="Container name of the proxy",
    )

    @property
    def api_port(self) -> int:
        return self.port + 1


class Settings(BaseSettings):
    """Pier settings loaded from the environment and ~/.pier/config.yaml."""

    model_config = SettingsConfigDict(
        env_prefix="PIER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "pier"
    app_version: str = "0.2.0"

    home: Path = Field(
        default=DEFAULT_HOME,
        description="Root of pier's global state (registry, route files, data dirs)",
    )
    tld: str = Field(
        default="dock",
        description="Top-level domain appended to every route name",
    )
    network: str = Field(
        default="pier",
        description="Shared container network joining apps, infra and the proxy",
    )
    container_prefix: str = Field(
        default="pier",
        description="Prefix of shared infrastructure container names",
    )
    traefik: TraefikSettings = Field(
        default_factory=TraefikSettings,
        description="Reverse proxy configuration",
    )

    # Control-plane HTTP API
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = Field(default=19191, ge=1, le=65535)
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins for the control-plane API",
    )

    # Container runtime
    docker_host: str | None = Field(
        default=None,
        description="Engine API URL; DOCKER_HOST or the default socket when unset",
    )
    docker_ping_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Extra attempts when pinging the container runtime",
    )
    docker_ping_backoff: float = Field(
        default=1.0,
        ge=0.0,
        description="Fixed delay in seconds between runtime ping attempts",
    )

    # Probe timeouts
    proxy_api_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the reverse proxy control API",
    )
    domain_probe_timeout: float = Field(
        default=1.0,
        gt=0,
        description="Timeout for HTTP liveness probes of bare-metal domains",
    )
    backend_probe_timeout: float = Field(
        default=0.5,
        gt=0,
        description="Timeout for TCP probes of route backends",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON log lines on the console")
    log_file_path: Path | None = Field(
        default=None,
        description="Log file path; defaults to <home>/logs/pier.log",
    )
    log_file_max_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    log_file_backup_count: int = Field(default=3, ge=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=_config_file()),
        )

    @field_validator("home", mode="before")
    @classmethod
    def expand_home(cls, v: str | Path) -> Path:
        """Expand ``~`` so paths stay absolute."""
        return Path(v).expanduser()

    @field_validator("tld")
    @classmethod
    def validate_tld(cls, v: str) -> str:
        v = v.strip().lstrip(".")
        if not v:
            raise ValueError("tld must not be empty")
        return v

    # =========================================================================
    # Paths
    # =========================================================================

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def traefik_dir(self) -> Path:
        return self.home / "traefik"

    @property
    def traefik_dynamic_dir(self) -> Path:
        return self.traefik_dir / "dynamic"

    @property
    def traefik_config_path(self) -> Path:
        return self.traefik_dir / "traefik.yaml"

    @property
    def registry_path(self) -> Path:
        return self.home / "registry.json"

    @property
    def links_dir(self) -> Path:
        return self.home / "links"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def resolved_log_file(self) -> Path:
        return self.log_file_path or self.logs_dir / "pier.log"

    def domain_for(self, name: str) -> str:
        """Return the local domain ``<name>.<tld>``."""
        return f"{name}.{self.tld}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
