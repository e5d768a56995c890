"""Core infrastructure components."""

from pier.core.config import Settings, get_settings
from pier.core.docker_client import DockerClient
from pier.core.exceptions import PierError
from pier.core.logging import (
    get_logger,
    get_request_id,
    sanitize_error,
    set_request_id,
    setup_logging,
)

__all__ = [
    "DockerClient",
    "PierError",
    "Settings",
    "get_logger",
    "get_request_id",
    "get_settings",
    "sanitize_error",
    "set_request_id",
    "setup_logging",
]
