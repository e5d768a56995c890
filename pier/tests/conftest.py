"""Pytest configuration and shared fixtures.

Every test gets its own pier home under ``tmp_path`` (via ``PIER_HOME``) and
a fresh settings cache, so no test ever touches ``~/.pier``.

Fixtures:
- pier_home: the isolated home directory
- settings: Settings bound to pier_home
- fake_docker: in-memory stand-in for DockerClient (see mock_utils)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pier.core.config import Settings, get_settings
from pier.tests.mock_utils import FakeDockerClient

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def pier_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path]:
    """Point pier at a temporary home and reset the settings cache."""
    home = tmp_path / "pier-home"
    monkeypatch.setenv("PIER_HOME", str(home))
    for var in ("PIER_TLD", "PIER_NETWORK", "PIER_LOG_JSON", "PIER_TRAEFIK__PORT"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest.fixture
def settings(pier_home: Path) -> Settings:
    return get_settings()


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    return FakeDockerClient()
