"""Unit tests for the reverse proxy container manager."""

import pytest
import yaml

from pier.core.config import Settings
from pier.core.exceptions import ProxyStartError
from pier.services.proxy_manager import ProxyManager, static_config

# Fixtures


@pytest.fixture
def proxy(fake_docker, settings):
    return ProxyManager(fake_docker, settings)


# Test: static configuration


def test_static_config_routes_only_labelled_containers(settings):
    """Test that the docker provider is opt-in and bound to the shared network."""
    config = static_config(settings)

    docker = config["providers"]["docker"]
    assert docker["exposedByDefault"] is False
    assert docker["network"] == "pier"
    assert docker["defaultRule"] == "Host(`{{ trimPrefix `/` .Name }}.dock`)"
    assert config["providers"]["file"] == {"directory": "/etc/traefik/dynamic", "watch": True}
    assert config["api"] == {"dashboard": True, "insecure": True}


def test_write_static_config(proxy, settings):
    proxy.write_static_config()

    text = settings.traefik_config_path.read_text()
    assert text.startswith("# Managed by pier")
    assert yaml.safe_load(text) == static_config(settings)
    assert settings.traefik_dynamic_dir.is_dir()


def test_dashboard_can_be_disabled(monkeypatch):
    monkeypatch.setenv("PIER_TRAEFIK__DASHBOARD", "false")
    assert static_config(Settings())["api"]["dashboard"] is False


# Test: lifecycle


@pytest.mark.asyncio
async def test_ensure_starts_proxy(proxy, fake_docker, settings):
    """Test that the proxy mounts its config and publishes web and API ports."""
    assert await proxy.ensure() is True

    container = fake_docker.containers["pier-traefik"]
    assert container.image == "traefik:v3.3"
    assert container.network == "pier"
    assert container.ports == {"80/tcp": 8880, "8080/tcp": 8881}
    assert f"{settings.traefik_config_path}:/etc/traefik/traefik.yaml:ro" in container.volumes
    assert f"{settings.traefik_dynamic_dir}:/etc/traefik/dynamic:ro" in container.volumes
    assert "pier" in fake_docker.networks
    assert await proxy.is_running() is True


@pytest.mark.asyncio
async def test_ensure_is_idempotent(proxy, fake_docker):
    await proxy.ensure()
    assert await proxy.ensure() is False
    assert fake_docker.runs == ["pier-traefik"]


@pytest.mark.asyncio
async def test_ensure_replaces_stopped_container(proxy, fake_docker):
    fake_docker.add_container("pier-traefik", status="exited")

    assert await proxy.ensure() is True
    assert fake_docker.containers["pier-traefik"].status == "running"


@pytest.mark.asyncio
async def test_ensure_failure_keeps_output(proxy, fake_docker):
    fake_docker.fail_run.add("pier-traefik")

    with pytest.raises(ProxyStartError) as exc_info:
        await proxy.ensure()
    assert exc_info.value.output == "port is already allocated"
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_stop(proxy, fake_docker):
    await proxy.ensure()

    assert await proxy.stop() is True
    assert await proxy.is_running() is False
    assert await proxy.stop() is False
