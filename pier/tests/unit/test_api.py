"""Unit tests for the control-plane HTTP API."""

import socket
import sys

import httpx
import pytest
import yaml

from pier.main import create_app
from pier.services.dev_process import DevProcessHandle
from pier.services.framework import FrameworkDescriptor
from pier.services.linker import ProjectLinker
from pier.services.orchestrator import AppOrchestrator
from pier.services.project_registry import ProjectEntry, ProjectRegistry, ProjectType
from pier.services.route_store import RouteStore
from pier.services.shared_infra import InfraManager
from pier.services.state_aggregator import StateAggregator
from pier.services.traefik_client import TraefikClient
from pier.tests.mock_utils import StaticDetector, StaticTemplates

ROUTERS = [
    {
        "name": "api@docker",
        "rule": "Host(`api.dock`)",
        "service": "api",
        "status": "enabled",
        "provider": "docker",
    }
]


# Fixtures


@pytest.fixture
def registry(settings):
    return ProjectRegistry(settings.registry_path)


@pytest.fixture
def routes(settings):
    return RouteStore(settings)


@pytest.fixture
def app(settings, registry, routes, fake_docker):
    """App with its state wired to a temporary home, a mocked proxy and a fake runtime."""
    app = create_app()
    traefik = TraefikClient(
        settings, transport=httpx.MockTransport(lambda request: httpx.Response(200, json=ROUTERS))
    )
    app.state.registry = registry
    app.state.traefik = traefik
    app.state.routes = routes
    app.state.aggregator = StateAggregator(settings, traefik, routes, registry)
    app.state.orchestrator = AppOrchestrator(
        fake_docker,
        InfraManager(fake_docker, settings),
        routes,
        registry,
        settings,
        detector=StaticDetector(FrameworkDescriptor(name="nextjs", language="node", port=3000)),
        templates=StaticTemplates(),
    )
    app.state.linker = ProjectLinker(settings, routes, registry)
    return app


@pytest.fixture
def closed_port():
    """A port that was just released and has no listener."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


# Test: /api/services


@pytest.mark.asyncio
async def test_list_services(client, registry):
    """Test that the merged view is returned with tld and total."""
    registry.register(ProjectEntry(name="api", dir="/src/api", framework="nextjs"))
    registry.register(ProjectEntry(name="blog", dir="/src/blog", type=ProjectType.LINK))

    response = await client.get("/api/services")

    assert response.status_code == 200
    data = response.json()
    assert data["tld"] == "dock"
    assert data["total"] == 2
    services = {s["name"]: s for s in data["services"]}
    assert services["api"]["status"] == "running"
    assert services["api"]["type"] == "container"
    assert services["api"]["framework"] == "nextjs"
    assert services["api"]["lastUsed"]
    assert services["blog"]["type"] == "bareMetal"
    assert services["blog"]["status"] == "stopped"


@pytest.mark.asyncio
async def test_start_unknown_service(client):
    """Test that unknown names map to 404 with an error body."""
    response = await client.post("/api/services/start", json={"name": "ghost"})

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "PROJECT_NOT_FOUND"
    assert "ghost" in error["message"]


@pytest.mark.asyncio
async def test_start_without_command(client, registry):
    registry.register(ProjectEntry(name="api", dir="/src/api"))
    response = await client.post("/api/services/start", json={"name": "api"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "DEV_COMMAND_MISSING"


@pytest.mark.asyncio
async def test_start_requires_name(client):
    response = await client.post("/api/services/start", json={"name": ""})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_start_and_stop(client, registry, tmp_path):
    command = f"{sys.executable} -c \"import time; time.sleep(30)\""
    registry.register(ProjectEntry(name="blog", dir=str(tmp_path), type=ProjectType.LINK, command=command))

    started = await client.post("/api/services/start", json={"name": "blog"})
    try:
        assert started.status_code == 200
        assert started.json()["status"] == "started"
        assert started.json()["pid"] > 0
    finally:
        stopped = await client.post("/api/services/stop", json={"name": "blog"})

    assert stopped.json() == {"status": "stopped"}
    again = await client.post("/api/services/stop", json={"name": "blog"})
    assert again.json() == {"status": "not_running"}


@pytest.mark.asyncio
async def test_missing_aggregator_is_503(app, client):
    del app.state.aggregator
    response = await client.get("/api/services")
    assert response.status_code == 503
    assert response.json()["error"]["message"] == "State aggregator not available"


# Test: /api/projects


@pytest.mark.asyncio
async def test_list_projects(client, registry):
    registry.register(ProjectEntry(name="api", dir="/src/api", port=3000))

    response = await client.get("/api/projects")

    assert response.status_code == 200
    [project] = response.json()["projects"]
    assert project["name"] == "api"
    assert project["type"] == "docker"
    assert "lastUsed" in project


@pytest.mark.asyncio
async def test_delete_project(client, registry):
    registry.register(ProjectEntry(name="api", dir="/src/api"))

    response = await client.request("DELETE", "/api/projects", json={"name": "api"})

    assert response.status_code == 200
    assert response.json() == {"status": "removed"}
    assert registry.load() == []


@pytest.mark.asyncio
async def test_delete_unknown_project_succeeds(client):
    response = await client.request("DELETE", "/api/projects", json={"name": "ghost"})
    assert response.json() == {"status": "removed"}


@pytest.mark.asyncio
async def test_up_project(client, fake_docker, registry, tmp_path):
    """Test that a project directory is built, run and routed."""
    project = tmp_path / "api"
    project.mkdir()
    (project / "Pierfile").write_text(yaml.safe_dump({"services": ["redis:7"]}))

    response = await client.post("/api/projects/up", json={"dir": str(project)})

    assert response.status_code == 200
    [result] = response.json()["results"]
    assert result["name"] == "api"
    assert result["domain"] == "api.dock"
    assert result["port"] == 3000
    assert result["services"] == ["redis:7"]
    assert fake_docker.containers["api"].status == "running"
    assert registry.get("api").type == ProjectType.DOCKER


@pytest.mark.asyncio
async def test_up_project_failure_names_step(client, fake_docker, tmp_path):
    """Test that a failed pipeline maps to 502 with the failed step."""
    project = tmp_path / "api"
    project.mkdir()
    fake_docker.fail_run.add("api")

    response = await client.post("/api/projects/up", json={"dir": str(project)})

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "PIPELINE_FAILED"
    assert error["details"]["step"] == "run_container"


@pytest.mark.asyncio
async def test_down_project(client, fake_docker, routes):
    fake_docker.add_container("api")
    routes.publish_container("api", 3000)

    response = await client.post("/api/projects/down", json={"name": "api"})

    assert response.json()["status"] == "stopped"
    assert "api" not in fake_docker.containers
    assert routes.get("api") is None

    again = await client.post("/api/projects/down", json={"name": "api"})
    assert again.json()["status"] == "not_running"


@pytest.mark.asyncio
async def test_down_all_reports_stuck_containers(client, fake_docker, settings):
    """Test that a container the runtime refuses to remove makes the result partial."""
    fake_docker.add_container("api", network=settings.network)
    fake_docker.add_container("web", network=settings.network)
    fake_docker.fail_remove.add("api")

    response = await client.post("/api/projects/down", json={"all": True})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "partial"
    assert data["failed"] == ["api"]
    assert data["apps"] == ["web"]


@pytest.mark.asyncio
async def test_down_requires_target(client):
    response = await client.post("/api/projects/down", json={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_link_and_unlink(client, routes, registry, tmp_path):
    """Test that linking routes the port and starts the dev command."""
    project = tmp_path / "blog"
    project.mkdir()
    command = f"{sys.executable} -c \"import time; time.sleep(30)\""

    linked = await client.post(
        "/api/projects/link", json={"dir": str(project), "port": 4100, "command": command}
    )
    try:
        assert linked.status_code == 200
        data = linked.json()
        assert data["domain"] == "blog.dock"
        assert data["pid"] > 0
        assert data["log"].endswith("dev.log")
        assert routes.get("blog").backend_port == 4100
        assert registry.get("blog").type == ProjectType.LINK
    finally:
        unlinked = await client.post("/api/projects/unlink", json={"dir": str(project)})

    assert unlinked.json() == {"status": "unlinked"}
    assert routes.get("blog") is None
    assert DevProcessHandle.load(project).pid is None


@pytest.mark.asyncio
async def test_link_without_port_is_unsupported(client, tmp_path):
    response = await client.post("/api/projects/link", json={"dir": str(tmp_path)})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "UNSUPPORTED"


@pytest.mark.asyncio
async def test_missing_orchestrator_is_503(app, client, tmp_path):
    del app.state.orchestrator
    response = await client.post("/api/projects/up", json={"dir": str(tmp_path)})
    assert response.status_code == 503
    assert response.json()["error"]["message"] == "Orchestrator not available"


# Test: /api/routes/clean


@pytest.mark.asyncio
async def test_clean_routes_removes_dead_bare_metal_routes(client, routes, closed_port):
    routes.publish_bare_metal("blog", closed_port)
    routes.publish_container("api", closed_port)

    response = await client.post("/api/routes/clean")

    assert response.status_code == 200
    assert response.json() == {"removed": ["blog"]}
    assert routes.get("blog") is None
    assert routes.get("api") is not None


# Test: /api/health


@pytest.mark.asyncio
async def test_health(client, settings):
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == settings.app_version
    assert data["routes"] == 1
    assert data["time"]


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/api/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


@pytest.mark.asyncio
async def test_request_id_is_generated(client):
    response = await client.get("/api/health")
    assert len(response.headers["X-Request-ID"]) == 8


@pytest.mark.asyncio
async def test_metrics_reflect_last_service_view(client, registry):
    """Test that the service gauge is exported after a listing."""
    registry.register(ProjectEntry(name="blog", dir="/src/blog", type=ProjectType.LINK))
    await client.get("/api/services")

    response = await client.get("/api/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert 'pier_services{status="running"} 1.0' in body
    assert 'pier_services{status="stopped"} 1.0' in body
    assert 'pier_services{status="degraded"} 0.0' in body
