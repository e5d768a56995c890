"""Unit tests for linking bare-metal dev servers."""

import asyncio
import sys
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from pier.core.exceptions import DevProcessError, UnsupportedError, ValidationError
from pier.services.dev_process import DevProcessHandle, pid_is_alive
from pier.services.framework import FrameworkDescriptor
from pier.services.linker import ProjectLinker
from pier.services.project_registry import ProjectRegistry, ProjectType
from pier.services.route_store import RouteStore
from pier.tests.mock_utils import StaticDetector

SLEEP_COMMAND = f"{sys.executable} -c \"import time; time.sleep(30)\""

# Fixtures


@pytest.fixture
def routes(settings):
    return RouteStore(settings)


@pytest.fixture
def registry(settings):
    return ProjectRegistry(settings.registry_path)


@pytest.fixture
def linker(settings, routes, registry):
    return ProjectLinker(settings, routes, registry)


@pytest.fixture
def project(tmp_path):
    project_dir = tmp_path / "blog"
    project_dir.mkdir()
    yield project_dir
    DevProcessHandle.load(project_dir).terminate()


def write_pierfile(project_dir, **data):
    (project_dir / "Pierfile").write_text(yaml.safe_dump(data))


async def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


# Test: link


@pytest.mark.asyncio
async def test_link_from_pierfile(linker, routes, registry, project):
    """Test that the route, registry entry and dev server come from the Pierfile."""
    write_pierfile(project, name="journal", port=4100, services=[{"name": "web", "command": SLEEP_COMMAND}])

    result = await linker.link(project)

    assert result.name == "journal"
    assert result.domain == "journal.dock"
    assert result.port == 4100
    assert result.command == SLEEP_COMMAND
    assert pid_is_alive(result.pid)
    assert result.log_path == project.resolve() / ".pier" / "dev.log"

    route = routes.get("journal")
    assert route.target_url == "http://host.docker.internal:4100"
    entry = registry.get("journal")
    assert entry.type == ProjectType.LINK
    assert entry.command == SLEEP_COMMAND
    assert entry.port == 4100
    assert entry.dir == str(project.resolve())


@pytest.mark.asyncio
async def test_link_arguments_override_pierfile(linker, routes, project):
    write_pierfile(project, name="journal", port=4100)

    result = await linker.link(project, name="notes", port=4200, command=SLEEP_COMMAND)

    assert result.name == "notes"
    assert routes.get("notes").backend_port == 4200
    assert routes.get("journal") is None


@pytest.mark.asyncio
async def test_link_replaces_running_dev_server(linker, project):
    """Test that a dev server from an earlier link is terminated first."""
    write_pierfile(project, port=4100, services=[{"name": "web", "command": SLEEP_COMMAND}])
    first = await linker.link(project)

    second = await linker.link(project)

    assert second.pid != first.pid
    assert await wait_for(lambda: not pid_is_alive(first.pid))
    assert pid_is_alive(second.pid)
    assert DevProcessHandle.load(project).pid == second.pid


@pytest.mark.asyncio
async def test_link_without_command_only_routes(linker, routes, registry, project):
    """Test that a port alone publishes the route and starts nothing."""
    result = await linker.link(project, port=5173)

    assert result.name == "blog"
    assert result.pid is None
    assert result.command is None
    assert routes.get("blog").backend_port == 5173
    assert registry.get("blog").command is None
    assert not DevProcessHandle.load(project).pid_path.exists()


@pytest.mark.asyncio
async def test_link_falls_back_to_framework(settings, routes, registry, project):
    """Test that port and command come from the detected framework."""
    detector = StaticDetector(FrameworkDescriptor(name="fastapi", language="python", port=8000))
    linker = ProjectLinker(settings, routes, registry, detector=detector)
    command = "uvicorn main:app --reload --port 8000"

    with patch.object(DevProcessHandle, "start", AsyncMock(return_value=4242)) as start:
        result = await linker.link(project)

    start.assert_awaited_once_with(command)
    assert detector.calls == [project.resolve()]
    assert result.pid == 4242
    assert result.command == command
    assert routes.get("blog").backend_port == 8000
    entry = registry.get("blog")
    assert entry.command == command
    assert entry.framework == "fastapi"


@pytest.mark.asyncio
async def test_link_without_port_or_framework_is_unsupported(linker, routes, project):
    with pytest.raises(UnsupportedError) as exc_info:
        await linker.link(project)
    assert "no port specified" in exc_info.value.message
    assert routes.list() == []


@pytest.mark.asyncio
async def test_link_command_without_port_is_rejected(linker, routes, project):
    """Test that a dev command alone cannot be routed."""
    write_pierfile(project, services=[{"name": "web", "command": SLEEP_COMMAND}])

    with pytest.raises(ValidationError) as exc_info:
        await linker.link(project)
    assert exc_info.value.error_code == "PORT_UNKNOWN"
    assert routes.list() == []


@pytest.mark.asyncio
async def test_link_unstartable_command(linker, routes, project):
    """Test that a missing executable surfaces as DevProcessError after routing."""
    with pytest.raises(DevProcessError):
        await linker.link(project, port=4100, command="pier-no-such-binary --dev")
    assert routes.get("blog") is not None


# Test: unlink


@pytest.mark.asyncio
async def test_unlink_stops_server_and_removes_route(linker, routes, registry, project):
    result = await linker.link(project, port=4100, command=SLEEP_COMMAND)

    assert linker.unlink(project) is True

    assert await wait_for(lambda: not pid_is_alive(result.pid))
    assert routes.get("blog") is None
    assert registry.get("blog") is not None


def test_unlink_unknown_project(linker, project):
    assert linker.unlink(project) is False
