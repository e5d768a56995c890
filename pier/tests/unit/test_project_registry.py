"""Unit tests for the project registry."""

import json
import threading

import pytest

from pier.core.exceptions import ProjectNotFoundError, RegistryError
from pier.services.project_registry import ProjectEntry, ProjectRegistry, ProjectType

# Fixtures


@pytest.fixture
def registry(settings):
    return ProjectRegistry(settings.registry_path)


def make_entry(name="api", dir="/src/api", **kwargs):
    return ProjectEntry(name=name, dir=dir, **kwargs)


# Test: load


def test_missing_file_is_empty(registry):
    assert registry.load() == []


def test_corrupt_file_raises(registry):
    """Test that an unparseable registry is reported, not silently reset."""
    registry.path.parent.mkdir(parents=True)
    registry.path.write_text("{not json")
    with pytest.raises(RegistryError):
        registry.load()


def test_reads_camel_case_last_used(registry):
    registry.path.parent.mkdir(parents=True)
    registry.path.write_text(
        json.dumps([{"name": "web", "dir": "/src/web", "type": "link", "lastUsed": "2026-01-02T03:04:05Z"}])
    )
    [entry] = registry.load()
    assert entry.type == ProjectType.LINK
    assert entry.last_used == "2026-01-02T03:04:05Z"


# Test: register


def test_register_sets_last_used_and_persists(registry):
    """Test that register stamps lastUsed and writes camelCase JSON."""
    stored = registry.register(make_entry(port=3000, framework="nextjs"))

    assert stored.last_used is not None
    assert stored.last_used.endswith("Z")
    data = json.loads(registry.path.read_text())
    assert data == [
        {
            "name": "api",
            "dir": "/src/api",
            "port": 3000,
            "type": "docker",
            "framework": "nextjs",
            "lastUsed": stored.last_used,
        }
    ]


def test_register_replaces_by_name(registry):
    registry.register(make_entry(port=3000))
    registry.register(make_entry(dir="/elsewhere/api", port=4000))

    [entry] = registry.load()
    assert entry.dir == "/elsewhere/api"
    assert entry.port == 4000


def test_register_replaces_by_dir(registry):
    """Test that a renamed project in the same directory replaces its entry."""
    registry.register(make_entry(name="api"))
    registry.register(make_entry(name="backend"))
    assert [e.name for e in registry.load()] == ["backend"]


def test_get(registry):
    registry.register(make_entry())
    assert registry.get("api").dir == "/src/api"
    assert registry.get("missing") is None


def test_concurrent_registers_keep_every_entry(registry):
    """Test that parallel writers in one process do not lose updates."""
    threads = [
        threading.Thread(target=registry.register, args=(make_entry(name=f"p{i}", dir=f"/src/p{i}"),))
        for i in range(10)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(e.name for e in registry.load()) == sorted(f"p{i}" for i in range(10))


# Test: remove / touch


def test_remove(registry):
    registry.register(make_entry())
    registry.remove("api")
    assert registry.load() == []


def test_remove_unknown(registry):
    with pytest.raises(ProjectNotFoundError):
        registry.remove("ghost")


def test_touch(registry):
    registry.path.parent.mkdir(parents=True)
    registry.path.write_text(json.dumps([{"name": "api", "dir": "/src/api", "lastUsed": "2000-01-01T00:00:00Z"}]))

    assert registry.touch("api") is True
    assert registry.get("api").last_used != "2000-01-01T00:00:00Z"
    assert registry.touch("ghost") is False
