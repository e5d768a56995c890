"""Unit tests for pier settings."""

import pytest
import yaml
from pydantic import ValidationError

from pier.core.config import Settings, get_settings

# Test: defaults and paths


def test_defaults(settings, pier_home):
    """Test that defaults match a stock installation."""
    assert settings.home == pier_home
    assert settings.tld == "dock"
    assert settings.network == "pier"
    assert settings.traefik.port == 8880
    assert settings.traefik.api_port == 8881
    assert settings.traefik.container_name == "pier-traefik"
    assert settings.dashboard_port == 19191


def test_paths_are_under_home(settings, pier_home):
    """Test that every state path derives from the home directory."""
    assert settings.traefik_dynamic_dir == pier_home / "traefik" / "dynamic"
    assert settings.registry_path == pier_home / "registry.json"
    assert settings.data_dir == pier_home / "data"
    assert settings.links_dir == pier_home / "links"
    assert settings.resolved_log_file == pier_home / "logs" / "pier.log"


def test_domain_for(settings):
    """Test that domains are name plus tld."""
    assert settings.domain_for("api") == "api.dock"


def test_get_settings_is_cached():
    """Test that get_settings returns the same instance until cleared."""
    assert get_settings() is get_settings()


# Test: sources


def test_env_overrides_nested_traefik_port(monkeypatch):
    """Test that nested groups are set with a double-underscore delimiter."""
    monkeypatch.setenv("PIER_TRAEFIK__PORT", "9000")
    settings = Settings()
    assert settings.traefik.port == 9000
    assert settings.traefik.api_port == 9001


def test_yaml_config_file_is_read(pier_home):
    """Test that <home>/config.yaml provides values below the environment."""
    pier_home.mkdir(parents=True)
    (pier_home / "config.yaml").write_text(yaml.safe_dump({"tld": "test", "network": "mesh"}))

    settings = Settings()
    assert settings.tld == "test"
    assert settings.network == "mesh"


def test_env_beats_yaml(pier_home, monkeypatch):
    """Test that environment variables take priority over config.yaml."""
    pier_home.mkdir(parents=True)
    (pier_home / "config.yaml").write_text(yaml.safe_dump({"tld": "test"}))
    monkeypatch.setenv("PIER_TLD", "local")
    assert Settings().tld == "local"


# Test: validation


def test_tld_strips_leading_dot():
    """Test that a leading dot in the tld is dropped."""
    assert Settings(tld=".dev").tld == "dev"


def test_empty_tld_rejected():
    """Test that an empty tld is a validation error."""
    with pytest.raises(ValidationError):
        Settings(tld="  ")


def test_home_expands_user(monkeypatch, tmp_path):
    """Test that ~ in the home path is expanded."""
    monkeypatch.setenv("HOME", str(tmp_path))
    assert Settings(home="~/.pier").home == tmp_path / ".pier"
