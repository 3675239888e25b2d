"""
Unit tests for settings loading.
"""
import os

import pydantic
import pytest

from envprov.config import Settings, load_settings


def test_defaults():
    settings = load_settings(environ={})
    assert settings.docker_bin == "docker"
    assert settings.jobs == 2
    assert settings.log_level == "INFO"
    assert settings.cache_dir.endswith("cache")


def test_environment_overrides():
    settings = load_settings(environ={
        "ENVPROV_CACHE_DIR": "/tmp/envprov",
        "ENVPROV_DOCKER_BIN": "podman",
        "ENVPROV_COMMAND_TIMEOUT": "30",
        "ENVPROV_LOG_LEVEL": "debug",
        "ENVPROV_JOBS": "4",
        "UNRELATED": "x",
    })
    assert settings.cache_dir == "/tmp/envprov"
    assert settings.docker_bin == "podman"
    assert settings.command_timeout == 30.0
    assert settings.log_level == "DEBUG"
    assert settings.jobs == 4


def test_empty_values_are_ignored():
    assert load_settings(environ={"ENVPROV_DOCKER_BIN": ""}).docker_bin == "docker"


def test_dotenv_file(tmp_path, monkeypatch):
    monkeypatch.delenv("ENVPROV_JOBS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("ENVPROV_JOBS=3\n")
    try:
        assert load_settings(dotenv_path=str(env_file)).jobs == 3
    finally:
        os.environ.pop("ENVPROV_JOBS", None)


@pytest.mark.parametrize("environ", [
    {"ENVPROV_LOG_LEVEL": "loud"},
    {"ENVPROV_JOBS": "0"},
    {"ENVPROV_JOBS": "many"},
])
def test_invalid_values(environ):
    with pytest.raises(pydantic.ValidationError):
        load_settings(environ=environ)


def test_settings_model():
    assert Settings(log_level="warning").log_level == "WARNING"
