"""
Settings read from the environment (and a .env file, if present).
"""
import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

PREFIX = "ENVPROV_"


class Settings(BaseModel):
    """
    Runtime configuration. Command-line options override these values.
    """
    cache_dir: str = Field(default_factory=lambda: str(Path.home() / ".envprov" / "cache"))
    docker_bin: str = "docker"
    command_timeout: float = 600.0
    log_level: str = "INFO"
    jobs: int = 2

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @field_validator("jobs")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("jobs must be at least 1")
        return value


def load_settings(environ: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> Settings:
    """
    Builds Settings from ENVPROV_* variables.

    :param environ: Variables to read. Defaults to os.environ after loading
        a .env file from the working directory (or dotenv_path).
    :param dotenv_path: Explicit .env file to load.
    :return: Validated settings.
    """
    if environ is None:
        load_dotenv(dotenv_path=dotenv_path, override=False)
        environ = os.environ

    values = {}
    for name in Settings.model_fields:
        key = PREFIX + name.upper()
        if environ.get(key):
            values[name] = environ[key]
    return Settings(**values)
