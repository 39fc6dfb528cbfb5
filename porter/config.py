import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from porter.errors import InputError

DEFAULT_CACHE_DIR = Path.home() / ".ds" / "porter-cache"
DEFAULT_LOG_LEVEL = "info"

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def normalize_log_level(level: str | None) -> str:
    """Lower-case `level`, unknown or empty levels become 'info'"""
    level = (level or "").strip().lower()
    if level not in LOG_LEVELS:
        return DEFAULT_LOG_LEVEL
    return level


class RegistryConfig(BaseModel):
    """Credentials for a single registry"""

    name: str = ""
    url: str = ""
    username: str | None = None
    password: str | None = None
    token: str | None = None


class Config(BaseModel):
    """Configuration handed to porter by its host"""

    registries: list[RegistryConfig] = []
    cache_dir: Path = Field(default_factory=lambda: DEFAULT_CACHE_DIR)
    log_level: str = DEFAULT_LOG_LEVEL

    @field_validator("registries", mode="before")
    @classmethod
    def _no_registries(cls, value):
        return value or []

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _expand_cache_dir(cls, value):
        if not value:
            return DEFAULT_CACHE_DIR
        return Path(value).expanduser()

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value):
        return normalize_log_level(value)

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load the configuration from a YAML (or JSON) file"""
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise InputError(f"failed to read configuration {path}: {e}") from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InputError(f"invalid configuration {path}: {e}") from e
