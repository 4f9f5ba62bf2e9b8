"""Client configuration helpers."""

import os
from pathlib import Path
from typing import Optional

import platformdirs
import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_CHUNK_SIZE,
    DOCKER_HUB_ALIASES,
    DOCKER_HUB_REGISTRY,
    ENV_CONFIG,
    ENV_INSECURE,
    USER_AGENT,
)


def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("true", "1", "yes")


def _is_localhostish(host: str) -> bool:
    """Check if a host is localhost-like and safe for insecure mode."""
    hostname = host.rsplit(":", 1)[0] if host.count(":") == 1 else host
    return hostname in {"localhost", "127.0.0.1", "::1", "[::1]"} or hostname.endswith(".local")


def default_cache_dir() -> Path:
    """Platform-appropriate directory for downloaded blobs."""
    return Path(platformdirs.user_cache_dir("ocifetch", "ocifetch")) / "blobs"


def default_config_path() -> Path:
    """Config file location, honoring OCIFETCH_CONFIG."""
    override = os.environ.get(ENV_CONFIG)
    if override:
        return Path(override)
    return Path(platformdirs.user_config_dir("ocifetch", "ocifetch")) / "config.yaml"


class ClientConfig(BaseModel):
    """Registry client configuration (optionally stored in config.yaml)."""

    registry: str = DOCKER_HUB_REGISTRY  # e.g. localhost:5000 or https://ghcr.io
    insecure: Optional[bool] = None      # None means auto-detect
    tls_verify: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    user_agent: str = USER_AGENT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    cache_dir: Path = Field(default_factory=default_cache_dir)

    @field_validator("registry")
    @classmethod
    def normalize_registry(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("registry must not be empty")
        if v in DOCKER_HUB_ALIASES:
            return DOCKER_HUB_REGISTRY
        return v

    @field_validator("chunk_size")
    @classmethod
    def positive_chunk_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be positive")
        return v

    @field_validator("cache_dir", mode="before")
    @classmethod
    def default_cache(cls, v):
        return default_cache_dir() if v is None else Path(v).expanduser()

    @property
    def host(self) -> str:
        """Registry host[:port] without scheme."""
        return self.registry.split("://", 1)[-1]

    @property
    def is_insecure(self) -> bool:
        """Resolve insecure mode: explicit value, env var, then localhost detection."""
        if "://" in self.registry:
            return self.registry.startswith("http://")
        if self.insecure is not None:
            return self.insecure
        env = _env_flag(ENV_INSECURE)
        if env is not None:
            return env
        return _is_localhostish(self.host)

    @property
    def base_url(self) -> str:
        """Registry base URL including scheme, without trailing slash."""
        if "://" in self.registry:
            return self.registry
        scheme = "http" if self.is_insecure else "https"
        return f"{scheme}://{self.registry}"


def load_client_config(path: Optional[Path] = None, **overrides) -> ClientConfig:
    """Load client configuration from YAML if present.

    Keyword overrides that are not None win over file values.
    """
    cfg_path = Path(path) if path else default_config_path()
    data = {}
    if cfg_path.exists():
        loaded = yaml.safe_load(cfg_path.read_text()) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Invalid config file {cfg_path}: expected a mapping")
        data.update(loaded)

    data.update({k: v for k, v in overrides.items() if v is not None})
    return ClientConfig(**data)
