"""Registry credential lookup.

This module decodes the credential store written by `docker login`
(``~/.docker/config.json``) and provides small auth providers that the
client uses to pick credentials for a registry. The bearer/basic handshake
itself is performed by the oras provider in the transport.
"""

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Dict, IO, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from ..constants import DOCKER_HUB_ALIASES, DOCKER_HUB_INDEX
from ..errors import AuthInfoMissingError, CredentialError

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """Username/secret pair; both empty means anonymous."""

    username: str = ""
    secret: str = ""

    @property
    def is_anonymous(self) -> bool:
        return not self.username and not self.secret


class AuthEntry(BaseModel):
    auth: str = ""


class DockerConfig(BaseModel):
    """The subset of docker's config.json we read."""

    auths: Dict[str, AuthEntry] = Field(default_factory=dict)


def _real_index(index: str) -> str:
    # docker.io has some special casing in config.json
    if index in DOCKER_HUB_ALIASES:
        return DOCKER_HUB_INDEX
    return index


def get_credentials(
    reader: Union[IO[str], IO[bytes]],
    index: str,
) -> Tuple[Optional[str], Optional[str]]:
    """Get registry credentials from a docker config.json stream.

    Args:
        reader: Readable stream holding the JSON config
        index: Registry index to look up (e.g. "docker.io", "ghcr.io")

    Returns:
        (username, password); an empty component is returned as None

    Raises:
        AuthInfoMissingError: If the config holds nothing for the index
        CredentialError: If the config or the auth entry can't be decoded
    """
    try:
        config = DockerConfig.model_validate(json.load(reader))
    except (ValueError, ValidationError) as e:
        raise CredentialError(f"Invalid docker config: {e}")

    real_index = _real_index(index)
    entry = config.auths.get(real_index)
    if entry is None:
        raise AuthInfoMissingError(real_index)

    try:
        decoded = base64.b64decode(entry.auth, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CredentialError(f"Invalid auth entry for '{real_index}': {e}")

    if ":" not in decoded:
        return None, None
    user, password = decoded.split(":", 1)
    creds = (user or None, password or None)
    logger.debug("Found credentials for user=%s on %s", creds[0], index)
    return creds


def docker_config_path() -> Path:
    """Location of docker's config.json, honoring DOCKER_CONFIG."""
    base = os.environ.get("DOCKER_CONFIG")
    if base:
        return Path(base) / "config.json"
    return Path.home() / ".docker" / "config.json"


def load_docker_credentials(
    index: str, path: Optional[Path] = None
) -> Tuple[Optional[str], Optional[str]]:
    """Read credentials for an index from docker's config file."""
    cfg = Path(path) if path else docker_config_path()
    if not cfg.exists():
        raise AuthInfoMissingError(_real_index(index))
    with cfg.open("r") as f:
        return get_credentials(f, index)


class AuthProvider(Protocol):
    """Anything that can hand out credentials for a registry."""

    def get_registry_credential(self, registry: str) -> Credential:
        ...


class StaticAuth:
    """Static auth from explicit values or environment variables."""

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None):
        self.username = username
        self.password = password

    def get_registry_credential(self, registry: str) -> Credential:
        """Get credentials from constructor values or environment.

        Args:
            registry: Registry endpoint (ignored for static auth)

        Returns:
            Credential, empty for anonymous/public registries
        """
        username = self.username or os.environ.get("REGISTRY_USERNAME", "")
        password = self.password or os.environ.get("REGISTRY_PASSWORD", "")

        if not password:
            return Credential()

        return Credential(username=username, secret=password)


class DockerConfigAuth:
    """Credentials stored by `docker login`."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path

    def get_registry_credential(self, registry: str) -> Credential:
        try:
            user, password = load_docker_credentials(registry, self.path)
        except AuthInfoMissingError:
            logger.debug("No docker credentials for %s, using anonymous access", registry)
            return Credential()
        return Credential(username=user or "", secret=password or "")


def resolve_credentials(config) -> Credential:
    """Credential for a client config: explicit values, env, then docker config."""
    provider = get_auth_provider(config.username, config.password)
    return provider.get_registry_credential(config.host)


def get_auth_provider(
    username: Optional[str] = None, password: Optional[str] = None
) -> AuthProvider:
    """Pick the auth provider for a client.

    Explicit credentials win, then REGISTRY_USERNAME/REGISTRY_PASSWORD,
    then docker's config file.
    """
    if password or os.environ.get("REGISTRY_PASSWORD"):
        return StaticAuth(username, password)
    return DockerConfigAuth()


__all__ = [
    "AuthProvider",
    "Credential",
    "DockerConfigAuth",
    "StaticAuth",
    "docker_config_path",
    "get_auth_provider",
    "get_credentials",
    "load_docker_credentials",
    "resolve_credentials",
]
