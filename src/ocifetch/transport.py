"""HTTP transport for registry requests, built on the oras provider."""

from typing import Dict, Optional
import logging

import oras.provider
import requests

from .auth import AuthProvider, resolve_credentials
from .config import ClientConfig
from .errors import AuthError, NetworkError, NotFoundError, UnexpectedHttpStatusError

logger = logging.getLogger(__name__)


class RegistryTransport:
    """Authenticated requests against one registry base URL.

    The oras Registry owns the requests session and performs the
    bearer-token (or basic) handshake when the registry answers 401.
    Responses are returned as-is; status handling belongs to callers.
    """

    def __init__(
        self,
        config: ClientConfig,
        auth_provider: Optional[AuthProvider] = None,
        registry: Optional[oras.provider.Registry] = None,
    ):
        """Initialize the transport.

        Args:
            config: Client configuration (base URL, TLS, user agent)
            auth_provider: Credential source; picked from config/env if None
            registry: Pre-built oras Registry, mainly for tests
        """
        self.config = config
        self.base_url = config.base_url
        self.user_agent = config.user_agent

        if registry is None:
            registry = oras.provider.Registry(
                hostname=config.host,
                insecure=config.is_insecure,
                tls_verify=config.tls_verify,
            )
        self.registry = registry

        if auth_provider is None:
            credential = resolve_credentials(config)
        else:
            credential = auth_provider.get_registry_credential(config.host)
        if not credential.is_anonymous:
            self.registry.auth.set_basic_auth(credential.username, credential.secret)
            logger.debug("Using basic authentication for %s", config.host)

    def url(self, path: str) -> str:
        """Absolute URL for a registry API path such as /v2/."""
        return f"{self.base_url}{path}"

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> requests.Response:
        """Send a request and return the (possibly streaming) response.

        Raises:
            NetworkError: If no response could be obtained
        """
        all_headers = {"User-Agent": self.user_agent}
        if headers:
            all_headers.update(headers)

        logger.debug("%s %s", method, url)
        try:
            resp = self.registry.do_request(url, method, headers=all_headers, stream=stream)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Cannot connect to registry: {e}") from e

        logger.debug("%s %s status: %s", method, url, resp.status_code)
        return resp


def raise_for_registry_status(resp: requests.Response, target: str) -> None:
    """Map a non-2xx metadata response to the registry error hierarchy."""
    status = resp.status_code
    if 200 <= status < 300:
        return
    if status in (401, 403):
        raise AuthError(f"Authentication failed for {target}")
    if status == 404:
        raise NotFoundError(f"Not found: {target}")
    if status >= 500:
        raise NetworkError(f"Registry error {status}: {target}")
    raise UnexpectedHttpStatusError(status)
