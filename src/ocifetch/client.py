"""Registry client binding the transport to the blob, tag and manifest operations."""

from pathlib import Path
from typing import Callable, List, Optional, Tuple
import logging

from . import manifest as manifests
from . import render
from .blobs import BlobTransfer
from .config import ClientConfig, load_client_config
from .constants import API_VERSION, API_VERSION_HEADER
from .errors import UnexpectedHttpStatusError, V2NotSupportedError
from .manifest import BlobDescriptor
from .progress import ProgressSink
from .tags import list_tags
from .transport import RegistryTransport

logger = logging.getLogger(__name__)

ProgressFactory = Callable[[BlobDescriptor], Optional[ProgressSink]]


class Client:
    """Read-only client for one Docker/OCI v2 registry.

    Example:
        client = Client.from_config(registry="ghcr.io").ensure_v2_registry()
        manifest, digest = client.resolve_image_manifest("org/app", "latest")
        for layer in client.layer_descriptors("org/app", manifest):
            client.get_blob_to_file(layer.name, layer.digest, layer.size)
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        transport: Optional[RegistryTransport] = None,
    ):
        self.config = config or ClientConfig()
        self.transport = transport or RegistryTransport(self.config)
        self.blobs = BlobTransfer(self.transport, chunk_size=self.config.chunk_size)

    @classmethod
    def from_config(cls, path: Optional[Path] = None, **overrides) -> "Client":
        """Build a client from the YAML config file plus overrides."""
        return cls(load_client_config(path, **overrides))

    # ============= Version probe =============

    def is_v2_supported_and_authorized(self) -> Tuple[bool, bool]:
        """Probe GET /v2/.

        Returns:
            (supported, authorized): supported is True when the API version
            header says registry/2.0; authorized is False when the registry
            answered 401

        Raises:
            UnexpectedHttpStatusError: For anything but 200 or 401, or when
                the API version header is missing
        """
        resp = self.transport.request("GET", self.transport.url("/v2/"))
        status = resp.status_code
        resp.close()

        version = resp.headers.get(API_VERSION_HEADER)
        if status not in (200, 401) or version is None:
            raise UnexpectedHttpStatusError(status)
        supported = version == API_VERSION
        logger.debug("v2 probe: status=%s api-version=%s", status, version)
        return supported, status == 200

    def is_v2_supported(self) -> bool:
        try:
            supported, _ = self.is_v2_supported_and_authorized()
        except UnexpectedHttpStatusError as e:
            logger.debug("v2 probe failed: %s", e)
            return False
        return supported

    def ensure_v2_registry(self) -> "Client":
        """Return self if the registry speaks v2, raise V2NotSupportedError otherwise."""
        if not self.is_v2_supported():
            raise V2NotSupportedError(self.transport.base_url)
        return self

    # ============= Blobs =============

    def has_blob(self, name: str, digest: str) -> bool:
        return self.blobs.has_blob(name, digest)

    def get_blob(self, name: str, digest: str) -> bytes:
        return self.blobs.get_blob(name, digest)

    def get_blob_with_progress(
        self, name: str, digest: str, progress: Optional[ProgressSink] = None
    ) -> bytes:
        return self.blobs.get_blob_with_progress(name, digest, progress)

    def get_blob_to_file(
        self,
        name: str,
        digest: str,
        expected_size: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
        target_dir: Optional[Path] = None,
    ) -> Path:
        """Download a blob to target_dir (default: the configured cache dir)."""
        if target_dir is None:
            target_dir = self.config.cache_dir
        return self.blobs.get_blob_to_file(
            name, digest, expected_size=expected_size, progress=progress, target_dir=target_dir
        )

    # ============= Tags and manifests =============

    def list_tags(self, name: str, paginate: Optional[int] = None) -> List[str]:
        return list_tags(self.transport, name, paginate)

    def get_manifest(self, name: str, reference: str) -> Tuple[dict, str, bytes]:
        return manifests.get_manifest(self.transport, name, reference)

    def resolve_image_manifest(
        self,
        name: str,
        reference: str,
        os: str = "linux",
        architecture: str = "amd64",
        variant: Optional[str] = None,
    ) -> Tuple[dict, str]:
        return manifests.resolve_image_manifest(
            self.transport, name, reference, os=os, architecture=architecture, variant=variant
        )

    def layer_descriptors(self, name: str, manifest: dict) -> List[BlobDescriptor]:
        return manifests.layer_descriptors(name, manifest)

    # ============= Whole images =============

    def pull(
        self,
        name: str,
        reference: str,
        dest: Path,
        os: str = "linux",
        architecture: str = "amd64",
        cache_dir: Optional[Path] = None,
        progress_factory: Optional[ProgressFactory] = None,
    ) -> str:
        """Download every layer of an image into the cache and render it to dest.

        Returns:
            Digest of the resolved image manifest
        """
        manifest, digest = self.resolve_image_manifest(
            name, reference, os=os, architecture=architecture
        )
        layers = self.layer_descriptors(name, manifest)
        logger.debug("Pulling %s@%s: %d layers", name, digest, len(layers))

        paths = []
        for layer in layers:
            progress = progress_factory(layer) if progress_factory else None
            paths.append(
                self.get_blob_to_file(
                    layer.name, layer.digest, layer.size, progress=progress, target_dir=cache_dir
                )
            )

        render.unpack_files(paths, Path(dest))
        return digest
