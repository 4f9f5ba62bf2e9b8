"""Image manifests, indexes and layer descriptors."""

from enum import Enum
from typing import List, Optional, Tuple
import json
import logging

from pydantic import BaseModel

from .digest import ContentDigest
from .errors import NetworkError, UnsupportedArtifactError
from .transport import raise_for_registry_status

logger = logging.getLogger(__name__)


class MediaType(str, Enum):
    """Manifest, config and layer media types of the Docker v2 and OCI formats."""

    DOCKER_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
    DOCKER_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"
    DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
    DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
    DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
    DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
    DOCKER_FOREIGN_LAYER = "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip"
    OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
    OCI_INDEX = "application/vnd.oci.image.index.v1+json"
    OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
    OCI_LAYER = "application/vnd.oci.image.layer.v1.tar"
    OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
    OCI_LAYER_NONDIST_GZIP = "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip"


INDEX_MEDIA_TYPES = {MediaType.DOCKER_MANIFEST_LIST.value, MediaType.OCI_INDEX.value}

# Manifest types for the Accept header
OCI_ACCEPT = ",".join([
    MediaType.OCI_MANIFEST.value,
    MediaType.DOCKER_MANIFEST_V2.value,
    MediaType.OCI_INDEX.value,
    MediaType.DOCKER_MANIFEST_LIST.value,
    MediaType.DOCKER_MANIFEST_V1_SIGNED.value,
    MediaType.DOCKER_MANIFEST_V1.value,
])


class BlobDescriptor(BaseModel):
    """A blob to fetch: repository, digest, and size when the manifest gives one."""

    model_config = {"frozen": True}

    name: str
    digest: str
    size: Optional[int] = None
    media_type: Optional[str] = None


def is_index(manifest: dict) -> bool:
    return manifest.get("mediaType") in INDEX_MEDIA_TYPES or "manifests" in manifest


def get_manifest(transport, name: str, reference: str) -> Tuple[dict, str, bytes]:
    """
    Return (manifest_json, canonical_digest, raw_bytes).

    Reference can be a tag (e.g., "latest") or digest (e.g., "sha256:...").
    Digest comes from Docker-Content-Digest header when available;
    otherwise it is computed from the exact raw bytes. A digest reference is
    verified against the raw bytes.
    """
    target = f"{name}:{reference}"
    resp = transport.request(
        "GET",
        transport.url(f"/v2/{name}/manifests/{reference}"),
        headers={"Accept": OCI_ACCEPT},
    )
    raise_for_registry_status(resp, target)

    raw = resp.content or b""
    try:
        manifest = json.loads(raw) if raw else {}
    except ValueError:
        content_type = resp.headers.get("Content-Type", "unknown")
        raise NetworkError(
            f"Registry returned invalid response for {target}: "
            f"expected JSON but got {content_type}"
        )
    if not isinstance(manifest, dict):
        raise NetworkError(f"Registry returned invalid manifest for {target}")

    if ":" in reference:
        ContentDigest.parse(reference).verify_bytes(raw)

    digest = resp.headers.get("Docker-Content-Digest")
    if not digest:
        digest = str(ContentDigest.from_bytes(raw))
        logger.warning(
            "Registry did not return Docker-Content-Digest for %s; "
            "using digest computed from raw manifest bytes.", target
        )
    return manifest, digest, raw


def _matches(platform: dict, os: str, architecture: str, variant: Optional[str]) -> bool:
    if platform.get("os") != os or platform.get("architecture") != architecture:
        return False
    return variant is None or platform.get("variant") == variant


def resolve_image_manifest(
    transport,
    name: str,
    reference: str,
    os: str = "linux",
    architecture: str = "amd64",
    variant: Optional[str] = None,
) -> Tuple[dict, str]:
    """Fetch an image manifest, following a manifest list/index by platform.

    Returns:
        (manifest_json, digest) of the single-platform image manifest

    Raises:
        UnsupportedArtifactError: If no platform entry matches, or the
            artifact is not an image manifest
    """
    manifest, digest, _ = get_manifest(transport, name, reference)

    if is_index(manifest):
        wanted = f"{os}/{architecture}" + (f"/{variant}" if variant else "")
        for entry in manifest.get("manifests") or []:
            if _matches(entry.get("platform") or {}, os, architecture, variant):
                logger.debug("Selected %s for %s from %s", entry.get("digest"), wanted, reference)
                manifest, digest, _ = get_manifest(transport, name, entry["digest"])
                break
        else:
            raise UnsupportedArtifactError(
                f"{name}:{reference}", f"manifest index without {wanted} entry"
            )

    if is_index(manifest) or manifest.get("schemaVersion") != 2:
        media_type = manifest.get("mediaType") or f"schema {manifest.get('schemaVersion')}"
        raise UnsupportedArtifactError(f"{name}:{reference}", media_type)
    return manifest, digest


def layer_descriptors(name: str, manifest: dict) -> List[BlobDescriptor]:
    """Layer blobs of an image manifest, base layer first."""
    return [
        BlobDescriptor(
            name=name,
            digest=layer["digest"],
            size=layer.get("size"),
            media_type=layer.get("mediaType"),
        )
        for layer in manifest.get("layers") or []
    ]


def config_descriptor(name: str, manifest: dict) -> BlobDescriptor:
    """Descriptor of the image config blob."""
    config = manifest.get("config") or {}
    if "digest" not in config:
        raise UnsupportedArtifactError(name, "manifest without config")
    return BlobDescriptor(
        name=name,
        digest=config["digest"],
        size=config.get("size"),
        media_type=config.get("mediaType"),
    )
