"""Docker/OCI registry v2 client: verified, resumable blob downloads and image rendering."""

from .client import Client
from .config import ClientConfig, load_client_config
from .constants import OCIFETCH_VERSION as __version__
from .digest import ContentDigest
from .manifest import BlobDescriptor, MediaType
from .progress import ProgressChannel, ProgressChannelClosed, ProgressSink
from .render import unpack, unpack_files, unpack_partial

__all__ = [
    "BlobDescriptor",
    "Client",
    "ClientConfig",
    "ContentDigest",
    "MediaType",
    "ProgressChannel",
    "ProgressChannelClosed",
    "ProgressSink",
    "load_client_config",
    "unpack",
    "unpack_files",
    "unpack_partial",
]
