"""Constants for ocifetch."""

# Version
OCIFETCH_VERSION = "0.1.0"

# Default User-Agent sent with every registry request
USER_AGENT = f"ocifetch/{OCIFETCH_VERSION}"

# Registry API version probe
API_VERSION_HEADER = "Docker-Distribution-API-Version"
API_VERSION = "registry/2.0"

# Streaming read size for blob transfers
DEFAULT_CHUNK_SIZE = 8192

# Layer whiteout markers
WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"

# Docker Hub special casing
DOCKER_HUB_INDEX = "https://index.docker.io/v1/"
DOCKER_HUB_ALIASES = ("docker.io", "registry-1.docker.io")
DOCKER_HUB_REGISTRY = "registry-1.docker.io"

# Environment variables
ENV_INSECURE = "OCIFETCH_INSECURE"
ENV_CONFIG = "OCIFETCH_CONFIG"
