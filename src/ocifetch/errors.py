"""Custom exceptions for ocifetch.

This module defines typed exceptions for better error handling and clearer
error messages throughout the library.
"""

import json
from pathlib import Path
from typing import Any, Dict, List


class OciFetchError(RuntimeError):
    """Base class for all ocifetch errors."""
    pass


# Digest Errors
class DigestError(OciFetchError, ValueError):
    """Base class for digest parsing errors."""
    pass


class MalformedDigestError(DigestError):
    """Digest string is not of the form algorithm:hex."""

    def __init__(self, value: str, reason: str = "expected 'algorithm:hex'"):
        self.value = value
        super().__init__(f"Malformed digest {value!r}: {reason}")


class UnknownAlgorithmError(DigestError):
    """Digest algorithm is not supported."""

    def __init__(self, algorithm: str):
        self.algorithm = algorithm
        super().__init__(f"Unknown digest algorithm: {algorithm!r}")


class BadDigestLengthError(DigestError):
    """Hex part does not match the algorithm's output width."""

    def __init__(self, algorithm: str, expected: int, actual: int):
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invalid {algorithm} hex (must be {expected} hex chars, got {actual})"
        )


# Integrity Errors
class IntegrityError(OciFetchError):
    """Base class for data integrity errors."""
    pass


class DigestMismatchError(IntegrityError):
    """Content digest doesn't match expected value."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest verification failed\n"
            f"  Expected: {expected}\n"
            f"  Got:      {actual}\n"
            f"The content may be truncated, corrupted or tampered with."
        )


# Registry Errors
class RegistryError(OciFetchError):
    """Base class for registry communication errors."""
    pass


class NetworkError(RegistryError):
    """Network connectivity issue with registry."""
    pass


class DownloadFailedError(NetworkError):
    """Transport failed before a response was obtained."""
    pass


class AuthError(RegistryError):
    """Authentication or authorization failed (401/403)."""
    pass


class NotFoundError(RegistryError):
    """Resource not found in registry (404)."""
    pass


class UnexpectedHttpStatusError(RegistryError):
    """Registry answered with a status the operation cannot handle."""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"Unexpected HTTP status: {status}")


class ClientHttpError(RegistryError):
    """Registry answered with a 4xx status.

    The response body is preserved so callers can render the registry's
    error document.
    """

    def __init__(self, status: int, length: int, body: bytes = b""):
        self.status = status
        self.length = length
        self.body = body
        super().__init__(f"Registry client error {status} ({length} bytes)")

    def registry_errors(self) -> List[Dict[str, Any]]:
        """Decode the registry's {"errors": [...]} document, if any."""
        if not self.body:
            return []
        try:
            doc = json.loads(self.body)
        except (ValueError, UnicodeDecodeError):
            return []
        if not isinstance(doc, dict):
            return []
        errors = doc.get("errors") or []
        return [e for e in errors if isinstance(e, dict)]


class V2NotSupportedError(RegistryError):
    """Registry does not speak the v2 API."""

    def __init__(self, base_url: str):
        self.base_url = base_url
        super().__init__(f"Registry at {base_url} does not support the v2 API")


class UnsupportedArtifactError(RegistryError):
    """Manifest type not supported (e.g., no entry for the requested platform)."""

    def __init__(self, reference: str, media_type: str):
        self.reference = reference
        self.media_type = media_type
        super().__init__(f"'{reference}' points to unsupported {media_type}")


# Transfer Errors
class TransferCancelledError(OciFetchError):
    """Progress receiver went away; the transfer was abandoned."""

    def __init__(self, digest: str, transferred: int):
        self.digest = digest
        self.transferred = transferred
        super().__init__(
            f"Transfer of {digest} cancelled after {transferred} bytes"
        )


# Credential Errors
class CredentialError(OciFetchError):
    """Base class for credential lookup errors."""
    pass


class AuthInfoMissingError(CredentialError):
    """No credentials recorded for the requested index."""

    def __init__(self, index: str):
        self.index = index
        super().__init__(f"No auth info found for '{index}'")


# Render Errors
class RenderError(OciFetchError):
    """Base class for image rendering errors."""
    pass


class WrongTargetPathError(RenderError):
    """Render target is not an absolute path to an existing directory."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"wrong target path {path}: must be absolute path to existing directory"
        )


class RenderIOError(RenderError):
    """I/O failure while decompressing, extracting or applying whiteouts."""
    pass
