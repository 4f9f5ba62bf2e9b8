"""Content digests for registry blobs.

A digest is the canonical ``algorithm:hex`` identifier of a blob. This module
parses and validates digest strings and verifies content against them, either
all at once or incrementally so that large blobs never need to be held in
memory.
"""

from pathlib import Path
from typing import Dict
import hashlib
import hmac
import re

from pydantic import BaseModel

from .errors import (
    BadDigestLengthError,
    DigestMismatchError,
    MalformedDigestError,
    UnknownAlgorithmError,
)

# Hex width of each supported algorithm
ALGORITHMS: Dict[str, int] = {
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}

_HEX = re.compile(r"^[0-9a-f]*$")

_READ_SIZE = 8192


class ContentDigest(BaseModel):
    """An immutable ``algorithm:hex`` content digest.

    Two digests are equal iff their canonical strings are equal.
    """

    algorithm: str
    hex: str

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, value: str) -> "ContentDigest":
        """Parse and validate a digest string.

        Args:
            value: Digest string in format "algorithm:hexvalue"

        Returns:
            The parsed digest

        Raises:
            MalformedDigestError: If the string is not a single algorithm:hex pair
            UnknownAlgorithmError: If the algorithm is not supported
            BadDigestLengthError: If the hex width doesn't match the algorithm

        Security:
            Digests are used as cache file names, so the hex part is validated
            before it ever reaches a path.
        """
        if not isinstance(value, str) or value.count(":") != 1:
            raise MalformedDigestError(str(value))

        algorithm, hex_part = value.split(":", 1)
        if not algorithm or not hex_part:
            raise MalformedDigestError(value)
        if algorithm not in ALGORITHMS:
            raise UnknownAlgorithmError(algorithm)
        if not _HEX.fullmatch(hex_part):
            raise MalformedDigestError(value, "hex part must be lowercase hexadecimal")

        expected = ALGORITHMS[algorithm]
        if len(hex_part) != expected:
            raise BadDigestLengthError(algorithm, expected, len(hex_part))

        return cls(algorithm=algorithm, hex=hex_part)

    @classmethod
    def from_bytes(cls, data: bytes, algorithm: str = "sha256") -> "ContentDigest":
        """Compute the digest of a buffer."""
        if algorithm not in ALGORITHMS:
            raise UnknownAlgorithmError(algorithm)
        return cls(algorithm=algorithm, hex=hashlib.new(algorithm, data).hexdigest())

    def start_hash(self):
        """Return a fresh incremental hasher bound to this digest's algorithm."""
        return hashlib.new(self.algorithm)

    def verify_hash(self, finalized) -> None:
        """Verify a finished hash against this digest.

        Args:
            finalized: Hex string, or a hasher whose hexdigest() is taken

        Raises:
            DigestMismatchError: If the hash doesn't match
        """
        actual = finalized if isinstance(finalized, str) else finalized.hexdigest()
        if not hmac.compare_digest(actual, self.hex):
            raise DigestMismatchError(str(self), f"{self.algorithm}:{actual}")

    def verify_bytes(self, data: bytes) -> None:
        """Verify a complete buffer against this digest."""
        self.verify_hash(hashlib.new(self.algorithm, data).hexdigest())

    def verify_file(self, path: Path) -> None:
        """Verify file contents against this digest without loading it whole."""
        self.verify_hash(hash_file(path, self.start_hash()))

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


def hash_file(path: Path, hasher=None):
    """Feed a file's contents into a hasher in fixed-size chunks.

    Args:
        path: File to read
        hasher: Hasher to update; a new sha256 hasher if None

    Returns:
        The updated hasher
    """
    if hasher is None:
        hasher = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(_READ_SIZE), b""):
            hasher.update(chunk)
    return hasher


def compute_file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Compute the digest of file contents.

    Args:
        path: Path to file to hash
        algorithm: Hash algorithm name

    Returns:
        Digest in format "algorithm:xxxx"
    """
    if algorithm not in ALGORITHMS:
        raise UnknownAlgorithmError(algorithm)
    return f"{algorithm}:{hash_file(path, hashlib.new(algorithm)).hexdigest()}"


__all__ = [
    "ALGORITHMS",
    "ContentDigest",
    "compute_file_digest",
    "hash_file",
]
