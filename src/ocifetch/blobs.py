"""Blob transfer engine.

Content-addressed blobs are fetched from ``{base}/v2/{name}/blobs/{digest}``
and verified against their digest while they stream. Downloads to disk use
``target_dir/<digest>`` as a cache entry with three outcomes on entry:

- complete (right size, right hash): returned without any request
- partial (shorter than expected): resumed with a Range request
- corrupt (right size, wrong hash): deleted and fetched again

Progress sinks receive each chunk's length before the chunk is hashed or
persisted, and are closed exactly once on every exit path.
"""

from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union
import contextlib
import logging

import requests

from .constants import DEFAULT_CHUNK_SIZE
from .digest import ContentDigest, hash_file
from .errors import (
    ClientHttpError,
    DigestMismatchError,
    DownloadFailedError,
    NetworkError,
    TransferCancelledError,
    UnexpectedHttpStatusError,
)
from .progress import ProgressChannelClosed, ProgressSink

logger = logging.getLogger(__name__)


def _is_success(status: int) -> bool:
    return 200 <= status < 300


def _is_client_error(status: int) -> bool:
    return 400 <= status < 500


def _ranges_refused(resp: requests.Response) -> bool:
    accept = resp.headers.get("Accept-Ranges")
    return accept is None or accept.strip().lower() == "none"


class _Phase(str, Enum):
    FRESH = "fresh"
    SEEDED = "seeded"
    STREAMING = "streaming"
    DONE = "done"


class _TransferState:
    """Hasher and byte offset of one transfer, advanced in lockstep.

    FRESH -> SEEDED -> STREAMING -> DONE, or FRESH -> STREAMING -> DONE.
    Entering STREAMING decides between appending to the seeded state and
    starting over.
    """

    def __init__(self, digest: ContentDigest):
        self.digest = digest
        self.hasher = digest.start_hash()
        self.offset = 0
        self.phase = _Phase.FRESH

    def seed(self, path: Path) -> None:
        """Feed an existing partial file into the hasher."""
        if self.phase is not _Phase.FRESH:
            raise RuntimeError(f"cannot seed a transfer in phase {self.phase.name}")
        hash_file(path, self.hasher)
        self.offset = path.stat().st_size
        self.phase = _Phase.SEEDED

    def begin(self, resume: bool) -> bool:
        """Start streaming; returns True when continuing a seeded state."""
        if self.phase not in (_Phase.FRESH, _Phase.SEEDED):
            raise RuntimeError(f"cannot start streaming in phase {self.phase.name}")
        resuming = resume and self.phase is _Phase.SEEDED
        if not resuming:
            self.hasher = self.digest.start_hash()
            self.offset = 0
        self.phase = _Phase.STREAMING
        return resuming

    def update(self, chunk: bytes) -> None:
        self.hasher.update(chunk)
        self.offset += len(chunk)

    def finish(self) -> str:
        self.phase = _Phase.DONE
        return self.hasher.hexdigest()


class BlobTransfer:
    """Fetches and verifies blobs through a registry transport.

    Args:
        transport: Object with url(path) and request(method, url, headers, stream)
        chunk_size: Size of each streaming read
    """

    def __init__(self, transport, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.transport = transport
        self.chunk_size = chunk_size

    def blob_url(self, name: str, digest: Union[str, ContentDigest]) -> str:
        return self.transport.url(f"/v2/{name}/blobs/{digest}")

    # ============= Existence =============

    def has_blob(self, name: str, digest: str) -> bool:
        """Check if a blob exists (HEAD answered with 200 OK)."""
        resp = self.transport.request("HEAD", self.blob_url(name, digest))
        with contextlib.closing(resp):
            logger.debug("Blob HEAD status: %s", resp.status_code)
            return resp.status_code == 200

    # ============= In-memory fetches =============

    def get_blob(self, name: str, digest: str) -> bytes:
        """Retrieve a whole blob and verify it.

        Raises:
            ClientHttpError: On 4xx, with the response body
            UnexpectedHttpStatusError: On any status that is neither 2xx nor 4xx
            DigestMismatchError: If the body doesn't match the digest
        """
        expected = ContentDigest.parse(digest)
        resp = self.transport.request("GET", self.blob_url(name, expected))
        with contextlib.closing(resp):
            status = resp.status_code
            # Let client errors through to populate them with the body
            if not (_is_success(status) or _is_client_error(status)):
                raise UnexpectedHttpStatusError(status)

            body = resp.content
            if _is_client_error(status):
                raise ClientHttpError(status, len(body), body)

        logger.debug("Received blob %s with %d bytes", expected, len(body))
        expected.verify_bytes(body)
        return body

    def get_blob_with_progress(
        self,
        name: str,
        digest: str,
        progress: Optional[ProgressSink] = None,
    ) -> bytes:
        """Retrieve a blob in chunks, reporting each chunk to progress.

        The hash is computed incrementally and verified once the stream ends.
        The progress sink is closed before this returns or raises.
        """
        with _released(progress):
            expected = ContentDigest.parse(digest)
            state = _TransferState(expected)
            resp = self.transport.request("GET", self.blob_url(name, expected), stream=True)
            with contextlib.closing(resp):
                status = resp.status_code
                if not (_is_success(status) or _is_client_error(status)):
                    raise UnexpectedHttpStatusError(status)

                state.begin(resume=False)
                body = bytearray()
                for chunk in self._iter_body(resp):
                    _send(progress, len(chunk), state)
                    state.update(chunk)
                    body.extend(chunk)

            if _is_client_error(status):
                raise ClientHttpError(status, len(body), bytes(body))

        logger.debug("Received blob %s with %d bytes", expected, len(body))
        expected.verify_hash(state.finish())
        return bytes(body)

    # ============= Resumable download to disk =============

    def get_blob_to_file(
        self,
        name: str,
        digest: str,
        expected_size: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
        target_dir: Path = None,
    ) -> Path:
        """Download a blob to ``target_dir/<digest>``, resuming when possible.

        Args:
            name: Repository name
            digest: Blob digest; also the cache file name
            expected_size: Authoritative blob size; enables cache validation
                and resumption
            progress: Optional sink for byte counts
            target_dir: Cache directory, created if missing

        Returns:
            Absolute path of the verified file

        Raises:
            DownloadFailedError: If the request could not be sent
            ClientHttpError: On 4xx (body written to disk, not captured)
            UnexpectedHttpStatusError: On any status that is neither 2xx nor 4xx
            DigestMismatchError: If the file doesn't verify; the file is kept
            TransferCancelledError: If the progress receiver went away
        """
        with _released(progress):
            if target_dir is None:
                raise ValueError("target_dir is required")
            expected = ContentDigest.parse(digest)
            target_dir = Path(target_dir)
            target_dir.mkdir(parents=True, exist_ok=True)
            target = (target_dir / digest).absolute()
            logger.debug("Going to download to: %s", target)

            state = _TransferState(expected)
            headers = {}

            if expected_size is not None and target.exists():
                size = target.stat().st_size
                if size == expected_size:
                    if _is_complete(expected, target):
                        logger.debug("Already downloaded %s", digest)
                        _send(progress, expected_size, state)
                        return target
                    logger.debug("Cached %s is corrupt, downloading again", digest)
                    target.unlink()
                elif size < expected_size:
                    logger.debug("Trying to resume %s at byte %d", digest, size)
                    state.seed(target)
                    headers["Range"] = f"bytes={size}-{expected_size - 1}"
                else:
                    logger.debug(
                        "Cached %s is larger than expected (%d > %d), downloading again",
                        digest, size, expected_size,
                    )
                    target.unlink()

            try:
                resp = self.transport.request(
                    "GET", self.blob_url(name, expected), headers=headers, stream=True
                )
            except NetworkError as e:
                logger.warning("Unable to create request: %s", e)
                raise DownloadFailedError(f"Download of {digest} failed: {e}") from e

            with contextlib.closing(resp):
                status = resp.status_code
                if not (_is_success(status) or _is_client_error(status)):
                    raise UnexpectedHttpStatusError(status)

                resuming = state.begin(
                    resume=status == 206 and not _ranges_refused(resp)
                )
                if resuming:
                    _send(progress, state.offset, state)
                elif state.offset:
                    logger.debug("Server refused partial content, restarting %s", digest)

                streamed = 0
                with open(target, "ab" if resuming else "wb") as fh:
                    for chunk in self._iter_body(resp):
                        _send(progress, len(chunk), state)
                        state.update(chunk)
                        fh.write(chunk)
                        streamed += len(chunk)

            if _is_client_error(status):
                raise ClientHttpError(status, streamed)

        logger.debug("Received blob %s with %d bytes", digest, streamed)
        expected.verify_hash(state.finish())
        return target

    def _iter_body(self, resp: requests.Response) -> Iterator[bytes]:
        """Yield body chunks; a read error is logged and ends the stream."""
        chunks = resp.iter_content(chunk_size=self.chunk_size)
        while True:
            try:
                chunk = next(chunks)
            except StopIteration:
                return
            except (requests.exceptions.RequestException, OSError) as e:
                logger.error("Download error: %s", e)
                return
            if chunk:
                yield chunk


def _is_complete(digest: ContentDigest, path: Path) -> bool:
    try:
        digest.verify_file(path)
    except DigestMismatchError:
        return False
    return True


def _send(progress: Optional[ProgressSink], nbytes: int, state: _TransferState) -> None:
    if progress is None:
        return
    try:
        progress.send(nbytes)
    except ProgressChannelClosed:
        raise TransferCancelledError(str(state.digest), state.offset)


@contextlib.contextmanager
def _released(progress: Optional[ProgressSink]):
    """Close the progress sink once the block exits, however it exits."""
    try:
        yield
    finally:
        if progress is not None:
            progress.close()
