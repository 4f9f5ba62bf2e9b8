"""Shared test fixtures and utilities."""

import gzip
import hashlib
import io
import tarfile
from typing import Dict, Iterable, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from ocifetch.errors import NetworkError


class FailingRaw(io.BytesIO):
    """Response body that breaks after its first bytes."""

    def read(self, size=-1):
        data = super().read(size)
        if not data:
            raise OSError("connection reset by peer")
        return data


def build_response(status: int = 200, body: bytes = b"", headers: Optional[dict] = None,
                   raw=None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.raw = raw if raw is not None else io.BytesIO(body)
    resp.url = "https://registry.test/"
    resp.encoding = "utf-8"
    return resp


class FakeTransport:
    """In-process stand-in for RegistryTransport.

    Responses are served in the order they were queued; every request is
    recorded as (method, url, headers, stream).
    """

    base_url = "https://registry.test"

    def __init__(self):
        self.responses = []
        self.calls = []

    def queue(self, response):
        self.responses.append(response)
        return self

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def request(self, method, url, headers=None, stream=False):
        self.calls.append((method, url, dict(headers or {}), stream))
        if not self.responses:
            raise AssertionError(f"unexpected request: {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def make_response():
    """Factory fixture building real requests.Response objects."""
    return build_response


@pytest.fixture
def failing_response():
    """Factory for a response whose body read fails mid-stream."""
    def _make(status: int, body: bytes, headers: Optional[dict] = None):
        return build_response(status, headers=headers, raw=FailingRaw(body))
    return _make


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def network_down():
    return NetworkError("Cannot connect to registry: connection refused")


@pytest.fixture
def blob():
    """A small blob and its sha256 digest."""
    data = b"hello world"
    return data, "sha256:" + hashlib.sha256(data).hexdigest()


def _tar_layer(entries: Iterable[tuple]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in entries:
            kind, name = entry[0], entry[1]
            info = tarfile.TarInfo(name)
            info.mtime = 1700000000
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = entry[2] if len(entry) > 2 else 0o755
                tar.addfile(info)
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = entry[2]
                tar.addfile(info)
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = entry[2]
                tar.addfile(info)
            else:
                data = entry[2] if len(entry) > 2 else b""
                info.size = len(data)
                info.mode = entry[3] if len(entry) > 3 else 0o644
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def make_layer():
    """Factory fixture building gzipped tar layers.

    Entries are tuples in archive order:
        ("file", name, data[, mode]), ("dir", name[, mode]),
        ("symlink", name, target), ("hardlink", name, target)
    """
    def _make(*entries: tuple, files: Optional[Dict[str, bytes]] = None) -> bytes:
        all_entries = list(entries)
        for name, data in (files or {}).items():
            all_entries.append(("file", name, data))
        return _tar_layer(all_entries)
    return _make


@pytest.fixture
def target(tmp_path):
    """Existing absolute render target."""
    root = tmp_path / "rootfs"
    root.mkdir()
    return root


@pytest.fixture
def not_gzip():
    return gzip.compress(b"this is not a tar archive at all")
