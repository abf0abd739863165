"""Tests for the caching source fetcher."""

import io
import tarfile

import pytest
import requests

from pinix.nar import nar_hash
from pinix.store_path import make_source_store_path
from pinpkgs import fetcher as fetchermod
from pinpkgs.errors import FetchError
from pinpkgs.fetcher import Fetcher


class FakeResponse:
    def __init__(self, content, status_code=200):
        self.content = content
        self.status_code = status_code


@pytest.fixture
def http(monkeypatch):
    """Serve URLs from a dict; records every request."""
    served = {}
    requests_made = []

    def fake_get(url, headers=None, timeout=None):
        requests_made.append((url, headers["User-Agent"], timeout))
        data = served.get(url)
        if data is None:
            raise requests.ConnectionError("connection refused")
        if isinstance(data, int):
            return FakeResponse(b"", data)
        return FakeResponse(data)

    monkeypatch.setattr(fetchermod.requests, "get", fake_get)
    fake_get.served = served
    fake_get.requests = requests_made
    return fake_get


def _tarball(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def test_fetch_downloads_and_caches(tmp_path, http):
    http.served["https://example.org/c.toml"] = b"[channel]"
    f = Fetcher(tmp_path, timeout=5)
    assert f.fetch("https://example.org/c.toml") == b"[channel]"
    assert f.fetch("https://example.org/c.toml") == b"[channel]"
    assert http.requests == [("https://example.org/c.toml", "pinix", 5)]


def test_cache_survives_new_fetcher(tmp_path, http):
    http.served["https://example.org/a"] = b"a"
    Fetcher(tmp_path).fetch("https://example.org/a")
    del http.served["https://example.org/a"]
    assert Fetcher(tmp_path).fetch("https://example.org/a") == b"a"


def test_no_temporary_files_left(tmp_path, http):
    http.served["https://example.org/a"] = b"a"
    Fetcher(tmp_path).fetch("https://example.org/a")
    assert not [p for p in (tmp_path / "files").iterdir() if p.name.endswith(".tmp")]


def test_fetch_failure(tmp_path, http):
    with pytest.raises(FetchError, match="https://example.org/missing.*connection refused"):
        Fetcher(tmp_path).fetch("https://example.org/missing")
    assert not (tmp_path / "files").exists()


def test_fetch_tarball(tmp_path, http):
    url = "https://example.org/nixpkgs-mozilla.tar.gz"
    http.served[url] = _tarball({
        "nixpkgs-mozilla-master/rust-overlay.nix": b"self: super: {}",
        "nixpkgs-mozilla-master/README": b"hi",
    })
    source = Fetcher(tmp_path).fetch_tarball(url)
    assert source.path.name == "nixpkgs-mozilla-master"
    assert (source.path / "rust-overlay.nix").read_bytes() == b"self: super: {}"
    assert source.store_path == make_source_store_path("source", nar_hash(source.path))


def test_fetch_tarball_reuses_tree(tmp_path, http):
    url = "https://example.org/t.tar.gz"
    http.served[url] = _tarball({"a": b"1", "b": b"2"})
    first = Fetcher(tmp_path).fetch_tarball(url, name="t")
    second = Fetcher(tmp_path).fetch_tarball(url, name="t")
    assert first == second
    assert first.store_path.endswith("-t")
    assert len(http.requests) == 1


def test_fetch_tarball_not_a_tarball(tmp_path, http):
    url = "https://example.org/t.tar.gz"
    http.served[url] = b"not a tarball"
    with pytest.raises(FetchError, match="not a tarball"):
        Fetcher(tmp_path).fetch_tarball(url)
    assert list((tmp_path / "trees").iterdir()) == []


def test_http_error_status(tmp_path, http):
    http.served["https://example.org/gone"] = 404
    with pytest.raises(FetchError, match="HTTP 404"):
        Fetcher(tmp_path).fetch("https://example.org/gone")
