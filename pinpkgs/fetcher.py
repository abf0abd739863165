"""Remote source fetcher with an on-disk cache.

The equivalent of ``builtins.fetchurl`` / ``builtins.fetchTarball`` at
evaluation time: download once, keep the bytes in the cache, and reuse
them for every later session.

Cache entries are keyed by the sha256 of the URL. They are written to a
temporary file in the same directory and moved into place with
os.replace(), so two sessions fetching the same URL at once never see a
torn entry; the last writer wins. A fetch is tried once. A hung
connection blocks until ``timeout`` (if any) expires.
"""

import io
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import requests

from pinix.hashing import sha256_hex
from pinix.nar import nar_hash
from pinix.store_path import make_source_store_path
from pinpkgs.errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "pinix"


@dataclass(frozen=True)
class FetchedSource:
    path: Path        # unpacked tree in the cache
    store_path: str   # where Nix would put it ("source" path of its NAR hash)


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _single_root(directory: Path) -> Path:
    """fetchTarball strips a lone top-level directory."""
    entries = list(directory.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return directory


class Fetcher:
    def __init__(self, cache_dir: str | Path, timeout: float | None = None):
        self.cache_dir = Path(cache_dir)
        self.timeout = timeout

    def _key(self, url: str) -> str:
        return sha256_hex(url.encode())

    def _download(self, url: str) -> bytes:
        logger.debug("GET %s", url)
        try:
            response = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(url, e) from e
        if response.status_code != 200:
            raise FetchError(url, f"HTTP {response.status_code}")
        return response.content

    def fetch(self, url: str) -> bytes:
        """Bytes behind ``url``, from the cache when present."""
        entry = self.cache_dir / "files" / self._key(url)
        if entry.is_file():
            logger.debug("cache hit for %s", url)
            return entry.read_bytes()
        data = self._download(url)
        entry.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(entry, data)
        logger.debug("cached %s (%d bytes)", url, len(data))
        return data

    def fetch_tarball(self, url: str, name: str = "source") -> FetchedSource:
        """Fetch and unpack a tarball, returning its tree and store path."""
        unpacked = self.cache_dir / "trees" / self._key(url)
        if not unpacked.is_dir():
            data = self.fetch(url)
            unpacked.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(dir=unpacked.parent, prefix=unpacked.name + "."))
            try:
                try:
                    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
                        tar.extractall(staging, filter="data")
                except tarfile.TarError as e:
                    raise FetchError(url, f"not a tarball: {e}") from e
                try:
                    os.replace(staging, unpacked)
                except OSError:
                    # Another session unpacked it first.
                    if not unpacked.is_dir():
                        raise
            finally:
                if staging.exists():
                    shutil.rmtree(staging)
        root = _single_root(unpacked)
        return FetchedSource(root, make_source_store_path(name, nar_hash(root)))
