"""Shared test fixtures for Stowage."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from stowage.core.archive import pack_directory
from stowage.core.content_store import ContentStore
from stowage.core.hasher import sha256_hex, tree_hash
from stowage.core.installer import Installer
from stowage.core.resolver import ArtifactResolver
from stowage.core.transport import TransportError
from stowage.models.manifest import DownloadDescriptor, ManifestEntry
from stowage.models.platform import HostPlatform


class FakeTransport:
    """In-memory transport: URL -> bytes, recording every fetch."""

    def __init__(self, responses: dict[str, bytes] | None = None) -> None:
        self.responses: dict[str, bytes] = dict(responses or {})
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, url: str) -> bytes:
        with self._lock:
            self.calls.append(url)
        if url not in self.responses:
            raise TransportError(f"404 Not Found: {url}")
        return self.responses[url]


class Tarball:
    """A packed directory together with both of its hashes."""

    def __init__(self, data: bytes, tree: str) -> None:
        self.data = data
        self.sha256 = sha256_hex(data)
        self.tree_hash = tree

    def descriptor(self, url: str) -> DownloadDescriptor:
        return DownloadDescriptor(url=url, sha256=self.sha256)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def store(tmp_dir: Path) -> ContentStore:
    """Provide a fresh ContentStore rooted in a temp directory."""
    return ContentStore(tmp_dir / "depot", lock_timeout=30)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def installer(store: ContentStore, transport: FakeTransport) -> Installer:
    return Installer(store, transport)


@pytest.fixture
def resolver(store: ContentStore, installer: Installer) -> ArtifactResolver:
    return ArtifactResolver(store, installer)


@pytest.fixture
def make_tarball(tmp_dir: Path) -> Callable[..., Tarball]:
    """Factory fixture: pack a {relative path: bytes} mapping into a tarball."""
    counter = iter(range(1_000_000))

    def _factory(files: dict[str, bytes], executable: tuple[str, ...] = ()) -> Tarball:
        root = tmp_dir / f"src-{next(counter)}"
        root.mkdir()
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
            path.chmod(0o755 if rel in executable else 0o644)
        return Tarball(pack_directory(root), tree_hash(root))

    return _factory


@pytest.fixture
def make_entry() -> Callable[..., ManifestEntry]:
    """Factory fixture: build a ManifestEntry for a tarball and its URLs."""

    def _factory(
        tarball: Tarball,
        urls: list[str] | None = None,
        **overrides,
    ) -> ManifestEntry:
        downloads = tuple(tarball.descriptor(u) for u in (urls or []))
        defaults = {"content_hash": tarball.tree_hash, "downloads": downloads}
        defaults.update(overrides)
        return ManifestEntry(**defaults)

    return _factory


@pytest.fixture
def linux_glibc() -> HostPlatform:
    return HostPlatform(os="linux", arch="x86_64", tags={"libc": "glibc"})


@pytest.fixture
def linux_musl() -> HostPlatform:
    return HostPlatform(os="linux", arch="x86_64", tags={"libc": "musl"})


@pytest.fixture
def macos() -> HostPlatform:
    return HostPlatform(os="macos", arch="aarch64")
