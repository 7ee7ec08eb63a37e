"""Adversarial tests — racing installs of the same content hash.

Many threads (and separate processes) install the same entry at once.
Exactly one directory must appear, it must be complete, and every caller
must see success.
"""

from __future__ import annotations

import subprocess
import sys
import textwrap
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from stowage.core.content_store import ContentStore
from stowage.core.hasher import tree_hash
from stowage.core.installer import Installer
from stowage.core.transport import TransportError

URL = "https://example.org/shared.tar.gz"


class SlowTransport:
    """Serves one payload slowly so that installers overlap."""

    def __init__(self, payload: bytes, delay: float = 0.2) -> None:
        self.payload = payload
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def fetch(self, url: str) -> bytes:
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        if url != URL:
            raise TransportError(url)
        return self.payload


class TestThreadedInstall:
    def test_single_directory_single_fetch(self, store: ContentStore, make_tarball, make_entry):
        tarball = make_tarball({f"part-{i}.bin": bytes([i]) * 4096 for i in range(20)})
        transport = SlowTransport(tarball.data)
        installer = Installer(store, transport)
        entry = make_entry(tarball, [URL])

        barrier = threading.Barrier(8)

        def worker() -> str:
            barrier.wait()
            return installer.install(entry)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: worker(), range(8)))

        assert results == [tarball.tree_hash] * 8
        assert transport.calls == 1
        assert store.list_hashes() == [tarball.tree_hash]
        assert tree_hash(store.path(tarball.tree_hash)) == tarball.tree_hash
        assert list((store.root / ".staging").iterdir()) == []

    def test_different_hashes_install_in_parallel(self, store: ContentStore, make_tarball, make_entry):
        first = make_tarball({"a": b"first"})
        second = make_tarball({"b": b"second"})

        class RoutingTransport:
            def fetch(self, url: str) -> bytes:
                time.sleep(0.5)
                return {"https://e/1": first.data, "https://e/2": second.data}[url]

        installer = Installer(store, RoutingTransport())
        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(installer.install, make_entry(first, ["https://e/1"])),
                pool.submit(installer.install, make_entry(second, ["https://e/2"])),
            ]
            hashes = sorted(f.result() for f in futures)
        elapsed = time.monotonic() - started

        assert hashes == sorted([first.tree_hash, second.tree_hash])
        assert elapsed < 0.9  # both fetches overlapped


_CHILD_SCRIPT = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    from stowage.core.content_store import ContentStore
    from stowage.core.installer import Installer
    from stowage.core.transport import DefaultTransport
    from stowage.models import DownloadDescriptor, ManifestEntry

    depot, url, sha256, tree = sys.argv[1:5]
    installer = Installer(ContentStore(Path(depot)), DefaultTransport())
    entry = ManifestEntry(
        content_hash=tree,
        downloads=(DownloadDescriptor(url=url, sha256=sha256),),
    )
    print(installer.install(entry))
    """
)


class TestMultiProcessInstall:
    def test_processes_share_one_directory(self, tmp_path: Path, make_tarball):
        tarball = make_tarball({f"blob-{i}": bytes([i]) * 65536 for i in range(16)})
        archive = tmp_path / "shared.tar.gz"
        archive.write_bytes(tarball.data)
        depot = tmp_path / "depot"

        args = [
            sys.executable, "-c", _CHILD_SCRIPT,
            str(depot), archive.as_uri(), tarball.sha256, tarball.tree_hash,
        ]
        procs = [
            subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
            for _ in range(4)
        ]
        outputs = [p.communicate(timeout=120) for p in procs]

        for proc, (out, err) in zip(procs, outputs):
            assert proc.returncode == 0, err
            assert out.strip() == tarball.tree_hash

        store = ContentStore(depot)
        assert store.list_hashes() == [tarball.tree_hash]
        assert store.verify(tarball.tree_hash)
        assert list((depot / ".staging").iterdir()) == []
