"""Content-addressed directory store.

Storage layout::

    {root}/{tree_hash}/           one published artifact per content hash
    {root}/.locks/{hash}.lock     advisory lock serialising writers of a hash
    {root}/.staging/              in-progress directories, renamed into place

A directory under its hash name is only ever produced by an atomic rename
of a fully populated staging directory, so readers see either nothing or
the complete artifact. Writers of the same hash are serialised with a
filesystem lock (``filelock``) that works across threads and processes and
is released by the OS if the holder dies.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from stowage.core.hasher import normalize_tree_hash, tree_hash

logger = logging.getLogger(__name__)

_LOCK_DIR = ".locks"
_STAGING_DIR = ".staging"
_SCRATCH_PREFIX = "scratch."


class ReservationError(RuntimeError):
    """Raised when a hash cannot be reserved or its directory published."""


def _retry_writable(func, path, exc) -> None:
    if isinstance(exc, FileNotFoundError):
        return
    if not isinstance(exc, PermissionError):
        raise exc
    os.chmod(os.path.dirname(path), stat.S_IRWXU)
    if func in (os.unlink, os.rmdir):
        func(path)
    else:
        # directory we could not list
        os.chmod(path, stat.S_IRWXU)
        remove_tree(path)


def remove_tree(path: Path) -> None:
    """Delete a directory tree, including read-only parts of it.

    Artifacts may contain directories without write permission, which
    would otherwise make their files undeletable.
    """
    shutil.rmtree(path, onexc=_retry_writable)


class WriteReservation:
    """Exclusive right to populate the directory for one content hash.

    Obtained from :meth:`ContentStore.reserve`. Content is written into
    :attr:`staging_dir` and made visible with :meth:`publish`; anything not
    published is deleted when the reservation ends.
    """

    def __init__(self, store: "ContentStore", content_hash: str) -> None:
        self._store = store
        self.content_hash = content_hash
        self._staging: Path | None = None
        self._published = False

    @property
    def already_present(self) -> bool:
        """True if another writer published this hash before we got the lock."""
        return self._store.exists(self.content_hash)

    @property
    def staging_dir(self) -> Path:
        """Fresh, uniquely named directory to populate (created on first use)."""
        if self._published:
            raise ReservationError(f"Reservation for {self.content_hash} already published")
        if self._staging is None:
            self._staging = self._store._new_staging_path(self.content_hash)
            self._staging.mkdir(parents=True)
        return self._staging

    def reset(self) -> Path:
        """Throw away staged content and start over with an empty directory."""
        self.discard()
        return self.staging_dir

    def discard(self) -> None:
        """Delete any staged content. Safe to call repeatedly."""
        if self._staging is not None:
            remove_tree(self._staging)
            self._staging = None

    def publish(self, source: Path | None = None) -> Path:
        """Atomically move staged content to its final hash-named location.

        ``source`` publishes an already populated directory instead of
        :attr:`staging_dir`; it must live on the store's filesystem.
        """
        if self._published:
            raise ReservationError(f"Reservation for {self.content_hash} already published")
        target = self._store.path(self.content_hash)
        if target.exists():
            raise ReservationError(f"Refusing to overwrite published artifact {target}")

        if source is not None:
            self.discard()
            staged = Path(source)
        else:
            staged = self.staging_dir
        try:
            os.rename(staged, target)
        except OSError as exc:
            raise ReservationError(
                f"Could not publish {self.content_hash} from {staged}: {exc}"
            ) from exc

        self._staging = None
        self._published = True
        logger.info("Published artifact %s", self.content_hash)
        return target


class ContentStore:
    """Tree-hash keyed store of immutable artifact directories.

    Parameters
    ----------
    root:
        Directory holding the artifacts. Created if missing.
    lock_timeout:
        Seconds to wait for a per-hash lock; ``-1`` waits forever.
    """

    def __init__(self, root: Path, *, lock_timeout: float = -1) -> None:
        self._root = Path(root)
        self._lock_timeout = lock_timeout
        (self._root / _LOCK_DIR).mkdir(parents=True, exist_ok=True)
        (self._root / _STAGING_DIR).mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def path(self, content_hash: str) -> Path:
        """Directory for ``content_hash``. Does not imply it exists."""
        return self._root / normalize_tree_hash(content_hash)

    def exists(self, content_hash: str) -> bool:
        """Check for a published artifact. Contents are trusted, not re-hashed."""
        return self.path(content_hash).is_dir()

    def verify(self, content_hash: str) -> bool:
        """Re-hash a published artifact and compare against its address."""
        path = self.path(content_hash)
        if not path.is_dir():
            return False
        return tree_hash(path) == normalize_tree_hash(content_hash)

    def list_hashes(self) -> list[str]:
        """Return every published content hash, sorted."""
        hashes: list[str] = []
        for child in self._root.iterdir():
            if child.name.startswith(".") or not child.is_dir():
                continue
            try:
                hashes.append(normalize_tree_hash(child.name))
            except ValueError:
                continue
        return sorted(hashes)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _lock_for(self, content_hash: str, timeout: float | None = None) -> FileLock:
        return FileLock(
            self._root / _LOCK_DIR / f"{content_hash}.lock",
            timeout=self._lock_timeout if timeout is None else timeout,
        )

    def _new_staging_path(self, prefix: str) -> Path:
        return self._root / _STAGING_DIR / f"{prefix}.{uuid.uuid4().hex}"

    def make_scratch_dir(self) -> Path:
        """Create an empty working directory on the store's filesystem.

        Used for content whose hash is not known until it has been written.
        """
        path = self._new_staging_path(_SCRATCH_PREFIX.rstrip("."))
        path.mkdir(parents=True)
        return path

    @contextmanager
    def reserve(self, content_hash: str) -> Iterator[WriteReservation]:
        """Hold the exclusive write lock for ``content_hash``.

        Concurrent reservations of the same hash queue up behind each other;
        different hashes do not interact. Callers should check
        :attr:`WriteReservation.already_present` once inside, since a
        previous holder may have published the content meanwhile.
        """
        digest = normalize_tree_hash(content_hash)
        lock = self._lock_for(digest)
        started = time.monotonic()
        try:
            lock.acquire()
        except Timeout as exc:
            raise ReservationError(
                f"Timed out after {self._lock_timeout}s waiting for lock on {digest}"
            ) from exc
        logger.debug(
            "Reserved %s after %.3fs", digest, time.monotonic() - started
        )

        reservation = WriteReservation(self, digest)
        try:
            yield reservation
        finally:
            reservation.discard()
            lock.release()

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, content_hash: str) -> bool:
        """Delete a published artifact. Returns False if it was not installed.

        The directory is first renamed into staging so that it disappears
        atomically, then deleted.
        """
        digest = normalize_tree_hash(content_hash)
        with self.reserve(digest):
            target = self.path(digest)
            if not target.is_dir():
                return False
            doomed = self._new_staging_path(f"{digest}.removed")
            os.rename(target, doomed)
        remove_tree(doomed)
        logger.info("Removed artifact %s", digest)
        return True

    def clean_staging(self, scratch_max_age: float = 86400.0) -> list[Path]:
        """Delete staging leftovers of writers that died mid-install.

        A hash's staging directories are only removed when its lock can be
        taken immediately, so live installs are left alone. Scratch
        directories are removed once older than ``scratch_max_age`` seconds.
        """
        removed: list[Path] = []
        now = time.time()
        for child in sorted((self._root / _STAGING_DIR).iterdir()):
            if child.name.startswith(_SCRATCH_PREFIX):
                if now - child.stat().st_mtime >= scratch_max_age:
                    remove_tree(child)
                    removed.append(child)
                continue

            digest = child.name.split(".", 1)[0]
            try:
                digest = normalize_tree_hash(digest)
            except ValueError:
                continue
            lock = self._lock_for(digest, timeout=0)
            try:
                lock.acquire()
            except Timeout:
                logger.debug("Skipping %s: install in progress", child)
                continue
            try:
                remove_tree(child)
                removed.append(child)
            finally:
                lock.release()

        if removed:
            logger.info("Cleaned %d stale staging directories", len(removed))
        return removed
