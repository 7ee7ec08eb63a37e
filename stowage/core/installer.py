"""Artifact installation: download, verify, extract, publish.

Every install is checked twice. The raw download must match the
descriptor's SHA-256 before anything is unpacked, and the unpacked tree
must hash to the entry's git tree SHA-1 before it is published. A source
that fails either check (or cannot be fetched or unpacked) is recorded and
the next descriptor is tried. Nothing becomes visible in the store unless
one source passes both checks.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict

from stowage.core.archive import ArchiveError, extract_archive
from stowage.core.content_store import ContentStore, remove_tree
from stowage.core.hasher import sha256_hex, tree_hash
from stowage.core.transport import Transport, TransportError
from stowage.models.manifest import DownloadDescriptor, ManifestEntry

logger = logging.getLogger(__name__)

FailureKind = Literal["transport", "download_hash", "archive", "tree_hash"]


class SourceFailure(BaseModel):
    """Why one download descriptor could not provide the artifact."""

    model_config = ConfigDict(frozen=True)

    url: str
    kind: FailureKind
    reason: str


class InstallResult(BaseModel):
    """Outcome of a successful install, with the failures absorbed on the way."""

    model_config = ConfigDict(frozen=True)

    content_hash: str
    path: Path
    fetched: bool  # False when the artifact was already present
    source_url: str | None = None
    failures: tuple[SourceFailure, ...] = ()


class NotInstallable(RuntimeError):
    """Raised for entries that list no download sources."""

    def __init__(self, content_hash: str) -> None:
        super().__init__(
            f"Artifact {content_hash} is not installed and has no download sources"
        )
        self.content_hash = content_hash


class SourceVerificationFailed(RuntimeError):
    """One download source produced bytes or a tree with the wrong hash."""

    def __init__(self, failure: SourceFailure) -> None:
        super().__init__(f"{failure.url}: {failure.reason}")
        self.failure = failure


class AllSourcesFailed(RuntimeError):
    """Every download source of an entry failed."""

    def __init__(self, content_hash: str, failures: tuple[SourceFailure, ...]) -> None:
        details = "; ".join(f"{f.url} ({f.kind}): {f.reason}" for f in failures)
        super().__init__(
            f"Could not install {content_hash} from any of {len(failures)} source(s): {details}"
        )
        self.content_hash = content_hash
        self.failures = failures


class InstallCancelled(RuntimeError):
    """Raised when an install is cancelled part-way through."""


class Installer:
    """Installs manifest entries into a :class:`ContentStore`.

    Parameters
    ----------
    store:
        Destination store.
    transport:
        Used to fetch download URLs.
    """

    def __init__(self, store: ContentStore, transport: Transport) -> None:
        self._store = store
        self._transport = transport

    @property
    def store(self) -> ContentStore:
        return self._store

    # ------------------------------------------------------------------
    # Install from download sources
    # ------------------------------------------------------------------

    def install(
        self, entry: ManifestEntry, *, cancel: threading.Event | None = None
    ) -> str:
        """Make sure ``entry``'s content is in the store and return its hash."""
        return self.install_with_report(entry, cancel=cancel).content_hash

    def install_with_report(
        self, entry: ManifestEntry, *, cancel: threading.Event | None = None
    ) -> InstallResult:
        """Like :meth:`install`, also reporting which sources were tried."""
        content_hash = entry.content_hash
        if self._store.exists(content_hash):
            return InstallResult(
                content_hash=content_hash,
                path=self._store.path(content_hash),
                fetched=False,
            )
        if not entry.is_installable:
            raise NotInstallable(content_hash)

        def checkpoint() -> None:
            if cancel is not None and cancel.is_set():
                raise InstallCancelled(f"Install of {content_hash} was cancelled")

        failures: list[SourceFailure] = []
        with self._store.reserve(content_hash) as reservation:
            if reservation.already_present:
                logger.debug("%s was installed while waiting for its lock", content_hash)
                return InstallResult(
                    content_hash=content_hash,
                    path=self._store.path(content_hash),
                    fetched=False,
                )

            for descriptor in entry.downloads:
                checkpoint()
                staging = reservation.reset()
                try:
                    self._try_source(descriptor, content_hash, staging, checkpoint)
                except SourceVerificationFailed as exc:
                    failures.append(exc.failure)
                    logger.warning(
                        "Source %s rejected for %s (%s): %s",
                        descriptor.url,
                        content_hash,
                        exc.failure.kind,
                        exc.failure.reason,
                    )
                    continue

                path = reservation.publish()
                return InstallResult(
                    content_hash=content_hash,
                    path=path,
                    fetched=True,
                    source_url=descriptor.url,
                    failures=tuple(failures),
                )

        raise AllSourcesFailed(content_hash, tuple(failures))

    def _try_source(
        self,
        descriptor: DownloadDescriptor,
        content_hash: str,
        staging: Path,
        checkpoint: Callable[[], None],
    ) -> None:
        """Fetch, check and unpack one source into ``staging``.

        Every per-source problem surfaces as :class:`SourceVerificationFailed`.
        """
        url = descriptor.url
        try:
            data = self._transport.fetch(url)
        except TransportError as exc:
            raise SourceVerificationFailed(
                SourceFailure(url=url, kind="transport", reason=str(exc))
            ) from exc
        checkpoint()

        actual = sha256_hex(data)
        if actual != descriptor.sha256:
            raise SourceVerificationFailed(
                SourceFailure(
                    url=url,
                    kind="download_hash",
                    reason=f"expected sha256 {descriptor.sha256}, got {actual}",
                )
            )

        try:
            extract_archive(data, staging, checkpoint=checkpoint)
        except ArchiveError as exc:
            raise SourceVerificationFailed(
                SourceFailure(url=url, kind="archive", reason=str(exc))
            ) from exc

        unpacked = tree_hash(staging)
        if unpacked != content_hash:
            raise SourceVerificationFailed(
                SourceFailure(
                    url=url,
                    kind="tree_hash",
                    reason=f"archive unpacked to tree {unpacked}, expected {content_hash}",
                )
            )

    # ------------------------------------------------------------------
    # Create from local content
    # ------------------------------------------------------------------

    def create(self, populate: Callable[[Path], None]) -> str:
        """Build a new artifact by letting ``populate`` fill a directory.

        The directory's tree hash becomes the artifact's identity. If that
        content is already stored, the freshly written copy is discarded.
        """
        scratch = self._store.make_scratch_dir()
        try:
            populate(scratch)
            content_hash = tree_hash(scratch)
            with self._store.reserve(content_hash) as reservation:
                if reservation.already_present:
                    logger.debug("Created content %s already stored", content_hash)
                else:
                    reservation.publish(scratch)
        finally:
            if scratch.exists():
                remove_tree(scratch)
        return content_hash
