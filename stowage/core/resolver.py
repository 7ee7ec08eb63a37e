"""Public resolution API.

Resolving and installing are separate steps on purpose:
:meth:`ArtifactResolver.artifact_hash` and
:meth:`ArtifactResolver.artifact_path` never touch the network, while
:meth:`ArtifactResolver.ensure_installed` may download. Callers that want
"install on first use" call both.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Literal

from stowage.config import StowageConfig
from stowage.core import manifest_io
from stowage.core.content_store import ContentStore
from stowage.core.installer import Installer
from stowage.core.platform_matcher import select_binding
from stowage.core.transport import DefaultTransport, Transport
from stowage.models.manifest import DownloadDescriptor, Manifest, ManifestEntry
from stowage.models.platform import HostPlatform

logger = logging.getLogger(__name__)


class ArtifactUnresolved(LookupError):
    """Raised by :meth:`ArtifactResolver.ensure_installed` for unusable names.

    ``reason`` is ``"unbound"`` when the manifest has no such name and
    ``"platform"`` when no entry matches the host.
    """

    def __init__(self, name: str, reason: Literal["unbound", "platform"], host: HostPlatform) -> None:
        if reason == "unbound":
            message = f"Artifact {name!r} is not bound in the manifest"
        else:
            message = f"Artifact {name!r} has no entry for platform {host.as_tags()}"
        super().__init__(message)
        self.name = name
        self.reason = reason
        self.host = host


class ArtifactResolver:
    """Look up, install and bind artifacts against one content store.

    Parameters
    ----------
    store:
        The content store artifacts live in.
    installer:
        Installer to use; defaults to one over :class:`DefaultTransport`.
    """

    def __init__(self, store: ContentStore, installer: Installer | None = None) -> None:
        self.store = store
        self._owned_transport: DefaultTransport | None = None
        if installer is None:
            self._owned_transport = DefaultTransport()
            installer = Installer(store, self._owned_transport)
        self.installer = installer

    @classmethod
    def from_config(
        cls,
        config: StowageConfig | None = None,
        *,
        transport: Transport | None = None,
    ) -> "ArtifactResolver":
        """Build a resolver from settings (``STOWAGE_*`` env vars by default)."""
        cfg = config or StowageConfig()
        store = ContentStore(cfg.depot_path, lock_timeout=cfg.lock_timeout_seconds)
        if transport is not None:
            return cls(store, Installer(store, transport))

        owned = DefaultTransport(
            timeout=cfg.download_timeout_seconds,
            user_agent=cfg.user_agent,
            max_bytes=cfg.max_download_bytes,
        )
        resolver = cls(store, Installer(store, owned))
        resolver._owned_transport = owned
        return resolver

    def close(self) -> None:
        """Close the download transport if this resolver created it."""
        if self._owned_transport is not None:
            self._owned_transport.close()
            self._owned_transport = None

    def __enter__(self) -> "ArtifactResolver":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Resolution (no I/O beyond the store's directory listing)
    # ------------------------------------------------------------------

    def artifact_meta(
        self, name: str, manifest: Manifest, host: HostPlatform
    ) -> ManifestEntry | None:
        """The manifest entry ``name`` resolves to on ``host``, if any."""
        binding = manifest_io.lookup(manifest, name)
        if binding is None:
            return None
        return select_binding(binding, host)

    def artifact_hash(self, name: str, manifest: Manifest, host: HostPlatform) -> str | None:
        """Content hash for ``name`` on ``host``; ``None`` if unbound or unresolved."""
        entry = self.artifact_meta(name, manifest, host)
        return entry.content_hash if entry is not None else None

    def artifact_exists(self, content_hash: str) -> bool:
        return self.store.exists(content_hash)

    def artifact_path(self, content_hash: str) -> Path:
        """Where ``content_hash`` lives. Never installs anything."""
        return self.store.path(content_hash)

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def create_artifact(self, populate: Callable[[Path], None]) -> str:
        """Store whatever ``populate`` writes into a fresh directory."""
        return self.installer.create(populate)

    def ensure_installed(
        self,
        name: str,
        manifest: Manifest,
        host: HostPlatform,
        *,
        cancel: threading.Event | None = None,
    ) -> Path:
        """Resolve ``name`` and install it if needed; returns its directory.

        Lazy and eager bindings are both installed here; laziness only
        exempts a binding from :meth:`install_all`.
        """
        binding = manifest_io.lookup(manifest, name)
        if binding is None:
            raise ArtifactUnresolved(name, "unbound", host)
        entry = select_binding(binding, host)
        if entry is None:
            raise ArtifactUnresolved(name, "platform", host)

        content_hash = self.installer.install(entry, cancel=cancel)
        return self.store.path(content_hash)

    def install_all(
        self,
        manifest: Manifest,
        host: HostPlatform,
        *,
        include_lazy: bool = False,
        cancel: threading.Event | None = None,
    ) -> dict[str, Path]:
        """Install every binding that resolves on ``host``.

        Lazy bindings are skipped unless ``include_lazy`` is set, as are
        names with no entry for this host. Returns name -> directory.
        """
        installed: dict[str, Path] = {}
        for name in manifest.names():
            entry = self.artifact_meta(name, manifest, host)
            if entry is None:
                logger.debug("Skipping %r: no entry for %s", name, host.as_tags())
                continue
            if entry.lazy and not include_lazy:
                logger.debug("Skipping lazy artifact %r", name)
                continue
            content_hash = self.installer.install(entry, cancel=cancel)
            installed[name] = self.store.path(content_hash)
        return installed

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind_artifact(
        self,
        name: str,
        content_hash: str,
        manifest: Manifest,
        *,
        overwrite: bool = False,
        downloads: Iterable[DownloadDescriptor] = (),
        lazy: bool = False,
        platform: Mapping[str, str] | None = None,
    ) -> Manifest:
        """Return ``manifest`` with ``name`` bound to ``content_hash``.

        The store is not consulted; binding content that is not installed
        yet is allowed.
        """
        return manifest_io.bind(
            manifest,
            name,
            content_hash,
            downloads=downloads,
            lazy=lazy,
            platform=platform,
            overwrite=overwrite,
        )

    def unbind_artifact(
        self,
        name: str,
        manifest: Manifest,
        *,
        platform: Mapping[str, str] | None = None,
    ) -> Manifest:
        return manifest_io.unbind(manifest, name, platform=platform)
