"""Stowage: content-addressed artifact resolution and installation.

Binds human-readable artifact names (in an ``Artifacts.toml`` manifest) to
git tree hashes, picks the right entry for a host platform, and installs
verified downloads into a shared, deduplicated content store exactly once:
  - Manifest model with single and per-platform bindings
  - Most-specific-match platform selection
  - Download-hash and tree-hash verification with mirror fallback
  - Crash-safe, cross-process install locking with atomic publish
"""

__version__ = "0.1.0"
__description__ = "Content-addressed artifact resolution and installation"

from stowage.core.content_store import ContentStore
from stowage.core.installer import (
    AllSourcesFailed,
    InstallCancelled,
    Installer,
    NotInstallable,
)
from stowage.core.manifest_io import (
    MalformedManifest,
    NameAlreadyBound,
    load_manifest,
    write_manifest,
)
from stowage.core.resolver import ArtifactResolver, ArtifactUnresolved
from stowage.models import DownloadDescriptor, HostPlatform, Manifest, ManifestEntry

__all__ = [
    "AllSourcesFailed",
    "ArtifactResolver",
    "ArtifactUnresolved",
    "ContentStore",
    "DownloadDescriptor",
    "HostPlatform",
    "InstallCancelled",
    "Installer",
    "MalformedManifest",
    "Manifest",
    "ManifestEntry",
    "NameAlreadyBound",
    "NotInstallable",
    "load_manifest",
    "write_manifest",
    "__version__",
]
