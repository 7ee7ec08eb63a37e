"""Stowage data models — all Pydantic v2, all frozen (immutable)."""

from stowage.models.manifest import (
    Binding,
    DownloadDescriptor,
    Manifest,
    ManifestEntry,
    PlatformBinding,
    SingleBinding,
)
from stowage.models.platform import HostPlatform

__all__ = [
    # manifest
    "Binding",
    "DownloadDescriptor",
    "Manifest",
    "ManifestEntry",
    "PlatformBinding",
    "SingleBinding",
    # platform
    "HostPlatform",
]
