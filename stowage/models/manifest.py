"""Manifest data model: names bound to content hashes and download sources.

A manifest maps each artifact name to a :data:`Binding`, which is either a
:class:`SingleBinding` (one platform-independent entry) or a
:class:`PlatformBinding` (an ordered list of platform-constrained entries
that is narrowed down at lookup time).
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stowage.core.hasher import normalize_download_hash, normalize_tree_hash

# Keys with a fixed meaning in manifest tables; all others are platform constraints.
TREE_HASH_KEY = "git-tree-sha1"
LAZY_KEY = "lazy"
DOWNLOAD_KEY = "download"
HASH_ALIAS = "hash"  # accepted on input, never written
RESERVED_KEYS = frozenset({TREE_HASH_KEY, LAZY_KEY, DOWNLOAD_KEY, HASH_ALIAS})


class DownloadDescriptor(BaseModel):
    """One source for an artifact's packaged form."""

    model_config = ConfigDict(frozen=True)

    url: str
    sha256: str  # hash of the raw downloaded bytes

    @field_validator("url")
    @classmethod
    def _url_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("download url must not be empty")
        return value

    @field_validator("sha256")
    @classmethod
    def _normalize_sha256(cls, value: str) -> str:
        return normalize_download_hash(value)


class ManifestEntry(BaseModel):
    """A content hash plus the ways to obtain it.

    ``platform`` is empty for platform-independent entries. An entry with
    no ``downloads`` cannot be installed; its content has to be produced
    locally (see :meth:`stowage.core.installer.Installer.create`).
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str  # git tree SHA-1
    lazy: bool = False
    platform: dict[str, str] = Field(default_factory=dict)
    downloads: tuple[DownloadDescriptor, ...] = ()

    @field_validator("content_hash")
    @classmethod
    def _normalize_content_hash(cls, value: str) -> str:
        return normalize_tree_hash(value)

    @field_validator("platform")
    @classmethod
    def _check_platform_keys(cls, value: dict[str, str]) -> dict[str, str]:
        for key, tag in value.items():
            if key in RESERVED_KEYS:
                raise ValueError(f"{key!r} cannot be used as a platform constraint")
            if not key or not tag:
                raise ValueError("platform constraints need a non-empty key and value")
        return value

    @property
    def is_installable(self) -> bool:
        return bool(self.downloads)

    @property
    def specificity(self) -> int:
        """Number of platform constraints this entry declares."""
        return len(self.platform)


class SingleBinding(BaseModel):
    """A name bound to one platform-independent entry."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["single"] = "single"
    entry: ManifestEntry

    @model_validator(mode="after")
    def _no_constraints(self) -> "SingleBinding":
        if self.entry.platform:
            raise ValueError("a single binding cannot carry platform constraints")
        return self

    @property
    def entries(self) -> tuple[ManifestEntry, ...]:
        return (self.entry,)


class PlatformBinding(BaseModel):
    """A name bound to several entries, one per platform.

    Entry order is significant: it breaks ties between equally specific
    matches.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["platform"] = "platform"
    entries: tuple[ManifestEntry, ...]

    @field_validator("entries")
    @classmethod
    def _not_empty(cls, value: tuple[ManifestEntry, ...]) -> tuple[ManifestEntry, ...]:
        if not value:
            raise ValueError("a platform binding needs at least one entry")
        return value


Binding = Annotated[Union[SingleBinding, PlatformBinding], Field(discriminator="kind")]


class Manifest(BaseModel):
    """Ordered mapping of artifact name to binding.

    Instances are immutable; mutation helpers in
    :mod:`stowage.core.manifest_io` return new manifests.
    """

    model_config = ConfigDict(frozen=True)

    bindings: dict[str, Binding] = Field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.bindings

    def names(self) -> list[str]:
        return list(self.bindings)
