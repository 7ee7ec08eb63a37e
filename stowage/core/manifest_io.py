"""Reading, writing and mutating artifact manifests (``Artifacts.toml``).

File format::

    [dataset]
    git-tree-sha1 = "43563e7631a7eafae1f9f8d9d332e3de44ad7239"
    lazy = true

    [[dataset.download]]
    url = "https://example.org/dataset.tar.gz"
    sha256 = "..."

    [[toolchain]]
    git-tree-sha1 = "..."
    os = "linux"
    libc = "musl"

    [[toolchain.download]]
    url = "..."
    sha256 = "..."

A table binds a name to one platform-independent entry; an array of tables
binds it to platform-constrained entries. Every key other than
``git-tree-sha1``, ``lazy`` and ``download`` is a platform constraint.

Serialization is canonical (sorted names, fixed key order) so that the same
logical manifest always produces byte-identical files.
"""

from __future__ import annotations

import logging
import os
import tempfile
import tomllib
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import ValidationError

from stowage.models.manifest import (
    DOWNLOAD_KEY,
    HASH_ALIAS,
    LAZY_KEY,
    RESERVED_KEYS,
    TREE_HASH_KEY,
    Binding,
    DownloadDescriptor,
    Manifest,
    ManifestEntry,
    PlatformBinding,
    SingleBinding,
)

logger = logging.getLogger(__name__)


class MalformedManifest(ValueError):
    """Raised when a manifest document is structurally invalid."""


class NameAlreadyBound(RuntimeError):
    """Raised when binding a name that already points at different content."""

    def __init__(self, name: str, existing: str, requested: str) -> None:
        super().__init__(
            f"Artifact {name!r} is already bound to {existing}; "
            f"refusing to rebind to {requested} without overwrite"
        )
        self.name = name
        self.existing = existing
        self.requested = requested


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_download(name: str, raw: Any) -> DownloadDescriptor:
    if not isinstance(raw, dict):
        raise MalformedManifest(f"{name}: download entries must be tables")
    unknown = set(raw) - {"url", "sha256", HASH_ALIAS}
    if unknown:
        raise MalformedManifest(f"{name}: unknown download keys {sorted(unknown)}")
    if "sha256" in raw and HASH_ALIAS in raw:
        raise MalformedManifest(f"{name}: download has both 'sha256' and 'hash'")
    digest = raw.get("sha256", raw.get(HASH_ALIAS))
    if "url" not in raw or digest is None:
        raise MalformedManifest(f"{name}: download entries need 'url' and 'sha256'")
    try:
        return DownloadDescriptor(url=raw["url"], sha256=digest)
    except ValidationError as exc:
        raise MalformedManifest(f"{name}: invalid download: {exc}") from exc


def _parse_entry(name: str, raw: Any, *, platform_dependent: bool) -> ManifestEntry:
    if not isinstance(raw, dict):
        raise MalformedManifest(f"{name}: expected a table, got {type(raw).__name__}")

    if TREE_HASH_KEY in raw and HASH_ALIAS in raw:
        raise MalformedManifest(f"{name}: has both '{TREE_HASH_KEY}' and 'hash'")
    content_hash = raw.get(TREE_HASH_KEY, raw.get(HASH_ALIAS))
    if content_hash is None:
        raise MalformedManifest(f"{name}: missing required '{TREE_HASH_KEY}'")

    lazy = raw.get(LAZY_KEY, False)
    if not isinstance(lazy, bool):
        raise MalformedManifest(f"{name}: 'lazy' must be a boolean")

    downloads_raw = raw.get(DOWNLOAD_KEY, [])
    if isinstance(downloads_raw, dict):
        downloads_raw = [downloads_raw]
    if not isinstance(downloads_raw, list):
        raise MalformedManifest(f"{name}: 'download' must be an array of tables")
    downloads = tuple(_parse_download(name, d) for d in downloads_raw)

    constraints = {k: v for k, v in raw.items() if k not in RESERVED_KEYS}
    if constraints and not platform_dependent:
        raise MalformedManifest(
            f"{name}: unknown keys {sorted(constraints)} "
            "(platform constraints need an array of tables)"
        )
    for key, value in constraints.items():
        if not isinstance(value, str):
            raise MalformedManifest(
                f"{name}: platform constraint {key!r} must be a string"
            )

    try:
        return ManifestEntry(
            content_hash=content_hash,
            lazy=lazy,
            platform=constraints,
            downloads=downloads,
        )
    except ValidationError as exc:
        raise MalformedManifest(f"{name}: {exc}") from exc


def _parse_binding(name: str, raw: Any) -> Binding:
    if isinstance(raw, dict):
        return SingleBinding(entry=_parse_entry(name, raw, platform_dependent=False))
    if isinstance(raw, list):
        if not raw:
            raise MalformedManifest(f"{name}: platform binding has no entries")
        entries = tuple(_parse_entry(name, item, platform_dependent=True) for item in raw)
        seen: set[tuple[tuple[str, str], ...]] = set()
        for entry in entries:
            key = tuple(sorted(entry.platform.items()))
            if key in seen:
                raise MalformedManifest(
                    f"{name}: duplicate entry for platform {dict(key)}"
                )
            seen.add(key)
        return PlatformBinding(entries=entries)
    raise MalformedManifest(f"{name}: expected a table or array of tables")


def parse(data: bytes | str) -> Manifest:
    """Parse manifest text into a :class:`Manifest`.

    Raises
    ------
    MalformedManifest
        On TOML syntax errors, bad encodings, missing tree hashes, invalid
        hash strings, or values of the wrong shape.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedManifest(f"Manifest is not valid UTF-8: {exc}") from exc
    try:
        document = tomllib.loads(data)
    except tomllib.TOMLDecodeError as exc:
        raise MalformedManifest(f"Manifest is not valid TOML: {exc}") from exc

    bindings = {name: _parse_binding(name, raw) for name, raw in document.items()}
    return Manifest(bindings=bindings)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _entry_to_table(entry: ManifestEntry) -> dict[str, Any]:
    table: dict[str, Any] = {TREE_HASH_KEY: entry.content_hash}
    if entry.lazy:
        table[LAZY_KEY] = True
    for key in sorted(entry.platform):
        table[key] = entry.platform[key]
    if entry.downloads:
        table[DOWNLOAD_KEY] = [
            {"url": d.url, "sha256": d.sha256} for d in entry.downloads
        ]
    return table


def to_document(manifest: Manifest) -> dict[str, Any]:
    """Plain-dict form of a manifest, in canonical key order."""
    document: dict[str, Any] = {}
    for name in sorted(manifest.bindings):
        binding = manifest.bindings[name]
        if isinstance(binding, SingleBinding):
            document[name] = _entry_to_table(binding.entry)
        else:
            document[name] = [_entry_to_table(e) for e in binding.entries]
    return document


def serialize(manifest: Manifest) -> bytes:
    """Render a manifest as canonical TOML bytes."""
    return tomli_w.dumps(to_document(manifest)).encode("utf-8")


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def load_manifest(path: Path) -> Manifest:
    """Read a manifest file. A missing file is an empty manifest."""
    path = Path(path)
    if not path.exists():
        return Manifest()
    return parse(path.read_bytes())


def write_manifest(path: Path, manifest: Manifest) -> Path:
    """Rewrite a manifest file atomically.

    The full document is written to a temporary file in the same directory
    and renamed over the target, so a crash never leaves a partial file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = serialize(manifest)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Wrote manifest %s (%d bindings)", path, len(manifest.bindings))
    return path


# ---------------------------------------------------------------------------
# Lookup and mutation
# ---------------------------------------------------------------------------


def lookup(manifest: Manifest, name: str) -> Binding | None:
    """Return the binding for ``name``, or ``None`` if it is not bound."""
    return manifest.bindings.get(name)


def _describe(binding: Binding) -> str:
    hashes = [e.content_hash for e in binding.entries]
    return hashes[0] if len(hashes) == 1 else f"[{', '.join(hashes)}]"


def set_binding(
    manifest: Manifest,
    name: str,
    binding: Binding,
    *,
    overwrite: bool = False,
) -> Manifest:
    """Return a copy of ``manifest`` with ``name`` bound to ``binding``.

    Rebinding a name to an identical binding is a no-op. Rebinding it to
    anything else requires ``overwrite``.
    """
    existing = manifest.bindings.get(name)
    if existing == binding:
        return manifest
    if existing is not None and not overwrite:
        raise NameAlreadyBound(name, _describe(existing), _describe(binding))

    bindings = dict(manifest.bindings)
    bindings[name] = binding
    logger.info("Bound artifact %r to %s", name, _describe(binding))
    return manifest.model_copy(update={"bindings": bindings})


def bind(
    manifest: Manifest,
    name: str,
    content_hash: str,
    *,
    downloads: Iterable[DownloadDescriptor] = (),
    lazy: bool = False,
    platform: Mapping[str, str] | None = None,
    overwrite: bool = False,
) -> Manifest:
    """Bind ``name`` to ``content_hash``.

    Without ``platform`` the name gets a single platform-independent entry;
    binding the hash it already has is a no-op. With ``platform`` the entry
    is added to (or, if constraints match, replaces one in) a platform
    binding for the name.
    """
    entry = ManifestEntry(
        content_hash=content_hash,
        lazy=lazy,
        platform=dict(platform or {}),
        downloads=tuple(downloads),
    )
    existing = manifest.bindings.get(name)

    if not entry.platform:
        if (
            isinstance(existing, SingleBinding)
            and existing.entry.content_hash == entry.content_hash
            and not overwrite
        ):
            return manifest
        return set_binding(manifest, name, SingleBinding(entry=entry), overwrite=overwrite)

    if existing is None:
        return set_binding(manifest, name, PlatformBinding(entries=(entry,)))
    if isinstance(existing, SingleBinding):
        if not overwrite:
            raise NameAlreadyBound(name, _describe(existing), entry.content_hash)
        return set_binding(
            manifest, name, PlatformBinding(entries=(entry,)), overwrite=True
        )

    entries = list(existing.entries)
    for index, current in enumerate(entries):
        if current.platform != entry.platform:
            continue
        if current.content_hash == entry.content_hash and not overwrite:
            return manifest
        if not overwrite:
            raise NameAlreadyBound(name, current.content_hash, entry.content_hash)
        entries[index] = entry
        break
    else:
        entries.append(entry)
    return set_binding(
        manifest, name, PlatformBinding(entries=tuple(entries)), overwrite=True
    )


def unbind(
    manifest: Manifest,
    name: str,
    *,
    platform: Mapping[str, str] | None = None,
) -> Manifest:
    """Remove ``name`` (or only its entry for ``platform``) from a manifest.

    Unknown names and platforms are left alone.
    """
    existing = manifest.bindings.get(name)
    if existing is None:
        return manifest

    bindings = dict(manifest.bindings)
    if platform is None:
        del bindings[name]
    else:
        if not isinstance(existing, PlatformBinding):
            return manifest
        wanted = dict(platform)
        remaining = tuple(e for e in existing.entries if e.platform != wanted)
        if len(remaining) == len(existing.entries):
            return manifest
        if remaining:
            bindings[name] = PlatformBinding(entries=remaining)
        else:
            del bindings[name]
    logger.info("Unbound artifact %r", name)
    return manifest.model_copy(update={"bindings": bindings})
