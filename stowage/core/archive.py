"""Tarball extraction and creation.

Extraction goes through :mod:`tarfile`'s ``"data"`` filter, which refuses
absolute paths, ``..`` escapes, links pointing outside the destination and
device files. Packing is deterministic (sorted members, zeroed owners and
timestamps) so the same tree always yields the same tarball and SHA-256.
"""

from __future__ import annotations

import gzip
import io
import os
import tarfile
import zlib
from collections.abc import Callable, Iterator
from pathlib import Path

from stowage.core.hasher import sha256_hex


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be read or safely extracted."""


def extract_archive(
    data: bytes,
    target: Path,
    *,
    checkpoint: Callable[[], None] | None = None,
) -> None:
    """Unpack a (possibly compressed) tarball into ``target``.

    ``checkpoint`` is called before every member; raising from it aborts
    the extraction with that exception untouched.
    """
    target = Path(target)
    target.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            # extractall applies directory modes only after every member is written
            tar.extractall(target, members=_checked(tar, checkpoint), filter="data")
    except (tarfile.TarError, EOFError, OSError, ValueError, zlib.error) as exc:
        raise ArchiveError(f"Cannot extract archive: {exc}") from exc


def _checked(
    tar: tarfile.TarFile, checkpoint: Callable[[], None] | None
) -> Iterator[tarfile.TarInfo]:
    for member in tar:
        if checkpoint is not None:
            checkpoint()
        yield member


def _normalize_member(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mtime = 0
    if info.isdir():
        info.mode = 0o755
    elif info.isfile():
        info.mode = 0o755 if info.mode & 0o100 else 0o644
    return info


def pack_directory(source: Path) -> bytes:
    """Return a deterministic ``.tar.gz`` of the contents of ``source``."""
    source = Path(source)
    if not source.is_dir():
        raise NotADirectoryError(f"Not a directory: {source}")

    buffer = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=buffer, mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for root, dirs, files in os.walk(source):
                dirs.sort()
                root_path = Path(root)
                names = sorted(dirs + files)
                for name in names:
                    path = root_path / name
                    arcname = path.relative_to(source).as_posix()
                    tar.add(path, arcname=arcname, recursive=False, filter=_normalize_member)
    return buffer.getvalue()


def archive_directory(source: Path, destination: Path) -> str:
    """Write a deterministic tarball of ``source`` and return its SHA-256."""
    payload = pack_directory(source)
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(payload)
    return sha256_hex(payload)
