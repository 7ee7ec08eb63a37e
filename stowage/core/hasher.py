"""Hashing helpers for content addressing and download verification.

Two digests are in play:

- the **tree hash** (git tree SHA-1) identifies a directory's contents and
  is the only key into the content store;
- the **download hash** (SHA-256 of the raw bytes) pins one packaged
  download of that content.

The tree hash follows git's object format so that an artifact's identity
can be cross-checked with ``git write-tree`` on the same files.
"""

from __future__ import annotations

import hashlib
import os
import stat
from pathlib import Path

TREE_HASH_LENGTH = 40
DOWNLOAD_HASH_LENGTH = 64

_HEX_DIGITS = frozenset("0123456789abcdef")

_MODE_FILE = b"100644"
_MODE_EXECUTABLE = b"100755"
_MODE_SYMLINK = b"120000"
_MODE_TREE = b"40000"


def _normalize_hex(value: str, length: int, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    digest = value.strip().lower()
    if len(digest) != length or not set(digest) <= _HEX_DIGITS:
        raise ValueError(
            f"Invalid {label} {value!r}: expected {length} hexadecimal characters"
        )
    return digest


def normalize_tree_hash(value: str) -> str:
    """Validate a git tree SHA-1 and return it in canonical lowercase form."""
    return _normalize_hex(value, TREE_HASH_LENGTH, "tree hash")


def normalize_download_hash(value: str) -> str:
    """Validate a SHA-256 download digest and return it in lowercase form."""
    return _normalize_hex(value, DOWNLOAD_HASH_LENGTH, "download hash")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path, chunk_size: int = 1 << 20) -> str:
    """Return the SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Git tree hashing
# ---------------------------------------------------------------------------


def _git_object_digest(kind: bytes, payload: bytes) -> bytes:
    header = kind + b" " + str(len(payload)).encode("ascii") + b"\0"
    return hashlib.sha1(header + payload).digest()


def _blob_digest_of_file(path: Path) -> bytes:
    size = path.stat().st_size
    digest = hashlib.sha1(b"blob " + str(size).encode("ascii") + b"\0")
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.digest()


def _tree_sort_key(entry: tuple[bytes, bytes, bytes]) -> bytes:
    mode, name, _ = entry
    # git orders sub-trees as though their name ended with "/"
    return name + b"/" if mode == _MODE_TREE else name


def _tree_digest(directory: Path) -> bytes | None:
    """Digest of ``directory`` as a git tree, or ``None`` if it holds no files."""
    entries: list[tuple[bytes, bytes, bytes]] = []
    with os.scandir(directory) as it:
        for dirent in it:
            path = Path(dirent.path)
            name = os.fsencode(dirent.name)
            st = os.lstat(path)
            if stat.S_ISLNK(st.st_mode):
                target = os.fsencode(os.readlink(path))
                entries.append((_MODE_SYMLINK, name, _git_object_digest(b"blob", target)))
            elif stat.S_ISDIR(st.st_mode):
                sub = _tree_digest(path)
                if sub is not None:
                    entries.append((_MODE_TREE, name, sub))
            elif stat.S_ISREG(st.st_mode):
                mode = _MODE_EXECUTABLE if st.st_mode & stat.S_IXUSR else _MODE_FILE
                entries.append((mode, name, _blob_digest_of_file(path)))
            else:
                raise ValueError(f"Cannot hash special file {path}")

    if not entries:
        return None
    entries.sort(key=_tree_sort_key)
    payload = b"".join(mode + b" " + name + b"\0" + digest for mode, name, digest in entries)
    return _git_object_digest(b"tree", payload)


def tree_hash(directory: Path) -> str:
    """Compute the git tree SHA-1 of a directory.

    Empty sub-directories are skipped, since git cannot represent them; an
    entirely empty root hashes to the empty tree.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")
    digest = _tree_digest(directory)
    if digest is None:
        digest = _git_object_digest(b"tree", b"")
    return digest.hex()
