"""Smoke test — create, publish, bind and reinstall an artifact end to end.

Usage:
    python demo_install.py
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from stowage.config import StowageConfig, configure_logging
from stowage.core.archive import archive_directory
from stowage.core.manifest_io import load_manifest, write_manifest
from stowage.core.resolver import ArtifactResolver
from stowage.models import DownloadDescriptor, HostPlatform


def main() -> None:
    """Run the artifact lifecycle against a throwaway depot."""
    with tempfile.TemporaryDirectory() as tmp:
        work = Path(tmp)
        cfg = StowageConfig(depot_path=work / "depot")
        configure_logging(cfg)
        with ArtifactResolver.from_config(cfg) as resolver:
            _lifecycle(resolver, work)


def _lifecycle(resolver: ArtifactResolver, work: Path) -> None:
    host = HostPlatform(os="linux", arch="x86_64")

    def populate(path: Path) -> None:
        (path / "README").write_text("hello from stowage\n")
        (path / "bin").mkdir()
        (path / "bin" / "tool").write_text("#!/bin/sh\necho tool\n")
        (path / "bin" / "tool").chmod(0o755)

    content_hash = resolver.create_artifact(populate)
    print(f"Created artifact {content_hash}")

    tarball = work / "dist" / f"{content_hash}.tar.gz"
    sha256 = archive_directory(resolver.artifact_path(content_hash), tarball)
    print(f"Archived to {tarball} (sha256 {sha256})")

    manifest_path = work / "Artifacts.toml"
    manifest = resolver.bind_artifact(
        "demo",
        content_hash,
        load_manifest(manifest_path),
        downloads=[DownloadDescriptor(url=tarball.as_uri(), sha256=sha256)],
        lazy=True,
    )
    write_manifest(manifest_path, manifest)
    print(manifest_path.read_text())

    resolver.store.remove(content_hash)
    print(f"Removed from depot: exists={resolver.artifact_exists(content_hash)}")

    path = resolver.ensure_installed("demo", load_manifest(manifest_path), host)
    print(f"Reinstalled to {path}: verified={resolver.store.verify(content_hash)}")


if __name__ == "__main__":
    main()
