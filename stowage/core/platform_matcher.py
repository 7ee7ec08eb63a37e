"""Selection of the manifest entry that fits a host platform.

Matching is exact string equality on every constraint an entry declares.
Among matching entries the most specific one (most constraints) wins, and
ties go to the entry declared first. This lets a manifest pair a generic
``os = "linux"`` entry with a narrower ``os = "linux", libc = "musl"`` one.
"""

from __future__ import annotations

from collections.abc import Sequence

from stowage.models.manifest import Binding, ManifestEntry, SingleBinding
from stowage.models.platform import HostPlatform


def matches(entry: ManifestEntry, host: HostPlatform) -> bool:
    """True if every constraint of ``entry`` equals the host's tag."""
    tags = host.as_tags()
    return all(tags.get(key) == value for key, value in entry.platform.items())


def select(
    candidates: Sequence[ManifestEntry], host: HostPlatform
) -> ManifestEntry | None:
    """Pick the best entry for ``host``, or ``None`` if nothing matches."""
    best: ManifestEntry | None = None
    for entry in candidates:
        if not matches(entry, host):
            continue
        # strict comparison keeps the earliest of equally specific entries
        if best is None or entry.specificity > best.specificity:
            best = entry
    return best


def select_binding(binding: Binding, host: HostPlatform) -> ManifestEntry | None:
    """Resolve a binding for ``host``; single bindings always resolve."""
    if isinstance(binding, SingleBinding):
        return binding.entry
    return select(binding.entries, host)
