"""Host platform descriptor used to disambiguate platform-dependent bindings."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class HostPlatform(BaseModel):
    """Describes the machine an artifact is being resolved for.

    The descriptor is supplied by the caller; nothing here inspects the
    running interpreter. ``tags`` carries any auxiliary keys (``libc``,
    ``cxxstring_abi``, ``cuda``...) that manifests may constrain on.

    Examples
    --------
    >>> host = HostPlatform(os="linux", arch="x86_64", tags={"libc": "musl"})
    >>> host.as_tags()["libc"]
    'musl'
    """

    model_config = ConfigDict(frozen=True)

    os: str
    arch: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _reject_shadowed_tags(self) -> "HostPlatform":
        for key in ("os", "arch"):
            if key in self.tags:
                raise ValueError(f"'{key}' must be given as a field, not a tag")
        return self

    def as_tags(self) -> dict[str, str]:
        """Return every tag of this host, ``os`` and ``arch`` included."""
        merged = {"os": self.os}
        if self.arch:
            merged["arch"] = self.arch
        merged.update(self.tags)
        return merged
