"""Immutable option record passed through install, activation and rollout."""
from __future__ import annotations

from dataclasses import dataclass, replace

DEFAULT_BASENAME = "active_prod"
LATEST = "latest"

DOWNLOAD_TYPES = {"resources", "nexus"}
DOWNLOAD_BASES = {"releases", "snapshots"}


@dataclass(frozen=True, slots=True)
class PackageOptions:
    """Settings consumed by the package workflows.

    Instances are never mutated; use :meth:`with_changes` to derive a
    modified copy for a nested call.
    """

    version: str = LATEST
    basename: str = DEFAULT_BASENAME
    force: bool = False
    restart: bool = False
    local_only: bool = False
    no_save: bool = False
    override: str = ""
    source: str = ""
    username: str = ""
    password: str = ""
    platform_id: str = ""
    download_type: str = "resources"
    download_base: str = "releases"
    local_username: str = ""

    def __post_init__(self) -> None:
        """Validate enumerated fields and normalise the version request."""
        if self.download_type not in DOWNLOAD_TYPES:
            raise ValueError(f"Unsupported download type '{self.download_type}'.")
        if self.download_base not in DOWNLOAD_BASES:
            raise ValueError(f"Unsupported download base '{self.download_base}'.")
        if not self.version.strip():
            object.__setattr__(self, "version", LATEST)
        if not self.basename.strip():
            raise ValueError("Base link name must be a non-empty string.")

    @property
    def wants_latest(self) -> bool:
        """Return ``True`` when the newest available version is requested."""
        return self.version == LATEST

    @property
    def platform(self) -> str:
        """Return the platform suffix from ``platform_id`` (``ID:SUFFIX``)."""
        if ":" not in self.platform_id:
            return ""
        return self.platform_id.split(":", 1)[1].strip()

    def with_changes(self, **changes: object) -> PackageOptions:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)  # type: ignore[arg-type]


__all__ = ["DEFAULT_BASENAME", "LATEST", "PackageOptions"]
