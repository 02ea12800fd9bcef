"""Host targets for local and remote Geneos installations."""
from __future__ import annotations

from .base import DOWNLOADS_DIR, PACKAGES_DIR, FileStat, HostTarget
from .fleet import ALL_HOSTS, Fleet
from .local import LOCALHOST, LocalHost
from .remote import RemoteHost

__all__ = [
    "ALL_HOSTS",
    "DOWNLOADS_DIR",
    "FileStat",
    "Fleet",
    "HostTarget",
    "LOCALHOST",
    "LocalHost",
    "PACKAGES_DIR",
    "RemoteHost",
]
