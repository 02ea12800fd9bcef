"""Capability interface shared by local and remote hosts.

Every package workflow reaches the filesystem and processes of a host only
through :class:`HostTarget`. Paths are POSIX paths on the target host; the
helpers below build the fixed ``<root>/packages/...`` layout.
"""
from __future__ import annotations

import abc
import posixpath
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

PACKAGES_DIR = "packages"
DOWNLOADS_DIR = "downloads"


@dataclass(frozen=True, slots=True)
class FileStat:
    """Subset of ``stat`` results the workflows rely on."""

    size: int
    mode: int
    is_dir: bool
    is_symlink: bool


class HostTarget(abc.ABC):
    """Filesystem and process operations on a single host."""

    name: str
    root: str

    # Identity ---------------------------------------------------------
    @property
    @abc.abstractmethod
    def is_local(self) -> bool:
        """Return ``True`` for the machine running this process."""

    def __str__(self) -> str:
        return self.name

    # Paths -------------------------------------------------------------
    def path(self, *parts: str) -> str:
        """Return ``<root>/<parts...>``."""
        return posixpath.join(self.root, *parts)

    def package_dir(self, component: object, *parts: str) -> str:
        """Return ``<root>/packages/<component>/<parts...>``."""
        return self.path(PACKAGES_DIR, str(component), *parts)

    # Filesystem --------------------------------------------------------
    @abc.abstractmethod
    def lstat(self, path: str) -> FileStat | None:
        """Return stat details without following links, ``None`` if absent."""

    @abc.abstractmethod
    def stat(self, path: str) -> FileStat | None:
        """Return stat details following links, ``None`` if absent or dangling."""

    @abc.abstractmethod
    def listdir(self, path: str) -> list[str]:
        """Return entry names in *path* in directory order."""

    @abc.abstractmethod
    def readlink(self, path: str) -> str | None:
        """Return the link target of *path* or ``None`` when it is not a link."""

    @abc.abstractmethod
    def symlink(self, target: str, path: str) -> None:
        """Create a symbolic link at *path* pointing to *target*."""

    @abc.abstractmethod
    def rename(self, source: str, destination: str) -> None:
        """Atomically rename *source* over *destination*."""

    @abc.abstractmethod
    def remove(self, path: str) -> None:
        """Remove a file or link, raising ``FileNotFoundError`` when absent."""

    @abc.abstractmethod
    def remove_tree(self, path: str) -> None:
        """Recursively remove *path*; absent paths are ignored."""

    @abc.abstractmethod
    def makedirs(self, path: str, mode: int = 0o775) -> None:
        """Create *path* and missing parents; existing directories are fine."""

    @abc.abstractmethod
    def open_read(self, path: str) -> BinaryIO:
        """Open *path* for binary reading."""

    @abc.abstractmethod
    def create(self, path: str, mode: int = 0o664) -> BinaryIO:
        """Create (truncate) *path* for binary writing with *mode*."""

    @abc.abstractmethod
    def chown_tree(self, path: str, uid: int, gid: int) -> None:
        """Change ownership of *path* and everything below it, without following links."""

    def exists(self, path: str) -> bool:
        """Return ``True`` when something (including a dangling link) is at *path*."""
        return self.lstat(path) is not None

    def is_dir(self, path: str) -> bool:
        """Return ``True`` when *path* is a real directory (not a link to one)."""
        info = self.lstat(path)
        return info is not None and info.is_dir and not info.is_symlink

    def walk(self, path: str) -> Iterator[str]:
        """Yield *path* and every entry beneath it, parents first."""
        yield path
        info = self.lstat(path)
        if info is None or not info.is_dir or info.is_symlink:
            return
        for name in self.listdir(path):
            yield from self.walk(posixpath.join(path, name))

    # Processes ---------------------------------------------------------
    @abc.abstractmethod
    def signal(self, pid: int, sig: int) -> None:
        """Deliver *sig* to *pid*.

        Raises ``ProcessLookupError`` when the process is gone and
        ``PermissionError`` when signalling is not allowed.
        """

    def pid_alive(self, pid: int) -> bool:
        """Return ``True`` while *pid* exists (signal 0 probe)."""
        try:
            self.signal(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @abc.abstractmethod
    def spawn(self, command: str, *, cwd: str, log_path: str) -> int:
        """Start *command* detached from this process and return its pid.

        Output is appended to *log_path*.
        """

    def close(self) -> None:  # noqa: B027 - optional hook
        """Release any connection held by the host."""


__all__ = [
    "DOWNLOADS_DIR",
    "FileStat",
    "HostTarget",
    "PACKAGES_DIR",
]
