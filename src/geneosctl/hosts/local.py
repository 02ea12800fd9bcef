"""Host target backed by the local filesystem and process table."""
from __future__ import annotations

import os
import shutil
import stat
import subprocess
from pathlib import Path
from typing import BinaryIO, cast

from .base import FileStat, HostTarget

LOCALHOST = "localhost"


def _to_file_stat(result: os.stat_result) -> FileStat:
    return FileStat(
        size=result.st_size,
        mode=stat.S_IMODE(result.st_mode),
        is_dir=stat.S_ISDIR(result.st_mode),
        is_symlink=stat.S_ISLNK(result.st_mode),
    )


class LocalHost(HostTarget):
    """Operate on the machine running geneosctl."""

    def __init__(self, root: str | os.PathLike[str], name: str = LOCALHOST) -> None:
        """Bind the host to the Geneos *root* directory."""
        self.name = name
        self.root = str(Path(root).expanduser())

    def __repr__(self) -> str:
        return f"LocalHost(name={self.name!r}, root={self.root!r})"

    @property
    def is_local(self) -> bool:
        """Local hosts always report ``True``."""
        return True

    def lstat(self, path: str) -> FileStat | None:
        """Return ``os.lstat`` details or ``None``."""
        try:
            return _to_file_stat(os.lstat(path))
        except FileNotFoundError:
            return None

    def stat(self, path: str) -> FileStat | None:
        """Return ``os.stat`` details or ``None``."""
        try:
            return _to_file_stat(os.stat(path))
        except FileNotFoundError:
            return None

    def listdir(self, path: str) -> list[str]:
        """Return ``os.listdir`` sorted by name."""
        return sorted(os.listdir(path))

    def readlink(self, path: str) -> str | None:
        """Return the raw link target of *path*."""
        try:
            return os.readlink(path)
        except (FileNotFoundError, OSError):
            return None

    def symlink(self, target: str, path: str) -> None:
        """Create *path* pointing at *target*."""
        os.symlink(target, path)

    def rename(self, source: str, destination: str) -> None:
        """Rename with ``os.replace`` semantics."""
        os.replace(source, destination)

    def remove(self, path: str) -> None:
        """Unlink *path*."""
        os.unlink(path)

    def remove_tree(self, path: str) -> None:
        """Delete *path* recursively."""
        target = Path(path)
        if target.is_symlink() or target.is_file():
            target.unlink(missing_ok=True)
            return
        shutil.rmtree(target, ignore_errors=True)

    def makedirs(self, path: str, mode: int = 0o775) -> None:
        """Create *path* and parents."""
        os.makedirs(path, mode=mode, exist_ok=True)

    def open_read(self, path: str) -> BinaryIO:
        """Open *path* for reading."""
        return cast(BinaryIO, open(path, "rb"))  # noqa: SIM115 - caller closes

    def create(self, path: str, mode: int = 0o664) -> BinaryIO:
        """Create *path* and apply *mode* once open."""
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        os.chmod(path, mode)
        return cast(BinaryIO, os.fdopen(fd, "wb"))

    def chown_tree(self, path: str, uid: int, gid: int) -> None:
        """``lchown`` every entry below *path*."""
        for entry in self.walk(path):
            os.lchown(entry, uid, gid)

    def signal(self, pid: int, sig: int) -> None:
        """Deliver *sig* with ``os.kill``."""
        os.kill(pid, sig)

    def spawn(self, command: str, *, cwd: str, log_path: str) -> int:
        """Start *command* in a new session with output appended to *log_path*."""
        with open(log_path, "ab") as log:
            process = subprocess.Popen(  # noqa: S602 - commands come from instance configuration
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        return process.pid


__all__ = ["LOCALHOST", "LocalHost"]
