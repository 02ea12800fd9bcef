"""Host target reached over SSH/SFTP with paramiko."""
from __future__ import annotations

import logging
import posixpath
import shlex
import signal
import stat
from typing import BinaryIO, cast

import paramiko

from ..errors import HostError
from .base import FileStat, HostTarget

_LOG = logging.getLogger(__name__)


def _to_file_stat(attrs: paramiko.SFTPAttributes) -> FileStat:
    mode = attrs.st_mode or 0
    return FileStat(
        size=attrs.st_size or 0,
        mode=stat.S_IMODE(mode),
        is_dir=stat.S_ISDIR(mode),
        is_symlink=stat.S_ISLNK(mode),
    )


class RemoteHost(HostTarget):
    """Operate on a host reachable with SSH.

    The connection is opened on first use and kept until :meth:`close`.
    Filesystem calls go through SFTP; signals and process launches go
    through ``exec_command``.
    """

    def __init__(
        self,
        name: str,
        *,
        hostname: str,
        root: str,
        port: int = 22,
        username: str | None = None,
        key_file: str | None = None,
        timeout: float = 10.0,
        accept_unknown_hosts: bool = False,
    ) -> None:
        """Record connection details; nothing is opened yet."""
        self.name = name
        self.hostname = hostname
        self.root = root
        self.port = port
        self.username = username
        self.key_file = key_file
        self.timeout = timeout
        self.accept_unknown_hosts = accept_unknown_hosts
        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    def __repr__(self) -> str:
        return f"RemoteHost(name={self.name!r}, hostname={self.hostname!r}, root={self.root!r})"

    @property
    def is_local(self) -> bool:
        """Remote hosts always report ``False``."""
        return False

    # Connection -------------------------------------------------------
    def _connect(self) -> paramiko.SSHClient:
        client = self._client
        transport = client.get_transport() if client is not None else None
        if client is not None and transport is not None and transport.is_active():
            return client
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.accept_unknown_hosts:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        try:
            client.connect(
                self.hostname,
                port=self.port,
                username=self.username,
                key_filename=self.key_file,
                timeout=self.timeout,
            )
        except (paramiko.SSHException, OSError) as exc:
            raise HostError(f"Cannot connect to {self.name} ({self.hostname}): {exc}") from exc
        _LOG.debug("connected to %s as %s", self.hostname, self.username or "<default>")
        self._client = client
        self._sftp = None
        return client

    @property
    def sftp(self) -> paramiko.SFTPClient:
        """Return the SFTP session, opening the connection if needed."""
        client = self._connect()
        if self._sftp is None:
            self._sftp = client.open_sftp()
        return self._sftp

    def _exec(self, command: str) -> tuple[int, str, str]:
        client = self._connect()
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=self.timeout)
            status = stdout.channel.recv_exit_status()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
        except paramiko.SSHException as exc:
            raise HostError(f"{self.name}: command failed to run: {exc}") from exc
        return status, out, err

    def close(self) -> None:
        """Close the SFTP session and SSH connection."""
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None

    # Filesystem --------------------------------------------------------
    def lstat(self, path: str) -> FileStat | None:
        """Return SFTP ``lstat`` details or ``None``."""
        try:
            return _to_file_stat(self.sftp.lstat(path))
        except FileNotFoundError:
            return None

    def stat(self, path: str) -> FileStat | None:
        """Return SFTP ``stat`` details or ``None``."""
        try:
            return _to_file_stat(self.sftp.stat(path))
        except FileNotFoundError:
            return None

    def listdir(self, path: str) -> list[str]:
        """Return directory entries sorted by name."""
        return sorted(self.sftp.listdir(path))

    def readlink(self, path: str) -> str | None:
        """Return the link target or ``None``."""
        info = self.lstat(path)
        if info is None or not info.is_symlink:
            return None
        return self.sftp.readlink(path)

    def symlink(self, target: str, path: str) -> None:
        """Create *path* pointing at *target*."""
        self.sftp.symlink(target, path)

    def rename(self, source: str, destination: str) -> None:
        """Rename using the ``posix-rename@openssh.com`` extension."""
        self.sftp.posix_rename(source, destination)

    def remove(self, path: str) -> None:
        """Remove a file or link."""
        self.sftp.remove(path)

    def remove_tree(self, path: str) -> None:
        """Remove *path* recursively with ``rm -rf``."""
        status, _out, err = self._exec(f"rm -rf -- {shlex.quote(path)}")
        if status != 0:
            raise HostError(f"{self.name}: cannot remove {path}: {err.strip()}")

    def makedirs(self, path: str, mode: int = 0o775) -> None:
        """Create *path* and missing parents one level at a time."""
        missing: list[str] = []
        current = path
        while current not in ("", "/") and self.lstat(current) is None:
            missing.append(current)
            current = posixpath.dirname(current)
        for directory in reversed(missing):
            self.sftp.mkdir(directory, mode)
            self.sftp.chmod(directory, mode)

    def open_read(self, path: str) -> BinaryIO:
        """Open a remote file for reading."""
        handle = self.sftp.open(path, "rb")
        handle.prefetch()
        return cast(BinaryIO, handle)

    def create(self, path: str, mode: int = 0o664) -> BinaryIO:
        """Create a remote file and apply *mode*."""
        handle = self.sftp.open(path, "wb")
        handle.set_pipelined(True)
        handle.chmod(mode)
        return cast(BinaryIO, handle)

    def chown_tree(self, path: str, uid: int, gid: int) -> None:
        """Change ownership with ``chown -hR``."""
        status, _out, err = self._exec(f"chown -hR {uid}:{gid} -- {shlex.quote(path)}")
        if status != 0:
            raise HostError(f"{self.name}: cannot chown {path}: {err.strip()}")

    # Processes ---------------------------------------------------------
    def signal(self, pid: int, sig: int) -> None:
        """Deliver *sig* with the remote ``kill`` builtin."""
        status, _out, err = self._exec(f"kill -{int(sig)} {int(pid)}")
        if status == 0:
            return
        message = err.strip()
        lowered = message.lower()
        if "no such process" in lowered:
            raise ProcessLookupError(pid, message)
        if "not permitted" in lowered:
            raise PermissionError(pid, message)
        name = signal.Signals(sig).name if sig else "0"
        raise HostError(f"{self.name}: kill -{name} {pid} failed: {message or status}")

    def spawn(self, command: str, *, cwd: str, log_path: str) -> int:
        """Start *command* with ``nohup`` and return the remote pid."""
        script = (
            f"cd {shlex.quote(cwd)} && "
            f"nohup sh -c {shlex.quote(command)} >> {shlex.quote(log_path)} 2>&1 < /dev/null & "
            "echo $!"
        )
        status, out, err = self._exec(script)
        if status != 0:
            raise HostError(f"{self.name}: cannot start '{command}': {err.strip()}")
        try:
            return int(out.strip().splitlines()[-1])
        except (IndexError, ValueError) as exc:
            raise HostError(f"{self.name}: no pid reported for '{command}'") from exc


__all__ = ["RemoteHost"]
