"""Unpack release archives into versioned directories."""
from __future__ import annotations

import logging
import os
import posixpath
import pwd
import tarfile
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING

from .activation import ActivationManager, HostSelector
from .archives import ArchiveSource, parse_archive_name
from .components import ComponentDescriptor, ComponentRegistry
from .errors import (
    AlreadyExistsError,
    IntegrityViolation,
    InvalidArgsError,
    NotExistError,
    PackageError,
)
from .hosts import ALL_HOSTS, LOCALHOST, Fleet, HostTarget
from .locking import LockTimeoutError
from .options import PackageOptions
from .results import ResultSet, ResultStatus, TargetResult
from .versions import match_version

if TYPE_CHECKING:
    from .locking import LockManager

_LOG = logging.getLogger(__name__)

COPY_CHUNK = 64 * 1024


@dataclass(frozen=True, slots=True)
class UnpackResult:
    """A version directory created by :meth:`Unarchiver.unpack`."""

    host: str
    component: str
    version: str
    path: str
    activation: ResultSet = field(default_factory=ResultSet)


def _clean_relative(name: str) -> str:
    """Normalise an archive entry path, rejecting anything that leaves the tree."""
    if name.startswith("/"):
        raise IntegrityViolation(f"archive entry {name!r} has an absolute path")
    cleaned = posixpath.normpath(name)
    if cleaned == ".":
        return ""
    if cleaned == ".." or cleaned.startswith("../"):
        raise IntegrityViolation(f"archive entry {name!r} escapes the install directory")
    return cleaned


class Unarchiver:
    """Stream a gzipped tar archive into ``<root>/packages/<component>/<version>``."""

    def __init__(
        self,
        components: ComponentRegistry,
        activation: ActivationManager,
        *,
        locks: LockManager | None = None,
        local_username: str = "",
    ) -> None:
        """Bind the unarchiver to the component table and activation manager."""
        self.components = components
        self.activation = activation
        self.locks = locks
        self.local_username = local_username

    def identify(
        self,
        component: ComponentDescriptor | None,
        filename: str,
        options: PackageOptions,
    ) -> tuple[ComponentDescriptor, str]:
        """Return the component and version an archive installs.

        ``options.override`` (``TYPE:VERSION``) wins over the filename.
        """
        if options.override:
            kind, sep, version = options.override.partition(":")
            if not sep:
                raise InvalidArgsError("type/version override must be in the form TYPE:VERSION")
            found = self.components.find(kind)
            if found is None:
                raise InvalidArgsError(f"invalid component type {kind!r}")
            if not match_version(version):
                raise InvalidArgsError(f"invalid version {version!r}")
            return found, version

        parsed = parse_archive_name(filename)
        if parsed is None:
            raise InvalidArgsError(f"{filename!r} is not a recognised release archive name")
        fragment, version = parsed
        from_file = self.components.find(fragment)
        if from_file is None:
            raise InvalidArgsError(f"{filename!r} is for unknown component {fragment!r}")
        if component is None or component is from_file:
            return from_file, version
        if from_file.name in component.related:
            return from_file, version
        raise InvalidArgsError(
            f"component type and archive mismatch: {filename!r} is not a {component}"
        )

    def unpack(
        self,
        host: HostTarget,
        component: ComponentDescriptor | None,
        filename: str,
        stream: IO[bytes],
        options: PackageOptions,
    ) -> UnpackResult:
        """Extract *stream* on *host* and point the base link at the new version."""
        target_component, version = self.identify(component, filename, options)
        basedir = host.package_dir(target_component)
        target = posixpath.join(basedir, version)
        if host.exists(target):
            raise AlreadyExistsError(
                f"{target_component} {version} is already installed on {host}"
            )

        lock = (
            self.locks.install_lock(host.name, target_component.name, version)
            if self.locks is not None
            else nullcontext()
        )
        with lock:
            if host.exists(target):
                raise AlreadyExistsError(
                    f"{target_component} {version} is already installed on {host}"
                )
            host.makedirs(basedir)
            staging = posixpath.join(basedir, f".{version}.unpacking")
            host.remove_tree(staging)
            host.makedirs(staging)
            staging_to_cleanup: str | None = staging
            try:
                self._extract(host, target_component, filename, stream, staging)
                self._chown(host, staging)
                host.rename(staging, target)
                staging_to_cleanup = None
            finally:
                if staging_to_cleanup is not None:
                    host.remove_tree(staging_to_cleanup)

        _LOG.info("installed %s to %s on %s", filename, target, host)
        activation = self.activation.activate(
            host, target_component, options.with_changes(version=version)
        )
        return UnpackResult(
            host=host.name,
            component=target_component.name,
            version=version,
            path=target,
            activation=activation,
        )

    # Extraction --------------------------------------------------------
    def _extract(
        self,
        host: HostTarget,
        component: ComponentDescriptor,
        filename: str,
        stream: IO[bytes],
        root: str,
    ) -> None:
        try:
            with tarfile.open(fileobj=stream, mode="r|gz") as archive:
                links: set[str] = set()
                for member in archive:
                    self._extract_member(host, component, archive, member, root, links)
        except (tarfile.TarError, EOFError) as exc:
            raise IntegrityViolation(f"cannot read archive {filename!r}: {exc}") from exc

    def _extract_member(
        self,
        host: HostTarget,
        component: ComponentDescriptor,
        archive: tarfile.TarFile,
        member: tarfile.TarInfo,
        root: str,
        links: set[str],
    ) -> None:
        name = component.strip(member.name.removeprefix("./"))
        relative = _clean_relative(name) if name else ""
        if not relative:
            return
        parent = posixpath.dirname(relative)
        while parent:
            if parent in links:
                raise IntegrityViolation(f"{member.name!r} is below symbolic link {parent!r}")
            parent = posixpath.dirname(parent)
        if relative in links and not member.issym():
            raise IntegrityViolation(f"{member.name!r} would replace symbolic link {relative!r}")
        path = posixpath.join(root, relative)

        if member.isreg():
            host.makedirs(posixpath.dirname(path))
            source = archive.extractfile(member)
            if source is None:
                raise IntegrityViolation(f"cannot read {member.name!r} from archive")
            copied = 0
            with host.create(path, member.mode & 0o7777) as out:
                while chunk := source.read(COPY_CHUNK):
                    out.write(chunk)
                    copied += len(chunk)
            if copied != member.size:
                raise IntegrityViolation(
                    f"{member.name!r}: copied {copied} bytes, archive declares {member.size}"
                )
        elif member.isdir():
            host.makedirs(path, (member.mode & 0o7777) | 0o700)
        elif member.issym():
            link = member.linkname
            if posixpath.isabs(link):
                raise IntegrityViolation(f"{member.name!r} is a link to absolute path {link!r}")
            resolved = posixpath.normpath(posixpath.join(posixpath.dirname(relative), link))
            if resolved == ".." or resolved.startswith("../"):
                raise IntegrityViolation(f"{member.name!r} links outside the install directory")
            if host.exists(path):
                _LOG.debug("not replacing existing %s with link to %s", path, link)
                return
            host.makedirs(posixpath.dirname(path))
            host.symlink(link, path)
            links.add(relative)
        else:
            _LOG.warning(
                "skipping unsupported archive entry %s (type %r)", member.name, member.type
            )

    def _chown(self, host: HostTarget, path: str) -> None:
        if not host.is_local or os.geteuid() != 0 or not self.local_username:
            return
        try:
            entry = pwd.getpwnam(self.local_username)
        except KeyError:
            _LOG.warning("not changing ownership of %s: unknown user %r", path, self.local_username)
            return
        host.chown_tree(path, entry.pw_uid, entry.pw_gid)


class Installer:
    """Fetch and unpack releases across hosts and components."""

    def __init__(self, fleet: Fleet, source: ArchiveSource, unarchiver: Unarchiver) -> None:
        """Bind the installer to the fleet, archive source and unarchiver."""
        self.fleet = fleet
        self.source = source
        self.unarchiver = unarchiver

    @property
    def components(self) -> ComponentRegistry:
        """Return the component table."""
        return self.unarchiver.components

    def _targets(
        self,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> list[ComponentDescriptor | None]:
        if component is None:
            if options.source and not os.path.isdir(options.source):
                return [None]
            return list(self.components.installable())
        if component.related and not options.source:
            return list(self.components.related(component))
        return [component]

    def _hosts(self, host: HostSelector) -> list[HostTarget]:
        if isinstance(host, HostTarget):
            return [host]
        return self.fleet.select(host)

    def install(
        self,
        host: HostSelector,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> ResultSet:
        """Install releases on every selected host, one result per target.

        A failing target is recorded and the remaining targets are still
        attempted.
        """
        results = ResultSet()
        fan_out = component is None or host is None or host == ALL_HOSTS
        for target_component in self._targets(component, options):
            for target_host in self._hosts(host):
                self._install_one(target_host, target_component, options, fan_out, results)
        return results

    def download(
        self,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> ResultSet:
        """Fetch archives into the local download directory without unpacking."""
        results = ResultSet()
        for target in self._targets(component, options.with_changes(source="")):
            if target is None:
                continue
            try:
                with self.source.open(target, options.with_changes(no_save=False)) as archive:
                    path = archive.path
            except NotExistError as exc:
                status = ResultStatus.SKIPPED if component is None else ResultStatus.ERROR
                results.add(_download_result(target, status, str(exc), exc))
                continue
            except (PackageError, OSError) as exc:
                _LOG.error("download of %s failed: %s", target, exc)
                results.add(_download_result(target, ResultStatus.ERROR, str(exc), exc))
                continue
            results.add(
                TargetResult(
                    host=LOCALHOST,
                    component=target.name,
                    action="download",
                    status=ResultStatus.CHANGED,
                    detail=f"saved {path}",
                )
            )
        return results

    def _install_one(
        self,
        host: HostTarget,
        component: ComponentDescriptor | None,
        options: PackageOptions,
        fan_out: bool,
        results: ResultSet,
    ) -> None:
        label = component.name if component is not None else "-"
        try:
            with self.source.open(component, options) as archive:
                unpacked = self.unarchiver.unpack(
                    host, component, archive.filename, archive.stream, options
                )
        except AlreadyExistsError as exc:
            _LOG.info("%s", exc)
            results.add(_result(host, label, ResultStatus.SKIPPED, str(exc), exc))
            return
        except NotExistError as exc:
            status = (
                ResultStatus.SKIPPED
                if fan_out or not options.wants_latest
                else ResultStatus.ERROR
            )
            results.add(_result(host, label, status, str(exc), exc))
            return
        except (PackageError, LockTimeoutError, OSError) as exc:
            _LOG.error("install of %s on %s failed: %s", label, host, exc)
            results.add(_result(host, label, ResultStatus.ERROR, str(exc), exc))
            return

        results.add(
            TargetResult(
                host=host.name,
                component=unpacked.component,
                action="install",
                status=ResultStatus.CHANGED,
                detail=f"installed {unpacked.version}",
                version=unpacked.version,
            )
        )
        results.extend(unpacked.activation)


def _result(
    host: HostTarget,
    component: str,
    status: ResultStatus,
    detail: str,
    error: Exception,
) -> TargetResult:
    return TargetResult(
        host=host.name,
        component=component,
        action="install",
        status=status,
        detail=detail,
        error=error,
    )


def _download_result(
    component: ComponentDescriptor,
    status: ResultStatus,
    detail: str,
    error: Exception,
) -> TargetResult:
    return TargetResult(
        host=LOCALHOST,
        component=component.name,
        action="download",
        status=status,
        detail=detail,
        error=error,
    )


__all__ = ["Installer", "UnpackResult", "Unarchiver"]
