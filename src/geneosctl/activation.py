"""Base link management for installed component versions.

A base link (``active_prod`` by default) lives next to the version
directories in ``<root>/packages/<component>`` and holds the bare name of
the active version. Instances resolve their binaries through it.
"""
from __future__ import annotations

import logging
import posixpath
from contextlib import nullcontext
from typing import TYPE_CHECKING

from .components import ComponentDescriptor, ComponentRegistry
from .errors import InvalidArgsError, NotExistError
from .hosts import ALL_HOSTS, Fleet, HostTarget
from .options import PackageOptions
from .results import ResultSet, ResultStatus, TargetResult
from .versions import VersionResolver, sort_versions

if TYPE_CHECKING:
    from .locking import LockManager

_LOG = logging.getLogger(__name__)

HostSelector = HostTarget | str | None


class ActivationManager:
    """Point base links at installed versions."""

    def __init__(
        self,
        components: ComponentRegistry,
        fleet: Fleet,
        *,
        locks: LockManager | None = None,
        resolver: VersionResolver | None = None,
    ) -> None:
        """Bind the manager to the component table, fleet and lock manager."""
        self.components = components
        self.fleet = fleet
        self.locks = locks
        self.resolver = resolver or VersionResolver()

    # Queries -----------------------------------------------------------
    def installed(self, host: HostTarget, component: ComponentDescriptor) -> list[str]:
        """Return installed version directory names in ascending order."""
        basedir = host.package_dir(component)
        try:
            names = host.listdir(basedir)
        except FileNotFoundError:
            return []
        directories = [
            name
            for name in names
            if not name.startswith(".") and host.is_dir(posixpath.join(basedir, name))
        ]
        return sort_versions(directories)

    def current(
        self,
        host: HostTarget,
        component: ComponentDescriptor,
        basename: str,
    ) -> str | None:
        """Return the version *basename* points at, or ``None``."""
        return host.readlink(host.package_dir(component, basename))

    # Activation --------------------------------------------------------
    def activate(
        self,
        host: HostSelector,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> ResultSet:
        """Point ``options.basename`` at ``options.version`` on the selected hosts.

        ``component=None`` covers every component and ``host`` may be the
        ``all`` wildcard. In fan-outs a missing version, host or component
        is recorded as skipped; any other error propagates and stops the
        remaining targets.
        """
        results = ResultSet()
        self._activate(host, component, options, results)
        return results

    def _activate(
        self,
        host: HostSelector,
        component: ComponentDescriptor | None,
        options: PackageOptions,
        results: ResultSet,
    ) -> None:
        if component is None:
            for each in self.components.installable():
                self._fan_out(host, each, options, results)
            return

        if component.related:
            for related in self.components.related(component):
                self._fan_out(host, related, options, results)
            return

        if host is None or host == ALL_HOSTS:
            for each_host in self.fleet:
                self._fan_out(each_host, component, options, results)
            return

        target = host if isinstance(host, HostTarget) else self.fleet.get(host)
        results.add(self._activate_one(target, component, options))

    def _fan_out(
        self,
        host: HostSelector,
        component: ComponentDescriptor,
        options: PackageOptions,
        results: ResultSet,
    ) -> None:
        try:
            self._activate(host, component, options, results)
        except NotExistError as exc:
            _LOG.debug("skipping %s on %s: %s", component, host, exc)
            results.add(
                TargetResult(
                    host=str(host) if host is not None else ALL_HOSTS,
                    component=component.name,
                    action="activate",
                    status=ResultStatus.SKIPPED,
                    detail=str(exc),
                    error=exc,
                )
            )

    def _activate_one(
        self,
        host: HostTarget,
        component: ComponentDescriptor,
        options: PackageOptions,
    ) -> TargetResult:
        basename = options.basename
        basedir = host.package_dir(component)
        basepath = posixpath.join(basedir, basename)

        candidates = self.installed(host, component)
        try:
            version = self.resolver.resolve(candidates, options.version)
        except NotExistError:
            raise NotExistError(
                f"{options.version!r} version of {component} on {host} not found"
            ) from None

        if not host.is_dir(posixpath.join(basedir, version)):
            raise NotExistError(f"{version!r} version of {component} on {host} not found")

        existing = host.readlink(basepath)
        if existing is None and host.exists(basepath):
            raise InvalidArgsError(f"{basepath} on {host} exists and is not a symbolic link")
        if self._unchanged(existing, version, options):
            _LOG.debug(
                "%s %s on %s left at %s (requested %s, force=%s)",
                component,
                basename,
                host,
                existing,
                version,
                options.force,
            )
            return TargetResult(
                host=host.name,
                component=component.name,
                action="activate",
                status=ResultStatus.UNCHANGED,
                detail=f"{basename} -> {existing}",
                version=existing,
            )

        lock = (
            self.locks.activation_lock(host.name, component.name, basename)
            if self.locks is not None
            else nullcontext()
        )
        with lock:
            existing = host.readlink(basepath)
            if self._unchanged(existing, version, options):
                return TargetResult(
                    host=host.name,
                    component=component.name,
                    action="activate",
                    status=ResultStatus.UNCHANGED,
                    detail=f"{basename} -> {existing}",
                    version=existing,
                )
            self._swap(host, basedir, basename, version)

        _LOG.info("%s %s on %s updated to %s", component, basepath, host, version)
        previous = f" (was {existing})" if existing else ""
        return TargetResult(
            host=host.name,
            component=component.name,
            action="activate",
            status=ResultStatus.CHANGED,
            detail=f"{basename} -> {version}{previous}",
            version=version,
        )

    @staticmethod
    def _unchanged(existing: str | None, version: str, options: PackageOptions) -> bool:
        return existing == version or (existing is not None and not options.force)

    @staticmethod
    def _swap(host: HostTarget, basedir: str, basename: str, version: str) -> None:
        """Replace the base link by renaming a fresh link over it."""
        basepath = posixpath.join(basedir, basename)
        temp_link = posixpath.join(basedir, f".{basename}.tmp")
        if host.exists(temp_link):
            host.remove(temp_link)
        host.symlink(version, temp_link)
        try:
            host.rename(temp_link, basepath)
        except OSError:
            if host.exists(temp_link):
                host.remove(temp_link)
            raise


__all__ = ["ActivationManager"]
