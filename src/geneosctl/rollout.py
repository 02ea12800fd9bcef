"""Stop, activate and restart around a base link change."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .activation import ActivationManager, HostSelector
from .components import ComponentDescriptor
from .errors import NotExistError, PackageError
from .hosts import ALL_HOSTS, HostTarget
from .instances import Instance, InstanceController, StopOutcome, load_instances
from .options import PackageOptions
from .results import ResultSet, ResultStatus, TargetResult
from .state import StateRegistry

if TYPE_CHECKING:
    from .unarchive import Installer

_LOG = logging.getLogger(__name__)

PROTECTED_WARNING = (
    "There are one or more protected instances using the current version. "
    "Use --force to override."
)


@dataclass(slots=True)
class RolloutResult:
    """What a rollout did to links and instances."""

    basename: str
    version: str
    matched: list[Instance] = field(default_factory=list)
    stopped: list[Instance] = field(default_factory=list)
    restarted: list[Instance] = field(default_factory=list)
    stop_failures: list[tuple[Instance, str]] = field(default_factory=list)
    restart_failures: list[tuple[Instance, str]] = field(default_factory=list)
    activation: ResultSet = field(default_factory=ResultSet)
    warning: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when nothing failed (warnings are allowed)."""
        return self.activation.ok and not self.stop_failures and not self.restart_failures

    def to_results(self) -> ResultSet:
        """Flatten the rollout into per-target results."""
        results = ResultSet()
        if self.warning:
            results.add(
                TargetResult(
                    host=ALL_HOSTS,
                    component="-",
                    action="update",
                    status=ResultStatus.WARNING,
                    detail=self.warning,
                )
            )
        results.extend(self.activation)
        for instance, reason in self.stop_failures:
            results.add(_instance_result(instance, "stop", ResultStatus.WARNING, reason))
        for instance in self.restarted:
            results.add(_instance_result(instance, "restart", ResultStatus.CHANGED, "restarted"))
        for instance, reason in self.restart_failures:
            results.add(_instance_result(instance, "restart", ResultStatus.WARNING, reason))
        return results


def _instance_result(
    instance: Instance,
    action: str,
    status: ResultStatus,
    detail: str,
) -> TargetResult:
    return TargetResult(
        host=instance.host,
        component=instance.component,
        action=f"{action} {instance.name}",
        status=status,
        detail=detail,
    )


class RolloutCoordinator:
    """Update a base link while managing the instances bound to it."""

    def __init__(
        self,
        activation: ActivationManager,
        controller: InstanceController,
        registry: StateRegistry,
    ) -> None:
        """Bind the coordinator to activation, process control and the registry."""
        self.activation = activation
        self.controller = controller
        self.registry = registry

    def matching_instances(
        self,
        host: HostSelector,
        component: ComponentDescriptor | None,
        basename: str,
    ) -> list[Instance]:
        """Return instances on *host* of *component* that use *basename*."""
        if isinstance(host, HostTarget):
            hostnames = {host.name}
        else:
            hostnames = {each.name for each in self.activation.fleet.select(host)}
        names: set[str] | None = None
        if component is not None:
            names = {each.name for each in self.activation.components.family(component)}
        return [
            instance
            for instance in load_instances(self.registry)
            if instance.host in hostnames
            and instance.base == basename
            and (names is None or instance.matches(names))
        ]

    def rollout_update(
        self,
        host: HostSelector,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> RolloutResult:
        """Point ``options.basename`` at ``options.version``.

        Protected instances block the update unless ``options.force`` is set.
        With ``options.restart`` matching instances are stopped first and
        only the ones stopped here are started again afterwards. The link
        itself is always replaced (activation runs forced).
        """
        result = RolloutResult(basename=options.basename, version=options.version)
        result.matched = self.matching_instances(host, component, options.basename)

        if not options.force and any(instance.protected for instance in result.matched):
            _LOG.warning(PROTECTED_WARNING)
            result.warning = PROTECTED_WARNING
            return result

        try:
            if options.restart:
                self._stop_all(result)
                if result.stop_failures and not options.force:
                    result.warning = "Not updating: some instances could not be stopped."
                    _LOG.warning(result.warning)
                    return result
            try:
                result.activation = self.activation.activate(
                    host, component, options.with_changes(force=True)
                )
            except NotExistError as exc:
                _LOG.warning("%s", exc)
                result.warning = str(exc)
        finally:
            self._restart_all(result)
        return result

    def rollout_install(
        self,
        installer: Installer,
        host: HostSelector,
        component: ComponentDescriptor | None,
        options: PackageOptions,
    ) -> ResultSet:
        """Install releases and move ``options.basename`` onto them.

        Protected instances on the base link block the whole install unless
        ``options.force`` is set. Each newly unpacked version is then rolled
        out with a restart of the instances using the link. Versions whose
        link was created by the install itself need no rollout.
        """
        results = ResultSet()
        matched = self.matching_instances(host, component, options.basename)
        if not options.force and any(instance.protected for instance in matched):
            _LOG.warning(PROTECTED_WARNING)
            results.add(
                TargetResult(
                    host=ALL_HOSTS,
                    component=component.name if component is not None else "-",
                    action="install",
                    status=ResultStatus.WARNING,
                    detail=PROTECTED_WARNING,
                )
            )
            return results

        installed = installer.install(host, component, options.with_changes(force=False))
        results.extend(installed)
        activated = {
            (item.host, item.component)
            for item in installed
            if item.action == "activate" and item.status is ResultStatus.CHANGED
        }
        for item in installed:
            if item.action != "install" or item.status is not ResultStatus.CHANGED:
                continue
            if item.version is None or (item.host, item.component) in activated:
                continue
            rollout = self.rollout_update(
                self.activation.fleet.get(item.host),
                self.activation.components.get(item.component),
                options.with_changes(version=item.version, restart=True),
            )
            results.extend(rollout.to_results())
        return results

    def _stop_all(self, result: RolloutResult) -> None:
        for instance in result.matched:
            try:
                outcome = self.controller.stop(instance)
            except (PackageError, OSError) as exc:
                result.stop_failures.append((instance, str(exc)))
                continue
            if outcome.stopped_by_us:
                result.stopped.append(instance)
            elif outcome is StopOutcome.FAILED:
                result.stop_failures.append((instance, "still running after SIGKILL"))
            else:
                _LOG.debug("%s left alone: %s", instance, outcome.value)

    def _restart_all(self, result: RolloutResult) -> None:
        for instance in result.stopped:
            try:
                self.controller.start(instance)
            except (PackageError, OSError) as exc:
                _LOG.error("cannot restart %s: %s", instance, exc)
                result.restart_failures.append((instance, str(exc)))
            else:
                result.restarted.append(instance)


__all__ = ["PROTECTED_WARNING", "RolloutCoordinator", "RolloutResult"]
