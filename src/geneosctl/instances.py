"""Instance records and process control for rollouts.

Instances are read from the state registry. Whether an instance is running
is observed through its pid file and a signal-0 probe on its host.
"""
from __future__ import annotations

import logging
import posixpath
import signal
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from .config import StopConfig
from .errors import InvalidArgsError
from .hosts import LOCALHOST, Fleet, HostTarget
from .options import DEFAULT_BASENAME
from .state import StateRegistry

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Instance:
    """A configured, independently runnable unit of a component."""

    name: str
    component: str
    host: str = LOCALHOST
    base: str = DEFAULT_BASENAME
    pkgtype: str = ""
    protected: bool = False
    home: str = ""
    pid_file: str = ""
    command: str = ""

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> Instance:
        """Build an instance from a registry entry."""
        name = entry.get("name")
        component = entry.get("component")
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgsError("Instance entries require a non-empty 'name'.")
        if not isinstance(component, str) or not component.strip():
            raise InvalidArgsError(f"Instance '{name}' requires a 'component'.")
        protected = entry.get("protected", False)
        if not isinstance(protected, bool):
            raise InvalidArgsError(f"Instance '{name}': 'protected' must be a boolean.")
        return cls(
            name=name.strip(),
            component=component.strip().lower(),
            host=str(entry.get("host") or LOCALHOST),
            base=str(entry.get("version") or DEFAULT_BASENAME),
            pkgtype=str(entry.get("pkgtype") or "").lower(),
            protected=protected,
            home=str(entry.get("home") or ""),
            pid_file=str(entry.get("pid_file") or ""),
            command=str(entry.get("command") or ""),
        )

    def __str__(self) -> str:
        return f"{self.component} {self.name}@{self.host}"

    def matches(self, components: Iterable[str]) -> bool:
        """Return ``True`` when the component or package type is in *components*."""
        names = set(components)
        return self.component in names or (bool(self.pkgtype) and self.pkgtype in names)

    def working_dir(self, host: HostTarget) -> str:
        """Return the instance home, ``<root>/<component>/<component>s/<name>`` by default."""
        return self.home or host.path(self.component, f"{self.component}s", self.name)

    def pid_path(self, host: HostTarget) -> str:
        """Return the pid file path."""
        return self.pid_file or posixpath.join(self.working_dir(host), f"{self.component}.pid")

    def log_path(self, host: HostTarget) -> str:
        """Return the file start-up output is appended to."""
        return posixpath.join(self.working_dir(host), f"{self.component}.txt")


def load_instances(registry: StateRegistry) -> list[Instance]:
    """Return every instance recorded in ``instances.yml``."""
    return [Instance.from_mapping(entry) for entry in registry.instance_entries()]


class StopOutcome(str, Enum):
    """Result of the stop escalation for one instance."""

    NOT_RUNNING = "not-running"
    NOT_PERMITTED = "not-permitted"
    STOPPED = "stopped"
    KILLED = "killed"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the process survived the escalation."""
        return self is not StopOutcome.FAILED

    @property
    def stopped_by_us(self) -> bool:
        """Return ``True`` when this call ended a running process."""
        return self in (StopOutcome.STOPPED, StopOutcome.KILLED)


class InstanceController:
    """Stop and start instances on the hosts of a :class:`Fleet`."""

    def __init__(
        self,
        fleet: Fleet,
        *,
        stop_config: StopConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the controller to *fleet* with the configured stop budget."""
        self.fleet = fleet
        self.stop_config = stop_config or StopConfig()
        self._sleep = sleep

    def host_for(self, instance: Instance) -> HostTarget:
        """Return the host *instance* runs on."""
        return self.fleet.get(instance.host)

    def pid(self, instance: Instance) -> int | None:
        """Return the pid recorded for *instance*, or ``None``."""
        host = self.host_for(instance)
        path = instance.pid_path(host)
        try:
            with host.open_read(path) as handle:
                raw = handle.read().decode("ascii", errors="replace").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw.split()[0])
        except (IndexError, ValueError):
            _LOG.warning("ignoring malformed pid file %s on %s", path, host)
            return None

    def is_running(self, instance: Instance) -> bool:
        """Return ``True`` when the recorded pid is alive."""
        pid = self.pid(instance)
        return pid is not None and self.host_for(instance).pid_alive(pid)

    def stop(self, instance: Instance) -> StopOutcome:
        """Terminate *instance*, escalating from SIGTERM to SIGKILL."""
        host = self.host_for(instance)
        pid = self.pid(instance)
        if pid is None or not host.pid_alive(pid):
            return StopOutcome.NOT_RUNNING

        try:
            host.signal(pid, signal.SIGTERM)
        except ProcessLookupError:
            return StopOutcome.NOT_RUNNING
        except PermissionError:
            _LOG.warning("not permitted to stop %s (pid %d)", instance, pid)
            return StopOutcome.NOT_PERMITTED

        for _ in range(self.stop_config.retries):
            self._sleep(self.stop_config.delay)
            if not host.pid_alive(pid):
                _LOG.info("%s stopped", instance)
                return StopOutcome.STOPPED
            try:
                host.signal(pid, signal.SIGTERM)
            except ProcessLookupError:
                return StopOutcome.STOPPED

        try:
            host.signal(pid, signal.SIGKILL)
        except ProcessLookupError:
            return StopOutcome.STOPPED
        self._sleep(self.stop_config.kill_delay)
        if host.pid_alive(pid):
            _LOG.error("%s (pid %d) still running after SIGKILL", instance, pid)
            return StopOutcome.FAILED
        _LOG.info("%s killed", instance)
        return StopOutcome.KILLED

    def start(self, instance: Instance) -> int:
        """Launch *instance* and record its pid; returns the pid."""
        host = self.host_for(instance)
        if not instance.command:
            raise InvalidArgsError(f"{instance} has no start command configured.")
        existing = self.pid(instance)
        if existing is not None and host.pid_alive(existing):
            _LOG.info("%s already running (pid %d)", instance, existing)
            return existing

        home = instance.working_dir(host)
        command = instance.command.format_map(
            {
                "root": host.root,
                "home": home,
                "name": instance.name,
                "component": instance.component,
                "base": host.package_dir(instance.pkgtype or instance.component, instance.base),
            }
        )
        pid = host.spawn(command, cwd=home, log_path=instance.log_path(host))
        with host.create(instance.pid_path(host), 0o644) as handle:
            handle.write(f"{pid}\n".encode("ascii"))
        _LOG.info("%s started with pid %d", instance, pid)
        return pid


__all__ = ["Instance", "InstanceController", "StopOutcome", "load_instances"]
