"""The set of hosts geneosctl manages."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from ..errors import NotExistError
from .base import HostTarget
from .local import LOCALHOST, LocalHost
from .remote import RemoteHost

if TYPE_CHECKING:
    from ..config import AppConfig

ALL_HOSTS = "all"


class Fleet:
    """Ordered collection of hosts with an ``all`` wildcard."""

    def __init__(self, hosts: Iterable[HostTarget]) -> None:
        """Index *hosts* by name, keeping discovery order."""
        self._hosts: dict[str, HostTarget] = {}
        for host in hosts:
            if host.name in self._hosts:
                raise ValueError(f"Duplicate host name '{host.name}'.")
            if host.name == ALL_HOSTS:
                raise ValueError(f"'{ALL_HOSTS}' is reserved as the host wildcard.")
            self._hosts[host.name] = host

    @classmethod
    def from_config(cls, config: AppConfig) -> Fleet:
        """Build the local host plus every configured remote host."""
        hosts: list[HostTarget] = [LocalHost(config.geneos_root)]
        for entry in config.hosts:
            hosts.append(
                RemoteHost(
                    entry.name,
                    hostname=entry.hostname,
                    root=entry.geneos_root,
                    port=entry.port,
                    username=entry.username,
                    key_file=str(entry.key_file) if entry.key_file else None,
                    accept_unknown_hosts=entry.accept_unknown_hosts,
                )
            )
        return cls(hosts)

    def __iter__(self) -> Iterator[HostTarget]:
        return iter(self._hosts.values())

    def __len__(self) -> int:
        return len(self._hosts)

    @property
    def local(self) -> HostTarget:
        """Return the local host."""
        return self.get(LOCALHOST)

    def get(self, name: str) -> HostTarget:
        """Return the host called *name* or raise :class:`NotExistError`."""
        try:
            return self._hosts[name]
        except KeyError:
            raise NotExistError(f"Host '{name}' is not configured.") from None

    def select(self, name: str | None) -> list[HostTarget]:
        """Expand *name* (``None`` or ``all`` for every host) into hosts."""
        if name is None or name == ALL_HOSTS:
            return list(self._hosts.values())
        return [self.get(name)]

    def close(self) -> None:
        """Close every host connection."""
        for host in self._hosts.values():
            host.close()


__all__ = ["ALL_HOSTS", "Fleet"]
