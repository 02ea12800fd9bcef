"""Static descriptors for the Geneos product components.

The table is built explicitly by :func:`default_components` and handed to the
workflows that need it; nothing registers itself at import time.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .errors import InvalidArgsError


@dataclass(frozen=True, slots=True)
class ComponentDescriptor:
    """Per-component metadata used for downloads, unpacking and activation."""

    name: str
    aliases: tuple[str, ...] = ()
    related: tuple[str, ...] = ()
    archive_name: str = ""
    resources_path: str = ""
    nexus_artifact: str = ""
    strip_prefix: str | None = None

    def __post_init__(self) -> None:
        """Fill derived defaults from the canonical name."""
        if not self.archive_name:
            object.__setattr__(self, "archive_name", self.name)
        if not self.nexus_artifact:
            object.__setattr__(self, "nexus_artifact", f"geneos-{self.archive_name}")
        if self.strip_prefix is None:
            object.__setattr__(self, "strip_prefix", f"{self.name}/")

    def __str__(self) -> str:
        return self.name

    @property
    def installable(self) -> bool:
        """Return ``True`` when the component ships its own release archives."""
        return not self.related

    def names(self) -> tuple[str, ...]:
        """Return every name this component answers to."""
        return (self.name, self.archive_name, *self.aliases)

    def strip(self, member_name: str) -> str:
        """Remove the component specific leading path from an archive entry."""
        prefix = self.strip_prefix or ""
        if prefix and member_name.rstrip("/") == prefix.rstrip("/"):
            return ""
        if prefix and member_name.startswith(prefix):
            return member_name[len(prefix):]
        return member_name


class ComponentRegistry:
    """Ordered, read-only lookup table of :class:`ComponentDescriptor` values."""

    def __init__(self, components: Iterable[ComponentDescriptor]) -> None:
        """Index *components* by canonical name and alias."""
        self._ordered: tuple[ComponentDescriptor, ...] = tuple(components)
        self._index: dict[str, ComponentDescriptor] = {}
        for component in self._ordered:
            for name in component.names():
                key = name.lower()
                existing = self._index.get(key)
                if existing is not None and existing is not component:
                    raise ValueError(
                        f"Component name '{name}' is claimed by both "
                        f"'{existing.name}' and '{component.name}'."
                    )
                self._index[key] = component
        for component in self._ordered:
            for related in component.related:
                if related.lower() not in self._index:
                    raise ValueError(
                        f"Component '{component.name}' refers to unknown component '{related}'."
                    )

    def __iter__(self) -> Iterator[ComponentDescriptor]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._index

    def find(self, name: str) -> ComponentDescriptor | None:
        """Return the component called *name* (or aliased as *name*)."""
        return self._index.get(name.strip().lower())

    def get(self, name: str) -> ComponentDescriptor:
        """Return the component called *name* or raise :class:`InvalidArgsError`."""
        component = self.find(name)
        if component is None:
            raise InvalidArgsError(f"Unknown component type '{name}'.")
        return component

    def installable(self) -> list[ComponentDescriptor]:
        """Return components that ship their own release archives."""
        return [component for component in self._ordered if component.installable]

    def related(self, component: ComponentDescriptor) -> list[ComponentDescriptor]:
        """Return the descriptors *component* delegates activation to."""
        return [self.get(name) for name in component.related]

    def family(self, component: ComponentDescriptor) -> list[ComponentDescriptor]:
        """Return *component* together with its related components."""
        return [component, *self.related(component)]


def default_components() -> ComponentRegistry:
    """Return the built-in component table."""
    return ComponentRegistry(
        [
            ComponentDescriptor(
                name="gateway",
                aliases=("gateways",),
                resources_path="Gateway+2",
            ),
            ComponentDescriptor(
                name="netprobe",
                aliases=("netprobes", "probe", "probes"),
                resources_path="Netprobe",
            ),
            ComponentDescriptor(
                name="licd",
                aliases=("licds",),
                resources_path="Licence+Daemon",
            ),
            ComponentDescriptor(
                name="webserver",
                aliases=("webservers", "webdashboard", "dashboards"),
                archive_name="web-server",
                resources_path="Web+Dashboard",
                strip_prefix="",
            ),
            ComponentDescriptor(
                name="fa2",
                aliases=("fixanalyser", "fix-analyser", "fixanalyser2"),
                archive_name="fixanalyser2-netprobe",
                resources_path="Fix+Analyser+2+Netprobe",
                strip_prefix="fix-analyser2/",
            ),
            ComponentDescriptor(
                name="fileagent",
                aliases=("fileagents", "file-agents"),
                archive_name="file-agent",
                resources_path="File+Agent+for+Fix+Analyser",
                strip_prefix="agent/",
            ),
            ComponentDescriptor(
                name="san",
                aliases=("sans",),
                related=("netprobe", "fa2"),
            ),
            ComponentDescriptor(
                name="floating",
                aliases=("floatings", "float"),
                related=("netprobe",),
            ),
        ]
    )


__all__ = ["ComponentDescriptor", "ComponentRegistry", "default_components"]
