"""YAML registry of the Geneos instances geneosctl knows about.

The registry directory (``/var/lib/geneosctl/registry`` by default) holds
``instances.yml``::

    instances:
      - name: gw1
        component: gateway
        host: localhost
        version: active_prod
        protected: false

Writes go through a temporary file and :func:`os.replace` so readers never
see a half-written document.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

INSTANCES_FILE = "instances.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and write registry documents under :attr:`root`."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing or empty."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Instances ---------------------------------------------------------
    def instance_entries(self) -> list[dict[str, Any]]:
        """Return the raw instance mappings from ``instances.yml``."""
        data = self.read(INSTANCES_FILE, default={"instances": []})
        if not isinstance(data, Mapping):
            raise StateRegistryError(f"{self.path_for(INSTANCES_FILE)} must contain a mapping.")
        raw = data.get("instances") or []
        if not isinstance(raw, list):
            raise StateRegistryError("'instances' must be a list.")
        entries: list[dict[str, Any]] = []
        for index, entry in enumerate(raw):
            if not isinstance(entry, Mapping):
                raise StateRegistryError(f"instances[{index}] must be a mapping.")
            entries.append(dict(entry))
        return entries

    def write_instances(self, instances: Iterable[Mapping[str, object]]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": [dict(entry) for entry in instances]})

    def get_instance(self, name: str, *, host: str | None = None) -> dict[str, Any] | None:
        """Return the entry for *name* (optionally on *host*) if registered."""
        for entry in self.instance_entries():
            if entry.get("name") != name:
                continue
            if host is not None and entry.get("host", "localhost") != host:
                continue
            return entry
        return None

    def upsert_instance(self, entry: Mapping[str, object]) -> None:
        """Add *entry* or replace the entry with the same name and host."""
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise StateRegistryError("Instance entries require a non-empty 'name'.")
        host = entry.get("host", "localhost")
        stored: list[dict[str, Any]] = []
        replaced = False
        for existing in self.instance_entries():
            if existing.get("name") == name and existing.get("host", "localhost") == host:
                stored.append(dict(entry))
                replaced = True
            else:
                stored.append(existing)
        if not replaced:
            stored.append(dict(entry))
        self.write_instances(stored)

    def remove_instance(self, name: str, *, host: str = "localhost") -> None:
        """Remove the instance *name* on *host* from the registry."""
        entries = self.instance_entries()
        kept = [
            entry
            for entry in entries
            if not (entry.get("name") == name and entry.get("host", "localhost") == host)
        ]
        if len(kept) == len(entries):
            raise StateRegistryError(f"Instance '{name}' on '{host}' not found in registry")
        self.write_instances(kept)


__all__ = ["INSTANCES_FILE", "StateRegistry", "StateRegistryError"]
