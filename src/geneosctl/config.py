"""Configuration loader for geneosctl.

Values are read from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/geneosctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``GENEOSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GENEOSCTL_DOWNLOAD__USERNAME=jane
    export GENEOSCTL_STOP__RETRIES=5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load geneosctl configuration. Install with "
        "`pip install geneosctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "GENEOSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

RESOURCES_URL = "https://resources.itrsgroup.com/download/latest/"
NEXUS_URL = "https://nexus.itrsgroup.com/service/rest/v1/search/assets/download"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DownloadConfig:
    """Download backends and the credentials used against them."""

    url: str = RESOURCES_URL
    username: str = ""
    password: str = ""
    nexus_url: str = NEXUS_URL
    nexus_group: str = "com.itrsgroup.geneos"
    timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password masked)."""
        return {
            "url": self.url,
            "username": self.username,
            "password": "********" if self.password else "",
            "nexus_url": self.nexus_url,
            "nexus_group": self.nexus_group,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class StopConfig:
    """Stop escalation budget used around rollouts."""

    retries: int = 10
    delay: float = 0.25
    kill_delay: float = 0.25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"retries": self.retries, "delay": self.delay, "kill_delay": self.kill_delay}


@dataclass(frozen=True)
class HostConfig:
    """A remote host reachable over SSH."""

    name: str
    hostname: str
    geneos_root: str
    port: int = 22
    username: str | None = None
    key_file: Path | None = None
    accept_unknown_hosts: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "hostname": self.hostname,
            "geneos_root": self.geneos_root,
            "port": self.port,
            "username": self.username,
            "key_file": str(self.key_file) if self.key_file else None,
            "accept_unknown_hosts": self.accept_unknown_hosts,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for geneosctl."""

    config_file: Path
    geneos_root: Path
    cache_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    default_basename: str
    local_username: str
    download: DownloadConfig
    stop: StopConfig
    hosts: tuple[HostConfig, ...]

    @property
    def downloads_dir(self) -> Path:
        """Return ``<cache_root>/packages/downloads``."""
        return self.cache_root / "packages" / "downloads"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "geneos_root": str(self.geneos_root),
            "cache_root": str(self.cache_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "default_basename": self.default_basename,
            "local_username": self.local_username,
            "download": self.download.to_dict(),
            "stop": self.stop.to_dict(),
            "hosts": [host.to_dict() for host in self.hosts],
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/geneosctl/config.yml",
    "geneos_root": "/opt/itrs",
    "cache_root": None,  # derived from geneos_root when absent
    "state_dir": "/var/lib/geneosctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/geneosctl",
    "runtime_dir": "/run/geneosctl",
    "lock_timeout": 30.0,
    "default_basename": "active_prod",
    "local_username": None,
    "download": {
        "url": RESOURCES_URL,
        "username": "",
        "password": "",
        "nexus_url": NEXUS_URL,
        "nexus_group": "com.itrsgroup.geneos",
        "timeout": 60.0,
    },
    "stop": {
        "retries": 10,
        "delay": 0.25,
        "kill_delay": 0.25,
    },
    "hosts": [],
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_DOWNLOAD_KEYS = {"url", "username", "password", "nexus_url", "nexus_group", "timeout"}
ALLOWED_STOP_KEYS = {"retries", "delay", "kill_delay"}
ALLOWED_HOST_KEYS = {
    "name",
    "hostname",
    "geneos_root",
    "port",
    "username",
    "key_file",
    "accept_unknown_hosts",
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged, resolved_env)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    basename = raw.get("default_basename")
    if not isinstance(basename, str) or not basename.strip() or "/" in basename:
        raise ConfigError("default_basename must be a non-empty name without '/'.")

    download_map = _as_dict(raw.get("download"), "download")
    unknown = set(download_map.keys()) - ALLOWED_DOWNLOAD_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown download configuration keys: {joined}.")

    stop_map = _as_dict(raw.get("stop"), "stop")
    unknown = set(stop_map.keys()) - ALLOWED_STOP_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown stop configuration keys: {joined}.")
    retries = _expect_int(stop_map.get("retries"), "stop.retries", default=10)
    if retries < 0:
        raise ConfigError("stop.retries must be non-negative.")

    hosts = raw.get("hosts")
    if hosts is not None:
        for index, entry in enumerate(_as_sequence(hosts, "hosts")):
            mapping = _as_dict(entry, f"hosts[{index}]")
            unknown = set(mapping.keys()) - ALLOWED_HOST_KEYS
            if unknown:
                joined = ", ".join(sorted(unknown))
                raise ConfigError(f"Unknown keys for hosts[{index}]: {joined}.")
            for required in ("name", "hostname", "geneos_root"):
                value = mapping.get(required)
                if not isinstance(value, str) or not value.strip():
                    raise ConfigError(f"hosts[{index}].{required} must be a non-empty string.")
            if mapping["name"] in ("localhost", "all"):
                raise ConfigError(f"hosts[{index}].name '{mapping['name']}' is reserved.")


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    geneos_root = _to_path(raw.get("geneos_root"))
    cache_root_value = raw.get("cache_root")
    cache_root = _to_path(cache_root_value) if cache_root_value else geneos_root
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    local_username_value = raw.get("local_username")
    if local_username_value:
        local_username = str(local_username_value)
    else:
        local_username = env.get("USER") or env.get("LOGNAME") or ""

    download_mapping = _as_dict(raw.get("download"), "download")
    download = DownloadConfig(
        url=str(download_mapping.get("url") or RESOURCES_URL),
        username=str(download_mapping.get("username") or ""),
        password=str(download_mapping.get("password") or ""),
        nexus_url=str(download_mapping.get("nexus_url") or NEXUS_URL),
        nexus_group=str(download_mapping.get("nexus_group") or "com.itrsgroup.geneos"),
        timeout=_expect_positive_float(
            download_mapping.get("timeout"),
            "download.timeout",
            default=60.0,
        ),
    )

    stop_mapping = _as_dict(raw.get("stop"), "stop")
    stop = StopConfig(
        retries=_expect_int(stop_mapping.get("retries"), "stop.retries", default=10),
        delay=_expect_positive_float(stop_mapping.get("delay"), "stop.delay", default=0.25),
        kill_delay=_expect_positive_float(
            stop_mapping.get("kill_delay"),
            "stop.kill_delay",
            default=0.25,
        ),
    )

    hosts: list[HostConfig] = []
    for index, entry in enumerate(_as_sequence(raw.get("hosts") or [], "hosts")):
        mapping = _as_dict(entry, f"hosts[{index}]")
        key_file_value = mapping.get("key_file")
        username_value = mapping.get("username")
        hosts.append(
            HostConfig(
                name=str(mapping["name"]).strip(),
                hostname=str(mapping["hostname"]).strip(),
                geneos_root=str(mapping["geneos_root"]).strip(),
                port=_expect_int(mapping.get("port"), f"hosts[{index}].port", default=22),
                username=str(username_value) if username_value else None,
                key_file=_to_path(key_file_value) if key_file_value else None,
                accept_unknown_hosts=bool(mapping.get("accept_unknown_hosts", False)),
            )
        )

    return AppConfig(
        config_file=config_file,
        geneos_root=geneos_root,
        cache_root=cache_root,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        default_basename=str(raw.get("default_basename", "active_prod")),
        local_username=local_username,
        download=download,
        stop=stop,
        hosts=tuple(hosts),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DownloadConfig",
    "HostConfig",
    "StopConfig",
    "load_config",
]
