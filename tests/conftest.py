"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import signal
import tarfile
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from geneosctl.components import ComponentRegistry, default_components
from geneosctl.config import AppConfig, load_config
from geneosctl.hosts import Fleet, LocalHost

# (name, kind, payload) where kind is "file", "dir" or "symlink"; payload is
# bytes for files and the link target for symlinks.
ArchiveEntry = tuple[str, str, "bytes | str"]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def geneos_root(tmp_path: Path) -> Path:
    root = tmp_path / "itrs"
    root.mkdir()
    return root


@pytest.fixture
def local_host(geneos_root: Path) -> LocalHost:
    return LocalHost(geneos_root)


@pytest.fixture
def fleet(local_host: LocalHost) -> Fleet:
    return Fleet([local_host])


@pytest.fixture
def components() -> ComponentRegistry:
    return default_components()


def install_versions(
    root: Path,
    component: str,
    versions: Iterable[str],
    *,
    links: dict[str, str] | None = None,
) -> Path:
    """Create version directories (and base links) under ``root/packages``."""
    basedir = root / "packages" / component
    for version in versions:
        (basedir / version).mkdir(parents=True, exist_ok=True)
    for basename, target in (links or {}).items():
        (basedir / basename).symlink_to(target)
    return basedir


def build_archive(entries: Iterable[ArchiveEntry]) -> bytes:
    """Return a gzipped tar stream containing *entries*."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, kind, payload in entries:
            info = tarfile.TarInfo(name)
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                archive.addfile(info)
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = str(payload)
                archive.addfile(info)
            else:
                data = payload if isinstance(payload, bytes) else str(payload).encode()
                info.size = len(data)
                info.mode = 0o755 if name.endswith(".sh") else 0o644
                archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def archive_factory() -> Callable[[Iterable[ArchiveEntry]], bytes]:
    return build_archive


@pytest.fixture
def app_config(tmp_path: Path, geneos_root: Path) -> AppConfig:
    return load_config(
        tmp_path / "missing.yml",
        env={},
        overrides={
            "geneos_root": str(geneos_root),
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "lock_timeout": 1.0,
            "stop": {"retries": 2, "delay": 0.01, "kill_delay": 0.01},
        },
    )


class ProcessHost(LocalHost):
    """Local filesystem with a simulated process table."""

    def __init__(self, root: Path, name: str = "localhost") -> None:
        super().__init__(root, name)
        self.alive: set[int] = set()
        self.term_after: dict[int, int] = {}
        self.ignore_kill: set[int] = set()
        self.forbidden: set[int] = set()
        self.signals: list[tuple[int, int]] = []
        self.spawned: list[tuple[str, str]] = []
        self.next_pid = 4000

    def run(self, pid: int, *, term_after: int | None = 1) -> int:
        """Mark *pid* alive; it exits after *term_after* SIGTERMs (never if ``None``)."""
        self.alive.add(pid)
        if term_after is not None:
            self.term_after[pid] = term_after
        return pid

    def signal(self, pid: int, sig: int) -> None:
        if sig:
            self.signals.append((pid, sig))
        if pid not in self.alive:
            raise ProcessLookupError(pid)
        if pid in self.forbidden:
            raise PermissionError(pid)
        if sig == signal.SIGTERM and pid in self.term_after:
            self.term_after[pid] -= 1
            if self.term_after[pid] <= 0:
                self.alive.discard(pid)
        elif sig == signal.SIGKILL and pid not in self.ignore_kill:
            self.alive.discard(pid)

    def spawn(self, command: str, *, cwd: str, log_path: str) -> int:
        self.spawned.append((command, cwd))
        pid = self.next_pid
        self.next_pid += 1
        self.alive.add(pid)
        return pid


@pytest.fixture
def process_host(geneos_root: Path) -> ProcessHost:
    return ProcessHost(geneos_root)


def write_pid(root: Path, component: str, name: str, pid: int) -> Path:
    """Create the default instance home for *name* holding *pid*."""
    home = root / component / f"{component}s" / name
    home.mkdir(parents=True, exist_ok=True)
    (home / f"{component}.pid").write_text(f"{pid}\n")
    return home
