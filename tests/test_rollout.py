"""Tests for stop/activate/restart rollouts."""
from __future__ import annotations

import os
import signal
from pathlib import Path

import pytest
from conftest import ProcessHost, build_archive, install_versions, write_pid

from geneosctl.activation import ActivationManager
from geneosctl.archives import ArchiveSource
from geneosctl.components import ComponentRegistry
from geneosctl.config import AppConfig, StopConfig
from geneosctl.hosts import Fleet
from geneosctl.instances import InstanceController
from geneosctl.options import PackageOptions
from geneosctl.results import ResultStatus
from geneosctl.rollout import PROTECTED_WARNING, RolloutCoordinator
from geneosctl.state import StateRegistry
from geneosctl.unarchive import Installer, Unarchiver

PROBE_COMMAND = "{base}/netprobe.linux_64 -port 7036"


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    return StateRegistry(tmp_path / "registry")


@pytest.fixture
def coordinator(
    components: ComponentRegistry, process_host: ProcessHost, registry: StateRegistry
) -> RolloutCoordinator:
    fleet = Fleet([process_host])
    controller = InstanceController(
        fleet,
        stop_config=StopConfig(retries=1, delay=0.01, kill_delay=0.01),
        sleep=lambda _seconds: None,
    )
    return RolloutCoordinator(ActivationManager(components, fleet), controller, registry)


@pytest.fixture
def netprobes(geneos_root: Path) -> Path:
    return install_versions(
        geneos_root, "netprobe", ["5.10.0", "5.11.2"], links={"active_prod": "5.10.0"}
    )


def _probe(name: str, **extra: object) -> dict[str, object]:
    return {"name": name, "component": "netprobe", "command": PROBE_COMMAND, **extra}


def _options(**changes: object) -> PackageOptions:
    return PackageOptions(version="5.11.2").with_changes(**changes)


def test_update_restarts_unprotected_instances(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    netprobes: Path,
) -> None:
    registry.write_instances([_probe("probe1")])
    home = write_pid(geneos_root, "netprobe", "probe1", process_host.run(1234))
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options(restart=True))

    assert result.ok
    assert os.readlink(netprobes / "active_prod") == "5.11.2"
    assert [instance.name for instance in result.stopped] == ["probe1"]
    assert [instance.name for instance in result.restarted] == ["probe1"]
    assert process_host.signals == [(1234, signal.SIGTERM)]
    assert process_host.spawned == [
        (f"{netprobes}/active_prod/netprobe.linux_64 -port 7036", str(home))
    ]
    statuses = [(item.action, item.status) for item in result.to_results()]
    assert statuses == [
        ("activate", ResultStatus.CHANGED),
        ("restart probe1", ResultStatus.CHANGED),
    ]


def test_protected_instance_blocks_update(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    netprobes: Path,
) -> None:
    registry.write_instances([_probe("probe1", protected=True)])
    write_pid(geneos_root, "netprobe", "probe1", process_host.run(1234))
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options(restart=True))

    assert result.warning == PROTECTED_WARNING
    assert os.readlink(netprobes / "active_prod") == "5.10.0"
    assert process_host.signals == []
    assert process_host.spawned == []
    assert [item.status for item in result.to_results()] == [ResultStatus.WARNING]


def test_protection_is_checked_without_restart(
    coordinator: RolloutCoordinator, registry: StateRegistry, netprobes: Path
) -> None:
    registry.write_instances([_probe("probe1", protected=True)])

    result = coordinator.rollout_update(None, None, _options())

    assert result.warning == PROTECTED_WARNING
    assert os.readlink(netprobes / "active_prod") == "5.10.0"


def test_force_overrides_protection(
    coordinator: RolloutCoordinator, registry: StateRegistry, netprobes: Path
) -> None:
    registry.write_instances([_probe("probe1", protected=True)])
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options(force=True))

    assert not result.warning
    assert os.readlink(netprobes / "active_prod") == "5.11.2"


def test_protected_instances_elsewhere_do_not_block(
    coordinator: RolloutCoordinator, registry: StateRegistry, netprobes: Path
) -> None:
    registry.write_instances(
        [
            _probe("dev-probe", protected=True, version="active_dev"),
            {"name": "gw1", "component": "gateway", "protected": True},
        ]
    )
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options())

    assert result.matched == []
    assert os.readlink(netprobes / "active_prod") == "5.11.2"


def test_stopped_instances_are_restarted_when_another_cannot_stop(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    netprobes: Path,
) -> None:
    registry.write_instances([_probe("probe1"), _probe("probe2")])
    write_pid(geneos_root, "netprobe", "probe1", process_host.run(1111))
    write_pid(geneos_root, "netprobe", "probe2", process_host.run(2222, term_after=None))
    process_host.ignore_kill.add(2222)
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options(restart=True))

    assert not result.ok
    assert result.warning.startswith("Not updating")
    assert [instance.name for instance, _ in result.stop_failures] == ["probe2"]
    assert [instance.name for instance in result.restarted] == ["probe1"]
    assert os.readlink(netprobes / "active_prod") == "5.10.0"


def test_restart_failures_are_collected(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    netprobes: Path,
) -> None:
    registry.write_instances([{"name": "probe1", "component": "netprobe"}, _probe("probe2")])
    write_pid(geneos_root, "netprobe", "probe1", process_host.run(1111))
    write_pid(geneos_root, "netprobe", "probe2", process_host.run(2222))
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options(restart=True))

    assert os.readlink(netprobes / "active_prod") == "5.11.2"
    assert [instance.name for instance, _ in result.restart_failures] == ["probe1"]
    assert [instance.name for instance in result.restarted] == ["probe2"]
    assert not result.ok
    assert result.to_results().ok


def test_instances_not_running_are_left_stopped(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    netprobes: Path,
) -> None:
    registry.write_instances([_probe("probe1")])
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update("localhost", netprobe, _options(restart=True))

    assert result.ok
    assert result.stopped == []
    assert process_host.spawned == []
    assert os.readlink(netprobes / "active_prod") == "5.11.2"


def test_missing_version_is_a_warning_and_instances_restart(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    netprobes: Path,
) -> None:
    registry.write_instances([_probe("probe1")])
    write_pid(geneos_root, "netprobe", "probe1", process_host.run(1234))
    netprobe = coordinator.activation.components.get("netprobe")

    result = coordinator.rollout_update(
        "localhost", netprobe, _options(version="9.9.9", restart=True)
    )

    assert "9.9.9" in result.warning
    assert [instance.name for instance in result.restarted] == ["probe1"]
    assert os.readlink(netprobes / "active_prod") == "5.10.0"


def test_related_component_matches_family(
    coordinator: RolloutCoordinator, registry: StateRegistry, netprobes: Path
) -> None:
    registry.write_instances(
        [
            {"name": "san1", "component": "san", "pkgtype": "netprobe"},
            _probe("probe1"),
            {"name": "gw1", "component": "gateway"},
        ]
    )
    san = coordinator.activation.components.get("san")

    matched = coordinator.matching_instances("localhost", san, "active_prod")

    assert [instance.name for instance in matched] == ["san1", "probe1"]


def test_latest_gateway_rollout(
    coordinator: RolloutCoordinator,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
) -> None:
    basedir = install_versions(
        geneos_root, "gateway", ["5.10.0", "5.11.2"], links={"active_prod": "5.10.0"}
    )
    registry.write_instances(
        [{"name": "gw1", "component": "gateway", "command": "{base}/gateway2.linux_64"}]
    )
    write_pid(geneos_root, "gateway", "gw1", process_host.run(1234))
    gateway = coordinator.activation.components.get("gateway")
    options = PackageOptions(version="latest", basename="active_prod", restart=True)

    result = coordinator.rollout_update("localhost", gateway, options)

    assert result.ok
    assert not result.warning
    assert os.readlink(basedir / "active_prod") == "5.11.2"
    assert [instance.name for instance in result.restarted] == ["gw1"]


@pytest.fixture
def installer(
    coordinator: RolloutCoordinator, app_config: AppConfig, components: ComponentRegistry
) -> Installer:
    unarchiver = Unarchiver(components, coordinator.activation)
    source = ArchiveSource(app_config, components)
    return Installer(coordinator.activation.fleet, source, unarchiver)


def _archive_file(tmp_path: Path, component: str, version: str) -> str:
    path = tmp_path / f"geneos-{component}-{version}-linux-x64.tar.gz"
    path.write_bytes(build_archive([(f"{component}/{component}.linux_64", "file", b"bin")]))
    return str(path)


def test_install_update_moves_link_and_restarts_instances(
    coordinator: RolloutCoordinator,
    installer: Installer,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    netprobes: Path,
    tmp_path: Path,
) -> None:
    registry.write_instances([_probe("probe1")])
    write_pid(geneos_root, "netprobe", "probe1", process_host.run(1234))
    options = PackageOptions(source=_archive_file(tmp_path, "netprobe", "5.12.0"))

    results = coordinator.rollout_install(installer, "localhost", None, options)

    assert os.readlink(netprobes / "active_prod") == "5.12.0"
    assert process_host.signals == [(1234, signal.SIGTERM)]
    assert len(process_host.spawned) == 1
    assert [(item.action, item.status) for item in results] == [
        ("install", ResultStatus.CHANGED),
        ("activate", ResultStatus.UNCHANGED),
        ("activate", ResultStatus.CHANGED),
        ("restart probe1", ResultStatus.CHANGED),
    ]


def test_install_update_refuses_protected_instances(
    coordinator: RolloutCoordinator,
    installer: Installer,
    registry: StateRegistry,
    netprobes: Path,
    tmp_path: Path,
) -> None:
    registry.write_instances([_probe("probe1", protected=True)])
    options = PackageOptions(source=_archive_file(tmp_path, "netprobe", "5.12.0"))

    results = coordinator.rollout_install(installer, "localhost", None, options)

    assert [(item.status, item.detail) for item in results] == [
        (ResultStatus.WARNING, PROTECTED_WARNING)
    ]
    assert not (netprobes / "5.12.0").exists()
    assert os.readlink(netprobes / "active_prod") == "5.10.0"

    forced = coordinator.rollout_install(
        installer, "localhost", None, options.with_changes(force=True)
    )

    assert forced.ok
    assert os.readlink(netprobes / "active_prod") == "5.12.0"


def test_install_update_skips_rollout_when_link_is_new(
    coordinator: RolloutCoordinator,
    installer: Installer,
    registry: StateRegistry,
    process_host: ProcessHost,
    geneos_root: Path,
    tmp_path: Path,
) -> None:
    registry.write_instances([{"name": "gw1", "component": "gateway", "command": "gw"}])
    write_pid(geneos_root, "gateway", "gw1", process_host.run(1234))
    options = PackageOptions(source=_archive_file(tmp_path, "gateway", "5.12.0"))

    results = coordinator.rollout_install(installer, "localhost", None, options)

    assert os.readlink(geneos_root / "packages" / "gateway" / "active_prod") == "5.12.0"
    assert process_host.signals == []
    assert [item.action for item in results] == ["install", "activate"]
