"""Typer-powered command line for ``geneosctl``.

Commands are thin adapters: they build :class:`PackageOptions` from flags,
call the library workflows and render the per-target results.
"""
from __future__ import annotations

import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .activation import ActivationManager
from .archives import ArchiveSource
from .components import ComponentDescriptor, ComponentRegistry, default_components
from .config import AppConfig, ConfigError, load_config
from .errors import InvalidArgsError, NotExistError, PackageError
from .exit_codes import ExitCode
from .hosts import ALL_HOSTS, Fleet, HostTarget
from .instances import Instance, InstanceController, load_instances
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_logging
from .options import LATEST, PackageOptions
from .results import ResultSet, ResultStatus
from .rollout import RolloutCoordinator
from .state import StateRegistry, StateRegistryError
from .unarchive import Installer, Unarchiver

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to geneosctl's YAML config file.",
)

HOST_OPTION = typer.Option(
    ALL_HOSTS,
    "--host",
    "-H",
    help="Limit the operation to this host ('all' for every configured host).",
)

BASE_OPTION = typer.Option(
    None,
    "--base",
    "-b",
    help="Base link name to update (defaults to the configured base, active_prod).",
)

STATUS_STYLES = {
    ResultStatus.CHANGED: "[green]changed[/green]",
    ResultStatus.UNCHANGED: "unchanged",
    ResultStatus.SKIPPED: "[cyan]skipped[/cyan]",
    ResultStatus.WARNING: "[yellow]warning[/yellow]",
    ResultStatus.ERROR: "[red]error[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage Geneos release packages across local and remote hosts.

        Archives are fetched from the ITRS download service, a Nexus
        repository or a local cache, unpacked into versioned directories and
        activated by switching a base link such as active_prod.
        """
    ).strip(),
)
package_app = typer.Typer(help="Install, update and list Geneos release packages.")
app.add_typer(package_app, name="package")
instance_app = typer.Typer(help="Register, protect and remove Geneos instances.")
app.add_typer(instance_app, name="instance")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    components: ComponentRegistry
    fleet: Fleet
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    activation: ActivationManager
    installer: Installer
    rollout: RolloutCoordinator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    components = default_components()
    fleet = Fleet.from_config(config)
    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    activation = ActivationManager(components, fleet, locks=locks)
    unarchiver = Unarchiver(
        components,
        activation,
        locks=locks,
        local_username=config.local_username,
    )
    archives = ArchiveSource(config, components)
    installer = Installer(fleet, archives, unarchiver)
    controller = InstanceController(fleet, stop_config=config.stop)
    rollout = RolloutCoordinator(activation, controller, registry)
    runtime = RuntimeContext(
        config=config,
        components=components,
        fleet=fleet,
        registry=registry,
        locks=locks,
        logger=logger,
        activation=activation,
        installer=installer,
        rollout=rollout,
    )
    ctx.obj = runtime
    ctx.call_on_close(fleet.close)
    ctx.call_on_close(archives.close)
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the geneosctl version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output."),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_logging(verbose)
    if version:
        console.print(f"geneosctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(op: OperationScope, message: str, *, rc: int) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, context={"rc": rc})
    raise typer.Exit(code=rc)


def _component(runtime: RuntimeContext, name: str | None) -> ComponentDescriptor | None:
    if name is None or name == "any":
        return None
    return runtime.components.get(name)


def _host_selector(runtime: RuntimeContext, host: str) -> str:
    if host != ALL_HOSTS:
        runtime.fleet.get(host)
    return host


def _render_results(results: ResultSet) -> None:
    if not len(results):
        console.print("Nothing to do.")
        return
    table = Table("Host", "Component", "Action", "Status", "Detail", header_style="bold magenta")
    for item in results:
        table.add_row(
            item.host,
            item.component,
            item.action,
            STATUS_STYLES[item.status],
            escape(item.detail),
        )
    console.print(table)


def _finish(op: OperationScope, results: ResultSet, message: str) -> None:
    """Record the outcome of *results* and exit with the matching code."""
    context = {"results": results.to_list()}
    failures = results.failures
    warnings = [item.detail for item in results if item.status is ResultStatus.WARNING]
    if failures:
        op.error(message, errors=[item.detail for item in failures], context=context)
    elif warnings:
        op.warning(message, warnings=warnings, changed=len(results.changed), context=context)
    else:
        op.success(message, changed=len(results.changed), context=context)
    code = results.exit_code()
    if code is not ExitCode.OK:
        raise typer.Exit(code=int(code))


@package_app.command("install")
def package_install(
    ctx: typer.Context,
    component: str | None = typer.Argument(
        None,
        help="Component to install (omit for every component, or give a file).",
    ),
    sources: list[str] | None = typer.Argument(
        None,
        help="Archive files, directories or URLs to install from ('-' for stdin).",
    ),
    host: str = HOST_OPTION,
    base: str | None = BASE_OPTION,
    version: str = typer.Option(LATEST, "--version", "-V", help="Version to install."),
    local_only: bool = typer.Option(
        False,
        "--local",
        "-L",
        help="Only use archives already in the local download directory.",
    ),
    no_save: bool = typer.Option(
        False,
        "--nosave",
        "-n",
        help="Do not keep downloaded archives in the download directory.",
    ),
    download_only: bool = typer.Option(
        False,
        "--download",
        "-D",
        help="Only download archives into the local download directory.",
    ),
    update: bool = typer.Option(
        False,
        "--update",
        "-U",
        help="Move the base link to the new version, restarting unprotected instances.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-F",
        help="Also restart protected instances (implies --update).",
    ),
    override: str = typer.Option(
        "",
        "--override",
        "-T",
        help="Override the component and version as TYPE:VERSION.",
    ),
    username: str = typer.Option("", "--username", "-u", help="Download username."),
    password: str = typer.Option("", "--password", help="Download password."),
    platform_id: str = typer.Option(
        "",
        "--platform",
        help="Platform ID:SUFFIX, e.g. rhel:el8, for platform specific archives.",
    ),
    nexus: bool = typer.Option(False, "--nexus", help="Download from the Nexus repository."),
    snapshot: bool = typer.Option(
        False,
        "--snapshots",
        "-p",
        help="Use the Nexus snapshots repository (implies --nexus).",
    ),
) -> None:
    """Install Geneos release archives and activate them."""
    runtime = _get_runtime(ctx)
    source_list = list(sources or [])
    if component is not None and component not in runtime.components and component != "any":
        source_list.insert(0, component)
        component = None

    args = {
        "component": component,
        "sources": source_list,
        "host": host,
        "version": version,
        "local_only": local_only,
        "download_only": download_only,
        "update": update,
        "force": force,
    }
    with runtime.logger.operation(
        "package install",
        args=args,
        target={"kind": "package", "component": component or "all", "host": host},
    ) as op:
        try:
            descriptor = _component(runtime, component)
            selector = _host_selector(runtime, host)
            options = PackageOptions(
                version=version,
                basename=base or runtime.config.default_basename,
                force=force,
                local_only=local_only,
                no_save=no_save,
                override=override,
                username=username,
                password=password,
                platform_id=platform_id,
                download_type="nexus" if nexus or snapshot else "resources",
                download_base="snapshots" if snapshot else "releases",
                local_username=runtime.config.local_username,
            )
            if download_only:
                _check_download_only(source_list, local_only, no_save, update, force, override)
                op.add_step("download", detail=component or "all")
                results = runtime.installer.download(descriptor, options)
            else:
                results = ResultSet()
                for source in source_list or [""]:
                    op.add_step("install", detail=source or "download")
                    source_options = options.with_changes(source=source)
                    results.extend(
                        _install_source(
                            runtime, selector, descriptor, source_options, update=update or force
                        )
                    )
        except (PackageError, LockTimeoutError, StateRegistryError) as exc:
            rc = exc.exit_code if isinstance(exc, PackageError) else ExitCode.ENVIRONMENT
            _command_error(op, str(exc), rc=int(rc))
        except ValueError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        _render_results(results)
        _finish(op, results, "Package install completed.")


def _install_source(
    runtime: RuntimeContext,
    host: str,
    component: ComponentDescriptor | None,
    options: PackageOptions,
    *,
    update: bool,
) -> ResultSet:
    if update:
        return runtime.rollout.rollout_install(runtime.installer, host, component, options)
    return runtime.installer.install(host, component, options)


def _check_download_only(
    sources: list[str],
    local_only: bool,
    no_save: bool,
    update: bool,
    force: bool,
    override: str,
) -> None:
    if sources or local_only or no_save or update or force or override:
        raise InvalidArgsError("--download cannot be combined with sources or install options")


@package_app.command("update")
def package_update(
    ctx: typer.Context,
    component: str | None = typer.Argument(None, help="Component to update (omit for all)."),
    version_arg: str | None = typer.Argument(None, metavar="[VERSION]", help="Version."),
    host: str = HOST_OPTION,
    base: str | None = BASE_OPTION,
    version: str = typer.Option(LATEST, "--version", "-V", help="Version to activate."),
    force: bool = typer.Option(
        False,
        "--force",
        "-F",
        help="Update even when protected instances use the base link.",
    ),
    restart: bool = typer.Option(
        True,
        "--restart/--no-restart",
        "-R/-N",
        help="Stop instances using the base link and restart them afterwards.",
    ),
) -> None:
    """Point a base link at an installed version."""
    runtime = _get_runtime(ctx)
    requested = version_arg or version
    args = {
        "component": component,
        "version": requested,
        "host": host,
        "base": base,
        "force": force,
        "restart": restart,
    }
    with runtime.logger.operation(
        "package update",
        args=args,
        target={"kind": "package", "component": component or "all", "host": host},
    ) as op:
        try:
            descriptor = _component(runtime, component)
            selector = _host_selector(runtime, host)
            options = PackageOptions(
                version=requested,
                basename=base or runtime.config.default_basename,
                force=force,
                restart=restart,
            )
            outcome = runtime.rollout.rollout_update(selector, descriptor, options)
        except (PackageError, LockTimeoutError, StateRegistryError) as exc:
            rc = exc.exit_code if isinstance(exc, PackageError) else ExitCode.ENVIRONMENT
            _command_error(op, str(exc), rc=int(rc))
        except ValueError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        op.add_step(
            "rollout",
            detail={
                "matched": [instance.name for instance in outcome.matched],
                "stopped": [instance.name for instance in outcome.stopped],
                "restarted": [instance.name for instance in outcome.restarted],
            },
        )
        results = outcome.to_results()
        _render_results(results)
        _finish(op, results, "Package update completed.")


@package_app.command("ls")
def package_ls(
    ctx: typer.Context,
    component: str | None = typer.Argument(None, help="Component to list (omit for all)."),
    host: str = HOST_OPTION,
) -> None:
    """List installed versions and the base links pointing at them."""
    runtime = _get_runtime(ctx)
    try:
        descriptor = _component(runtime, component)
        hosts = runtime.fleet.select(host)
    except PackageError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc

    components = [descriptor] if descriptor is not None else runtime.components.installable()
    table = Table("Component", "Host", "Version", "Links", header_style="bold magenta")
    for target_host in hosts:
        for each in components:
            links = _links(runtime, target_host, each)
            for installed in runtime.activation.installed(target_host, each):
                table.add_row(
                    each.name,
                    target_host.name,
                    installed,
                    ", ".join(links.get(installed, [])),
                )
    console.print(table)


def _links(
    runtime: RuntimeContext,
    host: HostTarget,
    component: ComponentDescriptor,
) -> dict[str, list[str]]:
    """Map version to the base links that point at it."""
    links: dict[str, list[str]] = {}
    basedir = host.package_dir(component)
    try:
        names = host.listdir(basedir)
    except FileNotFoundError:
        return links
    for name in names:
        if name.startswith("."):
            continue
        target = runtime.activation.current(host, component, name)
        if target is not None:
            links.setdefault(target, []).append(name)
    return links


def _instance_operation_error(op: OperationScope, exc: Exception) -> NoReturn:
    if isinstance(exc, PackageError):
        _command_error(op, str(exc), rc=int(exc.exit_code))
    _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


@instance_app.command("ls")
def instance_ls(
    ctx: typer.Context,
    host: str = HOST_OPTION,
) -> None:
    """List registered instances."""
    runtime = _get_runtime(ctx)
    try:
        hostnames = {each.name for each in runtime.fleet.select(host)}
        instances = load_instances(runtime.registry)
    except (PackageError, StateRegistryError) as exc:
        console.print(f"[red]{exc}[/red]")
        rc = exc.exit_code if isinstance(exc, PackageError) else ExitCode.ENVIRONMENT
        raise typer.Exit(code=int(rc)) from exc

    table = Table("Name", "Component", "Host", "Base", "Protected", header_style="bold magenta")
    for instance in instances:
        if instance.host not in hostnames:
            continue
        table.add_row(
            instance.name,
            instance.component,
            instance.host,
            instance.base,
            "yes" if instance.protected else "",
        )
    console.print(table)


@instance_app.command("add")
def instance_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance name."),
    component: str = typer.Argument(..., help="Component the instance runs."),
    host: str = typer.Option("localhost", "--host", "-H", help="Host the instance runs on."),
    base: str | None = BASE_OPTION,
    pkgtype: str = typer.Option("", "--pkgtype", help="Package the instance runs from."),
    home: str = typer.Option("", "--home", help="Working directory of the instance."),
    command: str = typer.Option(
        "",
        "--command",
        help="Start command; {root}, {home}, {name}, {component} and {base} are expanded.",
    ),
    protect: bool = typer.Option(False, "--protect", "-p", help="Mark the instance protected."),
) -> None:
    """Register an instance so package updates can stop and restart it."""
    runtime = _get_runtime(ctx)
    entry: dict[str, object] = {
        "name": name,
        "component": component,
        "host": host,
        "version": base or runtime.config.default_basename,
        "protected": protect,
    }
    for key, value in (("pkgtype", pkgtype), ("home", home), ("command", command)):
        if value:
            entry[key] = value
    with runtime.logger.operation("instance add", args=entry) as op:
        try:
            runtime.fleet.get(host)
            runtime.components.get(component)
            if pkgtype:
                runtime.components.get(pkgtype)
            Instance.from_mapping(entry)
            if runtime.registry.get_instance(name, host=host) is not None:
                raise InvalidArgsError(f"Instance '{name}' on '{host}' is already registered.")
            runtime.registry.upsert_instance(entry)
        except (PackageError, StateRegistryError) as exc:
            _instance_operation_error(op, exc)
        console.print(f"[green]Registered {component} {name}@{host}.[/green]")
        op.success(f"Registered {name}.", changed=1)


@instance_app.command("protect")
def instance_protect(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance name."),
    host: str = typer.Option("localhost", "--host", "-H", help="Host the instance runs on."),
    unprotect: bool = typer.Option(False, "--unprotect", "-U", help="Remove the protection."),
) -> None:
    """Mark an instance protected (or not) against package updates."""
    runtime = _get_runtime(ctx)
    protected = not unprotect
    with runtime.logger.operation(
        "instance protect",
        args={"name": name, "host": host, "protected": protected},
    ) as op:
        try:
            entry = runtime.registry.get_instance(name, host=host)
            if entry is None:
                raise NotExistError(f"Instance '{name}' on '{host}' is not registered.")
            changed = entry.get("protected", False) is not protected
            if changed:
                runtime.registry.upsert_instance({**entry, "protected": protected})
        except (PackageError, StateRegistryError) as exc:
            _instance_operation_error(op, exc)
        state = "protected" if protected else "unprotected"
        console.print(f"{name}@{host} is {state}.")
        op.success(f"{name} {state}.", changed=int(changed))


@instance_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance name."),
    host: str = typer.Option("localhost", "--host", "-H", help="Host the instance runs on."),
    force: bool = typer.Option(
        False,
        "--force",
        "-F",
        help="Remove the instance even when it is protected.",
    ),
) -> None:
    """Remove an instance from the registry (its files are left in place)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"name": name, "host": host, "force": force},
    ) as op:
        try:
            entry = runtime.registry.get_instance(name, host=host)
            if entry is None:
                raise NotExistError(f"Instance '{name}' on '{host}' is not registered.")
            if entry.get("protected") is True and not force:
                raise InvalidArgsError(
                    f"Instance '{name}' on '{host}' is protected. Use --force to delete it."
                )
            runtime.registry.remove_instance(name, host=host)
        except (PackageError, StateRegistryError) as exc:
            _instance_operation_error(op, exc)
        console.print(f"Removed {name}@{host} from the registry.")
        op.success(f"Removed {name}.", changed=1)


def main() -> None:
    """Entry point for ``python -m geneosctl``."""
    app()


__all__ = ["app", "main"]
