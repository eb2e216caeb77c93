"""fleetctl CLI entry point."""

import asyncio
import json
import logging
import tomllib
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from fleetctl import __version__
from fleetctl.config import ConnectionProfile, FleetConfig, ProfileNotFound, load_config
from fleetctl.executor import ResultMap, dispatch
from fleetctl.inventory import Inventory, InventoryError, load_inventory
from fleetctl.logs import download_logs
from fleetctl.playbook import PlaybookError, PlaybookRunner, load_playbook
from fleetctl.ssh import RemoteResult
from fleetctl.targets import TargetError, TargetFilter, create_filter, resolve_targets
from fleetctl.transfer import pull, pull_directory, push


app = typer.Typer(
    name="fleetctl",
    help="fleetctl - Run commands and move files across a cluster's hosts.",
    no_args_is_help=True,
)

console = Console()

_SERVICES = typer.Option(None, "--services", "-s", help="Comma-separated service names.")
_COMPONENTS = typer.Option(None, "--components", "-c", help="Comma-separated component names.")
_HOSTS = typer.Option(None, "--hosts", help="Comma-separated public hostnames.")
_SERVER = typer.Option(False, "--server", help="Target the cluster manager host.")
_TIMEOUT = typer.Option(None, "--timeout", help="Per-host timeout in seconds.")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"fleetctl {__version__}")
        raise typer.Exit()


def _fail(exc: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(exc))}")
    raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file path."),
    inventory_path: Optional[Path] = typer.Option(None, "--inventory", "-i", help="Inventory JSON file."),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Connection profile name."),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level."),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """fleetctl - Run commands and move files across a cluster's hosts."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except (ValidationError, tomllib.TOMLDecodeError) as exc:
        _fail(exc)
    ctx.obj["inventory_path"] = inventory_path
    ctx.obj["profile"] = profile


def _config(ctx: typer.Context) -> FleetConfig:
    return ctx.obj["config"]


def _profile(ctx: typer.Context) -> ConnectionProfile:
    try:
        return _config(ctx).get_profile(ctx.obj.get("profile"))
    except ProfileNotFound as exc:
        _fail(exc)


def _inventory(ctx: typer.Context) -> Inventory:
    path = ctx.obj.get("inventory_path") or _config(ctx).inventory
    if path is None:
        _fail(InventoryError("No inventory configured. Set 'inventory' in the config or pass --inventory."))
    try:
        return load_inventory(Path(path))
    except InventoryError as exc:
        _fail(exc)


def _control_host(ctx: typer.Context) -> str | None:
    cluster = _config(ctx).cluster
    return cluster.hostname if cluster is not None else None


def _timeout(ctx: typer.Context, timeout: Optional[int]) -> int:
    return timeout if timeout is not None else _config(ctx).command_timeout


def _resolve(ctx: typer.Context, target_filter: TargetFilter, inventory: Inventory) -> set[str]:
    try:
        return resolve_targets(target_filter, inventory, _control_host(ctx))
    except TargetError as exc:
        _fail(exc)


def _targets(ctx: typer.Context, target_filter: TargetFilter) -> set[str]:
    targets = _resolve(ctx, target_filter, _inventory(ctx))
    if not targets:
        console.print("No hosts match the filter.")
        raise typer.Exit(code=1)
    return targets


def print_result(result: RemoteResult) -> None:
    """Print one host's output block."""
    console.print(f"{result.address} (done: {str(result.completed).lower()}) - output:", markup=False, highlight=False)
    if result.stdout:
        console.print(result.stdout, end="", markup=False, highlight=False)
    if result.stderr:
        console.print("std error:", markup=False, highlight=False)
        console.print(result.stderr, end="", markup=False, highlight=False)


def _report_failures(failures: dict[str, str]) -> None:
    for address, message in sorted(failures.items()):
        console.print(f"[red]{escape(address)}[/red] - {escape(message)}")


def _report_status(action: str, status: dict[str, bool]) -> None:
    for address, ok in sorted(status.items()):
        state = "[green]OK[/green]" if ok else "[red]FAILED[/red]"
        console.print(f"{escape(address)} - {action} {state}")
    if not all(status.values()):
        raise typer.Exit(code=1)


@app.command("hosts")
def list_hosts(
    ctx: typer.Context,
    services: Optional[str] = _SERVICES,
    components: Optional[str] = _COMPONENTS,
    hosts: Optional[str] = _HOSTS,
    server: bool = _SERVER,
) -> None:
    """Show the hosts a filter resolves to.

    With no filter every inventory host is listed.
    """
    inventory = _inventory(ctx)
    targets = _resolve(ctx, create_filter(services, components, hosts, server), inventory)
    if not targets:
        console.print("No hosts match the filter.")
        return

    by_ip = {host.ip: host for host in inventory.hosts}
    table = Table()
    table.add_column("Address")
    table.add_column("Hostname")
    table.add_column("State")
    for address in sorted(targets):
        host = by_ip.get(address)
        if host is None:
            table.add_row(address, "(cluster manager)", "-")
        else:
            table.add_row(address, host.public_host_name, host.host_state)
    console.print(table)


@app.command("run")
def run_command(
    ctx: typer.Context,
    command: str = typer.Argument(..., help="Shell command to run on each host."),
    services: Optional[str] = _SERVICES,
    components: Optional[str] = _COMPONENTS,
    hosts: Optional[str] = _HOSTS,
    server: bool = _SERVER,
    timeout: Optional[int] = _TIMEOUT,
) -> None:
    """Run a shell command on every filtered host concurrently.

    Each host's output is printed as soon as that host finishes. Hosts
    that cannot be reached are listed at the end and make the command
    exit with status 1, as do timeouts.
    """
    config = _config(ctx)
    profile = _profile(ctx)
    targets = _targets(ctx, create_filter(services, components, hosts, server))

    results: ResultMap = asyncio.run(
        dispatch(
            targets,
            profile,
            command,
            _timeout(ctx, timeout),
            strict_host_keys=config.strict_host_keys,
            on_result=print_result,
        )
    )
    _report_failures(results.failures)
    if results.failures or results.timed_out:
        raise typer.Exit(code=1)


@app.command("upload")
def upload_file(
    ctx: typer.Context,
    source: Path = typer.Argument(..., help="Local file."),
    target: str = typer.Argument(..., help="Remote destination path."),
    services: Optional[str] = _SERVICES,
    components: Optional[str] = _COMPONENTS,
    hosts: Optional[str] = _HOSTS,
    server: bool = _SERVER,
) -> None:
    """Copy a local file to every filtered host."""
    if not source.is_file():
        _fail(FileNotFoundError(f"{source} is not a file"))
    config = _config(ctx)
    profile = _profile(ctx)
    targets = _targets(ctx, create_filter(services, components, hosts, server))
    status = asyncio.run(push(targets, profile, source, target, strict_host_keys=config.strict_host_keys))
    _report_status("upload", status)


@app.command("download")
def download_file(
    ctx: typer.Context,
    remote: str = typer.Argument(..., help="Remote file path."),
    dest: Path = typer.Argument(..., help="Local destination folder."),
    services: Optional[str] = _SERVICES,
    components: Optional[str] = _COMPONENTS,
    hosts: Optional[str] = _HOSTS,
    server: bool = _SERVER,
) -> None:
    """Copy a remote file from every filtered host into DEST/<address>/."""
    config = _config(ctx)
    profile = _profile(ctx)
    targets = _targets(ctx, create_filter(services, components, hosts, server))
    status = asyncio.run(pull(targets, profile, remote, dest, strict_host_keys=config.strict_host_keys))
    _report_status("download", status)


@app.command("download-dir")
def download_directory(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Remote directory."),
    dest: Path = typer.Argument(..., help="Local destination folder."),
    name: Optional[str] = typer.Option(None, "--name", help="Archive name (default: directory name)."),
    services: Optional[str] = _SERVICES,
    components: Optional[str] = _COMPONENTS,
    hosts: Optional[str] = _HOSTS,
    server: bool = _SERVER,
    timeout: Optional[int] = _TIMEOUT,
) -> None:
    """Archive a remote directory on every filtered host and pull the archives."""
    config = _config(ctx)
    profile = _profile(ctx)
    targets = _targets(ctx, create_filter(services, components, hosts, server))
    archive_name = name or Path(source.rstrip("/")).name or "archive"
    status = asyncio.run(
        pull_directory(
            targets,
            profile,
            source,
            dest,
            archive_name,
            _timeout(ctx, timeout),
            strict_host_keys=config.strict_host_keys,
        )
    )
    _report_status("download", status)


@app.command("logs")
def logs_cmd(
    ctx: typer.Context,
    dest: Path = typer.Option(Path("."), "--dest", "-d", help="Local destination folder."),
    blueprint: Optional[Path] = typer.Option(
        None, "--blueprint", help="Exported cluster blueprint (JSON) used to locate component logs."
    ),
    services: Optional[str] = _SERVICES,
    components: Optional[str] = _COMPONENTS,
    hosts: Optional[str] = _HOSTS,
    server: bool = _SERVER,
    timeout: Optional[int] = _TIMEOUT,
) -> None:
    """Download agent, server or component logs.

    --server collects the cluster manager's logs. A service or component
    filter together with --blueprint collects those components' logs.
    Otherwise the agent logs of the filtered hosts are collected.
    """
    config = _config(ctx)
    profile = _profile(ctx)
    inventory = _inventory(ctx)

    blueprint_data = None
    if blueprint is not None:
        try:
            blueprint_data = json.loads(blueprint.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            _fail(exc)

    cluster_name = config.cluster.name if config.cluster is not None else "cluster"
    try:
        root = asyncio.run(
            download_logs(
                inventory,
                create_filter(services, components, hosts, server),
                profile,
                dest,
                cluster_name,
                _control_host(ctx),
                blueprint_data,
                _timeout(ctx, timeout),
                strict_host_keys=config.strict_host_keys,
            )
        )
    except TargetError as exc:
        _fail(exc)
    console.print(f"Logs saved to {escape(str(root))}")


@app.command("playbook")
def playbook_cmd(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Playbook YAML file."),
    timeout: Optional[int] = _TIMEOUT,
) -> None:
    """Run a playbook's tasks in order.

    All tasks are checked before the first one runs. Exits with status 1
    when any task failed.
    """
    config = _config(ctx)
    try:
        playbook = load_playbook(path)
    except PlaybookError as exc:
        _fail(exc)
    profile = _profile(ctx)
    inventory = _inventory(ctx)

    console.print(f"Executing playbook: {escape(playbook.name or path.name)}, file: {escape(str(path))}")
    runner = PlaybookRunner(
        inventory,
        profile,
        cluster=config.cluster,
        timeout=_timeout(ctx, timeout),
        strict_host_keys=config.strict_host_keys,
        on_result=print_result,
    )
    try:
        outcomes = asyncio.run(runner.run(playbook))
    except (PlaybookError, TargetError) as exc:
        _fail(exc)

    table = Table()
    table.add_column("Task")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Detail")
    for outcome in outcomes:
        status = "[red]FAILED[/red]" if outcome.failed else "[green]OK[/green]"
        table.add_row(escape(outcome.name), outcome.kind.value, status, escape(outcome.detail))
    console.print(table)

    if any(outcome.failed for outcome in outcomes):
        raise typer.Exit(code=1)


@app.command("profiles")
def list_profiles(ctx: typer.Context) -> None:
    """List configured connection profiles; the active one is starred."""
    config = _config(ctx)
    if not config.profiles:
        console.print("No connection profiles configured.")
        return

    active = ctx.obj.get("profile") or config.profile
    table = Table()
    table.add_column("")
    table.add_column("Profile")
    table.add_column("User")
    table.add_column("Port")
    table.add_column("Key")
    table.add_column("Proxy")
    for name, profile in sorted(config.profiles.items()):
        table.add_row(
            "*" if name == active else "",
            name,
            profile.username,
            str(profile.port),
            str(profile.key_path) if profile.key_path else "-",
            profile.proxy_address or "-",
        )
    console.print(table)
