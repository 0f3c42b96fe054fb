"""Command line interface for autotunnel."""

import asyncio
import functools
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .common.exceptions import AutotunnelError
from .common.logging import setup_logging
from .common.utils import expand_home
from .config import TunnelSettings, add_forward, load_config, remove_forward, save_config
from .context import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DATA_DIR,
    EVENT_LOG_FILE,
    KNOWN_HOSTS_FILE,
    METRICS_FILE,
    TunnelContext,
)
from .doctor import DoctorStatus, run_doctor, worst_status
from .logsink import FileLogSink, parse_log_line
from .runner import serve
from .supervisor.metrics import MetricsFile
from .supervisor.models import MetricsSnapshot
from .transport import AsyncSSHTransport
from .trust import HostTrustStore, KnownHostsFile

console = Console()

_STATUS_STYLES = {
    DoctorStatus.OK: "green",
    DoctorStatus.WARN: "yellow",
    DoctorStatus.ERROR: "red",
}


@dataclass
class CliState:
    config_path: Path
    data_dir: Path

    def load_settings(self) -> TunnelSettings:
        return load_config(self.config_path)

    def trust_store(self) -> HostTrustStore:
        return HostTrustStore(KnownHostsFile(self.data_dir / KNOWN_HOSTS_FILE))


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn autotunnel errors into a clean ``Error: ...`` exit."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except AutotunnelError as e:
            raise click.ClickException(str(e)) from e

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="autotunnel")
@click.option(
    "--config",
    "-c",
    "config_path",
    default=DEFAULT_CONFIG_PATH,
    envvar="AUTOTUNNEL_CONFIG",
    show_default=True,
    help="Path to the YAML config file.",
)
@click.option(
    "--data-dir",
    default=DEFAULT_DATA_DIR,
    envvar="AUTOTUNNEL_DATA_DIR",
    show_default=True,
    help="Directory holding known_hosts, the event log and metrics.",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
@click.option("--json-logs", is_flag=True, help="Emit structured logs as JSON.")
@click.pass_context
def cli(ctx: click.Context, config_path: str, data_dir: str, log_level: str, json_logs: bool):
    """autotunnel - keep an SSH port-forward tunnel alive."""
    setup_logging(level=log_level, json_format=json_logs)
    ctx.obj = CliState(config_path=expand_home(config_path), data_dir=expand_home(data_dir))


@cli.command()
@click.pass_obj
@handle_errors
def run(state: CliState):
    """Run the tunnel in the foreground until interrupted.

    Send SIGHUP to reload the config file.
    """
    settings = state.load_settings()
    context = TunnelContext.create(settings, data_dir=state.data_dir, config_path=state.config_path)
    asyncio.run(serve(context, AsyncSSHTransport()))


@cli.command()
@click.pass_obj
def doctor(state: CliState):
    """Check the config, key, forwards and remote reachability."""
    try:
        text = state.config_path.read_text()
    except OSError as e:
        text = None
        click.echo(f"Cannot read {state.config_path}: {e}", err=True)

    snapshot = MetricsFile(state.data_dir / METRICS_FILE).load()
    items = run_doctor(
        text,
        data_dir=state.data_dir,
        last_error_class=snapshot.last_error_class if snapshot else None,
    )

    table = Table(title="autotunnel doctor")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for item in items:
        style = _STATUS_STYLES[item.status]
        table.add_row(item.title, f"[{style}]{item.status.value}[/{style}]", item.detail)
    console.print(table)

    if worst_status(items) == DoctorStatus.ERROR:
        raise SystemExit(1)


@cli.command()
@click.pass_obj
def metrics(state: CliState):
    """Print the last recorded metrics as key=value lines."""
    snapshot = MetricsFile(state.data_dir / METRICS_FILE).load() or MetricsSnapshot()
    for item in snapshot.to_items():
        click.echo(f"{item.key}={item.value}")


@cli.command()
@click.option("--lines", "-n", default=50, show_default=True, type=click.IntRange(min=1))
@click.option("--page", "-p", default=0, show_default=True, type=click.IntRange(min=0))
@click.option("--level", default=None, help="Only show lines at this level.")
@click.pass_obj
def logs(state: CliState, lines: int, page: int, level: str | None):
    """Show the event log, newest page first."""
    sink = FileLogSink(state.data_dir / EVENT_LOG_FILE)
    for raw in sink.load_page(page * lines, lines):
        parsed = parse_log_line(raw)
        if parsed is None:
            continue
        if level and parsed.level != level.upper():
            continue
        click.echo(parsed.to_line())


@cli.group()
def trust():
    """Inspect or reset pinned host keys."""


@trust.command(name="list")
@click.pass_obj
@handle_errors
def trust_list(state: CliState):
    """List pinned host keys."""
    entries = state.trust_store().entries()
    if not entries:
        click.echo("No pinned host keys.")
        return
    table = Table(title="Pinned host keys")
    table.add_column("Host", style="cyan")
    table.add_column("Key type", style="green")
    table.add_column("Origin")
    for entry in entries:
        table.add_row(entry.hostname, entry.key_type, entry.origin)
    console.print(table)


@trust.command(name="reset")
@click.argument("hostname", required=False)
@click.option("--all", "reset_all", is_flag=True, help="Forget every pinned key.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
@handle_errors
def trust_reset(state: CliState, hostname: str | None, reset_all: bool, yes: bool):
    """Forget the pinned key for HOSTNAME (or all of them with --all)."""
    if not hostname and not reset_all:
        raise click.UsageError("Give a HOSTNAME or --all.")
    if hostname and reset_all:
        raise click.UsageError("HOSTNAME and --all are mutually exclusive.")
    if reset_all and not yes:
        click.confirm("Forget every pinned host key?", abort=True)
    removed = state.trust_store().reset(None if reset_all else hostname)
    click.echo(f"Removed {removed} pinned key(s).")


@cli.group()
def forwards():
    """List or edit local forwards in the config file."""


@forwards.command(name="list")
@click.pass_obj
@handle_errors
def forwards_list(state: CliState):
    """List configured local forwards."""
    for spec in state.load_settings().local_forwards:
        click.echo(spec)


@forwards.command(name="add")
@click.argument("spec")
@click.pass_obj
@handle_errors
def forwards_add(state: CliState, spec: str):
    """Add SPEC (localHost:localPort:remoteHost:remotePort)."""
    settings = state.load_settings()
    updated = add_forward(settings, spec)
    if updated is settings:
        click.echo("Forward already configured.")
        return
    save_config(state.config_path, updated)
    click.echo(f"Added {updated.local_forwards[-1]}. Send SIGHUP to a running tunnel to apply.")


@forwards.command(name="remove")
@click.argument("spec")
@click.pass_obj
@handle_errors
def forwards_remove(state: CliState, spec: str):
    """Remove SPEC from the config file."""
    updated = remove_forward(state.load_settings(), spec)
    save_config(state.config_path, updated)
    click.echo(f"Removed {spec}. Send SIGHUP to a running tunnel to apply.")


if __name__ == "__main__":
    cli()
