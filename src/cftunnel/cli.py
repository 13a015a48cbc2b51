"""cftunnel command line interface."""

import asyncio
import sys
from collections.abc import Callable, Coroutine
from typing import IO, Any, TypeVar

import click
import pydantic
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .common.exceptions import CfTunnelError, OperationFailed
from .common.logging import setup_logging
from .config import Settings
from .daemon.logs import follow, tail
from .daemon.probe import DaemonProbe
from .engine.operations import DeleteReport, OperationEngine
from .engine.poller import StatusPoller
from .engine.status import RuntimeState, TunnelView
from .ephemeral import EphemeralRunner
from .registry.client import RegistryClient
from .releases import is_newer, pending_notice, refresh_latest_version, upgrade_command
from .service import select_adapter
from .state.paths import Paths
from .state.store import StateStore

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    RuntimeState.RUNNING: "green",
    RuntimeState.STARTING: "yellow",
    RuntimeState.STOPPING: "yellow",
    RuntimeState.STOPPED: "dim",
    RuntimeState.UNHEALTHY: "red",
    RuntimeState.ERROR: "red",
    RuntimeState.UNKNOWN: "dim",
}

# commands after which no release notice is printed (None is the dashboard)
QUIET_COMMANDS = {None, "dashboard", "update", "reset"}

TOKEN_HELP = """Create an API token at https://dash.cloudflare.com/profile/api-tokens with:
  Account > Cloudflare Tunnel > Edit
  Zone > DNS > Edit
  Zone > Zone > Read"""


def format_error(error: CfTunnelError) -> str:
    if isinstance(error, OperationFailed):
        return (
            f"{error.operation} {error.tunnel}: step '{error.step}' failed "
            f"[{error.kind}]: {error.cause}"
        )
    return f"[{error.kind}] {error}"


class CliError(click.ClickException):
    """Printed as ``✗ <message>`` on stderr; exits with status 1."""

    def show(self, file: IO[Any] | None = None) -> None:
        err_console.print(f"[red]✗[/red] {escape(self.format_message())}", soft_wrap=True)


class AppContext:
    """Components shared by every command of one invocation."""

    def __init__(
        self,
        settings: Settings,
        engine: OperationEngine | None = None,
        probe_factory: Callable[[], DaemonProbe] | None = None,
    ):
        self.settings = settings
        self.account: str | None = None
        self.paths = Paths(settings.config_dir)
        self.engine = engine or OperationEngine(
            StateStore(self.paths),
            select_adapter(settings, self.paths),
            self.registry_factory,
            self.paths,
        )
        self._probe_factory = probe_factory

    def registry_factory(self, api_token: str, account_id: str) -> RegistryClient:
        return RegistryClient(
            api_token,
            account_id,
            base_url=self.settings.api_base,
            timeout=self.settings.api_timeout,
            max_retries=self.settings.max_retries,
        )

    def probe(self) -> DaemonProbe:
        if self._probe_factory is not None:
            return self._probe_factory()
        return DaemonProbe(self.settings.probe_timeout, self.settings.metrics_timeout)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        try:
            return asyncio.run(coro)
        except CfTunnelError as e:
            raise CliError(format_error(e)) from e


pass_app = click.make_pass_decorator(AppContext)


def _ok(message: str) -> None:
    console.print(f"[green]✓[/green] {message}", soft_wrap=True)


def _print_report(report: DeleteReport) -> None:
    for outcome in report.outcomes:
        if outcome.ok:
            detail = f" ({outcome.detail})" if outcome.detail else ""
            console.print(f"  [green]✓[/green] {outcome.step}{escape(detail)}")
        else:
            console.print(f"  [red]✗[/red] {outcome.step}: {escape(outcome.detail)}")


def _status_text(view: TunnelView) -> str:
    style = STATUS_STYLES.get(view.status.state, "")
    text = escape(str(view.status))
    if view.tunnel.pending:
        text += escape(f" (pending: {', '.join(p.value for p in view.tunnel.pending)})")
    return f"[{style}]{text}[/{style}]" if style else text


@click.group(invoke_without_command=True)
@click.option("--account", "-a", "account", default=None, help="Account to use (default: the selected account)")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level (default: warning)",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.version_option(__version__, prog_name="cftunnel")
@click.pass_context
def main(ctx: click.Context, account: str | None, log_level: str | None, json_logs: bool) -> None:
    """Manage Cloudflare Tunnels from the terminal.

    Run without a command to open the dashboard.
    """
    if ctx.obj is None:
        try:
            settings = Settings.from_env(log_level=log_level)
        except pydantic.ValidationError as e:
            raise CliError(f"Invalid settings: {e}") from e
        ctx.obj = AppContext(settings)

    app: AppContext = ctx.obj
    app.account = account
    if log_level:
        app.settings.log_level = log_level
    setup_logging(level=app.settings.log_level, json_format=json_logs)

    if app.settings.update_check and ctx.invoked_subcommand not in QUIET_COMMANDS:
        ctx.call_on_close(lambda: _show_release_notice(app))
    if ctx.invoked_subcommand is None:
        ctx.invoke(dashboard)


def _show_release_notice(app: AppContext) -> None:
    notice = pending_notice(app.settings.update_cache)
    if notice:
        err_console.print(f"\n[yellow]{escape(notice)}[/yellow]", soft_wrap=True)


# Setup ----------------------------------------------------------------------------------


@main.command()
@click.option("--token", envvar="CLOUDFLARE_API_TOKEN", default=None, help="Cloudflare API token")
@click.option("--name", default="default", show_default=True, help="Local name for this account")
@pass_app
def init(app: AppContext, token: str | None, name: str) -> None:
    """Add a Cloudflare account (the first one becomes the default)."""
    if not token:
        console.print(TOKEN_HELP, style="dim")
        token = click.prompt("API token", hide_input=True)

    account = app.run(app.engine.register_account(token.strip(), name=name))
    _ok(f"Account '{account.name}' configured ({len(account.zones)} zones)")
    zone = account.default_zone
    if zone is not None:
        console.print(f"  Default zone: [bold]{zone.name}[/bold]")
        console.print("  Change it with: cftunnel zones default <domain>", style="dim")


# Tunnels ------------------------------------------------------------------------------------


@main.command()
@click.argument("name")
@click.argument("target")
@click.option("--zone", "-z", default=None, help="Zone (default: the account's default zone)")
@click.option("--start", "start_now", is_flag=True, help="Start the tunnel right away")
@click.option("--auto-start", is_flag=True, help="Start the tunnel at login")
@pass_app
def add(app: AppContext, name: str, target: str, zone: str | None, start_now: bool, auto_start: bool) -> None:
    """Create a managed tunnel NAME forwarding to TARGET (e.g. localhost:3000)."""
    result = app.run(
        app.engine.add(name, target, zone=zone, start=start_now, account=app.account, auto_start=auto_start)
    )
    tunnel = result.tunnel
    assert tunnel is not None
    _ok(f"Tunnel '{tunnel.name}' ready: {tunnel.public_url} -> {tunnel.target}")
    if not start_now:
        console.print(f"  Start it with: cftunnel start {tunnel.name}", style="dim")


@main.command()
@click.argument("name")
@pass_app
def start(app: AppContext, name: str) -> None:
    """Start a tunnel's background service."""
    result = app.run(app.engine.start(name, app.account))
    assert result.tunnel is not None
    _ok(f"Started '{result.tunnel.name}' at {result.tunnel.public_url}")


@main.command()
@click.argument("name")
@pass_app
def stop(app: AppContext, name: str) -> None:
    """Stop a tunnel's background service."""
    app.run(app.engine.stop(name, app.account))
    _ok(f"Stopped '{name}'")


@main.command()
@click.argument("name")
@pass_app
def restart(app: AppContext, name: str) -> None:
    """Restart a tunnel's background service."""
    app.run(app.engine.restart(name, app.account))
    _ok(f"Restarted '{name}'")


@main.command()
@click.argument("name")
@click.option("--target", "-t", default=None, help="New local target")
@click.option("--zone", "-z", default=None, help="Move the tunnel to another zone")
@pass_app
def edit(app: AppContext, name: str, target: str | None, zone: str | None) -> None:
    """Change a tunnel's target or zone."""
    if target is None and zone is None:
        raise click.UsageError("Nothing to change: pass --target and/or --zone")
    result = app.run(app.engine.edit(name, target=target, zone=zone, account=app.account))
    tunnel = result.tunnel
    assert tunnel is not None
    if not result.completed:
        console.print(f"'{name}' already matches, nothing to do", style="dim")
        return
    _ok(f"Updated '{tunnel.name}': {tunnel.public_url} -> {tunnel.target}")


@main.command()
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@pass_app
def delete(app: AppContext, name: str, yes: bool) -> None:
    """Delete a tunnel, its DNS record and its service."""
    if not yes:
        click.confirm(f"Delete tunnel '{name}' and its DNS record?", abort=True)
    try:
        report = asyncio.run(app.engine.delete(name, app.account))
    except OperationFailed as e:
        if isinstance(e.report, DeleteReport):
            _print_report(e.report)
        raise CliError(format_error(e)) from e
    except CfTunnelError as e:
        raise CliError(format_error(e)) from e
    _print_report(report)
    _ok(f"Deleted '{name}'")


@main.command("list")
@pass_app
def list_tunnels(app: AppContext) -> None:
    """List managed tunnels and their status."""

    async def poll() -> Any:
        async with app.probe() as probe:
            poller = StatusPoller(app.engine, probe, app.settings, account=app.account)
            return await poller.poll_once(check_health=False)

    snapshot = app.run(poll())
    if snapshot.error:
        raise CliError(snapshot.error)
    if not snapshot.views:
        console.print("No tunnels yet. Create one with: cftunnel add <name> <target>", style="dim")
        return

    table = Table()
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("URL")
    table.add_column("Target")
    table.add_column("Auto-start")
    for view in snapshot.views:
        tunnel = view.tunnel
        table.add_row(
            escape(tunnel.name),
            _status_text(view),
            escape(tunnel.hostname),
            escape(tunnel.target),
            "on" if tunnel.auto_start else "off",
        )
    console.print(table)


@main.command()
@click.argument("name")
@click.option("--follow", "-f", "follow_logs", is_flag=True, help="Keep printing new lines")
@click.option("--lines", "-n", default=50, show_default=True, help="Number of lines to show")
@pass_app
def logs(app: AppContext, name: str, follow_logs: bool, lines: int) -> None:
    """Show a tunnel's log."""
    try:
        snapshot = app.engine.snapshot()
        tunnel = snapshot.get_tunnel(name, snapshot.account(app.account).name)
    except CfTunnelError as e:
        raise CliError(format_error(e)) from e

    path = app.paths.log(tunnel.account, tunnel.name)
    existing = tail(path, lines)
    if not existing and not follow_logs:
        console.print("No logs yet", style="dim")
    for line in existing:
        click.echo(line)
    if not follow_logs:
        return

    async def stream() -> None:
        async for line in follow(path):
            click.echo(line)

    try:
        asyncio.run(stream())
    except KeyboardInterrupt:
        pass


@main.command()
@click.argument("args", nargs=-1, required=True)
@click.option("--zone", "-z", default=None, help="Zone (default: the account's default zone)")
@pass_app
def run(app: AppContext, args: tuple[str, ...], zone: str | None) -> None:
    """Run a temporary tunnel in the foreground: run [NAME] TARGET.

    Without NAME a random subdomain is used. Everything is removed on exit.
    """
    if len(args) > 2:
        raise click.UsageError("Expected [NAME] TARGET")
    name, target = (args[0], args[1]) if len(args) == 2 else (None, args[0])

    runner = EphemeralRunner(app.engine, app.settings.daemon_binary, echo=console.print)
    returncode = app.run(runner.run(target, name=name, zone=zone, account=app.account))
    if returncode:
        sys.exit(returncode)


@main.command()
@click.argument("name")
@click.argument("state", type=click.Choice(["on", "off"]))
@pass_app
def autostart(app: AppContext, name: str, state: str) -> None:
    """Turn starting a tunnel at login on or off."""
    app.run(app.engine.set_auto_start(name, state == "on", app.account))
    _ok(f"Auto-start {state} for '{name}'")


# Zones -----------------------------------------------------------------------------------------


@main.group(invoke_without_command=True)
@click.option("--refresh", is_flag=True, help="Fetch the zone list from Cloudflare")
@click.pass_context
def zones(ctx: click.Context, refresh: bool) -> None:
    """List the account's zones."""
    if ctx.invoked_subcommand is not None:
        return
    app: AppContext = ctx.obj
    if refresh:
        account = app.run(app.engine.refresh_zones(app.account))
    else:
        try:
            account = app.engine.snapshot().account(app.account)
        except CfTunnelError as e:
            raise CliError(format_error(e)) from e

    if not account.zones:
        console.print("No zones. Run `cftunnel zones --refresh`.", style="dim")
        return
    default = account.default_zone
    for zone in account.zones:
        marker = "[green]*[/green]" if default and zone.id == default.id else " "
        console.print(f"{marker} {escape(zone.name)}")


@zones.command("default")
@click.argument("domain")
@pass_app
def zones_default(app: AppContext, domain: str) -> None:
    """Set the default zone for new tunnels."""
    try:
        app.engine.set_default_zone(domain, app.account)
    except CfTunnelError as e:
        raise CliError(format_error(e)) from e
    _ok(f"Default zone set to {domain}")


# Accounts ----------------------------------------------------------------------------------------


@main.group(invoke_without_command=True)
@click.pass_context
def account(ctx: click.Context) -> None:
    """Manage accounts."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(account_list)


@account.command("list")
@pass_app
def account_list(app: AppContext) -> None:
    """List configured accounts."""
    try:
        snapshot = app.engine.snapshot()
    except CfTunnelError as e:
        raise CliError(format_error(e)) from e
    for acct in snapshot.accounts:
        marker = "[green]*[/green]" if acct.name == snapshot.default_account else " "
        tunnels = len(snapshot.tunnels_for(acct.name))
        label = f" ({escape(acct.display_name)})" if acct.display_name and acct.display_name != acct.name else ""
        console.print(f"{marker} {escape(acct.name)}{label} - {len(acct.zones)} zones, {tunnels} tunnels")


@account.command("select")
@click.argument("name")
@pass_app
def account_select(app: AppContext, name: str) -> None:
    """Make NAME the default account."""
    try:
        app.engine.select_account(name)
    except CfTunnelError as e:
        raise CliError(format_error(e)) from e
    _ok(f"Default account is now '{name}'")


@account.command("remove")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@pass_app
def account_remove(app: AppContext, name: str, yes: bool) -> None:
    """Remove an account and delete all of its tunnels."""
    if not yes:
        click.confirm(f"Remove account '{name}' and delete all of its tunnels?", abort=True)
    reports = app.run(app.engine.purge_account(name))
    for report in reports:
        console.print(f"{escape(report.tunnel)}:")
        _print_report(report)
    _ok(f"Removed account '{name}'")


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@pass_app
def reset(app: AppContext, yes: bool) -> None:
    """Delete every tunnel and all local configuration."""
    if not yes:
        click.confirm("Delete ALL tunnels and configuration?", abort=True)
    reports = app.run(app.engine.reset_all())
    failed = [r for r in reports if not r.ok]
    for report in failed:
        console.print(f"[yellow]Could not fully remove '{escape(report.tunnel)}':[/yellow]")
        _print_report(report)
    _ok(f"Reset complete ({len(reports)} tunnels removed)")


# Releases ---------------------------------------------------------------------------------------


@main.command()
@pass_app
def update(app: AppContext) -> None:
    """Check PyPI for a newer cftunnel release."""
    err_console.print("Checking for updates...", style="dim")
    latest = app.run(refresh_latest_version(app.settings.update_cache))
    if not is_newer(__version__, latest):
        _ok(f"cftunnel v{__version__} is the latest version")
        return
    console.print(f"Update available: v{__version__} -> v{escape(latest)}")
    console.print(f"  Run: {upgrade_command()}", style="dim")


@main.command()
@pass_app
def dashboard(app: AppContext) -> None:
    """Open the interactive dashboard."""
    from .tui import DashboardApp

    app.paths.config_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(level=app.settings.log_level, log_file=str(app.settings.log_file), stream=None)
    DashboardApp(app).run()
