"""Interactive dashboard."""

import webbrowser
from collections.abc import Awaitable, Callable
from typing import Any

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, Header, Static

from ..cli import AppContext, format_error
from ..common.exceptions import CfTunnelError, DaemonUnreachableError, OperationCancelledError
from ..common.logging import get_logger
from ..daemon.probe import DaemonProbe
from ..engine.operations import CancelToken
from ..engine.poller import PollSnapshot, StatusPoller
from ..engine.status import RuntimeState, TunnelStatus, TunnelView
from ..notify import send_notification
from ..service.base import ServiceState
from ..state.models import TunnelMode
from .screens import ConfirmScreen, TunnelForm, TunnelFormScreen

logger = get_logger(__name__)

Operation = Callable[[CancelToken], Awaitable[Any]]

STATE_STYLES = {
    RuntimeState.RUNNING: "green",
    RuntimeState.STARTING: "yellow",
    RuntimeState.STOPPING: "yellow",
    RuntimeState.UNHEALTHY: "red",
    RuntimeState.ERROR: "red",
}


class DashboardApp(App[None]):
    """Live view of every tunnel of one account, with actions bound to keys."""

    TITLE = "cftunnel"
    CSS = """
    #tunnels { height: 1fr; }
    #details { height: auto; min-height: 6; padding: 0 1; border-top: solid $accent; }
    #status { height: 1; padding: 0 1; background: $boost; }
    .dialog { width: 60; height: auto; padding: 1 2; border: thick $accent; background: $surface; }
    .dialog-title { text-style: bold; margin-bottom: 1; }
    .buttons { height: auto; margin-top: 1; }
    .error { color: $error; }
    ConfirmScreen, TunnelFormScreen { align: center middle; }
    """

    BINDINGS = [
        Binding("s", "start", "Start"),
        Binding("x", "stop", "Stop"),
        Binding("r", "restart", "Restart"),
        Binding("a", "add", "Add"),
        Binding("e", "edit", "Edit"),
        Binding("d", "delete", "Delete"),
        Binding("c", "copy_url", "Copy URL"),
        Binding("o", "open_url", "Open"),
        Binding("t", "toggle_autostart", "Auto-start"),
        Binding("i", "import", "Import"),
        Binding("h", "check_health", "Health"),
        Binding("tab", "next_account", "Account", priority=True),
        Binding("escape", "cancel", "Cancel"),
        Binding("q", "quit", "Quit"),
    ]

    def __init__(self, context: AppContext):
        super().__init__()
        self.context = context
        self.engine = context.engine
        self.account = context.account
        self.views: tuple[TunnelView, ...] = ()
        self.errors: dict[tuple[str, str], str] = {}
        self.poller: StatusPoller | None = None
        self._probe: DaemonProbe | None = None
        self._unsubscribe: Any = None
        # in-flight operations and the tunnel each one acts on (None for add and import)
        self._operations: dict[CancelToken, tuple[str, str] | None] = {}

    def compose(self) -> ComposeResult:
        yield Header()
        yield DataTable(id="tunnels", cursor_type="row", zebra_stripes=True)
        yield Static("", id="details")
        yield Static("", id="status")
        yield Footer()

    async def on_mount(self) -> None:
        table = self.query_one("#tunnels", DataTable)
        table.add_columns("Name", "Status", "URL", "Target", "Requests", "Activity")
        self._probe = self.context.probe()
        self._start_poller()

    async def on_unmount(self) -> None:
        await self._stop_poller()
        if self._probe is not None:
            await self._probe.aclose()

    # Polling -------------------------------------------------------------------------

    def _start_poller(self) -> None:
        assert self._probe is not None
        try:
            self.sub_title = self.engine.snapshot().account(self.account).name
        except CfTunnelError as e:
            self.set_status(str(e), error=True)
        self.poller = StatusPoller(
            self.engine,
            self._probe,
            self.context.settings,
            account=self.account,
            notifier=send_notification,
            include_ephemeral=True,
        )
        self._unsubscribe = self.poller.subscribe(self.on_snapshot)
        self.poller.start()

    async def _stop_poller(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.poller is not None:
            await self.poller.stop()
            self.poller = None

    def on_snapshot(self, snapshot: PollSnapshot) -> None:
        if snapshot.error:
            self.set_status(snapshot.error, error=True)
        for event in snapshot.events:
            self.notify(event.message, title=event.title, severity="information" if "Up" in event.title else "warning")
        self.views = snapshot.views
        self.render_table()

    def render_table(self) -> None:
        table = self.query_one("#tunnels", DataTable)
        row = table.cursor_row
        table.clear()
        for view in self.views:
            tunnel = view.tunnel
            status = self._display_status(view)
            style = STATE_STYLES.get(status.state)
            label = escape(str(status))
            if tunnel.mode is TunnelMode.EPHEMERAL:
                label += " (run)"
            requests = str(view.metrics.total_requests) if view.metrics else "-"
            table.add_row(
                tunnel.name,
                f"[{style}]{label}[/{style}]" if style else label,
                tunnel.hostname,
                tunnel.target,
                requests,
                view.sparkline,
            )
        if self.views:
            table.move_cursor(row=min(max(row, 0), len(self.views) - 1))
        self.render_details()

    def _display_status(self, view: TunnelView) -> TunnelStatus:
        error = self.errors.get(view.key)
        if error is not None and view.operation is None:
            return TunnelStatus(state=RuntimeState.ERROR, reason=error)
        return view.status

    def render_details(self) -> None:
        details = self.query_one("#details", Static)
        view = self.selected
        if view is None:
            details.update("No tunnels. Press [b]a[/b] to add one.")
            return
        tunnel = view.tunnel
        lines = [
            f"[b]{escape(tunnel.name)}[/b]  {escape(tunnel.public_url)} -> {escape(tunnel.target)}",
            f"Status: {escape(str(self._display_status(view)))}   Health: {view.health.value}"
            f"   Auto-start: {'on' if tunnel.auto_start else 'off'}",
        ]
        if tunnel.pending:
            lines.append(f"Pending: {', '.join(p.value for p in tunnel.pending)}")
        if view.metrics is not None:
            m = view.metrics
            lines.append(
                f"Requests: {m.total_requests}  Errors: {m.request_errors}  "
                f"Connections: {m.ha_connections}  Edge: {m.locations or '-'}"
            )
        if tunnel.remote_id:
            lines.append(f"[dim]Tunnel id: {tunnel.remote_id}[/dim]")
        details.update("\n".join(lines))

    def on_data_table_row_highlighted(self) -> None:
        self.render_details()

    def set_status(self, message: str, error: bool = False) -> None:
        text = escape(message)
        self.query_one("#status", Static).update(f"[red]{text}[/red]" if error else text)

    @property
    def selected(self) -> TunnelView | None:
        if not self.views:
            return None
        row = self.query_one("#tunnels", DataTable).cursor_row
        if 0 <= row < len(self.views):
            return self.views[row]
        return None

    def _selected_managed(self) -> TunnelView | None:
        view = self.selected
        if view is None:
            self.set_status("No tunnel selected", error=True)
            return None
        if view.tunnel.mode is TunnelMode.EPHEMERAL:
            self.set_status(f"'{view.tunnel.name}' is a `cftunnel run` tunnel. Press i to import it.", error=True)
            return None
        return view

    # Operations -------------------------------------------------------------------

    def run_operation(self, label: str, key: tuple[str, str] | None, operation: Operation) -> None:
        """Run an engine operation in a worker, reporting the outcome in the status line."""
        self.run_worker(self._operate(label, key, operation), group="operations")

    async def _operate(self, label: str, key: tuple[str, str] | None, operation: Operation) -> None:
        token = CancelToken()
        self._operations[token] = key
        self.set_status(f"{label}... (esc to cancel)")
        try:
            await operation(token)
        except OperationCancelledError as e:
            self.set_status(f"Cancelled {label.lower()} after: {', '.join(e.completed) or 'nothing'}")
        except CfTunnelError as e:
            logger.warning("Dashboard operation failed", operation=label, error=str(e))
            if key is not None:
                self.errors[key] = e.kind
            self.set_status(f"✗ {format_error(e)}", error=True)
        else:
            if key is not None:
                self.errors.pop(key, None)
            self.set_status(f"✓ {label} done")
        finally:
            del self._operations[token]
        if self.poller is not None:
            await self.poller.poll_once(check_health=False)

    def _tunnel_op(self, label: str, method: str, **kwargs: Any) -> None:
        view = self._selected_managed()
        if view is None:
            return
        tunnel = view.tunnel
        call = getattr(self.engine, method)
        self.run_operation(
            f"{label} {tunnel.name}",
            tunnel.key,
            lambda token: call(tunnel.name, account=tunnel.account, token=token, **kwargs),
        )

    def action_start(self) -> None:
        self._tunnel_op("Start", "start")

    def action_stop(self) -> None:
        self._tunnel_op("Stop", "stop")

    def action_restart(self) -> None:
        self._tunnel_op("Restart", "restart")

    def action_add(self) -> None:
        try:
            zone = self.engine.snapshot().account(self.account).default_zone
        except CfTunnelError as e:
            self.set_status(str(e), error=True)
            return

        def added(form: TunnelForm | None) -> None:
            if form is None:
                return
            self.run_operation(
                f"Add {form.name}",
                None,
                lambda token: self.engine.add(
                    form.name, form.target, zone=form.zone, start=True, account=self.account, token=token
                ),
            )

        self.push_screen(TunnelFormScreen("Add tunnel", default_zone=zone.name if zone else ""), added)

    def action_edit(self) -> None:
        view = self._selected_managed()
        if view is None:
            return
        tunnel = view.tunnel

        def edited(form: TunnelForm | None) -> None:
            if form is None:
                return
            zone = form.zone if form.zone and form.zone != tunnel.zone_name else None
            self.run_operation(
                f"Edit {tunnel.name}",
                tunnel.key,
                lambda token: self.engine.edit(
                    tunnel.name, target=form.target, zone=zone, account=tunnel.account, token=token
                ),
            )

        self.push_screen(
            TunnelFormScreen(
                "Edit tunnel",
                name=tunnel.name,
                target=tunnel.target,
                zone=tunnel.zone_name,
                editing=True,
            ),
            edited,
        )

    def action_delete(self) -> None:
        view = self.selected
        if view is None:
            return
        tunnel = view.tunnel

        def confirmed(yes: bool | None) -> None:
            if not yes:
                return
            if tunnel.mode is TunnelMode.EPHEMERAL:
                self.run_operation(
                    f"Delete {tunnel.name}",
                    None,
                    lambda token: self.engine.delete_orphan(tunnel.remote_id or "", account=tunnel.account),
                )
            else:
                self.run_operation(
                    f"Delete {tunnel.name}",
                    tunnel.key,
                    lambda token: self.engine.delete(tunnel.name, account=tunnel.account, token=token),
                )

        self.push_screen(ConfirmScreen(f"Delete '{tunnel.name}' ({tunnel.hostname})?"), confirmed)

    def action_toggle_autostart(self) -> None:
        view = self._selected_managed()
        if view is None:
            return
        tunnel = view.tunnel
        enabled = not tunnel.auto_start
        self.run_operation(
            f"Auto-start {'on' if enabled else 'off'} for {tunnel.name}",
            tunnel.key,
            lambda token: self.engine.set_auto_start(tunnel.name, enabled, account=tunnel.account),
        )

    def action_import(self) -> None:
        view = self.selected
        if view is None or view.tunnel.mode is not TunnelMode.EPHEMERAL:
            self.set_status("Select a `cftunnel run` tunnel to import", error=True)
            return
        tunnel = view.tunnel
        self.run_operation(
            f"Import {tunnel.name}",
            None,
            lambda token: self.engine.import_ephemeral(
                tunnel.remote_id or "", account=tunnel.account, token=token
            ),
        )

    def action_copy_url(self) -> None:
        view = self.selected
        if view is None:
            return
        self.copy_to_clipboard(view.tunnel.public_url)
        self.set_status(f"Copied {view.tunnel.public_url}")

    def action_open_url(self) -> None:
        view = self.selected
        if view is None:
            return
        webbrowser.open(view.tunnel.public_url)
        self.set_status(f"Opened {view.tunnel.public_url}")

    async def action_check_health(self) -> None:
        if self.poller is None:
            return
        self.set_status("Checking health...")
        await self.poller.refresh_health()
        view = self.selected
        if view is not None and view.service is ServiceState.ACTIVE and self._probe is not None:
            try:
                await self._probe.scrape(view.tunnel)
            except DaemonUnreachableError as e:
                self.set_status(f"✗ {format_error(e)}", error=True)
                return
        self.set_status("Health checked")

    async def action_next_account(self) -> None:
        try:
            snapshot = self.engine.snapshot()
            current = snapshot.account(self.account).name
        except CfTunnelError as e:
            self.set_status(str(e), error=True)
            return
        names = [a.name for a in snapshot.accounts]
        if len(names) < 2:
            self.set_status("Only one account configured")
            return
        self.account = names[(names.index(current) + 1) % len(names)]
        await self._stop_poller()
        self.views = ()
        self.render_table()
        self._start_poller()
        self.set_status(f"Switched to account '{self.account}'")

    def action_cancel(self) -> None:
        """Cancel the selected tunnel's operation, or every one in flight if it has none."""
        if not self._operations:
            return
        view = self.selected
        selected = [t for t, key in self._operations.items() if view is not None and key == view.key]
        tokens = selected or list(self._operations)
        for token in tokens:
            token.cancel()
        self.set_status(
            "Cancelling after the current step..."
            if len(tokens) == 1
            else f"Cancelling {len(tokens)} operations after their current step..."
        )
