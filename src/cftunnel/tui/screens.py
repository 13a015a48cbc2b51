"""Modal dialogs used by the dashboard."""

from dataclasses import dataclass

from textual import on
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, Static


@dataclass(frozen=True)
class TunnelForm:
    name: str
    target: str
    zone: str | None


class TunnelFormScreen(ModalScreen[TunnelForm | None]):
    """Add a tunnel, or edit one when ``editing`` is set (the name is fixed)."""

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(
        self,
        title: str,
        default_zone: str = "",
        name: str = "",
        target: str = "",
        zone: str = "",
        editing: bool = False,
    ):
        super().__init__()
        self.form_title = title
        self.default_zone = default_zone
        self.initial = (name, target, zone)
        self.editing = editing

    def compose(self) -> ComposeResult:
        name, target, zone = self.initial
        with Vertical(classes="dialog"):
            yield Static(self.form_title, classes="dialog-title")
            yield Label("Name (subdomain)")
            yield Input(value=name, placeholder="myapp", id="name", disabled=self.editing)
            yield Label("Target")
            yield Input(value=target, placeholder="localhost:3000", id="target")
            yield Label("Zone")
            yield Input(value=zone, placeholder=self.default_zone or "example.com", id="zone")
            yield Static("", id="form-error", classes="error")
            with Horizontal(classes="buttons"):
                yield Button("Save", variant="primary", id="save")
                yield Button("Cancel", id="cancel")

    @on(Button.Pressed, "#save")
    @on(Input.Submitted)
    def submit(self) -> None:
        name = self.query_one("#name", Input).value.strip()
        target = self.query_one("#target", Input).value.strip()
        zone = self.query_one("#zone", Input).value.strip()
        if not name or not target:
            self.query_one("#form-error", Static).update("Name and target are required")
            return
        self.dismiss(TunnelForm(name=name, target=target, zone=zone or None))

    @on(Button.Pressed, "#cancel")
    def action_cancel(self) -> None:
        self.dismiss(None)


class ConfirmScreen(ModalScreen[bool]):
    BINDINGS = [
        Binding("y", "confirm", "Yes"),
        Binding("n,escape", "cancel", "No"),
    ]

    def __init__(self, question: str):
        super().__init__()
        self.question = question

    def compose(self) -> ComposeResult:
        with Vertical(classes="dialog"):
            yield Static(self.question, classes="dialog-title")
            with Horizontal(classes="buttons"):
                yield Button("Yes", variant="error", id="yes")
                yield Button("No", id="no")

    @on(Button.Pressed, "#yes")
    def action_confirm(self) -> None:
        self.dismiss(True)

    @on(Button.Pressed, "#no")
    def action_cancel(self) -> None:
        self.dismiss(False)
