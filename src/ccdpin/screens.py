"""Modal dialogs for editing rules, core groups and the default CCD."""

from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, OptionList, Select, SelectionList

from ccdpin.engine import NOT_SET
from ccdpin.models import MonitoredProcessRule

DIALOG_CSS = """
{name} {{
    align: center middle;
}}

{name} > Vertical {{
    width: 60;
    height: auto;
    max-height: 90%;
    padding: 1 2;
    border: thick $primary;
    background: $surface;
}}

{name} OptionList, {name} SelectionList {{
    height: 12;
}}

{name} .error {{
    color: $error;
    height: auto;
}}

{name} Horizontal {{
    height: auto;
    align: right middle;
}}
"""


def filter_names(names: list[str], text: str) -> list[str]:
    """Case-insensitive substring match over process names."""
    needle = text.strip().lower()
    return [name for name in names if needle in name.lower()]


class AddRuleScreen(ModalScreen[MonitoredProcessRule | None]):
    """Pick a running process name and the core group to pin it to."""

    DEFAULT_CSS = DIALOG_CSS.format(name="AddRuleScreen")
    BINDINGS = [("escape", "cancel", "Cancel")]

    def __init__(self, process_names: list[str], core_groups: list[str]) -> None:
        super().__init__()
        self._names = sorted(set(process_names))
        self._shown = list(self._names)
        self._groups = core_groups

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Label("Add monitored process")
            yield Input(placeholder="Search processes", id="search")
            yield OptionList(*self._shown, id="processes")
            yield Select(
                [(name, name) for name in self._groups],
                prompt="Core group",
                value=self._groups[0] if self._groups else Select.BLANK,
                id="ccd",
            )
            yield Label("", id="error", classes="error")
            with Horizontal():
                yield Button("Add", variant="primary", id="confirm")
                yield Button("Cancel", id="cancel")

    def on_mount(self) -> None:
        if self._shown:
            self.query_one("#processes", OptionList).highlighted = 0
        self.query_one("#search", Input).focus()

    def on_input_changed(self, event: Input.Changed) -> None:
        self._shown = filter_names(self._names, event.value)
        options = self.query_one("#processes", OptionList)
        options.clear_options()
        options.add_options(self._shown)
        if self._shown:
            options.highlighted = 0

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "confirm":
            self.action_confirm()
        else:
            self.action_cancel()

    def action_confirm(self) -> None:
        highlighted = self.query_one("#processes", OptionList).highlighted
        if highlighted is None or highlighted >= len(self._shown):
            self._error("Please select a process")
            return
        ccd = self.query_one("#ccd", Select).value
        if not isinstance(ccd, str):
            self._error("Please select a core group")
            return
        self.dismiss(MonitoredProcessRule(self._shown[highlighted], ccd))

    def action_cancel(self) -> None:
        self.dismiss(None)

    def _error(self, message: str) -> None:
        self.query_one("#error", Label).update(message)


class AddCoreGroupScreen(ModalScreen[tuple[str, list[int]] | None]):
    """Name a core group and tick the logical CPUs it contains."""

    DEFAULT_CSS = DIALOG_CSS.format(name="AddCoreGroupScreen")
    BINDINGS = [("escape", "cancel", "Cancel")]

    def __init__(self, cpu_count: int) -> None:
        super().__init__()
        self._cpu_count = cpu_count

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Label("Add core group")
            yield Input(placeholder="Group name, e.g. ccd0", id="name")
            yield SelectionList[int](*((f"CPU {core}", core) for core in range(self._cpu_count)), id="cores")
            yield Label("", id="error", classes="error")
            with Horizontal():
                yield Button("Save", variant="primary", id="confirm")
                yield Button("Cancel", id="cancel")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "confirm":
            self.action_confirm()
        else:
            self.action_cancel()

    def action_confirm(self) -> None:
        name = self.query_one("#name", Input).value.strip()
        if not name:
            self._error("Please enter a core group name")
            return
        cores = sorted(self.query_one("#cores", SelectionList).selected)
        if not cores:
            self._error("Please select at least one CPU core")
            return
        self.dismiss((name, cores))

    def action_cancel(self) -> None:
        self.dismiss(None)

    def _error(self, message: str) -> None:
        self.query_one("#error", Label).update(message)


class DefaultCcdScreen(ModalScreen[str | None]):
    """
    Choose the core group applied to processes without a rule.

    Dismisses with the chosen group name, ``NOT_SET`` to clear the default,
    or None when cancelled.
    """

    DEFAULT_CSS = DIALOG_CSS.format(name="DefaultCcdScreen")
    BINDINGS = [("escape", "cancel", "Cancel")]

    def __init__(self, core_groups: list[str], current: str | None) -> None:
        super().__init__()
        self._choices = [NOT_SET, *core_groups]
        self._current = current if current in core_groups else NOT_SET

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Label("Default CCD for other processes")
            yield OptionList(*self._choices, id="choices")

    def on_mount(self) -> None:
        options = self.query_one("#choices", OptionList)
        options.highlighted = self._choices.index(self._current)
        options.focus()

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        self.dismiss(self._choices[event.option_index])

    def action_cancel(self) -> None:
        self.dismiss(None)
