"""ccdpin - Main Textual application."""

import logging

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.css.query import NoMatches
from textual.screen import Screen
from textual.widgets import DataTable, Footer, Static
from textual.worker import Worker, WorkerState

from ccdpin.affinity import AffinitySetter
from ccdpin.config import Settings, setup_logging
from ccdpin.debounce import Debouncer
from ccdpin.engine import NOT_SET, RuleEngine
from ccdpin.errors import StoreError
from ccdpin.events import EventKind
from ccdpin.models import MonitoredProcessRule, ProcessInfo, RuleApplied, RuleView
from ccdpin.sampler import ProcessSampler
from ccdpin.screens import AddCoreGroupScreen, AddRuleScreen, DefaultCcdScreen
from ccdpin.store import ConfigStore, RuleStore

log = logging.getLogger(__name__)

DEFAULT_ROW_KEY = "default"
RULE_ROW_PREFIX = "rule:"


def format_status(
    auto_apply: bool, default_ccd: str | None, cpu_count: int, rule_count: int, message: str = ""
) -> str:
    """Build the status line markup."""
    auto = "[green]ON[/green]" if auto_apply else "[dim]OFF[/dim]"
    line = (
        f"Auto-apply: {auto}  Default CCD: {default_ccd or 'Not set'}  "
        f"Rules: {rule_count}  Logical CPUs: {cpu_count}"
    )
    if message:
        line += f"\n{message}"
    return line


class StatusBar(Static):
    """Header widget showing auto-apply state and the default CCD."""

    DEFAULT_CSS = """
    StatusBar {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._auto_apply = False
        self._default_ccd: str | None = None
        self._cpu_count = 0
        self._rule_count = 0
        self._message = ""

    def update_status(
        self,
        auto_apply: bool,
        default_ccd: str | None,
        cpu_count: int,
        rule_count: int,
        message: str | None = None,
    ) -> None:
        self._auto_apply = auto_apply
        self._default_ccd = default_ccd
        self._cpu_count = cpu_count
        self._rule_count = rule_count
        if message is not None:
            self._message = message
        self.update(
            format_status(self._auto_apply, self._default_ccd, self._cpu_count, self._rule_count, self._message)
        )


class RulesTable(Container):
    """Container for the monitored process table."""

    DEFAULT_CSS = """
    RulesTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._current_keys: set[str] = set()
        self._rows: dict[str, RuleView] = {}

    def compose(self) -> ComposeResult:
        yield DataTable(id="rules-table")

    def on_mount(self) -> None:
        table = self.query_one("#rules-table", DataTable)
        table.cursor_type = "row"
        table.add_column("Process", key="process", width=32)
        table.add_column("CCD", key="ccd", width=16)
        table.add_column("Affinity", key="affinity")

    @staticmethod
    def row_key(row: RuleView) -> str:
        """Rule rows are prefixed so no process name can collide with the default row."""
        return DEFAULT_ROW_KEY if row.is_default else RULE_ROW_PREFIX + row.process_name

    def update_rules(self, rows: list[RuleView]) -> None:
        """
        Update the table with new rows.

        Existing rows are updated in place with update_cell.
        """
        table = self.query_one("#rules-table", DataTable)
        new_keys = {self.row_key(row) for row in rows}

        # The default row is kept last, so rebuild when the key set changes
        if new_keys != self._current_keys:
            table.clear()
            for row in rows:
                table.add_row(row.display_name, row.ccd_name, row.affinity_text, key=self.row_key(row))
        else:
            for row in rows:
                key = self.row_key(row)
                table.update_cell(key, "ccd", row.ccd_name)
                table.update_cell(key, "affinity", row.affinity_text)

        self._current_keys = new_keys
        self._rows = {self.row_key(row): row for row in rows}

    def selected(self) -> RuleView | None:
        """The row under the cursor, if any."""
        table = self.query_one("#rules-table", DataTable)
        if table.row_count == 0:
            return None
        cell_key = table.coordinate_to_cell_key(table.cursor_coordinate)
        return self._rows.get(cell_key.row_key.value)


class CcdpinApp(App):
    """Main ccdpin application."""

    TITLE = "ccdpin"
    SUB_TITLE = "CCD Affinity Manager"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status {
        dock: top;
        min-height: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("a", "toggle_auto_apply", "Auto-apply"),
        ("p", "apply_rules", "Apply rules"),
        ("r", "restore_all", "Restore all"),
        ("n", "add_rule", "Add process"),
        ("g", "add_core_group", "Add CCD"),
        ("e", "edit_default", "Default CCD"),
        ("d", "delete_rule", "Delete"),
        ("f5", "reload", "Reload"),
    ]

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        setter: AffinitySetter | None = None,
        sampler: ProcessSampler | None = None,
        engine: RuleEngine | None = None,
    ) -> None:
        """Initialize the CcdpinApp, wiring sampler, engine and debouncer."""
        super().__init__()
        self._settings = settings or Settings()
        self._setter = setter or AffinitySetter()
        self._sampler = sampler or ProcessSampler(interval=self._settings.poll_interval)
        self._engine = engine or RuleEngine(
            self._sampler,
            self._setter,
            ConfigStore(self._settings.config_file),
            RuleStore(self._settings.rules_file),
            auto_apply=self._settings.auto_apply,
        )
        self._debouncer = Debouncer(
            self._refresh_worker,
            delay=self._settings.debounce_delay,
            max_staleness=self._settings.max_staleness,
        )
        self._subscriptions = [
            self._engine.events.subscribe(kind, self._on_engine_event) for kind in EventKind
        ]
        self._shut_down = False

    def compose(self) -> ComposeResult:
        yield StatusBar(id="status")
        yield RulesTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the sampler and render the initial rule list."""
        self._sampler.start()
        self._schedule_refresh()
        dangling = self._engine.dangling_rules()
        if dangling:
            names = ", ".join(f"{r.process_name} -> {r.ccd_name}" for r in dangling)
            self.notify(f"Rules reference missing core groups: {names}", severity="warning")

    def on_unmount(self) -> None:
        self._stop_services()

    def _stop_services(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._sampler.stop()
        self._debouncer.cancel()
        self._engine.close()

    @property
    def main_screen(self) -> Screen:
        """The screen holding the rules table, even while a dialog is open."""
        return self.screen_stack[0]

    def _on_engine_event(self, payload: ProcessInfo | RuleApplied) -> None:
        # Runs on the sampler thread or a worker thread
        self._debouncer.trigger()

    def _schedule_refresh(self) -> None:
        """Rebuild the rule rows off the UI thread."""
        self.run_worker(
            self._refresh_worker, name="refresh", thread=True, group="refresh", exit_on_error=False
        )

    def _refresh_worker(self) -> None:
        if not self.is_running or self._shut_down:
            return
        rows = self._engine.describe()
        self.call_from_thread(self._show_rules, rows)

    def _show_rules(self, rows: list[RuleView]) -> None:
        """Update the UI with fresh rows."""
        try:
            self.main_screen.query_one(RulesTable).update_rules(rows)
            self._update_status()
        except NoMatches:
            log.debug("Rules table not mounted yet")

    def _update_status(self, message: str | None = None) -> None:
        self.main_screen.query_one("#status", StatusBar).update_status(
            self._engine.auto_apply,
            self._engine.default_ccd,
            self._setter.processor_count(),
            len(self._engine.rules),
            message,
        )

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.state == WorkerState.ERROR:
            error = event.worker.error
            log.error("Worker %s failed", event.worker.name, exc_info=error)
            self.notify(f"{event.worker.name} failed: {error}", severity="error")

    def action_toggle_auto_apply(self) -> None:
        self._engine.auto_apply = not self._engine.auto_apply
        self._update_status()
        self.notify(f"Auto-apply {'enabled' if self._engine.auto_apply else 'disabled'}")

    def action_apply_rules(self) -> None:
        self.run_worker(
            self._apply_rules_worker,
            name="apply rules",
            thread=True,
            group="apply",
            exclusive=True,
            exit_on_error=False,
        )

    def _apply_rules_worker(self) -> None:
        report = self._engine.apply_all_rules_now()
        failed = report.failed_rules
        message = (
            f"Applied {len(report.rules) - len(failed)}/{len(report.rules)} rules, "
            f"default CCD on {report.default_success} processes ({report.default_failed} failed)"
        )
        self.call_from_thread(self.notify, message, severity="warning" if failed else "information")
        self.call_from_thread(self._update_status, message)
        self._refresh_worker()

    def action_restore_all(self) -> None:
        self.run_worker(
            self._restore_worker,
            name="restore",
            thread=True,
            group="apply",
            exclusive=True,
            exit_on_error=False,
        )

    def _restore_worker(self) -> None:
        ok, failed = self._setter.restore_all()
        message = f"Restore completed. Success: {ok}, Failed: {failed}"
        self.call_from_thread(self.notify, message)
        self.call_from_thread(self._update_status, message)
        self._refresh_worker()

    def action_delete_rule(self) -> None:
        """Delete the selected rule; on the default row, clear the default CCD."""
        if self.screen is not self.main_screen:
            return
        row = self.main_screen.query_one(RulesTable).selected()
        if row is None:
            return
        try:
            if row.is_default:
                self._engine.set_default_ccd(None)
                self.notify("Default CCD cleared")
            elif self._engine.remove_rule(row.process_name):
                self.notify(f"Removed {row.process_name}")
        except StoreError as exc:
            log.error("Failed to update stores: %s", exc)
            self.notify(str(exc), severity="error")
            return
        self._schedule_refresh()

    def action_add_rule(self) -> None:
        if self.screen is not self.main_screen:
            return
        if not self._engine.core_groups:
            self.notify("Add a core group first", severity="warning")
            return
        self.run_worker(self._add_rule_worker, name="list processes", thread=True, exit_on_error=False)

    def _add_rule_worker(self) -> None:
        names = [name for _, name in self._setter.list_running()]
        screen = AddRuleScreen(names, sorted(self._engine.core_groups))
        self.call_from_thread(self.push_screen, screen, self._on_rule_chosen)

    def _on_rule_chosen(self, rule: MonitoredProcessRule | None) -> None:
        if rule is None:
            return
        try:
            self._engine.add_rule(rule.process_name, rule.ccd_name)
        except StoreError as exc:
            log.error("Failed to add rule: %s", exc)
            self.notify(str(exc), severity="error")
            return
        self.notify(f"Monitoring {rule.process_name} on {rule.ccd_name}")
        self._schedule_refresh()

    def action_add_core_group(self) -> None:
        if self.screen is not self.main_screen:
            return
        self.push_screen(AddCoreGroupScreen(self._setter.processor_count()), self._on_core_group_chosen)

    def _on_core_group_chosen(self, result: tuple[str, list[int]] | None) -> None:
        if result is None:
            return
        name, cores = result
        try:
            group = self._engine.upsert_core_group(name, cores)
        except (StoreError, ValueError) as exc:
            log.error("Failed to save core group %s: %s", name, exc)
            self.notify(str(exc), severity="error")
            return
        self.notify(f"Saved core group {group.name}")
        self._schedule_refresh()

    def action_edit_default(self) -> None:
        if self.screen is not self.main_screen:
            return
        screen = DefaultCcdScreen(sorted(self._engine.core_groups), self._engine.default_ccd)
        self.push_screen(screen, self._on_default_chosen)

    def _on_default_chosen(self, choice: str | None) -> None:
        if choice is None:
            return
        default_ccd = None if choice == NOT_SET else choice
        try:
            self._engine.set_default_ccd(default_ccd)
        except StoreError as exc:
            log.error("Failed to set default CCD: %s", exc)
            self.notify(str(exc), severity="error")
            return
        self.notify(f"Default CCD: {default_ccd or NOT_SET}")
        self._schedule_refresh()

    def action_reload(self) -> None:
        try:
            self._engine.reload()
        except StoreError as exc:
            log.error("Reload failed: %s", exc)
            self.notify(str(exc), severity="error")
            return
        self.notify("Configuration reloaded")
        self._schedule_refresh()

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._stop_services()
        self.exit()


def main() -> None:
    """Entry point for the ccdpin application."""
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        raise SystemExit(f"ccdpin: {exc}") from exc
    setup_logging(settings)
    try:
        app = CcdpinApp(settings)
    except StoreError as exc:
        log.error("Startup failed: %s", exc)
        raise SystemExit(f"ccdpin: {exc}") from exc
    app.run()


if __name__ == "__main__":
    main()
