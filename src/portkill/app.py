"""port-kill - Textual application."""

from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.message import Message
from textual.widgets import DataTable, Footer, Static

from portkill.config import MonitorConfig
from portkill.coordinator import Coordinator, RefreshUpdate
from portkill.models import (
    Outcome,
    ProcessRecord,
    Snapshot,
    Source,
    StatusInfo,
    TerminationRequest,
    TerminationResult,
)


class SortKey(Enum):
    """Sort keys for the port table."""

    PORT = "port"
    PID = "pid"
    COMMAND = "command"


def row_key(record: ProcessRecord) -> str:
    """Stable DataTable row key for a record."""
    return f"{record.source.value}:{record.port}:{record.pid}:{record.container_id or ''}"


def _numeric(value: str) -> int:
    """Sort key for a numeric cell; a hidden PID sorts first."""
    return int(value) if value.isdigit() else -1


def summarize_results(results: list[TerminationResult]) -> str:
    """One-line summary of a termination batch."""
    if not results:
        return "No processes to kill"
    counts: dict[Outcome, int] = {}
    for result in results:
        counts[result.outcome] = counts.get(result.outcome, 0) + 1
    parts = [f"{count} {outcome.value.replace('_', ' ')}" for outcome, count in counts.items()]
    return "Kill: " + ", ".join(parts)


class KillFinished(Message):
    """A termination batch completed."""

    def __init__(self, results: list[TerminationResult]) -> None:
        """Initialize KillFinished with the batch results."""
        super().__init__()
        self.results = results


class StatusHeader(Static):
    """Header widget showing the process count and monitor state."""

    DEFAULT_CSS = """
    StatusHeader {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, description: str = "", *args, **kwargs) -> None:
        """Initialize StatusHeader with the port selection description."""
        super().__init__(*args, **kwargs)
        self._description = description
        self._snapshot = Snapshot.empty()

    def on_mount(self) -> None:
        """Show the scanning placeholder when mounted."""
        self.update(self._render_status())

    def update_status(self, snapshot: Snapshot) -> None:
        """Update from a newly published snapshot."""
        self._snapshot = snapshot
        self.update(self._render_status())

    def _render_status(self) -> str:
        """Build the header markup for the current snapshot."""
        if self._snapshot.sequence == 0:
            return f"Scanning {self._description}..."
        status = StatusInfo.from_count(self._snapshot.count)
        text = f"[b]{status.text}[/b] - {status.tooltip} | {self._description}"
        if self._snapshot.is_stale(Source.NATIVE):
            text += "\n[yellow]Process data stale: socket table unavailable[/yellow]"
        if self._snapshot.is_stale(Source.CONTAINER):
            text += "\n[yellow]Container data stale: daemon unreachable[/yellow]"
        return text


class PortTable(Container):
    """Container for the port data table."""

    DEFAULT_CSS = """
    PortTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, show_pid: bool = True, *args, **kwargs) -> None:
        """Initialize PortTable."""
        super().__init__(*args, **kwargs)
        self._records: dict[str, ProcessRecord] = {}
        self._sort_key: SortKey = SortKey.PORT
        self._show_pid = show_pid

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    @property
    def records(self) -> list[ProcessRecord]:
        """Records currently shown."""
        return list(self._records.values())

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._apply_sort()
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the port table."""
        yield DataTable(id="port-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#port-table", DataTable)
        table.cursor_type = "row"

        table.add_column("Port", key="port", width=7)
        table.add_column("PID", key="pid", width=8)
        table.add_column("Command", key="command", width=24)
        table.add_column("Source", key="source", width=10)
        table.add_column("Container", key="container")

    def update_records(self, records) -> None:
        """
        Update the table with the records of a new snapshot.

        Existing rows are left in place; only departures are removed and
        arrivals added.
        """
        table = self.query_one("#port-table", DataTable)
        incoming = {row_key(record): record for record in records}

        for key in self._records.keys() - incoming.keys():
            table.remove_row(key)
        for key, record in incoming.items():
            if key not in self._records:
                table.add_row(*self._cells(record), key=key)

        self._records = incoming
        self._apply_sort()

    def _cells(self, record: ProcessRecord) -> tuple[str, ...]:
        """Row cells for a record."""
        return (
            str(record.port),
            str(record.pid) if self._show_pid else "-",
            record.command_name[:24],
            record.source.value,
            record.container_name or "",
        )

    def _apply_sort(self) -> None:
        """Re-sort the rows by the current sort key."""
        if not self._records:
            return
        table = self.query_one("#port-table", DataTable)
        if self._sort_key is SortKey.COMMAND:
            table.sort("command", "port")
        else:
            table.sort(self._sort_key.value, key=_numeric)

    def selected_record(self) -> ProcessRecord | None:
        """The record under the cursor, if any."""
        table = self.query_one("#port-table", DataTable)
        if table.row_count == 0:
            return None
        cell_key = table.coordinate_to_cell_key(table.cursor_coordinate)
        return self._records.get(cell_key.row_key.value)


class PortKillApp(App):
    """Interactive port monitor."""

    TITLE = "port-kill"
    SUB_TITLE = "Development Port Monitor"

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("k", "kill_selected", "Kill"),
        ("a", "kill_all", "Kill All"),
        ("r", "rescan", "Rescan"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(
        self,
        config: MonitorConfig,
        coordinator: Coordinator | None = None,
        update_queue: Queue[RefreshUpdate] | None = None,
    ) -> None:
        """
        Initialize the PortKillApp.

        Args:
            config: Monitor configuration.
            coordinator: Coordinator to drive. Built from ``config`` if omitted.
            update_queue: Queue the coordinator publishes to; required when
                passing a coordinator whose updates should be shown.
        """
        super().__init__()
        self._config = config
        self._update_queue: Queue[RefreshUpdate] = update_queue if update_queue is not None else Queue()
        self._coordinator = coordinator or Coordinator(config, update_queue=self._update_queue)

    @property
    def coordinator(self) -> Coordinator:
        """The Coordinator driving this app."""
        return self._coordinator

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatusHeader(self._config.ports.describe(), id="status-header")
        yield PortTable(show_pid=self._config.show_pid)
        yield Footer()

    def on_mount(self) -> None:
        """Start the coordinator when the app is mounted."""
        self._coordinator.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the update queue and show the newest snapshot."""
        update = None
        while True:
            try:
                update = self._update_queue.get_nowait()
            except Empty:
                break

        if update is not None:
            self.show_snapshot(update.snapshot)

    def show_snapshot(self, snapshot: Snapshot) -> None:
        """Show a published snapshot in the header and table."""
        self.query_one("#status-header", StatusHeader).update_status(snapshot)
        self.query_one(PortTable).update_records(snapshot.records)

    def action_sort(self) -> None:
        """Cycle the table sort key."""
        new_sort_key = self.query_one(PortTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_kill_selected(self) -> None:
        """Kill the record under the cursor."""
        record = self.query_one(PortTable).selected_record()
        if record is None:
            self.notify("Nothing selected")
            return
        self.notify(f"Killing {record.label()}")
        self._coordinator.submit_kill_async(TerminationRequest.single(record), self._on_kill_done)

    def action_kill_all(self) -> None:
        """Kill every record in the current snapshot."""
        self.notify("Killing all processes")
        self._coordinator.submit_kill_async(TerminationRequest.all(), self._on_kill_done)

    def action_rescan(self) -> None:
        """Scan now instead of at the next tick."""
        self._coordinator.request_rescan()

    def _on_kill_done(self, results: list[TerminationResult]) -> None:
        """Forward batch results to the app thread."""
        # Runs on the termination worker thread; post_message does not block it
        self.post_message(KillFinished(results))

    def on_kill_finished(self, message: KillFinished) -> None:
        """Notify the user how a kill batch went."""
        failed = [r for r in message.results if not r.succeeded]
        self.notify(summarize_results(message.results), severity="warning" if failed else "information")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._coordinator.shutdown()
        self.exit()
