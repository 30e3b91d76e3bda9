"""Tests for the port-kill Textual application."""

from queue import Queue

import pytest

from portkill.app import PortKillApp, PortTable, SortKey, StatusHeader, row_key, summarize_results
from portkill.config import MonitorConfig, PortSelector
from portkill.coordinator import Coordinator, RefreshUpdate
from portkill.models import (
    Outcome,
    ProcessRecord,
    SignalPath,
    Snapshot,
    Source,
    TerminationResult,
)
from portkill.observers import Observer
from portkill.termination import Delivery, Signaller, TerminationEngine

PORTS = PortSelector.of([3000, 5000, 8000])

A = ProcessRecord(port=3000, pid=100, command_name="node")
B = ProcessRecord(port=5000, pid=200, command_name="python")


class StaticObserver(Observer):
    source = Source.NATIVE

    def __init__(self, records=()):
        super().__init__(PORTS)
        self.records = set(records)

    def scan(self):
        return set(self.records)


class RecordingSignaller(Signaller):
    def __init__(self):
        self.sent = []

    def target_key(self, record):
        return (record.source, record.pid)

    def send_graceful(self, record):
        self.sent.append(record)
        return Delivery.SENT

    def send_forceful(self, record):
        return Delivery.SENT

    def is_alive(self, record, timeout=None):
        return record not in self.sent


def make_app(records=(A, B)):
    config = MonitorConfig(
        ports=PORTS,
        scan_interval=0.1,
        refresh_interval=0.1,
        graceful_timeout=0.1,
        poll_interval=0.01,
        show_pid=True,
    )
    queue: Queue[RefreshUpdate] = Queue()
    signaller = RecordingSignaller()
    coordinator = Coordinator(
        config,
        update_queue=queue,
        observers=[StaticObserver(records)],
        engine=TerminationEngine(
            graceful_timeout=0.1, poll_interval=0.01, signallers={Source.NATIVE: signaller}
        ),
    )
    return PortKillApp(config, coordinator=coordinator, update_queue=queue), signaller


def test_row_key_distinguishes_sources():
    """Test native and container rows on one port get distinct keys."""
    container = ProcessRecord(3000, 100, "node", Source.CONTAINER, "abc123def456")
    assert row_key(A) != row_key(container)


def test_summarize_results():
    """Test the kill notification text."""
    results = [
        TerminationResult(A, Outcome.TERMINATED, SignalPath.GRACEFUL_ONLY),
        TerminationResult(B, Outcome.TERMINATED, SignalPath.ESCALATED),
    ]
    assert summarize_results(results) == "Kill: 2 terminated"
    assert summarize_results([]) == "No processes to kill"
    assert "permission denied" in summarize_results([TerminationResult(A, Outcome.PERMISSION_DENIED)])


class TestSortKey:
    """Tests for SortKey enum."""

    def test_sort_key_members(self):
        """Test SortKey enum has all expected members."""
        assert [key.value for key in SortKey] == ["port", "pid", "command"]


@pytest.mark.asyncio
async def test_app_creation():
    """Test PortKillApp can be instantiated."""
    app, _ = make_app()
    assert app.title == "port-kill"
    assert app.sub_title == "Development Port Monitor"


@pytest.mark.asyncio
async def test_app_compose():
    """Test PortKillApp composes correctly."""
    app, _ = make_app()
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#status-header") is not None
        assert pilot.app.query_one("#port-table") is not None
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_app_receives_updates_from_coordinator():
    """Test rows appear once the coordinator publishes."""
    app, _ = make_app()
    async with app.run_test() as pilot:
        await pilot.pause(1.5)

        assert app.coordinator.is_running
        table = pilot.app.query_one(PortTable)
        assert set(table.records) == {A, B}
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_port_table_removes_departed_records():
    """Test PortTable removes records that no longer exist."""
    app, _ = make_app(records=())
    async with app.run_test() as pilot:
        table = pilot.app.query_one(PortTable)

        table.update_records([A, B])
        table.update_records([B])

        assert table.records == [B]
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_status_header_shows_stale_containers():
    """Test the stale container label."""
    app, _ = make_app(records=())
    async with app.run_test() as pilot:
        header = pilot.app.query_one("#status-header", StatusHeader)
        snapshot = Snapshot.build(4, [A], stale_sources={Source.CONTAINER})

        header.update_status(snapshot)

        text = header._render_status()
        assert "1 development process(es) running" in text
        assert "stale" in text
        assert "Process data stale" not in text

        header.update_status(Snapshot.build(5, [], stale_sources={Source.NATIVE}))

        assert "Process data stale: socket table unavailable" in header._render_status()
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_sort_binding_cycles():
    """Test that F6 cycles the sort key."""
    app, _ = make_app()
    async with app.run_test() as pilot:
        table = pilot.app.query_one(PortTable)
        assert table.sort_key is SortKey.PORT

        await pilot.press("f6")
        assert table.sort_key is SortKey.PID

        table.cycle_sort()
        table.cycle_sort()
        assert table.sort_key is SortKey.PORT
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_kill_selected_binding():
    """Test 'k' kills the highlighted record only."""
    app, signaller = make_app()
    async with app.run_test() as pilot:
        await pilot.pause(1.0)
        assert pilot.app.query_one(PortTable).selected_record() == A

        await pilot.press("k")
        await pilot.pause(0.5)

        assert signaller.sent == [A]
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_kill_all_binding():
    """Test 'a' kills every record in the published snapshot."""
    app, signaller = make_app()
    async with app.run_test() as pilot:
        app.coordinator.scan_once()

        await pilot.press("a")
        await pilot.pause(0.5)

        assert set(signaller.sent) == {A, B}
        app.coordinator.shutdown()


@pytest.mark.asyncio
async def test_quit_binding_shuts_down():
    """Test that 'q' stops the coordinator and exits."""
    app, _ = make_app()
    async with app.run_test() as pilot:
        await pilot.press("q")
        assert not app.coordinator.is_running
