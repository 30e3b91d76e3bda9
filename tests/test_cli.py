"""Tests for the command line and console mode."""

import io
from queue import Queue

import pytest

from portkill.cli import build_parser, config_from_args, main
from portkill.config import MonitorConfig, PortSelector
from portkill.console import ConsoleMonitor, format_snapshot
from portkill.coordinator import Coordinator
from portkill.errors import FatalStartupError
from portkill.models import ProcessRecord, Snapshot, Source
from portkill.observers import Observer

A = ProcessRecord(port=3000, pid=100, command_name="node")
WEB = ProcessRecord(3001, 7, "nginx:alpine", Source.CONTAINER, "abc123def456", "web")


def parse(*argv):
    return config_from_args(build_parser().parse_args(list(argv)))


class TestArguments:
    """Tests for argument handling."""

    def test_defaults(self):
        """Test the default port range and flags."""
        config = parse()

        assert config.ports.describe() == "port range: 2000-6000"
        assert not config.container_monitoring_enabled
        assert not config.show_pid

    def test_range(self):
        """Test --start-port/--end-port."""
        config = parse("-s", "3000", "-e", "3005")

        assert list(config.ports) == [3000, 3001, 3002, 3003, 3004, 3005]

    def test_specific_ports_override_range(self):
        """Test --ports wins over the range."""
        config = parse("-s", "3000", "-e", "3005", "-p", "3000,8000,8080")

        assert list(config.ports) == [3000, 8000, 8080]

    def test_flags(self):
        """Test docker and show-pid flags plus intervals."""
        config = parse("-d", "-P", "--scan-interval", "2", "--refresh-interval", "1")

        assert config.container_monitoring_enabled
        assert config.show_pid
        assert config.scan_interval == 2.0
        assert config.refresh_interval == 1.0

    def test_invalid_range(self):
        """Test a reversed range is fatal."""
        with pytest.raises(FatalStartupError):
            parse("-s", "3010", "-e", "3000")

    def test_bad_port_list(self):
        """Test a non-numeric port list is an argparse error."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-p", "abc"])

    def test_main_reports_fatal_config(self, capsys):
        """Test main exits with status 2 before starting anything."""
        assert main(["-p", "0"]) == 2
        assert "Port 0 is not valid" in capsys.readouterr().err

    def test_version(self, capsys):
        """Test --version."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert "port-kill" in capsys.readouterr().out


def test_format_snapshot():
    """Test console lines for a snapshot."""
    snapshot = Snapshot.build(1, [A, WEB], stale_sources=set())

    lines = format_snapshot(snapshot, show_pid=True)

    assert lines[0] == "Port Status: 2 - 2 development process(es) running"
    assert "   • Port 3000: node (PID 100)" in lines
    assert "   • Port 3001: nginx:alpine (PID 7) [Docker: web]" in lines


def test_format_snapshot_stale():
    """Test the stale container note."""
    lines = format_snapshot(Snapshot.build(1, [], stale_sources={Source.CONTAINER}))

    assert lines[0] == "Port Status: 0 - No development processes running"
    assert "stale" in lines[1]


def test_format_snapshot_stale_native():
    """Test the stale process note shown when the socket table is unavailable."""
    lines = format_snapshot(Snapshot.build(1, [WEB], stale_sources={Source.NATIVE}))

    assert lines[1] == "   (process data stale: socket table unavailable)"
    assert "   • Port 3001: nginx:alpine [Docker: web]" in lines


class StaticObserver(Observer):
    source = Source.NATIVE

    def scan(self):
        return {A}


def test_console_monitor_prints_updates():
    """Test the console monitor prints the first update and stops."""
    config = MonitorConfig(ports=PortSelector.of([3000]), scan_interval=0.1, refresh_interval=0.1)
    queue = Queue()
    coordinator = Coordinator(config, update_queue=queue, observers=[StaticObserver(config.ports)])
    out = io.StringIO()

    shown = ConsoleMonitor(config, out=out, coordinator=coordinator, update_queue=queue).run(
        max_updates=1
    )

    assert shown == 1
    text = out.getvalue()
    assert "Monitoring specific ports: 3000 every 0.1 seconds..." in text
    assert "Port 3000: node" in text
    assert not coordinator.is_running
