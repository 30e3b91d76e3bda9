"""Verification Test: real listeners coming, going and being killed.

Spawns child processes that listen on ephemeral ports, drives the
coordinator against the real socket table, kills some children behind
its back and finally kills the rest through a KILL ALL request.
"""

import subprocess
import sys
import time
from queue import Empty, Queue

import pytest

from portkill.config import MonitorConfig, PortSelector
from portkill.coordinator import Coordinator
from portkill.errors import ToolUnavailable
from portkill.models import Outcome, TerminationRequest
from portkill.observers import NativeObserver

LISTENER = """
import socket, time
s = socket.socket()
s.bind(("127.0.0.1", 0))
s.listen()
print(s.getsockname()[1], flush=True)
time.sleep(60)
"""

NUM_LISTENERS = 6


def spawn_listeners(count):
    children = []
    for _ in range(count):
        proc = subprocess.Popen([sys.executable, "-c", LISTENER], stdout=subprocess.PIPE, text=True)
        port = int(proc.stdout.readline())
        children.append((proc, port))
    return children


def reap(children):
    for proc, _ in children:
        if proc.poll() is None:
            proc.kill()
        proc.wait()
        proc.stdout.close()


@pytest.fixture
def listeners():
    children = spawn_listeners(NUM_LISTENERS)
    try:
        NativeObserver(PortSelector.of([port for _, port in children])).scan()
    except ToolUnavailable:
        reap(children)
        pytest.skip("socket table not readable and lsof unavailable")
    yield children
    reap(children)


def make_config(children, **kwargs):
    return MonitorConfig(
        ports=PortSelector.of([port for _, port in children]),
        graceful_timeout=2.0,
        poll_interval=0.05,
        **kwargs,
    )


class TestLifecycle:
    """End-to-end tests against real processes."""

    def test_churn_then_kill_all(self, listeners):
        """
        Test departures are noticed and KILL ALL leaves nothing behind.

        Children killed externally must show up as departures, never as
        errors, and the remaining ones must all be terminated.
        """
        coordinator = Coordinator(make_config(listeners))
        try:
            snapshot, delta = coordinator.scan_once()
            assert {r.pid for r in snapshot} == {proc.pid for proc, _ in listeners}
            assert len(delta.arrived) == NUM_LISTENERS

            # Churn: half the children disappear between scans
            gone = listeners[: NUM_LISTENERS // 2]
            for proc, _ in gone:
                proc.kill()
                proc.wait()

            snapshot, delta = coordinator.scan_once()
            assert {r.pid for r in delta.departed} == {proc.pid for proc, _ in gone}
            assert not delta.arrived
            assert snapshot.count == NUM_LISTENERS - len(gone)

            results = coordinator.submit_kill(TerminationRequest.all())

            assert len(results) == snapshot.count
            assert all(r.outcome is Outcome.TERMINATED for r in results)
            for proc, _ in listeners:
                assert proc.wait(timeout=5.0) is not None

            snapshot, delta = coordinator.scan_once()
            assert snapshot.count == 0
            assert len(delta.departed) == NUM_LISTENERS - len(gone)
        finally:
            coordinator.shutdown()

    def test_kill_of_already_dead_process(self, listeners):
        """Test killing a record whose process already exited is NOT_FOUND."""
        coordinator = Coordinator(make_config(listeners))
        try:
            snapshot, _ = coordinator.scan_once()
            target = snapshot.records[0]
            proc = next(proc for proc, _ in listeners if proc.pid == target.pid)
            proc.kill()
            proc.wait()

            [result] = coordinator.submit_kill(TerminationRequest.single(target))

            assert result.outcome is Outcome.NOT_FOUND
        finally:
            coordinator.shutdown()

    def test_running_coordinator_publishes_changes(self, listeners):
        """Test the timers deliver the initial state and later departures."""
        queue = Queue()
        coordinator = Coordinator(
            make_config(listeners, scan_interval=0.2, refresh_interval=0.1),
            update_queue=queue,
        )
        coordinator.start()
        try:
            first = queue.get(timeout=5.0)
            assert first.snapshot.count == NUM_LISTENERS

            proc, _ = listeners[0]
            proc.kill()
            proc.wait()

            deadline = time.monotonic() + 5.0
            while time.monotonic() < deadline:
                try:
                    update = queue.get(timeout=0.5)
                except Empty:
                    continue
                if proc.pid in {r.pid for r in update.delta.departed}:
                    break
            else:
                pytest.fail("departure was never published")

            assert update.snapshot.count == NUM_LISTENERS - 1
        finally:
            coordinator.shutdown()

        assert not coordinator.is_running
