"""Plain console output mode."""

import logging
from queue import Empty, Queue
from typing import TextIO

from portkill.config import MonitorConfig
from portkill.coordinator import Coordinator, RefreshUpdate
from portkill.models import Snapshot, Source, StatusInfo

logger = logging.getLogger(__name__)


def format_snapshot(snapshot: Snapshot, show_pid: bool = False) -> list[str]:
    """Console lines describing one snapshot."""
    status = StatusInfo.from_count(snapshot.count)
    lines = [f"Port Status: {status.text} - {status.tooltip}"]
    if snapshot.is_stale(Source.NATIVE):
        lines.append("   (process data stale: socket table unavailable)")
    if snapshot.is_stale(Source.CONTAINER):
        lines.append("   (container data stale: daemon unreachable)")
    if snapshot.count:
        lines.append("Detected Processes:")
        lines.extend(f"   • {record.label(show_pid=show_pid)}" for record in snapshot)
    return lines


class ConsoleMonitor:
    """Print every content change until interrupted."""

    def __init__(
        self,
        config: MonitorConfig,
        out: TextIO | None = None,
        coordinator: Coordinator | None = None,
        update_queue: Queue[RefreshUpdate] | None = None,
    ) -> None:
        """
        Initialize the ConsoleMonitor.

        Args:
            config: Monitor configuration.
            out: Stream to print to. Defaults to stdout.
            coordinator: Coordinator to drive. Built from ``config`` if omitted.
            update_queue: Queue the coordinator publishes to.
        """
        self._config = config
        self._out = out
        self._queue = update_queue if update_queue is not None else Queue()
        self._coordinator = coordinator or Coordinator(config, update_queue=self._queue)

    def _print(self, line: str = "") -> None:
        """Print one line to the output stream."""
        print(line, file=self._out, flush=True)

    def run(self, max_updates: int | None = None) -> int:
        """
        Print updates until Ctrl+C, or until ``max_updates`` were shown.

        Returns the number of updates printed.
        """
        self._print("Port Kill Console Monitor Started!")
        self._print(
            f"Monitoring {self._config.ports.describe()} every {self._config.scan_interval:g} seconds..."
        )
        self._print("Press Ctrl+C to quit")
        self._print()

        shown = 0
        self._coordinator.start()
        try:
            while max_updates is None or shown < max_updates:
                try:
                    update = self._queue.get(timeout=0.5)
                except Empty:
                    continue
                for line in format_snapshot(update.snapshot, self._config.show_pid):
                    self._print(line)
                self._print()
                shown += 1
        except KeyboardInterrupt:
            logger.debug("Interrupted")
        finally:
            self._coordinator.shutdown()
        return shown
