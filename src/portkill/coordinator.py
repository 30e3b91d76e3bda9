"""Scan/refresh coordination engine for port-kill."""

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from queue import Queue
from typing import Callable

from portkill.config import MonitorConfig
from portkill.errors import ObserverError
from portkill.models import (
    Delta,
    Outcome,
    ProcessRecord,
    Snapshot,
    Source,
    TerminationRequest,
    TerminationResult,
)
from portkill.observers import ContainerObserver, NativeObserver, Observer
from portkill.registry import Registry
from portkill.termination import ContainerSignaller, ProcessSignaller, TerminationEngine

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    """Lifecycle of the scan loop."""

    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    PUBLISHED = "published"
    SHUTTING_DOWN = "shutting_down"


@dataclass(slots=True, frozen=True)
class RefreshUpdate:
    """What the presentation layer receives on a refresh tick with changes."""

    snapshot: Snapshot
    delta: Delta


ResultCallback = Callable[[list[TerminationResult]], None]


class Coordinator:
    """
    Drives observers on a scan timer and publishes to the presentation layer.

    Two daemon threads run independently: the scan loop (observers →
    Registry → published pair) and the refresh loop (published pair →
    update queue). Kill commands run on a single-worker executor so a
    termination batch never pauses either loop.
    """

    def __init__(
        self,
        config: MonitorConfig,
        update_queue: Queue[RefreshUpdate] | None = None,
        observers: list[Observer] | None = None,
        engine: TerminationEngine | None = None,
        on_refresh: Callable[[RefreshUpdate], None] | None = None,
    ) -> None:
        """
        Initialize the Coordinator.

        Args:
            config: Startup configuration. Validated here; an invalid
                configuration raises FatalStartupError before any scan.
            update_queue: Queue receiving a RefreshUpdate whenever the
                visible content changed since the last refresh.
            observers: Observers to drive. Defaults to the native observer
                plus the container observer when container monitoring is on.
            engine: Termination engine. Defaults to one built from config.
            on_refresh: Optional callback invoked with each RefreshUpdate.
        """
        self._config = config.validate()
        self._queue = update_queue
        self._on_refresh = on_refresh
        self._observers = observers if observers is not None else self._default_observers(config)
        self._engine = engine or TerminationEngine(
            graceful_timeout=config.graceful_timeout,
            poll_interval=config.poll_interval,
            signallers={
                Source.NATIVE: ProcessSignaller(),
                Source.CONTAINER: ContainerSignaller(query_timeout=config.query_timeout),
            },
        )
        self._registry = Registry()

        self._state = CoordinatorState.IDLE
        self._published: tuple[Snapshot, Delta] = (self._registry.current, Delta())
        self._delivered: Snapshot | None = None

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._publish_lock = threading.Lock()
        self._scan_thread: threading.Thread | None = None
        self._refresh_thread: threading.Thread | None = None
        # Spare workers so an abandoned, still-blocked observer call does
        # not starve the next cycle
        self._observer_pool = ThreadPoolExecutor(
            max_workers=2 * max(1, len(self._observers)),
            thread_name_prefix="Observer",
        )
        self._kill_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="Terminator")

    @staticmethod
    def _default_observers(config: MonitorConfig) -> list[Observer]:
        """The native observer, plus the container observer when enabled."""
        observers: list[Observer] = [NativeObserver(config.ports, config.query_timeout)]
        if config.container_monitoring_enabled:
            observers.append(ContainerObserver(config.ports, config.query_timeout))
        return observers

    @property
    def config(self) -> MonitorConfig:
        """The validated startup configuration."""
        return self._config

    @property
    def state(self) -> CoordinatorState:
        """Current lifecycle state of the scan loop."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the scan thread is running."""
        return self._scan_thread is not None and self._scan_thread.is_alive()

    def start(self) -> None:
        """Start the scan and refresh threads."""
        if self.is_running or self._stop_event.is_set():
            return

        logger.info("Starting process monitoring on %s", self._config.ports.describe())
        self._scan_thread = threading.Thread(target=self._scan_loop, daemon=True, name="ScanLoop")
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop, daemon=True, name="RefreshLoop"
        )
        self._scan_thread.start()
        self._refresh_thread.start()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """
        Stop both timers and the termination worker.

        Queued kill batches are dropped; a batch already signalling its
        targets finishes them. Safe to call more than once.
        """
        if self._stop_event.is_set():
            return
        logger.info("Shutting down")
        self._state = CoordinatorState.SHUTTING_DOWN
        self._stop_event.set()
        self._wake_event.set()
        self._engine.cancel()

        for thread in (self._scan_thread, self._refresh_thread):
            if thread is not None:
                thread.join(timeout=timeout)
        self._scan_thread = None
        self._refresh_thread = None

        self._kill_pool.shutdown(wait=True, cancel_futures=True)
        # Observers may still be blocked on an external tool; their results are discarded
        self._observer_pool.shutdown(wait=False, cancel_futures=True)

    # Scan path

    def _scan_loop(self) -> None:
        """Main scan loop running in the background thread."""
        while not self._stop_event.is_set():
            # A rescan requested while scanning wakes the wait below
            self._wake_event.clear()
            try:
                self.scan_once()
            except Exception:
                logger.exception("Scan cycle failed")

            if not self._stop_event.is_set():
                self._wake_event.wait(timeout=self._config.scan_interval)

    def scan_once(self) -> tuple[Snapshot, Delta] | None:
        """
        Run one scan cycle and publish its result.

        Returns the new (Snapshot, Delta), or None when the cycle was
        abandoned and the previous Snapshot stays current.
        """
        if self._stop_event.is_set():
            return None
        self._state = CoordinatorState.SCANNING
        collected = self._collect()

        with self._publish_lock:
            if self._stop_event.is_set():
                logger.debug("Shutdown requested during scan, discarding result")
                self._state = CoordinatorState.SHUTTING_DOWN
                return None
            if collected is None:
                self._state = self._resting_state()
                return None

            native, container, stale = collected
            self._state = CoordinatorState.DIFFING
            snapshot, delta = self._registry.advance(native, container, stale)
            self._published = (snapshot, delta)
            self._state = CoordinatorState.PUBLISHED
            return snapshot, delta

    def _resting_state(self) -> CoordinatorState:
        """State to settle in after an abandoned cycle."""
        if self._registry.current.sequence == 0:
            return CoordinatorState.IDLE
        return CoordinatorState.PUBLISHED

    def _collect(self) -> tuple[set[ProcessRecord], set[ProcessRecord], frozenset[Source]] | None:
        """Run all observers concurrently, without holding any shared state."""
        futures = {
            observer: self._observer_pool.submit(observer.scan) for observer in self._observers
        }
        ceiling = self._config.effective_scan_ceiling
        wait(futures.values(), timeout=ceiling)

        native: set[ProcessRecord] = set()
        container: set[ProcessRecord] = set()
        stale: set[Source] = set()

        for observer, future in futures.items():
            if not future.done():
                future.cancel()
                logger.warning("%s observer exceeded %.1fs, abandoning", observer.source.value, ceiling)
                if observer.source is Source.NATIVE:
                    logger.warning("Scan abandoned; keeping snapshot %d", self._registry.current.sequence)
                    return None
                stale.add(observer.source)
                continue

            try:
                records = future.result()
            except ObserverError as exc:
                logger.warning("%s observer unavailable: %s", observer.source.value, exc)
                stale.add(observer.source)
                continue
            except Exception:
                logger.exception("%s observer failed", observer.source.value)
                stale.add(observer.source)
                continue

            if observer.source is Source.NATIVE:
                native.update(records)
            else:
                container.update(records)

        return native, container, frozenset(stale)

    def request_rescan(self) -> None:
        """Wake the scan loop now instead of at the next tick."""
        self._wake_event.set()

    # Refresh path

    def _refresh_loop(self) -> None:
        """Refresh loop running in the background thread."""
        while not self._stop_event.wait(timeout=self._config.refresh_interval):
            try:
                self.refresh_once()
            except Exception:
                logger.exception("Refresh failed")

    def refresh_once(self) -> RefreshUpdate | None:
        """
        Deliver the published Snapshot if its content changed.

        Compares against the last delivered Snapshot rather than the
        previous scan, so changes spanning several scans are not lost.
        Purely a read: never waits on or triggers a scan.
        """
        snapshot, _ = self._published
        delivered = self._delivered
        if snapshot.sequence == 0:
            return None
        if delivered is not None and snapshot.sequence <= delivered.sequence:
            return None

        delta = Registry.diff(delivered or Snapshot.empty(), snapshot)
        first = delivered is None
        stale_changed = delivered is not None and delivered.stale_sources != snapshot.stale_sources
        self._delivered = snapshot

        if not (first or delta.has_changes or stale_changed):
            return None

        update = RefreshUpdate(snapshot=snapshot, delta=delta)
        if self._queue is not None:
            self._queue.put(update)
        if self._on_refresh is not None:
            self._on_refresh(update)
        return update

    def get_latest(self) -> tuple[Snapshot, Delta]:
        """The most recently published Snapshot and its Delta."""
        return self._published

    # Kill path

    def submit_kill_async(
        self, request: TerminationRequest, callback: ResultCallback | None = None
    ) -> Future:
        """
        Queue a termination batch and return its Future.

        ``ALL`` requests are expanded against the Snapshot current now.
        ``callback`` receives the results when the batch completes, or
        CANCELLED results if shutdown dropped it.
        """
        snapshot, _ = self._published
        request = request.expand(snapshot)

        try:
            future = self._kill_pool.submit(self._run_kill, request)
        except RuntimeError:
            # Executor already shut down
            future = Future()
            future.set_result(_cancelled_results(request))

        if callback is not None:
            future.add_done_callback(lambda f: callback(_results_of(f, request)))
        return future

    def submit_kill(self, request: TerminationRequest) -> list[TerminationResult]:
        """Terminate synchronously; one result per target."""
        future = self.submit_kill_async(request)
        return _results_of(future, request)

    def _run_kill(self, request: TerminationRequest) -> list[TerminationResult]:
        """Run one batch on the termination worker and schedule a rescan."""
        logger.info("Killing %d target(s)", len(request.targets))
        results = self._engine.terminate(request)
        if not self._stop_event.is_set():
            self.request_rescan()
        return results


def _cancelled_results(request: TerminationRequest) -> list[TerminationResult]:
    """CANCELLED results for a batch that never ran."""
    return [TerminationResult(target, Outcome.CANCELLED) for target in request.targets]


def _results_of(future: Future, request: TerminationRequest) -> list[TerminationResult]:
    """Results of a finished batch; a batch that raised yields FAILED results."""
    try:
        return future.result()
    except CancelledError:
        return _cancelled_results(request)
    except Exception as exc:
        logger.error("Termination batch failed: %s", exc, exc_info=exc)
        return [
            TerminationResult(target, Outcome.FAILED, detail=f"{type(exc).__name__}: {exc}")
            for target in request.targets
        ]
