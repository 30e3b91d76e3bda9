"""Graduated termination of processes and containers."""

import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum

import psutil

from portkill.models import (
    UNKNOWN_COMMAND,
    Outcome,
    ProcessRecord,
    SignalPath,
    Source,
    TerminationMode,
    TerminationRequest,
    TerminationResult,
)

logger = logging.getLogger(__name__)


class Delivery(Enum):
    """What happened when a signal was sent."""

    SENT = "sent"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    FAILED = "failed"


class Signaller(ABC):
    """Delivers graceful and forceful termination to one kind of target."""

    @abstractmethod
    def target_key(self, record: ProcessRecord) -> tuple:
        """Records with the same key are the same signal target."""

    @abstractmethod
    def send_graceful(self, record: ProcessRecord) -> Delivery:
        """Ask the target to exit."""

    @abstractmethod
    def send_forceful(self, record: ProcessRecord) -> Delivery:
        """Force the target to exit."""

    @abstractmethod
    def is_alive(self, record: ProcessRecord, timeout: float | None = None) -> bool:
        """Whether the target is still running; ``timeout`` bounds the check."""


def _same_command(process: psutil.Process, record: ProcessRecord) -> bool:
    """
    Check that ``process`` still runs the command ``record`` was observed with.

    Names are compared by prefix in both directions since lsof and the
    kernel truncate command names to different lengths.
    """
    if record.command_name == UNKNOWN_COMMAND:
        return True
    try:
        name = process.name()
    except psutil.AccessDenied:
        return True
    return bool(name) and (
        name.startswith(record.command_name) or record.command_name.startswith(name)
    )


class ProcessSignaller(Signaller):
    """SIGTERM/SIGKILL by PID through psutil."""

    def target_key(self, record: ProcessRecord) -> tuple:
        """One target per PID."""
        return (Source.NATIVE, record.pid)

    def send_graceful(self, record: ProcessRecord) -> Delivery:
        """Send SIGTERM."""
        return self._send(record, "terminate")

    def send_forceful(self, record: ProcessRecord) -> Delivery:
        """Send SIGKILL."""
        return self._send(record, "kill")

    def _send(self, record: ProcessRecord, method: str) -> Delivery:
        """
        Signal the PID if it still belongs to the recorded command.

        A PID reused by an unrelated program since the scan is reported
        as NOT_FOUND and left alone.
        """
        try:
            process = psutil.Process(record.pid)
            if not _same_command(process, record):
                logger.warning(
                    "PID %d no longer runs %s, not signalling", record.pid, record.command_name
                )
                return Delivery.NOT_FOUND
            getattr(process, method)()
        except psutil.NoSuchProcess:
            return Delivery.NOT_FOUND
        except psutil.AccessDenied:
            return Delivery.PERMISSION_DENIED
        return Delivery.SENT

    def is_alive(self, record: ProcessRecord, timeout: float | None = None) -> bool:
        """Check the PID exists and is not a zombie."""
        try:
            process = psutil.Process(record.pid)
            # An exited child that has not been reaped yet is a zombie
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return psutil.pid_exists(record.pid)


class ContainerSignaller(Signaller):
    """Stop containers with ``docker kill`` signals."""

    def __init__(self, docker: str = "docker", query_timeout: float = 5.0) -> None:
        """
        Initialize the ContainerSignaller.

        Args:
            docker: The docker CLI to invoke.
            query_timeout: Upper bound in seconds for each docker command.
        """
        self._docker = docker
        self._query_timeout = query_timeout

    def target_key(self, record: ProcessRecord) -> tuple:
        """One target per container, however many ports it publishes."""
        return (Source.CONTAINER, record.container_id)

    def send_graceful(self, record: ProcessRecord) -> Delivery:
        """Send SIGTERM to the container."""
        return self._kill(record, "SIGTERM")

    def send_forceful(self, record: ProcessRecord) -> Delivery:
        """Send SIGKILL to the container."""
        return self._kill(record, "SIGKILL")

    def _kill(self, record: ProcessRecord, signal_name: str) -> Delivery:
        """Run ``docker kill --signal`` and classify the answer."""
        try:
            result = self._run(self._query_timeout, "kill", "--signal", signal_name, record.container_id)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("docker kill failed for %s: %s", record.container_id, exc)
            return Delivery.FAILED
        if result.returncode == 0:
            return Delivery.SENT
        return self._classify_failure(result.stderr)

    @staticmethod
    def _classify_failure(stderr: str) -> Delivery:
        """Map docker's error text to a Delivery."""
        message = stderr.lower()
        if "no such container" in message or "is not running" in message:
            return Delivery.NOT_FOUND
        if "permission denied" in message:
            return Delivery.PERMISSION_DENIED
        logger.error("docker kill refused: %s", stderr.strip())
        return Delivery.FAILED

    def is_alive(self, record: ProcessRecord, timeout: float | None = None) -> bool:
        """
        Ask ``docker inspect`` whether the container is running.

        A container docker no longer knows counts as dead. A check that
        cannot finish within ``timeout`` counts as alive.
        """
        limit = self._query_timeout if timeout is None else min(timeout, self._query_timeout)
        try:
            result = self._run(limit, "inspect", "--format", "{{.State.Running}}", record.container_id)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Cannot inspect container %s: %s", record.container_id, exc)
            return True
        if result.returncode != 0:
            return False
        return result.stdout.strip() == "true"

    def _run(self, timeout: float, *args: str) -> subprocess.CompletedProcess:
        """Run a docker subcommand, bounded by ``timeout`` seconds."""
        return subprocess.run(
            [self._docker, *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )


_DELIVERY_OUTCOMES = {
    Delivery.NOT_FOUND: Outcome.NOT_FOUND,
    Delivery.PERMISSION_DENIED: Outcome.PERMISSION_DENIED,
    Delivery.FAILED: Outcome.FAILED,
}


class TerminationEngine:
    """
    Runs the graduated termination protocol for each target.

    For every target: graceful signal, poll liveness up to
    ``graceful_timeout``, forceful signal if still alive, poll again.
    The engine keeps no state between requests except the cancel flag.
    """

    def __init__(
        self,
        graceful_timeout: float = 0.5,
        poll_interval: float = 0.05,
        signallers: dict[Source, Signaller] | None = None,
    ) -> None:
        """
        Initialize the TerminationEngine.

        Args:
            graceful_timeout: Seconds to wait after each signal.
            poll_interval: Seconds between liveness checks.
            signallers: Signaller per record source. Defaults to psutil for
                native processes and the docker CLI for containers.
        """
        self._graceful_timeout = graceful_timeout
        self._poll_interval = poll_interval
        self._signallers = signallers or {
            Source.NATIVE: ProcessSignaller(),
            Source.CONTAINER: ContainerSignaller(),
        }
        self._cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        """Check if cancel() was called."""
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Drop targets that have not been signalled yet."""
        self._cancel_event.set()

    def terminate(self, request: TerminationRequest) -> list[TerminationResult]:
        """
        Terminate every target of an already expanded request.

        Returns exactly one result per target. Records sharing a signal
        target (one container publishing several ports) are signalled once
        and each gets the shared outcome. An error terminating one target
        becomes its FAILED result and never stops the others.
        """
        if request.mode is TerminationMode.ALL and not request.targets:
            logger.info("No processes found to kill")

        results: list[TerminationResult] = []
        shared: dict[tuple, tuple[Outcome, SignalPath, str]] = {}

        for target in sorted(request.targets, key=lambda r: (r.port, r.pid, r.container_id or "")):
            signaller = self._signallers.get(target.source)
            if signaller is None:
                logger.error("No signaller for %s records, cannot kill %s", target.source.value, target.label())
                results.append(TerminationResult(target, Outcome.FAILED, detail="no signaller"))
                continue
            key = signaller.target_key(target)
            if key not in shared:
                shared[key] = self._terminate_one(signaller, target)
            outcome, path, detail = shared[key]
            results.append(TerminationResult(target, outcome, path, detail))

        return results

    def _terminate_one(
        self, signaller: Signaller, target: ProcessRecord
    ) -> tuple[Outcome, SignalPath, str]:
        """Run the protocol for one target, turning any error into FAILED."""
        if self.cancelled:
            logger.info("Shutdown in progress, not signalling %s", target.label())
            return Outcome.CANCELLED, SignalPath.NONE, "shutdown before signal"

        path = SignalPath.NONE
        try:
            logger.info("Sending graceful termination to %s", target.label())
            delivery = signaller.send_graceful(target)
            if delivery is not Delivery.SENT:
                logger.warning("Graceful termination of %s: %s", target.label(), delivery.value)
                return _DELIVERY_OUTCOMES[delivery], SignalPath.NONE, delivery.value

            if self._wait_for_exit(signaller, target):
                logger.info("%s terminated gracefully", target.label())
                return Outcome.TERMINATED, SignalPath.GRACEFUL_ONLY, ""

            logger.warning("%s still running after graceful signal, escalating", target.label())
            path = SignalPath.ESCALATED
            delivery = signaller.send_forceful(target)
            if delivery is Delivery.NOT_FOUND:
                # Exited between the last poll and the forceful signal
                return Outcome.TERMINATED, SignalPath.GRACEFUL_ONLY, ""
            if delivery is not Delivery.SENT:
                logger.error("Forceful termination of %s: %s", target.label(), delivery.value)
                return _DELIVERY_OUTCOMES[delivery], SignalPath.ESCALATED, delivery.value

            if self._wait_for_exit(signaller, target):
                logger.info("%s terminated after forceful signal", target.label())
                return Outcome.TERMINATED, SignalPath.ESCALATED, ""

            logger.error("%s survived forceful signal", target.label())
            return Outcome.TIMED_OUT, SignalPath.ESCALATED, "alive after forceful signal"
        except Exception as exc:
            logger.exception("Terminating %s failed", target.label())
            return Outcome.FAILED, path, f"{type(exc).__name__}: {exc}"

    def _wait_for_exit(self, signaller: Signaller, target: ProcessRecord) -> bool:
        """Poll liveness at fixed intervals until dead or the budget is spent."""
        deadline = time.monotonic() + self._graceful_timeout
        remaining = self._graceful_timeout
        while True:
            if not signaller.is_alive(target, timeout=remaining):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            # Already signalled; shutdown does not cut the wait short
            time.sleep(min(self._poll_interval, remaining))
