"""Data models for port-kill."""

import time
from dataclasses import dataclass, field
from enum import Enum

UNKNOWN_COMMAND = "unknown"


class Source(Enum):
    """Where a record was observed."""

    NATIVE = "native"
    CONTAINER = "container"


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable binding of a listening port to a process or container."""

    port: int
    pid: int
    command_name: str
    source: Source = Source.NATIVE
    container_id: str | None = None
    container_name: str | None = None

    @property
    def key(self) -> tuple[int, int]:
        """Registry key."""
        return (self.port, self.pid)

    @property
    def identity(self) -> tuple[int, int, str]:
        """Equality used when diffing snapshots."""
        return (self.port, self.pid, self.command_name)

    @property
    def is_container(self) -> bool:
        """Check if the record was observed through the container daemon."""
        return self.source is Source.CONTAINER

    def label(self, show_pid: bool = True) -> str:
        """Human readable one-line description."""
        text = f"Port {self.port}: {self.command_name}"
        if show_pid:
            text += f" (PID {self.pid})"
        if self.is_container:
            text += f" [Docker: {self.container_name or self.container_id}]"
        return text


def _sort_key(record: ProcessRecord) -> tuple[int, int, str, str]:
    """Stable display order for records."""
    return (record.port, record.pid, record.source.value, record.container_id or "")


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    One immutable point-in-time view of all observed port bindings.

    Snapshots are superseded, never edited. ``stale_sources`` names the
    observers whose data could not be refreshed for this cycle, so an
    unreachable container daemon is not mistaken for "no containers".
    """

    sequence: int
    captured_at: float
    records: tuple[ProcessRecord, ...] = ()
    stale_sources: frozenset[Source] = frozenset()

    @classmethod
    def build(
        cls,
        sequence: int,
        records,
        stale_sources=frozenset(),
        captured_at: float | None = None,
    ) -> "Snapshot":
        """Create a snapshot with records in a stable (port, pid) order."""
        return cls(
            sequence=sequence,
            captured_at=time.time() if captured_at is None else captured_at,
            records=tuple(sorted(set(records), key=_sort_key)),
            stale_sources=frozenset(stale_sources),
        )

    @classmethod
    def empty(cls) -> "Snapshot":
        """The placeholder Snapshot that exists before the first scan."""
        return cls(sequence=0, captured_at=0.0)

    def __len__(self) -> int:
        """Number of records."""
        return len(self.records)

    def __iter__(self):
        """Iterate the records."""
        return iter(self.records)

    @property
    def count(self) -> int:
        """Number of records in the Snapshot."""
        return len(self.records)

    def is_stale(self, source: Source) -> bool:
        """Check if ``source`` could not be refreshed for this Snapshot."""
        return source in self.stale_sources

    def ports(self) -> set[int]:
        """Ports with at least one listener."""
        return {record.port for record in self.records}


@dataclass(slots=True, frozen=True)
class Delta:
    """Arrivals, departures and unchanged records between two snapshots."""

    arrived: frozenset[ProcessRecord] = frozenset()
    departed: frozenset[ProcessRecord] = frozenset()
    unchanged: frozenset[ProcessRecord] = frozenset()

    @property
    def has_changes(self) -> bool:
        """Check if anything arrived or departed."""
        return bool(self.arrived or self.departed)


class TerminationMode(Enum):
    """Which records a termination request applies to."""

    SINGLE = "single"
    ALL = "all"


@dataclass(slots=True, frozen=True)
class TerminationRequest:
    """An ephemeral, consume-once request to terminate targets."""

    targets: frozenset[ProcessRecord] = frozenset()
    mode: TerminationMode = TerminationMode.SINGLE

    @classmethod
    def single(cls, *records: ProcessRecord) -> "TerminationRequest":
        """Request termination of exactly the given records."""
        return cls(targets=frozenset(records), mode=TerminationMode.SINGLE)

    @classmethod
    def all(cls) -> "TerminationRequest":
        """Request termination of everything currently observed."""
        return cls(mode=TerminationMode.ALL)

    def expand(self, snapshot: Snapshot) -> "TerminationRequest":
        """
        Resolve the request against the snapshot current at request time.

        ``ALL`` becomes every record of ``snapshot``; processes that arrive
        after the snapshot was taken are not included.
        """
        if self.mode is TerminationMode.ALL:
            return TerminationRequest(targets=frozenset(snapshot.records), mode=self.mode)
        return self


class Outcome(Enum):
    """Per-target result of a termination attempt."""

    TERMINATED = "terminated"
    TIMED_OUT = "timed_out"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SignalPath(Enum):
    """Which signals were needed to stop a target."""

    NONE = "none"
    GRACEFUL_ONLY = "graceful_only"
    ESCALATED = "escalated"


@dataclass(slots=True, frozen=True)
class TerminationResult:
    """Outcome of terminating one target."""

    target: ProcessRecord
    outcome: Outcome
    signal_path: SignalPath = SignalPath.NONE
    detail: str = field(default="", compare=False)

    @property
    def succeeded(self) -> bool:
        """Target is gone, whether we stopped it or it was already gone."""
        return self.outcome in (Outcome.TERMINATED, Outcome.NOT_FOUND)


@dataclass(slots=True, frozen=True)
class StatusInfo:
    """Compact status text and tooltip for a process count."""

    text: str
    tooltip: str

    @classmethod
    def from_count(cls, count: int) -> "StatusInfo":
        """Build the status line for ``count`` running processes."""
        if count == 0:
            tooltip = "No development processes running"
        else:
            tooltip = f"{count} development process(es) running"
        return cls(text=str(count), tooltip=tooltip)
