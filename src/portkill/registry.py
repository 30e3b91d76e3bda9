"""Snapshot registry: merge observer output and classify changes."""

import itertools
import logging
import threading

from portkill.models import Delta, ProcessRecord, Snapshot, Source

logger = logging.getLogger(__name__)


class Registry:
    """
    Owns the current and previous Snapshot.

    Only two generations are kept. Snapshots are never edited; ``advance``
    builds a new one and rotates the pair under a short lock, so readers
    always see a finished Snapshot.
    """

    def __init__(self) -> None:
        """Initialize the Registry with two empty generations."""
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()
        self._current = Snapshot.empty()
        self._previous = Snapshot.empty()

    @property
    def current(self) -> Snapshot:
        """The most recently merged Snapshot."""
        return self._current

    @property
    def previous(self) -> Snapshot:
        """The Snapshot the current one replaced."""
        return self._previous

    def merge(
        self,
        native: set[ProcessRecord],
        container: set[ProcessRecord],
        stale_sources: frozenset[Source] = frozenset(),
    ) -> Snapshot:
        """
        Build the next Snapshot from both observers.

        A native process and a container claiming the same port are both
        kept; how to show the overlap is left to the presentation layer.
        """
        return Snapshot.build(
            sequence=next(self._sequence),
            records=[*native, *container],
            stale_sources=stale_sources,
        )

    @staticmethod
    def diff(prev: Snapshot, curr: Snapshot) -> Delta:
        """Classify records by (port, pid, command_name) identity."""
        before = {record.identity: record for record in prev.records}
        after = {record.identity: record for record in curr.records}
        return Delta(
            arrived=frozenset(r for key, r in after.items() if key not in before),
            departed=frozenset(r for key, r in before.items() if key not in after),
            unchanged=frozenset(r for key, r in after.items() if key in before),
        )

    def advance(
        self,
        native: set[ProcessRecord],
        container: set[ProcessRecord],
        stale_sources: frozenset[Source] = frozenset(),
    ) -> tuple[Snapshot, Delta]:
        """Merge, diff against the current Snapshot and rotate generations."""
        snapshot = self.merge(native, container, stale_sources)
        with self._lock:
            delta = self.diff(self._current, snapshot)
            self._previous, self._current = self._current, snapshot

        if delta.has_changes:
            logger.info(
                "Process update: %d found (+%d, -%d)",
                snapshot.count,
                len(delta.arrived),
                len(delta.departed),
            )
        return snapshot, delta
