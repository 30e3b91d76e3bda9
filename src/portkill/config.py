"""Configuration for port-kill."""

from dataclasses import dataclass, field

from portkill.errors import FatalStartupError

MIN_PORT = 1
MAX_PORT = 65535

DEFAULT_START_PORT = 2000
DEFAULT_END_PORT = 6000


def _check_port(port: int) -> int:
    """Raise FatalStartupError if ``port`` is outside the TCP range."""
    if not MIN_PORT <= port <= MAX_PORT:
        raise FatalStartupError(f"Port {port} is not valid")
    return port


@dataclass(slots=True, frozen=True)
class PortSelector:
    """
    The set of TCP ports to watch.

    Either a contiguous inclusive range (``start``/``end``) or an explicit
    set of ports. Use :meth:`range` or :meth:`of` rather than the
    constructor directly.
    """

    start: int | None = None
    end: int | None = None
    explicit: frozenset[int] | None = None

    @classmethod
    def range(cls, start: int, end: int) -> "PortSelector":
        """Select the inclusive range ``start``-``end``."""
        _check_port(start)
        _check_port(end)
        if start > end:
            raise FatalStartupError("Start port cannot be greater than end port")
        return cls(start=start, end=end)

    @classmethod
    def of(cls, ports) -> "PortSelector":
        """Select exactly the given ports."""
        ports = frozenset(int(port) for port in ports)
        if not ports:
            raise FatalStartupError("At least one port must be specified")
        for port in ports:
            _check_port(port)
        return cls(explicit=ports)

    @property
    def is_range(self) -> bool:
        """Check if this is a contiguous range rather than a port list."""
        return self.explicit is None

    def __contains__(self, port: object) -> bool:
        """Check whether ``port`` is watched."""
        if not isinstance(port, int):
            return False
        if self.explicit is not None:
            return port in self.explicit
        return self.start <= port <= self.end

    def __iter__(self):
        """Iterate the watched ports in ascending order."""
        if self.explicit is not None:
            return iter(sorted(self.explicit))
        return iter(range(self.start, self.end + 1))

    def __len__(self) -> int:
        """Number of watched ports."""
        if self.explicit is not None:
            return len(self.explicit)
        return self.end - self.start + 1

    def describe(self) -> str:
        """Describe the selection, e.g. ``port range: 2000-6000``."""
        if self.explicit is not None:
            return "specific ports: " + ", ".join(str(p) for p in sorted(self.explicit))
        return f"port range: {self.start}-{self.end}"


def _default_ports() -> PortSelector:
    """The 2000-6000 range used when no ports are given."""
    return PortSelector.range(DEFAULT_START_PORT, DEFAULT_END_PORT)


@dataclass(slots=True)
class MonitorConfig:
    """
    Startup configuration, supplied once and never reloaded.

    Args:
        ports: Ports to watch.
        container_monitoring_enabled: Also query the container daemon.
        scan_interval: Seconds between scans.
        refresh_interval: Seconds between presentation refreshes.
        graceful_timeout: Seconds to wait after each signal before escalating.
        poll_interval: Seconds between liveness checks while terminating.
        scan_ceiling: Seconds after which a scan is abandoned. Defaults to
            twice the scan interval.
        query_timeout: Seconds allowed for a single external command.
        show_pid: Presentation hint; show PIDs next to commands.
    """

    ports: PortSelector = field(default_factory=_default_ports)
    container_monitoring_enabled: bool = False
    scan_interval: float = 5.0
    refresh_interval: float = 3.0
    graceful_timeout: float = 0.5
    poll_interval: float = 0.05
    scan_ceiling: float | None = None
    query_timeout: float = 5.0
    show_pid: bool = False

    @property
    def effective_scan_ceiling(self) -> float:
        """Seconds after which a scan cycle is abandoned."""
        if self.scan_ceiling is not None:
            return self.scan_ceiling
        return 2 * self.scan_interval

    def validate(self) -> "MonitorConfig":
        """Raise FatalStartupError if the configuration cannot be used."""
        if not isinstance(self.ports, PortSelector) or len(self.ports) == 0:
            raise FatalStartupError("At least one port must be specified")
        for name in (
            "scan_interval",
            "refresh_interval",
            "graceful_timeout",
            "poll_interval",
            "query_timeout",
        ):
            if getattr(self, name) <= 0:
                raise FatalStartupError(f"{name} must be positive")
        if self.scan_ceiling is not None and self.scan_ceiling <= 0:
            raise FatalStartupError("scan_ceiling must be positive")
        if self.poll_interval > self.graceful_timeout:
            raise FatalStartupError("poll_interval cannot exceed graceful_timeout")
        return self
