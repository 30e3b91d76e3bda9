"""Observers that discover which processes hold the watched ports."""

import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod

import psutil

from portkill.config import PortSelector
from portkill.errors import DaemonUnavailable, QueryTimeout, ToolUnavailable
from portkill.models import UNKNOWN_COMMAND, ProcessRecord, Source

logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 12

# "0.0.0.0:3000->3000/tcp", ":::8000-8002->80-82/tcp", "[::]:5432->5432/tcp"
_PORT_MAPPING = re.compile(
    r"^(?:(?P<host>.*):)?(?P<start>\d+)(?:-(?P<end>\d+))?->(?P<target>[\d-]+)/(?P<proto>\w+)$"
)
_DAEMON_DOWN_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "permission denied while trying to connect",
)


class Observer(ABC):
    """A source of ProcessRecords for the watched ports."""

    source: Source

    def __init__(self, ports: PortSelector, query_timeout: float = 5.0) -> None:
        """
        Initialize the observer.

        Args:
            ports: Ports to report listeners on.
            query_timeout: Seconds allowed for a single external command.
        """
        self._ports = ports
        self._query_timeout = query_timeout

    @property
    def ports(self) -> PortSelector:
        """The watched ports."""
        return self._ports

    @abstractmethod
    def scan(self) -> set[ProcessRecord]:
        """Return every record currently visible to this observer."""


class NativeObserver(Observer):
    """
    Find processes in LISTEN state on the watched TCP ports.

    Reads the socket table through psutil. Where the OS refuses the
    system-wide table (macOS without root), falls back to a single
    ``lsof`` listing of every TCP listener, filtered to the watched ports.
    """

    source = Source.NATIVE

    def scan(self, ports: PortSelector | None = None) -> set[ProcessRecord]:
        """Return a record per (port, pid) listening on a watched port."""
        ports = ports or self._ports
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            logger.debug("Socket table access denied, falling back to lsof")
            return self._scan_with_lsof(ports)
        except OSError as exc:
            raise ToolUnavailable(f"Cannot read socket table: {exc}") from exc

        return self._records_from_connections(connections, ports)

    def _records_from_connections(self, connections, ports: PortSelector) -> set[ProcessRecord]:
        """Turn psutil connections into records, skipping vanished processes."""
        records: set[ProcessRecord] = set()
        names: dict[int, str | None] = {}

        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            port = conn.laddr.port
            if port not in ports:
                continue
            if not conn.pid:
                logger.debug("Listener on port %d has no visible PID, skipping", port)
                continue

            if conn.pid not in names:
                names[conn.pid] = self._process_name(conn.pid)
            name = names[conn.pid]
            if name is None:
                logger.debug("Process %d on port %d exited during scan", conn.pid, port)
                continue

            records.add(ProcessRecord(port=port, pid=conn.pid, command_name=name))

        return records

    @staticmethod
    def _process_name(pid: int) -> str | None:
        """Name of ``pid``, or None if the process is gone."""
        try:
            return psutil.Process(pid).name() or UNKNOWN_COMMAND
        except psutil.NoSuchProcess:
            return None
        except psutil.AccessDenied:
            return UNKNOWN_COMMAND

    def _scan_with_lsof(self, ports: PortSelector) -> set[ProcessRecord]:
        """List all TCP listeners with one lsof call and keep the watched ports."""
        try:
            result = subprocess.run(
                ["lsof", "-nP", "-iTCP", "-sTCP:LISTEN", "-Fpcn"],
                capture_output=True,
                text=True,
                timeout=self._query_timeout,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ToolUnavailable(f"Cannot run lsof: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise QueryTimeout(f"lsof timed out after {self._query_timeout:g}s") from exc

        # lsof exits 1 when nothing matches
        if result.returncode not in (0, 1):
            raise ToolUnavailable(f"lsof exited {result.returncode}: {result.stderr.strip()}")
        return parse_lsof_output(result.stdout, ports)


def _lsof_port(name: str) -> int | None:
    """Local port of an lsof ``n`` field such as ``*:3000`` or ``[::1]:3000``."""
    local = name.split("->", 1)[0]
    _, _, port = local.rpartition(":")
    return int(port) if port.isdigit() else None


def parse_lsof_output(output: str, ports: PortSelector) -> set[ProcessRecord]:
    """
    Parse ``lsof -F pcn`` field output into records on watched ports.

    Each process block starts with ``p<pid>`` and ``c<command>``, followed
    by one ``n<address>`` line per listening socket. Other fields (the
    file descriptor lsof always adds) are ignored.
    """
    records: set[ProcessRecord] = set()
    pid: int | None = None
    command = UNKNOWN_COMMAND
    for line in output.splitlines():
        if not line:
            continue
        field, value = line[0], line[1:].strip()
        if field == "p":
            command = UNKNOWN_COMMAND
            try:
                pid = int(value)
            except ValueError:
                logger.debug("Ignoring malformed lsof pid %r", value)
                pid = None
        elif field == "c":
            command = value or UNKNOWN_COMMAND
        elif field == "n" and pid is not None:
            port = _lsof_port(value)
            if port is not None and port in ports:
                records.add(ProcessRecord(port=port, pid=pid, command_name=command))
    return records


def parse_published_ports(ports: str) -> set[int]:
    """
    Host-side TCP ports from a ``docker ps`` Ports column.

    Mappings without a host side (exposed but unpublished) are ignored.
    """
    published: set[int] = set()
    for chunk in ports.split(","):
        match = _PORT_MAPPING.match(chunk.strip())
        if match is None or match.group("proto") != "tcp":
            continue
        start = int(match.group("start"))
        end = int(match.group("end") or start)
        published.update(range(start, end + 1))
    return published


class ContainerObserver(Observer):
    """Map published container ports to container identity via the docker CLI."""

    source = Source.CONTAINER

    def __init__(self, ports: PortSelector, query_timeout: float = 5.0, docker: str = "docker") -> None:
        """Initialize the observer; ``docker`` is the CLI to invoke."""
        super().__init__(ports, query_timeout)
        self._docker = docker

    def scan(self) -> set[ProcessRecord]:
        """One record per published TCP port of every running container."""
        output = self._run("ps", "--format", "{{json .}}")
        containers = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                containers.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unparseable docker ps row: %r", line)

        if not containers:
            return set()

        pids = self._container_pids([c.get("ID", "") for c in containers if c.get("ID")])

        records: set[ProcessRecord] = set()
        for container in containers:
            container_id = (container.get("ID") or "")[:SHORT_ID_LENGTH]
            if not container_id:
                logger.warning("Skipping docker ps row without an ID")
                continue
            name = (container.get("Names") or "").split(",")[0] or container_id
            image = container.get("Image") or UNKNOWN_COMMAND
            for port in parse_published_ports(container.get("Ports") or ""):
                if port not in self._ports:
                    continue
                records.add(
                    ProcessRecord(
                        port=port,
                        pid=pids.get(container_id, 0),
                        command_name=image,
                        source=Source.CONTAINER,
                        container_id=container_id,
                        container_name=name,
                    )
                )
        return records

    def _container_pids(self, container_ids: list[str]) -> dict[str, int]:
        """Main process PID per short container id; missing entries mean unknown."""
        try:
            output = self._run("inspect", "--format", "{{.Id}} {{.State.Pid}}", *container_ids)
        except (DaemonUnavailable, QueryTimeout) as exc:
            # Containers may have exited between ps and inspect
            logger.debug("docker inspect failed, container PIDs unknown: %s", exc)
            return {}

        pids: dict[str, int] = {}
        for line in output.splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            try:
                pids[parts[0][:SHORT_ID_LENGTH]] = int(parts[1])
            except ValueError:
                logger.debug("Ignoring malformed docker inspect row %r", line)
        return pids

    def _run(self, *args: str) -> str:
        """Run a docker subcommand and return its stdout, raising ObserverError on failure."""
        try:
            result = subprocess.run(
                [self._docker, *args],
                capture_output=True,
                text=True,
                timeout=self._query_timeout,
            )
        except FileNotFoundError as exc:
            raise DaemonUnavailable(f"{self._docker} command not found") from exc
        except PermissionError as exc:
            raise DaemonUnavailable(f"Cannot run {self._docker}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise QueryTimeout(f"{self._docker} {args[0]} timed out", Source.CONTAINER) from exc

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in _DAEMON_DOWN_MARKERS):
                message = f"Container daemon unreachable: {stderr}"
            else:
                message = f"{self._docker} {args[0]} exited {result.returncode}: {stderr}"
            raise DaemonUnavailable(message)
        return result.stdout
