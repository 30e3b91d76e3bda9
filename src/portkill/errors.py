"""Exceptions raised by port-kill."""

from portkill.models import Source


class PortKillError(Exception):
    """Base class for port-kill errors."""


class FatalStartupError(PortKillError):
    """Configuration is invalid; the engine cannot start."""


class ObserverError(PortKillError):
    """An observer could not produce results for this scan cycle."""

    def __init__(self, message: str, source: Source = Source.NATIVE) -> None:
        """Initialize the error with the observer source it came from."""
        super().__init__(message)
        self.source = source


class ToolUnavailable(ObserverError):
    """The OS query mechanism cannot be invoked at all."""


class DaemonUnavailable(ObserverError):
    """The container daemon is not reachable."""

    def __init__(self, message: str, source: Source = Source.CONTAINER) -> None:
        """Initialize the error; it comes from the container observer."""
        super().__init__(message, source)


class QueryTimeout(ObserverError):
    """An external query did not finish in time."""
