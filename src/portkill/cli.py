"""Command-line entry point for port-kill."""

import argparse
import logging
import sys

from portkill.config import DEFAULT_END_PORT, DEFAULT_START_PORT, MonitorConfig, PortSelector
from portkill.errors import FatalStartupError

__version__ = "0.1.0"

logger = logging.getLogger("portkill")


def _port_list(value: str) -> list[int]:
    """argparse type for a comma-separated port list."""
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port list: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Build the port-kill argument parser."""
    parser = argparse.ArgumentParser(
        prog="port-kill",
        description="Monitor development processes listening on ports and kill them on request.",
    )
    parser.add_argument("-s", "--start-port", type=int, default=DEFAULT_START_PORT,
                        help="Starting port for range scanning (inclusive)")
    parser.add_argument("-e", "--end-port", type=int, default=DEFAULT_END_PORT,
                        help="Ending port for range scanning (inclusive)")
    parser.add_argument("-p", "--ports", type=_port_list,
                        help="Specific ports to monitor, comma-separated (overrides the range)")
    parser.add_argument("-c", "--console", action="store_true",
                        help="Print updates to the console instead of the interactive UI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-d", "--docker", action="store_true",
                        help="Also monitor ports published by Docker containers")
    parser.add_argument("-P", "--show-pid", action="store_true", help="Show process IDs")
    parser.add_argument("--scan-interval", type=float, default=5.0,
                        help="Seconds between scans (default: 5)")
    parser.add_argument("--refresh-interval", type=float, default=3.0,
                        help="Seconds between display refreshes (default: 3)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> MonitorConfig:
    """Build a validated MonitorConfig; raises FatalStartupError."""
    if args.ports is not None:
        ports = PortSelector.of(args.ports)
    else:
        ports = PortSelector.range(args.start_port, args.end_port)
    return MonitorConfig(
        ports=ports,
        container_monitoring_enabled=args.docker,
        scan_interval=args.scan_interval,
        refresh_interval=args.refresh_interval,
        show_pid=args.show_pid,
    ).validate()


def setup_logging(verbose: bool, console: bool) -> None:
    """Configure logging; the interactive UI routes records to the Textual log."""
    level = logging.DEBUG if verbose else logging.INFO
    if console:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        return

    from textual.logging import TextualHandler

    logging.basicConfig(level=level, handlers=[TextualHandler()])


def main(argv: list[str] | None = None) -> int:
    """Entry point for port-kill."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except FatalStartupError as exc:
        parser.print_usage(sys.stderr)
        print(f"port-kill: error: {exc}", file=sys.stderr)
        return 2

    setup_logging(args.verbose, args.console)
    logger.info("Starting Port Kill on %s", config.ports.describe())

    if args.console:
        from portkill.console import ConsoleMonitor

        ConsoleMonitor(config).run()
    else:
        from portkill.app import PortKillApp

        PortKillApp(config).run()

    logger.info("Port Kill stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
