#!/usr/bin/env python3
"""
stackready - Service Readiness Launcher

Verifies that every service of the local development stack is up and
healthy, in dependency order, and explains what to fix when it is not.

Usage:
    python run.py                       # Verify the running stack (full profile)
    python run.py --profile minimal     # Only postgres + backend
    python run.py --start               # docker compose up each service, then verify
    python run.py --json                # One JSON record per line (CI)
    python run.py --services-file s.json

Exit codes:
    0   every service is healthy
    1   degraded or failed (see the report)
    2   configuration error
    130 interrupted

Environment Variables (or .env):
    HEALTH_CHECK_TIMEOUT, HEALTH_CHECK_INTERVAL, PROBE_TIMEOUT, GRACE_PERIOD,
    SERVICE_TIMEOUT, PROFILE, FAIL_FAST, CHECK_PORTS, OUTPUT_FORMAT,
    DATABASE_*, REDIS_*, FRONTEND_PORT, BACKEND_PORT, LOG_LEVEL, LOG_FORMAT
"""

import argparse
import asyncio
import logging
import signal
import sys

from stackready.config import Settings, load_settings
from stackready.core.run_state import CancellationToken
from stackready.exceptions import ConfigurationError
from stackready.models import RunCondition, RunStatus
from stackready.orchestrator import verify_stack
from stackready.services.diagnostics import Report
from stackready.services.reporter import Color, create_reporter

EXIT_READY = 0
EXIT_NOT_READY = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

JSON_LOG_FORMAT = '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}'
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


# ============================================================================
# Signal Handling
# ============================================================================

class SignalHandler:
    """Cancels the run on SIGINT/SIGTERM."""

    def __init__(self, token: CancellationToken):
        self.token = token
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous: dict[int, object] = {}

    def setup(self):
        """Set up signal handlers."""
        self._loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous[sig] = signal.signal(sig, self._handle_signal)

    def restore(self):
        """Put back the handlers that were installed before setup()."""
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.token.cancel, RunCondition.CANCELLED)


# ============================================================================
# Utility Functions
# ============================================================================

def configure_logging(level: str, log_format: str = "text"):
    """Configure root logging on stderr so stdout stays free for the report."""
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.WARNING),
        format=JSON_LOG_FORMAT if log_format == "json" else TEXT_LOG_FORMAT,
        force=True,
    )


def exit_code_for(report: Report) -> int:
    """Map a finished report to the process exit code."""
    if report.condition is RunCondition.CANCELLED:
        return EXIT_INTERRUPTED
    if report.status is RunStatus.READY:
        return EXIT_READY
    return EXIT_NOT_READY


def settings_overrides(args: argparse.Namespace) -> dict:
    """Settings fields set on the command line; None means 'not given'."""
    level = "debug" if args.verbose else args.log_level
    return {
        "profile": args.profile,
        "services_file": args.services_file,
        "health_check_timeout": args.timeout,
        "health_check_interval": args.interval,
        "compose_file": args.compose_file,
        "fail_fast": args.fail_fast,
        "check_ports": args.check_ports,
        "output_format": args.output_format,
        "log_level": level,
        "log_format": args.log_format,
    }


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description='stackready - verify the development stack is up and healthy',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py                       # Verify the running stack
  python run.py --profile minimal     # Only postgres + backend
  python run.py --start --fail-fast   # Start with docker compose, stop at first failure
  python run.py --json --timeout 300  # CI: JSON lines, five minute deadline
        """
    )

    # Output selection (mutually exclusive)
    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument(
        '--json',
        action='store_const',
        const='json',
        dest='output_format',
        help='Write one JSON record per line'
    )
    output_group.add_argument(
        '--interactive',
        action='store_const',
        const='interactive',
        dest='output_format',
        help='Write colored status lines even when stdout is not a terminal'
    )

    # Selection
    parser.add_argument(
        '--profile',
        type=str,
        default=None,
        help='Service profile to verify (default: full, or PROFILE env var)'
    )
    parser.add_argument(
        '--services-file',
        type=str,
        default=None,
        help='JSON file describing the services to verify instead of the built-in stack'
    )

    # Timing
    parser.add_argument(
        '--timeout',
        type=float,
        default=None,
        help='Global deadline in seconds (default: 120, or HEALTH_CHECK_TIMEOUT)'
    )
    parser.add_argument(
        '--interval',
        type=float,
        default=None,
        help='Seconds between probes of one service (default: 2, or HEALTH_CHECK_INTERVAL)'
    )

    # Starting services
    parser.add_argument(
        '--start',
        action='store_true',
        help='Start each service with docker compose before checking it'
    )
    parser.add_argument(
        '--compose-file',
        type=str,
        default=None,
        help='Compose file used with --start (default: docker-compose.yml)'
    )
    parser.add_argument(
        '--check-ports',
        action='store_true',
        default=None,
        dest='check_ports',
        help='Check required host ports before starting (default: only with --start)'
    )
    parser.add_argument(
        '--no-check-ports',
        action='store_false',
        dest='check_ports',
        help='Skip the port conflict check'
    )
    parser.add_argument(
        '--fail-fast',
        action='store_true',
        default=None,
        help='Stop the whole run at the first service that fails'
    )

    # Output options
    parser.add_argument(
        '--no-color',
        action='store_true',
        help='Disable colored output'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging on stderr'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['debug', 'info', 'warning', 'error'],
        help='Log level for stderr diagnostics (default: warning)'
    )
    parser.add_argument(
        '--log-format',
        type=str,
        default=None,
        choices=['text', 'json'],
        help='Log line format (default: text)'
    )

    return parser


# ============================================================================
# Main Entry Point
# ============================================================================

async def run_verification(settings: Settings, *, start: bool = False, color_enabled: bool = True) -> int:
    """Verify the stack described by *settings* and return the exit code."""
    reporter = create_reporter(settings.output_format, sys.stdout, color_enabled)
    token = CancellationToken()
    signal_handler = SignalHandler(token)
    signal_handler.setup()
    try:
        report = await verify_stack(settings, start=start, reporter=reporter, token=token)
    finally:
        signal_handler.restore()
    return exit_code_for(report)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)
    color_enabled = not args.no_color and sys.stdout.isatty()

    try:
        settings = load_settings(**settings_overrides(args))
        configure_logging(settings.log_level, settings.log_format)
        return asyncio.run(run_verification(settings, start=args.start, color_enabled=color_enabled))
    except ConfigurationError as e:
        if color_enabled:
            print(f"{Color.RED}{Color.BOLD}✗ {e}{Color.RESET}", file=sys.stderr)
        else:
            print(f"✗ {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


def cli():
    sys.exit(main())


if __name__ == '__main__':
    cli()
