#!/usr/bin/env python3
"""
relay_main.py — CLI entry point for intel-relay.

Sub-commands
------------
start   Test the connection to the intel server, then watch the chat log
        directory and forward intel until interrupted (default).

test    Only test the connection to the intel server.

Usage
-----
    # Watch the logs named in simple-intel-config.json
    python -m intelrelay.relay_main start

    # Explicit directory, log intel locally instead of sending it
    python -m intelrelay.relay_main start --logs-dir ~/Documents/EVE/logs/Chatlogs --dry-run

    # Connection test only
    python -m intelrelay.relay_main test --server-url https://intel.example.org
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from intelrelay.classifier import IntelClassifier
from intelrelay.config import RelayConfig, load_config
from intelrelay.dispatcher import Dispatcher
from intelrelay.errors import ConfigError, WatchPathError
from intelrelay.sink import HttpSink, LoggingSink, Sink

logger = logging.getLogger("intelrelay")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def resolve_config(args: argparse.Namespace) -> RelayConfig:
    """Load the config file and apply command-line overrides."""
    config = load_config(args.config)
    return config.with_overrides(
        logs_dir=getattr(args, "logs_dir", None),
        server_url=args.server_url,
        api_key=args.api_key,
        poll_interval=getattr(args, "poll_interval", None),
        inactivity_threshold=getattr(args, "inactivity_threshold", None),
        freshness_window=getattr(args, "freshness_window", None),
        switch_cooldown=getattr(args, "switch_cooldown", None),
        assume_utc=False if getattr(args, "local_time", False) else None,
    )


# ---------------------------------------------------------------------------
# Test sub-command
# ---------------------------------------------------------------------------

def cmd_test(args: argparse.Namespace) -> int:
    """Check that the intel server answers its health endpoint."""
    config = resolve_config(args)
    logger.info("Testing connection to %s ...", config.server_url)
    sink = HttpSink(config.server_url, config.api_key, timeout=config.sink_timeout)
    try:
        return 0 if sink.check_health() else 1
    finally:
        sink.close()


# ---------------------------------------------------------------------------
# Start sub-command
# ---------------------------------------------------------------------------

async def _run_dispatcher(dispatcher: Dispatcher) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, dispatcher.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still
            # arrives as KeyboardInterrupt.
            logger.debug("No signal handler support for %s", signum)
    await dispatcher.run()


def cmd_start(args: argparse.Namespace) -> int:
    """Run the relay until interrupted."""
    config = resolve_config(args)
    if not config.logs_dir:
        logger.error("No chat log directory: pass --logs-dir or set eveLogsPath")
        return 1

    logger.info("=== intel-relay ===")
    logger.info("Logs     : %s", config.logs_dir)
    logger.info("Server   : %s", "dry run" if args.dry_run else config.server_url)
    if config.pilot_name:
        logger.info("Pilot    : %s", config.pilot_name)

    classifier = IntelClassifier()
    http_sink: HttpSink | None = None
    sink: Sink
    if args.dry_run:
        sink = LoggingSink()
    else:
        http_sink = HttpSink(
            config.server_url,
            config.api_key,
            classifier=classifier,
            timeout=config.sink_timeout,
        )
        if not args.skip_check and not http_sink.check_health():
            logger.error("Cannot connect to server. Please check your configuration.")
            http_sink.close()
            return 1
        sink = http_sink

    dispatcher = Dispatcher(config, sink, is_relevant=classifier, watch=not args.poll_only)
    logger.info("Starting relay ...  Press Ctrl+C to stop.")
    try:
        asyncio.run(_run_dispatcher(dispatcher))
    except WatchPathError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Relay stopped by user.")
    finally:
        if http_sink is not None:
            http_sink.close()
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="JSON config file (default: client-config-workers.json or "
        "simple-intel-config.json in the working directory).",
    )
    parser.add_argument("--server-url", default=None, help="Intel server base URL.")
    parser.add_argument("--api-key", default=None, help="API key for the intel server.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="intel-relay",
        description="intel-relay — forward EVE chat intel to an intel server.",
    )
    sub = parser.add_subparsers(dest="command")

    # -- start --
    start_p = sub.add_parser("start", help="Watch chat logs and forward intel.")
    _add_common(start_p)
    start_p.add_argument("--logs-dir", default=None, help="EVE Chatlogs directory.")
    start_p.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between rescans without notifications (default: 1).",
    )
    start_p.add_argument(
        "--inactivity-threshold",
        type=float,
        default=None,
        help="Seconds without growth before a log counts as inactive (default: 300).",
    )
    start_p.add_argument(
        "--freshness-window",
        type=float,
        default=None,
        help="Seconds of existing history delivered from a new log (default: 60).",
    )
    start_p.add_argument(
        "--switch-cooldown",
        type=float,
        default=None,
        help="Minimum seconds between primary switches of a channel (default: 5).",
    )
    start_p.add_argument(
        "--local-time",
        action="store_true",
        help="Chat timestamps are local time rather than UTC.",
    )
    start_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Log intel instead of sending it.",
    )
    start_p.add_argument(
        "--skip-check",
        action="store_true",
        help="Do not test the server connection before starting.",
    )
    start_p.add_argument(
        "--poll-only",
        action="store_true",
        help="Do not use filesystem notifications; only poll.",
    )

    # -- test --
    test_p = sub.add_parser("test", help="Test the connection to the intel server.")
    _add_common(test_p)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    """Parse CLI args and dispatch to the appropriate sub-command."""
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    # "start" is the default sub-command.
    if not argv or (argv[0].startswith("-") and argv[0] not in ("-h", "--help")):
        argv.insert(0, "start")
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)
    try:
        if args.command == "test":
            return cmd_test(args)
        return cmd_start(args)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
