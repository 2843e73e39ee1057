"""Command-line entry point for the bin agent daemon."""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from bin_agent import build_info
from bin_agent.config import LOG_LEVELS, Settings, apply_config, get_settings, load_config_file
from bin_agent.daemon import BinAgentDaemon
from bin_agent.errors import CertificateError, ConnectError, WatchError
from bin_agent.observability import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bin-agent",
        description="Periodically send the vacuum bin level to an MQTT broker",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {build_info.VERSION}")
    parser.add_argument(
        "--config",
        help="JSON config file applied on top of BIN_AGENT_* environment settings",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the daemon")
    # SUPPRESS keeps a top-level --config when the subcommand does not repeat it.
    serve.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help="JSON config file applied on top of BIN_AGENT_* environment settings",
    )
    serve.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Override the configured log level",
    )
    return parser


def load_settings(config_path: Optional[str]) -> Settings:
    settings = get_settings()
    if config_path:
        payload = load_config_file(Path(config_path))
        if payload:
            apply_config(settings, payload)
    return settings


async def serve(settings: Settings, daemon: Optional[BinAgentDaemon] = None) -> int:
    daemon = daemon or BinAgentDaemon(settings)
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, daemon.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s unavailable on this platform", sig)
    try:
        await daemon.run()
    except (ConnectError, CertificateError) as exc:
        logger.error("Startup failed: %s", exc)
        return EXIT_FATAL
    except WatchError as exc:
        logger.error("Fatal error in file watcher: %s", exc)
        return EXIT_FATAL
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    logger.info("Bin agent stopped")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        print(f"bin-agent: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    if args.log_level:
        settings.log_level = args.log_level
    configure_logging(settings.service_name, settings.log_level, version=settings.service_version)
    logger.info("Starting bin agent %s", settings.service_version)
    return asyncio.run(serve(settings))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
