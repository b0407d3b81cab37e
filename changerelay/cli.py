"""
Command line entry point.

    changerelay --duration 300
    changerelay --marker legacy-changestream --peer-marker atlas-changestream
    changerelay --reset-checkpoint
"""

import argparse
import logging
from typing import List, Optional

from pydantic import ValidationError
from pymongo.errors import ConfigurationError

from config.settings import Settings, get_settings
from .cdc.errors import RelayError, ResumeUnavailable
from .monitoring.metrics import start_metrics_server
from .relay import build_relay
from .utils.logging import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_RESUME_UNAVAILABLE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="changerelay",
        description="Replicate inserts from a source MongoDB collection to a destination using change streams"
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)"
    )
    parser.add_argument(
        "--marker",
        default=None,
        help="sync_source marker stamped on replicated documents"
    )
    parser.add_argument(
        "--peer-marker",
        action="append",
        dest="peer_markers",
        default=None,
        help="Marker of a relay running in the opposite direction (repeatable)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level"
    )
    parser.add_argument(
        "--reset-checkpoint",
        action="store_true",
        help="Forget the stored resume token before starting (replication restarts from now)"
    )
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Return settings with command line values applied."""
    relay_updates = {}
    if args.duration is not None:
        relay_updates["run_duration_seconds"] = args.duration
    if args.marker:
        relay_updates["sync_marker"] = args.marker
    if args.peer_markers is not None:
        relay_updates["peer_markers"] = args.peer_markers

    updates = {}
    if relay_updates:
        relay = settings.relay.model_dump()
        relay.update(relay_updates)
        updates["relay"] = type(settings.relay).model_validate(relay)
    if args.log_level:
        updates["log_level"] = args.log_level
    return settings.model_copy(update=updates)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = apply_overrides(get_settings(), args)
    except ValidationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return EXIT_ERROR

    configure_logging(settings.log_level, settings.log_json)
    start_metrics_server(settings.relay.metrics_port)

    try:
        relay = build_relay(settings)
    except (RelayError, ConfigurationError, ImportError) as e:
        # ConfigurationError: malformed URI; ImportError: missing database driver
        logger.error(f"Cannot set up the relay: {e}")
        return EXIT_ERROR

    try:
        if args.reset_checkpoint:
            try:
                relay.checkpoint_store.reset()
            except RelayError:
                relay.close()
                raise
        summary = relay.run(duration=settings.relay.run_duration_seconds)
    except ResumeUnavailable as e:
        logger.critical(
            f"Cannot resume the change stream, resync the destination and rerun with --reset-checkpoint: {e}"
        )
        return EXIT_RESUME_UNAVAILABLE
    except RelayError as e:
        logger.error(f"Relay stopped with error: {e}")
        return EXIT_ERROR

    logger.info(
        f"Relay stopped: {summary.applied} applied, {summary.skipped} skipped, {summary.failed} failed"
    )
    if summary.unacknowledged:
        logger.warning(
            f"{summary.unacknowledged} document(s) left unacknowledged, they are redelivered on the next run"
        )
    return EXIT_OK
