"""
Command-line entry point.

Usage:
    message-relay producer
    message-relay consumer --config config/settings.yaml
    message-relay both --log-level DEBUG
"""
import argparse
import asyncio
import sys

from config.logging_setup import configure_logging
from config.settings import load_settings
from job_queue.errors import QueueConfigurationError
from job_queue.runner import install_signal_handlers, run_both, run_consumer, run_producer

ROLES = {
    "producer": run_producer,
    "consumer": run_consumer,
    "both": run_both,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="message-relay",
        description="Run the queue producer, consumer, or both",
    )
    parser.add_argument("role", choices=ROLES.keys(), help="Which loop to run")
    parser.add_argument("--config", default=None,
                        help="Path to settings YAML (default: $RELAY_CONFIG or config/settings.yaml)")
    parser.add_argument("--log-level", default=None,
                        help="Override logging.level from the settings file")
    return parser


async def _run(role: str, settings) -> None:
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    await ROLES[role](settings, stop_event)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except QueueConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or settings.logging.level, settings.logging.json)

    try:
        asyncio.run(_run(args.role, settings))
    except QueueConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
