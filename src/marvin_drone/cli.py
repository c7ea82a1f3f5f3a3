"""Command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from marvin_drone._version import __version__
from marvin_drone.agent import Agent
from marvin_drone.config import DEFAULT_MARVIN_URL, DEFAULT_TOPIC, SECRET_ENV_VAR, AgentConfig
from marvin_drone.core.errors import ConfigError, StartupError

logger = logging.getLogger("marvin_drone.cli")

EXIT_OK = 0
EXIT_STARTUP = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marvin-drone",
        description=(
            "Uploads data to Marvin, so that he can know all things and therefore be "
            "even more depressed about everything. Also retrieves data from Marvin to "
            "provide to local systems."
        ),
    )
    parser.add_argument(
        "--hostname",
        help="hostname of this device, so Marvin knows where the data came from "
        "(default: system hostname)",
    )
    parser.add_argument(
        "-t",
        "--tail",
        action="append",
        default=[],
        metavar="FILE",
        help="tail FILE, uploading each line to Marvin as it comes in (repeatable)",
    )
    parser.add_argument(
        "-p",
        "--ping",
        action="append",
        default=[],
        metavar="ADDR",
        help="ping ADDR every 5 seconds (repeatable)",
    )
    parser.add_argument("--marvin", default=DEFAULT_MARVIN_URL, help="control server URL")
    parser.add_argument(
        "--secret",
        default=os.environ.get(SECRET_ENV_VAR),
        help=f"shared secret (default: ${SECRET_ENV_VAR})",
    )
    parser.add_argument("--topic", default=DEFAULT_TOPIC, help="control topic to join")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="log level",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> AgentConfig:
    """Turn parsed arguments into a validated config.

    Raises:
        ConfigError: on invalid or missing values.
    """
    return AgentConfig.load(
        hostname=args.hostname,
        tail=args.tail,
        ping=args.ping,
        marvin=args.marvin,
        secret=args.secret,
        topic=args.topic,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
    )

    try:
        config = load_config(args)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG

    try:
        asyncio.run(Agent(config).run())
    except StartupError as exc:
        logger.error("%s", exc)
        return EXIT_STARTUP
    except KeyboardInterrupt:
        pass
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
