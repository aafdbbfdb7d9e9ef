"""Command line interface: ``zsonar sonar``, ``zsonar listen`` and ``zsonar broker``."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, List, Optional

import zmq

from . import __version__
from .broker import Broker, BrokerClient
from .config import DEFAULT_RATE, Settings, load_settings
from .exceptions import SonarError
from .lifecycle import connected, install_interrupt_handler
from .listener import Listener
from .ping import Sonar
from .publisher import Publisher
from .utils.log import LogConfig, _logger


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zsonar",
        description="sends and receives ping events to test pub/sub connectivity",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-t", "--topic", default=settings.topic,
        help="specify the sonar topic to use (env: ZSONAR_TOPIC)",
    )
    parser.add_argument(
        "-L", "--verbosity", default=settings.log_level,
        help="set the log level (env: ZSONAR_LOG_LEVEL)",
    )
    parser.add_argument(
        "-C", "--console", action=argparse.BooleanOptionalAction, default=settings.console_log,
        help="human readable console log instead of json, --no-console forces json (env: ZSONAR_CONSOLE_LOG)",
    )
    parser.add_argument(
        "-b", "--broker", default=settings.broker_url,
        help="url of the broker request socket (env: ZSONAR_BROKER_URL)",
    )
    parser.add_argument(
        "--connect-timeout", type=float, default=settings.connect_timeout,
        help="seconds to wait for the broker to answer (env: ZSONAR_CONNECT_TIMEOUT)",
    )

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.required = True

    sonar = commands.add_parser("sonar", help="generate sonar pings and send to the specified topic")
    sonar.add_argument(
        "-r", "--rate", type=float, default=DEFAULT_RATE,
        help="events to publish per second (-1 for as fast as possible)",
    )
    sonar.add_argument(
        "--no-wait-ack", action="store_true",
        help="do not wait for the broker to ack each ping before sending the next",
    )

    commands.add_parser("listen", help="subscribe to the stream and listen for sonar pings")

    broker = commands.add_parser("broker", help="run an in-memory broker for sonar and listen")
    broker.add_argument(
        "--bind", default=settings.broker_url,
        help="url to bind the request socket to",
    )
    broker.add_argument(
        "--events", default=settings.events_url,
        help="url to bind the event socket to (env: ZSONAR_EVENTS_URL)",
    )
    broker.add_argument(
        "--max-redeliveries", type=int, default=3,
        help="how many times a nacked event is redelivered",
    )
    return parser


async def serve_broker(args: argparse.Namespace, logger: Any, stop: asyncio.Event) -> None:
    broker = Broker(args.bind, args.events, max_redeliveries=args.max_redeliveries, logger=logger)
    try:
        await broker.serve(stop)
    finally:
        broker.close()


async def run_command(args: argparse.Namespace, config: LogConfig) -> int:
    """Run the selected command until it finishes or is interrupted."""
    logger = config.get_logger("zsonar", command=args.command)
    stop = asyncio.Event()
    remove_handler = install_interrupt_handler(stop)
    try:
        if args.command == "broker":
            await serve_broker(args, logger, stop)
            return 0

        client = BrokerClient(args.broker, args.connect_timeout, logger=logger)
        async with connected(client):
            if args.command == "sonar":
                publisher = Publisher(client, Sonar(), logger=logger, wait_for_ack=not args.no_wait_ack)
                await publisher.run(args.topic, args.rate, stop)
            else:
                await Listener(client, logger=logger).run(args.topic, stop)
    except (SonarError, zmq.ZMQError) as e:
        logger.error("could not execute command", error=str(e))
        return 1
    finally:
        remove_handler()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = load_settings()
    except ValueError as e:
        _logger.error("invalid configuration", error=str(e))
        return 1

    args = build_parser(settings).parse_args(argv)
    try:
        config = LogConfig.from_names(args.verbosity, console=args.console)
    except ValueError as e:
        _logger.error("could not configure logging", error=str(e))
        return 1

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        return 0


def run() -> None:
    sys.exit(main())
