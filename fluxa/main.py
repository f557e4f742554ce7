from __future__ import annotations

import argparse
import asyncio
import os
import sys

import httpx
import structlog

from fluxa import __version__
from fluxa.errors import ConfigurationError
from fluxa.http import create_app, serve
from fluxa.log import configure_logging
from fluxa.monitor import MonitorSupervisor
from fluxa.notification import (
    MultiNotifier,
    Notifier,
    PushoverConfig,
    PushoverNotifier,
    TelegramConfig,
    TelegramNotifier,
)
from fluxa.probe import Prober
from fluxa.settings import DEFAULT_CONFIG_PATH, FluxaConfig, load_config
from fluxa.status import StatusBoard


logger = structlog.get_logger(__name__)

USER_AGENT = f"fluxa/{__version__}"


def build_notifier(config: FluxaConfig, client: httpx.AsyncClient) -> Notifier:
    notifiers: list[Notifier] = []
    if config.pushover_enabled:
        notifiers.append(
            PushoverNotifier(
                client,
                PushoverConfig(api_key=str(config.pushover_api_key), user_key=str(config.pushover_user_key)),
            )
        )
    if config.telegram_enabled:
        notifiers.append(
            TelegramNotifier(
                client,
                TelegramConfig(bot_token=str(config.telegram_bot_token), chat_id=str(config.telegram_chat_id)),
            )
        )
    if not notifiers:
        raise ConfigurationError("Missing notification credentials (Pushover or Telegram)")
    if len(notifiers) == 1:
        return notifiers[0]
    return MultiNotifier(notifiers)


async def run_service(config: FluxaConfig) -> int:
    board = StatusBoard()
    async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
        supervisor = MonitorSupervisor(
            config.services,
            Prober(client),
            build_notifier(config, client),
            board=board,
        )
        logger.info("Spawning monitoring", services=len(config.services))
        supervisor.start()
        try:
            await serve(create_app(board, config.services), config.fluxa.listen)
        finally:
            await supervisor.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Lightweight URL availability monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("FLUXA_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    parser.add_argument("--listen", default=None, help="Override fluxa.listen (host:port or unix:/path)")
    parser.add_argument("--check-config", action="store_true", help="Validate the config and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    environ = dict(os.environ)
    if args.listen:
        environ["FLUXA_LISTEN"] = args.listen

    try:
        config = load_config(args.config, environ)
    except ConfigurationError as exc:
        logger.error("Invalid configuration", path=args.config, error=str(exc))
        return 2

    if args.check_config:
        logger.info("Configuration ok", path=args.config, services=len(config.services))
        return 0

    try:
        return asyncio.run(run_service(config))
    except KeyboardInterrupt:
        logger.info("Shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
