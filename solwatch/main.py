"""Command line entry point for the holdings service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from argparse import ArgumentParser
from typing import List, Optional

from aiohttp import web

from .api import create_app
from .config import Settings, SettingsError, load_settings
from .logging_utils import configure_runtime_logging
from .service import HoldingsService

logger = logging.getLogger(__name__)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description="Run the Solana holdings cache and event stream")
    parser.add_argument(
        "--host",
        default=None,
        help="Interface to bind (defaults to HOST)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (defaults to PORT)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL for the transaction store (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Root log level (defaults to LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit log lines as JSON",
    )
    return parser


async def serve(settings: Settings) -> None:
    service = HoldingsService(settings)
    app = create_app(service)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.host, port=settings.port)
    await site.start()
    logger.info("Holdings service listening on %s:%s", settings.host, settings.port)

    stop_event = asyncio.Event()

    def _handle_signal(*_: object) -> None:
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down holdings service")
        await runner.cleanup()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {
        key: value
        for key, value in (
            ("host", args.host),
            ("port", args.port),
            ("database_url", args.database_url),
        )
        if value is not None
    }
    try:
        settings = load_settings(**overrides)
    except SettingsError as exc:
        print(f"Invalid configuration: {exc}")
        return 2

    configure_runtime_logging(
        level=args.log_level,
        log_dir=settings.log_dir,
        json_logs=args.json_logs,
        api_responses=settings.log_api_responses,
    )
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
