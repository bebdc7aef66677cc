from __future__ import annotations

import argparse
import asyncio
import logging
import signal

import uvicorn

from app.app_factory import create_app
from app.container import build_container
from app.logging_setup import configure_logging
from config import settings

logger = logging.getLogger(__name__)
app = create_app()


async def _worker_main() -> None:
    """Run the backfill worker until SIGINT/SIGTERM, then drain and close."""
    container = build_container(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    container.start_worker()
    try:
        await stop.wait()
        logger.info("Shutdown signal received, finishing in-flight jobs…")
    finally:
        await container.close()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=settings.app_name)
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=("serve", "worker"),
        help="serve: HTTP API (default); worker: standalone backfill worker",
    )
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    configure_logging(settings.log_level)

    if args.command == "worker":
        logger.info("Starting backfill worker on queue '%s'", settings.queue_name)
        asyncio.run(_worker_main())
    else:
        logger.info("Starting %s on %s:%s", settings.app_name, settings.app_host, settings.app_port)
        uvicorn.run(
            app,
            host=settings.app_host,
            port=settings.app_port,
            log_level=settings.log_level.lower(),
        )
