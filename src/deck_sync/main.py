"""
Deck Sync Main Entry Point

Starts:
- SQLite-backed configuration store
- Engine connection with automatic reconnect
- FastAPI server (HTTP + /ws push channel)

Usage:
    deck-sync [--config PATH] [--log-level LEVEL]
    python -m deck_sync
"""

import argparse
import asyncio
import logging
import signal

import uvicorn

from .api import create_app
from .service import DeckService
from .settings import ServiceConfig, load_config

logger = logging.getLogger(__name__)

STATS_INTERVAL_SECONDS = 300


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="deck-sync", description=__doc__.splitlines()[1])
    parser.add_argument("--config", help="Path to YAML settings file")
    parser.add_argument("--log-level", help="Override log level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )


async def run_service(config: ServiceConfig) -> None:
    """Run the deck service until SIGINT/SIGTERM."""
    logger.info("=" * 60)
    logger.info("Deck Sync Starting")
    logger.info("=" * 60)
    logger.info(f"Engine: {config.obs_url}")
    logger.info(f"Storage Path: {config.storage_path}")
    logger.info(f"API: {config.host}:{config.port}")

    service = DeckService(config)
    app = create_app(service, manage_lifecycle=False)
    await service.start()

    server = uvicorn.Server(
        uvicorn.Config(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    )
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    async def periodic_stats():
        """Log statistics periodically."""
        while True:
            await asyncio.sleep(STATS_INTERVAL_SECONDS)
            try:
                stats = await service.get_stats()
                logger.info(
                    f"Stats: engine {stats['control_plane']['state']}, "
                    f"{stats['sessions']['session_count']} sessions, "
                    f"{stats['dispatcher']['presses']} presses, "
                    f"{stats['broadcaster']['updates_broadcast']} status pushes"
                )
            except Exception as e:
                logger.error(f"Stats error: {e}")

    api_task = asyncio.create_task(server.serve())
    stats_task = asyncio.create_task(periodic_stats())
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    try:
        await asyncio.wait({api_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        logger.info("Shutting down...")
        server.should_exit = True
        await api_task
    finally:
        stats_task.cancel()
        shutdown_task.cancel()
        await service.stop()
        logger.info("Deck Sync stopped")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = load_config(args.config)
    if args.log_level:
        config.log_level = args.log_level
    configure_logging(config.log_level)
    asyncio.run(run_service(config))


if __name__ == "__main__":
    main()
