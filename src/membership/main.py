"""Application entry point."""

import asyncio
import logging
import signal
import sys

from membership.api.server import run_server
from membership.broadcast.attachments import LocalAttachmentStore
from membership.channels.discord_bot import MembershipBot
from membership.channels.registry import build_channels
from membership.config import get_config
from membership.db import get_pool
from membership.db.pool import close_pool
from membership.db.schema.migrate import migrate
from membership.scheduler.reconciler import run_reconciler

logger = logging.getLogger(__name__)


async def boot() -> None:
    """
    Boot sequence: load config → pool → migrations → Discord bot → HTTP
    server + reconciler → wait for SIGINT/SIGTERM → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}")

        await get_pool()
        logger.info(
            f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
        )
        applied = await migrate()
        logger.info(f"Applied {applied} migration(s)")
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        await close_pool()
        raise SystemExit(1) from e

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    bot = MembershipBot(config)
    channels = build_channels(config, bot)
    attachment_store = LocalAttachmentStore(config.media_dir, config.public_base_url)

    bot_task = asyncio.create_task(bot.run_until_shutdown())
    server_task = asyncio.create_task(run_server(channels, attachment_store, shutdown_event))
    reconciler_task = asyncio.create_task(
        run_reconciler(config.reconcile_interval_seconds, shutdown_event)
    )

    if await bot.wait_ready(config.discord_ready_timeout_seconds):
        logger.info("Discord bot ready")
    else:
        logger.warning("Starting without Discord; the channel reports not ready until it connects")

    logger.info(f"Channel readiness: {channels.readiness()}")

    try:
        # Server or reconciler dying early is fatal; the bot is allowed to be down
        done, _ = await asyncio.wait(
            {server_task, reconciler_task, asyncio.create_task(shutdown_event.wait())},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Service task failed: {task.exception()}")
    finally:
        logger.info("Shutting down...")
        shutdown_event.set()
        bot.shutdown()
        await asyncio.gather(server_task, reconciler_task, bot_task, return_exceptions=True)
        await channels.close()
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
