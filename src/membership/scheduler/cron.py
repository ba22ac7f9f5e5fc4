"""Cron-compatible entry point for reconciliation.

``reconcile_run()`` takes no arguments and performs a single pass, for
deployments that schedule reconciliation externally instead of running the
in-process interval loop.
"""

import asyncio
import logging

from membership.db.pool import close_pool
from membership.scheduler.reconciler import reconcile_expired

logger = logging.getLogger(__name__)


def reconcile_run() -> None:
    """Entry point for a single expiry reconciliation pass."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Cron: reconcile_run triggered")

    async def _run() -> None:
        try:
            report = await reconcile_expired()
            logger.info(
                f"Reconciliation finished: {len(report.deleted)} deleted, "
                f"{len(report.failed)} failed"
            )
        finally:
            await close_pool()

    asyncio.run(_run())
