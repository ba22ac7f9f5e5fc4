"""Expiry reconciliation: reclaim lapsed subscriptions.

Each pass deletes every subscriber whose expiry is strictly in the past,
together with its invite entry. Single-use join links already handed out are
not revoked on the Telegram/Discord side: no member id is stored for them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from membership.db import identities, invites
from membership.db.pool import get_pool

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


async def reconcile_expired(now: Optional[datetime] = None) -> ReconcileReport:
    """Run one reconciliation pass.

    Each expired subscriber is removed in its own transaction; a failure is
    logged and recorded and the pass moves on to the next one.

    Args:
        now: Reference time (defaults to current UTC)

    Returns:
        ReconcileReport listing deleted and failed emails
    """
    now = now or datetime.now(timezone.utc)
    pool = await get_pool()
    report = ReconcileReport()

    async with pool.acquire() as conn:
        expired = await identities.list_expired_emails(conn, now)

    if not expired:
        logger.debug("No expired subscriptions")
        return report

    logger.info(f"Found {len(expired)} expired subscription(s)")

    for email in expired:
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await identities.delete_identity(conn, email)
                    await invites.delete_invites(conn, email)
        except Exception as e:
            logger.error(f"Error reclaiming expired subscription {email}: {e}")
            report.failed[email] = str(e)
            continue
        logger.info(f"Subscription expired for {email}; subscriber and invite links deleted")
        report.deleted.append(email)

    return report


async def run_reconciler(interval_seconds: float, shutdown_event: asyncio.Event) -> None:
    """Run reconciliation passes every ``interval_seconds`` until shutdown.

    A failing pass (e.g. database unreachable) is logged and retried on the
    next tick.
    """
    logger.info(f"Expiry reconciler started (every {interval_seconds:.0f}s)")
    while not shutdown_event.is_set():
        try:
            await reconcile_expired()
        except Exception as e:
            logger.error(f"Expiry reconciliation pass failed: {e}")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
    logger.info("Expiry reconciler stopped")
