"""Per-channel access-artifact issuance.

Telegram and Discord mint a fresh single-use invite per subscriber; WhatsApp
hands every subscriber the same static link to the broadcast number.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from membership.channels.base import ChannelAdapter, with_retry
from membership.channels.registry import ChannelRegistry
from membership.config.settings import get_config
from membership.db import identities, invites
from membership.db.invites import InviteArtifacts
from membership.db.models import HANDLE_COLUMNS, Channel
from membership.db.pool import get_pool
from membership.errors import ArtifactIssuanceError, ChannelFailure, InactiveSubscriptionError
from membership.validation import require_email

logger = logging.getLogger(__name__)


@dataclass
class IssuanceResult:
    artifacts: InviteArtifacts = field(default_factory=InviteArtifacts)
    failures: list[ChannelFailure] = field(default_factory=list)


async def _issue_one(adapter: ChannelAdapter, email: str) -> str:
    config = get_config()
    return await with_retry(
        lambda: adapter.issue_invite(email),
        attempts=config.channel_retry_attempts,
        delay=config.channel_retry_delay_seconds,
        description=f"{adapter.channel.label} invite",
    )


async def issue_artifacts(channels: ChannelRegistry, email: str) -> IssuanceResult:
    """Issue artifacts on every channel concurrently.

    A channel that is not ready is retried with bounded backoff; anything
    still failing is recorded in ``failures`` with that channel left blank.
    """
    adapters = list(channels)
    outcomes = await asyncio.gather(
        *(_issue_one(adapter, email) for adapter in adapters),
        return_exceptions=True,
    )

    result = IssuanceResult()
    for adapter, outcome in zip(adapters, outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(f"{adapter.channel.label} invite for {email} failed: {outcome}")
            result.failures.append(ChannelFailure(adapter.channel, str(outcome)))
        else:
            setattr(result.artifacts, adapter.channel.value, outcome or "")
    return result


async def revoke_artifacts(channels: ChannelRegistry, artifacts: InviteArtifacts) -> None:
    """Best-effort revocation of artifacts that will not be persisted."""
    for adapter in channels:
        artifact = artifacts.get(adapter.channel)
        if not artifact:
            continue
        try:
            await adapter.revoke_invite(artifact)
        except Exception as e:
            logger.error(f"Could not revoke unused {adapter.channel.label} invite: {e}")


async def reissue_invites(
    email: str,
    channels: ChannelRegistry,
    now: Optional[datetime] = None,
) -> IssuanceResult:
    """Issue fresh artifacts for an active subscriber and store them.

    Channels that fail keep whatever the registry already held for them.

    Raises:
        ValidationError: If the email is malformed
        InactiveSubscriptionError: If there is no active subscription
        ArtifactIssuanceError: If no per-user invite could be issued at all
    """
    email = require_email(email)
    now = now or datetime.now(timezone.utc)
    pool = await get_pool()

    async with pool.acquire() as conn:
        identity = await identities.get_identity(conn, email)
    if identity is None or not identity.is_active(now):
        raise InactiveSubscriptionError("No active subscription")

    result = await issue_artifacts(channels, email)
    if not any(result.artifacts.get(channel) for channel in HANDLE_COLUMNS):
        raise ArtifactIssuanceError(result.failures)

    async with pool.acquire() as conn:
        await invites.upsert_invites(conn, email, result.artifacts, keep_existing=True)
        stored = await invites.get_invites(conn, email)

    logger.info(
        f"Re-issued invites for {email}"
        + (f" ({len(result.failures)} channel(s) failed)" if result.failures else "")
    )
    return IssuanceResult(artifacts=stored or result.artifacts, failures=result.failures)
