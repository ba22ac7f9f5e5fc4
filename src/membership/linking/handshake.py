"""Identity linking handshake.

Associates the sender of a direct message on a per-user channel (Telegram,
Discord) with a subscriber by matching the email they type against the
Identity Store. Each message is handled on its own; the only state is what
the Identity Store already holds, so duplicate or repeated messages are safe.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import asyncpg

from membership.db import identities, invites
from membership.db.models import Channel
from membership.db.pool import get_pool
from membership.validation import is_email, normalize_email

logger = logging.getLogger(__name__)


class LinkOutcome(str, Enum):
    NOT_AN_EMAIL = "not_an_email"
    NO_SUBSCRIPTION = "no_subscription"
    NO_INVITE = "no_invite"
    ALREADY_LINKED = "already_linked"  # email has a different handle
    HANDLE_IN_USE = "handle_in_use"  # handle belongs to a different email
    LINKED = "linked"


@dataclass
class LinkReply:
    outcome: LinkOutcome
    text: str


def _reply(outcome: LinkOutcome, channel: Channel) -> LinkReply:
    texts = {
        LinkOutcome.NOT_AN_EMAIL: (
            "Please send the email address you used to subscribe "
            f"so we can deliver updates to you here on {channel.label}."
        ),
        LinkOutcome.NO_SUBSCRIPTION: (
            "No active subscription found for that email. "
            "Check the address or complete checkout first."
        ),
        LinkOutcome.NO_INVITE: (
            "No invite found for that email. Please contact support."
        ),
        LinkOutcome.ALREADY_LINKED: (
            f"That email is already linked to another {channel.label} account."
        ),
        LinkOutcome.HANDLE_IN_USE: (
            f"This {channel.label} account is already linked to another subscription."
        ),
        LinkOutcome.LINKED: (
            f"You're all set! Broadcasts will now be delivered to you here on {channel.label}."
        ),
    }
    return LinkReply(outcome, texts[outcome])


async def link_subscriber(
    conn: asyncpg.Connection,
    channel: Channel,
    handle: str,
    text: str,
    now: Optional[datetime] = None,
) -> LinkReply:
    """Run one step of the handshake for a message from ``handle``.

    Args:
        conn: Database connection
        channel: Per-user channel the message arrived on
        handle: Sender id on that channel
        text: Raw message text
        now: Reference time for expiry checks (defaults to current UTC)

    Returns:
        LinkReply with the outcome and the text to send back
    """
    now = now or datetime.now(timezone.utc)
    email = normalize_email(text or "")

    if not is_email(email):
        return _reply(LinkOutcome.NOT_AN_EMAIL, channel)

    identity = await identities.get_identity(conn, email)
    if identity is None or not identity.is_active(now):
        logger.info(f"{channel.label} handle {handle} claimed unknown email {email}")
        return _reply(LinkOutcome.NO_SUBSCRIPTION, channel)

    if await invites.get_invites(conn, email) is None:
        logger.warning(f"{channel.label} handle {handle} claimed {email} with no invite entry")
        return _reply(LinkOutcome.NO_INVITE, channel)

    current = identity.handle_for(channel)
    if current == handle:
        return _reply(LinkOutcome.LINKED, channel)
    if current is not None:
        logger.warning(
            f"Rejected {channel.label} link for {email}: already linked to another handle"
        )
        return _reply(LinkOutcome.ALREADY_LINKED, channel)

    owner = await identities.find_by_handle(conn, channel, handle)
    if owner is not None and owner.email != email:
        logger.warning(
            f"Rejected {channel.label} link for {email}: handle {handle} belongs to {owner.email}"
        )
        return _reply(LinkOutcome.HANDLE_IN_USE, channel)

    try:
        linked = await identities.link_handle(conn, email, channel, handle)
    except asyncpg.UniqueViolationError:
        # Another handshake linked this handle to a different email meanwhile
        return _reply(LinkOutcome.HANDLE_IN_USE, channel)

    if not linked:
        # A different handle won a concurrent handshake for this email
        return _reply(LinkOutcome.ALREADY_LINKED, channel)

    logger.info(f"Linked {channel.label} handle {handle} to {email}")
    return _reply(LinkOutcome.LINKED, channel)


async def handle_direct_message(channel: Channel, handle: str, text: str) -> LinkReply:
    """Entry point for inbound direct messages from a channel transport."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await link_subscriber(conn, channel, handle, text)
