"""Fan-out delivery across Telegram, Discord and WhatsApp.

Two call shapes:
- ``send_welcome`` / ``send_to_recipient``: one message to one contact,
  used by the activation workflow.
- ``Broadcaster.broadcast``: one message (and optional attachment) to every
  current recipient on every channel.

Every channel, and every recipient within a channel, fails independently.
A failure is recorded as a ChannelFailure and never aborts sibling sends.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from membership.broadcast.attachments import LocalAttachmentStore
from membership.channels.base import Attachment, ChannelAdapter, with_retry
from membership.channels.registry import ChannelRegistry
from membership.config.settings import get_config
from membership.db import identities
from membership.db.invites import InviteArtifacts
from membership.db.models import HANDLE_COLUMNS, Channel
from membership.db.pool import get_pool
from membership.errors import ChannelFailure, NotificationError, PartialDeliveryError

logger = logging.getLogger(__name__)

# Concurrent sends per channel; keeps clear of provider rate limits
MAX_CONCURRENT_SENDS = 10


@dataclass
class BroadcastReport:
    """Outcome of one broadcast across all channels."""

    delivered: dict[Channel, int] = field(default_factory=dict)
    failures: list[ChannelFailure] = field(default_factory=list)

    @property
    def succeeded_channels(self) -> list[Channel]:
        return [channel for channel, count in self.delivered.items() if count > 0]

    @property
    def success(self) -> bool:
        return bool(self.succeeded_channels)

    @property
    def partial(self) -> bool:
        return self.success and bool(self.failures)

    def partial_error(self) -> Optional[PartialDeliveryError]:
        return PartialDeliveryError(self.failures) if self.partial else None

    def summary(self) -> str:
        labels = [channel.label for channel in self.succeeded_channels]
        if len(labels) > 1:
            joined = f"{', '.join(labels[:-1])} and {labels[-1]}"
        else:
            joined = "".join(labels)
        return f"Message broadcasted successfully to: {joined}"


def format_welcome(artifacts: InviteArtifacts) -> str:
    """Build the single "you're in" message listing every issued artifact."""
    lines = ["Thank you for your payment! Your membership is active."]
    if artifacts.telegram:
        lines.append(f"Join our Telegram channel here: {artifacts.telegram}")
    if artifacts.discord:
        lines.append(f"Join our Discord server here: {artifacts.discord}")
    if artifacts.whatsapp:
        lines.append(f"Save our WhatsApp broadcast number here: {artifacts.whatsapp}")
    lines.append(
        "To receive announcements as direct messages, send the email you "
        "subscribed with to our Telegram and Discord bots."
    )
    return "\n".join(lines)


async def send_to_recipient(
    adapter: ChannelAdapter,
    recipient: str,
    text: str,
    attachment: Optional[Attachment] = None,
) -> None:
    """Deliver one message to one recipient, retrying while the channel is unavailable.

    Raises:
        NotificationError: If delivery fails
    """
    config = get_config()

    async def _send() -> None:
        if attachment is not None and (adapter.supports_media or attachment.url):
            await adapter.send_media(recipient, attachment, text)
        else:
            await adapter.send_text(recipient, text)

    try:
        await with_retry(
            _send,
            attempts=config.channel_retry_attempts,
            delay=config.channel_retry_delay_seconds,
            description=f"{adapter.channel.label} send",
        )
    except Exception as e:
        raise NotificationError(f"{adapter.channel.label} delivery failed: {e}") from e


async def send_welcome(channels: ChannelRegistry, whatsapp_number: str, artifacts: InviteArtifacts) -> None:
    """Send the welcome message to the WhatsApp number given at checkout.

    Raises:
        NotificationError: If the message could not be delivered
    """
    adapter = channels.get(Channel.WHATSAPP)
    if adapter is None:
        raise NotificationError("WhatsApp channel is not configured")
    await send_to_recipient(adapter, whatsapp_number, format_welcome(artifacts))
    logger.info(f"Sent welcome message to {whatsapp_number}")


class Broadcaster:
    """Multi-recipient broadcast over every registered channel."""

    def __init__(
        self,
        channels: ChannelRegistry,
        attachment_store: Optional[LocalAttachmentStore] = None,
    ):
        self.channels = channels
        self.attachment_store = attachment_store

    async def audiences(self, now: datetime) -> dict[Channel, list[tuple[str, str]]]:
        """Compute (email, recipient) lists per channel.

        Telegram and Discord reach active subscribers who linked a handle;
        WhatsApp reaches every active subscriber with a checkout number.
        """
        pool = await get_pool()
        result: dict[Channel, list[tuple[str, str]]] = {}
        async with pool.acquire() as conn:
            for adapter in self.channels:
                if adapter.channel in HANDLE_COLUMNS:
                    result[adapter.channel] = await identities.list_linked_handles(
                        conn, adapter.channel, now
                    )
                else:
                    result[adapter.channel] = await identities.list_contact_numbers(conn, now)
        return result

    async def broadcast(
        self,
        message: str,
        attachment: Optional[Attachment] = None,
        now: Optional[datetime] = None,
    ) -> BroadcastReport:
        """Send a message (and optional attachment) to every current recipient.

        Never raises for delivery problems; they are collected in the report.
        The report is successful when at least one channel delivered to at
        least one recipient.
        """
        now = now or datetime.now(timezone.utc)
        report = BroadcastReport()

        audiences = await self.audiences(now)
        link_error = await self._store_attachment_if_needed(attachment, audiences)

        results = await asyncio.gather(
            *(
                self._deliver_channel(
                    adapter,
                    audiences.get(adapter.channel, []),
                    message,
                    attachment,
                    link_error,
                )
                for adapter in self.channels
            )
        )
        for adapter, (count, failures) in zip(self.channels, results):
            report.delivered[adapter.channel] = count
            report.failures.extend(failures)

        if report.partial:
            logger.warning(f"Broadcast partially delivered: {report.partial_error()}")
        elif not report.success:
            logger.error("Broadcast failed on every channel")
        else:
            logger.info(report.summary())
        return report

    async def _store_attachment_if_needed(
        self,
        attachment: Optional[Attachment],
        audiences: dict[Channel, list[tuple[str, str]]],
    ) -> Optional[str]:
        """Publish the attachment for channels that only get a link.

        Returns an error string if a link was needed but could not be made.
        """
        if attachment is None or attachment.url:
            return None
        needs_link = any(
            not adapter.supports_media and audiences.get(adapter.channel)
            for adapter in self.channels
        )
        if not needs_link:
            return None
        if self.attachment_store is None:
            return "attachment link unavailable: no attachment store configured"
        try:
            await self.attachment_store.save(attachment)
        except OSError as e:
            logger.error(f"Failed to store broadcast attachment: {e}")
            return f"attachment link unavailable: {e}"
        return None

    async def _deliver_channel(
        self,
        adapter: ChannelAdapter,
        audience: list[tuple[str, str]],
        message: str,
        attachment: Optional[Attachment],
        link_error: Optional[str],
    ) -> tuple[int, list[ChannelFailure]]:
        channel = adapter.channel
        if not adapter.is_ready():
            logger.warning(f"{channel.label} not ready, skipping broadcast")
            return 0, [ChannelFailure(channel, "channel not ready")]
        if not audience:
            kind = "linked recipients" if channel in HANDLE_COLUMNS else "active contact numbers"
            return 0, [ChannelFailure(channel, f"no {kind}")]
        if attachment is not None and not adapter.supports_media and link_error:
            return 0, [ChannelFailure(channel, link_error)]

        semaphore = asyncio.Semaphore(MAX_CONCURRENT_SENDS)

        async def _send_one(email: str, recipient: str) -> Optional[ChannelFailure]:
            async with semaphore:
                try:
                    if attachment is not None:
                        await adapter.send_media(recipient, attachment, message)
                    else:
                        await adapter.send_text(recipient, message)
                except Exception as e:
                    logger.error(f"{channel.label} broadcast to {email} failed: {e}")
                    return ChannelFailure(channel, f"{email}: {e}")
                return None

        outcomes = await asyncio.gather(*(_send_one(email, r) for email, r in audience))
        failures = [f for f in outcomes if f is not None]
        delivered = len(audience) - len(failures)
        logger.info(f"{channel.label} broadcast delivered to {delivered}/{len(audience)} recipients")
        return delivered, failures
