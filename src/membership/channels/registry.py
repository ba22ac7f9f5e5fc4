"""Process-wide set of channel adapters, built once at startup."""

import logging
from typing import Iterator, Optional

from membership.channels.base import ChannelAdapter
from membership.channels.discord_bot import DiscordChannel, MembershipBot
from membership.channels.telegram import TelegramChannel
from membership.channels.whatsapp import WhatsAppChannel
from membership.config.settings import AppConfig
from membership.db.models import Channel

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Channel adapters keyed by channel, in delivery order."""

    def __init__(self, adapters: list[ChannelAdapter]):
        self._adapters = {adapter.channel: adapter for adapter in adapters}

    def get(self, channel: Channel) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel)

    def __getitem__(self, channel: Channel) -> ChannelAdapter:
        return self._adapters[channel]

    def __iter__(self) -> Iterator[ChannelAdapter]:
        return iter(self._adapters.values())

    def readiness(self) -> dict[str, bool]:
        return {c.value: a.is_ready() for c, a in self._adapters.items()}

    async def close(self) -> None:
        """Close HTTP sessions held by the adapters."""
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


def build_channels(config: AppConfig, bot: MembershipBot) -> ChannelRegistry:
    registry = ChannelRegistry(
        [
            TelegramChannel(config),
            DiscordChannel(bot),
            WhatsAppChannel(config),
        ]
    )
    logger.info(f"Channel adapters created: {registry.readiness()}")
    return registry
