"""Delivery/access channels: Telegram, Discord and the WhatsApp gateway."""

from membership.channels.base import Attachment, ChannelAdapter, MediaKind, with_retry
from membership.channels.registry import ChannelRegistry, build_channels

__all__ = [
    "Attachment",
    "ChannelAdapter",
    "ChannelRegistry",
    "MediaKind",
    "build_channels",
    "with_retry",
]
