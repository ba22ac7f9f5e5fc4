"""Channel capability interface shared by the Telegram, Discord and WhatsApp adapters.

Each adapter owns its own readiness state. Callers check ``is_ready()``
before sending and fail fast instead of blocking on a client that is still
connecting.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from membership.db.models import Channel
from membership.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MediaKind(str, Enum):
    """Channel media primitive an attachment maps to."""

    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"


def media_kind(content_type: str) -> MediaKind:
    if content_type.startswith("image/"):
        return MediaKind.PHOTO
    if content_type.startswith("video/"):
        return MediaKind.VIDEO
    return MediaKind.DOCUMENT


@dataclass
class Attachment:
    """A broadcast file, already sniffed and validated."""

    filename: str
    content_type: str
    data: bytes
    url: Optional[str] = None  # public reference link, set once stored

    @property
    def kind(self) -> MediaKind:
        return media_kind(self.content_type)


class ChannelAdapter(ABC):
    """Send/issue primitives for one channel."""

    channel: Channel
    # False for channels that get a reference link instead of the file
    supports_media: bool = True

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the underlying client can be used right now."""

    def require_ready(self) -> None:
        """Raise UpstreamUnavailableError unless the channel is ready."""
        if not self.is_ready():
            raise UpstreamUnavailableError(self.channel, f"{self.channel.label} client is not ready")

    @abstractmethod
    async def issue_invite(self, email: str) -> str:
        """Issue (or return) the access artifact for a subscriber."""

    async def revoke_invite(self, artifact: str) -> None:
        """Invalidate an artifact that was issued but never persisted."""

    @abstractmethod
    async def send_text(self, recipient: str, text: str) -> None:
        """Send a text message to one recipient."""

    async def send_media(self, recipient: str, attachment: Attachment, caption: str) -> None:
        """Send a file with a caption. Channels without media support send a link."""
        text = f"{caption}\n{attachment.url}" if caption else attachment.url or ""
        await self.send_text(recipient, text)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    description: str,
) -> T:
    """Run an operation, retrying a bounded number of times while upstream is unavailable.

    Only UpstreamUnavailableError is retried; any other error propagates
    immediately. The last UpstreamUnavailableError is re-raised once the
    attempts are exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except UpstreamUnavailableError as e:
            if attempt >= attempts:
                raise
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
    raise ValueError("attempts must be >= 1")
