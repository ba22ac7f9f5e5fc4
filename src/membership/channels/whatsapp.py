"""WhatsApp gateway adapter (360messenger).

Recipients are the WhatsApp numbers collected at checkout, not handles
linked through the handshake. Attachments are delivered as reference links.
"""

import asyncio
import logging
import re
from typing import Optional

import aiohttp

from membership.channels.base import ChannelAdapter
from membership.config.settings import AppConfig
from membership.db.models import Channel
from membership.errors import MembershipError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


class WhatsAppAPIError(MembershipError):
    """The gateway rejected a message."""

    http_status = 502


def normalize_number(number: str) -> str:
    """Strip everything but digits ("+1 (123) 456-7890" -> "11234567890")."""
    return _NON_DIGITS.sub("", number)


class WhatsAppChannel(ChannelAdapter):
    channel = Channel.WHATSAPP
    supports_media = False

    def __init__(self, config: AppConfig):
        self._api_key = config.whatsapp_api_key.get_secret_value()
        self._send_url = f"{config.whatsapp_api_base_url.rstrip('/')}/sendMessage"
        self._invite_link = config.whatsapp_invite_link
        self._timeout = aiohttp.ClientTimeout(total=config.http_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    def is_ready(self) -> bool:
        return bool(self._api_key)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def issue_invite(self, email: str) -> str:
        """Return the static link to the broadcast number (same for everyone)."""
        return self._invite_link

    async def send_text(self, recipient: str, text: str) -> None:
        self.require_ready()
        number = normalize_number(recipient)
        headers = {"Authorization": f"Bearer {self._api_key}"}
        # A dict body is sent as application/x-www-form-urlencoded
        form = {"phonenumber": number, "text": text}
        try:
            async with self._get_session().post(self._send_url, data=form, headers=headers) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise UpstreamUnavailableError(
                        self.channel, f"WhatsApp gateway returned HTTP {resp.status}"
                    )
                if resp.status >= 400:
                    detail = await resp.text()
                    raise WhatsAppAPIError(
                        f"WhatsApp gateway rejected message to {number}: "
                        f"HTTP {resp.status} {detail[:200]}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(
                self.channel, f"WhatsApp gateway request failed: {e or type(e).__name__}"
            ) from e
