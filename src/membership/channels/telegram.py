"""Telegram Bot API adapter.

Talks to the HTTP Bot API directly over a shared aiohttp session: single-use
group invite links, direct messages to linked users, and media uploads.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from membership.channels.base import Attachment, ChannelAdapter, MediaKind
from membership.config.settings import AppConfig
from membership.db.models import Channel
from membership.errors import MembershipError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

# Bot API method and multipart field for each media primitive
_MEDIA_METHODS = {
    MediaKind.PHOTO: ("sendPhoto", "photo"),
    MediaKind.VIDEO: ("sendVideo", "video"),
    MediaKind.DOCUMENT: ("sendDocument", "document"),
}

# Invite link names are limited to 32 characters by the Bot API
_INVITE_NAME_MAX = 32


class TelegramAPIError(MembershipError):
    """Telegram rejected a request (bad chat id, missing rights, blocked bot...)."""

    http_status = 502


class TelegramChannel(ChannelAdapter):
    channel = Channel.TELEGRAM

    def __init__(self, config: AppConfig):
        self._token = config.telegram_bot_token.get_secret_value()
        self._group_id = config.telegram_group_id
        self._base_url = f"{config.telegram_api_base_url}/bot{self._token}"
        self._timeout = aiohttp.ClientTimeout(total=config.http_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    def is_ready(self) -> bool:
        return bool(self._token and self._group_id)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _call(
        self,
        method: str,
        payload: Optional[dict[str, Any]] = None,
        form: Optional[aiohttp.FormData] = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result``.

        Raises:
            UpstreamUnavailableError: On network errors, timeouts, 429 and 5xx
            TelegramAPIError: When Telegram rejects the request
        """
        self.require_ready()
        url = f"{self._base_url}/{method}"
        try:
            async with self._get_session().post(url, json=payload, data=form) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise UpstreamUnavailableError(
                        self.channel, f"Telegram {method} returned HTTP {resp.status}"
                    )
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(
                self.channel, f"Telegram {method} request failed: {e or type(e).__name__}"
            ) from e

        if not body.get("ok"):
            raise TelegramAPIError(
                f"Telegram {method} failed: {body.get('description', 'unknown error')}"
            )
        return body.get("result")

    async def issue_invite(self, email: str) -> str:
        """Create a single-use invite link to the subscription group."""
        result = await self._call(
            "createChatInviteLink",
            {
                "chat_id": self._group_id,
                "name": email[:_INVITE_NAME_MAX],
                "member_limit": 1,
                "creates_join_request": False,
            },
        )
        invite_link = result["invite_link"]
        logger.info(f"Issued Telegram invite link for {email}")
        return invite_link

    async def revoke_invite(self, artifact: str) -> None:
        await self._call(
            "revokeChatInviteLink",
            {"chat_id": self._group_id, "invite_link": artifact},
        )
        logger.info("Revoked unused Telegram invite link")

    async def send_text(self, recipient: str, text: str) -> None:
        await self._call("sendMessage", {"chat_id": recipient, "text": text})

    async def send_media(self, recipient: str, attachment: Attachment, caption: str) -> None:
        method, field = _MEDIA_METHODS[attachment.kind]
        form = aiohttp.FormData()
        form.add_field("chat_id", recipient)
        if caption:
            form.add_field("caption", caption)
        form.add_field(
            field,
            attachment.data,
            filename=attachment.filename,
            content_type=attachment.content_type,
        )
        await self._call(method, form=form)


def parse_private_message(update: dict) -> Optional[tuple[str, str]]:
    """Extract (sender id, text) from a Bot API update.

    Only text messages in private chats are returned; group traffic, edits
    and service messages yield None.
    """
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    text = message.get("text")
    if chat.get("type") != "private" or "id" not in sender or text is None:
        return None
    return str(sender["id"]), text
