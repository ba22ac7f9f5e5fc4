"""Discord bot lifecycle and channel adapter.

The bot connects to the configured guild, resolves the text channel invites
point at, and answers direct messages with the linking handshake. The
adapter exposes the bot's readiness as a gate for request handlers.
"""

import asyncio
import io
import logging
from typing import Optional

import discord
from discord.ext import commands

from membership.channels.base import Attachment, ChannelAdapter
from membership.config.settings import AppConfig
from membership.db.models import Channel
from membership.errors import MembershipError, UpstreamUnavailableError
from membership.linking.handshake import handle_direct_message

logger = logging.getLogger(__name__)


class DiscordAPIError(MembershipError):
    """Discord rejected a request (missing permissions, DMs closed...)."""

    http_status = 502


class MembershipBot(commands.Bot):
    """Discord bot for invites, direct-message linking and broadcasts.

    No commands: the only inbound interaction is a direct message carrying
    the subscriber's email.
    """

    def __init__(self, config: AppConfig):
        intents = discord.Intents.default()
        intents.guilds = True
        intents.dm_messages = True

        super().__init__(
            command_prefix="!",  # Unused but required
            intents=intents,
            help_command=None,
        )

        self.config = config
        self.invite_channel: Optional[discord.TextChannel] = None
        self._channels_ready = asyncio.Event()
        self._shutdown = asyncio.Event()

    @property
    def channels_ready(self) -> bool:
        return self._channels_ready.is_set() and not self.is_closed()

    async def on_ready(self) -> None:
        """Resolve the guild and invite channel, then open the readiness gate."""
        logger.info(f"Bot connected as {self.user}")

        if not self.config.discord_guild_id:
            logger.error("DISCORD_GUILD_ID not configured")
            return

        guild = self.get_guild(int(self.config.discord_guild_id))
        if guild is None:
            logger.error(
                f"Guild {self.config.discord_guild_id} not found. "
                "Ensure bot is invited to the server."
            )
            return

        channel = self._resolve_invite_channel(guild)
        if channel is None:
            logger.error(f"No text channel found in guild {guild.name}")
            return

        self.invite_channel = channel
        self._channels_ready.set()
        logger.info(f"Bot ready: invites point at #{channel.name} in {guild.name}")

    def _resolve_invite_channel(self, guild: discord.Guild) -> Optional[discord.TextChannel]:
        wanted = self.config.discord_invite_channel
        if wanted:
            return discord.utils.get(guild.text_channels, name=wanted)
        return guild.text_channels[0] if guild.text_channels else None

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is not None:
            return

        reply = await handle_direct_message(
            Channel.DISCORD, str(message.author.id), message.content
        )
        try:
            await message.channel.send(reply.text)
        except discord.HTTPException as e:
            logger.error(f"Failed to reply to Discord user {message.author.id}: {e}")

    async def on_error(self, event: str, *args, **kwargs) -> None:
        logger.exception(f"Error in event {event}")

    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the readiness gate; False on timeout."""
        try:
            await asyncio.wait_for(self._channels_ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Discord bot did not become ready within {timeout}s")
            return False

    def shutdown(self) -> None:
        self._shutdown.set()

    async def run_until_shutdown(self) -> None:
        """Run bot until shutdown signal received."""
        bot_task = asyncio.create_task(self.start(self.config.discord_token.get_secret_value()))

        # Stop waiting if the bot dies on its own (bad token, network)
        shutdown_task = asyncio.create_task(self._shutdown.wait())
        await asyncio.wait({bot_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        shutdown_task.cancel()

        logger.info("Shutting down Discord bot...")
        await self.close()

        if bot_task.done():
            if bot_task.exception() is not None:
                logger.error(f"Discord bot stopped: {bot_task.exception()}")
            return

        try:
            await asyncio.wait_for(bot_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Bot task did not complete within timeout")
            bot_task.cancel()


def _translate_http_error(e: discord.HTTPException, action: str) -> MembershipError:
    if e.status == 429 or e.status >= 500:
        return UpstreamUnavailableError(Channel.DISCORD, f"Discord {action} failed: {e}")
    return DiscordAPIError(f"Discord {action} failed: {e}")


class DiscordChannel(ChannelAdapter):
    channel = Channel.DISCORD

    def __init__(self, bot: MembershipBot):
        self.bot = bot

    def is_ready(self) -> bool:
        return self.bot.channels_ready and self.bot.invite_channel is not None

    async def issue_invite(self, email: str) -> str:
        """Create a single-use, unique invite to the guild's invite channel."""
        self.require_ready()
        try:
            invite = await self.bot.invite_channel.create_invite(
                max_uses=1,
                unique=True,
                reason=f"Invite for email {email}",
            )
        except discord.HTTPException as e:
            raise _translate_http_error(e, "invite creation") from e
        logger.info(f"Issued Discord invite for {email}")
        return invite.url

    async def revoke_invite(self, artifact: str) -> None:
        self.require_ready()
        try:
            await self.bot.delete_invite(artifact)
        except discord.NotFound:
            return
        except discord.HTTPException as e:
            raise _translate_http_error(e, "invite revocation") from e
        logger.info("Revoked unused Discord invite")

    async def _get_user(self, recipient: str) -> discord.User:
        user_id = int(recipient)
        user = self.bot.get_user(user_id)
        if user is None:
            try:
                user = await self.bot.fetch_user(user_id)
            except discord.HTTPException as e:
                raise _translate_http_error(e, "user lookup") from e
        return user

    async def send_text(self, recipient: str, text: str) -> None:
        self.require_ready()
        user = await self._get_user(recipient)
        try:
            await user.send(text)
        except discord.HTTPException as e:
            raise _translate_http_error(e, "direct message") from e

    async def send_media(self, recipient: str, attachment: Attachment, caption: str) -> None:
        self.require_ready()
        user = await self._get_user(recipient)
        file = discord.File(io.BytesIO(attachment.data), filename=attachment.filename)
        try:
            await user.send(content=caption or None, file=file)
        except discord.HTTPException as e:
            raise _translate_http_error(e, "direct message") from e
