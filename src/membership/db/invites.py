"""Invite Registry: per-subscriber access artifacts for each channel."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import asyncpg

from membership.db.models import Channel, Table


@dataclass
class InviteArtifacts:
    """Access artifacts by channel. Blank means not issued."""

    telegram: str = ""
    discord: str = ""
    whatsapp: str = ""
    updated_at: Optional[datetime] = field(default=None, compare=False)

    def get(self, channel: Channel) -> str:
        return getattr(self, channel.value)

    def is_empty(self) -> bool:
        return not (self.telegram or self.discord or self.whatsapp)

    def to_response(self) -> dict:
        return {
            "telegram_invite_link": self.telegram,
            "discord_invite_link": self.discord,
            "whatsapp_invite_link": self.whatsapp,
        }


async def get_invites(conn: asyncpg.Connection, email: str) -> Optional[InviteArtifacts]:
    row = await conn.fetchrow(
        f"""
        SELECT telegram, discord, whatsapp, updated_at
        FROM {Table.INVITE_LINKS}
        WHERE email = $1
        """,
        email,
    )
    if row is None:
        return None
    return InviteArtifacts(
        telegram=row["telegram"],
        discord=row["discord"],
        whatsapp=row["whatsapp"],
        updated_at=row["updated_at"],
    )


async def upsert_invites(
    conn: asyncpg.Connection,
    email: str,
    artifacts: InviteArtifacts,
    keep_existing: bool = False,
) -> None:
    """Store the artifacts issued for a subscriber.

    With ``keep_existing``, blank channels keep their stored value instead of
    being cleared (used when a re-issue only partly succeeded).
    """
    if keep_existing:
        assignments = ", ".join(
            f"{c} = COALESCE(NULLIF(EXCLUDED.{c}, ''), {Table.INVITE_LINKS}.{c})"
            for c in ("telegram", "discord", "whatsapp")
        )
    else:
        assignments = "telegram = EXCLUDED.telegram, discord = EXCLUDED.discord, whatsapp = EXCLUDED.whatsapp"

    await conn.execute(
        f"""
        INSERT INTO {Table.INVITE_LINKS} (email, telegram, discord, whatsapp)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (email) DO UPDATE SET
            {assignments},
            updated_at = now()
        """,
        email,
        artifacts.telegram,
        artifacts.discord,
        artifacts.whatsapp,
    )


async def delete_invites(conn: asyncpg.Connection, email: str) -> None:
    await conn.execute(f"DELETE FROM {Table.INVITE_LINKS} WHERE email = $1", email)
