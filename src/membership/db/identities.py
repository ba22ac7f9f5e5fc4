"""Identity Store: subscribers, their expiry and their linked channel handles."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from membership.db.models import HANDLE_COLUMNS, Channel, Table

logger = logging.getLogger(__name__)


@dataclass
class SubscriberIdentity:
    """One subscriber, keyed by email."""

    email: str
    expire_date: datetime
    whatsapp_number: Optional[str] = None
    phone_number: Optional[str] = None
    telegram_id: Optional[str] = None
    discord_id: Optional[str] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expire_date >= now

    def handle_for(self, channel: Channel) -> Optional[str]:
        return getattr(self, HANDLE_COLUMNS[channel])

    @classmethod
    def from_row(cls, row) -> "SubscriberIdentity":
        return cls(
            email=row["email"],
            expire_date=row["expire_date"],
            whatsapp_number=row["whatsapp_number"],
            phone_number=row["phone_number"],
            telegram_id=row["telegram_id"],
            discord_id=row["discord_id"],
        )


_COLUMNS = "email, expire_date, whatsapp_number, phone_number, telegram_id, discord_id"


def _handle_column(channel: Channel) -> str:
    try:
        return HANDLE_COLUMNS[channel]
    except KeyError:
        raise ValueError(f"{channel.label} has no linkable handle") from None


async def get_identity(conn: asyncpg.Connection, email: str) -> Optional[SubscriberIdentity]:
    """Fetch a subscriber by email, or None."""
    row = await conn.fetchrow(
        f"SELECT {_COLUMNS} FROM {Table.SUBSCRIBERS} WHERE email = $1",
        email,
    )
    return SubscriberIdentity.from_row(row) if row else None


async def find_by_handle(
    conn: asyncpg.Connection,
    channel: Channel,
    handle: str,
) -> Optional[SubscriberIdentity]:
    """Fetch the subscriber a channel handle is linked to, or None."""
    column = _handle_column(channel)
    row = await conn.fetchrow(
        f"SELECT {_COLUMNS} FROM {Table.SUBSCRIBERS} WHERE {column} = $1",
        handle,
    )
    return SubscriberIdentity.from_row(row) if row else None


async def upsert_identity(
    conn: asyncpg.Connection,
    email: str,
    expire_date: datetime,
    whatsapp_number: Optional[str],
    phone_number: Optional[str],
) -> None:
    """Create or refresh a subscriber after a settled payment.

    Resets expiry and contact numbers. Linked handles are left untouched:
    they are owned by the linking handshake.
    """
    await conn.execute(
        f"""
        INSERT INTO {Table.SUBSCRIBERS}
            (email, expire_date, whatsapp_number, phone_number)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (email) DO UPDATE SET
            expire_date = EXCLUDED.expire_date,
            whatsapp_number = EXCLUDED.whatsapp_number,
            phone_number = COALESCE(EXCLUDED.phone_number, {Table.SUBSCRIBERS}.phone_number),
            updated_at = now()
        """,
        email,
        expire_date,
        whatsapp_number,
        phone_number,
    )


async def link_handle(
    conn: asyncpg.Connection,
    email: str,
    channel: Channel,
    handle: str,
) -> bool:
    """Attach a channel handle to a subscriber unless another one is linked.

    The update only applies while the column is empty or already holds the
    same handle, so concurrent handshakes can't overwrite each other.

    Returns:
        True if the handle is now linked to this email, False if a different
        handle was already linked.

    Raises:
        asyncpg.UniqueViolationError: If the handle is linked to another email
    """
    column = _handle_column(channel)
    result = await conn.execute(
        f"""
        UPDATE {Table.SUBSCRIBERS}
        SET {column} = $2, updated_at = now()
        WHERE email = $1 AND ({column} IS NULL OR {column} = $2)
        """,
        email,
        handle,
    )
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    return result.split()[-1] != "0"


async def list_linked_handles(
    conn: asyncpg.Connection,
    channel: Channel,
    now: datetime,
) -> list[tuple[str, str]]:
    """List (email, handle) for active subscribers linked on a channel."""
    column = _handle_column(channel)
    rows = await conn.fetch(
        f"""
        SELECT email, {column} AS handle
        FROM {Table.SUBSCRIBERS}
        WHERE expire_date >= $1 AND {column} IS NOT NULL
        ORDER BY email
        """,
        now,
    )
    return [(row["email"], row["handle"]) for row in rows]


async def list_contact_numbers(
    conn: asyncpg.Connection,
    now: datetime,
) -> list[tuple[str, str]]:
    """List (email, whatsapp_number) for every active subscriber with a number."""
    rows = await conn.fetch(
        f"""
        SELECT email, whatsapp_number
        FROM {Table.SUBSCRIBERS}
        WHERE expire_date >= $1
          AND whatsapp_number IS NOT NULL
          AND whatsapp_number <> ''
        ORDER BY email
        """,
        now,
    )
    return [(row["email"], row["whatsapp_number"]) for row in rows]


async def list_expired_emails(conn: asyncpg.Connection, now: datetime) -> list[str]:
    """List emails whose expiry is strictly before now."""
    rows = await conn.fetch(
        f"SELECT email FROM {Table.SUBSCRIBERS} WHERE expire_date < $1 ORDER BY expire_date",
        now,
    )
    return [row["email"] for row in rows]


async def delete_identity(conn: asyncpg.Connection, email: str) -> None:
    await conn.execute(f"DELETE FROM {Table.SUBSCRIBERS} WHERE email = $1", email)
