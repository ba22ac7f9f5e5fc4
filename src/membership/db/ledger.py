"""Payment Ledger: append-only record of settled checkout sessions.

The checkout-session id is the idempotency key for payment events. Both a
pre-check read (``payment_exists``) and the unique constraint enforced by
``insert_payment`` are required: the read skips work for redelivered events,
and the constraint decides the race between two concurrent deliveries.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import asyncpg

from membership.db.models import Table
from membership.errors import DuplicateEventError

logger = logging.getLogger(__name__)


@dataclass
class PaymentRecord:
    """One settled payment."""

    email: str
    stripe_payment_id: Optional[str]
    stripe_checkout_session_id: str
    amount: int
    currency: str
    status: str
    phone_number: Optional[str] = None
    whatsapp_number: Optional[str] = None


async def payment_exists(conn: asyncpg.Connection, checkout_session_id: str) -> bool:
    """Check whether a checkout session has already been recorded."""
    return bool(
        await conn.fetchval(
            f"SELECT 1 FROM {Table.PAYMENTS} WHERE stripe_checkout_session_id = $1",
            checkout_session_id,
        )
    )


async def insert_payment(conn: asyncpg.Connection, payment: PaymentRecord) -> int:
    """Record a settled payment.

    Returns:
        The new payment_id

    Raises:
        DuplicateEventError: If the checkout session is already recorded
    """
    try:
        return await conn.fetchval(
            f"""
            INSERT INTO {Table.PAYMENTS}
                (email, stripe_payment_id, stripe_checkout_session_id,
                 amount, currency, status, phone_number, whatsapp_number)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING payment_id
            """,
            payment.email,
            payment.stripe_payment_id,
            payment.stripe_checkout_session_id,
            payment.amount,
            payment.currency,
            payment.status,
            payment.phone_number,
            payment.whatsapp_number,
        )
    except asyncpg.UniqueViolationError as e:
        raise DuplicateEventError(
            f"Checkout session {payment.stripe_checkout_session_id} already recorded"
        ) from e
