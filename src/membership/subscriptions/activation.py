"""Subscription activation: a settled payment becomes live access.

Sequence for one checkout.session.completed event:

1. Validate the payload (email, WhatsApp number).
2. Skip if the checkout session is already in the ledger.
3. Issue the per-channel access artifacts.
4. In one transaction: record the payment, upsert the subscriber, store the
   artifacts. The ledger's unique constraint on the session id settles races
   between concurrent deliveries of the same event.
5. Send the welcome message. Best effort: access is already granted.

Any failure in 3-4 leaves nothing persisted and revokes artifacts issued for
the attempt, so the provider can safely redeliver the event.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import asyncpg

from membership.broadcast.fanout import send_welcome
from membership.channels.registry import ChannelRegistry
from membership.config.settings import get_config
from membership.db import identities, invites, ledger
from membership.db.invites import InviteArtifacts
from membership.db.ledger import PaymentRecord
from membership.db.pool import get_pool
from membership.errors import (
    ArtifactIssuanceError,
    DuplicateEventError,
    NotificationError,
    PersistenceError,
    ValidationError,
)
from membership.subscriptions.issuance import issue_artifacts, revoke_artifacts
from membership.validation import optional_phone, require_email, require_phone

logger = logging.getLogger(__name__)


@dataclass
class PaymentEvent:
    """Verified payment-completion event, normalized."""

    email: str
    whatsapp_number: str
    phone_number: Optional[str]
    checkout_session_id: str
    payment_id: Optional[str]
    amount: int
    currency: str
    status: str

    @classmethod
    def from_checkout_session(cls, session: dict) -> "PaymentEvent":
        """Build an event from a Stripe Checkout Session object.

        Raises:
            ValidationError: If the email or WhatsApp number is missing or malformed
        """
        metadata = session.get("metadata") or {}
        customer_details = session.get("customer_details") or {}

        session_id = session.get("id")
        if not session_id:
            raise ValidationError("Checkout session has no id")

        return cls(
            email=require_email(metadata.get("email") or customer_details.get("email")),
            whatsapp_number=require_phone(metadata.get("whatsapp_number"), "whatsapp_number"),
            phone_number=optional_phone(metadata.get("phone_number"), "phone_number"),
            checkout_session_id=session_id,
            payment_id=session.get("payment_intent"),
            amount=session.get("amount_total") or 0,
            currency=session.get("currency") or "",
            status=session.get("payment_status") or "",
        )

    def to_record(self) -> PaymentRecord:
        return PaymentRecord(
            email=self.email,
            stripe_payment_id=self.payment_id,
            stripe_checkout_session_id=self.checkout_session_id,
            amount=self.amount,
            currency=self.currency,
            status=self.status,
            phone_number=self.phone_number,
            whatsapp_number=self.whatsapp_number,
        )


class ActivationStatus(str, Enum):
    ACTIVATED = "activated"
    DUPLICATE = "duplicate"


@dataclass
class ActivationResult:
    email: str
    status: ActivationStatus
    artifacts: Optional[InviteArtifacts] = None
    expire_date: Optional[datetime] = None
    notified: bool = False
    notification_error: Optional[str] = None


async def activate_subscription(
    event: PaymentEvent,
    channels: ChannelRegistry,
    now: Optional[datetime] = None,
) -> ActivationResult:
    """Turn a verified payment event into an active subscription.

    Args:
        event: Normalized payment event
        channels: Channel adapters used for issuance and the welcome message
        now: Reference time for the new expiry (defaults to current UTC)

    Returns:
        ActivationResult; status DUPLICATE when the session was already processed

    Raises:
        ArtifactIssuanceError: If any channel failed to issue an artifact
        PersistenceError: If the transaction failed and was rolled back
    """
    config = get_config()
    now = now or datetime.now(timezone.utc)
    pool = await get_pool()

    async with pool.acquire() as conn:
        if await ledger.payment_exists(conn, event.checkout_session_id):
            logger.info(f"Checkout session {event.checkout_session_id} already processed")
            return ActivationResult(event.email, ActivationStatus.DUPLICATE)

    issuance = await issue_artifacts(channels, event.email)
    if issuance.failures:
        await revoke_artifacts(channels, issuance.artifacts)
        raise ArtifactIssuanceError(issuance.failures)
    artifacts = issuance.artifacts

    expire_date = now + timedelta(days=config.renewal_period_days)
    try:
        async with pool.acquire() as conn:
            async with conn.transaction():
                await ledger.insert_payment(conn, event.to_record())
                await identities.upsert_identity(
                    conn,
                    email=event.email,
                    expire_date=expire_date,
                    whatsapp_number=event.whatsapp_number,
                    phone_number=event.phone_number,
                )
                await invites.upsert_invites(conn, event.email, artifacts)
    except DuplicateEventError:
        logger.info(
            f"Checkout session {event.checkout_session_id} recorded by a concurrent delivery"
        )
        await revoke_artifacts(channels, artifacts)
        return ActivationResult(event.email, ActivationStatus.DUPLICATE)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.error(f"Activation for {event.email} rolled back: {e}")
        await revoke_artifacts(channels, artifacts)
        raise PersistenceError(f"Failed to persist subscription for {event.email}: {e}") from e

    logger.info(f"Activated subscription for {event.email} until {expire_date.isoformat()}")
    result = ActivationResult(
        event.email,
        ActivationStatus.ACTIVATED,
        artifacts=artifacts,
        expire_date=expire_date,
    )

    try:
        await send_welcome(channels, event.whatsapp_number, artifacts)
        result.notified = True
    except NotificationError as e:
        logger.error(f"Welcome message for {event.email} not delivered: {e}")
        result.notification_error = str(e)

    return result
