"""Stripe webhook verification and event routing."""

import json
import logging

import stripe
from aiohttp import web

from membership.channels.registry import ChannelRegistry
from membership.config.settings import get_config
from membership.db.models import PaymentStatus
from membership.errors import AuthenticationError, MembershipError, ValidationError
from membership.subscriptions.activation import PaymentEvent, activate_subscription

logger = logging.getLogger(__name__)

# Delayed payment methods complete the session unpaid and settle later
ACTIVATING_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


def verify_event(payload: bytes, sig_header: str) -> dict:
    """Verify the Stripe signature and parse the event into plain dicts.

    Raises:
        AuthenticationError: If the payload or signature is invalid
    """
    config = get_config()
    try:
        stripe.Webhook.construct_event(
            payload,
            sig_header,
            config.stripe_webhook_secret.get_secret_value(),
        )
    except ValueError as e:
        raise AuthenticationError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError("Invalid signature") from e

    # StripeObject does not support dict methods such as .get
    return json.loads(payload)


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    channels: ChannelRegistry,
) -> web.Response:
    """Handle and verify Stripe webhook events.

    Returns:
        200 {"received": true} when processed, duplicated or ignored;
        400 on signature or payload problems (Stripe should not retry);
        500 when activation failed (Stripe retries the event)
    """
    try:
        event = verify_event(payload, sig_header)
    except AuthenticationError as e:
        logger.error(f"Webhook rejected: {e}")
        return web.json_response({"error": f"Webhook Error: {e}"}, status=400)

    event_type = event["type"]
    logger.info(f"Received webhook: {event_type}")

    if event_type not in ACTIVATING_EVENTS:
        logger.info(f"Ignoring event type: {event_type}")
        return web.json_response({"received": True})

    session = event["data"]["object"]
    if session.get("payment_status") == PaymentStatus.UNPAID.value:
        logger.info(f"Checkout session {session.get('id')} completed unpaid; awaiting settlement")
        return web.json_response({"received": True})

    try:
        payment_event = PaymentEvent.from_checkout_session(session)
        result = await activate_subscription(payment_event, channels)
    except ValidationError as e:
        logger.error(f"Invalid {event_type} payload: {e}")
        return web.json_response({"error": f"Webhook Error: {e}"}, status=400)
    except MembershipError as e:
        logger.error(f"Error processing webhook {event_type}: {e}")
        return web.json_response({"error": f"Webhook Error: {e}"}, status=500)
    except Exception as e:
        logger.exception(f"Error processing webhook {event_type}: {e}")
        # Return 500 so Stripe will retry
        return web.json_response({"error": "Internal error"}, status=500)

    logger.info(f"Webhook {event_type} for {result.email}: {result.status.value}")
    return web.json_response({"received": True})
