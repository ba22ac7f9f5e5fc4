"""Stripe Checkout session creation for membership signup."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import stripe

from membership.config.settings import AppConfig, get_config
from membership.errors import ValidationError
from membership.validation import optional_phone, require_email, require_phone

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRequest:
    """Validated signup details, carried to the webhook as session metadata."""

    email: str
    whatsapp_number: str
    phone_number: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "CheckoutRequest":
        """
        Raises:
            ValidationError: If email or whatsapp_number is missing or malformed
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return cls(
            email=require_email(payload.get("email")),
            whatsapp_number=require_phone(payload.get("whatsapp_number"), "whatsapp_number"),
            phone_number=optional_phone(payload.get("phone_number"), "phone_number"),
        )


def _success_url(config: AppConfig, email: str) -> str:
    base = config.checkout_success_url
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}email={quote(email)}"


async def create_checkout_url(request: CheckoutRequest) -> str:
    """Create a one-off Stripe Checkout Session for one renewal period.

    The email and contact numbers travel as session metadata so the
    checkout.session.completed webhook can activate the subscription.

    Args:
        request: Validated checkout request

    Returns:
        Stripe Checkout Session URL

    Raises:
        stripe.StripeError: On Stripe API errors
        ValueError: If required config is missing
    """
    config = get_config()

    if not config.stripe_secret.get_secret_value():
        raise ValueError("stripe_secret not configured")

    stripe.api_key = config.stripe_secret.get_secret_value()

    # The Stripe client is synchronous; keep it off the event loop
    session = await asyncio.to_thread(
        stripe.checkout.Session.create,
        mode="payment",
        payment_method_types=["card"],
        customer_email=request.email,
        line_items=[
            {
                "price_data": {
                    "currency": config.stripe_currency,
                    "product_data": {"name": config.stripe_product_name},
                    "unit_amount": config.stripe_unit_amount,
                },
                "quantity": 1,
            }
        ],
        success_url=_success_url(config, request.email),
        cancel_url=config.checkout_cancel_url,
        metadata={
            "email": request.email,
            "phone_number": request.phone_number or "",
            "whatsapp_number": request.whatsapp_number,
        },
    )

    logger.info(f"Created checkout session {session.id} for {request.email}")

    return session.url
