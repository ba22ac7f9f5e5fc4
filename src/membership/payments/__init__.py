"""Stripe checkout and payment webhook processing."""

from membership.payments.checkout import CheckoutRequest, create_checkout_url
from membership.payments.webhooks import handle_webhook

__all__ = [
    "CheckoutRequest",
    "create_checkout_url",
    "handle_webhook",
]
