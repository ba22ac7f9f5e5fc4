"""Subscription lifecycle: activation from payments and invite issuance."""

from membership.subscriptions.activation import (
    ActivationResult,
    ActivationStatus,
    PaymentEvent,
    activate_subscription,
)
from membership.subscriptions.issuance import issue_artifacts, reissue_invites

__all__ = [
    "ActivationResult",
    "ActivationStatus",
    "PaymentEvent",
    "activate_subscription",
    "issue_artifacts",
    "reissue_invites",
]
