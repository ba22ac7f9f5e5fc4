"""Error taxonomy shared by the workflows and the HTTP boundary."""

from dataclasses import dataclass

from membership.db.models import Channel


class MembershipError(Exception):
    """Base class for expected, classified failures."""

    http_status = 500


class ValidationError(MembershipError):
    """Malformed or missing input. Never retried."""

    http_status = 400


class AuthenticationError(MembershipError):
    """Webhook signature or shared-secret verification failed."""

    http_status = 400


class DuplicateEventError(MembershipError):
    """Event already processed; callers treat this as success."""

    http_status = 200


class InactiveSubscriptionError(MembershipError):
    """No subscriber record, or its expiry has passed."""

    http_status = 403


class ArtifactIssuanceError(MembershipError):
    """A channel refused or failed to issue an access artifact."""

    http_status = 502

    def __init__(self, failures: list["ChannelFailure"]):
        self.failures = failures
        super().__init__(f"Failed to issue invite links: {render_failures(failures)}")


class UpstreamUnavailableError(MembershipError):
    """A channel provider is not ready or not reachable."""

    http_status = 503

    def __init__(self, channel: Channel, message: str):
        self.channel = channel
        super().__init__(message)


class PersistenceError(MembershipError):
    """A storage write failed; the surrounding transaction was rolled back."""

    http_status = 500


class NotificationError(MembershipError):
    """A best-effort notification could not be delivered."""

    http_status = 500


class PartialDeliveryError(MembershipError):
    """Some, but not all, fan-out sends failed."""

    http_status = 200

    def __init__(self, failures: list["ChannelFailure"]):
        self.failures = failures
        super().__init__(render_failures(failures))


@dataclass(frozen=True)
class ChannelFailure:
    """One failed channel (or channel recipient) in an aggregated result."""

    channel: Channel
    error: str

    def to_dict(self) -> dict:
        return {"channel": self.channel.value, "error": self.error}


def render_failures(failures: list[ChannelFailure]) -> str:
    """Render failures as "Telegram: ...; Discord: ..." for API responses."""
    return "; ".join(f"{f.channel.label}: {f.error}" for f in failures)
