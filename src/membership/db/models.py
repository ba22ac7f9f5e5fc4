"""Table-name constants and channel enums."""

from enum import Enum


class Table:
    """Database table names."""

    SUBSCRIBERS = "subscribers"
    PAYMENTS = "payments"
    INVITE_LINKS = "invite_links"
    SCHEMA_MIGRATIONS = "schema_migrations"


class Channel(str, Enum):
    """Delivery/access channel."""

    TELEGRAM = "telegram"
    DISCORD = "discord"
    WHATSAPP = "whatsapp"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    Channel.TELEGRAM: "Telegram",
    Channel.DISCORD: "Discord",
    Channel.WHATSAPP: "WhatsApp",
}

# Per-user channels reached through a handle linked by the handshake.
# WhatsApp is addressed by the contact number collected at checkout instead.
HANDLE_COLUMNS = {
    Channel.TELEGRAM: "telegram_id",
    Channel.DISCORD: "discord_id",
}


class PaymentStatus(str, Enum):
    """Stripe Checkout payment_status values."""

    PAID = "paid"
    UNPAID = "unpaid"
    NO_PAYMENT_REQUIRED = "no_payment_required"
