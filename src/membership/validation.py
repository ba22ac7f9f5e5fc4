"""Input normalization shared by checkout, activation and linking."""

import re
from typing import Optional

from membership.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15


def normalize_email(value: str) -> str:
    return value.strip().casefold()


def is_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def require_email(value: Optional[str]) -> str:
    """Return the normalized email or raise ValidationError."""
    if not value or not value.strip():
        raise ValidationError("email is required")
    email = normalize_email(value)
    if not is_email(email):
        raise ValidationError(f"Invalid email address: {value!r}")
    return email


def require_phone(value: Optional[str], field: str) -> str:
    """Validate a phone number (10-15 digits once non-digits are stripped).

    Returns the number as given, trimmed; the digits-only form is derived
    by the gateway at send time.
    """
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")
    digits = re.sub(r"\D", "", value)
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise ValidationError(
            f"{field} must contain {PHONE_MIN_DIGITS}-{PHONE_MAX_DIGITS} digits"
        )
    return value.strip()


def optional_phone(value: Optional[str], field: str) -> Optional[str]:
    if not value or not value.strip():
        return None
    return require_phone(value, field)
