"""Paid membership onboarding and subscription lifecycle."""

__version__ = "0.1.0"
