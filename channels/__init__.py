"""Outbound channel layer.

SMS, email and webhook senders behind a small set of abstract classes so
the automation engine and follow-up sweeper can dispatch generically.
"""

from channels.base import (
    EmailSender,
    ProviderError,
    ProviderNotConfigured,
    SmsSender,
    WebhookSender,
)

__all__ = [
    "EmailSender",
    "ProviderError",
    "ProviderNotConfigured",
    "SmsSender",
    "WebhookSender",
]
