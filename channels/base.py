"""Base classes for outbound message channels.

Every outbound side effect of an automation (SMS, email, webhook POST) goes
through one of the abstract senders below.  Concrete senders raise
``ProviderNotConfigured`` when credentials are missing and ``ProviderError``
when the provider rejects a request, so callers can tell "skipped" apart
from "failed".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderNotConfigured(RuntimeError):
    """Raised when a channel has no credentials for the tenant."""


class ProviderError(RuntimeError):
    """Raised when a provider answers with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


# ---------------------------------------------------------------------------
# Abstract senders
# ---------------------------------------------------------------------------

class SmsSender(ABC):
    name: str = "sms"
    from_address: str = ""

    @abstractmethod
    async def send_sms(self, owner_id: str, to: str, body: str) -> str | None:
        """Send a text message.  Returns the provider message id if known."""
        ...


class EmailSender(ABC):
    name: str = "email"
    from_address: str = ""

    @abstractmethod
    async def send_email(
        self,
        owner_id: str,
        to: str,
        subject: str,
        text: str,
        *,
        from_name: str | None = None,
    ) -> str | None:
        """Send a plain-text email.  Returns the provider message id if known."""
        ...


class WebhookSender(ABC):
    name: str = "webhook"

    @abstractmethod
    async def post_json(self, url: str, payload: dict[str, Any]) -> int:
        """POST *payload* as JSON.  Returns the HTTP status code."""
        ...
