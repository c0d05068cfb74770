"""SendGrid email channel."""

from __future__ import annotations

import logging

import httpx

import config
from channels.base import EmailSender, ProviderError, ProviderNotConfigured
from utils import track_latency

log = logging.getLogger(__name__)


class SendGridEmailSender(EmailSender):
    """Send plain-text email through the SendGrid v3 mail API."""

    name = "email"

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        *,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = config.SENDGRID_API_KEY if api_key is None else api_key
        self.from_email = config.SENDGRID_FROM_EMAIL if from_email is None else from_email
        self.api_url = api_url or config.SENDGRID_API_URL
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    @property
    def from_address(self) -> str:
        return self.from_email or ""

    @track_latency("sendgrid", "send_email")
    async def send_email(
        self,
        owner_id: str,
        to: str,
        subject: str,
        text: str,
        *,
        from_name: str | None = None,
    ) -> str | None:
        if not self.configured:
            raise ProviderNotConfigured("Email not configured")

        sender: dict[str, str] = {"email": self.from_email}
        if from_name:
            sender["name"] = from_name
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            resp = await http.post(self.api_url, json=payload, headers=headers)

        if resp.status_code >= 400:
            detail = resp.text[:400]
            raise ProviderError(
                f"Email send failed ({resp.status_code}): {detail}",
                status_code=resp.status_code,
                detail=detail,
            )

        message_id = resp.headers.get("x-message-id")
        log.info("Email sent for owner %s to %s (id=%s)", owner_id, to, message_id or "-")
        return message_id
