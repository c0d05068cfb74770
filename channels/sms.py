"""Twilio SMS channel."""

from __future__ import annotations

import logging

import httpx

import config
from channels.base import ProviderError, ProviderNotConfigured, SmsSender
from utils import track_latency

log = logging.getLogger(__name__)

TWILIO_BODY_MAX_CHARS = 900


class TwilioSmsSender(SmsSender):
    """Send text messages through the Twilio Messages REST API."""

    name = "sms"

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        *,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_sid = config.TWILIO_ACCOUNT_SID if account_sid is None else account_sid
        self.auth_token = config.TWILIO_AUTH_TOKEN if auth_token is None else auth_token
        self.from_number = config.TWILIO_FROM_NUMBER if from_number is None else from_number
        self.api_base = (api_base or config.TWILIO_API_BASE).rstrip("/")
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def from_address(self) -> str:
        return self.from_number or ""

    @track_latency("twilio", "send_sms")
    async def send_sms(self, owner_id: str, to: str, body: str) -> str | None:
        if not self.configured:
            raise ProviderNotConfigured("Texting not configured")

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        form = {
            "From": self.from_number,
            "To": to,
            "Body": body[:TWILIO_BODY_MAX_CHARS],
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            resp = await http.post(url, data=form, auth=(self.account_sid, self.auth_token))

        if resp.status_code >= 400:
            detail = resp.text[:400]
            raise ProviderError(
                f"SMS send failed ({resp.status_code}): {detail}",
                status_code=resp.status_code,
                detail=detail,
            )

        try:
            sid = str(resp.json().get("sid") or "") or None
        except ValueError:
            sid = None
        log.info("SMS sent for owner %s to %s (sid=%s)", owner_id, to, sid or "-")
        return sid
