"""Outbound JSON webhook channel."""

from __future__ import annotations

import logging
from typing import Any

import httpx

import config
from channels.base import ProviderError, WebhookSender
from utils import track_latency

log = logging.getLogger(__name__)


class HttpWebhookSender(WebhookSender):
    name = "webhook"

    def __init__(
        self,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    @track_latency("webhook", "post_json")
    async def post_json(self, url: str, payload: dict[str, Any]) -> int:
        headers = {"User-Agent": "portal-automations/1.0"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            resp = await http.post(url, json=payload, headers=headers)

        if resp.status_code >= 400:
            detail = resp.text[:400]
            raise ProviderError(
                f"Webhook failed ({resp.status_code}): {detail}",
                status_code=resp.status_code,
                detail=detail,
            )
        log.debug("Webhook delivered to %s (%d)", url, resp.status_code)
        return resp.status_code
