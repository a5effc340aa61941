"""Mailgun HTTP API transport."""

from __future__ import annotations

from typing import Any, Dict, Optional

import aiohttp

from .base import DeliveryTransport, OutboundMessage, TransportError, sender_identity

MAILGUN_BASE_URL = "https://api.mailgun.net/v3"


class MailgunTransport(DeliveryTransport):
    """Deliver through Mailgun's ``/messages`` endpoint."""

    def __init__(self, base_url: str = MAILGUN_BASE_URL):
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def build_form(message: OutboundMessage, server: Dict[str, Any]) -> Dict[str, str]:
        return {
            "from": sender_identity(server),
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "v:campaign_message_id": message.message_id,
        }

    async def _deliver(self, message: OutboundMessage, server: Dict[str, Any]) -> Optional[str]:
        api_key = server.get("api_key")
        domain = server.get("domain")
        if not api_key or not domain:
            raise TransportError("Mailgun API key or domain is not configured")
        url = f"{self.base_url}/{domain}/messages"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    data=self.build_form(message, server),
                    auth=aiohttp.BasicAuth("api", api_key),
                ) as resp:
                    body = await resp.json(content_type=None)
                    if resp.status >= 400:
                        detail = body.get("message") if isinstance(body, dict) else body
                        raise TransportError(f"Mailgun error ({resp.status}): {detail}")
                    if isinstance(body, dict):
                        return body.get("id") or message.message_id
                    return message.message_id
        except aiohttp.ClientError as exc:
            raise TransportError(f"Mailgun request failed: {exc}") from exc
